"""Unit tests for actors, the action permission table and error rendering."""

from __future__ import annotations

import pytest

from folio.config import settings
from folio.errors import AlreadyFinalized, Forbidden, Unauthorized, ValidationError, WorkflowError
from folio.messages import error_message, status_label
from folio.models import ManuscriptStatus, Role
from folio.permissions import ACTION_ROLES, authorize, can_perform, make_actor


class TestMakeActor:
    def test_normalizes_role(self):
        actor = make_actor("  ed-7 ", " Managing_Editor ")
        assert actor.actor_id == "ed-7"
        assert actor.role == Role.MANAGING_EDITOR
        assert actor.is_editor

    @pytest.mark.parametrize("actor_id,role", [(None, "eic"), ("", "eic"), ("ed", None), ("ed", "  ")])
    def test_missing_identity_is_unauthorized(self, actor_id, role):
        with pytest.raises(Unauthorized):
            make_actor(actor_id, role)

    def test_unknown_role_is_validation_error(self):
        with pytest.raises(ValidationError) as exc:
            make_actor("ed", "overlord")
        assert exc.value.code == "invalid_role"


class TestActionTable:
    def test_every_action_has_roles(self):
        assert all(ACTION_ROLES.values())

    def test_readers_cannot_submit(self):
        assert not can_perform(make_actor("r", "reader"), "manuscript:submit")
        assert can_perform(make_actor("a", "author"), "manuscript:submit")

    def test_authorize_denies_with_context(self):
        with pytest.raises(Forbidden) as exc:
            authorize(make_actor("rev", "reviewer"), "review:invite")
        body = exc.value.to_dict()
        assert body["error"] == "forbidden"
        assert body["code"] == "action_not_permitted"
        assert body["action"] == "review:invite"

    def test_unknown_action_is_denied(self):
        with pytest.raises(Forbidden):
            authorize(make_actor("eic", "eic"), "manuscript:teleport")

    def test_audit_log_is_restricted(self):
        assert can_perform(make_actor("sa", "security_auditor"), "audit:read")
        assert not can_perform(make_actor("ed", "section_editor"), "audit:read")


class TestErrors:
    def test_kinds_and_status_codes(self):
        err = AlreadyFinalized("review_already_submitted", review_id="r1")
        assert isinstance(err, WorkflowError)
        assert err.status_code == 409
        assert err.to_dict() == {
            "error": "already_finalized",
            "code": "review_already_submitted",
            "detail": err.message,
            "review_id": "r1",
        }

    def test_localized_reasons(self, monkeypatch):
        english = error_message("terminal_status")
        monkeypatch.setattr(settings, "locale", "vi")
        assert error_message("terminal_status") != english
        assert status_label(ManuscriptStatus.UNDER_REVIEW.value) != status_label(
            ManuscriptStatus.UNDER_REVIEW.value, "en"
        )

    def test_unknown_locale_falls_back_to_english(self):
        assert error_message("terminal_status", "xx") == error_message("terminal_status", "en")
