"""Role-based permissions for transitions and editorial actions.

All role checks live here: one table keyed by ``(from_status, to_status)`` and
one keyed by action name. Services ask the guard; no route carries its own
role list.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from folio.errors import Forbidden, Unauthorized, ValidationError
from folio.models import ManuscriptStatus, Role

logger = logging.getLogger(__name__)

S = ManuscriptStatus

EDITOR_ROLES = frozenset({Role.SECTION_EDITOR, Role.MANAGING_EDITOR, Role.EIC, Role.SYSADMIN})
SENIOR_EDITOR_ROLES = frozenset({Role.MANAGING_EDITOR, Role.EIC, Role.SYSADMIN})
CHIEF_ROLES = frozenset({Role.EIC, Role.SYSADMIN})
PRODUCTION_ROLES = frozenset({Role.LAYOUT_EDITOR, Role.MANAGING_EDITOR, Role.EIC, Role.SYSADMIN})
SUBMITTER_ROLES = frozenset(set(Role) - {Role.READER, Role.SECURITY_AUDITOR})
AUDIT_READER_ROLES = frozenset({Role.SECURITY_AUDITOR, Role.EIC, Role.SYSADMIN})


@dataclass(slots=True, frozen=True)
class Actor:
    """Identity and role of whoever is calling, as supplied by the auth provider."""

    actor_id: str
    role: Role

    @property
    def is_editor(self) -> bool:
        return self.role in EDITOR_ROLES


def make_actor(actor_id: str | None, role: str | Role | None) -> Actor:
    """Build an Actor from loose transport input, failing Unauthorized on missing identity."""
    ident = (actor_id or "").strip()
    if not ident or role is None or (isinstance(role, str) and not role.strip()):
        raise Unauthorized("actor_required")
    try:
        parsed = role if isinstance(role, Role) else Role(str(role).strip().lower())
    except ValueError:
        raise ValidationError("invalid_role", role=str(role)) from None
    return Actor(actor_id=ident, role=parsed)


def require_actor(actor: Actor | None) -> Actor:
    if actor is None or not actor.actor_id:
        raise Unauthorized("actor_required")
    return actor


# ---------------------------------------------------------------------------
# Transition permissions
# ---------------------------------------------------------------------------

# AUTHOR on REVISION -> UNDER_REVIEW is further restricted to the manuscript's own author.
TRANSITION_ROLES: Mapping[tuple[ManuscriptStatus, ManuscriptStatus], frozenset[Role]] = MappingProxyType({
    (S.NEW, S.DESK_REJECT): EDITOR_ROLES,
    (S.NEW, S.UNDER_REVIEW): EDITOR_ROLES,
    (S.UNDER_REVIEW, S.REVISION): EDITOR_ROLES,
    (S.UNDER_REVIEW, S.ACCEPTED): SENIOR_EDITOR_ROLES,
    (S.UNDER_REVIEW, S.REJECTED): EDITOR_ROLES,
    (S.REVISION, S.UNDER_REVIEW): EDITOR_ROLES | {Role.AUTHOR},
    (S.REVISION, S.REJECTED): EDITOR_ROLES,
    (S.ACCEPTED, S.IN_PRODUCTION): PRODUCTION_ROLES,
    (S.IN_PRODUCTION, S.PUBLISHED): CHIEF_ROLES,
})

OWNER_ONLY_ROLES: Mapping[tuple[ManuscriptStatus, ManuscriptStatus], frozenset[Role]] = MappingProxyType({
    (S.REVISION, S.UNDER_REVIEW): frozenset({Role.AUTHOR}),
})


# ---------------------------------------------------------------------------
# Action permissions
# ---------------------------------------------------------------------------

ACTION_ROLES: Mapping[str, frozenset[Role]] = MappingProxyType({
    "manuscript:submit": SUBMITTER_ROLES,
    "review:invite": EDITOR_ROLES,
    "review:reopen": EDITOR_ROLES,
    "review:rate": EDITOR_ROLES,
    "review:list": EDITOR_ROLES,
    "reviewer:suggest": EDITOR_ROLES,
    "reviewer:edit_any_profile": EDITOR_ROLES,
    "reviewer:view_metrics": EDITOR_ROLES,
    "decision:aggregate": EDITOR_ROLES,
    "deadline:manage": EDITOR_ROLES,
    "deadline:sweep": EDITOR_ROLES,
    "category:manage": SENIOR_EDITOR_ROLES,
    "audit:read": AUDIT_READER_ROLES,
})


def can_perform(actor: Actor, action: str) -> bool:
    return actor.role in ACTION_ROLES.get(action, frozenset())


def authorize(actor: Actor | None, action: str) -> Actor:
    """Fail Unauthorized without an actor, Forbidden when the role lacks the action."""
    actor = require_actor(actor)
    if not can_perform(actor, action):
        logger.info("Denied %s to %s (%s)", action, actor.actor_id, actor.role.value)
        raise Forbidden("action_not_permitted", role=actor.role.value, action=action)
    return actor


class TransitionGuard:
    """Answers whether a role may apply a specific (from, to) status change."""

    def __init__(
        self,
        table: Mapping[tuple[ManuscriptStatus, ManuscriptStatus], frozenset[Role]] = TRANSITION_ROLES,
        owner_only: Mapping[tuple[ManuscriptStatus, ManuscriptStatus], frozenset[Role]] = OWNER_ONLY_ROLES,
    ):
        self._table = table
        self._owner_only = owner_only

    @property
    def pairs(self) -> frozenset[tuple[ManuscriptStatus, ManuscriptStatus]]:
        return frozenset(self._table)

    def allowed_roles(self, from_status: ManuscriptStatus, to_status: ManuscriptStatus) -> frozenset[Role]:
        return self._table.get((from_status, to_status), frozenset())

    def permits(
        self,
        actor: Actor,
        from_status: ManuscriptStatus,
        to_status: ManuscriptStatus,
        *,
        author_id: str | None = None,
    ) -> bool:
        if actor.role not in self.allowed_roles(from_status, to_status):
            return False
        if actor.role in self._owner_only.get((from_status, to_status), frozenset()):
            return author_id is not None and actor.actor_id == author_id
        return True

    def check(
        self,
        actor: Actor,
        from_status: ManuscriptStatus,
        to_status: ManuscriptStatus,
        *,
        author_id: str | None = None,
    ) -> None:
        if self.permits(actor, from_status, to_status, author_id=author_id):
            return
        if actor.role in self._owner_only.get((from_status, to_status), frozenset()):
            raise Forbidden("not_manuscript_author")
        raise Forbidden(
            "role_not_permitted",
            role=actor.role.value,
            from_status=from_status.value,
            to_status=to_status.value,
        )
