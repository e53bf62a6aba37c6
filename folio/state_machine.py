"""Manuscript state machine.

Owns the transition table and is the only code path that changes a
manuscript's status. Every change is a compare-and-swap on the manuscript's
``version`` column: a request that lost a race fails ``Conflict`` and is not
retried here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import lru_cache
from types import MappingProxyType
from typing import Mapping

import aiosqlite

from folio.audit_service import record_event
from folio.config import settings
from folio.database import to_iso
from folio.errors import Conflict, Forbidden, InvalidTransition, ValidationError
from folio.manuscript_service import insert_history, load_manuscript
from folio.messages import status_label
from folio.models import (
    AuditAction,
    Decision,
    Manuscript,
    ManuscriptStatus,
    NotificationEvent,
    StatusHistoryEntry,
    TransitionOption,
)
from folio.notification_service import notify
from folio.permissions import Actor, TransitionGuard, require_actor
from folio import deadline_monitor

logger = logging.getLogger(__name__)

S = ManuscriptStatus

TRANSITIONS: Mapping[ManuscriptStatus, frozenset[ManuscriptStatus]] = MappingProxyType({
    S.NEW: frozenset({S.DESK_REJECT, S.UNDER_REVIEW}),
    S.DESK_REJECT: frozenset(),
    S.UNDER_REVIEW: frozenset({S.REVISION, S.ACCEPTED, S.REJECTED}),
    S.REVISION: frozenset({S.UNDER_REVIEW, S.REJECTED}),
    S.ACCEPTED: frozenset({S.IN_PRODUCTION}),
    S.REJECTED: frozenset(),
    S.IN_PRODUCTION: frozenset({S.PUBLISHED}),
    S.PUBLISHED: frozenset(),
})

# Transitions that are editorial decisions and append to the decision history.
DECISION_STATUSES = frozenset({S.DESK_REJECT, S.REVISION, S.ACCEPTED, S.REJECTED})

_NOTIFY_EVENT: dict[ManuscriptStatus, NotificationEvent] = {
    S.DESK_REJECT: NotificationEvent.DECISION_MADE,
    S.ACCEPTED: NotificationEvent.DECISION_MADE,
    S.REJECTED: NotificationEvent.DECISION_MADE,
    S.REVISION: NotificationEvent.REVISION_REQUESTED,
    S.IN_PRODUCTION: NotificationEvent.PRODUCTION_STARTED,
    S.PUBLISHED: NotificationEvent.PAPER_PUBLISHED,
}

_DOWNSTREAM_STATUSES = frozenset({S.IN_PRODUCTION, S.PUBLISHED})


def parse_status(value: ManuscriptStatus | str) -> ManuscriptStatus:
    if isinstance(value, ManuscriptStatus):
        return value
    try:
        return ManuscriptStatus(str(value).strip().lower())
    except ValueError:
        raise ValidationError("invalid_status", status=str(value)) from None


class StateMachine:
    """Validates, authorizes and applies manuscript status transitions."""

    def __init__(
        self,
        transitions: Mapping[ManuscriptStatus, frozenset[ManuscriptStatus]] = TRANSITIONS,
        guard: TransitionGuard | None = None,
    ):
        self._transitions = MappingProxyType(
            {status: frozenset(transitions.get(status, ())) for status in ManuscriptStatus}
        )
        self.guard = guard or TransitionGuard()
        self._check_consistency()

    def _check_consistency(self) -> None:
        pairs = {(src, dst) for src, targets in self._transitions.items() for dst in targets}
        missing = pairs - self.guard.pairs
        extra = self.guard.pairs - pairs
        if missing or extra:
            raise ValueError(
                f"transition table and permission table disagree: "
                f"no roles for {sorted(missing)}, roles for unknown {sorted(extra)}"
            )

    @property
    def transitions(self) -> Mapping[ManuscriptStatus, frozenset[ManuscriptStatus]]:
        return self._transitions

    def allowed_targets(self, status: ManuscriptStatus) -> frozenset[ManuscriptStatus]:
        return self._transitions[status]

    def is_terminal(self, status: ManuscriptStatus) -> bool:
        return not self._transitions[status]

    def validate(self, from_status: ManuscriptStatus, to_status: ManuscriptStatus) -> None:
        """Fail InvalidTransition unless ``to_status`` is reachable from ``from_status``."""
        if self.is_terminal(from_status):
            raise InvalidTransition(
                "terminal_status", from_status=from_status.value, to_status=to_status.value
            )
        if to_status not in self._transitions[from_status]:
            raise InvalidTransition(
                "transition_not_allowed", from_status=from_status.value, to_status=to_status.value
            )

    def options(self, manuscript: Manuscript, actor: Actor) -> list[TransitionOption]:
        return [
            TransitionOption(
                target=target,
                label=status_label(target.value),
                allowed=self.guard.permits(
                    actor, manuscript.status, target, author_id=manuscript.author_id
                ),
            )
            for target in sorted(self._transitions[manuscript.status], key=lambda s: s.value)
        ]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def available_transitions(
        self, db: aiosqlite.Connection, manuscript_id: str, actor: Actor | None
    ) -> list[TransitionOption]:
        actor = require_actor(actor)
        manuscript = await load_manuscript(db, manuscript_id)
        return self.options(manuscript, actor)

    async def request_transition(
        self,
        db: aiosqlite.Connection,
        manuscript_id: str,
        actor: Actor | None,
        target_status: ManuscriptStatus | str,
        note: str | None = None,
        *,
        expected_version: int | None = None,
    ) -> Manuscript:
        """Move a manuscript to ``target_status``.

        Checks run in order: actor present, manuscript exists, caller's version
        still current, transition structurally legal, role permitted. The write
        only lands if status and version are unchanged since the read.
        """
        actor = require_actor(actor)
        target = parse_status(target_status)
        manuscript = await load_manuscript(db, manuscript_id)
        if expected_version is not None and expected_version != manuscript.version:
            raise Conflict(
                "stale_version", expected_version=expected_version, current_version=manuscript.version
            )

        current = manuscript.status
        self.validate(current, target)
        self.guard.check(actor, current, target, author_id=manuscript.author_id)

        now = datetime.now(timezone.utc)
        new_round = manuscript.current_round
        if current == S.REVISION and target == S.UNDER_REVIEW:
            new_round += 1

        cursor = await db.execute(
            """
            UPDATE manuscripts
            SET status = ?, version = version + 1, current_round = ?, last_status_change_at = ?
            WHERE manuscript_id = ? AND version = ? AND status = ?
            """,
            (target.value, new_round, to_iso(now), manuscript_id, manuscript.version, current.value),
        )
        if cursor.rowcount != 1:
            await db.rollback()
            logger.warning(
                "Lost status race on %s (%s -> %s) for %s",
                manuscript.code, current.value, target.value, actor.actor_id,
            )
            raise Conflict("status_changed_concurrently", current_version=manuscript.version)

        await insert_history(
            db,
            StatusHistoryEntry(
                manuscript_id=manuscript_id,
                from_status=current,
                to_status=target,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                note=note,
                changed_at=now,
            ),
        )
        decision: Decision | None = None
        if target in DECISION_STATUSES:
            decision = Decision(
                manuscript_id=manuscript_id,
                editor_id=actor.actor_id,
                decision=target,
                round_no=manuscript.current_round,
                note=note,
                decided_at=now,
            )
            await db.execute(
                """
                INSERT INTO decisions (decision_id, manuscript_id, editor_id, decision, round_no, note, decided_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    decision.decision_id,
                    decision.manuscript_id,
                    decision.editor_id,
                    decision.decision.value,
                    decision.round_no,
                    decision.note,
                    to_iso(decision.decided_at),
                ),
            )
        await db.commit()

        updated = manuscript.model_copy(update={
            "status": target,
            "version": manuscript.version + 1,
            "current_round": new_round,
            "last_status_change_at": now,
        })
        logger.info(
            "Manuscript %s: %s -> %s by %s (%s)",
            updated.code, current.value, target.value, actor.actor_id, actor.role.value,
        )
        await self._after_transition(db, updated, current, actor, note, decision)
        return updated

    async def submit_revision(
        self,
        db: aiosqlite.Connection,
        manuscript_id: str,
        actor: Actor | None,
        note: str | None = None,
    ) -> Manuscript:
        """The manuscript's own author sends a revised version back to review."""
        actor = require_actor(actor)
        manuscript = await load_manuscript(db, manuscript_id)
        if actor.actor_id != manuscript.author_id:
            raise Forbidden("not_manuscript_author")
        updated = await self.request_transition(
            db, manuscript_id, actor, S.UNDER_REVIEW, note, expected_version=manuscript.version
        )
        await record_event(
            db,
            AuditAction.REVISION_SUBMITTED,
            actor_id=actor.actor_id,
            target_id=manuscript_id,
            target_type="manuscript",
            details={"round_no": updated.current_round},
        )
        return updated

    # ------------------------------------------------------------------
    # Side effects (best-effort, after commit)
    # ------------------------------------------------------------------

    async def _after_transition(
        self,
        db: aiosqlite.Connection,
        manuscript: Manuscript,
        from_status: ManuscriptStatus,
        actor: Actor,
        note: str | None,
        decision: Decision | None,
    ) -> None:
        try:
            await deadline_monitor.apply_status_change(
                db, manuscript, from_status, manuscript.status, actor.actor_id
            )
        except Exception:
            logger.exception("Deadline hooks failed for %s", manuscript.code)
            await _quiet_rollback(db)

        await record_event(
            db,
            AuditAction.STATUS_CHANGED,
            actor_id=actor.actor_id,
            target_id=manuscript.manuscript_id,
            target_type="manuscript",
            details={
                "from": from_status.value,
                "to": manuscript.status.value,
                "role": actor.role.value,
                "note": note,
                "version": manuscript.version,
            },
        )
        if decision is not None:
            await record_event(
                db,
                AuditAction.DECISION_RECORDED,
                actor_id=actor.actor_id,
                target_id=manuscript.manuscript_id,
                target_type="manuscript",
                details={"decision": decision.decision.value, "round_no": decision.round_no},
            )

        recipients: list[str] = [manuscript.author_id]
        if manuscript.status in _DOWNSTREAM_STATUSES:
            recipients.extend(settings.workflow.production_contacts)
        await notify(
            db,
            recipients,
            _NOTIFY_EVENT.get(manuscript.status, NotificationEvent.STATUS_CHANGED),
            manuscript_id=manuscript.manuscript_id,
            payload={"from": from_status.value, "to": manuscript.status.value, "note": note},
            code=manuscript.code,
            status=status_label(manuscript.status.value),
        )


async def _quiet_rollback(db: aiosqlite.Connection) -> None:
    try:
        await db.rollback()
    except Exception:
        logger.exception("Rollback failed")


@lru_cache(maxsize=1)
def get_state_machine() -> StateMachine:
    """Process-wide state machine, built once."""
    return StateMachine()


# ---------------------------------------------------------------------------
# Module-level shortcuts
# ---------------------------------------------------------------------------

async def request_transition(
    db: aiosqlite.Connection,
    manuscript_id: str,
    actor: Actor | None,
    target_status: ManuscriptStatus | str,
    note: str | None = None,
    *,
    expected_version: int | None = None,
) -> Manuscript:
    return await get_state_machine().request_transition(
        db, manuscript_id, actor, target_status, note, expected_version=expected_version
    )


async def submit_revision(
    db: aiosqlite.Connection, manuscript_id: str, actor: Actor | None, note: str | None = None
) -> Manuscript:
    return await get_state_machine().submit_revision(db, manuscript_id, actor, note)


async def available_transitions(
    db: aiosqlite.Connection, manuscript_id: str, actor: Actor | None
) -> list[TransitionOption]:
    return await get_state_machine().available_transitions(db, manuscript_id, actor)
