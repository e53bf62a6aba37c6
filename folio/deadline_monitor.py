"""Deadline monitor — overdue recomputation, fulfilment and reminders.

``is_overdue`` is a cached flag: it is recomputed on every read and by the
externally triggered sweep, and written back only when it actually changes.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

import aiosqlite

from folio.audit_service import record_event
from folio.config import settings
from folio.database import parse_dt, to_iso
from folio.messages import deadline_label
from folio.models import (
    AuditAction,
    Deadline,
    DeadlineBucket,
    DeadlineType,
    DeadlineView,
    Manuscript,
    ManuscriptStatus,
    NotificationEvent,
    SweepReport,
    ensure_utc,
)
from folio.manuscript_service import load_manuscript
from folio.notification_service import notify
from folio.permissions import Actor, authorize

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86_400


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------

def compute_overdue(due_date: datetime, completed_at: datetime | None, now: datetime) -> bool:
    """A deadline is overdue when its due date has passed and it is not completed."""
    return ensure_utc(due_date) < ensure_utc(now) and completed_at is None


def days_remaining(due_date: datetime, now: datetime) -> int:
    """Whole days until due (negative once past), rounded down."""
    delta = (ensure_utc(due_date) - ensure_utc(now)).total_seconds()
    return math.floor(delta / _SECONDS_PER_DAY)


def to_view(deadline: Deadline, now: datetime) -> DeadlineView:
    view = DeadlineView(**deadline.model_dump(), label=deadline_label(deadline.deadline_type.value))
    if deadline.completed_at is not None:
        view.bucket = DeadlineBucket.CLOSED if deadline.closed_reason else DeadlineBucket.COMPLETED
        return view
    view.days_remaining = days_remaining(deadline.due_date, now)
    if deadline.is_overdue:
        view.bucket = DeadlineBucket.OVERDUE
    elif view.days_remaining <= settings.deadlines.urgent_days:
        view.bucket = DeadlineBucket.URGENT
    else:
        view.bucket = DeadlineBucket.UPCOMING
    return view


def summarize(views: list[DeadlineView]) -> dict[str, int]:
    summary = {bucket.value: 0 for bucket in DeadlineBucket}
    for view in views:
        summary[view.bucket.value] += 1
    summary["total"] = len(views)
    return summary


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _row_to_deadline(row: aiosqlite.Row | dict[str, Any]) -> Deadline:
    d = dict(row)
    d["due_date"] = parse_dt(d["due_date"])
    d["completed_at"] = parse_dt(d.get("completed_at"))
    d["created_at"] = parse_dt(d["created_at"])
    d["is_overdue"] = bool(d.get("is_overdue"))
    return Deadline(**d)


async def _fetch(db: aiosqlite.Connection, query: str, params: tuple[Any, ...] = ()) -> list[Deadline]:
    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_deadline(r) for r in rows]


async def _manuscript_code(db: aiosqlite.Connection, manuscript_id: str) -> str:
    async with db.execute(
        "SELECT code FROM manuscripts WHERE manuscript_id = ?", (manuscript_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return row[0] if row else manuscript_id


# ---------------------------------------------------------------------------
# Overdue recomputation
# ---------------------------------------------------------------------------

async def refresh_overdue(
    db: aiosqlite.Connection,
    deadlines: list[Deadline],
    now: datetime | None = None,
) -> SweepReport:
    """Recompute ``is_overdue`` for the given deadlines, writing only changed rows.

    Each write is conditional on the stored flag still holding the old value, so
    a concurrent refresh never double-counts a transition.
    The deadline objects are updated in place.
    """
    now = now or datetime.now(timezone.utc)
    report = SweepReport(checked=len(deadlines), swept_at=now)
    newly_overdue: list[Deadline] = []
    wrote = False

    for deadline in deadlines:
        fresh = compute_overdue(deadline.due_date, deadline.completed_at, now)
        if fresh == deadline.is_overdue:
            report.unchanged += 1
            continue
        cursor = await db.execute(
            "UPDATE deadlines SET is_overdue = ? WHERE deadline_id = ? AND is_overdue = ?",
            (int(fresh), deadline.deadline_id, int(deadline.is_overdue)),
        )
        wrote = True
        deadline.is_overdue = fresh
        if cursor.rowcount == 0:
            report.unchanged += 1
            continue
        if fresh:
            report.newly_overdue += 1
            newly_overdue.append(deadline)
        else:
            report.cleared += 1

    if wrote:
        await db.commit()

    for deadline in newly_overdue:
        logger.warning(
            "Deadline %s (%s) for %s is overdue",
            deadline.deadline_id,
            deadline.deadline_type.value,
            deadline.manuscript_id,
        )
        await record_event(
            db,
            AuditAction.DEADLINE_OVERDUE,
            target_id=deadline.deadline_id,
            target_type="deadline",
            details={"manuscript_id": deadline.manuscript_id, "type": deadline.deadline_type.value},
        )
        if deadline.assigned_to:
            await notify(
                db,
                [deadline.assigned_to],
                NotificationEvent.DEADLINE_OVERDUE,
                manuscript_id=deadline.manuscript_id,
                payload={"deadline_id": deadline.deadline_id},
                code=await _manuscript_code(db, deadline.manuscript_id),
                deadline=deadline_label(deadline.deadline_type.value),
            )
    return report


async def sweep_deadlines(db: aiosqlite.Connection, now: datetime | None = None) -> SweepReport:
    """Recompute the overdue flag across every deadline that could need a change."""
    candidates = await _fetch(
        db, "SELECT * FROM deadlines WHERE completed_at IS NULL OR is_overdue = 1"
    )
    report = await refresh_overdue(db, candidates, now)
    logger.info(
        "Deadline sweep: %d checked, %d newly overdue, %d cleared",
        report.checked,
        report.newly_overdue,
        report.cleared,
    )
    return report


async def list_deadlines(
    db: aiosqlite.Connection,
    manuscript_id: str | None = None,
    assigned_to: str | None = None,
    include_completed: bool = True,
    now: datetime | None = None,
) -> list[DeadlineView]:
    """Fetch deadlines, refreshing their overdue flags on read."""
    now = now or datetime.now(timezone.utc)
    clauses: list[str] = []
    params: list[Any] = []
    if manuscript_id:
        clauses.append("manuscript_id = ?")
        params.append(manuscript_id)
    if assigned_to:
        clauses.append("assigned_to = ?")
        params.append(assigned_to)
    if not include_completed:
        clauses.append("completed_at IS NULL")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    deadlines = await _fetch(db, f"SELECT * FROM deadlines {where} ORDER BY due_date ASC", tuple(params))
    await refresh_overdue(db, deadlines, now)
    return [to_view(d, now) for d in deadlines]


async def get_deadline(db: aiosqlite.Connection, deadline_id: str) -> Deadline | None:
    found = await _fetch(db, "SELECT * FROM deadlines WHERE deadline_id = ?", (deadline_id,))
    return found[0] if found else None


# ---------------------------------------------------------------------------
# Create / update / complete
# ---------------------------------------------------------------------------

async def _open_deadline(
    db: aiosqlite.Connection, manuscript_id: str, deadline_type: DeadlineType
) -> Deadline | None:
    found = await _fetch(
        db,
        """
        SELECT * FROM deadlines
        WHERE manuscript_id = ? AND deadline_type = ? AND completed_at IS NULL
        ORDER BY created_at DESC LIMIT 1
        """,
        (manuscript_id, deadline_type.value),
    )
    return found[0] if found else None


async def _write_deadline(
    db: aiosqlite.Connection,
    manuscript: Manuscript,
    deadline_type: DeadlineType,
    due_date: datetime,
    assigned_to: str | None,
    note: str | None,
    created_by: str,
) -> Deadline:
    """Insert a deadline, or update the open one of the same type for this manuscript."""
    now = datetime.now(timezone.utc)
    due_date = ensure_utc(due_date)
    existing = await _open_deadline(db, manuscript.manuscript_id, deadline_type)

    if existing is None:
        deadline = Deadline(
            manuscript_id=manuscript.manuscript_id,
            deadline_type=deadline_type,
            due_date=due_date,
            assigned_to=assigned_to,
            note=note,
            created_by=created_by,
            is_overdue=compute_overdue(due_date, None, now),
        )
        await db.execute(
            """
            INSERT INTO deadlines (
                deadline_id, manuscript_id, deadline_type, due_date, assigned_to,
                completed_at, is_overdue, reminders_sent, note, created_by, created_at
            ) VALUES (?, ?, ?, ?, ?, NULL, ?, 0, ?, ?, ?)
            """,
            (
                deadline.deadline_id,
                deadline.manuscript_id,
                deadline.deadline_type.value,
                to_iso(deadline.due_date),
                deadline.assigned_to,
                int(deadline.is_overdue),
                deadline.note,
                deadline.created_by,
                to_iso(deadline.created_at),
            ),
        )
    else:
        deadline = existing.model_copy(update={
            "due_date": due_date,
            "assigned_to": assigned_to if assigned_to is not None else existing.assigned_to,
            "note": note if note is not None else existing.note,
            "is_overdue": compute_overdue(due_date, None, now),
            # a moved due date restarts the reminder budget
            "reminders_sent": 0 if due_date != existing.due_date else existing.reminders_sent,
        })
        await db.execute(
            """
            UPDATE deadlines
            SET due_date = ?, assigned_to = ?, note = ?, is_overdue = ?, reminders_sent = ?
            WHERE deadline_id = ?
            """,
            (
                to_iso(deadline.due_date),
                deadline.assigned_to,
                deadline.note,
                int(deadline.is_overdue),
                deadline.reminders_sent,
                deadline.deadline_id,
            ),
        )
    await db.commit()

    await record_event(
        db,
        AuditAction.DEADLINE_UPSERTED,
        actor_id=created_by,
        target_id=deadline.deadline_id,
        target_type="deadline",
        details={
            "manuscript_id": manuscript.manuscript_id,
            "type": deadline_type.value,
            "due_date": to_iso(due_date),
            "assigned_to": deadline.assigned_to,
        },
    )
    if deadline.assigned_to and (existing is None or existing.assigned_to != deadline.assigned_to):
        await notify(
            db,
            [deadline.assigned_to],
            NotificationEvent.DEADLINE_ASSIGNED,
            manuscript_id=manuscript.manuscript_id,
            payload={"deadline_id": deadline.deadline_id, "due_date": to_iso(due_date)},
            code=manuscript.code,
            deadline=deadline_label(deadline_type.value),
        )
    return deadline


async def upsert_deadline(
    db: aiosqlite.Connection,
    actor: Actor | None,
    manuscript_id: str,
    deadline_type: DeadlineType,
    due_date: datetime,
    assigned_to: str | None = None,
    note: str | None = None,
) -> Deadline:
    """Editor action: set the due date of the open deadline of this type, creating it if needed."""
    actor = authorize(actor, "deadline:manage")
    manuscript = await load_manuscript(db, manuscript_id)
    return await _write_deadline(
        db, manuscript, deadline_type, due_date, assigned_to, note, created_by=actor.actor_id
    )


async def complete_deadline(
    db: aiosqlite.Connection,
    manuscript_id: str,
    deadline_type: DeadlineType,
    now: datetime | None = None,
    closed_reason: str | None = None,
) -> int:
    """Mark open deadlines of this type fulfilled. Idempotent; returns rows completed.

    With ``closed_reason`` the deadlines are closed without being fulfilled:
    they stop counting as overdue but land in the ``closed`` bucket.
    """
    now = now or datetime.now(timezone.utc)
    cursor = await db.execute(
        """
        UPDATE deadlines SET completed_at = ?, closed_reason = ?, is_overdue = 0
        WHERE manuscript_id = ? AND deadline_type = ? AND completed_at IS NULL
        """,
        (to_iso(now), closed_reason, manuscript_id, deadline_type.value),
    )
    completed = cursor.rowcount
    await db.commit()
    if completed == 0:
        return 0
    details: dict[str, Any] = {"type": deadline_type.value, "completed": completed}
    if closed_reason:
        details["reason"] = closed_reason
    await record_event(
        db,
        AuditAction.DEADLINE_CLOSED if closed_reason else AuditAction.DEADLINE_COMPLETED,
        target_id=manuscript_id,
        target_type="manuscript",
        details=details,
    )
    return completed


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------

async def send_deadline_reminders(db: aiosqlite.Connection, now: datetime | None = None) -> int:
    """Remind assignees of open deadlines due within the reminder window.

    At most ``max_reminders`` reminders go out per deadline. Returns the number sent.
    """
    now = now or datetime.now(timezone.utc)
    cfg = settings.deadlines
    horizon = now + timedelta(days=cfg.reminder_window_days)
    due_soon = await _fetch(
        db,
        """
        SELECT * FROM deadlines
        WHERE completed_at IS NULL
          AND assigned_to IS NOT NULL
          AND due_date >= ? AND due_date <= ?
          AND reminders_sent < ?
        ORDER BY due_date ASC
        """,
        (to_iso(now), to_iso(horizon), cfg.max_reminders),
    )

    sent = 0
    for deadline in due_soon:
        cursor = await db.execute(
            """
            UPDATE deadlines SET reminders_sent = reminders_sent + 1
            WHERE deadline_id = ? AND reminders_sent = ? AND completed_at IS NULL
            """,
            (deadline.deadline_id, deadline.reminders_sent),
        )
        await db.commit()
        if cursor.rowcount == 0:
            continue
        sent += 1
        await notify(
            db,
            [deadline.assigned_to],
            NotificationEvent.DEADLINE_APPROACHING,
            manuscript_id=deadline.manuscript_id,
            payload={
                "deadline_id": deadline.deadline_id,
                "days_remaining": days_remaining(deadline.due_date, now),
            },
            code=await _manuscript_code(db, deadline.manuscript_id),
            deadline=deadline_label(deadline.deadline_type.value),
        )
    logger.info("Sent %d deadline reminders", sent)
    return sent


# ---------------------------------------------------------------------------
# Workflow hooks
# ---------------------------------------------------------------------------

_FULFILLED_ON_LEAVING: dict[ManuscriptStatus, tuple[DeadlineType, ...]] = {
    ManuscriptStatus.UNDER_REVIEW: (
        DeadlineType.INITIAL_REVIEW,
        DeadlineType.RE_REVIEW,
        DeadlineType.EDITOR_DECISION,
    ),
}

_FULFILLED_ON_ENTERING: dict[ManuscriptStatus, tuple[DeadlineType, ...]] = {
    ManuscriptStatus.PUBLISHED: (DeadlineType.PRODUCTION, DeadlineType.PUBLICATION),
}

# Only a resubmission fulfils the revision deadline; any other exit closes it.
_FULFILLED_BY: dict[tuple[ManuscriptStatus, ManuscriptStatus], tuple[DeadlineType, ...]] = {
    (ManuscriptStatus.REVISION, ManuscriptStatus.UNDER_REVIEW): (DeadlineType.REVISION_SUBMIT,),
}

_CLOSED_ON_LEAVING: dict[ManuscriptStatus, tuple[DeadlineType, ...]] = {
    ManuscriptStatus.REVISION: (DeadlineType.REVISION_SUBMIT,),
}


async def apply_status_change(
    db: aiosqlite.Connection,
    manuscript: Manuscript,
    from_status: ManuscriptStatus,
    to_status: ManuscriptStatus,
    actor_id: str,
) -> None:
    """Complete the deadlines a transition fulfils and open the ones it starts."""
    for deadline_type in _FULFILLED_ON_LEAVING.get(from_status, ()):
        await complete_deadline(db, manuscript.manuscript_id, deadline_type)
    for deadline_type in _FULFILLED_ON_ENTERING.get(to_status, ()):
        await complete_deadline(db, manuscript.manuscript_id, deadline_type)
    for deadline_type in _FULFILLED_BY.get((from_status, to_status), ()):
        await complete_deadline(db, manuscript.manuscript_id, deadline_type)
    for deadline_type in _CLOSED_ON_LEAVING.get(from_status, ()):
        await complete_deadline(
            db, manuscript.manuscript_id, deadline_type, closed_reason=f"manuscript moved to {to_status.value}"
        )

    cfg = settings.deadlines
    now = datetime.now(timezone.utc)
    if to_status == ManuscriptStatus.UNDER_REVIEW:
        if from_status == ManuscriptStatus.REVISION:
            await _write_deadline(
                db, manuscript, DeadlineType.RE_REVIEW,
                now + timedelta(days=cfg.re_review_days), None, "Complete re-review", actor_id,
            )
        else:
            await _write_deadline(
                db, manuscript, DeadlineType.INITIAL_REVIEW,
                now + timedelta(days=cfg.initial_review_days), None, "Complete review", actor_id,
            )
    elif to_status == ManuscriptStatus.REVISION:
        await _write_deadline(
            db, manuscript, DeadlineType.REVISION_SUBMIT,
            now + timedelta(days=cfg.revision_days), manuscript.author_id, "Submit revision", actor_id,
        )
    elif to_status == ManuscriptStatus.IN_PRODUCTION:
        await _write_deadline(
            db, manuscript, DeadlineType.PRODUCTION,
            now + timedelta(days=cfg.production_days), None, "Complete layout", actor_id,
        )
