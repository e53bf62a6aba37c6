"""Audit service — append-only event log for every significant action.

Every submission, transition, decision, reviewer action and deadline change is
recorded here. Events are immutable once written.
"""

from __future__ import annotations

import logging
from typing import Any

import aiosqlite

from folio.database import from_json, parse_dt, to_iso, to_json
from folio.models import AuditAction, AuditEvent

logger = logging.getLogger(__name__)


async def log_event(
    db: aiosqlite.Connection,
    action: AuditAction,
    actor_id: str = "",
    target_id: str = "",
    target_type: str = "",
    details: dict[str, Any] | None = None,
) -> AuditEvent:
    """Write an immutable audit event."""
    event = AuditEvent(
        action=action,
        actor_id=actor_id,
        target_id=target_id,
        target_type=target_type,
        details=details or {},
    )
    await db.execute(
        """
        INSERT INTO audit_events (event_id, action, actor_id, target_id, target_type, details, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event.event_id,
            event.action.value,
            event.actor_id,
            event.target_id,
            event.target_type,
            to_json(event.details),
            to_iso(event.timestamp),
        ),
    )
    await db.commit()
    return event


async def record_event(
    db: aiosqlite.Connection,
    action: AuditAction,
    actor_id: str = "",
    target_id: str = "",
    target_type: str = "",
    details: dict[str, Any] | None = None,
) -> AuditEvent | None:
    """Best-effort :func:`log_event`: failures are logged, never raised.

    Call only after the primary change has been committed.
    """
    try:
        return await log_event(db, action, actor_id, target_id, target_type, details)
    except Exception:
        logger.exception("Audit write failed for %s on %s", action.value, target_id)
        try:
            await db.rollback()
        except Exception:
            logger.exception("Rollback after failed audit write also failed")
        return None


def _row_to_event(row: aiosqlite.Row) -> AuditEvent:
    d = dict(row)
    d["details"] = from_json(d.get("details")) or {}
    d["timestamp"] = parse_dt(d["timestamp"])
    return AuditEvent(**d)


async def query_events(
    db: aiosqlite.Connection,
    *,
    target_id: str | None = None,
    actor_id: str | None = None,
    action: AuditAction | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    """Newest-first audit events; filters combine with AND."""
    clauses: list[str] = []
    params: list[Any] = []
    if target_id:
        clauses.append("target_id = ?")
        params.append(target_id)
    if actor_id:
        clauses.append("actor_id = ?")
        params.append(actor_id)
    if action is not None:
        clauses.append("action = ?")
        params.append(action.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    async with db.execute(
        f"SELECT * FROM audit_events {where} ORDER BY timestamp DESC, rowid DESC LIMIT ?", params
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_event(row) for row in rows]
