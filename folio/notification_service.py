"""Notification service — in-app notifications plus a pluggable delivery hook.

Notifications are fire-and-forget: a failure to persist or deliver is logged and
swallowed so it never undoes the workflow change that triggered it.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable

import aiosqlite

from folio.database import from_json, now_iso, parse_dt, to_iso, to_json
from folio.messages import notification_title
from folio.models import Notification, NotificationEvent

logger = logging.getLogger(__name__)

Dispatcher = Callable[[Notification], Awaitable[None]]


async def _log_dispatch(notification: Notification) -> None:
    logger.info(
        "Notify %s: [%s] %s",
        notification.recipient_id,
        notification.event.value,
        notification.title,
    )


_dispatcher: Dispatcher = _log_dispatch


def set_dispatcher(dispatcher: Dispatcher | None) -> None:
    """Install an external delivery hook (email, push...). None restores the logging default."""
    global _dispatcher
    _dispatcher = dispatcher or _log_dispatch


def _row_to_notification(row: aiosqlite.Row | dict[str, Any]) -> Notification:
    d = dict(row)
    d["payload"] = from_json(d.get("payload")) or {}
    d["created_at"] = parse_dt(d["created_at"])
    d["read_at"] = parse_dt(d.get("read_at"))
    return Notification(**d)


async def _persist(db: aiosqlite.Connection, items: list[Notification]) -> None:
    await db.executemany(
        """
        INSERT INTO notifications
            (notification_id, recipient_id, event, title, manuscript_id, payload, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                n.notification_id,
                n.recipient_id,
                n.event.value,
                n.title,
                n.manuscript_id,
                to_json(n.payload),
                to_iso(n.created_at),
            )
            for n in items
        ],
    )
    await db.commit()


async def notify(
    db: aiosqlite.Connection,
    recipients: Iterable[str | None],
    event: NotificationEvent,
    *,
    manuscript_id: str | None = None,
    payload: dict[str, Any] | None = None,
    **title_params: Any,
) -> list[Notification]:
    """Persist and dispatch one notification per distinct recipient. Never raises.

    Call only after the primary change has been committed.
    """
    seen: set[str] = set()
    items: list[Notification] = []
    for rid in recipients:
        if not rid or rid in seen:
            continue
        seen.add(rid)
        items.append(
            Notification(
                recipient_id=rid,
                event=event,
                title=notification_title(event.value, **title_params),
                manuscript_id=manuscript_id,
                payload=payload or {},
            )
        )
    if not items:
        return []

    try:
        await _persist(db, items)
    except Exception:
        logger.exception("Failed to store %s notification for %s", event.value, manuscript_id)
        try:
            await db.rollback()
        except Exception:
            logger.exception("Rollback after failed notification write also failed")
        return []

    for item in items:
        try:
            await _dispatcher(item)
        except Exception:
            logger.exception("Notification dispatch failed for %s", item.recipient_id)
    return items


async def list_notifications(
    db: aiosqlite.Connection,
    recipient_id: str,
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    query = "SELECT * FROM notifications WHERE recipient_id = ?"
    if unread_only:
        query += " AND read_at IS NULL"
    query += " ORDER BY created_at DESC LIMIT ?"
    async with db.execute(query, (recipient_id, limit)) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_notification(r) for r in rows]


async def mark_read(db: aiosqlite.Connection, recipient_id: str, notification_id: str) -> bool:
    cursor = await db.execute(
        """
        UPDATE notifications SET read_at = ?
        WHERE notification_id = ? AND recipient_id = ? AND read_at IS NULL
        """,
        (now_iso(), notification_id, recipient_id),
    )
    await db.commit()
    return cursor.rowcount > 0
