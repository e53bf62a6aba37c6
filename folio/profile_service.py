"""Reviewer profile service — expertise, keywords, capacity and availability."""

from __future__ import annotations

from typing import Any

import aiosqlite
from pydantic import ValidationError as PydanticValidationError

from folio.audit_service import record_event
from folio.database import from_json, now_iso, parse_dt, to_iso, to_json
from folio.errors import Forbidden, NotFound, from_pydantic
from folio.models import AuditAction, ReviewerProfile, ReviewerProfileUpdate
from folio.permissions import Actor, can_perform, require_actor


def _row_to_profile(row: aiosqlite.Row | dict[str, Any]) -> ReviewerProfile:
    d = dict(row)
    d["expertise"] = from_json(d.get("expertise", "[]")) or []
    d["keywords"] = from_json(d.get("keywords", "[]")) or []
    d["unavailable_until"] = parse_dt(d.get("unavailable_until"))
    d["last_review_at"] = parse_dt(d.get("last_review_at"))
    d["updated_at"] = parse_dt(d["updated_at"])
    return ReviewerProfile(**d)


async def get_reviewer_profile(db: aiosqlite.Connection, user_id: str) -> ReviewerProfile | None:
    async with db.execute(
        "SELECT * FROM reviewer_profiles WHERE user_id = ?", (user_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_profile(row) if row else None


async def load_reviewer_profile(db: aiosqlite.Connection, user_id: str) -> ReviewerProfile:
    profile = await get_reviewer_profile(db, user_id)
    if profile is None:
        raise NotFound("reviewer_profile_not_found", user_id=user_id)
    return profile


async def list_reviewer_profiles(db: aiosqlite.Connection) -> list[ReviewerProfile]:
    """The full candidate pool for reviewer matching."""
    async with db.execute("SELECT * FROM reviewer_profiles ORDER BY user_id") as cursor:
        rows = await cursor.fetchall()
    return [_row_to_profile(r) for r in rows]


async def upsert_reviewer_profile(
    db: aiosqlite.Connection,
    actor: Actor | None,
    user_id: str,
    update: ReviewerProfileUpdate | dict[str, Any],
) -> ReviewerProfile:
    """Create or edit a reviewer profile. Unset fields keep their stored value."""
    actor = require_actor(actor)
    if actor.actor_id != user_id and not can_perform(actor, "reviewer:edit_any_profile"):
        raise Forbidden("profile_not_owned")
    if not isinstance(update, ReviewerProfileUpdate):
        try:
            update = ReviewerProfileUpdate.model_validate(update)
        except PydanticValidationError as exc:
            raise from_pydantic(exc) from None

    existing = await get_reviewer_profile(db, user_id)
    base = existing or ReviewerProfile(user_id=user_id)
    changes: dict[str, Any] = {}
    if update.expertise is not None:
        changes["expertise"] = update.expertise
    if update.keywords is not None:
        changes["keywords"] = update.keywords
    if update.max_concurrent_reviews is not None:
        changes["max_concurrent_reviews"] = update.max_concurrent_reviews
    if update.clear_unavailable:
        changes["unavailable_until"] = None
    elif update.unavailable_until is not None:
        changes["unavailable_until"] = update.unavailable_until
    profile = base.model_copy(update=changes)

    await db.execute(
        """
        INSERT INTO reviewer_profiles (
            user_id, expertise, keywords, max_concurrent_reviews, unavailable_until, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            expertise = excluded.expertise,
            keywords = excluded.keywords,
            max_concurrent_reviews = excluded.max_concurrent_reviews,
            unavailable_until = excluded.unavailable_until,
            updated_at = excluded.updated_at
        """,
        (
            user_id,
            to_json(profile.expertise),
            to_json(profile.keywords),
            profile.max_concurrent_reviews,
            to_iso(profile.unavailable_until),
            now_iso(),
        ),
    )
    await db.commit()

    await record_event(
        db,
        AuditAction.PROFILE_UPDATED,
        actor_id=actor.actor_id,
        target_id=user_id,
        target_type="reviewer_profile",
        details={k: (to_iso(v) if k == "unavailable_until" else v) for k, v in changes.items()},
    )
    return await load_reviewer_profile(db, user_id)
