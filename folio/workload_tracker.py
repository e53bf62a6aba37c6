"""Workload tracker — active-assignment counts and reviewer statistics.

Read-only aggregation over review assignments, plus the statistics refresh that
denormalizes the results onto the reviewer profile after each review event.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Iterable

import aiosqlite

from folio.config import settings
from folio.database import from_json, now_iso, parse_dt, to_iso
from folio.models import ReviewAssignment, ReviewerMetrics, ReviewerStatistics

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86_400

# An assignment counts toward load while it is unsubmitted, undeclined and not past due.
ACTIVE_LOAD_CLAUSE = "submitted_at IS NULL AND declined_at IS NULL AND due_date >= ?"


async def current_load(
    db: aiosqlite.Connection, reviewer_id: str, now: datetime | None = None
) -> int:
    """Count of the reviewer's still-actionable assignments."""
    now = now or datetime.now(timezone.utc)
    async with db.execute(
        f"SELECT COUNT(*) FROM review_assignments WHERE reviewer_id = ? AND {ACTIVE_LOAD_CLAUSE}",
        (reviewer_id, to_iso(now)),
    ) as cursor:
        row = await cursor.fetchone()
    return int(row[0])


async def current_loads(
    db: aiosqlite.Connection, reviewer_ids: Iterable[str], now: datetime | None = None
) -> dict[str, int]:
    """Batch form of :func:`current_load`; reviewers with no assignments map to 0."""
    ids = list(dict.fromkeys(reviewer_ids))
    loads = {rid: 0 for rid in ids}
    if not ids:
        return loads
    now = now or datetime.now(timezone.utc)
    placeholders = ",".join("?" for _ in ids)
    async with db.execute(
        f"""
        SELECT reviewer_id, COUNT(*) FROM review_assignments
        WHERE reviewer_id IN ({placeholders}) AND {ACTIVE_LOAD_CLAUSE}
        GROUP BY reviewer_id
        """,
        (*ids, to_iso(now)),
    ) as cursor:
        rows = await cursor.fetchall()
    for row in rows:
        loads[row[0]] = int(row[1])
    return loads


def row_to_assignment(row: aiosqlite.Row | dict[str, Any]) -> ReviewAssignment:
    d = dict(row)
    for key in ("invited_at", "due_date", "accepted_at", "declined_at", "submitted_at"):
        d[key] = parse_dt(d.get(key))
    d["form_fields"] = from_json(d.get("form_fields")) or {}
    return ReviewAssignment(**d)


async def _assignments_for(db: aiosqlite.Connection, reviewer_id: str) -> list[ReviewAssignment]:
    async with db.execute(
        "SELECT * FROM review_assignments WHERE reviewer_id = ?", (reviewer_id,)
    ) as cursor:
        rows = await cursor.fetchall()
    return [row_to_assignment(r) for r in rows]


def _completion_days(assignment: ReviewAssignment) -> int | None:
    if assignment.submitted_at is None or assignment.invited_at is None:
        return None
    seconds = (assignment.submitted_at - assignment.invited_at).total_seconds()
    return math.floor(seconds / _SECONDS_PER_DAY)


def compute_statistics(assignments: list[ReviewAssignment]) -> ReviewerStatistics:
    """Pure recomputation of the denormalized reviewer statistics."""
    completed = [a for a in assignments if a.submitted_at is not None]
    declined = [a for a in assignments if a.declined_at is not None]

    days = [d for d in (_completion_days(a) for a in completed) if d is not None]
    ratings = [a.quality_rating for a in assignments if a.quality_rating is not None]

    return ReviewerStatistics(
        total_reviews=len(assignments),
        completed_reviews=len(completed),
        declined_reviews=len(declined),
        avg_completion_days=round(sum(days) / len(days), 2) if days else None,
        avg_quality_rating=round(sum(ratings) / len(ratings), 2) if ratings else None,
        last_review_at=max((a.submitted_at for a in completed), default=None),
    )


async def refresh_statistics(db: aiosqlite.Connection, reviewer_id: str) -> ReviewerStatistics:
    """Recompute and persist a reviewer's statistics, creating the profile if missing."""
    stats = compute_statistics(await _assignments_for(db, reviewer_id))
    await db.execute(
        """
        INSERT INTO reviewer_profiles (
            user_id, max_concurrent_reviews, total_reviews, completed_reviews, declined_reviews,
            avg_completion_days, avg_quality_rating, last_review_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            total_reviews = excluded.total_reviews,
            completed_reviews = excluded.completed_reviews,
            declined_reviews = excluded.declined_reviews,
            avg_completion_days = excluded.avg_completion_days,
            avg_quality_rating = excluded.avg_quality_rating,
            last_review_at = excluded.last_review_at,
            updated_at = excluded.updated_at
        """,
        (
            reviewer_id,
            settings.workflow.default_max_concurrent_reviews,
            stats.total_reviews,
            stats.completed_reviews,
            stats.declined_reviews,
            stats.avg_completion_days,
            stats.avg_quality_rating,
            to_iso(stats.last_review_at),
            now_iso(),
        ),
    )
    await db.commit()
    logger.debug("Refreshed statistics for reviewer %s: %s", reviewer_id, stats.model_dump())
    return stats


async def reviewer_metrics(
    db: aiosqlite.Connection, reviewer_id: str, now: datetime | None = None
) -> ReviewerMetrics:
    """Reporting view: rates, timeliness and recommendation mix for one reviewer."""
    now = now or datetime.now(timezone.utc)
    assignments = await _assignments_for(db, reviewer_id)
    stats = compute_statistics(assignments)

    invited = len(assignments)
    accepted = sum(1 for a in assignments if a.accepted_at is not None)
    declined = stats.declined_reviews
    completed = [a for a in assignments if a.submitted_at is not None]
    on_time = sum(1 for a in completed if a.submitted_at <= a.due_date)
    pending = sum(1 for a in assignments if a.is_active)
    distribution = Counter(a.recommendation.value for a in completed if a.recommendation is not None)

    async with db.execute(
        "SELECT max_concurrent_reviews FROM reviewer_profiles WHERE user_id = ?", (reviewer_id,)
    ) as cursor:
        row = await cursor.fetchone()
    capacity = int(row[0]) if row else settings.workflow.default_max_concurrent_reviews

    def _rate(part: int, whole: int) -> float:
        return round(part / whole, 4) if whole else 0.0

    return ReviewerMetrics(
        reviewer_id=reviewer_id,
        invited=invited,
        accepted=accepted,
        declined=declined,
        completed=len(completed),
        pending=pending,
        acceptance_rate=_rate(accepted, invited),
        completion_rate=_rate(len(completed), invited),
        decline_rate=_rate(declined, invited),
        on_time_rate=_rate(on_time, len(completed)),
        avg_completion_days=stats.avg_completion_days,
        avg_quality_rating=stats.avg_quality_rating,
        recommendation_distribution=dict(distribution),
        current_load=await current_load(db, reviewer_id, now),
        max_concurrent_reviews=capacity,
    )
