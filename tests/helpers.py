"""Test helpers: in-memory databases, actors and a small journal builder."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import aiosqlite

from folio.database import SCHEMA_SQL
from folio.manuscript_service import load_manuscript, submit_manuscript
from folio.models import Manuscript, ManuscriptStatus, ManuscriptSubmission, ReviewAssignment
from folio.permissions import Actor, make_actor
from folio.profile_service import upsert_reviewer_profile
from folio.review_service import invite_reviewer, submit_review


EDITOR = make_actor("editor-1", "section_editor")
EIC = make_actor("eic-1", "eic")
AUTHOR = make_actor("author-1", "author")

ABSTRACT = (
    "We study how editorial workflows behave under concurrent reviewer "
    "assignment and report the resulting throughput characteristics."
)


async def memory_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await db.executescript(SCHEMA_SQL)
    await db.execute("PRAGMA foreign_keys = ON;")
    await db.commit()
    return db


def in_days(days: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


class Journal:
    """Builder for realistic fixtures on top of the public service functions."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def submit(
        self,
        author: Actor = AUTHOR,
        keywords: list[str] | None = None,
        title: str = "Queueing models for peer review",
        category_id: str | None = None,
    ) -> Manuscript:
        return await submit_manuscript(
            self.db,
            author,
            ManuscriptSubmission(
                title=title,
                abstract=ABSTRACT,
                keywords=keywords or ["peer review", "queueing", "workflow"],
                category_id=category_id,
            ),
        )

    async def force_status(
        self, manuscript_id: str, status: ManuscriptStatus, current_round: int | None = None
    ) -> Manuscript:
        """Put a manuscript straight into ``status`` (test setup only)."""
        if current_round is None:
            await self.db.execute(
                "UPDATE manuscripts SET status = ? WHERE manuscript_id = ?",
                (status.value, manuscript_id),
            )
        else:
            await self.db.execute(
                "UPDATE manuscripts SET status = ?, current_round = ? WHERE manuscript_id = ?",
                (status.value, current_round, manuscript_id),
            )
        await self.db.commit()
        return await load_manuscript(self.db, manuscript_id)

    async def profile(
        self,
        user_id: str,
        keywords: list[str] | None = None,
        expertise: list[str] | None = None,
        max_concurrent_reviews: int = 5,
        unavailable_until: datetime | None = None,
    ):
        return await upsert_reviewer_profile(
            self.db,
            make_actor(user_id, "reviewer"),
            user_id,
            {
                "keywords": keywords or [],
                "expertise": expertise or [],
                "max_concurrent_reviews": max_concurrent_reviews,
                "unavailable_until": unavailable_until,
            },
        )

    async def invite(
        self, manuscript_id: str, reviewer_id: str, due_in_days: float = 14, editor: Actor = EDITOR
    ) -> ReviewAssignment:
        return await invite_reviewer(self.db, editor, manuscript_id, reviewer_id, None, in_days(due_in_days))

    async def review(
        self, assignment: ReviewAssignment, recommendation: str, score: int = 6
    ) -> ReviewAssignment:
        return await submit_review(
            self.db,
            make_actor(assignment.reviewer_id, "reviewer"),
            assignment.review_id,
            review_payload(recommendation, score),
        )


def review_payload(recommendation: str, score: int = 6) -> dict:
    return {
        "recommendation": recommendation,
        "score": score,
        "form_fields": {
            "strengths": "Clear problem statement.",
            "weaknesses": "Evaluation is narrow.",
            "comments": "Consider a second dataset.",
        },
    }


