"""Review service — invitations, responses, submission, reopening and rating.

Finalization is a one-way gate: every write that depends on an assignment's
state carries that state in its WHERE clause, so the check happens at write
time and a concurrent request cannot slip between read and write.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite
from pydantic import ValidationError as PydanticValidationError

from folio.audit_service import record_event
from folio.config import settings
from folio.database import to_iso, to_json
from folio.errors import AlreadyFinalized, Conflict, Forbidden, NotFound, ValidationError, from_pydantic
from folio.manuscript_service import load_manuscript
from folio.models import (
    AuditAction,
    InviteResponse,
    ManuscriptStatus,
    NotificationEvent,
    ReviewAssignment,
    ReviewSubmission,
    ensure_utc,
)
from folio.notification_service import notify
from folio.permissions import Actor, authorize, require_actor
from folio.profile_service import get_reviewer_profile
from folio.state_machine import request_transition
from folio.workload_tracker import ACTIVE_LOAD_CLAUSE, current_load, refresh_statistics, row_to_assignment

logger = logging.getLogger(__name__)

_OPEN_FOR_INVITES = frozenset({ManuscriptStatus.NEW, ManuscriptStatus.UNDER_REVIEW})


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_review(db: aiosqlite.Connection, review_id: str) -> ReviewAssignment | None:
    async with db.execute(
        "SELECT * FROM review_assignments WHERE review_id = ?", (review_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return row_to_assignment(row) if row else None


async def load_review(db: aiosqlite.Connection, review_id: str) -> ReviewAssignment:
    review = await get_review(db, review_id)
    if review is None:
        raise NotFound("review_not_found", review_id=review_id)
    return review


async def get_reviews(
    db: aiosqlite.Connection,
    manuscript_id: str,
    round_no: int | None = None,
) -> list[ReviewAssignment]:
    """All assignments for a manuscript, optionally restricted to one round."""
    query = "SELECT * FROM review_assignments WHERE manuscript_id = ?"
    params: list[Any] = [manuscript_id]
    if round_no is not None:
        query += " AND round_no = ?"
        params.append(round_no)
    query += " ORDER BY round_no ASC, invited_at ASC"
    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [row_to_assignment(r) for r in rows]


async def get_reviewer_queue(
    db: aiosqlite.Connection,
    reviewer_id: str,
    active_only: bool = True,
) -> list[ReviewAssignment]:
    """A reviewer's assignments, oldest due first."""
    query = "SELECT * FROM review_assignments WHERE reviewer_id = ?"
    if active_only:
        query += " AND submitted_at IS NULL AND declined_at IS NULL"
    query += " ORDER BY due_date ASC"
    async with db.execute(query, (reviewer_id,)) as cursor:
        rows = await cursor.fetchall()
    return [row_to_assignment(r) for r in rows]


async def _has_active_invite(
    db: aiosqlite.Connection, manuscript_id: str, reviewer_id: str, round_no: int
) -> bool:
    async with db.execute(
        """
        SELECT COUNT(*) FROM review_assignments
        WHERE manuscript_id = ? AND reviewer_id = ? AND round_no = ? AND declined_at IS NULL
        """,
        (manuscript_id, reviewer_id, round_no),
    ) as cursor:
        row = await cursor.fetchone()
    return row[0] > 0


async def _refresh_stats_quietly(db: aiosqlite.Connection, reviewer_id: str) -> None:
    try:
        await refresh_statistics(db, reviewer_id)
    except Exception:
        logger.exception("Statistics refresh failed for reviewer %s", reviewer_id)


# ---------------------------------------------------------------------------
# Invite
# ---------------------------------------------------------------------------

async def invite_reviewer(
    db: aiosqlite.Connection,
    actor: Actor | None,
    manuscript_id: str,
    reviewer_id: str,
    round_no: int | None,
    due_date: datetime,
) -> ReviewAssignment:
    """Create a review assignment.

    Inviting onto a NEW manuscript moves it to UNDER_REVIEW in the same commit
    as the assignment insert, so a failed insert leaves it NEW. When capacity
    reservation is on, the insert is conditional on the reviewer's active load
    being under their limit at write time; losing that race fails Conflict.
    """
    actor = authorize(actor, "review:invite")
    reviewer_id = (reviewer_id or "").strip()
    if not reviewer_id:
        raise ValidationError("invalid_payload", fields=[{"field": "reviewer_id", "message": "required"}])

    manuscript = await load_manuscript(db, manuscript_id)
    if reviewer_id == manuscript.author_id:
        raise ValidationError("reviewer_is_author")
    if manuscript.status not in _OPEN_FOR_INVITES:
        raise ValidationError("manuscript_not_open_for_review", status=manuscript.status.value)
    round_no = round_no or manuscript.current_round
    if round_no != manuscript.current_round:
        raise ValidationError("invalid_round", round_no=round_no, current_round=manuscript.current_round)

    now = datetime.now(timezone.utc)
    due = ensure_utc(due_date)
    if due <= now:
        raise ValidationError("due_date_in_past")
    if await _has_active_invite(db, manuscript_id, reviewer_id, round_no):
        raise ValidationError("reviewer_already_invited", reviewer_id=reviewer_id)

    profile = await get_reviewer_profile(db, reviewer_id)
    capacity = (
        profile.max_concurrent_reviews if profile else settings.workflow.default_max_concurrent_reviews
    )
    reserve = settings.workflow.reserve_capacity_on_invite
    if reserve and await current_load(db, reviewer_id, now) >= capacity:
        raise Conflict("reviewer_at_capacity", reviewer_id=reviewer_id, capacity=capacity)

    assignment = ReviewAssignment(
        manuscript_id=manuscript_id,
        reviewer_id=reviewer_id,
        round_no=round_no,
        invited_by=actor.actor_id,
        invited_at=now,
        due_date=due,
    )
    capacity_guard = (
        f"AND (SELECT COUNT(*) FROM review_assignments WHERE reviewer_id = ? AND {ACTIVE_LOAD_CLAUSE}) < ?"
        if reserve
        else ""
    )
    params: list[Any] = [
        assignment.review_id,
        assignment.manuscript_id,
        assignment.reviewer_id,
        assignment.round_no,
        assignment.invited_by,
        to_iso(assignment.invited_at),
        to_iso(assignment.due_date),
        manuscript_id,
        reviewer_id,
        round_no,
    ]
    if reserve:
        params += [reviewer_id, to_iso(now), capacity]
    cursor = await db.execute(
        f"""
        INSERT INTO review_assignments
            (review_id, manuscript_id, reviewer_id, round_no, invited_by, invited_at, due_date)
        SELECT ?, ?, ?, ?, ?, ?, ?
        WHERE NOT EXISTS (
            SELECT 1 FROM review_assignments
            WHERE manuscript_id = ? AND reviewer_id = ? AND round_no = ? AND declined_at IS NULL
        )
        {capacity_guard}
        """,
        params,
    )
    if cursor.rowcount != 1:
        await db.rollback()
        if await _has_active_invite(db, manuscript_id, reviewer_id, round_no):
            raise ValidationError("reviewer_already_invited", reviewer_id=reviewer_id)
        logger.warning("Reviewer %s filled up before invite on %s", reviewer_id, manuscript.code)
        raise Conflict("reviewer_at_capacity", reviewer_id=reviewer_id, capacity=capacity)

    if manuscript.status == ManuscriptStatus.NEW:
        # the transition's commit also commits the pending insert
        try:
            manuscript = await request_transition(
                db, manuscript_id, actor, ManuscriptStatus.UNDER_REVIEW, "Reviewer invited",
                expected_version=manuscript.version,
            )
        except Exception:
            await db.rollback()
            raise
    else:
        await db.commit()

    logger.info("Invited reviewer %s to %s round %d", reviewer_id, manuscript.code, round_no)
    await record_event(
        db,
        AuditAction.REVIEWER_INVITED,
        actor_id=actor.actor_id,
        target_id=assignment.review_id,
        target_type="review",
        details={
            "manuscript_id": manuscript_id,
            "reviewer_id": reviewer_id,
            "round_no": round_no,
            "due_date": to_iso(due),
        },
    )
    await notify(
        db,
        [reviewer_id],
        NotificationEvent.REVIEWER_INVITED,
        manuscript_id=manuscript_id,
        payload={"review_id": assignment.review_id, "due_date": to_iso(due)},
        code=manuscript.code,
    )
    return assignment


# ---------------------------------------------------------------------------
# Respond
# ---------------------------------------------------------------------------

def _parse_response(value: InviteResponse | str) -> InviteResponse:
    if isinstance(value, InviteResponse):
        return value
    try:
        return InviteResponse(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            "invalid_payload", fields=[{"field": "response", "message": "must be accept or decline"}]
        ) from None


async def respond_to_invite(
    db: aiosqlite.Connection,
    actor: Actor | None,
    review_id: str,
    response: InviteResponse | str,
) -> ReviewAssignment:
    """The invited reviewer accepts or declines. A second answer fails AlreadyFinalized."""
    actor = require_actor(actor)
    answer = _parse_response(response)
    review = await load_review(db, review_id)
    if review.reviewer_id != actor.actor_id:
        raise Forbidden("not_assigned_reviewer")

    now = to_iso(datetime.now(timezone.utc))
    if answer == InviteResponse.ACCEPT:
        cursor = await db.execute(
            """
            UPDATE review_assignments SET accepted_at = ?
            WHERE review_id = ? AND accepted_at IS NULL AND declined_at IS NULL AND submitted_at IS NULL
            """,
            (now, review_id),
        )
    else:
        cursor = await db.execute(
            """
            UPDATE review_assignments SET declined_at = ?
            WHERE review_id = ? AND declined_at IS NULL AND submitted_at IS NULL
            """,
            (now, review_id),
        )
    changed = cursor.rowcount
    await db.commit()
    if changed == 0:
        raise AlreadyFinalized("invite_already_answered", review_id=review_id)

    if answer == InviteResponse.DECLINE:
        await _refresh_stats_quietly(db, actor.actor_id)

    manuscript = await load_manuscript(db, review.manuscript_id)
    accepted = answer == InviteResponse.ACCEPT
    await record_event(
        db,
        AuditAction.INVITE_ACCEPTED if accepted else AuditAction.INVITE_DECLINED,
        actor_id=actor.actor_id,
        target_id=review_id,
        target_type="review",
        details={"manuscript_id": review.manuscript_id, "round_no": review.round_no},
    )
    await notify(
        db,
        [review.invited_by],
        NotificationEvent.INVITE_ACCEPTED if accepted else NotificationEvent.INVITE_DECLINED,
        manuscript_id=review.manuscript_id,
        payload={"review_id": review_id, "reviewer_id": actor.actor_id},
        code=manuscript.code,
    )
    return await load_review(db, review_id)


# ---------------------------------------------------------------------------
# Submit / reopen
# ---------------------------------------------------------------------------

async def submit_review(
    db: aiosqlite.Connection,
    actor: Actor | None,
    review_id: str,
    submission: ReviewSubmission | dict[str, Any],
) -> ReviewAssignment:
    """Record the reviewer's recommendation, score and form answers.

    Succeeds only while ``submitted_at`` is NULL at write time.
    """
    actor = require_actor(actor)
    if not isinstance(submission, ReviewSubmission):
        try:
            submission = ReviewSubmission.model_validate(submission)
        except PydanticValidationError as exc:
            raise from_pydantic(exc) from None

    review = await load_review(db, review_id)
    if review.reviewer_id != actor.actor_id:
        raise Forbidden("not_assigned_reviewer")
    if review.declined_at is not None:
        raise AlreadyFinalized("review_declined", review_id=review_id)
    if review.submitted_at is not None:
        raise AlreadyFinalized("review_already_submitted", review_id=review_id)

    manuscript = await load_manuscript(db, review.manuscript_id)
    if manuscript.status != ManuscriptStatus.UNDER_REVIEW:
        raise ValidationError("manuscript_not_under_review", status=manuscript.status.value)
    if review.round_no != manuscript.current_round:
        raise ValidationError(
            "invalid_round", round_no=review.round_no, current_round=manuscript.current_round
        )

    now = to_iso(datetime.now(timezone.utc))
    cursor = await db.execute(
        """
        UPDATE review_assignments
        SET submitted_at = ?, accepted_at = COALESCE(accepted_at, ?),
            recommendation = ?, score = ?, form_fields = ?
        WHERE review_id = ? AND submitted_at IS NULL AND declined_at IS NULL
        """,
        (
            now,
            now,
            submission.recommendation.value,
            submission.score,
            to_json(submission.form_fields),
            review_id,
        ),
    )
    changed = cursor.rowcount
    await db.commit()
    if changed == 0:
        raise AlreadyFinalized("review_already_submitted", review_id=review_id)

    logger.info(
        "Review %s submitted for %s: %s", review_id, manuscript.code, submission.recommendation.value
    )
    await _refresh_stats_quietly(db, actor.actor_id)
    await record_event(
        db,
        AuditAction.REVIEW_SUBMITTED,
        actor_id=actor.actor_id,
        target_id=review_id,
        target_type="review",
        details={
            "manuscript_id": review.manuscript_id,
            "round_no": review.round_no,
            "recommendation": submission.recommendation.value,
            "score": submission.score,
        },
    )
    await notify(
        db,
        [review.invited_by],
        NotificationEvent.REVIEW_SUBMITTED,
        manuscript_id=review.manuscript_id,
        payload={"review_id": review_id, "recommendation": submission.recommendation.value},
        code=manuscript.code,
    )
    return await load_review(db, review_id)


async def reopen_review(
    db: aiosqlite.Connection,
    actor: Actor | None,
    review_id: str,
    reason: str,
) -> ReviewAssignment:
    """Editor clears a submitted review so the reviewer can submit again."""
    actor = authorize(actor, "review:reopen")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason_required")
    review = await load_review(db, review_id)

    cursor = await db.execute(
        """
        UPDATE review_assignments
        SET submitted_at = NULL, recommendation = NULL, score = NULL, quality_rating = NULL,
            reopen_count = reopen_count + 1
        WHERE review_id = ? AND submitted_at IS NOT NULL
        """,
        (review_id,),
    )
    changed = cursor.rowcount
    await db.commit()
    if changed == 0:
        raise ValidationError("review_not_submitted", review_id=review_id)

    logger.info("Review %s reopened by %s", review_id, actor.actor_id)
    await _refresh_stats_quietly(db, review.reviewer_id)
    manuscript = await load_manuscript(db, review.manuscript_id)
    await record_event(
        db,
        AuditAction.REVIEW_REOPENED,
        actor_id=actor.actor_id,
        target_id=review_id,
        target_type="review",
        details={"manuscript_id": review.manuscript_id, "reason": reason},
    )
    await notify(
        db,
        [review.reviewer_id],
        NotificationEvent.REVIEW_REOPENED,
        manuscript_id=review.manuscript_id,
        payload={"review_id": review_id, "reason": reason},
        code=manuscript.code,
    )
    return await load_review(db, review_id)


async def rate_review(
    db: aiosqlite.Connection,
    actor: Actor | None,
    review_id: str,
    quality_rating: int,
) -> ReviewAssignment:
    """Editor rates the quality of a submitted review; feeds the reviewer's average rating."""
    actor = authorize(actor, "review:rate")
    wf = settings.workflow
    if not isinstance(quality_rating, int) or not wf.min_quality_rating <= quality_rating <= wf.max_quality_rating:
        raise ValidationError(
            "invalid_payload",
            fields=[{
                "field": "quality_rating",
                "message": f"must be between {wf.min_quality_rating} and {wf.max_quality_rating}",
            }],
        )
    review = await load_review(db, review_id)
    cursor = await db.execute(
        "UPDATE review_assignments SET quality_rating = ? WHERE review_id = ? AND submitted_at IS NOT NULL",
        (quality_rating, review_id),
    )
    changed = cursor.rowcount
    await db.commit()
    if changed == 0:
        raise ValidationError("review_not_submitted", review_id=review_id)

    await _refresh_stats_quietly(db, review.reviewer_id)
    await record_event(
        db,
        AuditAction.REVIEW_RATED,
        actor_id=actor.actor_id,
        target_id=review_id,
        target_type="review",
        details={"quality_rating": quality_rating},
    )
    return await load_review(db, review_id)
