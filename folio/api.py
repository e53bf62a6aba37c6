"""REST API — FastAPI endpoints for every editorial workflow operation."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from folio.audit_service import query_events
from folio.auth import get_actor
from folio.config import settings
from folio.database import get_db
from folio.deadline_monitor import list_deadlines, send_deadline_reminders, summarize, sweep_deadlines, upsert_deadline
from folio.decision_aggregator import aggregate_recommendation
from folio.errors import ValidationError, WorkflowError
from folio.manuscript_service import (
    create_category,
    get_decisions,
    get_status_history,
    list_categories,
    list_manuscripts,
    load_manuscript,
    submit_manuscript,
)
from folio.middleware import RequestLoggingMiddleware, RequestSizeLimitMiddleware
from folio.models import AuditAction, DeadlineType, ManuscriptSubmission, ReviewerProfileUpdate
from folio.notification_service import list_notifications, mark_read
from folio.permissions import Actor, authorize
from folio.profile_service import load_reviewer_profile, upsert_reviewer_profile
from folio.review_service import (
    get_reviewer_queue,
    get_reviews,
    invite_reviewer,
    rate_review,
    reopen_review,
    respond_to_invite,
    submit_review,
)
from folio.reviewer_matcher import suggest_reviewers
from folio.state_machine import available_transitions, parse_status, request_transition, submit_revision
from folio.workload_tracker import reviewer_metrics

logging.basicConfig(
    level=settings.server.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Folio",
    description="Editorial workflow engine for a scholarly journal",
    version="0.1.0",
)

app.add_middleware(RequestSizeLimitMiddleware, max_bytes=settings.server.max_request_bytes)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(WorkflowError)
async def _workflow_error_handler(request: Request, exc: WorkflowError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    error = ValidationError("invalid_payload", fields=fields)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def _clamp_limit(limit: int, default: int = 50, max_value: int = 200) -> int:
    if limit <= 0:
        return default
    return min(limit, max_value)


def _parse_deadline_type(value: str) -> DeadlineType:
    try:
        return DeadlineType(value.strip().lower())
    except ValueError:
        raise ValidationError(
            "invalid_payload", fields=[{"field": "deadline_type", "message": f"unknown type '{value}'"}]
        ) from None


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class TransitionRequest(BaseModel):
    target_status: str
    note: str | None = Field(default=None, max_length=5_000)
    expected_version: int | None = None


class RevisionRequest(BaseModel):
    note: str | None = Field(default=None, max_length=5_000)


class InviteRequest(BaseModel):
    reviewer_id: str
    due_date: datetime
    round_no: int | None = None


class InviteResponseRequest(BaseModel):
    response: str


class ReviewSubmitRequest(BaseModel):
    recommendation: str
    score: int
    form_fields: dict[str, str] = Field(default_factory=dict)


class ReopenRequest(BaseModel):
    reason: str = ""


class RatingRequest(BaseModel):
    quality_rating: int


class DeadlineRequest(BaseModel):
    deadline_type: str
    due_date: datetime
    assigned_to: str | None = None
    note: str | None = Field(default=None, max_length=2_000)


class CategoryRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)


# ---------------------------------------------------------------------------
# Manuscripts & transitions
# ---------------------------------------------------------------------------

@app.post("/api/manuscripts", tags=["manuscripts"], status_code=201)
async def api_submit_manuscript(req: ManuscriptSubmission, actor: Actor = Depends(get_actor)):
    db = await get_db()
    try:
        manuscript = await submit_manuscript(db, actor, req)
        return manuscript.model_dump(mode="json")
    finally:
        await db.close()


@app.get("/api/manuscripts", tags=["manuscripts"])
async def api_list_manuscripts(
    status: str | None = None,
    mine: bool = False,
    limit: int = 50,
    actor: Actor = Depends(get_actor),
):
    db = await get_db()
    try:
        items = await list_manuscripts(
            db,
            status=parse_status(status) if status else None,
            author_id=actor.actor_id if mine else None,
            limit=_clamp_limit(limit),
        )
        return [m.model_dump(mode="json") for m in items]
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}", tags=["manuscripts"])
async def api_get_manuscript(manuscript_id: str, actor: Actor = Depends(get_actor)):
    db = await get_db()
    try:
        manuscript = await load_manuscript(db, manuscript_id)
        return manuscript.model_dump(mode="json")
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}/history", tags=["manuscripts"])
async def api_status_history(manuscript_id: str, actor: Actor = Depends(get_actor)):
    db = await get_db()
    try:
        await load_manuscript(db, manuscript_id)
        return [h.model_dump(mode="json") for h in await get_status_history(db, manuscript_id)]
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}/decisions", tags=["manuscripts"])
async def api_decisions(manuscript_id: str, actor: Actor = Depends(get_actor)):
    db = await get_db()
    try:
        await load_manuscript(db, manuscript_id)
        return [d.model_dump(mode="json") for d in await get_decisions(db, manuscript_id)]
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}/transitions", tags=["workflow"])
async def api_available_transitions(manuscript_id: str, actor: Actor = Depends(get_actor)):
    db = await get_db()
    try:
        options = await available_transitions(db, manuscript_id, actor)
        return [o.model_dump(mode="json") for o in options]
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/transitions", tags=["workflow"])
async def api_request_transition(
    manuscript_id: str,
    req: TransitionRequest,
    actor: Actor = Depends(get_actor),
):
    db = await get_db()
    try:
        manuscript = await request_transition(
            db, manuscript_id, actor, req.target_status, req.note, expected_version=req.expected_version
        )
        return manuscript.model_dump(mode="json")
    finally:
        await db.close()


@app.post("/api/manuscripts/{manuscript_id}/revision", tags=["workflow"])
async def api_submit_revision(
    manuscript_id: str,
    req: RevisionRequest,
    actor: Actor = Depends(get_actor),
):
    db = await get_db()
    try:
        manuscript = await submit_revision(db, manuscript_id, actor, req.note)
        return manuscript.model_dump(mode="json")
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------

@app.post("/api/manuscripts/{manuscript_id}/reviews", tags=["reviews"], status_code=201)
async def api_invite_reviewer(
    manuscript_id: str,
    req: InviteRequest,
    actor: Actor = Depends(get_actor),
):
    db = await get_db()
    try:
        assignment = await invite_reviewer(
            db, actor, manuscript_id, req.reviewer_id, req.round_no, req.due_date
        )
        return assignment.model_dump(mode="json")
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}/reviews", tags=["reviews"])
async def api_list_reviews(
    manuscript_id: str,
    round_no: int | None = None,
    actor: Actor = Depends(get_actor),
):
    authorize(actor, "review:list")
    db = await get_db()
    try:
        await load_manuscript(db, manuscript_id)
        return [r.model_dump(mode="json") for r in await get_reviews(db, manuscript_id, round_no)]
    finally:
        await db.close()


@app.get("/api/reviews/queue", tags=["reviews"])
async def api_review_queue(active_only: bool = True, actor: Actor = Depends(get_actor)):
    db = await get_db()
    try:
        queue = await get_reviewer_queue(db, actor.actor_id, active_only=active_only)
        return [r.model_dump(mode="json") for r in queue]
    finally:
        await db.close()


@app.post("/api/reviews/{review_id}/response", tags=["reviews"])
async def api_respond_to_invite(
    review_id: str,
    req: InviteResponseRequest,
    actor: Actor = Depends(get_actor),
):
    db = await get_db()
    try:
        assignment = await respond_to_invite(db, actor, review_id, req.response)
        return assignment.model_dump(mode="json")
    finally:
        await db.close()


@app.post("/api/reviews/{review_id}/submit", tags=["reviews"])
async def api_submit_review(
    review_id: str,
    req: ReviewSubmitRequest,
    actor: Actor = Depends(get_actor),
):
    db = await get_db()
    try:
        assignment = await submit_review(db, actor, review_id, req.model_dump())
        return assignment.model_dump(mode="json")
    finally:
        await db.close()


@app.post("/api/reviews/{review_id}/reopen", tags=["reviews"])
async def api_reopen_review(
    review_id: str,
    req: ReopenRequest,
    actor: Actor = Depends(get_actor),
):
    db = await get_db()
    try:
        assignment = await reopen_review(db, actor, review_id, req.reason)
        return assignment.model_dump(mode="json")
    finally:
        await db.close()


@app.post("/api/reviews/{review_id}/rating", tags=["reviews"])
async def api_rate_review(
    review_id: str,
    req: RatingRequest,
    actor: Actor = Depends(get_actor),
):
    db = await get_db()
    try:
        assignment = await rate_review(db, actor, review_id, req.quality_rating)
        return assignment.model_dump(mode="json")
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Matching & aggregation
# ---------------------------------------------------------------------------

@app.get("/api/manuscripts/{manuscript_id}/reviewer-suggestions", tags=["matching"])
async def api_suggest_reviewers(
    manuscript_id: str,
    exclude: str = "",
    limit: int = 0,
    actor: Actor = Depends(get_actor),
):
    exclude_ids = [e.strip() for e in exclude.split(",") if e.strip()]
    db = await get_db()
    try:
        suggestions = await suggest_reviewers(
            db, actor, manuscript_id, exclude_ids=exclude_ids, limit=limit or None
        )
        return [s.model_dump(mode="json") for s in suggestions]
    finally:
        await db.close()


@app.get("/api/manuscripts/{manuscript_id}/recommendation", tags=["matching"])
async def api_aggregate_recommendation(
    manuscript_id: str,
    round_no: int | None = None,
    actor: Actor = Depends(get_actor),
):
    db = await get_db()
    try:
        result = await aggregate_recommendation(db, actor, manuscript_id, round_no)
        return result.model_dump(mode="json")
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Deadlines
# ---------------------------------------------------------------------------

@app.put("/api/manuscripts/{manuscript_id}/deadlines", tags=["deadlines"])
async def api_upsert_deadline(
    manuscript_id: str,
    req: DeadlineRequest,
    actor: Actor = Depends(get_actor),
):
    deadline_type = _parse_deadline_type(req.deadline_type)
    db = await get_db()
    try:
        deadline = await upsert_deadline(
            db, actor, manuscript_id, deadline_type, req.due_date, req.assigned_to, req.note
        )
        return deadline.model_dump(mode="json")
    finally:
        await db.close()


@app.get("/api/deadlines", tags=["deadlines"])
async def api_list_deadlines(
    manuscript_id: str | None = None,
    mine: bool = False,
    include_completed: bool = True,
    actor: Actor = Depends(get_actor),
):
    if not mine:
        authorize(actor, "deadline:manage")
    db = await get_db()
    try:
        views = await list_deadlines(
            db,
            manuscript_id=manuscript_id,
            assigned_to=actor.actor_id if mine else None,
            include_completed=include_completed,
        )
        return {
            "deadlines": [v.model_dump(mode="json") for v in views],
            "summary": summarize(views),
        }
    finally:
        await db.close()


@app.post("/api/deadlines/sweep", tags=["deadlines"])
async def api_sweep_deadlines(actor: Actor = Depends(get_actor)):
    authorize(actor, "deadline:sweep")
    db = await get_db()
    try:
        report = await sweep_deadlines(db)
        return report.model_dump(mode="json")
    finally:
        await db.close()


@app.post("/api/deadlines/reminders", tags=["deadlines"])
async def api_send_reminders(actor: Actor = Depends(get_actor)):
    authorize(actor, "deadline:sweep")
    db = await get_db()
    try:
        return {"sent": await send_deadline_reminders(db)}
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Reviewer profiles
# ---------------------------------------------------------------------------

@app.put("/api/reviewers/{user_id}/profile", tags=["reviewers"])
async def api_upsert_profile(
    user_id: str,
    req: ReviewerProfileUpdate,
    actor: Actor = Depends(get_actor),
):
    db = await get_db()
    try:
        profile = await upsert_reviewer_profile(db, actor, user_id, req)
        return profile.model_dump(mode="json")
    finally:
        await db.close()


@app.get("/api/reviewers/{user_id}/profile", tags=["reviewers"])
async def api_get_profile(user_id: str, actor: Actor = Depends(get_actor)):
    db = await get_db()
    try:
        profile = await load_reviewer_profile(db, user_id)
        return profile.model_dump(mode="json")
    finally:
        await db.close()


@app.get("/api/reviewers/{user_id}/metrics", tags=["reviewers"])
async def api_reviewer_metrics(user_id: str, actor: Actor = Depends(get_actor)):
    if actor.actor_id != user_id:
        authorize(actor, "reviewer:view_metrics")
    db = await get_db()
    try:
        metrics = await reviewer_metrics(db, user_id)
        return metrics.model_dump(mode="json")
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

@app.post("/api/categories", tags=["categories"], status_code=201)
async def api_create_category(req: CategoryRequest, actor: Actor = Depends(get_actor)):
    db = await get_db()
    try:
        category = await create_category(db, actor, req.name)
        return category.model_dump(mode="json")
    finally:
        await db.close()


@app.get("/api/categories", tags=["categories"])
async def api_list_categories():
    db = await get_db()
    try:
        return [c.model_dump(mode="json") for c in await list_categories(db)]
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Notifications & audit
# ---------------------------------------------------------------------------

@app.get("/api/notifications", tags=["notifications"])
async def api_list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    actor: Actor = Depends(get_actor),
):
    db = await get_db()
    try:
        items = await list_notifications(db, actor.actor_id, unread_only, _clamp_limit(limit))
        return [n.model_dump(mode="json") for n in items]
    finally:
        await db.close()


@app.post("/api/notifications/{notification_id}/read", tags=["notifications"])
async def api_mark_notification_read(notification_id: str, actor: Actor = Depends(get_actor)):
    db = await get_db()
    try:
        return {"updated": await mark_read(db, actor.actor_id, notification_id)}
    finally:
        await db.close()


@app.get("/api/audit", tags=["audit"])
async def api_audit_log(
    target_id: str | None = None,
    actor_id: str | None = None,
    action: str | None = None,
    limit: int = 50,
    actor: Actor = Depends(get_actor),
):
    authorize(actor, "audit:read")
    try:
        parsed = AuditAction(action) if action else None
    except ValueError:
        raise ValidationError(
            "invalid_payload", fields=[{"field": "action", "message": f"unknown action '{action}'"}]
        ) from None
    db = await get_db()
    try:
        events = await query_events(
            db, target_id=target_id, actor_id=actor_id, action=parsed, limit=_clamp_limit(limit)
        )
        return [e.model_dump(mode="json") for e in events]
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Ops
# ---------------------------------------------------------------------------

@app.get("/healthz", tags=["ops"])
async def healthz():
    """Liveness probe."""
    return {"status": "ok"}


@app.get("/readyz", tags=["ops"])
async def readyz():
    """Readiness probe (DB connectivity)."""
    db = await get_db()
    try:
        async with db.execute("SELECT 1") as cursor:
            _ = await cursor.fetchone()
        return {"status": "ready"}
    finally:
        await db.close()
