"""MCP server — exposes the editorial workflow to agent clients.

Every tool takes the caller's ``actor_id`` and ``role`` explicitly; the same
permission checks as the REST API apply. Workflow errors come back as JSON
objects with ``error``, ``code`` and ``detail`` keys instead of raising.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from fastmcp import FastMCP

from folio.database import get_db
from folio.deadline_monitor import list_deadlines, summarize, sweep_deadlines, upsert_deadline
from folio.decision_aggregator import aggregate_recommendation
from folio.errors import ValidationError, WorkflowError
from folio.manuscript_service import (
    get_decisions,
    get_status_history,
    list_categories,
    list_manuscripts,
    load_manuscript,
    submit_manuscript,
)
from folio.models import DeadlineType
from folio.notification_service import list_notifications
from folio.permissions import authorize, make_actor
from folio.profile_service import upsert_reviewer_profile
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


def _dump(value: Any) -> str:
    if isinstance(value, list):
        value = [v.model_dump(mode="json") if hasattr(v, "model_dump") else v for v in value]
    elif hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    return json.dumps(value, default=str, indent=2)


def _error(exc: WorkflowError) -> str:
    return json.dumps(exc.to_dict(), default=str, indent=2)


def _parse_datetime(value: str, field: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(
            "invalid_payload", fields=[{"field": field, "message": "expected an ISO-8601 timestamp"}]
        ) from None


# ---------------------------------------------------------------------------
# Create MCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "Folio editorial workflow",
    instructions=(
        "Editorial workflow for a scholarly journal: submit manuscripts, move them "
        "through review, invite reviewers, aggregate recommendations and track deadlines. "
        "Every tool needs your actor_id and role (author, reviewer, section_editor, "
        "managing_editor, eic, layout_editor, ...)."
    ),
)


# ===================================================================
# TOOLS
# ===================================================================

# ---- Manuscripts ----

@mcp.tool()
async def submit_manuscript_tool(
    actor_id: str,
    role: str,
    title: str,
    abstract: str,
    keywords: list[str],
    category_id: str | None = None,
) -> str:
    """Submit a new manuscript. It enters the workflow in status 'new' with a journal code."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        submission = {"title": title, "abstract": abstract, "keywords": keywords, "category_id": category_id}
        return _dump(await submit_manuscript(db, actor, submission))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def get_manuscript_tool(manuscript_id: str) -> str:
    """Look up a manuscript with its status history and recorded decisions."""
    db = await get_db()
    try:
        manuscript = await load_manuscript(db, manuscript_id)
        return json.dumps({
            "manuscript": manuscript.model_dump(mode="json"),
            "history": [h.model_dump(mode="json") for h in await get_status_history(db, manuscript_id)],
            "decisions": [d.model_dump(mode="json") for d in await get_decisions(db, manuscript_id)],
        }, default=str, indent=2)
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def list_manuscripts_tool(status: str | None = None, limit: int = 50) -> str:
    """List manuscripts, newest first, optionally filtered by status."""
    db = await get_db()
    try:
        items = await list_manuscripts(
            db, status=parse_status(status) if status else None, limit=max(1, min(limit, 200))
        )
        return _dump(items)
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


# ---- Workflow ----

@mcp.tool()
async def available_transitions_tool(actor_id: str, role: str, manuscript_id: str) -> str:
    """Show which status changes are legal from the current status and which you may perform."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        return _dump(await available_transitions(db, manuscript_id, actor))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def request_transition_tool(
    actor_id: str,
    role: str,
    manuscript_id: str,
    target_status: str,
    note: str = "",
    expected_version: int | None = None,
) -> str:
    """
    Move a manuscript to a new status.

    Pass expected_version (from the manuscript you read) to fail instead of
    overwriting a change someone else made in the meantime.
    """
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        manuscript = await request_transition(
            db, manuscript_id, actor, target_status, note or None, expected_version=expected_version
        )
        return _dump(manuscript)
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def submit_revision_tool(actor_id: str, role: str, manuscript_id: str, note: str = "") -> str:
    """Author sends a revised manuscript back to review; this opens a new review round."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        return _dump(await submit_revision(db, manuscript_id, actor, note or None))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


# ---- Reviews ----

@mcp.tool()
async def suggest_reviewers_tool(
    actor_id: str,
    role: str,
    manuscript_id: str,
    exclude_ids: list[str] | None = None,
    limit: int = 10,
) -> str:
    """Rank available reviewers by keyword overlap and category expertise."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        return _dump(await suggest_reviewers(db, actor, manuscript_id, exclude_ids, limit))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def invite_reviewer_tool(
    actor_id: str,
    role: str,
    manuscript_id: str,
    reviewer_id: str,
    due_date: str,
    round_no: int | None = None,
) -> str:
    """Invite a reviewer for the current round. due_date is an ISO-8601 timestamp."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        due = _parse_datetime(due_date, "due_date")
        return _dump(await invite_reviewer(db, actor, manuscript_id, reviewer_id, round_no, due))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def respond_to_invite_tool(actor_id: str, role: str, review_id: str, response: str) -> str:
    """Accept or decline a review invitation (response: accept | decline)."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        return _dump(await respond_to_invite(db, actor, review_id, response))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def submit_review_tool(
    actor_id: str,
    role: str,
    review_id: str,
    recommendation: str,
    score: int,
    strengths: str,
    weaknesses: str,
    comments: str,
) -> str:
    """
    Submit your review.

    Recommendation: accept, minor, major, reject. Score: 1-10.
    """
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        payload = {
            "recommendation": recommendation,
            "score": score,
            "form_fields": {"strengths": strengths, "weaknesses": weaknesses, "comments": comments},
        }
        return _dump(await submit_review(db, actor, review_id, payload))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def reopen_review_tool(actor_id: str, role: str, review_id: str, reason: str) -> str:
    """Editor reopens a submitted review so the reviewer can revise it."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        return _dump(await reopen_review(db, actor, review_id, reason))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def rate_review_tool(actor_id: str, role: str, review_id: str, quality_rating: int) -> str:
    """Editor rates a submitted review's quality (1-5)."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        return _dump(await rate_review(db, actor, review_id, quality_rating))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def list_reviews_tool(actor_id: str, role: str, manuscript_id: str, round_no: int | None = None) -> str:
    """Editor view of all review assignments for a manuscript."""
    db = await get_db()
    try:
        authorize(make_actor(actor_id, role), "review:list")
        await load_manuscript(db, manuscript_id)
        return _dump(await get_reviews(db, manuscript_id, round_no))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def my_review_queue_tool(actor_id: str, role: str) -> str:
    """Your open review assignments, oldest due first."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        return _dump(await get_reviewer_queue(db, actor.actor_id))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def aggregate_recommendation_tool(
    actor_id: str, role: str, manuscript_id: str, round_no: int | None = None
) -> str:
    """Suggest a decision from the round's submitted recommendations, with the rule trace."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        return _dump(await aggregate_recommendation(db, actor, manuscript_id, round_no))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


# ---- Reviewers ----

@mcp.tool()
async def update_reviewer_profile_tool(
    actor_id: str,
    role: str,
    user_id: str,
    expertise: list[str] | None = None,
    keywords: list[str] | None = None,
    max_concurrent_reviews: int | None = None,
    unavailable_until: str | None = None,
    clear_unavailable: bool = False,
) -> str:
    """Create or update a reviewer profile. Reviewers may edit their own; editors any."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        update = {
            "expertise": expertise,
            "keywords": keywords,
            "max_concurrent_reviews": max_concurrent_reviews,
            "unavailable_until": unavailable_until,
            "clear_unavailable": clear_unavailable,
        }
        return _dump(await upsert_reviewer_profile(db, actor, user_id, update))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def reviewer_metrics_tool(actor_id: str, role: str, reviewer_id: str) -> str:
    """Timeliness, acceptance and recommendation mix for one reviewer."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        if actor.actor_id != reviewer_id:
            authorize(actor, "reviewer:view_metrics")
        return _dump(await reviewer_metrics(db, reviewer_id))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


# ---- Deadlines ----

@mcp.tool()
async def set_deadline_tool(
    actor_id: str,
    role: str,
    manuscript_id: str,
    deadline_type: str,
    due_date: str,
    assigned_to: str | None = None,
    note: str = "",
) -> str:
    """Set or move a workflow deadline (initial_review, revision_submit, re_review, ...)."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        try:
            dtype = DeadlineType(deadline_type.strip().lower())
        except ValueError:
            raise ValidationError(
                "invalid_payload",
                fields=[{"field": "deadline_type", "message": f"unknown type '{deadline_type}'"}],
            ) from None
        due = _parse_datetime(due_date, "due_date")
        return _dump(await upsert_deadline(db, actor, manuscript_id, dtype, due, assigned_to, note or None))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def list_deadlines_tool(
    actor_id: str,
    role: str,
    manuscript_id: str | None = None,
    mine: bool = False,
) -> str:
    """Deadlines with days remaining and urgency bucket, plus a bucket summary."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        if not mine:
            authorize(actor, "deadline:manage")
        views = await list_deadlines(
            db, manuscript_id=manuscript_id, assigned_to=actor.actor_id if mine else None
        )
        return json.dumps({
            "deadlines": [v.model_dump(mode="json") for v in views],
            "summary": summarize(views),
        }, default=str, indent=2)
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def sweep_deadlines_tool(actor_id: str, role: str) -> str:
    """Recompute overdue flags for all open deadlines."""
    db = await get_db()
    try:
        authorize(make_actor(actor_id, role), "deadline:sweep")
        return _dump(await sweep_deadlines(db))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.tool()
async def my_notifications_tool(actor_id: str, role: str, unread_only: bool = True) -> str:
    """Your workflow notifications, newest first."""
    db = await get_db()
    try:
        actor = make_actor(actor_id, role)
        return _dump(await list_notifications(db, actor.actor_id, unread_only))
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


# ===================================================================
# RESOURCES
# ===================================================================

@mcp.resource("folio://manuscripts/{manuscript_id}")
async def manuscript_resource(manuscript_id: str) -> str:
    """Read a manuscript by id."""
    db = await get_db()
    try:
        manuscript = await load_manuscript(db, manuscript_id)
        return _dump(manuscript)
    except WorkflowError as exc:
        return _error(exc)
    finally:
        await db.close()


@mcp.resource("folio://manuscripts/{manuscript_id}/history")
async def manuscript_history_resource(manuscript_id: str) -> str:
    """Status history of a manuscript, oldest first."""
    db = await get_db()
    try:
        return _dump(await get_status_history(db, manuscript_id))
    finally:
        await db.close()


@mcp.resource("folio://categories")
async def categories_resource() -> str:
    """Subject categories manuscripts can be filed under."""
    db = await get_db()
    try:
        return _dump(await list_categories(db))
    finally:
        await db.close()


# ===================================================================
# PROMPTS
# ===================================================================

@mcp.prompt()
def triage_manuscript(manuscript_id: str) -> str:
    """Guide an editor agent through triaging a new submission."""
    return f"""You are the handling editor for manuscript {manuscript_id}.

1. READ: Use get_manuscript_tool to read the title, abstract and keywords.

2. SCOPE CHECK: If the work is clearly out of scope, use request_transition_tool
   with target_status "desk_reject" and a note explaining why.

3. FIND REVIEWERS: Use suggest_reviewers_tool. Prefer high scores; among close
   scores the list already favors reviewers with lighter load.

4. INVITE: Use invite_reviewer_tool for at least two reviewers with a due date
   about three weeks out. The first invitation moves the manuscript to under_review.

5. FOLLOW UP: Check list_deadlines_tool for overdue reviews."""


@mcp.prompt()
def make_decision(manuscript_id: str) -> str:
    """Guide an editor agent through recording a decision after review."""
    return f"""You are deciding on manuscript {manuscript_id}.

1. AGGREGATE: Use aggregate_recommendation_tool. Read every rule evaluation.

2. If manual_decision_required is true, the reviewers disagree. Read the
   reviews with list_reviews_tool and weigh them yourself.

3. DECIDE: Use available_transitions_tool to see your options, then
   request_transition_tool with revision, accepted or rejected. Pass the
   manuscript's version as expected_version.

The aggregated suggestion is advisory; the decision is yours."""
