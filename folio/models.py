"""Domain models for the Folio editorial workflow.

Every entity in the system is defined here as a Pydantic v2 model.
These models are shared across services, storage, MCP tools, and the REST API.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from folio.config import settings


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ManuscriptStatus(str, Enum):
    """Lifecycle states of a manuscript. Changes only through the state machine."""

    NEW = "new"
    DESK_REJECT = "desk_reject"
    UNDER_REVIEW = "under_review"
    REVISION = "revision"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_PRODUCTION = "in_production"
    PUBLISHED = "published"


class Role(str, Enum):
    """Actor roles supplied by the authentication provider."""

    READER = "reader"
    AUTHOR = "author"
    REVIEWER = "reviewer"
    SECTION_EDITOR = "section_editor"
    MANAGING_EDITOR = "managing_editor"
    EIC = "eic"
    LAYOUT_EDITOR = "layout_editor"
    SYSADMIN = "sysadmin"
    SECURITY_AUDITOR = "security_auditor"


class Recommendation(str, Enum):
    """A reviewer's categorical verdict."""

    ACCEPT = "accept"
    MINOR = "minor"
    MAJOR = "major"
    REJECT = "reject"


class DeadlineType(str, Enum):
    INITIAL_REVIEW = "initial_review"
    REVISION_SUBMIT = "revision_submit"
    RE_REVIEW = "re_review"
    EDITOR_DECISION = "editor_decision"
    PRODUCTION = "production"
    PUBLICATION = "publication"


class InviteResponse(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


class DeadlineBucket(str, Enum):
    OVERDUE = "overdue"
    URGENT = "urgent"
    UPCOMING = "upcoming"
    COMPLETED = "completed"
    CLOSED = "closed"


class AuditAction(str, Enum):
    """Actions tracked in the append-only audit log."""

    MANUSCRIPT_SUBMITTED = "manuscript_submitted"
    STATUS_CHANGED = "status_changed"
    DECISION_RECORDED = "decision_recorded"
    REVISION_SUBMITTED = "revision_submitted"
    REVIEWER_INVITED = "reviewer_invited"
    INVITE_ACCEPTED = "invite_accepted"
    INVITE_DECLINED = "invite_declined"
    REVIEW_SUBMITTED = "review_submitted"
    REVIEW_REOPENED = "review_reopened"
    REVIEW_RATED = "review_rated"
    DEADLINE_UPSERTED = "deadline_upserted"
    DEADLINE_COMPLETED = "deadline_completed"
    DEADLINE_CLOSED = "deadline_closed"
    DEADLINE_OVERDUE = "deadline_overdue"
    PROFILE_UPDATED = "profile_updated"
    CATEGORY_CREATED = "category_created"


class NotificationEvent(str, Enum):
    STATUS_CHANGED = "status_changed"
    REVIEWER_INVITED = "reviewer_invited"
    INVITE_ACCEPTED = "invite_accepted"
    INVITE_DECLINED = "invite_declined"
    REVIEW_SUBMITTED = "review_submitted"
    REVIEW_REOPENED = "review_reopened"
    REVISION_REQUESTED = "revision_requested"
    DECISION_MADE = "decision_made"
    PRODUCTION_STARTED = "production_started"
    PAPER_PUBLISHED = "paper_published"
    DEADLINE_ASSIGNED = "deadline_assigned"
    DEADLINE_APPROACHING = "deadline_approaching"
    DEADLINE_OVERDUE = "deadline_overdue"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_keywords(raw: list[str]) -> list[str]:
    """Trim, drop blanks and de-duplicate case-insensitively, keeping first spelling."""
    seen: set[str] = set()
    out: list[str] = []
    for kw in raw:
        text = str(kw).strip()
        key = text.lower()
        if not text or key in seen:
            continue
        seen.add(key)
        out.append(text)
    return out


class _UtcModel(BaseModel):
    """Base model whose datetime fields are always timezone-aware UTC."""

    @field_validator("*", mode="after")
    @classmethod
    def _utc_datetimes(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return ensure_utc(value)
        return value


# ---------------------------------------------------------------------------
# Categories & manuscripts
# ---------------------------------------------------------------------------

class Category(_UtcModel):
    category_id: str = Field(default_factory=_uuid)
    name: str
    created_at: datetime = Field(default_factory=_now)


class ManuscriptSubmission(BaseModel):
    """Input for submit_manuscript. Screening rules run in the service."""

    title: str = Field(default="", max_length=500)
    abstract: str = Field(default="", max_length=20_000)
    keywords: list[str] = Field(default_factory=list)
    category_id: str | None = None

    @field_validator("title", "abstract")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("keywords")
    @classmethod
    def _clean_keywords(cls, value: list[str]) -> list[str]:
        return normalize_keywords(value)


class Manuscript(_UtcModel):
    """A submitted work tracked through the editorial lifecycle."""

    manuscript_id: str = Field(default_factory=_uuid)
    code: str
    title: str
    abstract: str = ""
    keywords: list[str] = Field(default_factory=list)
    category_id: str | None = None
    author_id: str
    status: ManuscriptStatus = ManuscriptStatus.NEW
    version: int = 1  # bumped on every status change; compare-and-swap token
    current_round: int = 1
    created_at: datetime = Field(default_factory=_now)
    last_status_change_at: datetime = Field(default_factory=_now)


class StatusHistoryEntry(_UtcModel):
    entry_id: str = Field(default_factory=_uuid)
    manuscript_id: str
    from_status: ManuscriptStatus | None = None
    to_status: ManuscriptStatus
    actor_id: str
    actor_role: Role
    note: str | None = None
    changed_at: datetime = Field(default_factory=_now)


class Decision(_UtcModel):
    """One editorial decision. Append-only history, never updated."""

    decision_id: str = Field(default_factory=_uuid)
    manuscript_id: str
    editor_id: str
    decision: ManuscriptStatus
    round_no: int = 1
    note: str | None = None
    decided_at: datetime = Field(default_factory=_now)


class TransitionOption(BaseModel):
    """A next status reachable from the current one, and whether this actor may apply it."""

    target: ManuscriptStatus
    label: str
    allowed: bool


# ---------------------------------------------------------------------------
# Review assignments
# ---------------------------------------------------------------------------

class ReviewAssignment(_UtcModel):
    """One reviewer's assignment on one manuscript round."""

    review_id: str = Field(default_factory=_uuid)
    manuscript_id: str
    reviewer_id: str
    round_no: int = Field(default=1, ge=1)
    invited_by: str = ""
    invited_at: datetime = Field(default_factory=_now)
    due_date: datetime
    accepted_at: datetime | None = None
    declined_at: datetime | None = None
    submitted_at: datetime | None = None
    recommendation: Recommendation | None = None
    score: int | None = None
    form_fields: dict[str, str] = Field(default_factory=dict)
    quality_rating: int | None = None
    reopen_count: int = 0

    @model_validator(mode="after")
    def _check_finalization(self) -> "ReviewAssignment":
        if self.submitted_at is not None and self.declined_at is not None:
            raise ValueError("submitted_at and declined_at are mutually exclusive")
        if self.recommendation is not None and self.submitted_at is None:
            raise ValueError("a recommendation requires submitted_at")
        return self

    @property
    def is_active(self) -> bool:
        return self.submitted_at is None and self.declined_at is None


class ReviewSubmission(BaseModel):
    """What a reviewer sends when submitting a review."""

    recommendation: Recommendation
    score: int
    form_fields: dict[str, str] = Field(default_factory=dict)

    @field_validator("score")
    @classmethod
    def _score_in_range(cls, value: int) -> int:
        wf = settings.workflow
        if not wf.min_review_score <= value <= wf.max_review_score:
            raise ValueError(
                f"score must be between {wf.min_review_score} and {wf.max_review_score}"
            )
        return value

    @field_validator("form_fields")
    @classmethod
    def _required_fields(cls, value: dict[str, str]) -> dict[str, str]:
        cleaned = {k: str(v).strip() for k, v in value.items()}
        missing = [f for f in settings.workflow.review_form_required_fields if not cleaned.get(f)]
        if missing:
            raise ValueError(f"missing required form fields: {', '.join(missing)}")
        return cleaned


# ---------------------------------------------------------------------------
# Reviewer profiles & matching
# ---------------------------------------------------------------------------

class ReviewerProfile(_UtcModel):
    """Reviewer expertise, capacity and denormalized statistics (1:1 with a user)."""

    user_id: str
    expertise: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    max_concurrent_reviews: int = Field(
        default_factory=lambda: settings.workflow.default_max_concurrent_reviews, ge=0
    )
    unavailable_until: datetime | None = None
    total_reviews: int = 0
    completed_reviews: int = 0
    declined_reviews: int = 0
    avg_completion_days: float | None = None
    avg_quality_rating: float | None = None
    last_review_at: datetime | None = None
    updated_at: datetime = Field(default_factory=_now)


class ReviewerProfileUpdate(BaseModel):
    """Editable profile fields. Statistics are never writable here."""

    expertise: list[str] | None = None
    keywords: list[str] | None = None
    max_concurrent_reviews: int | None = Field(default=None, ge=0, le=100)
    unavailable_until: datetime | None = None
    clear_unavailable: bool = False

    @field_validator("expertise", "keywords")
    @classmethod
    def _clean_terms(cls, value: list[str] | None) -> list[str] | None:
        return normalize_keywords(value) if value is not None else None


class ReviewerStatistics(BaseModel):
    """Derived figures recomputed from a reviewer's assignment history."""

    total_reviews: int = 0
    completed_reviews: int = 0
    declined_reviews: int = 0
    avg_completion_days: float | None = None
    avg_quality_rating: float | None = None
    last_review_at: datetime | None = None


class ReviewerSuggestion(BaseModel):
    reviewer_id: str
    match_score: float
    keyword_score: float
    expertise_score: float
    current_load: int
    max_concurrent_reviews: int
    avg_quality_rating: float | None = None
    matched_keywords: list[str] = Field(default_factory=list)


class ReviewerMetrics(BaseModel):
    """Reporting view of one reviewer's track record."""

    reviewer_id: str
    invited: int = 0
    accepted: int = 0
    declined: int = 0
    completed: int = 0
    pending: int = 0
    acceptance_rate: float = 0.0
    completion_rate: float = 0.0
    decline_rate: float = 0.0
    on_time_rate: float = 0.0
    avg_completion_days: float | None = None
    avg_quality_rating: float | None = None
    recommendation_distribution: dict[str, int] = Field(default_factory=dict)
    current_load: int = 0
    max_concurrent_reviews: int = 0


# ---------------------------------------------------------------------------
# Deadlines
# ---------------------------------------------------------------------------

class Deadline(_UtcModel):
    deadline_id: str = Field(default_factory=_uuid)
    manuscript_id: str
    deadline_type: DeadlineType
    due_date: datetime
    assigned_to: str | None = None
    completed_at: datetime | None = None
    closed_reason: str | None = None  # set when closed without being fulfilled
    is_overdue: bool = False  # cached; recomputed by the deadline monitor
    reminders_sent: int = 0
    note: str | None = None
    created_by: str = ""
    created_at: datetime = Field(default_factory=_now)


class DeadlineView(Deadline):
    """Deadline annotated for display."""

    days_remaining: int | None = None
    bucket: DeadlineBucket = DeadlineBucket.UPCOMING
    label: str = ""


class SweepReport(_UtcModel):
    checked: int = 0
    newly_overdue: int = 0
    cleared: int = 0
    unchanged: int = 0
    swept_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Recommendation aggregation
# ---------------------------------------------------------------------------

class PolicyRuleEvaluation(BaseModel):
    """Result of evaluating a single aggregation rule."""

    rule_name: str
    input_data: dict[str, Any] = Field(default_factory=dict)
    result: bool
    explanation: str = ""


class AggregationResult(BaseModel):
    """Advisory outcome of a review round. Never applied automatically."""

    manuscript_id: str = ""
    round_no: int = 1
    suggestion: ManuscriptStatus | None = None
    manual_decision_required: bool = True
    counts: dict[str, int] = Field(default_factory=dict)
    review_count: int = 0
    rule_evaluations: list[PolicyRuleEvaluation] = Field(default_factory=list)
    explanation: str = ""


# ---------------------------------------------------------------------------
# Audit & notifications
# ---------------------------------------------------------------------------

class AuditEvent(_UtcModel):
    """An immutable record in the audit log."""

    event_id: str = Field(default_factory=_uuid)
    action: AuditAction
    actor_id: str = ""
    target_id: str = ""
    target_type: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)


class Notification(_UtcModel):
    notification_id: str = Field(default_factory=_uuid)
    recipient_id: str
    event: NotificationEvent
    title: str
    manuscript_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    read_at: datetime | None = None
