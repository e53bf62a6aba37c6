"""Folio configuration — all tuneable settings in one place."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_csv(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    vals = [v.strip() for v in raw.split(",") if v.strip()]
    return vals if vals else default


def _default_data_dir() -> Path:
    """Resolve the data directory: $FOLIO_DATA or ./data."""
    env = os.environ.get("FOLIO_DATA")
    if env:
        return Path(env)
    return Path(__file__).resolve().parent.parent / "data"


class WorkflowConfig(BaseModel):
    """Knobs for review assignment, matching and recommendation aggregation."""

    quorum: int = Field(
        default_factory=lambda: _env_int("FOLIO_QUORUM", 2),
        ge=1,
        description="Matching recommendations needed before a rule fires",
    )
    keyword_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    expertise_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    expertise_bonus: float = Field(
        default=0.3, ge=0.0, le=1.0, description="Expertise score when any term overlaps the category"
    )
    min_match_score: float = Field(
        default_factory=lambda: _env_float("FOLIO_MIN_MATCH_SCORE", 0.2),
        ge=0.0,
        le=1.0,
        description="Candidates scoring below this are dropped",
    )
    score_tie_band: float = Field(
        default=0.1, ge=0.0, description="Scores closer than this are ranked by load, then rating"
    )
    default_suggestion_limit: int = Field(default=10, ge=1)
    max_suggestion_limit: int = Field(default=50, ge=1)
    default_max_concurrent_reviews: int = Field(
        default_factory=lambda: _env_int("FOLIO_MAX_CONCURRENT_REVIEWS", 5),
        ge=1,
    )
    reserve_capacity_on_invite: bool = Field(
        default_factory=lambda: _env_bool("FOLIO_RESERVE_CAPACITY", True),
        description="If true, an invite fails when the reviewer is already at capacity",
    )
    review_form_required_fields: list[str] = Field(
        default_factory=lambda: _env_csv(
            "FOLIO_REVIEW_FORM_FIELDS", ["strengths", "weaknesses", "comments"]
        ),
    )
    min_review_score: int = Field(default=1)
    max_review_score: int = Field(default=10)
    min_quality_rating: int = Field(default=1)
    max_quality_rating: int = Field(default=5)
    min_abstract_length: int = Field(default=50, ge=1, description="Minimum abstract char length")
    max_keywords: int = Field(default=10, ge=1)
    production_contacts: list[str] = Field(
        default_factory=lambda: _env_csv("FOLIO_PRODUCTION_CONTACTS", []),
        description="User ids notified on production and publish transitions",
    )


class DeadlineConfig(BaseModel):
    """Default durations for workflow-created deadlines and reminder policy."""

    initial_review_days: int = Field(default=21, ge=1)
    re_review_days: int = Field(default=21, ge=1)
    revision_days: int = Field(default=14, ge=1)
    production_days: int = Field(default=14, ge=1)
    reminder_window_days: int = Field(
        default_factory=lambda: _env_int("FOLIO_REMINDER_WINDOW_DAYS", 3), ge=0
    )
    max_reminders: int = Field(default_factory=lambda: _env_int("FOLIO_MAX_REMINDERS", 2), ge=0)
    urgent_days: int = Field(default=3, ge=0)


class SecurityConfig(BaseModel):
    """Authentication settings for the REST binding."""

    require_api_key: bool = Field(
        default_factory=lambda: _env_bool("FOLIO_REQUIRE_API_KEY", False),
        description=(
            "If true, every request must carry a configured X-API-Key; "
            "otherwise trusted X-Actor-Id / X-Actor-Role headers are accepted"
        ),
    )
    api_keys_json: str = Field(
        default_factory=lambda: os.environ.get("FOLIO_API_KEYS_JSON", ""),
        description=(
            "JSON list of key records: "
            "[{\"key\":\"...\",\"actor_id\":\"...\",\"role\":\"managing_editor\"}]"
        ),
    )


class ServerConfig(BaseModel):
    """Network and transport settings."""

    host: str = Field(default_factory=lambda: os.environ.get("FOLIO_HOST", "127.0.0.1"))
    rest_port: int = Field(default_factory=lambda: _env_int("FOLIO_PORT", 8000))
    mcp_transport: str = Field(
        default_factory=lambda: os.environ.get("FOLIO_MCP_TRANSPORT", "stdio"),
        description="stdio | sse | streamable-http",
    )
    max_request_bytes: int = Field(
        default_factory=lambda: _env_int("FOLIO_MAX_REQUEST_BYTES", 1_000_000),
        ge=1_024,
    )
    workers: int = Field(default_factory=lambda: _env_int("FOLIO_WORKERS", 1), ge=1)
    log_level: str = Field(default_factory=lambda: os.environ.get("FOLIO_LOG_LEVEL", "info"))


class Config(BaseModel):
    """Top-level Folio configuration."""

    locale: str = Field(
        default_factory=lambda: os.environ.get("FOLIO_LOCALE", "en"),
        description="en | vi — language of human-readable reasons and notification titles",
    )
    code_prefix: str = Field(default_factory=lambda: os.environ.get("FOLIO_CODE_PREFIX", "MS"))
    data_dir: Path = Field(default_factory=_default_data_dir)
    db_filename: str = Field(default="folio.db")
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    deadlines: DeadlineConfig = Field(default_factory=DeadlineConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename

    def ensure_dirs(self) -> None:
        """Create the data directory if it doesn't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)


# Singleton: importable everywhere as `from folio.config import settings`
settings = Config()
