"""Storage layer — SQLite for every workflow entity.

Provides:
- async SQLite connection via aiosqlite
- schema creation
- manuscript code generator (MS-YYYY-NNNNN)
- JSON and timestamp helpers for TEXT columns
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from folio.config import settings
from folio.models import ensure_utc

# ---------------------------------------------------------------------------
# Manuscript code generator
# ---------------------------------------------------------------------------


def _current_year() -> int:
    return datetime.now(timezone.utc).year


async def generate_manuscript_code(db: aiosqlite.Connection) -> str:
    """Reserve the next sequential manuscript code: MS-YYYY-NNNNN.

    The caller owns the transaction; the sequence bump commits with it.
    """
    year = _current_year()
    await db.execute(
        """
        INSERT INTO id_sequence (year, seq) VALUES (?, 1)
        ON CONFLICT(year) DO UPDATE SET seq = seq + 1
        """,
        (year,),
    )
    async with db.execute("SELECT seq FROM id_sequence WHERE year = ?", (year,)) as cursor:
        row = await cursor.fetchone()
    return f"{settings.code_prefix}-{year}-{row[0]:05d}"


# ---------------------------------------------------------------------------
# SQLite Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
-- Manuscript code sequence tracker
CREATE TABLE IF NOT EXISTS id_sequence (
    year     INTEGER PRIMARY KEY,
    seq      INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS categories (
    category_id  TEXT PRIMARY KEY,
    name         TEXT NOT NULL UNIQUE COLLATE NOCASE,
    created_at   TEXT NOT NULL
);

-- Manuscripts; status changes only through the state machine (version = CAS token)
CREATE TABLE IF NOT EXISTS manuscripts (
    manuscript_id          TEXT PRIMARY KEY,
    code                   TEXT NOT NULL UNIQUE,
    title                  TEXT NOT NULL,
    abstract               TEXT NOT NULL DEFAULT '',
    keywords               TEXT NOT NULL DEFAULT '[]',
    category_id            TEXT,
    author_id              TEXT NOT NULL,
    status                 TEXT NOT NULL DEFAULT 'new',
    version                INTEGER NOT NULL DEFAULT 1,
    current_round          INTEGER NOT NULL DEFAULT 1,
    created_at             TEXT NOT NULL,
    last_status_change_at  TEXT NOT NULL,
    FOREIGN KEY (category_id) REFERENCES categories(category_id)
);

CREATE INDEX IF NOT EXISTS idx_manuscripts_status ON manuscripts(status);
CREATE INDEX IF NOT EXISTS idx_manuscripts_author ON manuscripts(author_id);

CREATE TABLE IF NOT EXISTS status_history (
    entry_id       TEXT PRIMARY KEY,
    manuscript_id  TEXT NOT NULL,
    from_status    TEXT,
    to_status      TEXT NOT NULL,
    actor_id       TEXT NOT NULL,
    actor_role     TEXT NOT NULL,
    note           TEXT,
    changed_at     TEXT NOT NULL,
    FOREIGN KEY (manuscript_id) REFERENCES manuscripts(manuscript_id)
);

CREATE INDEX IF NOT EXISTS idx_history_manuscript ON status_history(manuscript_id);

-- Editorial decisions (append-only)
CREATE TABLE IF NOT EXISTS decisions (
    decision_id    TEXT PRIMARY KEY,
    manuscript_id  TEXT NOT NULL,
    editor_id      TEXT NOT NULL,
    decision       TEXT NOT NULL,
    round_no       INTEGER NOT NULL DEFAULT 1,
    note           TEXT,
    decided_at     TEXT NOT NULL,
    FOREIGN KEY (manuscript_id) REFERENCES manuscripts(manuscript_id)
);

CREATE INDEX IF NOT EXISTS idx_decisions_manuscript ON decisions(manuscript_id);

CREATE TABLE IF NOT EXISTS review_assignments (
    review_id       TEXT PRIMARY KEY,
    manuscript_id   TEXT NOT NULL,
    reviewer_id     TEXT NOT NULL,
    round_no        INTEGER NOT NULL DEFAULT 1,
    invited_by      TEXT NOT NULL DEFAULT '',
    invited_at      TEXT NOT NULL,
    due_date        TEXT NOT NULL,
    accepted_at     TEXT,
    declined_at     TEXT,
    submitted_at    TEXT,
    recommendation  TEXT,
    score           INTEGER,
    form_fields     TEXT NOT NULL DEFAULT '{}',
    quality_rating  INTEGER,
    reopen_count    INTEGER NOT NULL DEFAULT 0,
    CHECK (submitted_at IS NULL OR declined_at IS NULL),
    CHECK (recommendation IS NULL OR submitted_at IS NOT NULL),
    FOREIGN KEY (manuscript_id) REFERENCES manuscripts(manuscript_id)
);

CREATE INDEX IF NOT EXISTS idx_reviews_manuscript ON review_assignments(manuscript_id, round_no);
CREATE INDEX IF NOT EXISTS idx_reviews_reviewer ON review_assignments(reviewer_id);

CREATE TABLE IF NOT EXISTS reviewer_profiles (
    user_id                 TEXT PRIMARY KEY,
    expertise               TEXT NOT NULL DEFAULT '[]',
    keywords                TEXT NOT NULL DEFAULT '[]',
    max_concurrent_reviews  INTEGER NOT NULL DEFAULT 5,
    unavailable_until       TEXT,
    total_reviews           INTEGER NOT NULL DEFAULT 0,
    completed_reviews       INTEGER NOT NULL DEFAULT 0,
    declined_reviews        INTEGER NOT NULL DEFAULT 0,
    avg_completion_days     REAL,
    avg_quality_rating      REAL,
    last_review_at          TEXT,
    updated_at              TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS deadlines (
    deadline_id     TEXT PRIMARY KEY,
    manuscript_id   TEXT NOT NULL,
    deadline_type   TEXT NOT NULL,
    due_date        TEXT NOT NULL,
    assigned_to     TEXT,
    completed_at    TEXT,
    closed_reason   TEXT,
    is_overdue      INTEGER NOT NULL DEFAULT 0,
    reminders_sent  INTEGER NOT NULL DEFAULT 0,
    note            TEXT,
    created_by      TEXT NOT NULL DEFAULT '',
    created_at      TEXT NOT NULL,
    FOREIGN KEY (manuscript_id) REFERENCES manuscripts(manuscript_id)
);

CREATE INDEX IF NOT EXISTS idx_deadlines_manuscript ON deadlines(manuscript_id, deadline_type);
CREATE INDEX IF NOT EXISTS idx_deadlines_open ON deadlines(completed_at, due_date);

-- Audit events (append-only)
CREATE TABLE IF NOT EXISTS audit_events (
    event_id    TEXT PRIMARY KEY,
    action      TEXT NOT NULL,
    actor_id    TEXT NOT NULL DEFAULT '',
    target_id   TEXT NOT NULL DEFAULT '',
    target_type TEXT NOT NULL DEFAULT '',
    details     TEXT NOT NULL DEFAULT '{}',
    timestamp   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_events(action);
CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_events(actor_id);
CREATE INDEX IF NOT EXISTS idx_audit_target ON audit_events(target_id);
CREATE INDEX IF NOT EXISTS idx_audit_time ON audit_events(timestamp);

-- In-app notifications
CREATE TABLE IF NOT EXISTS notifications (
    notification_id  TEXT PRIMARY KEY,
    recipient_id     TEXT NOT NULL,
    event            TEXT NOT NULL,
    title            TEXT NOT NULL,
    manuscript_id    TEXT,
    payload          TEXT NOT NULL DEFAULT '{}',
    created_at       TEXT NOT NULL,
    read_at          TEXT
);

CREATE INDEX IF NOT EXISTS idx_notifications_recipient ON notifications(recipient_id, created_at);
"""


async def get_db() -> aiosqlite.Connection:
    """Open the SQLite database and ensure schema exists."""
    settings.ensure_dirs()
    db = await aiosqlite.connect(str(settings.db_path))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON;")
    await db.execute("PRAGMA journal_mode = WAL;")
    await db.execute("PRAGMA synchronous = NORMAL;")
    await db.execute("PRAGMA busy_timeout = 5000;")
    await db.execute("PRAGMA temp_store = MEMORY;")
    await db.executescript(SCHEMA_SQL)
    await db.commit()
    return db


# ---------------------------------------------------------------------------
# JSON helpers for SQLite columns that store serialised data
# ---------------------------------------------------------------------------

def _json_default(obj: Any) -> Any:
    """Custom JSON serialiser that handles Pydantic models and other types."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    return str(obj)


def to_json(obj: Any) -> str:
    """Serialise a Python object for storage in a TEXT column."""
    if isinstance(obj, str):
        return obj
    return json.dumps(obj, default=_json_default)


def from_json(text: str | None) -> Any:
    """Deserialise a TEXT column back to a Python object."""
    if text is None:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------

def to_iso(value: datetime | None) -> str | None:
    """UTC ISO-8601 with fixed microsecond precision, so string order is time order."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_dt(text: str | None) -> datetime | None:
    if not text:
        return None
    return ensure_utc(datetime.fromisoformat(text))


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))
