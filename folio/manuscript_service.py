"""Manuscript service — submission, screening, reads, history and categories.

Status changes are not made here; they go through :mod:`folio.state_machine`.
"""

from __future__ import annotations

import logging
from typing import Any

import aiosqlite
from pydantic import ValidationError as PydanticValidationError

from folio.audit_service import record_event
from folio.config import settings
from folio.database import from_json, generate_manuscript_code, parse_dt, to_iso, to_json
from folio.errors import NotFound, ValidationError, from_pydantic
from folio.models import (
    AuditAction,
    Category,
    Decision,
    Manuscript,
    ManuscriptStatus,
    ManuscriptSubmission,
    StatusHistoryEntry,
)
from folio.permissions import Actor, authorize

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _row_to_manuscript(row: aiosqlite.Row | dict[str, Any]) -> Manuscript:
    """Convert a SQLite row to a Manuscript model."""
    d = dict(row)
    d["keywords"] = from_json(d.get("keywords", "[]")) or []
    d["created_at"] = parse_dt(d["created_at"])
    d["last_status_change_at"] = parse_dt(d["last_status_change_at"])
    return Manuscript(**d)


def _row_to_history(row: aiosqlite.Row) -> StatusHistoryEntry:
    d = dict(row)
    d["changed_at"] = parse_dt(d["changed_at"])
    return StatusHistoryEntry(**d)


def _row_to_decision(row: aiosqlite.Row) -> Decision:
    d = dict(row)
    d["decided_at"] = parse_dt(d["decided_at"])
    return Decision(**d)


def _row_to_category(row: aiosqlite.Row) -> Category:
    d = dict(row)
    d["created_at"] = parse_dt(d["created_at"])
    return Category(**d)


# ---------------------------------------------------------------------------
# Screening
# ---------------------------------------------------------------------------

class ScreeningError:
    """A single validation failure from screening."""

    def __init__(self, rule: str, message: str):
        self.rule = rule
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"rule": self.rule, "message": self.message}


def screen_submission(submission: ManuscriptSubmission) -> list[ScreeningError]:
    """Structural desk check. Returns a list of errors; empty list = passed."""
    errors: list[ScreeningError] = []
    wf = settings.workflow

    if not submission.title:
        errors.append(ScreeningError("title_required", "Title is required"))

    if len(submission.abstract) < wf.min_abstract_length:
        errors.append(ScreeningError(
            "abstract_too_short",
            f"Abstract must be at least {wf.min_abstract_length} characters (got {len(submission.abstract)})",
        ))

    if not submission.keywords:
        errors.append(ScreeningError("keywords_required", "At least one keyword is required"))
    elif len(submission.keywords) > wf.max_keywords:
        errors.append(ScreeningError(
            "too_many_keywords",
            f"At most {wf.max_keywords} keywords are allowed (got {len(submission.keywords)})",
        ))

    return errors


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

async def submit_manuscript(
    db: aiosqlite.Connection,
    actor: Actor | None,
    submission: ManuscriptSubmission | dict[str, Any],
) -> Manuscript:
    """Create a manuscript in the initial NEW status, owned by the submitting actor."""
    actor = authorize(actor, "manuscript:submit")
    if not isinstance(submission, ManuscriptSubmission):
        try:
            submission = ManuscriptSubmission.model_validate(submission)
        except PydanticValidationError as exc:
            raise from_pydantic(exc) from None

    errors = screen_submission(submission)
    if submission.category_id and await get_category(db, submission.category_id) is None:
        errors.append(ScreeningError("unknown_category", "Category not found"))
    if errors:
        raise ValidationError("screening_failed", failed_rules=[e.to_dict() for e in errors])

    code = await generate_manuscript_code(db)
    manuscript = Manuscript(
        code=code,
        title=submission.title,
        abstract=submission.abstract,
        keywords=submission.keywords,
        category_id=submission.category_id,
        author_id=actor.actor_id,
    )
    await db.execute(
        """
        INSERT INTO manuscripts (
            manuscript_id, code, title, abstract, keywords, category_id, author_id,
            status, version, current_round, created_at, last_status_change_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            manuscript.manuscript_id,
            manuscript.code,
            manuscript.title,
            manuscript.abstract,
            to_json(manuscript.keywords),
            manuscript.category_id,
            manuscript.author_id,
            manuscript.status.value,
            manuscript.version,
            manuscript.current_round,
            to_iso(manuscript.created_at),
            to_iso(manuscript.last_status_change_at),
        ),
    )
    entry = StatusHistoryEntry(
        manuscript_id=manuscript.manuscript_id,
        from_status=None,
        to_status=ManuscriptStatus.NEW,
        actor_id=actor.actor_id,
        actor_role=actor.role,
        changed_at=manuscript.created_at,
    )
    await insert_history(db, entry)
    await db.commit()

    logger.info("Manuscript %s submitted by %s", manuscript.code, actor.actor_id)
    await record_event(
        db,
        AuditAction.MANUSCRIPT_SUBMITTED,
        actor_id=actor.actor_id,
        target_id=manuscript.manuscript_id,
        target_type="manuscript",
        details={"code": manuscript.code, "title": manuscript.title},
    )
    return manuscript


async def insert_history(db: aiosqlite.Connection, entry: StatusHistoryEntry) -> None:
    """Append a status-history row inside the caller's transaction."""
    await db.execute(
        """
        INSERT INTO status_history
            (entry_id, manuscript_id, from_status, to_status, actor_id, actor_role, note, changed_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.entry_id,
            entry.manuscript_id,
            entry.from_status.value if entry.from_status else None,
            entry.to_status.value,
            entry.actor_id,
            entry.actor_role.value,
            entry.note,
            to_iso(entry.changed_at),
        ),
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_manuscript(db: aiosqlite.Connection, manuscript_id: str) -> Manuscript | None:
    async with db.execute(
        "SELECT * FROM manuscripts WHERE manuscript_id = ?", (manuscript_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_manuscript(row) if row else None


async def load_manuscript(db: aiosqlite.Connection, manuscript_id: str) -> Manuscript:
    """Like :func:`get_manuscript` but fails NotFound."""
    manuscript = await get_manuscript(db, manuscript_id)
    if manuscript is None:
        raise NotFound("manuscript_not_found", manuscript_id=manuscript_id)
    return manuscript


async def list_manuscripts(
    db: aiosqlite.Connection,
    status: ManuscriptStatus | None = None,
    author_id: str | None = None,
    limit: int = 50,
) -> list[Manuscript]:
    clauses: list[str] = []
    params: list[Any] = []
    if status is not None:
        clauses.append("status = ?")
        params.append(status.value)
    if author_id:
        clauses.append("author_id = ?")
        params.append(author_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    async with db.execute(
        f"SELECT * FROM manuscripts {where} ORDER BY created_at DESC LIMIT ?", params
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_manuscript(r) for r in rows]


async def get_status_history(db: aiosqlite.Connection, manuscript_id: str) -> list[StatusHistoryEntry]:
    async with db.execute(
        "SELECT * FROM status_history WHERE manuscript_id = ? ORDER BY changed_at ASC, rowid ASC",
        (manuscript_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_history(r) for r in rows]


async def get_decisions(db: aiosqlite.Connection, manuscript_id: str) -> list[Decision]:
    async with db.execute(
        "SELECT * FROM decisions WHERE manuscript_id = ? ORDER BY decided_at ASC, rowid ASC",
        (manuscript_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_decision(r) for r in rows]


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

async def create_category(db: aiosqlite.Connection, actor: Actor | None, name: str) -> Category:
    actor = authorize(actor, "category:manage")
    name = (name or "").strip()
    if not name:
        raise ValidationError("invalid_payload", fields=[{"field": "name", "message": "required"}])
    category = Category(name=name)
    try:
        await db.execute(
            "INSERT INTO categories (category_id, name, created_at) VALUES (?, ?, ?)",
            (category.category_id, category.name, to_iso(category.created_at)),
        )
        await db.commit()
    except aiosqlite.IntegrityError:
        await db.rollback()
        raise ValidationError("category_exists", name=name) from None

    await record_event(
        db,
        AuditAction.CATEGORY_CREATED,
        actor_id=actor.actor_id,
        target_id=category.category_id,
        target_type="category",
        details={"name": name},
    )
    return category


async def get_category(db: aiosqlite.Connection, category_id: str) -> Category | None:
    async with db.execute(
        "SELECT * FROM categories WHERE category_id = ?", (category_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_category(row) if row else None


async def list_categories(db: aiosqlite.Connection) -> list[Category]:
    async with db.execute("SELECT * FROM categories ORDER BY name") as cursor:
        rows = await cursor.fetchall()
    return [_row_to_category(r) for r in rows]
