"""Tests for submission screening, manuscript codes and categories."""

from __future__ import annotations

import re

import pytest

from folio.errors import Forbidden, NotFound, Unauthorized, ValidationError
from folio.manuscript_service import (
    create_category,
    get_status_history,
    list_categories,
    list_manuscripts,
    load_manuscript,
    screen_submission,
    submit_manuscript,
)
from folio.models import ManuscriptStatus, ManuscriptSubmission
from folio.permissions import make_actor
from tests.helpers import ABSTRACT, AUTHOR, EDITOR, EIC


def _submission(**overrides) -> dict:
    base = {"title": "A study", "abstract": ABSTRACT, "keywords": ["graphs"]}
    base.update(overrides)
    return base


def _rules(exc_info) -> list[str]:
    return [r["rule"] for r in exc_info.value.details["failed_rules"]]


class TestScreening:
    def test_clean_submission_passes(self):
        assert screen_submission(ManuscriptSubmission(**_submission())) == []

    def test_every_failure_is_reported(self):
        errors = screen_submission(ManuscriptSubmission(title="   ", abstract="short", keywords=[]))
        assert [e.rule for e in errors] == ["title_required", "abstract_too_short", "keywords_required"]

    def test_too_many_keywords(self):
        errors = screen_submission(ManuscriptSubmission(**_submission(keywords=[f"k{i}" for i in range(11)])))
        assert [e.rule for e in errors] == ["too_many_keywords"]

    def test_duplicate_keywords_collapse(self):
        sub = ManuscriptSubmission(**_submission(keywords=["NLP", " nlp ", "", "Graphs"]))
        assert sub.keywords == ["NLP", "Graphs"]


@pytest.mark.asyncio
async def test_submit_creates_new_manuscript_with_history(journal):
    ms = await journal.submit()
    assert ms.status == ManuscriptStatus.NEW
    assert ms.version == 1
    assert ms.current_round == 1
    assert ms.author_id == AUTHOR.actor_id
    assert re.fullmatch(r"MS-\d{4}-00001", ms.code)

    history = await get_status_history(journal.db, ms.manuscript_id)
    assert len(history) == 1
    assert history[0].from_status is None
    assert history[0].to_status == ManuscriptStatus.NEW


@pytest.mark.asyncio
async def test_codes_are_sequential(journal):
    first = await journal.submit()
    second = await journal.submit()
    assert int(second.code[-5:]) == int(first.code[-5:]) + 1


@pytest.mark.asyncio
async def test_screening_failure_rejects_submission(db):
    with pytest.raises(ValidationError) as exc_info:
        await submit_manuscript(db, AUTHOR, _submission(abstract="too short"))
    assert exc_info.value.code == "screening_failed"
    assert _rules(exc_info) == ["abstract_too_short"]
    assert await list_manuscripts(db) == []


@pytest.mark.asyncio
async def test_unknown_category_fails_screening(db):
    with pytest.raises(ValidationError) as exc_info:
        await submit_manuscript(db, AUTHOR, _submission(category_id="missing"))
    assert _rules(exc_info) == ["unknown_category"]


@pytest.mark.asyncio
async def test_malformed_payload(db):
    with pytest.raises(ValidationError) as exc_info:
        await submit_manuscript(db, AUTHOR, {"title": "x", "keywords": "not-a-list"})
    assert exc_info.value.code == "invalid_payload"
    assert exc_info.value.details["fields"][0]["field"] == "keywords"


@pytest.mark.asyncio
async def test_submission_needs_a_submitting_role(db):
    with pytest.raises(Forbidden):
        await submit_manuscript(db, make_actor("r-1", "reader"), _submission())
    with pytest.raises(Unauthorized):
        await submit_manuscript(db, None, _submission())


@pytest.mark.asyncio
async def test_load_missing_manuscript(db):
    with pytest.raises(NotFound) as exc_info:
        await load_manuscript(db, "nope")
    assert exc_info.value.to_dict()["manuscript_id"] == "nope"


@pytest.mark.asyncio
async def test_list_filters(journal):
    other_author = make_actor("author-2", "author")
    mine = await journal.submit()
    theirs = await journal.submit(author=other_author)
    await journal.force_status(theirs.manuscript_id, ManuscriptStatus.UNDER_REVIEW)

    assert {m.manuscript_id for m in await list_manuscripts(journal.db)} == {mine.manuscript_id, theirs.manuscript_id}
    assert [m.manuscript_id for m in await list_manuscripts(journal.db, author_id="author-1")] == [mine.manuscript_id]
    under_review = await list_manuscripts(journal.db, status=ManuscriptStatus.UNDER_REVIEW)
    assert [m.manuscript_id for m in under_review] == [theirs.manuscript_id]
    assert len(await list_manuscripts(journal.db, limit=1)) == 1


class TestCategories:
    @pytest.mark.asyncio
    async def test_create_and_list(self, db):
        await create_category(db, EIC, "Systems")
        await create_category(db, EIC, "  Algorithms ")
        assert [c.name for c in await list_categories(db)] == ["Algorithms", "Systems"]

    @pytest.mark.asyncio
    async def test_duplicate_name(self, db):
        await create_category(db, EIC, "Systems")
        with pytest.raises(ValidationError) as exc_info:
            await create_category(db, EIC, "Systems")
        assert exc_info.value.code == "category_exists"

    @pytest.mark.asyncio
    async def test_blank_name(self, db):
        with pytest.raises(ValidationError):
            await create_category(db, EIC, "   ")

    @pytest.mark.asyncio
    async def test_section_editors_cannot_manage_categories(self, db):
        with pytest.raises(Forbidden):
            await create_category(db, EDITOR, "Systems")
