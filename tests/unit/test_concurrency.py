"""Lost-race behaviour: conditional writes must reject the second writer.

The competing writer is injected between the read and the write so each race
is deterministic.
"""

from __future__ import annotations

import pytest

from folio import review_service, state_machine
from folio.database import get_db, to_iso
from folio.deadline_monitor import list_deadlines
from folio.errors import AlreadyFinalized, Conflict
from folio.manuscript_service import get_decisions, get_status_history, load_manuscript
from folio.models import ManuscriptStatus, ReviewSubmission
from folio.permissions import make_actor
from folio.review_service import get_reviews, invite_reviewer
from folio.state_machine import request_transition
from tests.helpers import EDITOR, Journal, in_days, review_payload

S = ManuscriptStatus


@pytest.mark.asyncio
async def test_second_transition_from_same_read_conflicts(journal, monkeypatch):
    ms = await journal.submit()
    await journal.force_status(ms.manuscript_id, S.UNDER_REVIEW)
    real_load = state_machine.load_manuscript

    async def load_then_lose_race(db, manuscript_id):
        stale = await real_load(db, manuscript_id)
        await db.execute(
            "UPDATE manuscripts SET status = ?, version = version + 1 WHERE manuscript_id = ?",
            (S.REJECTED.value, manuscript_id),
        )
        await db.commit()
        return stale

    monkeypatch.setattr(state_machine, "load_manuscript", load_then_lose_race)
    with pytest.raises(Conflict) as exc_info:
        await request_transition(journal.db, ms.manuscript_id, EDITOR, S.REVISION)
    assert exc_info.value.code == "status_changed_concurrently"

    monkeypatch.undo()
    current = await load_manuscript(journal.db, ms.manuscript_id)
    assert current.status == S.REJECTED
    assert await get_decisions(journal.db, ms.manuscript_id) == []
    assert [h.to_status for h in await get_status_history(journal.db, ms.manuscript_id)] == [S.NEW]


@pytest.mark.asyncio
async def test_double_submit_finalizes_once(journal, monkeypatch):
    ms = await journal.submit()
    assignment = await journal.invite(ms.manuscript_id, "rev-1")
    real_load = review_service.load_review
    calls = 0

    async def load_then_lose_race(db, review_id):
        nonlocal calls
        calls += 1
        stale = await real_load(db, review_id)
        if calls == 1:
            await db.execute(
                "UPDATE review_assignments SET submitted_at = ?, recommendation = 'reject', score = 2 "
                "WHERE review_id = ?",
                (to_iso(stale.invited_at), review_id),
            )
            await db.commit()
        return stale

    monkeypatch.setattr(review_service, "load_review", load_then_lose_race)
    with pytest.raises(AlreadyFinalized):
        await review_service.submit_review(
            journal.db,
            make_actor("rev-1", "reviewer"),
            assignment.review_id,
            ReviewSubmission.model_validate(review_payload("accept")),
        )

    monkeypatch.undo()
    [stored] = await get_reviews(journal.db, ms.manuscript_id)
    assert stored.recommendation.value == "reject"


@pytest.mark.asyncio
async def test_capacity_is_rechecked_at_write_time(journal, monkeypatch):
    await journal.profile("rev-1", keywords=["graphs"], max_concurrent_reviews=1)
    first = await journal.submit()
    second = await journal.submit()
    await journal.force_status(second.manuscript_id, S.UNDER_REVIEW)
    await journal.invite(first.manuscript_id, "rev-1")

    async def stale_load(db, reviewer_id, now=None):
        return 0

    monkeypatch.setattr(review_service, "current_load", stale_load)
    with pytest.raises(Conflict) as exc_info:
        await invite_reviewer(journal.db, EDITOR, second.manuscript_id, "rev-1", None, in_days(14))
    assert exc_info.value.code == "reviewer_at_capacity"
    assert await get_reviews(journal.db, second.manuscript_id) == []


@pytest.mark.asyncio
async def test_lost_capacity_race_leaves_new_manuscript_untouched(journal, monkeypatch):
    await journal.profile("rev-1", keywords=["graphs"], max_concurrent_reviews=1)
    first = await journal.submit()
    second = await journal.submit()
    await journal.invite(first.manuscript_id, "rev-1")

    async def stale_load(db, reviewer_id, now=None):
        return 0

    monkeypatch.setattr(review_service, "current_load", stale_load)
    with pytest.raises(Conflict) as exc_info:
        await invite_reviewer(journal.db, EDITOR, second.manuscript_id, "rev-1", None, in_days(14))
    assert exc_info.value.code == "reviewer_at_capacity"

    after = await load_manuscript(journal.db, second.manuscript_id)
    assert after.status == S.NEW
    assert after.version == second.version
    assert await get_reviews(journal.db, second.manuscript_id) == []
    assert await list_deadlines(journal.db, manuscript_id=second.manuscript_id) == []
    history = await get_status_history(journal.db, second.manuscript_id)
    assert [h.to_status for h in history] == [S.NEW]


@pytest.mark.asyncio
async def test_failed_auto_transition_discards_the_invite(journal, monkeypatch):
    ms = await journal.submit()

    async def lose_status_race(*args, **kwargs):
        raise Conflict("status_changed_concurrently", current_version=ms.version)

    monkeypatch.setattr(review_service, "request_transition", lose_status_race)
    with pytest.raises(Conflict):
        await invite_reviewer(journal.db, EDITOR, ms.manuscript_id, "rev-1", None, in_days(14))
    assert await get_reviews(journal.db, ms.manuscript_id) == []
    assert (await load_manuscript(journal.db, ms.manuscript_id)).status == S.NEW


@pytest.mark.asyncio
async def test_stale_version_across_connections(data_dir):
    first = await get_db()
    second = await get_db()
    try:
        ms = await Journal(first).submit()
        seen = await load_manuscript(second, ms.manuscript_id)

        await request_transition(first, ms.manuscript_id, EDITOR, S.UNDER_REVIEW)
        with pytest.raises(Conflict) as exc_info:
            await request_transition(
                second, ms.manuscript_id, EDITOR, S.DESK_REJECT, expected_version=seen.version
            )
        assert exc_info.value.details["current_version"] == seen.version + 1
        assert (await load_manuscript(second, ms.manuscript_id)).status == S.UNDER_REVIEW
    finally:
        await first.close()
        await second.close()
