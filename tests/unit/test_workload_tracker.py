"""Unit tests for reviewer load counting and statistics."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from folio.database import to_iso
from folio.models import Recommendation, ReviewAssignment
from folio.permissions import make_actor
from folio.review_service import respond_to_invite
from folio.workload_tracker import compute_statistics, current_load, current_loads, reviewer_metrics

T0 = datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)


def _assignment(**kwargs) -> ReviewAssignment:
    base = {"manuscript_id": "m1", "reviewer_id": "r1", "invited_at": T0, "due_date": T0 + timedelta(days=21)}
    base.update(kwargs)
    return ReviewAssignment(**base)


class TestStatistics:
    def test_empty_history(self):
        stats = compute_statistics([])
        assert stats.total_reviews == 0
        assert stats.avg_completion_days is None
        assert stats.avg_quality_rating is None
        assert stats.last_review_at is None

    def test_mixed_history(self):
        history = [
            _assignment(submitted_at=T0 + timedelta(days=4, hours=20), recommendation=Recommendation.ACCEPT,
                        quality_rating=4),
            _assignment(submitted_at=T0 + timedelta(days=10), recommendation=Recommendation.MAJOR),
            _assignment(declined_at=T0 + timedelta(hours=3)),
            _assignment(),
        ]
        stats = compute_statistics(history)
        assert stats.total_reviews == 4
        assert stats.completed_reviews == 2
        assert stats.declined_reviews == 1
        # 4 days 20 hours counts as 4 whole days
        assert stats.avg_completion_days == pytest.approx(7.0)
        assert stats.avg_quality_rating == pytest.approx(4.0)
        assert stats.last_review_at == T0 + timedelta(days=10)

    def test_submitted_and_declined_are_exclusive(self):
        with pytest.raises(ValueError):
            _assignment(submitted_at=T0, declined_at=T0)


@pytest.mark.asyncio
async def test_load_counts_only_actionable_assignments(journal):
    ms = await journal.submit()
    other = await journal.submit()
    third = await journal.submit()
    active = await journal.invite(ms.manuscript_id, "rev-1")
    declined = await journal.invite(other.manuscript_id, "rev-1")
    lapsed = await journal.invite(third.manuscript_id, "rev-1")
    await journal.invite(ms.manuscript_id, "rev-2")

    await respond_to_invite(journal.db, make_actor("rev-1", "reviewer"), declined.review_id, "decline")
    await journal.db.execute(
        "UPDATE review_assignments SET due_date = ? WHERE review_id = ?",
        (to_iso(datetime.now(timezone.utc) - timedelta(days=1)), lapsed.review_id),
    )
    await journal.db.commit()

    assert await current_load(journal.db, "rev-1") == 1
    await journal.review(active, "accept")
    assert await current_load(journal.db, "rev-1") == 0

    assert await current_loads(journal.db, ["rev-1", "rev-2", "nobody"]) == {"rev-1": 0, "rev-2": 1, "nobody": 0}


@pytest.mark.asyncio
async def test_metrics_report(journal):
    await journal.profile("rev-1", keywords=["queueing"], max_concurrent_reviews=3)
    first = await journal.submit()
    second = await journal.submit()
    third = await journal.submit()
    a1 = await journal.invite(first.manuscript_id, "rev-1")
    a2 = await journal.invite(second.manuscript_id, "rev-1")
    await journal.invite(third.manuscript_id, "rev-1")
    await journal.review(a1, "accept")
    await respond_to_invite(journal.db, make_actor("rev-1", "reviewer"), a2.review_id, "decline")

    metrics = await reviewer_metrics(journal.db, "rev-1")
    assert metrics.invited == 3
    assert metrics.completed == 1
    assert metrics.declined == 1
    assert metrics.pending == 1
    assert metrics.on_time_rate == 1.0
    assert metrics.completion_rate == pytest.approx(0.3333)
    assert metrics.recommendation_distribution == {"accept": 1}
    assert metrics.current_load == 1
    assert metrics.max_concurrent_reviews == 3
