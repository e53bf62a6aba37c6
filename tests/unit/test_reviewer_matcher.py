"""Unit tests for reviewer scoring, eligibility and ranking."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from folio.errors import Forbidden, ValidationError
from folio.manuscript_service import create_category
from folio.models import ReviewerProfile
from folio.permissions import make_actor
from folio.reviewer_matcher import (
    expertise_score,
    jaccard,
    match_score,
    rank_candidates,
    suggest_reviewers,
)
from tests.helpers import AUTHOR, EDITOR, EIC, in_days

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _profile(user_id: str, keywords: list[str], **kwargs) -> ReviewerProfile:
    return ReviewerProfile(user_id=user_id, keywords=keywords, **kwargs)


class TestJaccard:
    @pytest.mark.parametrize("terms", [["a"], ["graph", "nlp"], ["x", "y", "z", "w"]])
    def test_identical_sets_score_one(self, terms):
        assert jaccard(terms, terms) == 1.0

    def test_disjoint_sets_score_zero(self):
        assert jaccard(["graphs"], ["proteins", "folding"]) == 0.0

    def test_case_and_whitespace_insensitive(self):
        assert jaccard([" Deep Learning", "NLP"], ["deep learning ", "nlp"]) == 1.0

    def test_partial_overlap(self):
        assert jaccard(["a", "b", "c"], ["b", "c", "d"]) == pytest.approx(2 / 4)

    def test_empty_side_scores_zero(self):
        assert jaccard([], ["a"]) == 0.0
        assert jaccard(["", "  "], ["a"]) == 0.0


class TestExpertise:
    def test_term_inside_category(self):
        assert expertise_score(["learning"], "Machine Learning") == pytest.approx(0.3)

    def test_category_inside_term(self):
        assert expertise_score(["distributed systems security"], "Systems") == pytest.approx(0.3)

    def test_no_overlap_or_no_category(self):
        assert expertise_score(["chemistry"], "Machine Learning") == 0.0
        assert expertise_score(["chemistry"], None) == 0.0

    def test_weights(self):
        assert match_score(1.0, 0.3) == pytest.approx(0.79)
        assert match_score(0.5, 0.0) == pytest.approx(0.35)


class TestRanking:
    def test_clear_score_gap_beats_load(self):
        profiles = [
            _profile("busy-expert", ["a", "b"]),
            _profile("idle-partial", ["a", "b", "x"]),
        ]
        # 0.7 vs 0.467: outside the tie band, load does not matter
        ranked = rank_candidates(["a", "b"], None, profiles, {"busy-expert": 3}, now=NOW)
        assert [s.reviewer_id for s in ranked] == ["busy-expert", "idle-partial"]

    def test_close_scores_prefer_lower_load(self):
        wanted = [f"k{i}" for i in range(10)]
        profiles = [
            _profile("r-loaded", wanted),
            _profile("r-free", wanted[:9]),
        ]
        # 0.7 vs 0.63: inside the tie band
        ranked = rank_candidates(wanted, None, profiles, {"r-loaded": 2, "r-free": 0}, now=NOW)
        assert [s.reviewer_id for s in ranked] == ["r-free", "r-loaded"]

    def test_equal_load_prefers_higher_rating(self):
        profiles = [
            _profile("low", ["a", "b"], avg_quality_rating=2.0),
            _profile("high", ["a", "b"], avg_quality_rating=4.5),
            _profile("unrated", ["a", "b"]),
        ]
        ranked = rank_candidates(["a", "b"], None, profiles, {}, now=NOW)
        assert [s.reviewer_id for s in ranked] == ["high", "low", "unrated"]

    def test_below_threshold_dropped(self):
        profiles = [_profile("weak", ["a", "q", "r", "s", "t"])]
        # jaccard 1/5 -> 0.14 < 0.2
        assert rank_candidates(["a"], None, profiles, {}, now=NOW) == []

    def test_expertise_alone_is_below_threshold(self):
        profiles = [_profile("only-expertise", [], expertise=["learning"])]
        assert rank_candidates(["a"], "Machine Learning", profiles, {}, now=NOW) == []

    def test_eligibility_filters(self):
        profiles = [
            _profile("excluded", ["a"]),
            _profile("away", ["a"], unavailable_until=NOW + timedelta(days=2)),
            _profile("back", ["a"], unavailable_until=NOW - timedelta(days=2)),
            _profile("full", ["a"], max_concurrent_reviews=2),
            _profile("closed", ["a"], max_concurrent_reviews=0),
        ]
        ranked = rank_candidates(["a"], None, profiles, {"full": 2}, excluded=["excluded"], now=NOW)
        assert [s.reviewer_id for s in ranked] == ["back"]

    def test_limit_caps_result(self):
        profiles = [_profile(f"r{i}", ["a"]) for i in range(15)]
        assert len(rank_candidates(["a"], None, profiles, {}, now=NOW)) == 10
        assert len(rank_candidates(["a"], None, profiles, {}, limit=3, now=NOW)) == 3

    def test_limit_is_honoured_up_to_the_cap(self):
        profiles = [_profile(f"r{i}", ["a"]) for i in range(60)]
        assert len(rank_candidates(["a"], None, profiles, {}, limit=50, now=NOW)) == 50
        for bad in (0, -1, 51, 60):
            with pytest.raises(ValidationError) as exc_info:
                rank_candidates(["a"], None, profiles, {}, limit=bad, now=NOW)
            assert exc_info.value.code == "invalid_limit"
            assert exc_info.value.details["max_limit"] == 50

    def test_matched_keywords_reported(self):
        ranked = rank_candidates(["Graphs", "NLP"], None, [_profile("r", ["nlp", "speech"])], {}, now=NOW)
        assert ranked[0].matched_keywords == ["nlp"]


@pytest.mark.asyncio
async def test_pool_of_five_yields_single_candidate(journal):
    keywords = ["peer review", "queueing", "workflow"]
    ms = await journal.submit(keywords=keywords)
    other = await journal.submit(author=make_actor("author-2", "author"), keywords=["graphs"])

    await journal.profile(AUTHOR.actor_id, keywords=keywords)
    await journal.profile("rev-full-1", keywords=keywords, max_concurrent_reviews=1)
    await journal.profile("rev-full-2", keywords=keywords, max_concurrent_reviews=1)
    await journal.profile("rev-away", keywords=keywords, unavailable_until=in_days(10))
    await journal.profile("rev-ok", keywords=keywords)
    await journal.invite(other.manuscript_id, "rev-full-1")
    await journal.invite(other.manuscript_id, "rev-full-2")

    suggestions = await suggest_reviewers(journal.db, EDITOR, ms.manuscript_id)
    assert [s.reviewer_id for s in suggestions] == ["rev-ok"]


@pytest.mark.asyncio
async def test_already_invited_and_explicit_exclusions(journal):
    ms = await journal.submit(keywords=["graphs"])
    for rid in ("r1", "r2", "r3"):
        await journal.profile(rid, keywords=["graphs"])
    await journal.invite(ms.manuscript_id, "r1")

    suggestions = await suggest_reviewers(journal.db, EDITOR, ms.manuscript_id, exclude_ids=["r2"])
    assert [s.reviewer_id for s in suggestions] == ["r3"]


@pytest.mark.asyncio
async def test_category_expertise_lifts_score(journal):
    category = await create_category(journal.db, EIC, "Machine Learning")
    ms = await journal.submit(keywords=["transformers", "attention"], category_id=category.category_id)
    await journal.profile("generalist", keywords=["transformers", "attention"])
    await journal.profile("specialist", keywords=["transformers", "attention"], expertise=["machine learning"])

    suggestions = await suggest_reviewers(journal.db, EDITOR, ms.manuscript_id)
    assert [s.reviewer_id for s in suggestions] == ["specialist", "generalist"]
    assert suggestions[0].expertise_score == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_reviewers_cannot_request_suggestions(journal):
    ms = await journal.submit()
    with pytest.raises(Forbidden):
        await suggest_reviewers(journal.db, make_actor("rev", "reviewer"), ms.manuscript_id)
