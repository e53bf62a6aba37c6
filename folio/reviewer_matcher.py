"""Reviewer matcher — scores and ranks candidate reviewers for a manuscript.

The scoring and ranking functions are pure so they can be tested without a
database; :func:`suggest_reviewers` wires them to stored profiles and loads.
Suggestions are advisory and reserve nothing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Iterable

import aiosqlite

from folio.config import settings
from folio.errors import ValidationError
from folio.manuscript_service import get_category, load_manuscript
from folio.models import ReviewerProfile, ReviewerSuggestion, ensure_utc
from folio.permissions import Actor, authorize
from folio.profile_service import list_reviewer_profiles
from folio.workload_tracker import current_loads

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Scoring (pure)
# ---------------------------------------------------------------------------

def normalize_terms(terms: Iterable[str]) -> set[str]:
    """Lowercase, trim, drop blanks."""
    return {t.strip().lower() for t in terms if t and t.strip()}


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    """|A ∩ B| / |A ∪ B| over normalized terms; 0 when either side is empty."""
    left, right = normalize_terms(a), normalize_terms(b)
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def expertise_score(expertise: Iterable[str], category_name: str | None) -> float:
    """Flat bonus when any expertise term and the category name contain one another."""
    category = (category_name or "").strip().lower()
    if not category:
        return 0.0
    for term in normalize_terms(expertise):
        if term in category or category in term:
            return settings.workflow.expertise_bonus
    return 0.0


def match_score(keyword_score: float, expertise: float) -> float:
    wf = settings.workflow
    return wf.keyword_weight * keyword_score + wf.expertise_weight * expertise


def is_eligible(
    profile: ReviewerProfile,
    load: int,
    excluded: set[str],
    now: datetime,
) -> bool:
    if profile.user_id in excluded:
        return False
    if profile.unavailable_until is not None and ensure_utc(profile.unavailable_until) > now:
        return False
    return load < profile.max_concurrent_reviews


def _compare(a: ReviewerSuggestion, b: ReviewerSuggestion) -> int:
    if abs(a.match_score - b.match_score) > settings.workflow.score_tie_band:
        return -1 if a.match_score > b.match_score else 1
    if a.current_load != b.current_load:
        return -1 if a.current_load < b.current_load else 1
    rating_a = a.avg_quality_rating or 0.0
    rating_b = b.avg_quality_rating or 0.0
    if rating_a != rating_b:
        return -1 if rating_a > rating_b else 1
    return 0


def rank_candidates(
    manuscript_keywords: Iterable[str],
    category_name: str | None,
    profiles: Iterable[ReviewerProfile],
    loads: dict[str, int],
    excluded: Iterable[str] = (),
    limit: int | None = None,
    now: datetime | None = None,
) -> list[ReviewerSuggestion]:
    """Filter, score and rank a candidate pool.

    Scores within the tie band are ordered by ascending load, then by
    descending average rating. Candidates below the minimum score are dropped.
    A ``limit`` outside ``1..max_suggestion_limit`` is rejected.
    """
    wf = settings.workflow
    now = ensure_utc(now or datetime.now(timezone.utc))
    excluded_ids = {e for e in excluded if e}
    wanted = normalize_terms(manuscript_keywords)
    if limit is None:
        limit = wf.default_suggestion_limit
    elif not 1 <= limit <= wf.max_suggestion_limit:
        raise ValidationError("invalid_limit", limit=limit, max_limit=wf.max_suggestion_limit)

    scored: list[ReviewerSuggestion] = []
    for profile in profiles:
        load = loads.get(profile.user_id, 0)
        if not is_eligible(profile, load, excluded_ids, now):
            continue
        kw = jaccard(wanted, profile.keywords)
        exp = expertise_score(profile.expertise, category_name)
        total = match_score(kw, exp)
        if total < wf.min_match_score:
            continue
        scored.append(
            ReviewerSuggestion(
                reviewer_id=profile.user_id,
                match_score=round(total, 4),
                keyword_score=round(kw, 4),
                expertise_score=exp,
                current_load=load,
                max_concurrent_reviews=profile.max_concurrent_reviews,
                avg_quality_rating=profile.avg_quality_rating,
                matched_keywords=sorted(wanted & normalize_terms(profile.keywords)),
            )
        )

    # Tie-band comparison is not transitive; a stable pre-sort by score keeps results deterministic.
    scored.sort(key=lambda s: (-s.match_score, s.reviewer_id))
    scored.sort(key=cmp_to_key(_compare))
    return scored[:limit]


# ---------------------------------------------------------------------------
# Service entry point
# ---------------------------------------------------------------------------

async def _active_reviewers(db: aiosqlite.Connection, manuscript_id: str, round_no: int) -> set[str]:
    async with db.execute(
        """
        SELECT reviewer_id FROM review_assignments
        WHERE manuscript_id = ? AND round_no = ? AND declined_at IS NULL
        """,
        (manuscript_id, round_no),
    ) as cursor:
        rows = await cursor.fetchall()
    return {r[0] for r in rows}


async def suggest_reviewers(
    db: aiosqlite.Connection,
    actor: Actor | None,
    manuscript_id: str,
    exclude_ids: Iterable[str] | None = None,
    limit: int | None = None,
    now: datetime | None = None,
) -> list[ReviewerSuggestion]:
    """Rank eligible reviewers for a manuscript.

    The author and reviewers already assigned in the current round are always
    excluded, in addition to ``exclude_ids``.
    """
    authorize(actor, "reviewer:suggest")
    manuscript = await load_manuscript(db, manuscript_id)
    category = await get_category(db, manuscript.category_id) if manuscript.category_id else None

    excluded = set(exclude_ids or ())
    excluded.add(manuscript.author_id)
    excluded |= await _active_reviewers(db, manuscript_id, manuscript.current_round)

    profiles = await list_reviewer_profiles(db)
    loads = await current_loads(db, [p.user_id for p in profiles], now)
    suggestions = rank_candidates(
        manuscript.keywords,
        category.name if category else None,
        profiles,
        loads,
        excluded=excluded,
        limit=limit,
        now=now,
    )
    logger.info(
        "Suggested %d of %d reviewers for %s", len(suggestions), len(profiles), manuscript.code
    )
    return suggestions
