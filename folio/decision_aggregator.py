"""Decision aggregator — turns a round's recommendations into a suggested status.

Rules are evaluated in fixed precedence and every evaluation is returned so the
suggestion can be explained. The aggregator never changes manuscript state.
"""

from __future__ import annotations

from collections import Counter
from typing import Iterable

import aiosqlite

from folio.config import settings
from folio.manuscript_service import load_manuscript
from folio.models import (
    AggregationResult,
    ManuscriptStatus,
    PolicyRuleEvaluation,
    Recommendation,
)
from folio.permissions import Actor, authorize

# (rule name, recommendation counted, status suggested), in precedence order.
RULES: tuple[tuple[str, Recommendation, ManuscriptStatus], ...] = (
    ("reject_quorum", Recommendation.REJECT, ManuscriptStatus.REJECTED),
    ("major_quorum", Recommendation.MAJOR, ManuscriptStatus.REVISION),
    ("minor_quorum", Recommendation.MINOR, ManuscriptStatus.REVISION),
    ("accept_quorum", Recommendation.ACCEPT, ManuscriptStatus.ACCEPTED),
)


def aggregate(
    recommendations: Iterable[Recommendation | str],
    quorum: int | None = None,
) -> AggregationResult:
    """Apply the quorum rules; first match wins, no match means a manual decision."""
    quorum = quorum or settings.workflow.quorum
    recs = [r if isinstance(r, Recommendation) else Recommendation(r) for r in recommendations]
    counts = Counter(recs)

    evaluations: list[PolicyRuleEvaluation] = []
    suggestion: ManuscriptStatus | None = None
    for name, rec, status in RULES:
        hit = counts[rec] >= quorum
        evaluations.append(
            PolicyRuleEvaluation(
                rule_name=name,
                input_data={"recommendation": rec.value, "count": counts[rec], "quorum": quorum},
                result=hit,
                explanation=f"{counts[rec]}/{quorum} {rec.value}"
                + (f" -> {status.value}" if hit else ""),
            )
        )
        if hit:
            suggestion = status
            break

    if suggestion is None:
        explanation = f"No recommendation reached quorum {quorum}; editor decides manually"
    else:
        explanation = f"Suggest {suggestion.value} ({evaluations[-1].rule_name})"

    return AggregationResult(
        suggestion=suggestion,
        manual_decision_required=suggestion is None,
        counts={r.value: counts[r] for r in Recommendation},
        review_count=len(recs),
        rule_evaluations=evaluations,
        explanation=explanation,
    )


async def aggregate_recommendation(
    db: aiosqlite.Connection,
    actor: Actor | None,
    manuscript_id: str,
    round_no: int | None = None,
) -> AggregationResult:
    """Aggregate the submitted recommendations for a round (default: the current one)."""
    authorize(actor, "decision:aggregate")
    manuscript = await load_manuscript(db, manuscript_id)
    round_no = round_no or manuscript.current_round

    async with db.execute(
        """
        SELECT recommendation FROM review_assignments
        WHERE manuscript_id = ? AND round_no = ?
          AND submitted_at IS NOT NULL AND recommendation IS NOT NULL
        """,
        (manuscript_id, round_no),
    ) as cursor:
        rows = await cursor.fetchall()

    result = aggregate([r[0] for r in rows])
    result.manuscript_id = manuscript_id
    result.round_no = round_no
    return result
