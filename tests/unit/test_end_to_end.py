"""Whole-lifecycle runs through the public service functions."""

from __future__ import annotations

import pytest

from folio.audit_service import query_events
from folio.decision_aggregator import aggregate_recommendation
from folio.deadline_monitor import list_deadlines
from folio.errors import InvalidTransition
from folio.manuscript_service import get_decisions, get_status_history
from folio.models import AuditAction, DeadlineType, ManuscriptStatus, NotificationEvent
from folio.notification_service import list_notifications
from folio.state_machine import available_transitions, request_transition, submit_revision
from folio.workload_tracker import current_load
from tests.helpers import AUTHOR, EDITOR, EIC

S = ManuscriptStatus


@pytest.mark.asyncio
async def test_reject_quorum_ends_the_lifecycle(journal):
    ms = await journal.submit()
    assert ms.status == S.NEW

    assignments = [await journal.invite(ms.manuscript_id, rid) for rid in ("r1", "r2", "r3")]
    await journal.review(assignments[0], "reject", score=2)
    await journal.review(assignments[1], "reject", score=3)
    await journal.review(assignments[2], "minor", score=7)

    summary = await aggregate_recommendation(journal.db, EDITOR, ms.manuscript_id)
    assert summary.suggestion == S.REJECTED
    assert summary.counts["reject"] == 2

    rejected = await request_transition(
        journal.db, ms.manuscript_id, EDITOR, summary.suggestion, "Two reviewers recommend rejection"
    )
    assert rejected.status == S.REJECTED
    assert await available_transitions(journal.db, ms.manuscript_id, EIC) == []

    for target in S:
        with pytest.raises(InvalidTransition):
            await request_transition(journal.db, ms.manuscript_id, EIC, target)

    history = await get_status_history(journal.db, ms.manuscript_id)
    assert [h.to_status for h in history] == [S.NEW, S.UNDER_REVIEW, S.REJECTED]
    [decision] = await get_decisions(journal.db, ms.manuscript_id)
    assert decision.decision == S.REJECTED
    assert decision.note == "Two reviewers recommend rejection"

    deadlines = await list_deadlines(journal.db, manuscript_id=ms.manuscript_id)
    assert all(d.completed_at is not None for d in deadlines)
    for rid in ("r1", "r2", "r3"):
        assert await current_load(journal.db, rid) == 0


@pytest.mark.asyncio
async def test_revision_round_then_publication(journal):
    ms = await journal.submit()
    first_round = [await journal.invite(ms.manuscript_id, rid) for rid in ("r1", "r2")]
    for assignment in first_round:
        await journal.review(assignment, "major", score=5)

    summary = await aggregate_recommendation(journal.db, EDITOR, ms.manuscript_id)
    assert summary.suggestion == S.REVISION
    await request_transition(journal.db, ms.manuscript_id, EDITOR, S.REVISION, "Address the evaluation")

    resubmitted = await submit_revision(journal.db, ms.manuscript_id, AUTHOR, "Added a second dataset")
    assert resubmitted.status == S.UNDER_REVIEW
    assert resubmitted.current_round == 2

    second_round = [await journal.invite(ms.manuscript_id, rid) for rid in ("r1", "r2")]
    assert {a.round_no for a in second_round} == {2}
    for assignment in second_round:
        await journal.review(assignment, "accept", score=9)

    summary = await aggregate_recommendation(journal.db, EDITOR, ms.manuscript_id)
    assert summary.round_no == 2
    assert summary.suggestion == S.ACCEPTED

    await request_transition(journal.db, ms.manuscript_id, EIC, S.ACCEPTED)
    await request_transition(journal.db, ms.manuscript_id, EIC, S.IN_PRODUCTION)
    published = await request_transition(journal.db, ms.manuscript_id, EIC, S.PUBLISHED)
    assert published.status == S.PUBLISHED
    assert published.version == 7

    history = [h.to_status for h in await get_status_history(journal.db, ms.manuscript_id)]
    assert history == [
        S.NEW, S.UNDER_REVIEW, S.REVISION, S.UNDER_REVIEW, S.ACCEPTED, S.IN_PRODUCTION, S.PUBLISHED,
    ]
    decisions = [(d.decision, d.round_no) for d in await get_decisions(journal.db, ms.manuscript_id)]
    assert decisions == [(S.REVISION, 1), (S.ACCEPTED, 2)]

    deadlines = {d.deadline_type: d for d in await list_deadlines(journal.db, manuscript_id=ms.manuscript_id)}
    assert set(deadlines) >= {
        DeadlineType.INITIAL_REVIEW, DeadlineType.REVISION_SUBMIT, DeadlineType.RE_REVIEW, DeadlineType.PRODUCTION,
    }
    assert all(d.completed_at is not None for d in deadlines.values())

    events = [n.event for n in await list_notifications(journal.db, AUTHOR.actor_id)]
    assert NotificationEvent.REVISION_REQUESTED in events
    assert NotificationEvent.PAPER_PUBLISHED in events

    actions = [e.action for e in await query_events(journal.db, target_id=ms.manuscript_id)]
    assert AuditAction.REVISION_SUBMITTED in actions
    assert actions.count(AuditAction.DECISION_RECORDED) == 2
