from uuid import uuid4

import pytest

from core.config import settings
from core.exceptions import StoreUnavailableError, ValidationError
from models import PlanProposal
from services import proposal_lifecycle as lifecycle
from services.batch_approval import batch_decide

from plan_draft_helpers import THREE_HOUR_BUILD, coach_with_draft, principal, sessions_for


def _status(db, proposal_id) -> str:
    db.expire_all()
    return db.query(PlanProposal).filter(PlanProposal.id == proposal_id).one().status


@pytest.fixture
def three_hour_proposal(db):
    coach, _, draft = coach_with_draft(db)
    proposal = lifecycle.create_proposal(db, actor=principal(coach), draft_id=draft.id, diff=THREE_HOUR_BUILD)
    return coach, draft, proposal


def test_proposal_within_cap_is_applied(db, policy_cache, three_hour_proposal):
    coach, draft, proposal = three_hour_proposal
    result = batch_decide(
        db, cache=policy_cache, actor=principal(coach), draft_id=draft.id, proposal_ids=[proposal.id], max_hours=5
    )
    assert [(i.proposal_id, i.outcome) for i in result.items] == [(proposal.id, "applied")]
    assert result.items[0].hours_delta == 3.0
    assert result.counts == {"applied": 1, "rejected": 0, "skipped": 0, "failed": 0}
    assert result.policy_version == policy_cache.snapshot.version
    assert _status(db, proposal.id) == lifecycle.APPLIED


def test_proposal_over_cap_is_skipped_and_stays_pending(db, policy_cache, three_hour_proposal):
    coach, draft, proposal = three_hour_proposal
    result = batch_decide(
        db, cache=policy_cache, actor=principal(coach), draft_id=draft.id, proposal_ids=[proposal.id], max_hours=2
    )
    item = result.items[0]
    assert item.outcome == "skipped"
    assert item.reason == "exceeds-cap"
    assert item.hours_delta == 3.0
    assert _status(db, proposal.id) == lifecycle.PENDING
    assert {s.duration_minutes for s in sessions_for(db, draft.id)} == {80}


def test_reject_mode_rejects_every_pending_candidate_regardless_of_impact(db, policy_cache, three_hour_proposal):
    coach, draft, big = three_hour_proposal
    small = lifecycle.create_proposal(
        db, actor=principal(coach), draft_id=draft.id, diff=[{"op": "add_week_note", "week_index": 1, "note": "easy"}]
    )
    result = batch_decide(
        db, cache=policy_cache, actor=principal(coach), draft_id=draft.id, proposal_ids=[big.id, small.id], mode="reject"
    )
    assert [i.outcome for i in result.items] == ["rejected", "rejected"]
    assert result.max_hours is None
    assert _status(db, big.id) == lifecycle.REJECTED
    assert _status(db, small.id) == lifecycle.REJECTED


def test_mixed_batch_reports_one_outcome_per_id_in_request_order(db, policy_cache, three_hour_proposal):
    coach, draft, big = three_hour_proposal
    sessions = sessions_for(db, draft.id, 0)
    small = lifecycle.create_proposal(
        db,
        actor=principal(coach),
        draft_id=draft.id,
        diff=[{"op": "update_session", "session_id": str(sessions[0].id), "duration_minutes": 90}],
    )
    escalate = lifecycle.create_proposal(
        db,
        actor=principal(coach),
        draft_id=draft.id,
        diff=[{"op": "swap_session_type", "session_id": str(sessions[1].id), "session_type": "intervals"}],
    )
    already_rejected = lifecycle.create_proposal(
        db, actor=principal(coach), draft_id=draft.id, diff=[{"op": "add_week_note", "week_index": 0, "note": "x"}]
    )
    lifecycle.reject_proposal(db, actor=principal(coach), proposal_id=already_rejected.id)
    missing = uuid4()

    ids = [small.id, missing, big.id, escalate.id, already_rejected.id]
    result = batch_decide(
        db, cache=policy_cache, actor=principal(coach), draft_id=draft.id, proposal_ids=ids, max_hours=2
    )

    assert [i.proposal_id for i in result.items] == ids
    assert [(i.outcome, i.reason) for i in result.items] == [
        ("applied", None),
        ("failed", "not-found"),
        ("skipped", "exceeds-cap"),
        ("failed", "safety-rejected"),
        ("skipped", "not-pending"),
    ]
    assert result.counts == {"applied": 1, "rejected": 0, "skipped": 2, "failed": 2}
    # The earlier success is not undone by later failures.
    assert _status(db, small.id) == lifecycle.APPLIED
    assert _status(db, escalate.id) == lifecycle.PENDING


def test_proposal_from_another_draft_is_not_found(db, policy_cache, three_hour_proposal):
    coach, draft, proposal = three_hour_proposal
    other_coach, _, other_draft = coach_with_draft(db)
    result = batch_decide(
        db,
        cache=policy_cache,
        actor=principal(other_coach),
        draft_id=other_draft.id,
        proposal_ids=[proposal.id],
        max_hours=5,
    )
    assert (result.items[0].outcome, result.items[0].reason) == ("failed", "not-found")
    assert _status(db, proposal.id) == lifecycle.PENDING


def test_store_failure_on_one_item_does_not_abort_the_rest(db, policy_cache, monkeypatch):
    coach, _, draft = coach_with_draft(db)
    first = lifecycle.create_proposal(
        db, actor=principal(coach), draft_id=draft.id, diff=[{"op": "add_week_note", "week_index": 0, "note": "a"}]
    )
    second = lifecycle.create_proposal(
        db, actor=principal(coach), draft_id=draft.id, diff=[{"op": "add_week_note", "week_index": 1, "note": "b"}]
    )
    real_apply = lifecycle.apply_proposal

    def flaky_apply(db, **kwargs):
        if kwargs["proposal_id"] == first.id:
            raise StoreUnavailableError("Proposal store unavailable")
        return real_apply(db, **kwargs)

    monkeypatch.setattr(lifecycle, "apply_proposal", flaky_apply)
    result = batch_decide(
        db,
        cache=policy_cache,
        actor=principal(coach),
        draft_id=draft.id,
        proposal_ids=[first.id, second.id],
        max_hours=1,
    )
    assert [(i.outcome, i.reason) for i in result.items] == [("failed", "store-unavailable"), ("applied", None)]
    assert result.items[0].detail == "Proposal store unavailable"


@pytest.mark.parametrize(
    "kwargs,field",
    [
        ({"proposal_ids": [], "max_hours": 5}, "PROPOSAL_IDS"),
        ({"max_hours": None}, "MAX_HOURS"),
        ({"max_hours": -1}, "MAX_HOURS"),
        ({"max_hours": float("nan")}, "MAX_HOURS"),
        ({"max_hours": float("inf")}, "MAX_HOURS"),
        ({"max_hours": 5, "mode": "approve_all"}, "MODE"),
    ],
)
def test_malformed_batch_requests_are_rejected_before_any_work(db, policy_cache, three_hour_proposal, kwargs, field):
    coach, draft, proposal = three_hour_proposal
    call = {"proposal_ids": [proposal.id], "mode": "approve", **kwargs}
    with pytest.raises(ValidationError) as exc:
        batch_decide(db, cache=policy_cache, actor=principal(coach), draft_id=draft.id, **call)
    assert exc.value.error_code == f"VALIDATION_ERROR_{field}"
    assert _status(db, proposal.id) == lifecycle.PENDING


def test_duplicate_and_oversized_id_lists_are_rejected(db, policy_cache, three_hour_proposal, monkeypatch):
    coach, draft, proposal = three_hour_proposal
    with pytest.raises(ValidationError):
        batch_decide(
            db,
            cache=policy_cache,
            actor=principal(coach),
            draft_id=draft.id,
            proposal_ids=[proposal.id, proposal.id],
            max_hours=5,
        )

    monkeypatch.setattr(settings, "BATCH_MAX_PROPOSALS", 1)
    with pytest.raises(ValidationError):
        batch_decide(
            db,
            cache=policy_cache,
            actor=principal(coach),
            draft_id=draft.id,
            proposal_ids=[proposal.id, uuid4()],
            mode="reject",
        )


def test_note_overflow_fails_its_item_and_the_rest_still_apply(db, policy_cache):
    coach, _, draft = coach_with_draft(db)
    crowded, imported = sessions_for(db, draft.id, 0)[:2]
    crowded.notes = "n" * 3500
    imported.notes = "imported " * 500
    db.commit()

    overflow = lifecycle.create_proposal(
        db,
        actor=principal(coach),
        draft_id=draft.id,
        diff=[{"op": "add_session_note", "session_id": str(crowded.id), "note": "m" * 1000}],
    )
    swap = lifecycle.create_proposal(
        db,
        actor=principal(coach),
        draft_id=draft.id,
        diff=[{"op": "swap_session_type", "session_id": str(imported.id), "session_type": "recovery"}],
    )
    week_note = lifecycle.create_proposal(
        db, actor=principal(coach), draft_id=draft.id, diff=[{"op": "add_week_note", "week_index": 1, "note": "b"}]
    )

    result = batch_decide(
        db,
        cache=policy_cache,
        actor=principal(coach),
        draft_id=draft.id,
        proposal_ids=[overflow.id, swap.id, week_note.id],
        max_hours=1,
    )
    assert [(i.outcome, i.reason) for i in result.items] == [
        ("failed", "safety-rejected"),
        ("applied", None),
        ("applied", None),
    ]
    assert _status(db, overflow.id) == lifecycle.PENDING


def test_reject_that_loses_a_race_is_skipped_not_pending(db, policy_cache, three_hour_proposal, monkeypatch):
    coach, draft, proposal = three_hour_proposal
    real_reject = lifecycle.reject_proposal

    def reject_after_someone_else(db, **kwargs):
        # Another caller decides the proposal between the status read and the update.
        real_reject(db, **kwargs)
        return real_reject(db, **kwargs)

    monkeypatch.setattr(lifecycle, "reject_proposal", reject_after_someone_else)
    result = batch_decide(
        db, cache=policy_cache, actor=principal(coach), draft_id=draft.id, proposal_ids=[proposal.id], mode="reject"
    )
    assert [(i.outcome, i.reason) for i in result.items] == [("skipped", "not-pending")]
    assert result.counts == {"applied": 0, "rejected": 0, "skipped": 1, "failed": 0}
    assert _status(db, proposal.id) == lifecycle.REJECTED
