"""
Proposal lifecycle engine.

States:
    pending -> applied | rejected              (forward outcomes, terminal except applied)
    applied -> undo_pending -> undone          (undo is itself a proposal, kind='undo')

Every transition is a conditional UPDATE keyed on the expected prior state
(see transition_status), so two racing callers cannot both win: the loser
observes ConflictError. Transitions that touch draft content run with
their audit record inside one savepoint.

Safety is always re-evaluated at apply time from the current policy
snapshot; a preview is informational only.
"""
from __future__ import annotations

import logging
import sentry_sdk
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from fastapi import Request
from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.auth import Principal
from core.exceptions import ConflictError, NotFoundError, SafetyRejectedError, StoreUnavailableError, ValidationError
from models import PlanDraft, PlanProposal
from services.audit_recorder import record_audit_event
from services.plan_diff import (
    DiffOp,
    ProjectedImpact,
    apply_diff,
    dump_diff,
    load_diff,
    load_draft_state,
    materialized_plan,
    parse_diff,
    project_impact,
)
from services.policy_runtime_cache import PolicyRuntimeCache
from services.safety_evaluator import SafetyVerdict, evaluate_safety

logger = logging.getLogger(__name__)


PENDING = "pending"
APPLIED = "applied"
REJECTED = "rejected"
UNDO_PENDING = "undo_pending"
UNDONE = "undone"

KIND_FORWARD = "forward"
KIND_UNDO = "undo"


class ProposalEvaluation(BaseModel):
    proposal_id: UUID
    status: str
    kind: str
    policy_version: str
    impact: ProjectedImpact
    verdict: SafetyVerdict


@dataclass
class ApplyOutcome:
    proposal: PlanProposal
    evaluation: ProposalEvaluation
    original: Optional[PlanProposal] = None


@dataclass
class PublishOutcome:
    applied: ApplyOutcome
    published: bool
    publish_error: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _emit_proposal_event(
    *,
    event: str,
    draft_id: UUID,
    proposal_id: UUID | None = None,
    status: str | None = None,
    reason: str | None = None,
    extra: dict | None = None,
) -> None:
    """
    Monitoring hook:
    - logs a structured event (parsable by log aggregation)
    - records a Sentry breadcrumb (no-op unless Sentry is initialised)
    """
    payload = {
        "event": event,
        "draft_id": str(draft_id),
        "proposal_id": str(proposal_id) if proposal_id else None,
        "status": status,
        "reason": reason,
    }
    if extra:
        payload.update(extra)
    logger.info("plan_proposal_event", extra={"extra_fields": payload})

    sentry_sdk.add_breadcrumb(category="plan_proposal", message=event, level="info", data=payload)


# =============================================================================
# Store helpers
# =============================================================================


def transition_status(
    db: Session,
    proposal_id: UUID,
    *,
    expected: str,
    new: str,
    values: Optional[dict[str, Any]] = None,
) -> None:
    """
    Compare-and-set on plan_proposal.status.

    Exactly one caller can move a row out of `expected`; everyone else gets
    ConflictError. Pending ORM changes are flushed first so the UPDATE sees them.
    """
    db.flush()
    stmt = (
        update(PlanProposal)
        .where(PlanProposal.id == proposal_id, PlanProposal.status == expected)
        .values(status=new, **(values or {}))
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        raise ConflictError(f"Proposal {proposal_id} is no longer {expected}")


def _get_draft(db: Session, draft_id: UUID) -> PlanDraft:
    draft = db.query(PlanDraft).filter(PlanDraft.id == draft_id).first()
    if not draft:
        raise NotFoundError("Plan draft", str(draft_id))
    return draft


def get_proposal(db: Session, proposal_id: UUID, *, draft_id: Optional[UUID] = None) -> PlanProposal:
    q = db.query(PlanProposal).filter(PlanProposal.id == proposal_id)
    if draft_id is not None:
        q = q.filter(PlanProposal.draft_id == draft_id)
    proposal = q.first()
    if not proposal:
        raise NotFoundError("Proposal", str(proposal_id))
    return proposal


def list_proposals(db: Session, draft_id: UUID, *, status: Optional[str] = None) -> list[PlanProposal]:
    _get_draft(db, draft_id)
    q = db.query(PlanProposal).filter(PlanProposal.draft_id == draft_id)
    if status:
        q = q.filter(PlanProposal.status == status)
    return q.order_by(PlanProposal.created_at.asc()).all()


# =============================================================================
# Operations
# =============================================================================


def create_proposal(
    db: Session,
    *,
    actor: Principal,
    draft_id: UUID,
    diff: Any,
    rationale: Optional[str] = None,
    kind: str = KIND_FORWARD,
    undoes_proposal_id: Optional[UUID] = None,
) -> PlanProposal:
    return _insert_proposal(
        db,
        actor=actor,
        draft=_get_draft(db, draft_id),
        ops=parse_diff(diff),
        rationale=rationale,
        kind=kind,
        undoes_proposal_id=undoes_proposal_id,
    )


def _insert_proposal(
    db: Session,
    *,
    actor: Principal,
    draft: PlanDraft,
    ops: list[DiffOp],
    rationale: Optional[str],
    kind: str,
    undoes_proposal_id: Optional[UUID],
) -> PlanProposal:
    impact = project_impact(load_draft_state(db, draft.id), ops, kind=kind)

    proposal = PlanProposal(
        draft_id=draft.id,
        athlete_id=draft.athlete_id,
        coach_id=draft.coach_id,
        kind=kind,
        undoes_proposal_id=undoes_proposal_id,
        status=PENDING,
        diff_json=dump_diff(ops),
        impact_json=impact.model_dump(mode="json"),
        rationale=rationale,
        created_by_id=actor.id,
        created_at=_now(),
    )
    try:
        db.add(proposal)
        db.flush()
    except SQLAlchemyError as e:
        raise StoreUnavailableError("Proposal store unavailable") from e

    _emit_proposal_event(
        event="proposal_created",
        draft_id=draft.id,
        proposal_id=proposal.id,
        status=PENDING,
        extra={"kind": kind, "hours_delta": impact.hours_delta, "ops": len(ops)},
    )
    return proposal


def _evaluate(db: Session, cache: PolicyRuntimeCache, proposal: PlanProposal) -> ProposalEvaluation:
    draft = _get_draft(db, proposal.draft_id)
    # Pin one snapshot for the whole evaluation.
    snapshot = cache.snapshot
    profile = snapshot.profile(draft.policy_profile_id)
    ops = load_diff(proposal.diff_json)
    impact = project_impact(load_draft_state(db, draft.id), ops, kind=proposal.kind)
    verdict = evaluate_safety(impact, profile)
    return ProposalEvaluation(
        proposal_id=proposal.id,
        status=proposal.status,
        kind=proposal.kind,
        policy_version=snapshot.version,
        impact=impact,
        verdict=verdict,
    )


def preview_proposal(
    db: Session,
    *,
    cache: PolicyRuntimeCache,
    proposal_id: UUID,
    draft_id: Optional[UUID] = None,
) -> ProposalEvaluation:
    """Read-only; fresh impact and verdict in any state."""
    proposal = get_proposal(db, proposal_id, draft_id=draft_id)
    return _evaluate(db, cache, proposal)


def apply_proposal(
    db: Session,
    *,
    cache: PolicyRuntimeCache,
    actor: Principal,
    proposal_id: UUID,
    draft_id: Optional[UUID] = None,
    request: Optional[Request] = None,
) -> ApplyOutcome:
    proposal = get_proposal(db, proposal_id, draft_id=draft_id)
    if proposal.status != PENDING:
        raise ConflictError(f"Proposal {proposal_id} is {proposal.status}, not pending")

    evaluation = _evaluate(db, cache, proposal)
    if not evaluation.verdict.passed:
        _emit_proposal_event(
            event="proposal_safety_rejected",
            draft_id=proposal.draft_id,
            proposal_id=proposal.id,
            status=proposal.status,
            reason=evaluation.verdict.reason,
            extra={"policy_version": evaluation.policy_version},
        )
        raise SafetyRejectedError(evaluation.verdict.reason, verdict=evaluation.verdict.model_dump(mode="json"))

    now = _now()
    original: Optional[PlanProposal] = None
    try:
        with db.begin_nested():
            transition_status(db, proposal.id, expected=PENDING, new=APPLIED, values={"applied_at": now, "decided_at": now})
            inverse = apply_diff(db, proposal.draft_id, load_diff(proposal.diff_json))
            proposal.inverse_diff_json = inverse

            if proposal.kind == KIND_UNDO and proposal.undoes_proposal_id is not None:
                transition_status(
                    db, proposal.undoes_proposal_id, expected=UNDO_PENDING, new=UNDONE, values={"undone_at": now}
                )
                original = get_proposal(db, proposal.undoes_proposal_id)

            draft = _get_draft(db, proposal.draft_id)
            draft.updated_at = now

            record_audit_event(
                db,
                actor=actor,
                action="proposal.undo_applied" if proposal.kind == KIND_UNDO else "proposal.applied",
                target_type="proposal",
                target_id=str(proposal.id),
                draft_id=proposal.draft_id,
                before={"status": PENDING},
                after={"status": APPLIED},
                request=request,
                payload={
                    "kind": proposal.kind,
                    "undoes_proposal_id": str(proposal.undoes_proposal_id) if proposal.undoes_proposal_id else None,
                    "hours_delta": evaluation.impact.hours_delta,
                    "policy_profile_id": evaluation.verdict.profile_id,
                    "policy_version": evaluation.policy_version,
                    "sessions_touched": len(evaluation.impact.session_changes),
                },
            )
            db.flush()
    except SQLAlchemyError as e:
        logger.error("Apply failed for proposal %s: %s", proposal_id, e)
        raise StoreUnavailableError("Proposal store unavailable") from e

    db.refresh(proposal)
    _emit_proposal_event(
        event="proposal_applied",
        draft_id=proposal.draft_id,
        proposal_id=proposal.id,
        status=APPLIED,
        extra={"kind": proposal.kind, "hours_delta": evaluation.impact.hours_delta},
    )
    return ApplyOutcome(proposal=proposal, evaluation=evaluation, original=original)


def reject_proposal(
    db: Session,
    *,
    actor: Principal,
    proposal_id: UUID,
    draft_id: Optional[UUID] = None,
    reason: Optional[str] = None,
    request: Optional[Request] = None,
) -> PlanProposal:
    """
    pending -> rejected. No safety check.

    Rejecting an undo proposal hands its original back to `applied`, so a
    new undo can be requested later.
    """
    proposal = get_proposal(db, proposal_id, draft_id=draft_id)
    now = _now()
    try:
        with db.begin_nested():
            transition_status(
                db, proposal.id, expected=PENDING, new=REJECTED, values={"decided_at": now}
            )
            if proposal.kind == KIND_UNDO and proposal.undoes_proposal_id is not None:
                transition_status(db, proposal.undoes_proposal_id, expected=UNDO_PENDING, new=APPLIED)
            record_audit_event(
                db,
                actor=actor,
                action="proposal.rejected",
                target_type="proposal",
                target_id=str(proposal.id),
                draft_id=proposal.draft_id,
                before={"status": PENDING},
                after={"status": REJECTED},
                reason=reason,
                request=request,
                payload={"kind": proposal.kind},
            )
    except SQLAlchemyError as e:
        logger.error("Reject failed for proposal %s: %s", proposal_id, e)
        raise StoreUnavailableError("Proposal store unavailable") from e

    db.refresh(proposal)
    _emit_proposal_event(
        event="proposal_rejected", draft_id=proposal.draft_id, proposal_id=proposal.id, status=REJECTED, reason=reason
    )
    return proposal


def undo_proposal(
    db: Session,
    *,
    actor: Principal,
    proposal_id: UUID,
    draft_id: Optional[UUID] = None,
    rationale: Optional[str] = None,
    request: Optional[Request] = None,
) -> PlanProposal:
    """
    applied -> undo_pending, plus a new pending proposal (kind='undo') that
    carries the inverse diff. At most one undo is outstanding per proposal.
    """
    original = get_proposal(db, proposal_id, draft_id=draft_id)
    if original.kind == KIND_UNDO:
        raise ValidationError("Undo proposals cannot themselves be undone", field="proposal_id")
    if original.status != APPLIED:
        raise ConflictError(f"Proposal {proposal_id} is {original.status}, not applied")
    if not original.inverse_diff_json:
        raise ConflictError(f"Proposal {proposal_id} has no recorded inverse")

    try:
        with db.begin_nested():
            transition_status(db, original.id, expected=APPLIED, new=UNDO_PENDING)
            undo = _insert_proposal(
                db,
                actor=actor,
                draft=_get_draft(db, original.draft_id),
                ops=load_diff(original.inverse_diff_json),
                rationale=rationale or f"Undo of proposal {original.id}",
                kind=KIND_UNDO,
                undoes_proposal_id=original.id,
            )
            record_audit_event(
                db,
                actor=actor,
                action="proposal.undo_requested",
                target_type="proposal",
                target_id=str(original.id),
                draft_id=original.draft_id,
                before={"status": APPLIED},
                after={"status": UNDO_PENDING},
                request=request,
                payload={"undo_proposal_id": str(undo.id)},
            )
    except SQLAlchemyError as e:
        logger.error("Undo failed for proposal %s: %s", proposal_id, e)
        raise StoreUnavailableError("Proposal store unavailable") from e

    _emit_proposal_event(
        event="proposal_undo_requested",
        draft_id=original.draft_id,
        proposal_id=original.id,
        status=UNDO_PENDING,
        extra={"undo_proposal_id": str(undo.id)},
    )
    return undo


def publish_draft(
    db: Session,
    *,
    actor: Principal,
    draft_id: UUID,
    request: Optional[Request] = None,
) -> PlanDraft:
    draft = _get_draft(db, draft_id)
    previous_status = draft.status
    now = _now()
    draft.status = "published"
    draft.last_published_at = now
    draft.updated_at = now
    plan = materialized_plan(db, draft_id)
    record_audit_event(
        db,
        actor=actor,
        action="draft.published",
        target_type="draft",
        target_id=str(draft_id),
        draft_id=draft_id,
        before={"status": previous_status},
        after={"status": "published"},
        request=request,
        payload={
            "weeks": len(plan["weeks"]),
            "total_minutes": sum(w["total_minutes"] for w in plan["weeks"]),
        },
    )
    db.flush()
    return draft


def approve_and_publish(
    db: Session,
    *,
    cache: PolicyRuntimeCache,
    actor: Principal,
    proposal_id: UUID,
    draft_id: UUID,
    request: Optional[Request] = None,
) -> PublishOutcome:
    """
    Apply, then publish the draft.

    Publishing is best-effort: the apply stays in place if publishing fails,
    and the failure is reported on the outcome.
    """
    applied = apply_proposal(db, cache=cache, actor=actor, proposal_id=proposal_id, draft_id=draft_id, request=request)
    try:
        with db.begin_nested():
            publish_draft(db, actor=actor, draft_id=draft_id, request=request)
    except (StoreUnavailableError, SQLAlchemyError) as e:
        logger.warning(
            "Publish after apply failed for draft %s: %s",
            draft_id,
            e,
            extra={"extra_fields": {"event": "draft_publish_failed", "draft_id": str(draft_id)}},
        )
        return PublishOutcome(applied=applied, published=False, publish_error=str(e))

    _emit_proposal_event(event="draft_published", draft_id=draft_id, proposal_id=proposal_id, status=APPLIED)
    return PublishOutcome(applied=applied, published=True)
