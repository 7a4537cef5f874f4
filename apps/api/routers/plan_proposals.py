from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

import logging

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from core.auth import Principal, assert_can_manage_draft, require_coach
from core.database import get_db
from core.exceptions import NotFoundError
from core.feature_flags import require_plan_proposals_enabled
from models import PlanDraft, PlanProposal
from services import proposal_lifecycle as lifecycle
from services.audit_recorder import AuditEventView, list_audit_events
from services.batch_approval import BatchItemOutcome, batch_decide
from services.plan_diff import materialized_plan
from services.policy_runtime_cache import PolicyRuntimeCache, get_policy_cache


router = APIRouter(
    prefix="/v2/coach/plan-drafts",
    tags=["Plan Proposals"],
    dependencies=[Depends(require_plan_proposals_enabled)],
)
logger = logging.getLogger(__name__)


# =============================================================================
# Request/response models
# =============================================================================

ProposalStatus = Literal["pending", "applied", "rejected", "undo_pending", "undone"]


class CreateProposalRequest(BaseModel):
    # Ops are validated by the diff parser so errors come back as VALIDATION_ERROR_DIFF.
    diff: list[dict[str, Any]] = Field(..., min_length=1)
    rationale: str | None = Field(default=None, max_length=2000)


class RejectRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class UndoRequest(BaseModel):
    rationale: str | None = Field(default=None, max_length=2000)


class BatchRequest(BaseModel):
    proposal_ids: list[UUID]
    mode: Literal["approve", "reject"]
    max_hours: float | None = None


class ProposalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    draft_id: UUID
    athlete_id: UUID
    kind: Literal["forward", "undo"]
    undoes_proposal_id: UUID | None = None
    status: ProposalStatus
    diff_json: list[dict[str, Any]]
    impact_json: dict[str, Any] | None = None
    rationale: str | None = None
    created_by_id: UUID
    created_at: datetime
    decided_at: datetime | None = None
    applied_at: datetime | None = None
    undone_at: datetime | None = None


class ApplyResponse(BaseModel):
    proposal: ProposalOut
    evaluation: lifecycle.ProposalEvaluation
    original: ProposalOut | None = None


class ApproveAndPublishResponse(ApplyResponse):
    published: bool
    publish_error: str | None = None


class BatchResponse(BaseModel):
    draft_id: UUID
    mode: Literal["approve", "reject"]
    max_hours: float | None
    policy_version: str
    counts: dict[str, int]
    items: list[BatchItemOutcome]


# =============================================================================
# Internal helpers
# =============================================================================


def _require_draft(db: Session, draft_id: UUID, principal: Principal) -> PlanDraft:
    draft = db.query(PlanDraft).filter(PlanDraft.id == draft_id).first()
    if not draft:
        raise NotFoundError("Plan draft", str(draft_id))
    assert_can_manage_draft(db, principal=principal, draft=draft)
    return draft


def _out(p: PlanProposal) -> ProposalOut:
    return ProposalOut.model_validate(p)


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/{draft_id}/proposals", response_model=ProposalOut, status_code=status.HTTP_201_CREATED)
def create_proposal(
    draft_id: UUID,
    body: CreateProposalRequest,
    principal: Principal = Depends(require_coach),
    db: Session = Depends(get_db),
):
    _require_draft(db, draft_id, principal)
    proposal = lifecycle.create_proposal(
        db, actor=principal, draft_id=draft_id, diff=body.diff, rationale=body.rationale
    )
    return _out(proposal)


@router.get("/{draft_id}/proposals", response_model=list[ProposalOut])
def list_proposals(
    draft_id: UUID,
    status_filter: ProposalStatus | None = Query(default=None, alias="status"),
    principal: Principal = Depends(require_coach),
    db: Session = Depends(get_db),
):
    _require_draft(db, draft_id, principal)
    return [_out(p) for p in lifecycle.list_proposals(db, draft_id, status=status_filter)]


@router.get("/{draft_id}/plan")
def get_materialized_plan(
    draft_id: UUID,
    principal: Principal = Depends(require_coach),
    db: Session = Depends(get_db),
):
    draft = _require_draft(db, draft_id, principal)
    plan = materialized_plan(db, draft_id)
    plan["status"] = draft.status
    plan["policy_profile_id"] = draft.policy_profile_id
    return plan


@router.get("/{draft_id}/proposals/{proposal_id}", response_model=ProposalOut)
def get_proposal(
    draft_id: UUID,
    proposal_id: UUID,
    principal: Principal = Depends(require_coach),
    db: Session = Depends(get_db),
):
    _require_draft(db, draft_id, principal)
    return _out(lifecycle.get_proposal(db, proposal_id, draft_id=draft_id))


@router.get("/{draft_id}/proposals/{proposal_id}/preview", response_model=lifecycle.ProposalEvaluation)
def preview_proposal(
    draft_id: UUID,
    proposal_id: UUID,
    principal: Principal = Depends(require_coach),
    db: Session = Depends(get_db),
    cache: PolicyRuntimeCache = Depends(get_policy_cache),
):
    _require_draft(db, draft_id, principal)
    return lifecycle.preview_proposal(db, cache=cache, proposal_id=proposal_id, draft_id=draft_id)


@router.post("/{draft_id}/proposals/{proposal_id}/apply", response_model=ApplyResponse)
def apply_proposal(
    draft_id: UUID,
    proposal_id: UUID,
    request: Request,
    principal: Principal = Depends(require_coach),
    db: Session = Depends(get_db),
    cache: PolicyRuntimeCache = Depends(get_policy_cache),
):
    _require_draft(db, draft_id, principal)
    outcome = lifecycle.apply_proposal(
        db, cache=cache, actor=principal, proposal_id=proposal_id, draft_id=draft_id, request=request
    )
    return ApplyResponse(
        proposal=_out(outcome.proposal),
        evaluation=outcome.evaluation,
        original=_out(outcome.original) if outcome.original else None,
    )


@router.post("/{draft_id}/proposals/{proposal_id}/approve-and-publish", response_model=ApproveAndPublishResponse)
def approve_and_publish(
    draft_id: UUID,
    proposal_id: UUID,
    request: Request,
    principal: Principal = Depends(require_coach),
    db: Session = Depends(get_db),
    cache: PolicyRuntimeCache = Depends(get_policy_cache),
):
    _require_draft(db, draft_id, principal)
    outcome = lifecycle.approve_and_publish(
        db, cache=cache, actor=principal, proposal_id=proposal_id, draft_id=draft_id, request=request
    )
    return ApproveAndPublishResponse(
        proposal=_out(outcome.applied.proposal),
        evaluation=outcome.applied.evaluation,
        original=_out(outcome.applied.original) if outcome.applied.original else None,
        published=outcome.published,
        publish_error=outcome.publish_error,
    )


@router.post("/{draft_id}/proposals/{proposal_id}/reject", response_model=ProposalOut)
def reject_proposal(
    draft_id: UUID,
    proposal_id: UUID,
    request: Request,
    body: RejectRequest | None = None,
    principal: Principal = Depends(require_coach),
    db: Session = Depends(get_db),
):
    _require_draft(db, draft_id, principal)
    proposal = lifecycle.reject_proposal(
        db,
        actor=principal,
        proposal_id=proposal_id,
        draft_id=draft_id,
        reason=body.reason if body else None,
        request=request,
    )
    return _out(proposal)


@router.post(
    "/{draft_id}/proposals/{proposal_id}/undo", response_model=ProposalOut, status_code=status.HTTP_201_CREATED
)
def undo_proposal(
    draft_id: UUID,
    proposal_id: UUID,
    request: Request,
    body: UndoRequest | None = None,
    principal: Principal = Depends(require_coach),
    db: Session = Depends(get_db),
):
    _require_draft(db, draft_id, principal)
    undo = lifecycle.undo_proposal(
        db,
        actor=principal,
        proposal_id=proposal_id,
        draft_id=draft_id,
        rationale=body.rationale if body else None,
        request=request,
    )
    return _out(undo)


@router.post("/{draft_id}/proposals/batch", response_model=BatchResponse)
def batch_proposals(
    draft_id: UUID,
    body: BatchRequest,
    request: Request,
    principal: Principal = Depends(require_coach),
    db: Session = Depends(get_db),
    cache: PolicyRuntimeCache = Depends(get_policy_cache),
):
    _require_draft(db, draft_id, principal)
    result = batch_decide(
        db,
        cache=cache,
        actor=principal,
        draft_id=draft_id,
        proposal_ids=body.proposal_ids,
        max_hours=body.max_hours,
        mode=body.mode,
        request=request,
    )
    return BatchResponse(
        draft_id=result.draft_id,
        mode=result.mode,
        max_hours=result.max_hours,
        policy_version=result.policy_version,
        counts=result.counts,
        items=result.items,
    )


@router.get("/{draft_id}/audit", response_model=list[AuditEventView])
def list_draft_audit(
    draft_id: UUID,
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(require_coach),
    db: Session = Depends(get_db),
):
    _require_draft(db, draft_id, principal)
    return [AuditEventView.model_validate(ev) for ev in list_audit_events(db, draft_id=draft_id, limit=limit)]
