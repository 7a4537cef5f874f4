"""
Batch approval: one mode and one hours cap over many proposals.

Best-effort, never all-or-nothing. Each item runs through the normal
lifecycle operation (its own savepoint), and a failure on one id is
recorded as that item's outcome without touching the others.
"""
from __future__ import annotations

import logging
import math
from typing import Literal, Optional
from uuid import UUID

from fastapi import Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.auth import Principal
from core.config import settings
from core.exceptions import APIException, ConflictError, NotFoundError, SafetyRejectedError, StoreUnavailableError, ValidationError
from models import PlanProposal
from services import proposal_lifecycle as lifecycle
from services.policy_runtime_cache import PolicyRuntimeCache
from services.safety_evaluator import within_cap

logger = logging.getLogger(__name__)

BatchMode = Literal["approve", "reject"]
Outcome = Literal["applied", "rejected", "skipped", "failed"]


class BatchItemOutcome(BaseModel):
    proposal_id: UUID
    outcome: Outcome
    # skipped: not-pending | exceeds-cap
    # failed: not-found | safety-rejected | conflict | store-unavailable | invalid
    reason: Optional[str] = None
    hours_delta: Optional[float] = None
    detail: Optional[str] = None


class BatchResult(BaseModel):
    draft_id: UUID
    mode: BatchMode
    max_hours: Optional[float]
    policy_version: str
    items: list[BatchItemOutcome] = Field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        out = {"applied": 0, "rejected": 0, "skipped": 0, "failed": 0}
        for item in self.items:
            out[item.outcome] += 1
        return out


def _validate_request(proposal_ids: list[UUID], max_hours: Optional[float], mode: str) -> None:
    if mode not in ("approve", "reject"):
        raise ValidationError(f"mode must be 'approve' or 'reject', got {mode!r}", field="mode")
    if not proposal_ids:
        raise ValidationError("proposal_ids must not be empty", field="proposal_ids")
    if len(proposal_ids) > settings.BATCH_MAX_PROPOSALS:
        raise ValidationError(
            f"at most {settings.BATCH_MAX_PROPOSALS} proposals per batch", field="proposal_ids"
        )
    if len(set(proposal_ids)) != len(proposal_ids):
        raise ValidationError("proposal_ids must be unique", field="proposal_ids")
    if mode == "approve":
        if max_hours is None:
            raise ValidationError("max_hours is required for mode 'approve'", field="max_hours")
        if not math.isfinite(max_hours) or max_hours < 0:
            raise ValidationError("max_hours must be a finite, non-negative number", field="max_hours")


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, SafetyRejectedError):
        return "safety-rejected"
    if isinstance(exc, ConflictError):
        return "conflict"
    if isinstance(exc, NotFoundError):
        return "not-found"
    if isinstance(exc, (StoreUnavailableError, SQLAlchemyError)):
        return "store-unavailable"
    return "invalid"


def _decide_one(
    db: Session,
    *,
    cache: PolicyRuntimeCache,
    actor: Principal,
    draft_id: UUID,
    proposal_id: UUID,
    max_hours: Optional[float],
    mode: str,
    request: Optional[Request],
) -> BatchItemOutcome:
    proposal = (
        db.query(PlanProposal)
        .filter(PlanProposal.id == proposal_id, PlanProposal.draft_id == draft_id)
        .first()
    )
    if proposal is None:
        return BatchItemOutcome(proposal_id=proposal_id, outcome="failed", reason="not-found")
    if proposal.status != lifecycle.PENDING:
        return BatchItemOutcome(proposal_id=proposal_id, outcome="skipped", reason="not-pending")

    if mode == "reject":
        try:
            lifecycle.reject_proposal(
                db, actor=actor, proposal_id=proposal_id, draft_id=draft_id, reason="batch reject", request=request
            )
        except ConflictError:
            # Decided by someone else after the status read above.
            return BatchItemOutcome(proposal_id=proposal_id, outcome="skipped", reason="not-pending")
        return BatchItemOutcome(proposal_id=proposal_id, outcome="rejected")

    evaluation = lifecycle.preview_proposal(db, cache=cache, proposal_id=proposal_id, draft_id=draft_id)
    hours = evaluation.impact.hours_delta
    if not within_cap(evaluation.impact, max_hours):
        return BatchItemOutcome(proposal_id=proposal_id, outcome="skipped", reason="exceeds-cap", hours_delta=hours)

    lifecycle.apply_proposal(
        db, cache=cache, actor=actor, proposal_id=proposal_id, draft_id=draft_id, request=request
    )
    return BatchItemOutcome(proposal_id=proposal_id, outcome="applied", hours_delta=hours)


def batch_decide(
    db: Session,
    *,
    cache: PolicyRuntimeCache,
    actor: Principal,
    draft_id: UUID,
    proposal_ids: list[UUID],
    max_hours: Optional[float] = None,
    mode: str = "approve",
    request: Optional[Request] = None,
) -> BatchResult:
    """
    Decide every id under one mode.

    Returns exactly one outcome per requested id, in request order:
    applied | rejected | skipped(not-pending | exceeds-cap) | failed(reason).
    """
    _validate_request(proposal_ids, max_hours, mode)
    items: list[BatchItemOutcome] = []
    for proposal_id in proposal_ids:
        try:
            item = _decide_one(
                db,
                cache=cache,
                actor=actor,
                draft_id=draft_id,
                proposal_id=proposal_id,
                max_hours=max_hours,
                mode=mode,
                request=request,
            )
        except (APIException, SQLAlchemyError) as e:
            reason = _failure_reason(e)
            logger.warning(
                "Batch item %s failed: %s",
                proposal_id,
                reason,
                extra={"extra_fields": {"event": "batch_item_failed", "proposal_id": str(proposal_id), "reason": reason}},
            )
            item = BatchItemOutcome(
                proposal_id=proposal_id,
                outcome="failed",
                reason=reason,
                detail=getattr(e, "detail", None) or str(e),
            )
        items.append(item)

    result = BatchResult(
        draft_id=draft_id,
        mode=mode,
        max_hours=max_hours,
        policy_version=cache.snapshot.version,
        items=items,
    )
    logger.info(
        "Batch %s on draft %s: %s",
        mode,
        draft_id,
        result.counts,
        extra={"extra_fields": {"event": "batch_decided", "draft_id": str(draft_id), "mode": mode, **result.counts}},
    )
    return result
