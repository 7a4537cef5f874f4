from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

import logging
from fastapi import Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.auth import Principal
from core.exceptions import AuditWriteError, ValidationError
from models import PlanAuditEvent

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 500


def _client_ip(request: Optional[Request]) -> Optional[str]:
    if request is None:
        return None
    # Common reverse proxy headers (best-effort).
    fwd = request.headers.get("x-forwarded-for")
    if fwd:
        return fwd.split(",")[0].strip() or None
    return request.client.host if request.client else None


def record_audit_event(
    db: Session,
    *,
    actor: Principal,
    action: str,
    target_type: str,
    target_id: str,
    draft_id: Optional[UUID] = None,
    profile_id: Optional[str] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    reason: Optional[str] = None,
    request: Optional[Request] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> PlanAuditEvent:
    """
    Append one audit record inside the caller's transaction.

    Unlike operational logging this is NOT best-effort: a failed write raises
    AuditWriteError so the caller's savepoint rolls the mutation back with it.
    Payload must be bounded and must not contain secrets.
    """
    try:
        ev = PlanAuditEvent(
            actor_id=actor.id,
            actor_role=actor.role,
            action=action,
            target_type=target_type,
            target_id=str(target_id),
            draft_id=draft_id,
            profile_id=profile_id,
            before=before,
            after=after,
            reason=reason,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent") if request is not None else None,
            payload=payload or {},
        )
        db.add(ev)
        db.flush()
        return ev
    except SQLAlchemyError as e:
        logger.error(
            "Audit write failed: %s",
            action,
            extra={"extra_fields": {"event": "audit_write_failed", "action": action, "target_id": str(target_id)}},
        )
        raise AuditWriteError(f"Audit write failed for {action}") from e


def list_audit_events(
    db: Session,
    *,
    draft_id: Optional[UUID] = None,
    profile_id: Optional[str] = None,
    limit: int = 100,
) -> list[PlanAuditEvent]:
    """Newest-first audit trail for exactly one of draft_id / profile_id."""
    if (draft_id is None) == (profile_id is None):
        raise ValidationError("Exactly one of draft_id or profile_id is required")
    if limit < 1 or limit > MAX_LIST_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LIST_LIMIT}", field="limit")

    q = db.query(PlanAuditEvent)
    if draft_id is not None:
        q = q.filter(PlanAuditEvent.draft_id == draft_id)
    else:
        q = q.filter(PlanAuditEvent.profile_id == profile_id)
    return q.order_by(PlanAuditEvent.id.desc()).limit(limit).all()


class AuditEventView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: datetime
    actor_id: UUID
    actor_role: Optional[str] = None
    action: str
    target_type: str
    target_id: str
    draft_id: Optional[UUID] = None
    profile_id: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    payload: Dict[str, Any] = {}
