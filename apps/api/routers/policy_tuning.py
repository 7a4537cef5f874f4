"""
Admin policy tuning endpoints.

The list endpoint refreshes the runtime cache before reading; the single
profile read does not. Upserts are durable immediately but only become
visible to evaluators after POST /refresh (or the next list call).
"""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import Principal, require_admin
from core.database import get_db
from core.exceptions import NotFoundError
from services.audit_recorder import AuditEventView, list_audit_events
from services.policy_registry import is_known_profile
from services.policy_runtime_cache import PolicyRuntimeCache, get_policy_cache, get_policy_store
from services.policy_store import PolicyStore
from services.policy_tuning import (
    PolicyProfileList,
    PolicyProfileView,
    get_policy_profile,
    list_policy_profiles,
    refresh_policy_cache,
    upsert_policy_profile,
)


router = APIRouter(prefix="/v1/admin/policy-tuning", tags=["Admin Policy Tuning"])


class UpsertRequest(BaseModel):
    # Validated against the strict override schema by the service.
    override: dict[str, Any]


class UpsertResponse(BaseModel):
    profile_id: str
    profile_version: int
    override: dict[str, Any]
    updated_by_id: UUID | None = None
    updated_at: datetime | None = None
    cache_refreshed: bool = False


class RefreshResponse(BaseModel):
    policy_version: str
    refreshed_at: datetime | None = None


@router.get("", response_model=PolicyProfileList)
def list_profiles(
    admin: Principal = Depends(require_admin),
    cache: PolicyRuntimeCache = Depends(get_policy_cache),
):
    return list_policy_profiles(cache)


@router.post("/refresh", response_model=RefreshResponse)
def refresh_cache(
    admin: Principal = Depends(require_admin),
    cache: PolicyRuntimeCache = Depends(get_policy_cache),
):
    snapshot = refresh_policy_cache(cache)
    return RefreshResponse(policy_version=snapshot.version, refreshed_at=snapshot.refreshed_at)


@router.get("/{profile_id}", response_model=PolicyProfileView)
def get_profile(
    profile_id: str,
    admin: Principal = Depends(require_admin),
    cache: PolicyRuntimeCache = Depends(get_policy_cache),
):
    return get_policy_profile(cache, profile_id)


@router.put("/{profile_id}", response_model=UpsertResponse)
def upsert_profile(
    profile_id: str,
    body: UpsertRequest,
    request: Request,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    store: PolicyStore = Depends(get_policy_store),
):
    stored = upsert_policy_profile(
        db, store, actor=admin, profile_id=profile_id, override=body.override, request=request
    )
    return UpsertResponse(
        profile_id=stored.profile_id,
        profile_version=stored.profile_version,
        override=stored.override,
        updated_by_id=stored.updated_by_id,
        updated_at=stored.updated_at,
    )


@router.get("/{profile_id}/audit", response_model=list[AuditEventView])
def list_profile_audit(
    profile_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if not is_known_profile(profile_id):
        raise NotFoundError("Policy profile", profile_id)
    return [AuditEventView.model_validate(ev) for ev in list_audit_events(db, profile_id=profile_id, limit=limit)]
