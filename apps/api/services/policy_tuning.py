"""
Admin policy tuning.

Listing refreshes the runtime cache first so administrators always see
what is stored. Upserts go straight to the durable store (with an audit
record in the same savepoint) and deliberately leave the cache alone:
evaluators keep their current snapshot until someone refreshes.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import Request
from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.auth import Principal
from core.exceptions import NotFoundError, StoreUnavailableError, ValidationError
from services.audit_recorder import record_audit_event
from services.policy_registry import DEFAULT_PROFILES, KNOWN_PROFILE_IDS, PolicyProfile, is_known_profile, parse_override
from services.policy_runtime_cache import PolicyRuntimeCache, PolicySnapshot
from services.policy_store import PolicyStore, StoredOverride

logger = logging.getLogger(__name__)


class PolicyProfileView(BaseModel):
    profile_id: str
    defaults: PolicyProfile
    effective: PolicyProfile
    override: Optional[dict[str, Any]] = None
    profile_version: Optional[int] = None
    updated_by_id: Optional[UUID] = None
    updated_at: Optional[datetime] = None


class PolicyProfileList(BaseModel):
    policy_version: str
    refreshed_at: Optional[datetime] = None
    profiles: list[PolicyProfileView]


def _view(snapshot: PolicySnapshot, profile_id: str) -> PolicyProfileView:
    stored = snapshot.overrides.get(profile_id)
    return PolicyProfileView(
        profile_id=profile_id,
        defaults=DEFAULT_PROFILES[profile_id],
        effective=snapshot.profiles[profile_id],
        override=dict(stored.override) if stored else None,
        profile_version=stored.profile_version if stored else None,
        updated_by_id=stored.updated_by_id if stored else None,
        updated_at=stored.updated_at if stored else None,
    )


def list_policy_profiles(cache: PolicyRuntimeCache) -> PolicyProfileList:
    """Refresh, then list every known profile from the fresh snapshot."""
    snapshot = cache.refresh()
    return PolicyProfileList(
        policy_version=snapshot.version,
        refreshed_at=snapshot.refreshed_at,
        profiles=[_view(snapshot, pid) for pid in KNOWN_PROFILE_IDS],
    )


def get_policy_profile(cache: PolicyRuntimeCache, profile_id: str) -> PolicyProfileView:
    """Cached read; may be stale relative to the store until the next refresh."""
    if not is_known_profile(profile_id):
        raise NotFoundError("Policy profile", profile_id)
    return _view(cache.snapshot, profile_id)


def upsert_policy_profile(
    db: Session,
    store: PolicyStore,
    *,
    actor: Principal,
    profile_id: str,
    override: Any,
    request: Optional[Request] = None,
) -> StoredOverride:
    if not is_known_profile(profile_id):
        raise ValidationError(f"Unknown policy profile: {profile_id}", field="profile_id")
    try:
        validated = parse_override(override).as_dict()
    except PydanticValidationError as e:
        raise ValidationError(f"invalid override: {e.errors(include_url=False)}", field="override") from e

    before = store.read_one(db, profile_id)
    try:
        with db.begin_nested():
            stored = store.write(db, profile_id, validated, actor_id=actor.id)
            record_audit_event(
                db,
                actor=actor,
                action="policy.upsert",
                target_type="policy_profile",
                target_id=profile_id,
                profile_id=profile_id,
                before={"override": before.override, "profile_version": before.profile_version} if before else None,
                after={"override": stored.override, "profile_version": stored.profile_version},
                request=request,
            )
    except SQLAlchemyError as e:
        logger.error("Policy upsert failed for %s: %s", profile_id, e)
        raise StoreUnavailableError("Policy store unavailable") from e

    logger.info(
        "Policy profile %s upserted (v%s); cache not refreshed",
        profile_id,
        stored.profile_version,
        extra={
            "extra_fields": {
                "event": "policy_upserted",
                "profile_id": profile_id,
                "profile_version": stored.profile_version,
                "actor_id": str(actor.id),
            }
        },
    )
    return stored


def refresh_policy_cache(cache: PolicyRuntimeCache) -> PolicySnapshot:
    return cache.refresh()
