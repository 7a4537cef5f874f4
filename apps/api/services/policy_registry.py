"""
Policy profile registry.

Documented default profiles plus the override schema administrators tune.
Effective values are layered:

    documented defaults  <  POLICY_OVERRIDES_JSON (env)  <  stored overrides

Malformed layers are ignored with a warning so one bad value can never
take the evaluator down; the previous layer stays in effect.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from core.config import settings

logger = logging.getLogger(__name__)


class PolicyProfile(BaseModel):
    """Resolved thresholds consumed by the safety evaluator. Immutable."""

    model_config = ConfigDict(frozen=True)

    profile_id: str
    label: str
    description: str
    # Absolute projected hours change allowed for one proposal.
    max_hours_delta: float
    # Week volume caps, as fractions of the week's current minutes.
    max_week_volume_increase_pct: float
    max_week_volume_decrease_pct: float
    # Per-session duration change cap, fraction of the session's current minutes.
    max_session_change_pct: float
    min_session_minutes: int
    max_session_minutes: int
    # Reject forward proposals that make a session harder while the profile is protective.
    block_intensity_escalation: bool


class PolicyOverride(BaseModel):
    """Strict override bundle. Every field optional; unknown keys rejected."""

    model_config = ConfigDict(extra="forbid")

    label: Optional[str] = Field(default=None, min_length=1, max_length=80)
    description: Optional[str] = Field(default=None, min_length=1, max_length=400)
    max_hours_delta: Optional[float] = Field(default=None, ge=0, le=40)
    max_week_volume_increase_pct: Optional[float] = Field(default=None, ge=0, le=1)
    max_week_volume_decrease_pct: Optional[float] = Field(default=None, ge=0, le=0.9)
    max_session_change_pct: Optional[float] = Field(default=None, ge=0, le=1)
    min_session_minutes: Optional[int] = Field(default=None, ge=0, le=240)
    max_session_minutes: Optional[int] = Field(default=None, ge=10, le=600)
    block_intensity_escalation: Optional[bool] = None

    @model_validator(mode="after")
    def _check_session_bounds(self) -> "PolicyOverride":
        if (
            self.min_session_minutes is not None
            and self.max_session_minutes is not None
            and self.min_session_minutes >= self.max_session_minutes
        ):
            raise ValueError("min_session_minutes must be below max_session_minutes")
        return self

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


DEFAULT_PROFILES: dict[str, PolicyProfile] = {
    "default": PolicyProfile(
        profile_id="default",
        label="Default",
        description="Balanced caps for most athletes.",
        max_hours_delta=5.0,
        max_week_volume_increase_pct=0.12,
        max_week_volume_decrease_pct=0.20,
        max_session_change_pct=0.25,
        min_session_minutes=20,
        max_session_minutes=240,
        block_intensity_escalation=True,
    ),
    "conservative": PolicyProfile(
        profile_id="conservative",
        label="Conservative",
        description="Tighter caps for returning, injured or new athletes.",
        max_hours_delta=3.0,
        max_week_volume_increase_pct=0.08,
        max_week_volume_decrease_pct=0.25,
        max_session_change_pct=0.20,
        min_session_minutes=20,
        max_session_minutes=180,
        block_intensity_escalation=True,
    ),
    "performance": PolicyProfile(
        profile_id="performance",
        label="Performance",
        description="Wider caps for experienced athletes in a build.",
        max_hours_delta=8.0,
        max_week_volume_increase_pct=0.15,
        max_week_volume_decrease_pct=0.20,
        max_session_change_pct=0.30,
        min_session_minutes=20,
        max_session_minutes=300,
        block_intensity_escalation=False,
    ),
}

KNOWN_PROFILE_IDS = tuple(DEFAULT_PROFILES.keys())


def default_profile_id() -> str:
    configured = settings.POLICY_DEFAULT_PROFILE_ID
    if configured in DEFAULT_PROFILES:
        return configured
    logger.warning("Unknown POLICY_DEFAULT_PROFILE_ID %r, using 'default'", configured)
    return "default"


def is_known_profile(profile_id: str) -> bool:
    return profile_id in DEFAULT_PROFILES


def parse_override(raw: Any) -> PolicyOverride:
    """Validate a raw override bundle. Raises pydantic.ValidationError."""
    return PolicyOverride.model_validate(raw)


def load_env_overrides() -> dict[str, dict[str, Any]]:
    """Parse POLICY_OVERRIDES_JSON into {profile_id: override dict}."""
    raw = settings.POLICY_OVERRIDES_JSON
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("POLICY_OVERRIDES_JSON is not valid JSON; ignoring")
        return {}
    if not isinstance(parsed, dict):
        logger.warning("POLICY_OVERRIDES_JSON must be an object; ignoring")
        return {}

    out: dict[str, dict[str, Any]] = {}
    for profile_id, bundle in parsed.items():
        if not is_known_profile(profile_id):
            logger.warning("POLICY_OVERRIDES_JSON names unknown profile %r; ignoring", profile_id)
            continue
        try:
            out[profile_id] = parse_override(bundle).as_dict()
        except PydanticValidationError as e:
            logger.warning("POLICY_OVERRIDES_JSON[%s] invalid; ignoring: %s", profile_id, e.errors())
    return out


def _merge(base: PolicyProfile, override: Mapping[str, Any], *, source: str) -> PolicyProfile:
    if not override:
        return base
    try:
        validated = parse_override(dict(override)).as_dict()
        merged = base.model_copy(update=validated)
        if merged.min_session_minutes >= merged.max_session_minutes:
            raise ValueError("session bounds collapse after merge")
        return merged
    except (PydanticValidationError, ValueError) as e:
        logger.warning(
            "Ignoring %s override for policy profile %s: %s",
            source,
            base.profile_id,
            e,
            extra={"extra_fields": {"profile_id": base.profile_id, "override_source": source}},
        )
        return base


def resolve_profile(
    profile_id: str,
    stored_override: Optional[Mapping[str, Any]] = None,
    env_overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> PolicyProfile:
    """Effective profile for one id: defaults, then env layer, then stored layer."""
    base = DEFAULT_PROFILES[profile_id]
    env_layer = (env_overrides or {}).get(profile_id) or {}
    profile = _merge(base, env_layer, source="env")
    return _merge(profile, stored_override or {}, source="stored")


def resolve_all(stored: Mapping[str, Mapping[str, Any]]) -> dict[str, PolicyProfile]:
    """Effective profile for every known id given the stored override mapping."""
    env_overrides = load_env_overrides()
    return {
        profile_id: resolve_profile(profile_id, stored.get(profile_id), env_overrides)
        for profile_id in KNOWN_PROFILE_IDS
    }
