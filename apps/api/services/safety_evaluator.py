"""
Safety evaluator: projected impact x policy profile -> verdict.

Pure function, no I/O. The caller passes one resolved PolicyProfile taken
from a single cache snapshot, so every comparison in one evaluation uses
the same thresholds.
"""
from __future__ import annotations

import math
from typing import Optional

from pydantic import BaseModel, Field

from services.plan_diff import MAX_NOTES_LENGTH, ProjectedImpact
from services.policy_registry import PolicyProfile


class SafetyVerdict(BaseModel):
    passed: bool
    # First failing check (or "within policy limits").
    reason: str
    # The profile's hours cap used for this evaluation.
    limit: float
    profile_id: str
    reasons: list[str] = Field(default_factory=list)


def _exceeds(value: float, cap: float) -> bool:
    # NaN never passes a threshold comparison.
    return math.isnan(value) or value > cap


def evaluate_safety(impact: ProjectedImpact, profile: PolicyProfile) -> SafetyVerdict:
    reasons: list[str] = []

    if impact.missing_targets:
        reasons.append(f"targets not found: {', '.join(impact.missing_targets)}")
    if impact.locked_targets:
        reasons.append(f"targets locked: {', '.join(impact.locked_targets)}")
    if impact.oversized_targets:
        reasons.append(
            f"notes would exceed {MAX_NOTES_LENGTH} characters: {', '.join(impact.oversized_targets)}"
        )

    hours = abs(impact.hours_delta)
    if _exceeds(hours, profile.max_hours_delta):
        reasons.append(f"projected change {hours:.2f}h exceeds {profile.max_hours_delta:.2f}h cap")

    for week in impact.week_changes:
        if week.pct_change > 0 and _exceeds(week.pct_change, profile.max_week_volume_increase_pct):
            reasons.append(
                f"week {week.week_index} volume +{week.pct_change:.0%} exceeds "
                f"+{profile.max_week_volume_increase_pct:.0%} cap"
            )
        elif week.pct_change < 0 and _exceeds(-week.pct_change, profile.max_week_volume_decrease_pct):
            reasons.append(
                f"week {week.week_index} volume {week.pct_change:.0%} exceeds "
                f"-{profile.max_week_volume_decrease_pct:.0%} cap"
            )

    for change in impact.session_changes:
        before = change.before.duration_minutes
        after = change.after.duration_minutes
        if before != after and _exceeds(abs(change.duration_pct_change), profile.max_session_change_pct):
            reasons.append(
                f"session {change.session_id} duration change {change.duration_pct_change:+.0%} exceeds "
                f"{profile.max_session_change_pct:.0%} cap"
            )
        # Only flag sessions pushed out of bounds; ones already outside stay as they are.
        was_in = profile.min_session_minutes <= before <= profile.max_session_minutes
        is_in = profile.min_session_minutes <= after <= profile.max_session_minutes
        if was_in and not is_in:
            reasons.append(
                f"session {change.session_id} duration {after}min outside "
                f"{profile.min_session_minutes}-{profile.max_session_minutes}min"
            )

    if impact.kind == "forward" and profile.block_intensity_escalation and impact.intensity_escalations > 0:
        reasons.append(f"{impact.intensity_escalations} session(s) escalate intensity")

    return SafetyVerdict(
        passed=not reasons,
        reason=reasons[0] if reasons else "within policy limits",
        limit=profile.max_hours_delta,
        profile_id=profile.profile_id,
        reasons=reasons,
    )


def within_cap(impact: ProjectedImpact, max_hours: Optional[float]) -> bool:
    """Batch cap check: absolute projected hours at or under max_hours."""
    if max_hours is None:
        return True
    return not _exceeds(abs(impact.hours_delta), max_hours)
