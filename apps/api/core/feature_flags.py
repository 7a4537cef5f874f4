"""
Feature Flag Helper

Settings-backed gates for routers. A disabled surface answers 404 so it
is indistinguishable from a route that does not exist.
"""

from core.config import settings
from core.exceptions import NotFoundError


def is_feature_enabled(flag_key: str) -> bool:
    """
    Check if a feature flag is enabled.

    Args:
        flag_key: Feature flag key (e.g., "plan_proposals")

    Returns:
        True if feature is enabled
    """
    if flag_key == "plan_proposals":
        return settings.PLAN_PROPOSALS_ENABLED
    return False


def require_plan_proposals_enabled() -> None:
    if not is_feature_enabled("plan_proposals"):
        raise NotFoundError("Feature", "plan_proposals")
