"""
Policy Runtime Cache.

In-memory, versioned snapshot of policy overrides and the effective
profiles they produce. Pull-based: nothing refreshes it except an
explicit refresh() call. Writes to the store are never reflected until
the next refresh, so readers get bounded staleness.

Concurrency:
- The snapshot is immutable and swapped by a single reference assignment.
- Readers take no lock and always see one whole snapshot.
- A lock serialises refreshers only.
"""
from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping, Optional

from fastapi import Request

from core.exceptions import StoreUnavailableError
from services.policy_registry import PolicyProfile, default_profile_id, resolve_all
from services.policy_store import PolicyStore, StoredOverride

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicySnapshot:
    # Content hash of the stored overrides; equal content => equal version.
    version: str
    overrides: Mapping[str, StoredOverride]
    profiles: Mapping[str, PolicyProfile]
    refreshed_at: Optional[datetime] = field(default=None, compare=False)

    def profile(self, profile_id: str) -> PolicyProfile:
        found = self.profiles.get(profile_id)
        if found is not None:
            return found
        return self.profiles[default_profile_id()]


def _content_version(overrides: Mapping[str, StoredOverride]) -> str:
    canonical = json.dumps(
        {pid: {"v": o.profile_version, "o": o.override} for pid, o in overrides.items()},
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def build_snapshot(overrides: Mapping[str, StoredOverride], *, refreshed_at: Optional[datetime] = None) -> PolicySnapshot:
    frozen = dict(overrides)
    profiles = resolve_all({pid: o.override for pid, o in frozen.items()})
    return PolicySnapshot(
        version=_content_version(frozen),
        overrides=MappingProxyType(frozen),
        profiles=MappingProxyType(profiles),
        refreshed_at=refreshed_at,
    )


class PolicyRuntimeCache:
    """
    Owned by the application (app.state.policy_cache) and passed explicitly
    into services. Starts from documented defaults until the first refresh.
    """

    def __init__(self, store: PolicyStore):
        self._store = store
        self._refresh_lock = threading.Lock()
        self._snapshot: PolicySnapshot = build_snapshot({})

    @property
    def snapshot(self) -> PolicySnapshot:
        return self._snapshot

    def get(self, profile_id: str) -> PolicyProfile:
        return self._snapshot.profile(profile_id)

    def refresh(self) -> PolicySnapshot:
        """
        Re-read every override and swap in a new snapshot.

        On store failure the current snapshot stays in place and
        StoreUnavailableError is raised to the caller.
        """
        with self._refresh_lock:
            previous = self._snapshot
            try:
                overrides = self._store.read_all()
            except StoreUnavailableError:
                logger.error(
                    "Policy cache refresh failed; keeping snapshot %s",
                    previous.version,
                    extra={"extra_fields": {"event": "policy_cache_refresh_failed", "version": previous.version}},
                )
                raise

            snapshot = build_snapshot(overrides, refreshed_at=datetime.now(timezone.utc))
            self._snapshot = snapshot

        if snapshot.version != previous.version:
            logger.info(
                "Policy cache refreshed: %s -> %s",
                previous.version,
                snapshot.version,
                extra={
                    "extra_fields": {
                        "event": "policy_cache_refreshed",
                        "previous_version": previous.version,
                        "version": snapshot.version,
                        "profiles_overridden": sorted(overrides.keys()),
                    }
                },
            )
        return snapshot


def get_policy_cache(request: Request) -> PolicyRuntimeCache:
    """FastAPI dependency: the application-owned cache."""
    return request.app.state.policy_cache


def get_policy_store(request: Request) -> PolicyStore:
    return request.app.state.policy_store
