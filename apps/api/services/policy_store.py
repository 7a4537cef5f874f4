"""
Policy Store Adapter.

Durable mapping profile_id -> override bundle backed by the policy_tuning
table. Read/write only; merging and validation live in policy_registry.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import StoreUnavailableError
from models import PolicyTuning

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredOverride:
    profile_id: str
    profile_version: int
    override: dict[str, Any]
    updated_by_id: Optional[UUID]
    updated_at: Optional[datetime]


class PolicyStore(Protocol):
    def read_all(self) -> dict[str, StoredOverride]:
        ...

    def read_one(self, db: Session, profile_id: str) -> Optional[StoredOverride]:
        ...

    def write(self, db: Session, profile_id: str, override: dict[str, Any], *, actor_id: UUID) -> StoredOverride:
        ...


class SqlPolicyStore:
    """
    SQLAlchemy-backed store.

    read_all() uses its own short-lived session so a cache refresh never
    joins (or waits on) a request's transaction. write() runs inside the
    caller's session so the audit record commits with it.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def read_all(self) -> dict[str, StoredOverride]:
        db = self._session_factory()
        try:
            rows = db.query(PolicyTuning).all()
            return {row.profile_id: _to_stored(row) for row in rows}
        except SQLAlchemyError as e:
            logger.error("Policy store read failed: %s", e)
            raise StoreUnavailableError("Policy store unavailable") from e
        finally:
            db.close()

    def read_one(self, db: Session, profile_id: str) -> Optional[StoredOverride]:
        try:
            row = db.query(PolicyTuning).filter(PolicyTuning.profile_id == profile_id).first()
        except SQLAlchemyError as e:
            logger.error("Policy store read failed for %s: %s", profile_id, e)
            raise StoreUnavailableError("Policy store unavailable") from e
        return _to_stored(row) if row else None

    def write(self, db: Session, profile_id: str, override: dict[str, Any], *, actor_id: UUID) -> StoredOverride:
        try:
            row = db.query(PolicyTuning).filter(PolicyTuning.profile_id == profile_id).first()
            now = datetime.now(timezone.utc)
            if row is None:
                row = PolicyTuning(
                    profile_id=profile_id,
                    profile_version=1,
                    override_json=dict(override),
                    updated_by_id=actor_id,
                    updated_at=now,
                )
                db.add(row)
            else:
                row.profile_version = (row.profile_version or 0) + 1
                row.override_json = dict(override)
                row.updated_by_id = actor_id
                row.updated_at = now
            db.flush()
            return _to_stored(row)
        except SQLAlchemyError as e:
            logger.error("Policy store write failed for %s: %s", profile_id, e)
            raise StoreUnavailableError("Policy store unavailable") from e


def _to_stored(row: PolicyTuning) -> StoredOverride:
    return StoredOverride(
        profile_id=row.profile_id,
        profile_version=int(row.profile_version or 1),
        override=dict(row.override_json or {}),
        updated_by_id=row.updated_by_id,
        updated_at=row.updated_at,
    )
