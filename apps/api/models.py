from sqlalchemy import Column, Integer, BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Text, Index, JSON, Uuid, event
from sqlalchemy.dialects.postgresql import JSONB
from core.database import Base
import uuid
from datetime import datetime, timezone


# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# Sequence-backed ids; sqlite only autoincrements INTEGER PRIMARY KEY.
SequenceId = BigInteger().with_variant(Integer(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Athlete(Base):
    """
    Identity row for every principal (athletes, coaches, admins).

    The coaching relationship is a single nullable coach_id; ownership checks
    in core.auth read it.
    """

    __tablename__ = "athlete"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    email = Column(Text, unique=True, nullable=True)
    role = Column(Text, default="athlete", nullable=False)  # 'athlete', 'coach', 'admin', 'owner'
    display_name = Column(Text, nullable=True)
    coach_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=True, index=True)


class PlanDraft(Base):
    """
    An athlete's in-progress AI plan revision.

    Content lives in PlanDraftWeek/PlanDraftSession rows and only changes
    through applied proposals once the draft exists.
    """

    __tablename__ = "plan_draft"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False, index=True)
    coach_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False, index=True)

    # draft | published
    status = Column(Text, nullable=False, default="draft")
    policy_profile_id = Column(Text, nullable=False, default="default")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
    last_published_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('draft', 'published')", name="ck_plan_draft_status"),
    )


class PlanDraftWeek(Base):
    __tablename__ = "plan_draft_week"

    draft_id = Column(Uuid(as_uuid=True), ForeignKey("plan_draft.id"), primary_key=True)
    week_index = Column(Integer, primary_key=True)
    locked = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)

    # Derived from sessions; recomputed after every applied diff.
    sessions_count = Column(Integer, nullable=False, default=0)
    total_minutes = Column(Integer, nullable=False, default=0)


class PlanDraftSession(Base):
    __tablename__ = "plan_draft_session"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    draft_id = Column(Uuid(as_uuid=True), ForeignKey("plan_draft.id"), nullable=False, index=True)
    week_index = Column(Integer, nullable=False)
    ordinal = Column(Integer, nullable=False, default=0)
    day_of_week = Column(Integer, nullable=True)  # 0=Monday .. 6=Sunday
    # easy | recovery | long | tempo | threshold | intervals | vo2max | race | rest | cross
    session_type = Column(Text, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    notes = Column(Text, nullable=True)
    locked = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_plan_draft_session_draft_week", "draft_id", "week_index"),
    )


class PlanProposal(Base):
    """
    One proposed mutation to a PlanDraft.

    Lifecycle: pending -> applied | rejected; applied -> undo_pending -> undone.
    Undo proposals (kind='undo') carry the inverse diff and reference the
    proposal they reverse through undoes_proposal_id.
    """

    __tablename__ = "plan_proposal"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    draft_id = Column(Uuid(as_uuid=True), ForeignKey("plan_draft.id"), nullable=False, index=True)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False, index=True)
    coach_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False)

    # forward | undo
    kind = Column(Text, nullable=False, default="forward")
    undoes_proposal_id = Column(Uuid(as_uuid=True), ForeignKey("plan_proposal.id"), nullable=True, index=True)

    # pending | applied | rejected | undo_pending | undone
    status = Column(Text, nullable=False, default="pending", index=True)

    # Validated diff ops: [{"op": "...", ...}, ...]
    diff_json = Column(JSONType, nullable=False)
    # Captured when the proposal is applied; replayed by its undo proposal.
    inverse_diff_json = Column(JSONType, nullable=True)
    # Projection at creation time; informational, never used for decisions.
    impact_json = Column(JSONType, nullable=True)
    rationale = Column(Text, nullable=True)

    created_by_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    applied_at = Column(DateTime(timezone=True), nullable=True)
    undone_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("kind IN ('forward', 'undo')", name="ck_plan_proposal_kind"),
        CheckConstraint(
            "status IN ('pending', 'applied', 'rejected', 'undo_pending', 'undone')",
            name="ck_plan_proposal_status",
        ),
        Index("ix_plan_proposal_draft_status", "draft_id", "status"),
    )


class PolicyTuning(Base):
    """Stored override bundle for one policy profile (one row per tuned profile)."""

    __tablename__ = "policy_tuning"

    profile_id = Column(Text, primary_key=True)
    profile_version = Column(Integer, nullable=False, default=1)
    override_json = Column(JSONType, nullable=False, default=dict)
    updated_by_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class PlanAuditEvent(Base):
    """
    Append-only audit log for policy changes and plan-visible proposal transitions.

    Rows are immutable once flushed; see the mapper hooks below.
    """

    __tablename__ = "plan_audit_event"

    id = Column(SequenceId, primary_key=True, autoincrement=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)

    actor_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False, index=True)
    actor_role = Column(Text, nullable=True)
    action = Column(Text, nullable=False, index=True)

    # proposal | draft | policy_profile
    target_type = Column(Text, nullable=False)
    target_id = Column(Text, nullable=False)
    draft_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    profile_id = Column(Text, nullable=True, index=True)

    before = Column(JSONType, nullable=True)
    after = Column(JSONType, nullable=True)
    reason = Column(Text, nullable=True)
    ip_address = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    payload = Column(JSONType, nullable=False, default=dict)


@event.listens_for(PlanAuditEvent, "before_update")
def _audit_event_is_immutable(mapper, connection, target):
    raise RuntimeError("plan_audit_event rows are append-only")


@event.listens_for(PlanAuditEvent, "before_delete")
def _audit_event_is_undeletable(mapper, connection, target):
    raise RuntimeError("plan_audit_event rows are append-only")
