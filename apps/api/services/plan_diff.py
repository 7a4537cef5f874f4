"""
Plan draft diffs: validation, projection, application and inversion.

A proposal carries a list of diff ops. This module is the only place that
interprets them:

- project_impact(): pure; what the ops would do to a loaded DraftState
- apply_diff(): mutates the draft rows and returns the inverse ops
- materialized_plan(): the draft's current content as plain data

Inverse ops restore every touched field to its exact prior value, so
applying them after apply_diff() gives back the pre-diff plan.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Iterable, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter, ValidationError as PydanticValidationError, model_validator
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import ConflictError, NotFoundError, ValidationError
from models import PlanDraft, PlanDraftSession, PlanDraftWeek

logger = logging.getLogger(__name__)


SessionType = Annotated[str, StringConstraints(min_length=1)]

# Upper bounds on coach input. Checked by parse_diff only: inverse ops and
# stored diffs carry prior plan values and must always load.
MAX_NOTES_LENGTH = 4000
MAX_SESSION_MINUTES = 600
MAX_SESSION_TYPE_LENGTH = 40

# Higher = harder. Moving a session up this ladder is an intensity escalation.
INTENSITY_RANK: dict[str, int] = {
    "rest": 0,
    "cross": 1,
    "recovery": 1,
    "easy": 2,
    "long": 3,
    "tempo": 4,
    "threshold": 5,
    "intervals": 6,
    "vo2max": 6,
    "race": 7,
}


# =============================================================================
# Diff ops (strict, discriminated on "op")
# =============================================================================


class _Op(BaseModel):
    model_config = ConfigDict(extra="forbid")


class UpdateSessionOp(_Op):
    """Set fields on one session. Only fields present in the payload change."""

    op: Literal["update_session"]
    session_id: UUID
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    session_type: Optional[SessionType] = None
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _has_change(self) -> "UpdateSessionOp":
        if not (self.model_fields_set - {"op", "session_id"}):
            raise ValueError("update_session requires at least one field to change")
        return self


class SwapSessionTypeOp(_Op):
    op: Literal["swap_session_type"]
    session_id: UUID
    session_type: SessionType


class AdjustWeekVolumeOp(_Op):
    """Scale every unlocked session in a week by (1 + pct_delta)."""

    op: Literal["adjust_week_volume"]
    week_index: int = Field(..., ge=0)
    pct_delta: float = Field(..., ge=-0.9, le=1.0)


class AddSessionNoteOp(_Op):
    op: Literal["add_session_note"]
    session_id: UUID
    note: str = Field(..., min_length=1, max_length=1000)


class AddWeekNoteOp(_Op):
    op: Literal["add_week_note"]
    week_index: int = Field(..., ge=0)
    note: str = Field(..., min_length=1, max_length=1000)


class UpdateWeekOp(_Op):
    """Set week-level fields. Emitted by inversion to restore week notes."""

    op: Literal["update_week"]
    week_index: int = Field(..., ge=0)
    notes: Optional[str] = None


DiffOp = Annotated[
    Union[UpdateSessionOp, SwapSessionTypeOp, AdjustWeekVolumeOp, AddSessionNoteOp, AddWeekNoteOp, UpdateWeekOp],
    Field(discriminator="op"),
]

_ops_adapter = TypeAdapter(list[DiffOp])


def parse_diff(raw: Any) -> list[DiffOp]:
    """Validate raw diff payload. Raises ValidationError (422) on any problem."""
    if not isinstance(raw, list) or not raw:
        raise ValidationError("diff must be a non-empty list of ops", field="diff")
    if len(raw) > settings.MAX_DIFF_OPS:
        raise ValidationError(f"diff has {len(raw)} ops; max is {settings.MAX_DIFF_OPS}", field="diff")
    try:
        ops = _ops_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid diff: {e.errors(include_url=False)}", field="diff") from e
    problems = _input_limit_problems(ops)
    if problems:
        raise ValidationError(f"invalid diff: {'; '.join(problems)}", field="diff")
    return ops


def load_diff(raw: Any) -> list[DiffOp]:
    """Rebuild ops from a stored diff (proposal diff or captured inverse). No input bounds."""
    try:
        return _ops_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"stored diff is unreadable: {e.errors(include_url=False)}", field="diff") from e


def _input_limit_problems(ops: Iterable[DiffOp]) -> list[str]:
    problems: list[str] = []
    for i, op in enumerate(ops):
        duration = getattr(op, "duration_minutes", None)
        if duration is not None and duration > MAX_SESSION_MINUTES:
            problems.append(f"op {i}: duration_minutes {duration} exceeds {MAX_SESSION_MINUTES}")
        session_type = getattr(op, "session_type", None)
        if session_type is not None and len(session_type) > MAX_SESSION_TYPE_LENGTH:
            problems.append(f"op {i}: session_type longer than {MAX_SESSION_TYPE_LENGTH} characters")
        notes = getattr(op, "notes", None)
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            problems.append(f"op {i}: notes longer than {MAX_NOTES_LENGTH} characters")
    return problems


def dump_diff(ops: Iterable[DiffOp]) -> list[dict[str, Any]]:
    # exclude_unset keeps explicit nulls (e.g. notes=None restores an empty note)
    return [op.model_dump(mode="json", exclude_unset=True) for op in ops]


def _append_note(existing: Optional[str], note: str) -> str:
    return f"{existing}\n\n{note}" if existing else note


# =============================================================================
# Draft state (plain data, no ORM)
# =============================================================================


@dataclass
class SessionState:
    id: UUID
    week_index: int
    ordinal: int
    day_of_week: Optional[int]
    session_type: str
    duration_minutes: int
    notes: Optional[str]
    locked: bool


@dataclass
class WeekState:
    week_index: int
    locked: bool
    notes: Optional[str]


@dataclass
class DraftState:
    draft_id: UUID
    sessions: dict[UUID, SessionState]
    weeks: dict[int, WeekState]

    def week_minutes(self, week_index: int) -> int:
        return sum(s.duration_minutes for s in self.sessions.values() if s.week_index == week_index)

    def total_minutes(self) -> int:
        return sum(s.duration_minutes for s in self.sessions.values())


def load_draft_state(db: Session, draft_id: UUID, *, for_update: bool = False) -> DraftState:
    draft = db.query(PlanDraft).filter(PlanDraft.id == draft_id).first()
    if not draft:
        raise NotFoundError("Plan draft", str(draft_id))

    session_q = db.query(PlanDraftSession).filter(PlanDraftSession.draft_id == draft_id)
    week_q = db.query(PlanDraftWeek).filter(PlanDraftWeek.draft_id == draft_id)
    if for_update:
        session_q = session_q.with_for_update()
        week_q = week_q.with_for_update()

    sessions = {
        s.id: SessionState(
            id=s.id,
            week_index=s.week_index,
            ordinal=s.ordinal,
            day_of_week=s.day_of_week,
            session_type=s.session_type,
            duration_minutes=int(s.duration_minutes or 0),
            notes=s.notes,
            locked=bool(s.locked),
        )
        for s in session_q.all()
    }
    weeks = {w.week_index: WeekState(week_index=w.week_index, locked=bool(w.locked), notes=w.notes) for w in week_q.all()}
    # Sessions may reference weeks with no explicit row; treat those as unlocked.
    for s in sessions.values():
        weeks.setdefault(s.week_index, WeekState(week_index=s.week_index, locked=False, notes=None))
    return DraftState(draft_id=draft_id, sessions=sessions, weeks=weeks)


# =============================================================================
# Simulation (pure)
# =============================================================================


@dataclass
class _Simulation:
    after: DraftState
    touched_sessions: list[UUID] = field(default_factory=list)
    touched_weeks: list[int] = field(default_factory=list)
    locked_targets: list[str] = field(default_factory=list)
    missing_targets: list[str] = field(default_factory=list)
    # Note appends that would push notes past MAX_NOTES_LENGTH; not applied.
    oversized_targets: list[str] = field(default_factory=list)


def _simulate(state: DraftState, ops: Iterable[DiffOp]) -> _Simulation:
    after = copy.deepcopy(state)
    sim = _Simulation(after=after)

    def touch_session(sid: UUID) -> None:
        if sid not in sim.touched_sessions:
            sim.touched_sessions.append(sid)

    def touch_week(idx: int) -> None:
        if idx not in sim.touched_weeks:
            sim.touched_weeks.append(idx)

    def editable_session(sid: UUID) -> Optional[SessionState]:
        s = after.sessions.get(sid)
        if s is None:
            sim.missing_targets.append(f"session:{sid}")
            return None
        if s.locked or after.weeks[s.week_index].locked:
            sim.locked_targets.append(f"session:{sid}")
            return None
        return s

    def editable_week(idx: int) -> Optional[WeekState]:
        w = after.weeks.get(idx)
        if w is None:
            sim.missing_targets.append(f"week:{idx}")
            return None
        if w.locked:
            sim.locked_targets.append(f"week:{idx}")
            return None
        return w

    for op in ops:
        if isinstance(op, UpdateSessionOp):
            s = editable_session(op.session_id)
            if s is None:
                continue
            fields = op.model_fields_set
            if "duration_minutes" in fields and op.duration_minutes is not None:
                s.duration_minutes = op.duration_minutes
            if "session_type" in fields and op.session_type is not None:
                s.session_type = op.session_type
            if "day_of_week" in fields:
                s.day_of_week = op.day_of_week
            if "notes" in fields:
                s.notes = op.notes
            touch_session(s.id)
        elif isinstance(op, SwapSessionTypeOp):
            s = editable_session(op.session_id)
            if s is None:
                continue
            s.session_type = op.session_type
            touch_session(s.id)
        elif isinstance(op, AdjustWeekVolumeOp):
            w = editable_week(op.week_index)
            if w is None:
                continue
            for s in after.sessions.values():
                # Locked sessions inside an unlocked week are left as they are.
                if s.week_index != op.week_index or s.locked:
                    continue
                s.duration_minutes = max(0, int(round(s.duration_minutes * (1 + op.pct_delta))))
                touch_session(s.id)
        elif isinstance(op, AddSessionNoteOp):
            s = editable_session(op.session_id)
            if s is None:
                continue
            notes = _append_note(s.notes, op.note)
            if len(notes) > MAX_NOTES_LENGTH:
                sim.oversized_targets.append(f"session:{s.id}")
                continue
            s.notes = notes
            touch_session(s.id)
        elif isinstance(op, AddWeekNoteOp):
            w = editable_week(op.week_index)
            if w is None:
                continue
            notes = _append_note(w.notes, op.note)
            if len(notes) > MAX_NOTES_LENGTH:
                sim.oversized_targets.append(f"week:{w.week_index}")
                continue
            w.notes = notes
            touch_week(w.week_index)
        elif isinstance(op, UpdateWeekOp):
            w = editable_week(op.week_index)
            if w is None:
                continue
            if "notes" in op.model_fields_set:
                w.notes = op.notes
            touch_week(w.week_index)
    return sim


# =============================================================================
# Projected impact
# =============================================================================


class SessionSnapshot(BaseModel):
    session_id: UUID
    week_index: int
    day_of_week: Optional[int] = None
    session_type: str
    duration_minutes: int
    notes: Optional[str] = None


class SessionChange(BaseModel):
    session_id: UUID
    week_index: int
    before: SessionSnapshot
    after: SessionSnapshot
    duration_pct_change: float
    intensity_escalation: bool


class WeekChange(BaseModel):
    week_index: int
    minutes_before: int
    minutes_after: int
    pct_change: float


class ProjectedImpact(BaseModel):
    kind: Literal["forward", "undo"] = "forward"
    minutes_before: int
    minutes_after: int
    minutes_delta: int
    hours_delta: float
    week_changes: list[WeekChange] = Field(default_factory=list)
    session_changes: list[SessionChange] = Field(default_factory=list)
    max_session_change_pct: float = 0.0
    intensity_escalations: int = 0
    locked_targets: list[str] = Field(default_factory=list)
    missing_targets: list[str] = Field(default_factory=list)
    oversized_targets: list[str] = Field(default_factory=list)


def _snapshot(s: SessionState) -> SessionSnapshot:
    return SessionSnapshot(
        session_id=s.id,
        week_index=s.week_index,
        day_of_week=s.day_of_week,
        session_type=s.session_type,
        duration_minutes=s.duration_minutes,
        notes=s.notes,
    )


def _pct(before: int, after: int) -> float:
    if before == after:
        return 0.0
    if before <= 0:
        # Volume appearing from nothing counts as a full increase.
        return 1.0
    return round((after - before) / before, 4)


def project_impact(state: DraftState, ops: Iterable[DiffOp], *, kind: str = "forward") -> ProjectedImpact:
    """What the ops would do to the draft. Pure; state is not modified."""
    sim = _simulate(state, ops)
    after = sim.after

    session_changes: list[SessionChange] = []
    escalations = 0
    max_pct = 0.0
    for sid in sim.touched_sessions:
        b = state.sessions[sid]
        a = after.sessions[sid]
        escalated = INTENSITY_RANK.get(a.session_type, 0) > INTENSITY_RANK.get(b.session_type, 0)
        pct = _pct(b.duration_minutes, a.duration_minutes)
        max_pct = max(max_pct, abs(pct))
        if escalated:
            escalations += 1
        session_changes.append(
            SessionChange(
                session_id=sid,
                week_index=b.week_index,
                before=_snapshot(b),
                after=_snapshot(a),
                duration_pct_change=pct,
                intensity_escalation=escalated,
            )
        )

    week_changes: list[WeekChange] = []
    for idx in sorted({state.sessions[sid].week_index for sid in sim.touched_sessions}):
        before_m = state.week_minutes(idx)
        after_m = after.week_minutes(idx)
        if before_m != after_m:
            week_changes.append(
                WeekChange(week_index=idx, minutes_before=before_m, minutes_after=after_m, pct_change=_pct(before_m, after_m))
            )

    minutes_before = state.total_minutes()
    minutes_after = after.total_minutes()
    delta = minutes_after - minutes_before
    return ProjectedImpact(
        kind="undo" if kind == "undo" else "forward",
        minutes_before=minutes_before,
        minutes_after=minutes_after,
        minutes_delta=delta,
        hours_delta=round(delta / 60.0, 4),
        week_changes=week_changes,
        session_changes=session_changes,
        max_session_change_pct=round(max_pct, 4),
        intensity_escalations=escalations if kind != "undo" else 0,
        locked_targets=sim.locked_targets,
        missing_targets=sim.missing_targets,
        oversized_targets=sim.oversized_targets,
    )


# =============================================================================
# Application (mutates rows)
# =============================================================================


def _recompute_week_totals(db: Session, draft_id: UUID) -> None:
    sessions = db.query(PlanDraftSession).filter(PlanDraftSession.draft_id == draft_id).all()
    totals: dict[int, tuple[int, int]] = {}
    for s in sessions:
        count, minutes = totals.get(s.week_index, (0, 0))
        totals[s.week_index] = (count + 1, minutes + int(s.duration_minutes or 0))
    for w in db.query(PlanDraftWeek).filter(PlanDraftWeek.draft_id == draft_id).all():
        count, minutes = totals.get(w.week_index, (0, 0))
        w.sessions_count = count
        w.total_minutes = minutes


def apply_diff(db: Session, draft_id: UUID, ops: list[DiffOp]) -> list[dict[str, Any]]:
    """
    Apply ops to the draft rows inside the caller's transaction.

    Raises ConflictError if any op targets a locked week/session,
    NotFoundError if a target is gone and ValidationError if a note append
    would overflow MAX_NOTES_LENGTH. Returns inverse ops (JSON-ready).
    """
    state = load_draft_state(db, draft_id, for_update=True)
    sim = _simulate(state, ops)
    if sim.missing_targets:
        raise NotFoundError("Plan draft target", ", ".join(sim.missing_targets))
    if sim.locked_targets:
        raise ConflictError(f"locked targets: {', '.join(sim.locked_targets)}")
    if sim.oversized_targets:
        raise ValidationError(
            f"notes would exceed {MAX_NOTES_LENGTH} characters: {', '.join(sim.oversized_targets)}", field="diff"
        )

    inverse: list[DiffOp] = []
    rows = {
        r.id: r
        for r in db.query(PlanDraftSession).filter(
            PlanDraftSession.draft_id == draft_id, PlanDraftSession.id.in_(sim.touched_sessions)
        )
    } if sim.touched_sessions else {}
    for sid in sim.touched_sessions:
        before = state.sessions[sid]
        after = sim.after.sessions[sid]
        row = rows[sid]
        row.duration_minutes = after.duration_minutes
        row.session_type = after.session_type
        row.day_of_week = after.day_of_week
        row.notes = after.notes
        # Prior values are restored verbatim, so the inverse skips input validation.
        inverse.append(
            UpdateSessionOp.model_construct(
                op="update_session",
                session_id=sid,
                duration_minutes=before.duration_minutes,
                session_type=before.session_type,
                day_of_week=before.day_of_week,
                notes=before.notes,
            )
        )

    for idx in sim.touched_weeks:
        row = db.query(PlanDraftWeek).filter(PlanDraftWeek.draft_id == draft_id, PlanDraftWeek.week_index == idx).first()
        if row is None:
            row = PlanDraftWeek(draft_id=draft_id, week_index=idx, locked=False)
            db.add(row)
        row.notes = sim.after.weeks[idx].notes
        inverse.append(UpdateWeekOp.model_construct(op="update_week", week_index=idx, notes=state.weeks[idx].notes))

    db.flush()
    _recompute_week_totals(db, draft_id)
    db.flush()
    logger.debug(
        "Applied %d ops to draft %s (%d sessions, %d weeks touched)",
        len(ops),
        draft_id,
        len(sim.touched_sessions),
        len(sim.touched_weeks),
    )
    return dump_diff(inverse)


def materialized_plan(db: Session, draft_id: UUID) -> dict[str, Any]:
    """Current draft content as plain data (used for previews, publish and tests)."""
    state = load_draft_state(db, draft_id)
    weeks_out = []
    for idx in sorted(state.weeks):
        w = state.weeks[idx]
        sessions = sorted(
            (s for s in state.sessions.values() if s.week_index == idx),
            key=lambda s: (s.ordinal, str(s.id)),
        )
        weeks_out.append(
            {
                "week_index": idx,
                "locked": w.locked,
                "notes": w.notes,
                "total_minutes": sum(s.duration_minutes for s in sessions),
                "sessions": [
                    {
                        "session_id": str(s.id),
                        "ordinal": s.ordinal,
                        "day_of_week": s.day_of_week,
                        "session_type": s.session_type,
                        "duration_minutes": s.duration_minutes,
                        "notes": s.notes,
                        "locked": s.locked,
                    }
                    for s in sessions
                ],
            }
        )
    return {"draft_id": str(draft_id), "weeks": weeks_out}
