import math
from uuid import uuid4

import pytest

from services.plan_diff import DraftState, ProjectedImpact, SessionState, WeekState, parse_diff, project_impact
from services.policy_registry import DEFAULT_PROFILES
from services.safety_evaluator import evaluate_safety, within_cap


def _state(*, weeks: int = 2, per_week: int = 3, minutes: int = 60, session_type: str = "easy") -> DraftState:
    sessions = {}
    for w in range(weeks):
        for i in range(per_week):
            sid = uuid4()
            sessions[sid] = SessionState(
                id=sid,
                week_index=w,
                ordinal=i,
                day_of_week=i,
                session_type=session_type,
                duration_minutes=minutes,
                notes=None,
                locked=False,
            )
    return DraftState(
        draft_id=uuid4(),
        sessions=sessions,
        weeks={w: WeekState(week_index=w, locked=False, notes=None) for w in range(weeks)},
    )


def _first(state: DraftState) -> SessionState:
    return sorted(state.sessions.values(), key=lambda s: (s.week_index, s.ordinal))[0]


def _impact(state: DraftState, diff: list[dict], kind: str = "forward") -> ProjectedImpact:
    return project_impact(state, parse_diff(diff), kind=kind)


def _blank_impact(hours: float) -> ProjectedImpact:
    return ProjectedImpact(minutes_before=0, minutes_after=0, minutes_delta=0, hours_delta=hours)


def test_small_edit_passes_default_profile():
    state = _state()
    impact = _impact(state, [{"op": "update_session", "session_id": str(_first(state).id), "duration_minutes": 70}])
    verdict = evaluate_safety(impact, DEFAULT_PROFILES["default"])
    assert verdict.passed is True
    assert verdict.reason == "within policy limits"
    assert verdict.reasons == []
    assert verdict.limit == 5.0
    assert verdict.profile_id == "default"


def test_hours_cap_is_enforced_on_absolute_change():
    state = _state()
    tight = DEFAULT_PROFILES["default"].model_copy(update={"max_hours_delta": 0.1})
    up = _impact(state, [{"op": "update_session", "session_id": str(_first(state).id), "duration_minutes": 70}])
    down = _impact(state, [{"op": "update_session", "session_id": str(_first(state).id), "duration_minutes": 50}])

    for impact in (up, down):
        verdict = evaluate_safety(impact, tight)
        assert verdict.passed is False
        assert "0.10h cap" in verdict.reason


def test_week_increase_cap():
    verdict = evaluate_safety(
        _impact(_state(), [{"op": "adjust_week_volume", "week_index": 0, "pct_delta": 0.2}]),
        DEFAULT_PROFILES["default"],
    )
    assert verdict.passed is False
    assert any("week 0 volume +20%" in r for r in verdict.reasons)


def test_week_decrease_cap():
    verdict = evaluate_safety(
        _impact(_state(), [{"op": "adjust_week_volume", "week_index": 1, "pct_delta": -0.3}]),
        DEFAULT_PROFILES["default"],
    )
    assert verdict.passed is False
    assert any("week 1 volume -30%" in r for r in verdict.reasons)


def test_session_change_cap_and_bounds():
    state = _state()
    sid = str(_first(state).id)

    jump = evaluate_safety(
        _impact(state, [{"op": "update_session", "session_id": sid, "duration_minutes": 90}]),
        DEFAULT_PROFILES["default"],
    )
    assert jump.passed is False
    assert any("duration change +50%" in r for r in jump.reasons)

    too_short = evaluate_safety(
        _impact(state, [{"op": "update_session", "session_id": sid, "duration_minutes": 10}]),
        DEFAULT_PROFILES["default"],
    )
    assert any("outside 20-240min" in r for r in too_short.reasons)


def test_sessions_already_out_of_bounds_are_not_flagged_for_bounds():
    state = _state(minutes=15)
    impact = _impact(state, [{"op": "add_session_note", "session_id": str(_first(state).id), "note": "keep it light"}])
    assert evaluate_safety(impact, DEFAULT_PROFILES["default"]).passed is True


def test_intensity_escalation_blocked_for_forward_only():
    state = _state()
    diff = [{"op": "swap_session_type", "session_id": str(_first(state).id), "session_type": "intervals"}]

    forward = evaluate_safety(_impact(state, diff), DEFAULT_PROFILES["default"])
    assert forward.passed is False
    assert "escalate intensity" in forward.reason

    undo = evaluate_safety(_impact(state, diff, kind="undo"), DEFAULT_PROFILES["default"])
    assert undo.passed is True

    performance = evaluate_safety(_impact(state, diff), DEFAULT_PROFILES["performance"])
    assert performance.passed is True


def test_missing_and_locked_targets_fail():
    state = _state()
    locked = _first(state)
    locked.locked = True

    verdict = evaluate_safety(
        _impact(
            state,
            [
                {"op": "update_session", "session_id": str(uuid4()), "duration_minutes": 60},
                {"op": "update_session", "session_id": str(locked.id), "duration_minutes": 65},
            ],
        ),
        DEFAULT_PROFILES["default"],
    )
    assert verdict.passed is False
    assert verdict.reason.startswith("targets not found")
    assert any(r.startswith("targets locked") for r in verdict.reasons)


def test_nan_hours_never_pass():
    verdict = evaluate_safety(_blank_impact(float("nan")), DEFAULT_PROFILES["performance"])
    assert verdict.passed is False
    assert within_cap(_blank_impact(float("nan")), 100) is False


@pytest.mark.parametrize(
    "hours,cap,expected",
    [
        (3.0, 5.0, True),
        (3.0, 2.0, False),
        (3.0, 3.0, True),
        (-3.0, 2.0, False),
        (0.0, 0.0, True),
        (math.inf, 1e9, False),
    ],
)
def test_within_cap(hours, cap, expected):
    assert within_cap(_blank_impact(hours), cap) is expected


def test_within_cap_without_cap_allows_everything():
    assert within_cap(_blank_impact(12.0), None) is True


def test_note_overflow_fails_the_verdict():
    state = _state()
    session = _first(state)
    session.notes = "n" * 3500
    impact = _impact(state, [{"op": "add_session_note", "session_id": str(session.id), "note": "m" * 600}])
    verdict = evaluate_safety(impact, DEFAULT_PROFILES["default"])
    assert verdict.passed is False
    assert verdict.reason == f"notes would exceed 4000 characters: session:{session.id}"
