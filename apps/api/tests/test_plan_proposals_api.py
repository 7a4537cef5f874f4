"""
HTTP contract for the coach plan-proposal surface.

Fixture rows are committed before each request and the test session is
rolled back before reading results, so every check sees what the API
committed.
"""
from uuid import UUID, uuid4

from fastapi.testclient import TestClient

from core.config import settings
from main import app
from models import PlanDraft, PlanProposal

from plan_draft_helpers import THREE_HOUR_BUILD, coach_with_draft, create_user, headers, sessions_for


client = TestClient(app)


def _base(draft) -> str:
    return f"/v2/coach/plan-drafts/{draft.id}"


def _propose(coach, draft, diff=THREE_HOUR_BUILD) -> dict:
    resp = client.post(f"{_base(draft)}/proposals", headers=headers(coach), json={"diff": diff, "rationale": "pytest"})
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_requires_auth(db):
    _, _, draft = coach_with_draft(db)
    resp = client.get(f"{_base(draft)}/proposals")
    assert resp.status_code == 401
    assert resp.json()["error_code"] == "UNAUTHORIZED"


def test_athlete_role_is_forbidden(db):
    _, athlete, draft = coach_with_draft(db)
    resp = client.get(f"{_base(draft)}/proposals", headers=headers(athlete))
    assert resp.status_code == 403


def test_coach_cannot_touch_someone_elses_athlete(db):
    _, _, draft = coach_with_draft(db)
    stranger = create_user(db, role="coach")
    resp = client.post(f"{_base(draft)}/proposals", headers=headers(stranger), json={"diff": THREE_HOUR_BUILD})
    assert resp.status_code == 403
    assert resp.json()["error_code"] == "FORBIDDEN"


def test_admin_can_manage_any_draft(db):
    _, _, draft = coach_with_draft(db)
    admin = create_user(db, role="admin")
    assert client.get(f"{_base(draft)}/plan", headers=headers(admin)).status_code == 200


def test_unknown_draft_is_not_found(db):
    coach, _, _ = coach_with_draft(db)
    resp = client.get(f"/v2/coach/plan-drafts/{uuid4()}/proposals", headers=headers(coach))
    assert resp.status_code == 404
    assert resp.json()["error_code"] == "NOT_FOUND"


def test_feature_flag_off_hides_the_surface(db, monkeypatch):
    coach, _, draft = coach_with_draft(db)
    monkeypatch.setattr(settings, "PLAN_PROPOSALS_ENABLED", False)
    resp = client.get(f"{_base(draft)}/proposals", headers=headers(coach))
    assert resp.status_code == 404


def test_invalid_diff_is_a_validation_error(db):
    coach, _, draft = coach_with_draft(db)
    resp = client.post(
        f"{_base(draft)}/proposals", headers=headers(coach), json={"diff": [{"op": "drop_table"}]}
    )
    assert resp.status_code == 422
    assert resp.json()["error_code"] == "VALIDATION_ERROR_DIFF"


def test_preview_apply_and_conflict_on_second_apply(db):
    coach, _, draft = coach_with_draft(db)
    proposal = _propose(coach, draft)
    assert proposal["status"] == "pending"
    assert proposal["impact_json"]["hours_delta"] == 3.0

    preview = client.get(f"{_base(draft)}/proposals/{proposal['id']}/preview", headers=headers(coach))
    assert preview.status_code == 200
    assert preview.json()["verdict"]["passed"] is True
    assert preview.json()["status"] == "pending"

    applied = client.post(f"{_base(draft)}/proposals/{proposal['id']}/apply", headers=headers(coach))
    assert applied.status_code == 200, applied.text
    body = applied.json()
    assert body["proposal"]["status"] == "applied"
    assert body["evaluation"]["impact"]["minutes_delta"] == 180
    assert body["original"] is None

    again = client.post(f"{_base(draft)}/proposals/{proposal['id']}/apply", headers=headers(coach))
    assert again.status_code == 409
    assert again.json() == {"detail": again.json()["detail"], "error_code": "CONFLICT"}

    db.rollback()
    assert {s.duration_minutes for s in sessions_for(db, draft.id)} == {89}


def test_safety_rejection_returns_verdict(db):
    coach, _, draft = coach_with_draft(db)
    proposal = _propose(coach, draft, diff=[{"op": "adjust_week_volume", "week_index": 2, "pct_delta": 0.4}])

    resp = client.post(f"{_base(draft)}/proposals/{proposal['id']}/apply", headers=headers(coach))
    assert resp.status_code == 422
    body = resp.json()
    assert body["error_code"] == "SAFETY_REJECTED"
    assert body["verdict"]["passed"] is False
    assert body["verdict"]["limit"] == 5.0

    db.rollback()
    assert db.query(PlanProposal).filter(PlanProposal.id == UUID(proposal["id"])).one().status == "pending"


def test_undo_flow_restores_plan(db):
    coach, _, draft = coach_with_draft(db)
    original_plan = client.get(f"{_base(draft)}/plan", headers=headers(coach)).json()
    proposal = _propose(coach, draft)
    client.post(f"{_base(draft)}/proposals/{proposal['id']}/apply", headers=headers(coach))

    undo = client.post(f"{_base(draft)}/proposals/{proposal['id']}/undo", headers=headers(coach))
    assert undo.status_code == 201, undo.text
    assert undo.json()["kind"] == "undo"
    assert undo.json()["undoes_proposal_id"] == proposal["id"]

    double = client.post(f"{_base(draft)}/proposals/{proposal['id']}/undo", headers=headers(coach))
    assert double.status_code == 409

    applied = client.post(f"{_base(draft)}/proposals/{undo.json()['id']}/apply", headers=headers(coach))
    assert applied.status_code == 200, applied.text
    assert applied.json()["original"]["status"] == "undone"

    restored = client.get(f"{_base(draft)}/plan", headers=headers(coach)).json()
    assert restored["weeks"] == original_plan["weeks"]


def test_reject_with_and_without_body(db):
    coach, _, draft = coach_with_draft(db)
    first = _propose(coach, draft)
    second = _propose(coach, draft, diff=[{"op": "add_week_note", "week_index": 0, "note": "deload"}])

    resp = client.post(
        f"{_base(draft)}/proposals/{first['id']}/reject", headers=headers(coach), json={"reason": "not now"}
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "rejected"
    assert client.post(f"{_base(draft)}/proposals/{second['id']}/reject", headers=headers(coach)).status_code == 200
    assert client.post(f"{_base(draft)}/proposals/{second['id']}/reject", headers=headers(coach)).status_code == 409

    listed = client.get(f"{_base(draft)}/proposals?status=rejected", headers=headers(coach))
    assert {p["id"] for p in listed.json()} == {first["id"], second["id"]}


def test_batch_endpoint(db):
    coach, _, draft = coach_with_draft(db)
    proposal = _propose(coach, draft)

    skipped = client.post(
        f"{_base(draft)}/proposals/batch",
        headers=headers(coach),
        json={"proposal_ids": [proposal["id"]], "mode": "approve", "max_hours": 2},
    )
    assert skipped.status_code == 200, skipped.text
    assert skipped.json()["items"][0]["outcome"] == "skipped"
    assert skipped.json()["items"][0]["reason"] == "exceeds-cap"

    applied = client.post(
        f"{_base(draft)}/proposals/batch",
        headers=headers(coach),
        json={"proposal_ids": [proposal["id"]], "mode": "approve", "max_hours": 5},
    )
    assert applied.json()["counts"]["applied"] == 1

    missing_cap = client.post(
        f"{_base(draft)}/proposals/batch",
        headers=headers(coach),
        json={"proposal_ids": [proposal["id"]], "mode": "approve"},
    )
    assert missing_cap.status_code == 422
    assert missing_cap.json()["error_code"] == "VALIDATION_ERROR_MAX_HOURS"


def test_approve_and_publish_and_audit_trail(db):
    coach, _, draft = coach_with_draft(db)
    proposal = _propose(coach, draft)

    resp = client.post(f"{_base(draft)}/proposals/{proposal['id']}/approve-and-publish", headers=headers(coach))
    assert resp.status_code == 200, resp.text
    assert resp.json()["published"] is True

    audit = client.get(f"{_base(draft)}/audit", headers=headers(coach))
    assert audit.status_code == 200
    assert [e["action"] for e in audit.json()] == ["draft.published", "proposal.applied"]
    assert audit.json()[1]["actor_id"] == str(coach.id)

    db.rollback()
    assert db.query(PlanDraft).filter(PlanDraft.id == draft.id).one().status == "published"


def test_health_reports_policy_version():
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert resp.json()["policy_version"] == app.state.policy_cache.snapshot.version
    assert client.get("/ping").json() == {"pong": True}
