from __future__ import annotations

import json
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine, select

from ptw.domain.errors import ConflictError
from ptw.domain.models import ApprovalStatus, Evidence, PermitApproval
from ptw.domain.state_machine import PermitStatus
from ptw.main import create_app
from ptw.services.permit_repository import PermitRepository
from ptw.services.storage_service import InMemoryEvidenceStore


@pytest.fixture()
def workflow_client(tmp_path: Path) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "workflow_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    client = TestClient(create_app(engine=test_engine, store=InMemoryEvidenceStore()))
    yield client
    client.close()
    test_engine.dispose()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, login_id: str, password: str) -> str:
    response = client.post("/api/identity/login", json={"login_id": login_id, "password": password})
    assert response.status_code == 200
    return response.json()["data"]["access_token"]


def _bootstrap_admin(client: TestClient) -> str:
    response = client.post(
        "/api/identity/bootstrap-admin",
        json={
            "login_id": "admin",
            "full_name": "Site Admin",
            "email": "admin@example.com",
            "password": "admin-pass",
        },
    )
    assert response.status_code == 201
    return _login(client, "admin", "admin-pass")


def _create_user(client: TestClient, admin_token: str, login_id: str, role: str) -> tuple[int, str]:
    response = client.post(
        "/api/identity/users",
        json={
            "login_id": login_id,
            "full_name": login_id.replace("-", " ").title(),
            "email": f"{login_id}@example.com",
            "password": f"{login_id}-pass",
            "role": role,
        },
        headers=_auth_header(admin_token),
    )
    assert response.status_code == 201
    return response.json()["data"]["id"], _login(client, login_id, f"{login_id}-pass")


def _create_site(client: TestClient, admin_token: str, code: str = "PLANT-1") -> int:
    response = client.post(
        "/api/sites",
        json={"site_code": code, "name": f"Site {code}"},
        headers=_auth_header(admin_token),
    )
    assert response.status_code == 201
    return response.json()["data"]["id"]


def _create_permit(client: TestClient, token: str, site_id: int, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "site_id": site_id,
        "permit_type": "General",
        "work_location": "Boiler room",
        "work_description": "Replace feed valve",
        "start_time": "2026-10-20T08:00:00Z",
        "end_time": "2026-10-20T17:00:00Z",
        "receiver_name": "Sam Field",
        "team_members": [{"worker_name": "Jo Rigger", "worker_role": "Rigger", "is_qualified": True}],
    }
    payload.update(overrides)
    response = client.post("/api/permits", json=payload, headers=_auth_header(token))
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _action(client: TestClient, token: str, permit_id: int, action: str, body: dict[str, Any] | None = None):
    return client.post(f"/api/permits/{permit_id}/{action}", json=body or {}, headers=_auth_header(token))


def _status(client: TestClient, token: str, permit_id: int) -> str:
    response = client.get(f"/api/permits/{permit_id}", headers=_auth_header(token))
    assert response.status_code == 200
    return response.json()["data"]["permit"]["status"]


def _setup(client: TestClient) -> dict[str, Any]:
    admin = _bootstrap_admin(client)
    requester_id, requester = _create_user(client, admin, "req-user", "Requester")
    area_id, area = _create_user(client, admin, "area-mgr", "Approver_AreaManager")
    safety_id, safety = _create_user(client, admin, "safety-off", "Approver_Safety")
    lead_id, lead = _create_user(client, admin, "site-lead", "Approver_SiteLeader")
    worker_id, worker = _create_user(client, admin, "field-worker", "Worker")
    return {
        "admin": admin,
        "requester": requester,
        "requester_id": requester_id,
        "area": area,
        "area_id": area_id,
        "safety": safety,
        "safety_id": safety_id,
        "lead": lead,
        "lead_id": lead_id,
        "worker": worker,
        "worker_id": worker_id,
        "site_id": _create_site(client, admin),
    }


def _active_permit(client: TestClient, ctx: dict[str, Any]) -> int:
    permit_id = _create_permit(client, ctx["requester"], ctx["site_id"])["id"]
    assert _action(client, ctx["requester"], permit_id, "submit").status_code == 200
    assert _action(client, ctx["area"], permit_id, "approve").status_code == 200
    assert _action(client, ctx["safety"], permit_id, "approve").status_code == 200
    assert _status(client, ctx["requester"], permit_id) == "Active"
    return permit_id


def test_create_assigns_serial_and_draft_state(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)

    first = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])
    second = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])

    assert first["permit_serial"] == "PTW-0001"
    assert second["permit_serial"] == "PTW-0002"
    assert first["status"] == "Draft"
    assert first["created_by"] == ctx["requester_id"]

    detail = workflow_client.get(f"/api/permits/{first['id']}", headers=_auth_header(ctx["requester"]))
    data = detail.json()["data"]
    assert [item["worker_name"] for item in data["team_members"]] == ["Jo Rigger"]
    assert data["available_actions"] == ["submit", "cancel"]


def test_create_rejects_inverted_window_and_unknown_site(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)

    inverted = workflow_client.post(
        "/api/permits",
        json={
            "site_id": ctx["site_id"],
            "permit_type": "General",
            "work_location": "Yard",
            "work_description": "Lift",
            "start_time": "2026-10-20T17:00:00Z",
            "end_time": "2026-10-20T08:00:00Z",
        },
        headers=_auth_header(ctx["requester"]),
    )
    assert inverted.status_code == 400

    unknown = workflow_client.post(
        "/api/permits",
        json={
            "site_id": 999,
            "permit_type": "General",
            "work_location": "Yard",
            "work_description": "Lift",
            "start_time": "2026-10-20T08:00:00Z",
            "end_time": "2026-10-20T17:00:00Z",
        },
        headers=_auth_header(ctx["requester"]),
    )
    assert unknown.status_code == 404

    worker = workflow_client.post(
        "/api/permits",
        json={
            "site_id": ctx["site_id"],
            "permit_type": "General",
            "work_location": "Yard",
            "work_description": "Lift",
            "start_time": "2026-10-20T08:00:00Z",
            "end_time": "2026-10-20T17:00:00Z",
        },
        headers=_auth_header(ctx["worker"]),
    )
    assert worker.status_code == 403


def test_approve_in_draft_is_an_invalid_transition(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])["id"]

    response = _action(workflow_client, ctx["area"], permit_id, "approve")

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "invalid_transition"
    assert _status(workflow_client, ctx["requester"], permit_id) == "Draft"


def test_two_role_approval_activates_after_both(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])["id"]

    submitted = _action(workflow_client, ctx["requester"], permit_id, "submit")
    assert submitted.status_code == 200
    assert submitted.json()["data"]["status"] == "Pending_Approval"

    detail = workflow_client.get(f"/api/permits/{permit_id}", headers=_auth_header(ctx["requester"]))
    approvals = detail.json()["data"]["approvals"]
    assert sorted(item["role"] for item in approvals) == ["Area_Manager", "Safety_Officer"]
    assert all(item["status"] == "Pending" for item in approvals)

    first = _action(workflow_client, ctx["area"], permit_id, "approve", {"comments": "area is isolated"})
    assert first.status_code == 200
    assert first.json()["data"]["status"] == "Pending_Approval"

    repeat = _action(workflow_client, ctx["area"], permit_id, "approve")
    assert repeat.status_code == 409

    second = _action(workflow_client, ctx["safety"], permit_id, "approve")
    assert second.status_code == 200
    assert second.json()["data"]["status"] == "Active"
    assert second.json()["data"]["activated_at"] is not None


def test_high_risk_work_needs_site_lead(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _create_permit(
        workflow_client,
        ctx["requester"],
        ctx["site_id"],
        permit_type="Hot_Work",
    )["id"]
    _action(workflow_client, ctx["requester"], permit_id, "submit")

    _action(workflow_client, ctx["area"], permit_id, "approve")
    _action(workflow_client, ctx["safety"], permit_id, "approve")
    assert _status(workflow_client, ctx["requester"], permit_id) == "Pending_Approval"

    final = _action(workflow_client, ctx["lead"], permit_id, "approve")
    assert final.json()["data"]["status"] == "Active"


def test_site_policy_overrides_default_roles(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    policy = workflow_client.post(
        "/api/approval-policies",
        json={"site_id": ctx["site_id"], "permit_type": "General", "required_roles": ["Safety_Officer"]},
        headers=_auth_header(ctx["admin"]),
    )
    assert policy.status_code == 201
    permit_id = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])["id"]
    _action(workflow_client, ctx["requester"], permit_id, "submit")

    response = _action(workflow_client, ctx["safety"], permit_id, "approve")

    assert response.json()["data"]["status"] == "Active"


def test_site_lead_added_to_high_risk_policy(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    policy = workflow_client.post(
        "/api/approval-policies",
        json={"site_id": ctx["site_id"], "permit_type": "Hot_Work", "required_roles": ["Area_Manager"]},
        headers=_auth_header(ctx["admin"]),
    )
    assert policy.status_code == 201
    permit_id = _create_permit(workflow_client, ctx["requester"], ctx["site_id"], permit_type="Hot_Work")["id"]
    _action(workflow_client, ctx["requester"], permit_id, "submit")

    detail = workflow_client.get(f"/api/permits/{permit_id}", headers=_auth_header(ctx["requester"]))
    roles = sorted(item["role"] for item in detail.json()["data"]["approvals"])
    assert roles == ["Area_Manager", "Site_Lead"]

    _action(workflow_client, ctx["area"], permit_id, "approve")
    assert _status(workflow_client, ctx["requester"], permit_id) == "Pending_Approval"

    final = _action(workflow_client, ctx["lead"], permit_id, "approve")
    assert final.json()["data"]["status"] == "Active"


def test_assigned_approver_is_enforced(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    _, other_area = _create_user(workflow_client, ctx["admin"], "area-mgr-2", "Approver_AreaManager")
    permit_id = _create_permit(
        workflow_client,
        ctx["requester"],
        ctx["site_id"],
        area_manager_id=ctx["area_id"],
    )["id"]
    _action(workflow_client, ctx["requester"], permit_id, "submit")

    denied = _action(workflow_client, other_area, permit_id, "approve")
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "permission_denied"

    wrong_role = _action(workflow_client, ctx["area"], permit_id, "approve", {"role": "Safety_Officer"})
    assert wrong_role.status_code == 403

    worker = _action(workflow_client, ctx["worker"], permit_id, "approve")
    assert worker.status_code == 403

    allowed = _action(workflow_client, ctx["area"], permit_id, "approve")
    assert allowed.status_code == 200


def test_reject_requires_reason(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])["id"]
    _action(workflow_client, ctx["requester"], permit_id, "submit")

    blank = _action(workflow_client, ctx["safety"], permit_id, "reject", {"reason": "  "})
    assert blank.status_code == 400
    assert _status(workflow_client, ctx["requester"], permit_id) == "Pending_Approval"

    rejected = _action(workflow_client, ctx["safety"], permit_id, "reject", {"reason": "no gas test"})
    assert rejected.status_code == 200
    assert rejected.json()["data"]["status"] == "Rejected"
    assert rejected.json()["data"]["rejection_reason"] == "no gas test"

    after = _action(workflow_client, ctx["area"], permit_id, "approve")
    assert after.status_code == 409


def _approval_statuses(client: TestClient, token: str, permit_id: int) -> dict[str, str]:
    detail = client.get(f"/api/permits/{permit_id}", headers=_auth_header(token))
    return {item["role"]: item["status"] for item in detail.json()["data"]["approvals"]}


def test_reject_supersedes_remaining_approvals(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])["id"]
    _action(workflow_client, ctx["requester"], permit_id, "submit")

    rejected = _action(workflow_client, ctx["safety"], permit_id, "reject", {"reason": "no gas test"})
    assert rejected.status_code == 200

    assert _approval_statuses(workflow_client, ctx["requester"], permit_id) == {
        "Area_Manager": "Superseded",
        "Safety_Officer": "Rejected",
    }


def test_cancel_while_pending_supersedes_approvals(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])["id"]
    _action(workflow_client, ctx["requester"], permit_id, "submit")
    _action(workflow_client, ctx["area"], permit_id, "approve")

    cancelled = _action(workflow_client, ctx["requester"], permit_id, "cancel", {"reason": "scope changed"})
    assert cancelled.json()["data"]["status"] == "Cancelled"

    assert _approval_statuses(workflow_client, ctx["requester"], permit_id) == {
        "Area_Manager": "Approved",
        "Safety_Officer": "Superseded",
    }


def test_submit_requires_receiver(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _create_permit(workflow_client, ctx["requester"], ctx["site_id"], receiver_name=None)["id"]

    response = _action(workflow_client, ctx["requester"], permit_id, "submit")

    assert response.status_code == 400
    assert "receiver_name" in response.json()["message"]
    assert _status(workflow_client, ctx["requester"], permit_id) == "Draft"


def test_only_creator_or_admin_submits(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    _, other_requester = _create_user(workflow_client, ctx["admin"], "req-user-2", "Requester")
    permit_id = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])["id"]

    denied = _action(workflow_client, other_requester, permit_id, "submit")
    assert denied.status_code == 403

    by_admin = _action(workflow_client, ctx["admin"], permit_id, "submit")
    assert by_admin.status_code == 200


def test_extension_approve_moves_end_time(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _active_permit(workflow_client, ctx)

    too_early = _action(
        workflow_client,
        ctx["requester"],
        permit_id,
        "request-extension",
        {"new_end_time": "2026-10-20T16:00:00Z", "reason": "more time"},
    )
    assert too_early.status_code == 400

    requested = _action(
        workflow_client,
        ctx["requester"],
        permit_id,
        "request-extension",
        {"new_end_time": "2026-10-21T12:00:00Z", "reason": "valve seized"},
    )
    assert requested.status_code == 201
    assert requested.json()["data"]["status"] == "Pending"
    assert _status(workflow_client, ctx["requester"], permit_id) == "Extension_Requested"

    by_requester = _action(workflow_client, ctx["requester"], permit_id, "extension/approve")
    assert by_requester.status_code == 403

    approved = _action(workflow_client, ctx["area"], permit_id, "extension/approve", {"comments": "ok"})
    assert approved.status_code == 200
    assert approved.json()["data"]["status"] == "Active"
    assert approved.json()["data"]["end_time"].startswith("2026-10-21T12:00:00")

    detail = workflow_client.get(f"/api/permits/{permit_id}", headers=_auth_header(ctx["requester"]))
    extensions = detail.json()["data"]["extensions"]
    assert [item["status"] for item in extensions] == ["Approved"]
    assert extensions[0]["original_end_time"].startswith("2026-10-20T17:00:00")


def test_extension_reject_keeps_end_time(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _active_permit(workflow_client, ctx)
    _action(
        workflow_client,
        ctx["requester"],
        permit_id,
        "request-extension",
        {"new_end_time": "2026-10-21T12:00:00Z", "reason": "valve seized"},
    )

    rejected = _action(workflow_client, ctx["safety"], permit_id, "extension/reject")

    assert rejected.status_code == 200
    assert rejected.json()["data"]["status"] == "Active"
    assert rejected.json()["data"]["end_time"].startswith("2026-10-20T17:00:00")


def test_suspend_resume_and_close_once(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _active_permit(workflow_client, ctx)

    suspended = _action(workflow_client, ctx["safety"], permit_id, "suspend", {"reason": "gas alarm"})
    assert suspended.json()["data"]["status"] == "Suspended"
    worker_resume = _action(workflow_client, ctx["worker"], permit_id, "resume")
    assert worker_resume.status_code == 403
    resumed = _action(workflow_client, ctx["requester"], permit_id, "resume")
    assert resumed.json()["data"]["status"] == "Active"

    incomplete = workflow_client.post(
        f"/api/permits/{permit_id}/close",
        data={"housekeeping_done": "true", "tools_removed": "true"},
        headers=_auth_header(ctx["requester"]),
    )
    assert incomplete.status_code == 400
    assert "locks_removed" in incomplete.json()["message"]

    checklist = {
        "housekeeping_done": "true",
        "tools_removed": "true",
        "locks_removed": "true",
        "area_restored": "true",
        "remarks": "all clear",
    }
    closed = workflow_client.post(
        f"/api/permits/{permit_id}/close",
        data=checklist,
        headers=_auth_header(ctx["requester"]),
    )
    assert closed.status_code == 200
    data = closed.json()["data"]
    assert data["permit"]["status"] == "Closed"
    assert data["closure"]["remarks"] == "all clear"
    assert data["evidences"] == []

    again = workflow_client.post(
        f"/api/permits/{permit_id}/close",
        data=checklist,
        headers=_auth_header(ctx["requester"]),
    )
    assert again.status_code == 409


def test_close_with_closure_evidence(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _active_permit(workflow_client, ctx)
    metadata = json.dumps(
        [
            {"category": "before", "timestamp": "2026-10-20T16:00:00Z"},
            {"category": "after", "timestamp": "2026-10-20T16:30:00Z", "description": "swept"},
        ]
    )

    closed = workflow_client.post(
        f"/api/permits/{permit_id}/close",
        data={
            "housekeeping_done": "true",
            "tools_removed": "true",
            "locks_removed": "true",
            "area_restored": "true",
            "evidences_data": metadata,
        },
        files=[
            ("evidences", ("before.jpg", b"\xff\xd8before", "image/jpeg")),
            ("evidences", ("after.jpg", b"\xff\xd8after", "image/jpeg")),
        ],
        headers=_auth_header(ctx["requester"]),
    )

    assert closed.status_code == 200
    data = closed.json()["data"]
    assert [item["category"] for item in data["evidences"]] == ["before", "after"]
    assert all(item["evidence_type"] == "closure" for item in data["evidences"])
    assert all(item["closure_id"] == data["closure"]["id"] for item in data["evidences"])


def test_close_with_working_category_rolls_back(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _active_permit(workflow_client, ctx)

    response = workflow_client.post(
        f"/api/permits/{permit_id}/close",
        data={
            "housekeeping_done": "true",
            "tools_removed": "true",
            "locks_removed": "true",
            "area_restored": "true",
            "evidences_data": json.dumps([{"category": "ppe", "timestamp": "2026-10-20T16:00:00Z"}]),
        },
        files=[("evidences", ("ppe.jpg", b"\xff\xd8ppe", "image/jpeg"))],
        headers=_auth_header(ctx["requester"]),
    )

    assert response.status_code == 400
    assert _status(workflow_client, ctx["requester"], permit_id) == "Active"
    with Session(workflow_client.app.state.engine) as session:
        assert session.exec(select(Evidence)).all() == []


def test_cancel_and_delete_rules(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    active_id = _active_permit(workflow_client, ctx)

    delete_active = workflow_client.delete(f"/api/permits/{active_id}", headers=_auth_header(ctx["requester"]))
    assert delete_active.status_code == 409

    cancelled = _action(workflow_client, ctx["requester"], active_id, "cancel", {"reason": "scope changed"})
    assert cancelled.json()["data"]["status"] == "Cancelled"
    assert _action(workflow_client, ctx["requester"], active_id, "cancel").status_code == 409

    deleted = workflow_client.delete(f"/api/permits/{active_id}", headers=_auth_header(ctx["requester"]))
    assert deleted.status_code == 200
    missing = workflow_client.get(f"/api/permits/{active_id}", headers=_auth_header(ctx["requester"]))
    assert missing.status_code == 404
    with Session(workflow_client.app.state.engine) as session:
        rows = session.exec(select(PermitApproval).where(PermitApproval.permit_id == active_id)).all()
    assert rows == []


def test_delete_draft_removes_evidence_files(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])["id"]
    upload = workflow_client.post(
        "/api/uploads/evidence",
        data={
            "permit_id": str(permit_id),
            "evidences_data": json.dumps([{"category": "ppe", "timestamp": "2026-10-20T09:00:00Z"}]),
        },
        files=[("evidences", ("ppe.jpg", b"\xff\xd8ppe", "image/jpeg"))],
        headers=_auth_header(ctx["requester"]),
    )
    assert upload.status_code == 201
    store = workflow_client.app.state.store
    assert len(store.references) == 1

    deleted = workflow_client.delete(f"/api/permits/{permit_id}", headers=_auth_header(ctx["requester"]))

    assert deleted.status_code == 200
    assert store.references == []


def test_update_only_in_draft(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])["id"]

    updated = workflow_client.put(
        f"/api/permits/{permit_id}",
        json={"work_location": "Pump house", "team_members": []},
        headers=_auth_header(ctx["requester"]),
    )
    assert updated.status_code == 200
    assert updated.json()["data"]["work_location"] == "Pump house"
    assert updated.json()["data"]["version"] == 1

    _action(workflow_client, ctx["requester"], permit_id, "submit")
    locked = workflow_client.put(
        f"/api/permits/{permit_id}",
        json={"work_location": "Roof"},
        headers=_auth_header(ctx["requester"]),
    )
    assert locked.status_code == 409


def test_list_filters(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    mine = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])["id"]
    other = _create_permit(workflow_client, ctx["admin"], ctx["site_id"])["id"]
    _action(workflow_client, ctx["admin"], other, "submit")

    own = workflow_client.get("/api/permits", params={"mine": "true"}, headers=_auth_header(ctx["requester"]))
    assert [item["id"] for item in own.json()["data"]] == [mine]

    pending = workflow_client.get(
        "/api/permits",
        params={"status": "Pending_Approval"},
        headers=_auth_header(ctx["requester"]),
    )
    assert [item["id"] for item in pending.json()["data"]] == [other]


def test_stale_status_write_raises_conflict(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])["id"]
    engine = workflow_client.app.state.engine

    with Session(engine, expire_on_commit=False) as stale_session:
        repo = PermitRepository(stale_session)
        stale = repo.require(permit_id)
        assert stale.version == 0

        cancelled = _action(workflow_client, ctx["requester"], permit_id, "cancel")
        assert cancelled.status_code == 200

        with pytest.raises(ConflictError):
            repo.compare_and_set_status(
                stale,
                expected=PermitStatus.DRAFT,
                target=PermitStatus.PENDING_APPROVAL,
            )
        stale_session.rollback()

    assert _status(workflow_client, ctx["requester"], permit_id) == "Cancelled"


def test_approval_row_is_decided_once(workflow_client: TestClient) -> None:
    ctx = _setup(workflow_client)
    permit_id = _create_permit(workflow_client, ctx["requester"], ctx["site_id"])["id"]
    _action(workflow_client, ctx["requester"], permit_id, "submit")
    engine = workflow_client.app.state.engine

    with Session(engine, expire_on_commit=False) as stale_session:
        repo = PermitRepository(stale_session)
        pending = [item for item in repo.pending_approvals(permit_id) if item.role == "Area_Manager"]
        assert len(pending) == 1

        approved = _action(workflow_client, ctx["area"], permit_id, "approve")
        assert approved.status_code == 200

        with pytest.raises(ConflictError):
            repo.decide_approval(pending[0], status=ApprovalStatus.APPROVED, decided_by=ctx["area_id"])
        stale_session.rollback()
