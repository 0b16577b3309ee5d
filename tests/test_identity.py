from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine, select

from ptw.domain.models import AuditLog
from ptw.infra.auth import create_access_token
from ptw.main import create_app
from ptw.services.storage_service import InMemoryEvidenceStore


@pytest.fixture()
def identity_client(tmp_path: Path) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "identity_test.db"
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


def _bootstrap_admin(client: TestClient) -> None:
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


def _login(client: TestClient, login_id: str, password: str) -> str:
    response = client.post("/api/identity/login", json={"login_id": login_id, "password": password})
    assert response.status_code == 200
    return response.json()["data"]["access_token"]


def _create_user(client: TestClient, token: str, login_id: str, role: str):
    return client.post(
        "/api/identity/users",
        json={
            "login_id": login_id,
            "full_name": login_id.title(),
            "email": f"{login_id}@example.com",
            "password": f"{login_id}-pass",
            "role": role,
        },
        headers=_auth_header(token),
    )


def _audit_rows(client: TestClient, action: str) -> list[AuditLog]:
    with Session(client.app.state.engine) as session:
        return list(session.exec(select(AuditLog).where(AuditLog.action == action)).all())


def test_bootstrap_only_once(identity_client: TestClient) -> None:
    _bootstrap_admin(identity_client)

    again = identity_client.post(
        "/api/identity/bootstrap-admin",
        json={"login_id": "other", "full_name": "Other", "email": "o@example.com", "password": "x"},
    )

    assert again.status_code == 409
    assert again.json()["success"] is False
    assert again.json()["message"] == "system already initialized"


def test_login_returns_token_and_user(identity_client: TestClient) -> None:
    _bootstrap_admin(identity_client)

    response = identity_client.post("/api/identity/login", json={"login_id": "admin", "password": "admin-pass"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["token_type"] == "bearer"
    assert data["user"]["role"] == "Admin"
    assert "password_hash" not in data["user"]

    me = identity_client.get("/api/identity/me", headers=_auth_header(data["access_token"]))
    assert me.status_code == 200
    assert me.json()["data"]["login_id"] == "admin"


def test_bad_credentials_and_disabled_user(identity_client: TestClient) -> None:
    _bootstrap_admin(identity_client)
    admin = _login(identity_client, "admin", "admin-pass")

    wrong = identity_client.post("/api/identity/login", json={"login_id": "admin", "password": "nope"})
    assert wrong.status_code == 401
    assert wrong.json()["error"]["code"] == "auth_error"

    unknown = identity_client.post("/api/identity/login", json={"login_id": "ghost", "password": "nope"})
    assert unknown.status_code == 401

    created = _create_user(identity_client, admin, "worker", "Worker")
    disabled = identity_client.patch(
        f"/api/identity/users/{created.json()['data']['id']}",
        json={"is_active": False},
        headers=_auth_header(admin),
    )
    assert disabled.status_code == 200
    blocked = identity_client.post("/api/identity/login", json={"login_id": "worker", "password": "worker-pass"})
    assert blocked.status_code == 401
    assert blocked.json()["message"] == "user disabled"


def test_missing_and_invalid_tokens(identity_client: TestClient) -> None:
    missing = identity_client.get("/api/permits")
    assert missing.status_code == 401

    invalid = identity_client.get("/api/permits", headers=_auth_header("not-a-jwt"))
    assert invalid.status_code == 403

    expired = create_access_token(user_id=1, role="Admin", expires_minutes=-5)
    stale = identity_client.get("/api/permits", headers=_auth_header(expired))
    assert stale.status_code == 403


def test_user_management_requires_identity_permission(identity_client: TestClient) -> None:
    _bootstrap_admin(identity_client)
    admin = _login(identity_client, "admin", "admin-pass")
    assert _create_user(identity_client, admin, "worker", "Worker").status_code == 201
    worker = _login(identity_client, "worker", "worker-pass")

    denied = _create_user(identity_client, worker, "sneaky", "Admin")
    assert denied.status_code == 403

    duplicate = _create_user(identity_client, admin, "worker", "Worker")
    assert duplicate.status_code == 409

    listed = identity_client.get("/api/identity/users", params={"role": "Worker"}, headers=_auth_header(admin))
    assert [item["login_id"] for item in listed.json()["data"]] == ["worker"]


def test_write_requests_are_audited(identity_client: TestClient) -> None:
    _bootstrap_admin(identity_client)
    admin = _login(identity_client, "admin", "admin-pass")
    assert _create_user(identity_client, admin, "worker", "Worker").status_code == 201
    worker = _login(identity_client, "worker", "worker-pass")
    assert _create_user(identity_client, worker, "sneaky", "Admin").status_code == 403

    rows = _audit_rows(identity_client, "POST:/api/identity/users")

    assert [row.status_code for row in rows] == [201, 403]
    assert rows[0].actor_id == 1
    assert rows[0].detail["outcome"] == "success"
    assert rows[1].detail["outcome"] == "denied"
    assert rows[1].detail["role"] == "Worker"
    assert all(row.request_id for row in rows)
    assert _audit_rows(identity_client, "POST:/users") == []


def test_audit_records_templated_route(identity_client: TestClient) -> None:
    _bootstrap_admin(identity_client)
    admin = _login(identity_client, "admin", "admin-pass")
    user_id = _create_user(identity_client, admin, "worker", "Worker").json()["data"]["id"]

    response = identity_client.patch(
        f"/api/identity/users/{user_id}",
        json={"department": "Maintenance"},
        headers=_auth_header(admin),
    )
    assert response.status_code == 200

    rows = _audit_rows(identity_client, "PATCH:/api/identity/users/{user_id}")
    assert len(rows) == 1
    assert rows[0].resource == f"/api/identity/users/{user_id}"
    assert rows[0].detail["route"] == "/api/identity/users/{user_id}"
    assert len(_audit_rows(identity_client, "POST:/api/identity/login")) == 1
