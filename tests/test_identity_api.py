from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from pagegate import main as app_main
from pagegate.domain.models import AuditLog, EventRecord
from pagegate.infra import audit, db, events
from pagegate.infra.cell_mutex import get_cell_mutex, user_role_cell
from pagegate.infra.events import USER_ROLE_BOUND, USER_ROLE_UNBOUND
from pagegate.infra.rule_store import get_rule_store
from pagegate.services.access_service import get_access_service


@pytest.fixture()
def identity_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "identity_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    get_access_service.cache_clear()
    get_rule_store.cache_clear()
    get_cell_mutex.cache_clear()
    client = TestClient(app_main.app)
    yield client
    client.close()
    get_access_service.cache_clear()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _bootstrap_and_login(client: TestClient) -> str:
    response = client.post(
        "/api/identity/bootstrap-admin",
        json={"username": "admin", "password": "admin-pass"},
    )
    assert response.status_code == 201
    login = client.post(
        "/api/identity/dev-login",
        json={"username": "admin", "password": "admin-pass"},
    )
    assert login.status_code == 200
    assert len(login.json()["role_ids"]) == 1
    return login.json()["access_token"]


def _create_user(client: TestClient, token: str, username: str, **extra: object) -> str:
    response = client.post(
        "/api/identity/users",
        json={"username": username, "password": f"{username}-pass", **extra},
        headers=_auth_header(token),
    )
    assert response.status_code == 201
    return response.json()["id"]


def _create_role(client: TestClient, token: str, name: str) -> str:
    response = client.post("/api/identity/roles", json={"name": name}, headers=_auth_header(token))
    assert response.status_code == 201
    return response.json()["id"]


def test_bootstrap_only_once(identity_client: TestClient) -> None:
    _bootstrap_and_login(identity_client)
    again = identity_client.post(
        "/api/identity/bootstrap-admin",
        json={"username": "other", "password": "other-pass"},
    )
    assert again.status_code == 409


def test_dev_login_rejects_bad_credentials(identity_client: TestClient) -> None:
    _bootstrap_and_login(identity_client)
    response = identity_client.post(
        "/api/identity/dev-login",
        json={"username": "admin", "password": "wrong"},
    )
    assert response.status_code == 401
    unknown = identity_client.post(
        "/api/identity/dev-login",
        json={"username": "ghost", "password": "x"},
    )
    assert unknown.status_code == 401


def test_duplicate_username_conflicts(identity_client: TestClient) -> None:
    token = _bootstrap_and_login(identity_client)
    _create_user(identity_client, token, "alice")
    response = identity_client.post(
        "/api/identity/users",
        json={"username": "alice", "password": "again"},
        headers=_auth_header(token),
    )
    assert response.status_code == 409


def test_search_users(identity_client: TestClient) -> None:
    token = _bootstrap_and_login(identity_client)
    _create_user(identity_client, token, "alice", display_name="Alice Adams", email="alice@example.com")
    _create_user(identity_client, token, "bob", display_name="Bob Brown", email="bob@example.com")
    _create_user(identity_client, token, "carol", display_name="Carol", is_active=False)

    by_name = identity_client.get("/api/identity/users/search", params={"q": "adam"}, headers=_auth_header(token))
    assert [user["username"] for user in by_name.json()] == ["alice"]

    by_email = identity_client.get(
        "/api/identity/users/search",
        params={"q": "BOB@EXAMPLE"},
        headers=_auth_header(token),
    )
    assert [user["username"] for user in by_email.json()] == ["bob"]

    # One character is too short to filter; inactive users never show up.
    short = identity_client.get("/api/identity/users/search", params={"q": "a"}, headers=_auth_header(token))
    assert {user["username"] for user in short.json()} == {"admin", "alice", "bob"}


def test_role_search(identity_client: TestClient) -> None:
    token = _bootstrap_and_login(identity_client)
    _create_role(identity_client, token, "Warehouse")
    _create_role(identity_client, token, "Finance")

    response = identity_client.get("/api/identity/roles", params={"q": "WARE"}, headers=_auth_header(token))
    assert [role["name"] for role in response.json()] == ["Warehouse"]

    all_roles = identity_client.get("/api/identity/roles", headers=_auth_header(token))
    assert [role["name"] for role in all_roles.json()] == ["Finance", "System Administrator", "Warehouse"]


def test_bind_and_unbind_user_role(identity_client: TestClient) -> None:
    token = _bootstrap_and_login(identity_client)
    user_id = _create_user(identity_client, token, "alice")
    role_id = _create_role(identity_client, token, "Warehouse")

    bound = identity_client.put(f"/api/identity/users/{user_id}/roles/{role_id}", headers=_auth_header(token))
    assert bound.status_code == 200
    assert bound.json() == {"user_id": user_id, "role_id": role_id, "assigned": True, "changed": True}

    repeat = identity_client.put(f"/api/identity/users/{user_id}/roles/{role_id}", headers=_auth_header(token))
    assert repeat.json()["changed"] is False

    roles = identity_client.get(f"/api/identity/users/{user_id}/roles", headers=_auth_header(token))
    assert [role["id"] for role in roles.json()] == [role_id]

    unbound = identity_client.delete(f"/api/identity/users/{user_id}/roles/{role_id}", headers=_auth_header(token))
    assert unbound.status_code == 200
    assert unbound.json()["changed"] is True
    assert identity_client.get(f"/api/identity/users/{user_id}/roles", headers=_auth_header(token)).json() == []

    with Session(db.get_engine()) as session:
        event_types = [row.event_type for row in session.exec(select(EventRecord)).all()]
        audit_actions = [row.action for row in session.exec(select(AuditLog)).all()]
    assert event_types.count(USER_ROLE_BOUND) == 1
    assert event_types.count(USER_ROLE_UNBOUND) == 1
    assert "user_role.bind" in audit_actions
    assert "user_role.unbind" in audit_actions


def test_bind_busy_cell_conflicts(identity_client: TestClient) -> None:
    token = _bootstrap_and_login(identity_client)
    user_id = _create_user(identity_client, token, "alice")
    role_id = _create_role(identity_client, token, "Warehouse")

    mutex = get_cell_mutex()
    key = user_role_cell(user_id, role_id)
    assert mutex.try_acquire(key)
    try:
        response = identity_client.put(
            f"/api/identity/users/{user_id}/roles/{role_id}",
            headers=_auth_header(token),
        )
    finally:
        mutex.release(key)
    assert response.status_code == 409

    retry = identity_client.put(f"/api/identity/users/{user_id}/roles/{role_id}", headers=_auth_header(token))
    assert retry.status_code == 200


def test_bind_unknown_role_not_found(identity_client: TestClient) -> None:
    token = _bootstrap_and_login(identity_client)
    user_id = _create_user(identity_client, token, "alice")
    response = identity_client.put(
        f"/api/identity/users/{user_id}/roles/missing-role",
        headers=_auth_header(token),
    )
    assert response.status_code == 404
    assert identity_client.get("/api/identity/users/missing", headers=_auth_header(token)).status_code == 404
