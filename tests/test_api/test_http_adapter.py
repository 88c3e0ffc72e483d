"""
End-to-end tests through the FastAPI adapter.

The app is started with the repository's access config, so the seeded
features, route gates and policies are the ones a deployment gets.
"""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from access_core.main import create_app
from access_core.settings import Settings

CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "access_config.yaml"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-password"


@pytest.fixture
def client(engine, session_factory, hasher):
    settings = Settings(
        access_config_path=str(CONFIG_PATH),
        bootstrap_admin_email=ADMIN_EMAIL,
        bootstrap_admin_password=ADMIN_PASSWORD,
        bcrypt_rounds=4,
        session_ttl_seconds=3600,
    )
    app = create_app(settings, engine=engine, session_factory=session_factory, hasher=hasher)
    with TestClient(app) as test_client:
        yield test_client


def _login(client, email=ADMIN_EMAIL, password=ADMIN_PASSWORD) -> dict[str, str]:
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_health_is_public(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_protected_routes_need_a_session(client):
    assert client.get("/api/v1/departments").status_code == 401
    assert client.get("/api/v1/departments", headers={"Authorization": "Token abc"}).status_code == 401
    assert client.get("/api/v1/departments", headers={"Authorization": "Bearer not-a-session"}).status_code == 401


def test_login_rejects_bad_credentials(client):
    response = client.post("/auth/login", json={"email": ADMIN_EMAIL, "password": "wrong-password"})
    assert response.status_code == 401
    response = client.post("/auth/login", json={"email": "nobody@example.com", "password": ADMIN_PASSWORD})
    assert response.status_code == 401


def test_me_and_logout(client):
    headers = _login(client)

    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    body = me.json()
    assert body["email"] == ADMIN_EMAIL
    assert body["roles"] == ["super_admin"]
    assert "users.manage" in body["features"]

    assert client.post("/auth/logout", headers=headers).status_code == 204
    assert client.get("/auth/me", headers=headers).status_code == 401


def test_seed_is_visible_through_the_api(client):
    headers = _login(client)
    response = client.get("/api/v1/departments", params={"sort": "code"}, headers=headers)
    assert response.status_code == 200
    assert [d["code"] for d in response.json()["items"]] == ["FIN", "HR", "IT"]


def test_department_lifecycle(client):
    headers = _login(client)

    created = client.post("/api/v1/departments", json={"name": "Legal", "code": "leg"}, headers=headers)
    assert created.status_code == 201
    dept = created.json()
    assert dept["code"] == "LEG"

    updated = client.patch(
        f"/api/v1/departments/{dept['id']}", json={"description": "Contracts", "reason": "clarify"}, headers=headers
    )
    assert updated.status_code == 200
    assert updated.json()["description"] == "Contracts"

    assert client.delete(f"/api/v1/departments/{dept['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/v1/departments/{dept['id']}", headers=headers).status_code == 404
    hidden = client.get("/api/v1/departments", params={"filters": json.dumps({"code": "LEG"})}, headers=headers)
    assert hidden.json()["total"] == 0

    restored = client.post(f"/api/v1/departments/{dept['id']}/restore", headers=headers)
    assert restored.status_code == 200
    assert restored.json()["deleted_at"] is None

    audit = client.get(
        "/api/v1/change_history",
        params={"filters": json.dumps({"table_name": "departments", "record_id": dept["id"]})},
        headers=headers,
    )
    assert [h["action"] for h in audit.json()["items"]] == ["create", "update", "delete", "update"]


def test_errors_map_to_status_codes(client):
    headers = _login(client)

    duplicate = client.post("/api/v1/departments", json={"name": "Finance", "code": "FIN2"}, headers=headers)
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["field"] == "name"

    invalid = client.post("/api/v1/users", json={"email": "nope", "password": "x"}, headers=headers)
    assert invalid.status_code == 422
    fields = {item["field"] for item in invalid.json()["detail"]}
    assert {"name", "email", "password"} <= fields

    bad_filter = client.get("/api/v1/users", params={"filters": "{not json"}, headers=headers)
    assert bad_filter.status_code == 422

    assert client.get("/api/v1/roles/9999", headers=headers).status_code == 404


def test_missing_feature_is_forbidden_and_recorded(client):
    admin_headers = _login(client)
    role = client.get(
        "/api/v1/roles", params={"filters": json.dumps({"name": "hr_manager"})}, headers=admin_headers
    ).json()["items"][0]
    user = client.post(
        "/api/v1/users",
        json={"name": "Harry", "email": "harry@example.com", "password": "harry-password", "level": 4},
        headers=admin_headers,
    ).json()
    assert (
        client.post("/api/v1/user_roles", json={"user_id": user["id"], "role_id": role["id"]}, headers=admin_headers)
    ).status_code == 201

    hr_headers = _login(client, "harry@example.com", "harry-password")
    assert client.get("/api/v1/users", headers=hr_headers).status_code == 200

    forbidden = client.post("/api/v1/roles", json={"name": "shadow-admin"}, headers=hr_headers)
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"]["required_feature"] == "roles.manage"

    violations = client.get(
        "/api/v1/policy_violations", params={"filters": json.dumps({"user_id": user["id"]})}, headers=admin_headers
    ).json()["items"]
    assert [(v["resource"], v["action"]) for v in violations] == [("/api/v1/roles", "POST")]


def test_seeded_policy_blocks_junior_deletes(client):
    admin_headers = _login(client)
    role = client.get(
        "/api/v1/roles", params={"filters": json.dumps({"name": "hr_manager"})}, headers=admin_headers
    ).json()["items"][0]
    junior = client.post(
        "/api/v1/users",
        json={"name": "Jo", "email": "jo@example.com", "password": "junior-password", "level": 1},
        headers=admin_headers,
    ).json()
    client.post("/api/v1/user_roles", json={"user_id": junior["id"], "role_id": role["id"]}, headers=admin_headers)
    dept = client.post("/api/v1/departments", json={"name": "Temp", "code": "TMP"}, headers=admin_headers).json()

    junior_headers = _login(client, "jo@example.com", "junior-password")
    denied = client.delete(f"/api/v1/departments/{dept['id']}", headers=junior_headers)
    assert denied.status_code == 403
    assert denied.json()["detail"]["policy_id"] is not None


def test_sessions_listing_hides_token_hashes(client):
    headers = _login(client)
    sessions = client.get("/api/v1/sessions", headers=headers).json()["items"]
    assert sessions
    assert all("token_hash" not in s for s in sessions)


def _make_user(client, admin_headers, email, password, role_name=None):
    user = client.post(
        "/api/v1/users", json={"name": email.split("@")[0], "email": email, "password": password}, headers=admin_headers
    ).json()
    if role_name is not None:
        role = client.get(
            "/api/v1/roles", params={"filters": json.dumps({"name": role_name})}, headers=admin_headers
        ).json()["items"][0]
        client.post("/api/v1/user_roles", json={"user_id": user["id"], "role_id": role["id"]}, headers=admin_headers)
    return user


def test_auditor_never_sees_secret_hashes(client):
    admin_headers = _login(client)
    _make_user(client, admin_headers, "bob@example.com", "bob-password-1")
    _make_user(client, admin_headers, "audra@example.com", "audra-password", role_name="auditor")
    auditor_headers = _login(client, "audra@example.com", "audra-password")

    for table in ("users", "sessions"):
        response = client.get(
            "/api/v1/change_history",
            params={"filters": json.dumps({"table_name": table}), "limit": 100},
            headers=auditor_headers,
        )
        assert response.status_code == 200
        items = response.json()["items"]
        assert items
        secret = "password_hash" if table == "users" else "token_hash"
        for item in items:
            for values in (item["old_values"], item["new_values"]):
                if values is not None:
                    assert values[secret] in ("<redacted>", "<redacted:changed>")
        assert "$2b$" not in response.text


def test_password_change_flow(client):
    admin_headers = _login(client)
    _make_user(client, admin_headers, "pat@example.com", "pat-password-1")
    current = _login(client, "pat@example.com", "pat-password-1")
    elsewhere = _login(client, "pat@example.com", "pat-password-1")

    wrong = client.post(
        "/auth/password", json={"current_password": "nope", "new_password": "pat-password-2"}, headers=current
    )
    assert wrong.status_code == 422

    changed = client.post(
        "/auth/password",
        json={"current_password": "pat-password-1", "new_password": "pat-password-2"},
        headers=current,
    )
    assert changed.status_code == 200
    assert changed.json() == {"revoked_sessions": 1}

    assert client.get("/auth/me", headers=current).status_code == 200
    assert client.get("/auth/me", headers=elsewhere).status_code == 401
    assert client.post("/auth/login", json={"email": "pat@example.com", "password": "pat-password-1"}).status_code == 401
    _login(client, "pat@example.com", "pat-password-2")

    assert client.post("/auth/password", json={"current_password": "a", "new_password": "b" * 8}).status_code == 401


def test_access_log_records_allows_and_denies(client):
    admin_headers = _login(client)
    user = _make_user(client, admin_headers, "hank@example.com", "hank-password", role_name="hr_manager")
    hr_headers = _login(client, "hank@example.com", "hank-password")

    assert client.get("/api/v1/users", headers=hr_headers).status_code == 200
    assert client.post("/api/v1/roles", json={"name": "shadow"}, headers=hr_headers).status_code == 403

    logs = client.get(
        "/api/v1/access_logs",
        params={"filters": json.dumps({"user_id": user["id"]}), "limit": 100},
        headers=admin_headers,
    ).json()["items"]
    seen = {(entry["resource"], entry["action"], entry["decision"]) for entry in logs}
    assert ("/api/v1/users", "GET", "allow") in seen
    assert ("users", "list", "allow") in seen
    assert ("/api/v1/roles", "POST", "deny") in seen
