"""HTTP tests for profile edits, admin user management and trainer management."""

import pytest
from fastapi.testclient import TestClient

from warden import app as app_module
from warden.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "Passw0rd-long"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def admin(client, monkeypatch):
    monkeypatch.setenv("ADMIN_EMAIL", "root@example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "root-password-1")
    reset_runtime_for_tests()
    response = client.post(
        "/api/auth/admin/login", json={"email": "root@example.com", "password": "root-password-1"}
    )
    assert response.status_code == 200, response.text
    return _auth(response.json()["data"]["token"])


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _signup(client, email="user@example.com", **extra):
    response = client.post(
        "/api/auth/signup", json={"email": email, "password": PASSWORD, "name": "User", **extra}
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestProfileUpdate:
    def test_rename(self, client):
        token = _signup(client)["token"]
        response = client.put("/api/users/profile", json={"name": "Renamed"}, headers=_auth(token))
        assert response.status_code == 200, response.text
        assert response.json()["data"]["name"] == "Renamed"

    def test_email_change_needs_current_password(self, client):
        token = _signup(client)["token"]
        refused = client.put(
            "/api/users/profile", json={"email": "moved@example.com"}, headers=_auth(token)
        )
        assert refused.status_code == 401
        assert refused.json()["error"]["code"] == "INVALID_CREDENTIALS"

        moved = client.put(
            "/api/users/profile",
            json={"email": "moved@example.com", "currentPassword": PASSWORD},
            headers=_auth(token),
        )
        assert moved.status_code == 200
        assert moved.json()["data"]["email"] == "moved@example.com"

    def test_password_change_then_login(self, client):
        token = _signup(client)["token"]
        response = client.put(
            "/api/users/profile",
            json={"currentPassword": PASSWORD, "newPassword": "Brand-new-pass-7"},
            headers=_auth(token),
        )
        assert response.status_code == 200, response.text

        old = client.post("/api/auth/login", json={"email": "user@example.com", "password": PASSWORD})
        new = client.post(
            "/api/auth/login", json={"email": "user@example.com", "password": "Brand-new-pass-7"}
        )
        assert old.status_code == 401
        assert new.status_code == 200

    def test_weak_new_password_is_400(self, client):
        token = _signup(client)["token"]
        response = client.put(
            "/api/users/profile",
            json={"currentPassword": PASSWORD, "newPassword": "short"},
            headers=_auth(token),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_bootstrap_admin_profile_is_read_only(self, client, admin):
        response = client.put("/api/users/profile", json={"name": "Root"}, headers=admin)
        assert response.status_code == 400


class TestUserAdministration:
    def test_create_update_delete(self, client, admin):
        created = client.post(
            "/api/users",
            json={
                "email": "staff@example.com",
                "password": PASSWORD,
                "name": "Staff",
                "role": "trainer",
                "permissions": ["read", "view_reports"],
            },
            headers=admin,
        )
        assert created.status_code == 201, created.text
        user = created.json()["data"]
        assert user["role"] == "trainer"
        assert user["permissions"] == ["read", "view_reports"]

        fetched = client.get(f"/api/users/{user['id']}", headers=admin)
        assert fetched.json()["data"]["email"] == "staff@example.com"

        locked = client.put(
            f"/api/users/{user['id']}",
            json={"role": "user", "lockedUntil": "2099-01-01T00:00:00Z"},
            headers=admin,
        )
        assert locked.status_code == 200, locked.text
        assert locked.json()["data"]["role"] == "user"
        login = client.post(
            "/api/auth/login", json={"email": "staff@example.com", "password": PASSWORD}
        )
        assert login.json()["error"]["code"] == "ACCOUNT_LOCKED"

        unlocked = client.put(
            f"/api/users/{user['id']}", json={"lockedUntil": None}, headers=admin
        )
        assert unlocked.status_code == 200
        login = client.post(
            "/api/auth/login", json={"email": "staff@example.com", "password": PASSWORD}
        )
        assert login.status_code == 200

        deleted = client.delete(f"/api/users/{user['id']}", headers=admin)
        assert deleted.status_code == 200
        assert client.get(f"/api/users/{user['id']}", headers=admin).status_code == 404
        assert client.delete(f"/api/users/{user['id']}", headers=admin).status_code == 404

        actions = {
            e.action for e in get_runtime().store.list_audit_entries(user_id="admin")[0]
        }
        assert {"user_create", "user_update", "user_delete"} <= actions

    def test_duplicate_user_conflicts(self, client, admin):
        _signup(client)
        response = client.post(
            "/api/users", json={"email": "user@example.com", "password": PASSWORD}, headers=admin
        )
        assert response.status_code == 409

    def test_listing_filters_by_role(self, client, admin):
        _signup(client)
        _signup(client, email="coach@example.com", role="trainer")
        listing = client.get("/api/users", params={"role": "trainer"}, headers=admin)
        assert [u["email"] for u in listing.json()["data"]["items"]] == ["coach@example.com"]

    def test_plain_users_are_forbidden(self, client):
        token = _signup(client)["token"]
        other = _signup(client, email="other@example.com")["user"]["id"]
        for method, path in (
            ("post", "/api/users"),
            ("put", f"/api/users/{other}"),
            ("delete", f"/api/users/{other}"),
        ):
            response = client.request(method, path, json={}, headers=_auth(token))
            assert response.status_code == 403, (method, path)


class TestTrainers:
    def test_trainer_lifecycle(self, client, admin):
        created = client.post(
            "/api/trainers",
            json={"email": "coach@example.com", "password": PASSWORD, "name": "Coach"},
            headers=admin,
        )
        assert created.status_code == 201, created.text
        trainer = created.json()["data"]
        assert trainer["role"] == "trainer"

        listing = client.get("/api/trainers", headers=admin).json()["data"]
        assert [t["id"] for t in listing["items"]] == [trainer["id"]]

        renamed = client.put(
            f"/api/trainers/{trainer['id']}",
            json={"name": "Head Coach", "email": "head@example.com"},
            headers=admin,
        )
        assert renamed.status_code == 200, renamed.text
        assert renamed.json()["data"]["email"] == "head@example.com"

        session = client.post(
            "/api/auth/login", json={"email": "head@example.com", "password": PASSWORD}
        ).json()["data"]["token"]
        profile = client.get("/api/trainers/profile", headers=_auth(session))
        assert profile.json()["data"]["name"] == "Head Coach"

        assert client.delete(f"/api/trainers/{trainer['id']}", headers=admin).status_code == 200
        assert client.get(f"/api/trainers/{trainer['id']}", headers=admin).status_code == 404

    def test_plain_users_are_not_trainers(self, client, admin):
        user = _signup(client)
        assert client.get(f"/api/trainers/{user['user']['id']}", headers=admin).status_code == 404
        assert client.delete(f"/api/trainers/{user['user']['id']}", headers=admin).status_code == 404
        assert get_runtime().store.get_user(user["user"]["id"]) is not None

        profile = client.get("/api/trainers/profile", headers=_auth(user["token"]))
        assert profile.status_code == 403
        assert profile.json()["error"]["code"] == "forbidden"
