"""Server-side failures land in the error log, which admins can page through."""

import pytest
from fastapi.testclient import TestClient

from warden import app as app_module
from warden.service.error_log import ErrorLogRecorder
from warden.service.runtime import get_runtime, reset_runtime_for_tests
from warden.storage.memory import MemoryStore
from warden.storage.models import ErrorLevel

PASSWORD = "Passw0rd-long"


@pytest.fixture
def client():
    return TestClient(app_module.app, raise_server_exceptions=False)


@pytest.fixture
def admin(client, monkeypatch):
    monkeypatch.setenv("ADMIN_EMAIL", "root@example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "root-password-1")
    reset_runtime_for_tests()
    response = client.post(
        "/api/auth/admin/login", json={"email": "root@example.com", "password": "root-password-1"}
    )
    return {"Authorization": f"Bearer {response.json()['data']['token']}"}


def _explode(*args, **kwargs):
    raise RuntimeError("directory offline")


def test_recorder_keeps_traceback(tmp_path):
    recorder = ErrorLogRecorder(MemoryStore(fs_root=str(tmp_path), persist=False))
    try:
        _explode()
    except RuntimeError as exc:
        entry = recorder.record_exception(exc, route="/api/x", method="post")

    assert entry.level is ErrorLevel.ERROR
    assert entry.message == "directory offline"
    assert entry.method == "POST"
    assert "_explode" in entry.stack
    assert entry.details["error_type"] == "RuntimeError"
    assert recorder.get(entry.id) is entry


def test_recorder_swallows_sink_failures(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    store.append_error_log = _explode
    assert ErrorLogRecorder(store).record_exception(ValueError("x")) is None


def test_unhandled_error_is_recorded_with_caller(client, admin, monkeypatch):
    monkeypatch.setattr(get_runtime().users, "list_users", _explode)

    failed = client.get("/api/users", headers={**admin, "User-Agent": "ops-console"})
    assert failed.status_code == 500
    assert "offline" not in failed.json()["error"]["message"]

    page = client.get("/api/error-logs", headers=admin).json()["data"]
    assert page["total"] == 1
    entry = page["items"][0]
    assert entry["route"] == "/api/users"
    assert entry["method"] == "GET"
    assert entry["userId"] == "admin"
    assert entry["userEmail"] == "root@example.com"
    assert entry["userAgent"] == "ops-console"
    assert entry["message"] == "directory offline"

    single = client.get(f"/api/error-logs/{entry['id']}", headers=admin)
    assert single.json()["data"]["stack"]


def test_client_errors_are_not_recorded(client, admin):
    client.get("/api/users/not-a-user", headers=admin)
    client.post("/api/auth/login", json={"email": "x@example.com", "password": "nope"})
    assert get_runtime().error_log.list()[1] == 0


def test_listing_filters(client, admin):
    runtime = get_runtime()
    for route, method in (("/api/users", "GET"), ("/api/auth/login", "POST")):
        runtime.error_log.record_exception(RuntimeError("x"), route=route, method=method)
    runtime.error_log.record_exception(
        RuntimeError("slow"), level=ErrorLevel.WARNING, route="/api/users", method="GET"
    )

    def total(**params):
        response = client.get("/api/error-logs", params=params, headers=admin)
        assert response.status_code == 200, response.text
        return response.json()["data"]["total"]

    assert total() == 3
    assert total(level="warning") == 1
    assert total(route="USERS") == 2
    assert total(method="post") == 1
    assert total(startDate="2000-01-01T00:00:00Z", endDate="2000-01-02T00:00:00Z") == 0

    paged = client.get("/api/error-logs", params={"limit": 2, "page": 2}, headers=admin)
    assert paged.json()["data"]["pages"] == 2
    assert len(paged.json()["data"]["items"]) == 1


def test_missing_entry_and_access(client, admin):
    assert client.get("/api/error-logs/unknown", headers=admin).status_code == 404

    signup = client.post(
        "/api/auth/signup",
        json={"email": "coach@example.com", "password": PASSWORD, "name": "C", "role": "trainer"},
    )
    token = signup.json()["data"]["token"]
    response = client.get("/api/error-logs", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 403
