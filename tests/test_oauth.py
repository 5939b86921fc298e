from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from helpers import ManualClock, RecordingEmail
from warden import app as app_module
from warden.config import Settings
from warden.service.audit import AuditRecorder
from warden.service.auth import AuthService
from warden.service.oauth import GoogleOAuthClient, OAuthUnavailableError
from warden.service.runtime import get_runtime, reset_runtime_for_tests
from warden.storage.memory import MemoryStore
from warden.storage.models import AuditStatus, MFAPurpose


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="oauth-test-secret-0123456789abcdefghijk",
        shared_fs_root=str(tmp_path),
        test_mode=True,
        oauth_google_client_id="client-id",
        oauth_google_client_secret="client-secret",
        oauth_redirect_uri="http://localhost:8000/api/auth/google/callback",
        frontend_base_url="http://localhost:3000",
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def outbox():
    return RecordingEmail()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def service(store, settings, outbox, clock):
    oauth = GoogleOAuthClient(settings, clock=clock)
    return AuthService(
        store, settings, email=outbox, audit=AuditRecorder(store), oauth=oauth, clock=clock
    )


def _query(url):
    parsed = urlparse(url)
    return parsed.path, {k: v[0] for k, v in parse_qs(parsed.query).items()}


async def test_start_builds_google_url(service):
    start = await service.start_oauth()
    path, params = _query(start["authorization_url"])

    assert start["authorization_url"].startswith("https://accounts.google.com/")
    assert params["client_id"] == "client-id"
    assert params["state"] == start["state"]
    assert params["response_type"] == "code"


async def test_unconfigured_provider_is_unavailable(settings, clock):
    client = GoogleOAuthClient(settings.model_copy(update={"oauth_google_client_id": None}), clock=clock)
    with pytest.raises(OAuthUnavailableError):
        await client.start()


async def test_state_is_single_use_and_expires(service, clock):
    state = (await service.start_oauth())["state"]
    assert await service.oauth.consume_state(state) is True
    assert await service.oauth.consume_state(state) is False

    state = (await service.start_oauth())["state"]
    clock.advance(minutes=10)
    assert await service.oauth.consume_state(state) is False
    assert await service.oauth.consume_state(None) is False


async def test_first_login_creates_read_only_user(service, store):
    state = (await service.start_oauth())["state"]
    service.oauth.register_oauth_code("code-1", {"id": "g-1", "email": "Gina@Example.com", "name": "Gina"})

    target = await service.complete_oauth("code-1", state)

    path, params = _query(target)
    assert path == "/auth-success"
    user = store.get_user_by_email("gina@example.com")
    assert user.oauth_subject_id == "g-1"
    assert user.permissions == ["read"]
    assert user.password_hash is None
    assert service.resolve_identity(params["token"]).id == user.id


async def test_existing_password_account_is_linked(service, store):
    existing = store.create_user("hal@example.com", name="Hal", password_hash="h")
    state = (await service.start_oauth())["state"]
    service.oauth.register_oauth_code("code-2", {"sub": "g-2", "email": "hal@example.com"})

    await service.complete_oauth("code-2", state)

    linked = store.get_user(existing.id)
    assert linked.oauth_subject_id == "g-2"
    assert linked.password_hash == "h"


async def test_mfa_user_is_sent_to_verification(service, store, outbox):
    user = store.create_user("ivy@example.com", oauth_subject_id="g-3")
    await service.mfa.issue_code(user, MFAPurpose.ENABLE)
    service.mfa.verify_code(
        store.get_user(user.id), outbox.last_code, purpose=MFAPurpose.ENABLE, mfa_enabled=True
    )
    assert store.get_user(user.id).mfa_enabled

    state = (await service.start_oauth())["state"]
    service.oauth.register_oauth_code("code-3", {"id": "g-3", "email": "ivy@example.com"})
    target = await service.complete_oauth("code-3", state)

    path, params = _query(target)
    assert path == "/verify-mfa"
    assert params["isOAuth"] == "true"
    result = await service.verify_mfa(params["tempToken"], outbox.last_code, is_oauth=True)
    assert result.user.id == user.id


async def test_bad_state_or_unverified_email_fails(service, store):
    target = await service.complete_oauth("code-x", "forged-state")
    assert _query(target) == ("/login", {"error": "oauth_failed"})

    state = (await service.start_oauth())["state"]
    service.oauth.register_oauth_code(
        "code-4", {"id": "g-4", "email": "jo@example.com", "verified_email": False}
    )
    target = await service.complete_oauth("code-4", state)
    assert _query(target) == ("/login", {"error": "oauth_failed"})
    assert store.get_user_by_email("jo@example.com") is None

    failures, _ = store.list_audit_entries(action="oauth_login", status=AuditStatus.FAILURE.value)
    assert len(failures) == 2


async def test_locked_account_is_refused(service, store, clock):
    user = store.create_user("kim@example.com", oauth_subject_id="g-5")
    store.record_login_failure(user.id, threshold=1, lock_minutes=30, now=clock.now)
    state = (await service.start_oauth())["state"]
    service.oauth.register_oauth_code("code-5", {"id": "g-5", "email": "kim@example.com"})

    target = await service.complete_oauth("code-5", state)
    assert _query(target) == ("/login", {"error": "account_locked"})


def test_http_callback_redirects(monkeypatch):
    monkeypatch.setenv("OAUTH_GOOGLE_CLIENT_ID", "client-id")
    monkeypatch.setenv("OAUTH_GOOGLE_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("OAUTH_REDIRECT_URI", "http://localhost:8000/api/auth/google/callback")
    reset_runtime_for_tests()
    client = TestClient(app_module.app)

    start = client.get("/api/auth/google").json()["data"]
    get_runtime().oauth.register_oauth_code("code-http", {"id": "g-9", "email": "web@example.com"})
    response = client.get(
        "/api/auth/google/callback",
        params={"code": "code-http", "state": start["state"]},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert response.headers["location"].startswith("http://localhost:3000/auth-success?token=")


def test_http_start_without_configuration():
    response = TestClient(app_module.app).get("/api/auth/google")
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "service_unavailable"
