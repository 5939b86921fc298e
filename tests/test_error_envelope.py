from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from warden.api.error_handling import register_exception_handlers
from warden.service.errors import AccountLockedError, MFACodeError, NotFoundError, ServerError
from warden.service.oauth import OAuthUnavailableError
from warden.service.runtime import get_runtime
from warden.storage.errors import ConstraintViolation
from warden.storage.models import utcnow


class Payload(BaseModel):
    value: int


def _client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/locked")
    async def locked():
        raise AccountLockedError(utcnow())

    @app.get("/code")
    async def code():
        raise MFACodeError(MFACodeError.EXPIRED, status_code=400)

    @app.get("/missing")
    async def missing():
        raise NotFoundError("User not found")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/server")
    async def server():
        raise ServerError("storage unavailable")

    @app.get("/oauth")
    async def oauth():
        raise OAuthUnavailableError("Google sign-in is not configured")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    @app.post("/validate")
    async def validate(body: Payload):
        return body

    return TestClient(app, raise_server_exceptions=False)


def test_domain_errors_use_envelope():
    client = _client()
    response = client.get("/locked")
    body = response.json()

    assert response.status_code == 403
    assert body["status"] == "error"
    assert body["error"]["code"] == "ACCOUNT_LOCKED"
    assert "lockedUntil" in body["error"]["details"]
    assert body["request_id"]


def test_mfa_code_error_status_follows_call_site():
    response = _client().get("/code")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "CODE_EXPIRED"


def test_generic_codes():
    client = _client()
    assert client.get("/missing").json()["error"]["code"] == "not_found"
    conflict = client.get("/conflict")
    assert conflict.status_code == 409
    assert conflict.json()["error"]["details"] == {"field": "email"}
    assert client.get("/server").status_code == 500
    oauth = client.get("/oauth")
    assert oauth.status_code == 503
    assert oauth.json()["error"]["code"] == "service_unavailable"


def test_uncaught_exception_hides_details():
    response = _client().get("/boom")
    assert response.status_code == 500
    body = response.json()
    assert body["error"]["code"] == "server_error"
    assert "secret" not in body["error"]["message"]

    entries, total = get_runtime().error_log.list(route="/boom")
    assert total == 1
    assert entries[0].message == "secret internals"
    assert entries[0].user_id is None


def test_server_errors_are_recorded_but_client_errors_are_not():
    client = _client()
    client.get("/server")
    client.get("/missing")
    entries, total = get_runtime().error_log.list()
    assert total == 1
    assert entries[0].details["error_type"] == "ServerError"


def test_request_validation_is_400():
    response = _client().post("/validate", json={"value": "nope"})
    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["details"][0]["loc"] == ["body", "value"]


def test_unknown_route_is_enveloped():
    response = _client().get("/nowhere")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_request_id_matches_header_on_full_app():
    from warden import app as app_module

    client = TestClient(app_module.app)
    response = client.get("/api/users/profile", headers={"X-Request-ID": "trace-42"})
    assert response.status_code == 401
    assert response.json()["request_id"] == "trace-42"
    assert response.headers["X-Request-ID"] == "trace-42"
