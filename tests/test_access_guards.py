from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from warden.api.error_handling import register_exception_handlers
from warden.api.routes import require_permission, require_role
from warden.service.runtime import get_runtime


def _app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/trainers")
    async def trainers(identity=Depends(require_role("trainer"))):
        return {"id": identity.id}

    @app.get("/reports")
    async def reports(identity=Depends(require_permission("view_reports"))):
        return {"id": identity.id}

    return TestClient(app)


def _token_for(role, permissions):
    runtime = get_runtime()
    user = runtime.store.create_user(
        f"{role}@example.com",
        name=role,
        password_hash=runtime.auth.credentials.hash_password("password123"),
        role=role,
        permissions=permissions,
    )
    return user, runtime.auth._session_token(user)


def test_role_guard():
    client = _app()
    trainer, trainer_token = _token_for("trainer", ["read"])
    _, user_token = _token_for("user", ["read"])

    ok = client.get("/trainers", headers={"Authorization": f"Bearer {trainer_token}"})
    assert ok.status_code == 200
    assert ok.json() == {"id": trainer.id}

    denied = client.get("/trainers", headers={"Authorization": f"Bearer {user_token}"})
    assert denied.status_code == 403
    assert denied.json()["error"]["details"] == {"required": ["trainer"]}


def test_permission_guard_and_admin_bypass():
    client = _app()
    _, user_token = _token_for("user", ["read"])
    _, admin_token = _token_for("admin", ["read"])

    assert client.get("/reports", headers={"Authorization": f"Bearer {user_token}"}).status_code == 403
    assert client.get("/reports", headers={"Authorization": f"Bearer {admin_token}"}).status_code == 200
    assert client.get("/trainers", headers={"Authorization": f"Bearer {admin_token}"}).status_code == 200


def test_missing_or_garbage_token():
    client = _app()
    assert client.get("/reports").status_code == 401
    response = client.get("/reports", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"
