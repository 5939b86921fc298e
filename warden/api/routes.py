from __future__ import annotations

import math
from datetime import datetime
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from warden.api.schemas import (
    AdminCreateUserRequest,
    AdminLoginResponse,
    AdminUpdateUserRequest,
    AuditEntryResponse,
    AuditLogListResponse,
    AuthResponse,
    CodeIssuedResponse,
    DeleteAccountRequest,
    Envelope,
    ErrorLogListResponse,
    ErrorLogResponse,
    LoginRequest,
    MFACodeRequest,
    MFAPendingResponse,
    MFAStatusResponse,
    MFAVerifyRequest,
    OAuthStartResponse,
    ProfileUpdateRequest,
    SignupRequest,
    SuccessResponse,
    TempTokenRequest,
    TrainerCreateRequest,
    TrainerUpdateRequest,
    UserListResponse,
    UserResponse,
)
from warden.logging import get_logger
from warden.service.audit import RequestMeta
from warden.service.auth import BootstrapAdmin, Identity
from warden.service.errors import AuthenticationError, ForbiddenError, NotFoundError
from warden.service.runtime import check_rate_limit, get_runtime
from warden.service.tokens import MFA_PENDING_TOKEN
from warden.service.users import UNCHANGED
from warden.storage.common import parse_datetime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

MAX_PAGE_SIZE = 100


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key`` and raise 429 when the bucket is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":")[0], limit=limit)
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": info.reset_seconds},
        )
    return info


def _request_meta(request: Request) -> RequestMeta:
    # Forwarding headers are client-controlled; a trusted proxy must rewrite the peer
    ip_address = request.client.host if request.client else None
    return RequestMeta(ip_address=ip_address, user_agent=request.headers.get("User-Agent"))


def _pending_subject(runtime, temp_token: Optional[str], meta: RequestMeta) -> str:
    """Rate-limit key for the MFA step: the account behind the temp token, else the peer."""
    claims = runtime.auth.tokens.verify(temp_token, token_type=MFA_PENDING_TOKEN)
    return f"user:{claims['sub']}" if claims else f"ip:{meta.ip_address}"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_identity(
    request: Request, authorization: Optional[str] = Header(None)
) -> Identity:
    token = _bearer_token(authorization)
    if token is None:
        raise AuthenticationError("Authentication required")
    identity = get_runtime().auth.resolve_identity(token)
    request.state.identity = identity
    return identity


def require_role(*roles: str) -> Callable:
    """Dependency factory admitting callers whose role is listed; admin always passes."""

    async def _dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if identity.role != "admin" and identity.role not in roles:
            raise ForbiddenError("Insufficient role", detail={"required": list(roles)})
        return identity

    return _dependency


def require_permission(permission: str) -> Callable:
    """Dependency factory admitting callers holding ``permission``; admin always passes."""

    async def _dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if not identity.has_permission(permission):
            raise ForbiddenError("Insufficient permissions", detail={"required": permission})
        return identity

    return _dependency


def _profile(identity: Identity) -> UserResponse:
    if isinstance(identity, BootstrapAdmin):
        return UserResponse(
            id=identity.id,
            email=identity.email,
            name=identity.name,
            role=identity.role,
            permissions=list(identity.permissions),
        )
    return UserResponse.from_user(identity.user)


def _code_issued(issued, temp_token: Optional[str] = None) -> CodeIssuedResponse:
    return CodeIssuedResponse(
        expires_at=issued.expires_at, delivered=issued.delivered, temp_token=temp_token
    )


# signup / login


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.signup(
        body.email, body.password, body.name, role=body.role, meta=_request_meta(request)
    )
    return Envelope(
        status="ok",
        data=AuthResponse(token=result.token, user=UserResponse.from_user(result.user)),
    )


@router.post("/auth/admin/login", response_model=Envelope, tags=["auth"])
async def admin_login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"admin_login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    token = await runtime.auth.admin_login(body.email, body.password, meta=_request_meta(request))
    return Envelope(status="ok", data=AdminLoginResponse(token=token))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Returns a session token, or a temporary token plus ``mfaRequired`` when the
    account has MFA enabled; the code is emailed and must be posted to
    ``/auth/verify-mfa`` before it expires.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password, meta=_request_meta(request))
    if result.mfa_required:
        return Envelope(
            status="ok",
            data=MFAPendingResponse(
                temp_token=result.temp_token,
                expires_at=result.expires_at,
                delivered=bool(result.delivered),
            ),
        )
    return Envelope(
        status="ok",
        data=AuthResponse(token=result.token, user=UserResponse.from_user(result.user)),
    )


@router.post("/auth/resend-mfa", response_model=Envelope, tags=["auth", "mfa"])
async def resend_mfa(body: TempTokenRequest, request: Request):
    runtime = get_runtime()
    meta = _request_meta(request)
    await _enforce_rate_limit(
        runtime,
        f"mfa:resend:{_pending_subject(runtime, body.temp_token, meta)}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    temp_token, issued = await runtime.auth.resend_mfa(
        body.temp_token, is_oauth=body.is_oauth, meta=meta
    )
    return Envelope(status="ok", data=_code_issued(issued, temp_token))


@router.post("/auth/verify-mfa", response_model=Envelope, tags=["auth", "mfa"])
async def verify_mfa(body: MFAVerifyRequest, request: Request):
    runtime = get_runtime()
    meta = _request_meta(request)
    await _enforce_rate_limit(
        runtime,
        f"mfa:verify:{_pending_subject(runtime, body.temp_token, meta)}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.verify_mfa(
        body.temp_token, body.code, is_oauth=body.is_oauth, meta=meta
    )
    return Envelope(
        status="ok",
        data=AuthResponse(token=result.token, user=UserResponse.from_user(result.user)),
    )


# mfa settings


@router.post("/auth/setup-mfa", response_model=Envelope, tags=["mfa"])
async def setup_mfa(request: Request, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:request:{identity.id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    issued = await runtime.auth.setup_mfa(identity, meta=_request_meta(request))
    return Envelope(status="ok", data=_code_issued(issued))


@router.post("/auth/verify-and-enable-mfa", response_model=Envelope, tags=["mfa"])
async def verify_and_enable_mfa(
    body: MFACodeRequest, request: Request, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:enable:{identity.id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    user = await runtime.auth.enable_mfa(identity, body.code, meta=_request_meta(request))
    return Envelope(status="ok", data=SuccessResponse(mfa_enabled=user.mfa_enabled))


@router.post("/auth/request-disable-mfa", response_model=Envelope, tags=["mfa"])
async def request_disable_mfa(request: Request, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:request:{identity.id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    issued = await runtime.auth.request_disable_mfa(identity, meta=_request_meta(request))
    return Envelope(status="ok", data=_code_issued(issued))


@router.post("/auth/verify-and-disable-mfa", response_model=Envelope, tags=["mfa"])
async def verify_and_disable_mfa(
    body: MFACodeRequest, request: Request, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:disable:{identity.id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    user = await runtime.auth.disable_mfa(identity, body.code, meta=_request_meta(request))
    return Envelope(status="ok", data=SuccessResponse(mfa_enabled=user.mfa_enabled))


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=MFAStatusResponse(mfa_enabled=runtime.auth.mfa_status(identity))
    )


# account deletion


@router.post("/auth/request-delete-mfa", response_model=Envelope, tags=["account"])
async def request_delete_mfa(request: Request, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:request:{identity.id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    issued = await runtime.auth.request_delete_mfa(identity, meta=_request_meta(request))
    return Envelope(status="ok", data=_code_issued(issued))


@router.delete("/auth/delete-account", response_model=Envelope, tags=["account"])
async def delete_account(
    request: Request,
    body: Optional[DeleteAccountRequest] = None,
    identity: Identity = Depends(get_identity),
):
    """Delete the caller's account; accounts with MFA must send ``mfaCode``."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"account:delete:{identity.id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    await runtime.auth.delete_account(
        identity, body.mfa_code if body else None, meta=_request_meta(request)
    )
    return Envelope(status="ok", data=SuccessResponse())


# oauth


@router.get("/auth/google", response_model=Envelope, tags=["oauth"])
async def google_start(request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"oauth:start:{_request_meta(request).ip_address}",
        limit=20,
        window_seconds=60,
    )
    start = await runtime.auth.start_oauth()
    return Envelope(
        status="ok",
        data=OAuthStartResponse(
            authorization_url=start["authorization_url"], state=start["state"]
        ),
    )


@router.get("/auth/google/callback", tags=["oauth"])
async def google_callback(
    request: Request,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"oauth:callback:{_request_meta(request).ip_address}",
        limit=20,
        window_seconds=60,
    )
    target = await runtime.auth.complete_oauth(code, state, meta=_request_meta(request))
    return RedirectResponse(target, status_code=302)


# users


@router.get("/users/profile", response_model=Envelope, tags=["users"])
async def get_profile(identity: Identity = Depends(get_identity)):
    return Envelope(status="ok", data=_profile(identity))


@router.put("/users/profile", response_model=Envelope, tags=["users"])
async def update_profile(
    body: ProfileUpdateRequest, request: Request, identity: Identity = Depends(get_identity)
):
    """Update the caller's name, email or password.

    Email and password changes must carry ``currentPassword``.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"profile:update:{identity.id}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    user = runtime.users.update_profile(
        identity,
        name=body.name,
        email=body.email,
        current_password=body.current_password,
        new_password=body.new_password,
        meta=_request_meta(request),
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


def _lock_change(body) -> object:
    # An explicit null unlocks; an absent field leaves the lock alone
    return body.locked_until if "locked_until" in body.model_fields_set else UNCHANGED


def _user_list(role: Optional[str], limit: int, offset: int) -> UserListResponse:
    users = get_runtime().users.list_users(limit=limit, offset=offset, role=role)
    return UserListResponse(
        items=[UserResponse.from_user(u) for u in users], limit=limit, offset=offset
    )


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    role: Optional[str] = Query(None, pattern="^(user|trainer|admin)$"),
    identity: Identity = Depends(require_permission("manage_users")),
):
    return Envelope(status="ok", data=_user_list(role, limit, offset))


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: AdminCreateUserRequest,
    request: Request,
    identity: Identity = Depends(require_permission("manage_users")),
):
    user = get_runtime().users.create_user(
        identity,
        email=body.email,
        password=body.password,
        name=body.name,
        role=body.role,
        permissions=body.permissions,
        meta=_request_meta(request),
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    user_id: str = Path(..., max_length=64),
    identity: Identity = Depends(require_permission("manage_users")),
):
    return Envelope(status="ok", data=UserResponse.from_user(get_runtime().users.get_user(user_id)))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: AdminUpdateUserRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    identity: Identity = Depends(require_permission("manage_users")),
):
    user = get_runtime().users.update_user(
        identity,
        user_id,
        role=body.role,
        permissions=body.permissions,
        locked_until=_lock_change(body),
        meta=_request_meta(request),
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    request: Request,
    user_id: str = Path(..., max_length=64),
    identity: Identity = Depends(require_permission("manage_users")),
):
    get_runtime().users.delete_user(identity, user_id, meta=_request_meta(request))
    return Envelope(status="ok", data=SuccessResponse())


# trainers


@router.get("/trainers/profile", response_model=Envelope, tags=["trainers"])
async def get_trainer_profile(identity: Identity = Depends(require_role("trainer"))):
    return Envelope(status="ok", data=_profile(identity))


@router.get("/trainers", response_model=Envelope, tags=["trainers"])
async def list_trainers(
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(require_permission("manage_users")),
):
    return Envelope(status="ok", data=_user_list("trainer", limit, offset))


@router.post("/trainers", response_model=Envelope, status_code=201, tags=["trainers"])
async def create_trainer(
    body: TrainerCreateRequest,
    request: Request,
    identity: Identity = Depends(require_permission("manage_users")),
):
    trainer = get_runtime().users.create_user(
        identity,
        email=body.email,
        password=body.password,
        name=body.name,
        role="trainer",
        permissions=body.permissions,
        meta=_request_meta(request),
    )
    return Envelope(status="ok", data=UserResponse.from_user(trainer))


@router.get("/trainers/{trainer_id}", response_model=Envelope, tags=["trainers"])
async def get_trainer(
    trainer_id: str = Path(..., max_length=64),
    identity: Identity = Depends(require_permission("manage_users")),
):
    trainer = get_runtime().users.get_user(trainer_id, role="trainer")
    return Envelope(status="ok", data=UserResponse.from_user(trainer))


@router.put("/trainers/{trainer_id}", response_model=Envelope, tags=["trainers"])
async def update_trainer(
    body: TrainerUpdateRequest,
    request: Request,
    trainer_id: str = Path(..., max_length=64),
    identity: Identity = Depends(require_permission("manage_users")),
):
    trainer = get_runtime().users.update_user(
        identity,
        trainer_id,
        name=body.name,
        email=body.email,
        permissions=body.permissions,
        locked_until=_lock_change(body),
        scope_role="trainer",
        meta=_request_meta(request),
    )
    return Envelope(status="ok", data=UserResponse.from_user(trainer))


@router.delete("/trainers/{trainer_id}", response_model=Envelope, tags=["trainers"])
async def delete_trainer(
    request: Request,
    trainer_id: str = Path(..., max_length=64),
    identity: Identity = Depends(require_permission("manage_users")),
):
    get_runtime().users.delete_user(
        identity, trainer_id, scope_role="trainer", meta=_request_meta(request)
    )
    return Envelope(status="ok", data=SuccessResponse())


# error logs


@router.get("/error-logs", response_model=Envelope, tags=["errors"])
async def list_error_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    level: Optional[str] = Query(None, pattern="^(error|warning|info)$"),
    user_email: Optional[str] = Query(None, alias="userEmail", max_length=254),
    route: Optional[str] = Query(None, max_length=256),
    method: Optional[str] = Query(None, max_length=8),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    identity: Identity = Depends(require_role("admin")),
):
    entries, total = get_runtime().error_log.list(
        level=level,
        user_email=user_email,
        route=route,
        method=method,
        start=parse_datetime(start_date),
        end=parse_datetime(end_date),
        limit=limit,
        offset=(page - 1) * limit,
    )
    return Envelope(
        status="ok",
        data=ErrorLogListResponse(
            items=[ErrorLogResponse.from_entry(e) for e in entries],
            total=total,
            page=page,
            pages=math.ceil(total / limit) if total else 0,
        ),
    )


@router.get("/error-logs/{log_id}", response_model=Envelope, tags=["errors"])
async def get_error_log(
    log_id: str = Path(..., max_length=64),
    identity: Identity = Depends(require_role("admin")),
):
    entry = get_runtime().error_log.get(log_id)
    if entry is None:
        raise NotFoundError("Error log entry not found")
    return Envelope(status="ok", data=ErrorLogResponse.from_entry(entry))


# audit logs


def _audit_page(
    *,
    user_id: Optional[str],
    page: int,
    limit: int,
    action: Optional[str],
    status: Optional[str],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
) -> AuditLogListResponse:
    runtime = get_runtime()
    entries, total = runtime.auth.list_audit_entries(
        user_id=user_id,
        action=action,
        status=status,
        start=parse_datetime(start_date),
        end=parse_datetime(end_date),
        limit=limit,
        offset=(page - 1) * limit,
    )
    return AuditLogListResponse(
        items=[AuditEntryResponse.from_entry(e) for e in entries],
        total=total,
        page=page,
        pages=math.ceil(total / limit) if total else 0,
    )


@router.get("/audit-logs", response_model=Envelope, tags=["audit"])
async def list_audit_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    action: Optional[str] = Query(None, max_length=64),
    status: Optional[str] = Query(None, pattern="^(success|failure)$"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    identity: Identity = Depends(require_permission("view_reports")),
):
    return Envelope(
        status="ok",
        data=_audit_page(
            user_id=None,
            page=page,
            limit=limit,
            action=action,
            status=status,
            start_date=start_date,
            end_date=end_date,
        ),
    )


@router.get("/audit-logs/user/{user_id}", response_model=Envelope, tags=["audit"])
async def list_user_audit_logs(
    user_id: str = Path(..., max_length=64),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    action: Optional[str] = Query(None, max_length=64),
    status: Optional[str] = Query(None, pattern="^(success|failure)$"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    identity: Identity = Depends(require_permission("view_reports")),
):
    return Envelope(
        status="ok",
        data=_audit_page(
            user_id=user_id,
            page=page,
            limit=limit,
            action=action,
            status=status,
            start_date=start_date,
            end_date=end_date,
        ),
    )
