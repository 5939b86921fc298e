from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from warden.service.credentials import normalize_email
from warden.storage.models import AuditEntry, ErrorLogEntry, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
    "INVALID_CREDENTIALS",
    "ACCOUNT_LOCKED",
    "INVALID_TEMP_TOKEN",
    "NO_MFA_CODE",
    "CODE_EXPIRED",
    "INVALID_CODE",
    "MFA_REQUIRED",
    "MFA_NOT_ENABLED",
    "MFA_ALREADY_ENABLED",
    "TOO_MANY_ATTEMPTS",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    """Wire models speak camelCase; Python code uses the snake_case names."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, serialize_by_alias=True
    )


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[A-Za-z]", value) or not re.search(r"\d", value):
        raise ValueError("password must contain letters and digits")
    return value


class SignupRequest(_CamelModel):
    email: str
    password: str
    name: str = Field(..., min_length=1, max_length=128)
    role: Literal["user", "trainer", "admin"] = "user"

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name is required")
        return stripped


class LoginRequest(_CamelModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        # Malformed addresses fall through to the generic credential failure
        return normalize_email(value)


class TempTokenRequest(_CamelModel):
    temp_token: Optional[str] = Field(default=None, max_length=4096)
    is_oauth: bool = False


class MFAVerifyRequest(TempTokenRequest):
    code: Optional[str] = Field(default=None, max_length=10)


class MFACodeRequest(_CamelModel):
    code: Optional[str] = Field(default=None, max_length=10)


class DeleteAccountRequest(_CamelModel):
    mfa_code: Optional[str] = Field(default=None, max_length=10)


class UserResponse(_CamelModel):
    id: str
    email: str
    name: str
    role: str
    permissions: List[str]
    mfa_enabled: bool = False
    oauth_linked: bool = False
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            permissions=list(user.permissions),
            mfa_enabled=user.mfa_enabled,
            oauth_linked=user.oauth_subject_id is not None,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class AuthResponse(_CamelModel):
    token: str
    user: UserResponse


class MFAPendingResponse(_CamelModel):
    temp_token: str
    mfa_required: bool = True
    expires_at: datetime
    delivered: bool


class CodeIssuedResponse(_CamelModel):
    expires_at: datetime
    delivered: bool
    temp_token: Optional[str] = None


class SuccessResponse(_CamelModel):
    success: bool = True
    mfa_enabled: Optional[bool] = None


class MFAStatusResponse(_CamelModel):
    mfa_enabled: bool


class AdminLoginResponse(_CamelModel):
    token: str
    role: str = "admin"


class OAuthStartResponse(_CamelModel):
    authorization_url: str
    state: str
    provider: str = "google"


class UserListResponse(_CamelModel):
    items: List[UserResponse]
    limit: int
    offset: int


class AuditEntryResponse(_CamelModel):
    id: str
    action: str
    status: str
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    details: dict = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            action=entry.action,
            status=entry.status.value,
            user_id=entry.user_id,
            user_email=entry.user_email,
            details=dict(entry.details),
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            timestamp=entry.timestamp,
        )


class AuditLogListResponse(_CamelModel):
    items: List[AuditEntryResponse]
    total: int
    page: int
    pages: int



class ProfileUpdateRequest(_CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    email: Optional[str] = None
    current_password: Optional[str] = Field(default=None, max_length=128)
    new_password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class AdminCreateUserRequest(_CamelModel):
    email: str
    password: str
    name: str = Field(default="", max_length=128)
    role: Literal["user", "trainer", "admin"] = "user"
    permissions: Optional[List[str]] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_new_user_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AdminUpdateUserRequest(_CamelModel):
    """Fields left out stay as they are; an explicit ``lockedUntil: null`` unlocks."""

    role: Optional[Literal["user", "trainer", "admin"]] = None
    permissions: Optional[List[str]] = Field(default=None, max_length=16)
    locked_until: Optional[datetime] = None


class TrainerCreateRequest(_CamelModel):
    email: str
    password: str
    name: str = Field(..., min_length=1, max_length=128)
    permissions: Optional[List[str]] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_trainer_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TrainerUpdateRequest(_CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    email: Optional[str] = None
    permissions: Optional[List[str]] = Field(default=None, max_length=16)
    locked_until: Optional[datetime] = None

    @field_validator("email")
    @classmethod
    def _validate_trainer_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class ErrorLogResponse(_CamelModel):
    id: str
    level: str
    message: str
    stack: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    route: Optional[str] = None
    method: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: dict = Field(default_factory=dict)
    timestamp: datetime

    @classmethod
    def from_entry(cls, entry: ErrorLogEntry) -> "ErrorLogResponse":
        return cls(
            id=entry.id,
            level=entry.level.value,
            message=entry.message,
            stack=entry.stack,
            user_id=entry.user_id,
            user_email=entry.user_email,
            route=entry.route,
            method=entry.method,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            details=dict(entry.details),
            timestamp=entry.timestamp,
        )


class ErrorLogListResponse(_CamelModel):
    items: List[ErrorLogResponse]
    total: int
    page: int
    pages: int
