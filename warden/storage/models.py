from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MFAPurpose(str, Enum):
    """What a pending MFA code authorizes once it is accepted."""

    LOGIN = "login"
    ENABLE = "enable"
    DISABLE = "disable"
    DELETE_ACCOUNT = "delete_account"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class MFAChallenge:
    """A single pending one-time code.

    Code and expiry live in one value so they are always written and cleared
    together. ``expires_at`` is exclusive: the code is dead at that instant.
    """

    id: str
    code: str
    purpose: MFAPurpose
    issued_at: datetime
    expires_at: datetime
    failed_attempts: int = 0

    @classmethod
    def new(
        cls, code: str, purpose: MFAPurpose, *, ttl_minutes: int, now: datetime
    ) -> "MFAChallenge":
        return cls(
            id=str(uuid.uuid4()),
            code=code,
            purpose=MFAPurpose(purpose),
            issued_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_exhausted(self, max_attempts: int) -> bool:
        return self.failed_attempts >= max_attempts


@dataclass
class User:
    id: str
    email: str
    name: str = ""
    role: str = "user"
    permissions: List[str] = field(default_factory=list)
    password_hash: Optional[str] = None
    oauth_subject_id: Optional[str] = None
    mfa_enabled: bool = False
    pending_challenge: Optional[MFAChallenge] = None
    login_failure_count: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def has_permission(self, permission: str) -> bool:
        return self.role == "admin" or permission in self.permissions


@dataclass
class AuditEntry:
    action: str
    status: AuditStatus
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)


class ErrorLevel(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass
class ErrorLogEntry:
    """A server-side failure captured for operators, separate from the audit trail."""

    level: ErrorLevel
    message: str
    stack: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    route: Optional[str] = None
    method: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)
