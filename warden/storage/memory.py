from __future__ import annotations

import dataclasses
import json
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from warden.logging import get_logger
from warden.storage.common import (
    build_code_cipher,
    challenge_from_dict,
    challenge_to_dict,
    normalize_permissions,
    normalize_role,
    parse_datetime,
    serialize_datetime,
)
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    AuditEntry,
    AuditStatus,
    ErrorLevel,
    ErrorLogEntry,
    MFAChallenge,
    User,
)


class MemoryStore:
    """In-process user and audit store with a JSON snapshot on disk.

    Every mutation runs under one re-entrant lock so read-modify-write cycles on
    a user record are atomic. Callers always receive copies; mutating a returned
    ``User`` never changes stored state.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/warden",
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.audit_entries: List[AuditEntry] = []
        self.error_logs: List[ErrorLogEntry] = []
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.persist = persist
        self._code_cipher = build_code_cipher(mfa_encryption_key, self.fs_root)
        if persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "users.json"

    @staticmethod
    def _copy(user: Optional[User]) -> Optional[User]:
        if user is None:
            return None
        return dataclasses.replace(user, permissions=list(user.permissions))

    # users
    def create_user(
        self,
        email: str,
        *,
        name: str = "",
        password_hash: Optional[str] = None,
        oauth_subject_id: Optional[str] = None,
        role: str = "user",
        permissions: Sequence[str] = ("read",),
    ) -> User:
        if bool(password_hash) == bool(oauth_subject_id):
            raise ValueError("exactly one of password_hash or oauth_subject_id is required")
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if oauth_subject_id and self._find_by_subject(oauth_subject_id):
                raise ConstraintViolation(
                    "oauth subject already linked", {"field": "oauth_subject_id"}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                role=normalize_role(role),
                permissions=normalize_permissions(permissions),
                password_hash=password_hash,
                oauth_subject_id=oauth_subject_id,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._copy(user)

    def _find_by_subject(self, subject: str) -> Optional[User]:
        return next(
            (u for u in self.users.values() if u.oauth_subject_id == subject), None
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(
                next((u for u in self.users.values() if u.email == email), None)
            )

    def get_user_by_oauth_subject(self, subject: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(self._find_by_subject(subject))

    def list_users(
        self, limit: int = 100, offset: int = 0, *, role: Optional[str] = None
    ) -> List[User]:
        with self._data_lock:
            matches = [u for u in self.users.values() if role is None or u.role == role]
            ordered = sorted(matches, key=lambda u: u.created_at, reverse=True)
            return [self._copy(u) for u in ordered[offset : offset + limit]]

    def link_oauth_subject(self, user_id: str, subject: str) -> Optional[User]:
        """Attach an external identity once; an existing link is never overwritten."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.oauth_subject_id is None:
                owner = self._find_by_subject(subject)
                if owner and owner.id != user_id:
                    raise ConstraintViolation(
                        "oauth subject already linked", {"field": "oauth_subject_id"}
                    )
                user.oauth_subject_id = subject
                self._persist_state()
            return self._copy(user)

    def update_user_role(
        self, user_id: str, role: str, permissions: Optional[Sequence[str]] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = normalize_role(role)
            if permissions is not None:
                user.permissions = normalize_permissions(permissions)
            self._persist_state()
            return self._copy(user)

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            self._persist_state()
            return self._copy(user)

    def update_profile(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None and any(
                other.email == email and other.id != user_id for other in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if name is not None:
                user.name = name
            if email is not None:
                user.email = email
            self._persist_state()
            return self._copy(user)

    def set_lock(self, user_id: str, locked_until: Optional[datetime]) -> Optional[User]:
        """Lock until ``locked_until``, or lift the lock and reset the failure count."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.locked_until = locked_until
            if locked_until is None:
                user.login_failure_count = 0
            self._persist_state()
            return self._copy(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self._persist_state()
            return True

    # lockout
    def record_login_failure(
        self, user_id: str, *, threshold: int, lock_minutes: int, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.locked_until is not None and user.locked_until <= now:
                user.login_failure_count = 0
                user.locked_until = None
            user.login_failure_count += 1
            if user.login_failure_count >= threshold:
                user.locked_until = now + timedelta(minutes=lock_minutes)
            self._persist_state()
            return self._copy(user)

    def record_login_success(self, user_id: str, *, at: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.login_failure_count = 0
            user.locked_until = None
            user.last_login_at = at
            self._persist_state()
            return self._copy(user)

    # mfa challenges
    def set_mfa_challenge(self, user_id: str, challenge: MFAChallenge) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.pending_challenge = challenge
            self._persist_state()
            return self._copy(user)

    def record_mfa_mismatch(self, user_id: str, challenge_id: str) -> Optional[MFAChallenge]:
        """Count a wrong guess against ``challenge_id``; returns the updated challenge.

        A challenge past its attempt cap stays stored so the temp token bound to
        it can be told apart from one whose code was spent.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            pending = user.pending_challenge if user else None
            if pending is None or pending.id != challenge_id:
                return None
            updated = dataclasses.replace(pending, failed_attempts=pending.failed_attempts + 1)
            user.pending_challenge = updated
            self._persist_state()
            return updated

    def consume_mfa_challenge(
        self, user_id: str, challenge_id: str, *, mfa_enabled: Optional[bool] = None
    ) -> bool:
        """Clear the pending challenge if it is still ``challenge_id``.

        When ``mfa_enabled`` is given the flag is written in the same step, so a
        code can never be spent without its transition taking effect.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.pending_challenge or user.pending_challenge.id != challenge_id:
                return False
            user.pending_challenge = None
            if mfa_enabled is not None:
                user.mfa_enabled = mfa_enabled
            self._persist_state()
            return True

    def clear_mfa_challenge(self, user_id: str, challenge_id: Optional[str] = None) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.pending_challenge:
                return False
            if challenge_id is not None and user.pending_challenge.id != challenge_id:
                return False
            user.pending_challenge = None
            self._persist_state()
            return True

    # audit
    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._data_lock:
            self.audit_entries.append(entry)
            self._persist_state()
            return entry

    def list_audit_entries(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AuditEntry], int]:
        with self._data_lock:
            matches = [
                e
                for e in self.audit_entries
                if (user_id is None or e.user_id == user_id)
                and (action is None or e.action == action)
                and (status is None or e.status.value == status)
                and (start is None or e.timestamp >= start)
                and (end is None or e.timestamp <= end)
            ]
        matches.sort(key=lambda e: e.timestamp, reverse=True)
        return matches[offset : offset + limit], len(matches)

    # error log
    def append_error_log(self, entry: ErrorLogEntry) -> ErrorLogEntry:
        with self._data_lock:
            self.error_logs.append(entry)
            self._persist_state()
            return entry

    def get_error_log(self, entry_id: str) -> Optional[ErrorLogEntry]:
        with self._data_lock:
            return next((e for e in self.error_logs if e.id == entry_id), None)

    def list_error_logs(
        self,
        *,
        level: Optional[str] = None,
        user_email: Optional[str] = None,
        route: Optional[str] = None,
        method: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ErrorLogEntry], int]:
        """Filter newest first; ``route`` is a case-insensitive substring match."""
        route_fragment = route.lower() if route else None
        with self._data_lock:
            matches = [
                e
                for e in self.error_logs
                if (level is None or e.level.value == level)
                and (user_email is None or e.user_email == user_email)
                and (route_fragment is None or route_fragment in (e.route or "").lower())
                and (method is None or e.method == method.upper())
                and (start is None or e.timestamp >= start)
                and (end is None or e.timestamp <= end)
            ]
        matches.sort(key=lambda e: e.timestamp, reverse=True)
        return matches[offset : offset + limit], len(matches)

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "audit_log": [self._serialize_audit_entry(e) for e in self.audit_entries],
            "error_log": [self._serialize_error_log(e) for e in self.error_logs],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.audit_entries = [
            self._deserialize_audit_entry(e) for e in data.get("audit_log", [])
        ]
        self.error_logs = [self._deserialize_error_log(e) for e in data.get("error_log", [])]
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "permissions": list(user.permissions),
            "password_hash": user.password_hash,
            "oauth_subject_id": user.oauth_subject_id,
            "mfa_enabled": user.mfa_enabled,
            "pending_challenge": challenge_to_dict(user.pending_challenge, self._code_cipher),
            "login_failure_count": user.login_failure_count,
            "locked_until": serialize_datetime(user.locked_until),
            "last_login_at": serialize_datetime(user.last_login_at),
            "created_at": serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name") or "",
            role=data.get("role", "user"),
            permissions=list(data.get("permissions") or []),
            password_hash=data.get("password_hash"),
            oauth_subject_id=data.get("oauth_subject_id"),
            mfa_enabled=bool(data.get("mfa_enabled", False)),
            pending_challenge=challenge_from_dict(
                data.get("pending_challenge"), self._code_cipher
            ),
            login_failure_count=int(data.get("login_failure_count", 0)),
            locked_until=parse_datetime(data.get("locked_until")),
            last_login_at=parse_datetime(data.get("last_login_at")),
            created_at=parse_datetime(data["created_at"]),
        )

    @staticmethod
    def _serialize_audit_entry(entry: AuditEntry) -> dict:
        return {
            "id": entry.id,
            "action": entry.action,
            "status": entry.status.value,
            "user_id": entry.user_id,
            "user_email": entry.user_email,
            "details": entry.details,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "timestamp": serialize_datetime(entry.timestamp),
        }

    @staticmethod
    def _deserialize_audit_entry(data: dict) -> AuditEntry:
        return AuditEntry(
            id=data["id"],
            action=data["action"],
            status=AuditStatus(data["status"]),
            user_id=data.get("user_id"),
            user_email=data.get("user_email"),
            details=data.get("details") or {},
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            timestamp=parse_datetime(data["timestamp"]),
        )

    @staticmethod
    def _serialize_error_log(entry: ErrorLogEntry) -> dict:
        return {
            "id": entry.id,
            "level": entry.level.value,
            "message": entry.message,
            "stack": entry.stack,
            "user_id": entry.user_id,
            "user_email": entry.user_email,
            "route": entry.route,
            "method": entry.method,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "details": entry.details,
            "timestamp": serialize_datetime(entry.timestamp),
        }

    @staticmethod
    def _deserialize_error_log(data: dict) -> ErrorLogEntry:
        return ErrorLogEntry(
            id=data["id"],
            level=ErrorLevel(data["level"]),
            message=data["message"],
            stack=data.get("stack"),
            user_id=data.get("user_id"),
            user_email=data.get("user_email"),
            route=data.get("route"),
            method=data.get("method"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            details=data.get("details") or {},
            timestamp=parse_datetime(data["timestamp"]),
        )
