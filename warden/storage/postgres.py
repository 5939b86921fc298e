from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from warden.logging import get_logger
from warden.storage.common import (
    build_code_cipher,
    challenge_from_dict,
    challenge_to_dict,
    normalize_permissions,
    normalize_role,
    parse_datetime,
    safe_row_value,
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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'user',
        permissions TEXT[] NOT NULL DEFAULT '{}',
        password_hash TEXT,
        oauth_subject_id TEXT UNIQUE,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_challenge JSONB,
        login_failure_count INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id UUID PRIMARY KEY,
        user_id TEXT,
        user_email TEXT,
        action TEXT NOT NULL,
        status TEXT NOT NULL,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_created_idx ON audit_log (created_at DESC)",
    "CREATE INDEX IF NOT EXISTS audit_log_user_idx ON audit_log (user_id)",
    """
    CREATE TABLE IF NOT EXISTS error_log (
        id UUID PRIMARY KEY,
        level TEXT NOT NULL,
        message TEXT NOT NULL,
        stack TEXT,
        user_id TEXT,
        user_email TEXT,
        route TEXT,
        method TEXT,
        ip_address TEXT,
        user_agent TEXT,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS error_log_created_idx ON error_log (created_at DESC)",
    "CREATE INDEX IF NOT EXISTS error_log_level_idx ON error_log (level)",
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed user and audit store.

    Each state transition on a user record is a single ``UPDATE ... RETURNING``
    so concurrent instances serialize on the row lock instead of in-process
    locks.
    """

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._code_cipher = build_code_cipher(mfa_encryption_key, self.fs_root)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def _row_to_user(self, row: Optional[Dict[str, Any]]) -> Optional[User]:
        if not row:
            return None
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=safe_row_value(row, "name", "") or "",
            role=safe_row_value(row, "role", "user"),
            permissions=list(safe_row_value(row, "permissions") or []),
            password_hash=safe_row_value(row, "password_hash"),
            oauth_subject_id=safe_row_value(row, "oauth_subject_id"),
            mfa_enabled=bool(safe_row_value(row, "mfa_enabled", False)),
            pending_challenge=challenge_from_dict(
                safe_row_value(row, "mfa_challenge"), self._code_cipher
            ),
            login_failure_count=int(safe_row_value(row, "login_failure_count", 0) or 0),
            locked_until=parse_datetime(safe_row_value(row, "locked_until")),
            last_login_at=parse_datetime(safe_row_value(row, "last_login_at")),
            created_at=parse_datetime(row["created_at"]),
        )

    @staticmethod
    def _row_to_audit_entry(row: Dict[str, Any]) -> AuditEntry:
        details = row.get("details") or {}
        if isinstance(details, str):
            details = json.loads(details)
        return AuditEntry(
            id=str(row["id"]),
            action=row["action"],
            status=AuditStatus(row["status"]),
            user_id=row.get("user_id"),
            user_email=row.get("user_email"),
            details=details,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            timestamp=parse_datetime(row["created_at"]),
        )

    @staticmethod
    def _row_to_error_log(row: Dict[str, Any]) -> ErrorLogEntry:
        details = row.get("details") or {}
        if isinstance(details, str):
            details = json.loads(details)
        return ErrorLogEntry(
            id=str(row["id"]),
            level=ErrorLevel(row["level"]),
            message=row["message"],
            stack=row.get("stack"),
            user_id=row.get("user_id"),
            user_email=row.get("user_email"),
            route=row.get("route"),
            method=row.get("method"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            details=details,
            timestamp=parse_datetime(row["created_at"]),
        )

    def _update_returning(self, sql: str, params: Sequence[Any]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._row_to_user(row)

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, permissions, password_hash, oauth_subject_id)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        email,
                        name,
                        normalize_role(role),
                        normalize_permissions(permissions),
                        password_hash,
                        oauth_subject_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "oauth_subject_id" if "oauth_subject" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._row_to_user(row)

    def get_user_by_oauth_subject(self, subject: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE oauth_subject_id = %s", (subject,)
            ).fetchone()
        return self._row_to_user(row)

    def list_users(
        self, limit: int = 100, offset: int = 0, *, role: Optional[str] = None
    ) -> List[User]:
        with self._connect() as conn:
            if role is None:
                rows = conn.execute(
                    "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s OFFSET %s",
                    (limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM app_user WHERE role = %s
                    ORDER BY created_at DESC LIMIT %s OFFSET %s
                    """,
                    (role, limit, offset),
                ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def link_oauth_subject(self, user_id: str, subject: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET oauth_subject_id = COALESCE(oauth_subject_id, %s), updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (subject, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "oauth subject already linked", {"field": "oauth_subject_id"}
            )
        return self._row_to_user(row)

    def update_user_role(
        self, user_id: str, role: str, permissions: Optional[Sequence[str]] = None
    ) -> Optional[User]:
        if permissions is None:
            return self._update_returning(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (normalize_role(role), user_id),
            )
        return self._update_returning(
            """
            UPDATE app_user SET role = %s, permissions = %s, updated_at = now()
            WHERE id = %s RETURNING *
            """,
            (normalize_role(role), normalize_permissions(permissions), user_id),
        )

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_returning(
            "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s RETURNING *",
            (password_hash, user_id),
        )

    def update_profile(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        try:
            return self._update_returning(
                """
                UPDATE app_user
                SET name = COALESCE(%s, name), email = COALESCE(%s, email), updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (name, email, user_id),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def set_lock(self, user_id: str, locked_until: Optional[datetime]) -> Optional[User]:
        """Lock until ``locked_until``, or lift the lock and reset the failure count."""
        if locked_until is None:
            return self._update_returning(
                """
                UPDATE app_user SET locked_until = NULL, login_failure_count = 0, updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (user_id,),
            )
        return self._update_returning(
            "UPDATE app_user SET locked_until = %s, updated_at = now() WHERE id = %s RETURNING *",
            (locked_until, user_id),
        )

    def delete_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # lockout
    def record_login_failure(
        self, user_id: str, *, threshold: int, lock_minutes: int, now: datetime
    ) -> Optional[User]:
        # An expired lock restarts the count before this failure is added
        return self._update_returning(
            """
            UPDATE app_user
            SET login_failure_count = CASE
                    WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                    ELSE login_failure_count + 1
                END,
                locked_until = CASE
                    WHEN (CASE
                            WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                            ELSE login_failure_count + 1
                          END) >= %(threshold)s THEN %(lock_until)s
                    WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN NULL
                    ELSE locked_until
                END,
                updated_at = now()
            WHERE id = %(user_id)s
            RETURNING *
            """,
            {
                "now": now,
                "threshold": threshold,
                "lock_until": now + timedelta(minutes=lock_minutes),
                "user_id": user_id,
            },
        )

    def record_login_success(self, user_id: str, *, at: datetime) -> Optional[User]:
        return self._update_returning(
            """
            UPDATE app_user
            SET login_failure_count = 0, locked_until = NULL, last_login_at = %s, updated_at = now()
            WHERE id = %s RETURNING *
            """,
            (at, user_id),
        )

    # mfa challenges
    def set_mfa_challenge(self, user_id: str, challenge: MFAChallenge) -> Optional[User]:
        return self._update_returning(
            "UPDATE app_user SET mfa_challenge = %s, updated_at = now() WHERE id = %s RETURNING *",
            (json.dumps(challenge_to_dict(challenge, self._code_cipher)), user_id),
        )

    def record_mfa_mismatch(self, user_id: str, challenge_id: str) -> Optional[MFAChallenge]:
        """Count a wrong guess against ``challenge_id``; returns the updated challenge."""
        row = self._update_returning(
            """
            UPDATE app_user
            SET mfa_challenge = jsonb_set(
                    mfa_challenge,
                    '{failed_attempts}',
                    to_jsonb(COALESCE((mfa_challenge->>'failed_attempts')::int, 0) + 1)
                ),
                updated_at = now()
            WHERE id = %(user_id)s AND mfa_challenge->>'id' = %(challenge_id)s
            RETURNING *
            """,
            {"user_id": user_id, "challenge_id": challenge_id},
        )
        return row.pending_challenge if row else None

    def consume_mfa_challenge(
        self, user_id: str, challenge_id: str, *, mfa_enabled: Optional[bool] = None
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET mfa_challenge = NULL,
                    mfa_enabled = COALESCE(%s, mfa_enabled),
                    updated_at = now()
                WHERE id = %s AND mfa_challenge->>'id' = %s
                RETURNING id
                """,
                (mfa_enabled, user_id, challenge_id),
            ).fetchone()
        return row is not None

    def clear_mfa_challenge(self, user_id: str, challenge_id: Optional[str] = None) -> bool:
        with self._connect() as conn:
            if challenge_id is None:
                result = conn.execute(
                    """
                    UPDATE app_user SET mfa_challenge = NULL, updated_at = now()
                    WHERE id = %s AND mfa_challenge IS NOT NULL
                    """,
                    (user_id,),
                )
            else:
                result = conn.execute(
                    """
                    UPDATE app_user SET mfa_challenge = NULL, updated_at = now()
                    WHERE id = %s AND mfa_challenge->>'id' = %s
                    """,
                    (user_id, challenge_id),
                )
            return result.rowcount > 0

    # audit
    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, user_id, user_email, action, status, details, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.user_email,
                    entry.action,
                    entry.status.value,
                    json.dumps(entry.details),
                    entry.ip_address,
                    entry.user_agent,
                    entry.timestamp,
                ),
            )
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
        clauses: List[str] = []
        params: List[Any] = []
        for column, op, value in (
            ("user_id", "=", user_id),
            ("action", "=", action),
            ("status", "=", status),
            ("created_at", ">=", start),
            ("created_at", "<=", end),
        ):
            if value is not None:
                clauses.append(f"{column} {op} %s")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM audit_log {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._row_to_audit_entry(row) for row in rows], total

    # error log
    def append_error_log(self, entry: ErrorLogEntry) -> ErrorLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO error_log (id, level, message, stack, user_id, user_email, route, method, ip_address, user_agent, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.level.value,
                    entry.message,
                    entry.stack,
                    entry.user_id,
                    entry.user_email,
                    entry.route,
                    entry.method,
                    entry.ip_address,
                    entry.user_agent,
                    json.dumps(entry.details),
                    entry.timestamp,
                ),
            )
        return entry

    def get_error_log(self, entry_id: str) -> Optional[ErrorLogEntry]:
        if not _is_uuid(entry_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM error_log WHERE id = %s", (entry_id,)).fetchone()
        return self._row_to_error_log(row) if row else None

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
        clauses: List[str] = []
        params: List[Any] = []
        for column, op, value in (
            ("level", "=", level),
            ("user_email", "=", user_email),
            ("route", "ILIKE", f"%{route}%" if route else None),
            ("method", "=", method.upper() if method else None),
            ("created_at", ">=", start),
            ("created_at", "<=", end),
        ):
            if value is not None:
                clauses.append(f"{column} {op} %s")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM error_log {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM error_log {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._row_to_error_log(row) for row in rows], total
