from datetime import datetime, timedelta, timezone
from pathlib import Path

from warden.storage.common import build_code_cipher, challenge_to_dict
from warden.storage.models import AuditStatus, ErrorLevel, MFAChallenge, MFAPurpose
from warden.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class RecordingCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class RecordingConnection:
    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.results.pop(0) if self.results else RecordingCursor()


class RecordingPool:
    def __init__(self, *results):
        self.conn = RecordingConnection(results)

    def connection(self):
        return self.conn


def _store(tmp_path: Path, pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    store._code_cipher = build_code_cipher("unit-test-key", tmp_path)
    return store


def _row(**overrides):
    row = {
        "id": "3f1c7a52-0a4e-4d0c-9d43-1c1f6f0e2a10",
        "email": "pg@example.com",
        "name": "Pg",
        "role": "user",
        "permissions": ["read", "write"],
        "password_hash": "hash",
        "oauth_subject_id": None,
        "mfa_enabled": True,
        "mfa_challenge": None,
        "login_failure_count": 2,
        "locked_until": None,
        "last_login_at": None,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def test_row_to_user_decrypts_challenge(tmp_path):
    store = _store(tmp_path, RecordingPool())
    challenge = MFAChallenge.new("654321", MFAPurpose.DISABLE, ttl_minutes=5, now=NOW)
    user = store._row_to_user(
        _row(mfa_challenge=challenge_to_dict(challenge, store._code_cipher))
    )

    assert user.pending_challenge == challenge
    assert user.permissions == ["read", "write"]
    assert user.login_failure_count == 2
    assert store._row_to_user(None) is None


def test_record_login_failure_is_one_statement(tmp_path):
    pool = RecordingPool(RecordingCursor(row=_row(login_failure_count=5, locked_until=NOW + timedelta(minutes=30))))
    store = _store(tmp_path, pool)

    user = store.record_login_failure("uid", threshold=5, lock_minutes=30, now=NOW)

    assert user.locked_until == NOW + timedelta(minutes=30)
    (sql, params), = pool.conn.statements
    assert sql.startswith("UPDATE app_user")
    assert "RETURNING *" in sql
    assert params["lock_until"] == NOW + timedelta(minutes=30)
    assert params["threshold"] == 5


def test_set_challenge_stores_ciphertext(tmp_path):
    pool = RecordingPool(RecordingCursor(row=_row()))
    store = _store(tmp_path, pool)
    challenge = MFAChallenge.new("777111", MFAPurpose.LOGIN, ttl_minutes=5, now=NOW)

    store.set_mfa_challenge("uid", challenge)

    (_, params), = pool.conn.statements
    assert "777111" not in params[0]


def test_consume_reports_lost_race(tmp_path):
    store = _store(tmp_path, RecordingPool(RecordingCursor(row=None)))
    assert store.consume_mfa_challenge("uid", "cid", mfa_enabled=True) is False


def test_audit_listing_builds_filters(tmp_path):
    audit_row = {
        "id": "a1",
        "action": "login",
        "status": "failure",
        "user_id": "uid",
        "user_email": "pg@example.com",
        "details": '{"reason": "INVALID_CREDENTIALS"}',
        "ip_address": "198.51.100.4",
        "user_agent": "ua",
        "created_at": NOW.isoformat(),
    }
    pool = RecordingPool(RecordingCursor(row={"total": 1}), RecordingCursor(rows=[audit_row]))
    store = _store(tmp_path, pool)

    entries, total = store.list_audit_entries(user_id="uid", status="failure", limit=10, offset=20)

    assert total == 1
    assert entries[0].status is AuditStatus.FAILURE
    assert entries[0].details == {"reason": "INVALID_CREDENTIALS"}
    count_sql, count_params = pool.conn.statements[0]
    assert "WHERE user_id = %s AND status = %s" in count_sql
    assert count_params == ["uid", "failure"]
    _, page_params = pool.conn.statements[1]
    assert page_params == ["uid", "failure", 10, 20]


def test_mismatch_increments_without_dropping_the_challenge(tmp_path):
    challenge = MFAChallenge.new("123456", MFAPurpose.LOGIN, ttl_minutes=5, now=NOW)
    pool = RecordingPool()
    store = _store(tmp_path, pool)
    stored = challenge_to_dict(challenge, store._code_cipher)
    stored["failed_attempts"] = 3
    pool.conn.results = [RecordingCursor(row=_row(mfa_challenge=stored))]

    updated = store.record_mfa_mismatch("uid", challenge.id)

    assert updated.failed_attempts == 3
    (sql, params), = pool.conn.statements
    assert "jsonb_set" in sql
    assert "mfa_challenge = NULL" not in sql
    assert params == {"user_id": "uid", "challenge_id": challenge.id}


def test_list_users_filters_by_role(tmp_path):
    pool = RecordingPool(RecordingCursor(rows=[_row(role="trainer")]))
    store = _store(tmp_path, pool)

    users = store.list_users(limit=5, offset=10, role="trainer")

    assert users[0].role == "trainer"
    (sql, params), = pool.conn.statements
    assert "WHERE role = %s" in sql
    assert params == ("trainer", 5, 10)


def test_unlock_resets_failure_count(tmp_path):
    pool = RecordingPool(RecordingCursor(row=_row(login_failure_count=0)))
    store = _store(tmp_path, pool)

    store.set_lock("uid", None)

    (sql, params), = pool.conn.statements
    assert "locked_until = NULL, login_failure_count = 0" in sql
    assert params == ("uid",)


def test_lookups_skip_non_uuid_ids(tmp_path):
    pool = RecordingPool()
    store = _store(tmp_path, pool)

    assert store.get_user("admin") is None
    assert store.delete_user("not-a-uuid") is False
    assert store.get_error_log("42") is None
    assert pool.conn.statements == []


def test_error_log_listing_builds_filters(tmp_path):
    log_row = {
        "id": "9b0f2c1e-7d7a-4a8e-b1de-6a1f9c0d2e31",
        "level": "error",
        "message": "boom",
        "stack": "Traceback",
        "user_id": None,
        "user_email": None,
        "route": "/api/users",
        "method": "GET",
        "ip_address": "198.51.100.4",
        "user_agent": "ua",
        "details": '{"error_type": "RuntimeError"}',
        "created_at": NOW,
    }
    pool = RecordingPool(RecordingCursor(row={"total": 3}), RecordingCursor(rows=[log_row]))
    store = _store(tmp_path, pool)

    entries, total = store.list_error_logs(level="error", route="users", method="get", limit=1)

    assert total == 3
    assert entries[0].level is ErrorLevel.ERROR
    assert entries[0].details == {"error_type": "RuntimeError"}
    count_sql, count_params = pool.conn.statements[0]
    assert "WHERE level = %s AND route ILIKE %s AND method = %s" in count_sql
    assert count_params == ["error", "%users%", "GET"]
    _, page_params = pool.conn.statements[1]
    assert page_params == ["error", "%users%", "GET", 1, 0]
