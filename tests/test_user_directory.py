"""Account management: own profile edits and admin create/update/delete."""

from datetime import timedelta

import pytest

from helpers import ManualClock
from warden.service.audit import AuditRecorder, RequestMeta
from warden.service.auth import BootstrapAdmin, StoredUser
from warden.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
)
from warden.service.users import UserDirectory
from warden.storage.memory import MemoryStore
from warden.storage.models import AuditStatus

PASSWORD = "correct-horse-42"
META = RequestMeta(ip_address="203.0.113.9", user_agent="pytest")


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def directory(store, clock):
    return UserDirectory(store, audit=AuditRecorder(store), clock=clock)


@pytest.fixture
def alice(store, directory):
    return store.create_user(
        "alice@example.com",
        name="Alice",
        password_hash=directory.credentials.hash_password(PASSWORD),
    )


@pytest.fixture
def manager(store, directory):
    """A trainer trusted to manage accounts, without the delete permission."""
    return StoredUser(
        store.create_user(
            "coach@example.com",
            password_hash=directory.credentials.hash_password(PASSWORD),
            role="trainer",
            permissions=["read", "write", "manage_users"],
        )
    )


ROOT = BootstrapAdmin(email="root@example.com")


def _last(store, action):
    entries, _ = store.list_audit_entries(action=action)
    return entries[0]


class TestProfile:
    def test_name_change_needs_no_password(self, directory, alice):
        updated = directory.update_profile(StoredUser(alice), name="Alice B", meta=META)
        assert updated.name == "Alice B"
        assert updated.email == "alice@example.com"

    def test_email_change_requires_current_password(self, directory, store, alice):
        with pytest.raises(InvalidCredentialsError) as exc:
            directory.update_profile(StoredUser(alice), email="new@example.com", meta=META)
        assert exc.value.message == "Current password is incorrect"
        assert store.get_user(alice.id).email == "alice@example.com"
        entry = _last(store, "profile_update")
        assert entry.status is AuditStatus.FAILURE
        assert entry.ip_address == META.ip_address

        updated = directory.update_profile(
            StoredUser(alice), email="New@Example.com", current_password=PASSWORD
        )
        assert updated.email == "new@example.com"

    def test_password_change(self, directory, store, alice):
        with pytest.raises(InvalidCredentialsError):
            directory.update_profile(
                StoredUser(alice), current_password="wrong", new_password="fresh-pass-9"
            )
        directory.update_profile(
            StoredUser(alice), current_password=PASSWORD, new_password="fresh-pass-9"
        )

        current = store.get_user(alice.id)
        assert directory.credentials.check(current, "fresh-pass-9")
        assert not directory.credentials.check(current, PASSWORD)
        assert _last(store, "profile_update").details["fields"] == ["password"]

    def test_taken_email_conflicts(self, directory, store, alice, manager):
        with pytest.raises(ConflictError):
            directory.update_profile(
                StoredUser(alice), email="coach@example.com", current_password=PASSWORD
            )

    def test_bootstrap_admin_has_no_profile(self, directory, store):
        with pytest.raises(BadRequestError):
            directory.update_profile(ROOT, name="Root")
        assert _last(store, "profile_update").user_id == "admin"


class TestAdministration:
    def test_admin_creates_user_with_defaults(self, directory, store):
        user = directory.create_user(
            ROOT, email="Bob@Example.com", password="passw0rd-ok", name="Bob", meta=META
        )
        assert user.email == "bob@example.com"
        assert user.permissions == ["read", "write"]
        assert directory.credentials.check(user, "passw0rd-ok")
        entry = _last(store, "user_create")
        assert entry.details["target_user_id"] == user.id

    def test_duplicate_and_unknown_values(self, directory, alice):
        with pytest.raises(ConflictError):
            directory.create_user(ROOT, email="alice@example.com", password="passw0rd-ok")
        with pytest.raises(BadRequestError):
            directory.create_user(
                ROOT, email="x@example.com", password="passw0rd-ok", permissions=["fly"]
            )

    def test_non_admin_cannot_escalate(self, directory, store, manager):
        with pytest.raises(ForbiddenError):
            directory.create_user(
                manager, email="boss@example.com", password="passw0rd-ok", role="admin"
            )
        with pytest.raises(ForbiddenError) as exc:
            directory.create_user(
                manager,
                email="x@example.com",
                password="passw0rd-ok",
                permissions=["read", "delete"],
            )
        assert exc.value.detail == {"permissions": ["delete"]}
        assert store.get_user_by_email("x@example.com") is None

        created = directory.create_user(
            manager, email="x@example.com", password="passw0rd-ok", permissions=["read"]
        )
        assert created.permissions == ["read"]

    def test_lock_and_unlock(self, directory, store, alice, clock):
        until = clock.now + timedelta(days=1)
        locked = directory.update_user(ROOT, alice.id, locked_until=until)
        assert locked.is_locked(clock.now)

        # Leaving the lock out keeps it
        promoted = directory.update_user(ROOT, alice.id, role="trainer")
        assert promoted.role == "trainer"
        assert promoted.locked_until == until

        unlocked = directory.update_user(ROOT, alice.id, locked_until=None)
        assert unlocked.locked_until is None
        assert unlocked.login_failure_count == 0
        assert _last(store, "user_update").details["locked"] is False

    def test_scoped_update_hides_other_roles(self, directory, alice):
        with pytest.raises(NotFoundError) as exc:
            directory.update_user(ROOT, alice.id, name="x", scope_role="trainer")
        assert exc.value.message == "Trainer not found"

    def test_non_admin_cannot_touch_admins(self, directory, store, manager):
        boss = store.create_user("boss@example.com", password_hash="h", role="admin")
        with pytest.raises(ForbiddenError):
            directory.update_user(manager, boss.id, permissions=["read"])
        with pytest.raises(ForbiddenError):
            directory.delete_user(manager, boss.id)
        assert store.get_user(boss.id) is not None

    def test_delete(self, directory, store, alice, manager):
        with pytest.raises(BadRequestError):
            directory.delete_user(manager, manager.id)
        with pytest.raises(NotFoundError):
            directory.delete_user(ROOT, alice.id, scope_role="trainer")
        assert store.get_user(alice.id) is not None

        directory.delete_user(ROOT, alice.id, meta=META)
        assert store.get_user(alice.id) is None
        with pytest.raises(NotFoundError):
            directory.delete_user(ROOT, alice.id)

        statuses = [e.status for e in store.list_audit_entries(action="user_delete")[0]]
        assert statuses.count(AuditStatus.SUCCESS) == 1
        assert statuses.count(AuditStatus.FAILURE) == 3

    def test_scoped_lookup(self, directory, alice, manager):
        assert directory.get_user(manager.id, role="trainer").id == manager.id
        with pytest.raises(NotFoundError):
            directory.get_user(alice.id, role="trainer")
        assert [u.id for u in directory.list_users(role="trainer")] == [manager.id]
