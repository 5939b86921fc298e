import runpy
from pathlib import Path

import pytest

from warden.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    return runpy.run_path(str(SCRIPT), run_name="bootstrap_admin")


def test_password_policy(bootstrap):
    validate = bootstrap["validate_password"]
    assert validate("Correct-Horse-9")
    assert not validate("short1A!")
    assert not validate("alllowercaseletters")


def test_creates_admin(bootstrap):
    assert bootstrap["main"](["--email", "Ops@Example.com", "--password", "Sup3r-Secret-Pass"]) == 0
    user = get_runtime().store.get_user_by_email("ops@example.com")
    assert user.role == "admin"
    assert "manage_users" in user.permissions
    assert get_runtime().auth.credentials.check(user, "Sup3r-Secret-Pass")


def test_promotes_existing_user(bootstrap):
    store = get_runtime().store
    user = store.create_user("member@example.com", name="Member", password_hash="h")

    result = bootstrap["bootstrap_admin"]("member@example.com", "ignored-Password-1")

    assert result["status"] == "promoted"
    assert store.get_user(user.id).role == "admin"
    assert bootstrap["bootstrap_admin"]("member@example.com", "x")["status"] == "already_admin"


def test_dry_run_and_bad_input(bootstrap):
    assert bootstrap["main"](["--email", "dry@example.com", "--password", "Sup3r-Secret-Pass", "--dry-run"]) == 0
    assert get_runtime().store.get_user_by_email("dry@example.com") is None
    assert bootstrap["main"](["--email", "weak@example.com", "--password", "weak"]) == 1
