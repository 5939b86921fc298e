import pytest

from warden.service.credentials import CredentialVerifier, normalize_email
from warden.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def verifier(store):
    return CredentialVerifier(store)


def test_normalize_email():
    assert normalize_email("  Dave@Example.COM ") == "dave@example.com"
    # Fullwidth characters fold to ASCII under NFKC
    assert normalize_email("ｄａｖｅ@example.com") == "dave@example.com"
    assert normalize_email(None) == ""


def test_hash_is_argon2id_and_salted(verifier):
    first = verifier.hash_password("s3cret-pass")
    second = verifier.hash_password("s3cret-pass")
    assert first.startswith("$argon2id$")
    assert first != second


def test_verify(verifier, store):
    user = store.create_user("dave@example.com", password_hash=verifier.hash_password("s3cret-pass"))

    assert verifier.verify("DAVE@example.com", "s3cret-pass").id == user.id
    assert verifier.verify("dave@example.com", "wrong-pass-1") is None
    assert verifier.verify("nobody@example.com", "s3cret-pass") is None


def test_oauth_only_account_has_no_password(verifier, store):
    user = store.create_user("erin@example.com", oauth_subject_id="google-123")
    assert verifier.check(user, "") is False
    assert verifier.check(user, "anything-1") is False


def test_corrupt_hash_is_a_mismatch(verifier, store):
    user = store.create_user("frank@example.com", password_hash="not-an-argon2-hash")
    assert verifier.check(user, "whatever-1") is False
