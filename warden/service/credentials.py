from __future__ import annotations

import secrets
import unicodedata
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.logging import get_logger
from warden.storage.models import User

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...


def normalize_email(email: str) -> str:
    """Canonical form used for storage and lookup: NFKC, trimmed, lower-case."""
    return unicodedata.normalize("NFKC", email or "").strip().lower()


class CredentialVerifier:
    """Checks an email + password pair against the user store.

    A miss and a wrong password look identical to the caller, and a miss still
    spends one argon2 verification so timing does not reveal which it was.
    """

    def __init__(self, store: CredentialStore, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def lookup(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(normalize_email(email))

    def check(self, user: User, password: str) -> bool:
        if not user.password_hash:
            # OAuth-only accounts have no local secret
            self.dummy_verify(password)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable", user_id=user.id)
            return False

    def verify(self, email: str, password: str) -> Optional[User]:
        user = self.lookup(email)
        if user is None:
            self.dummy_verify(password)
            return None
        return user if self.check(user, password) else None

    def dummy_verify(self, password: str) -> None:
        """Spend one hash verification without a real record."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass
