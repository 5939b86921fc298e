from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol

from warden.logging import get_logger
from warden.storage.models import User, utcnow

logger = get_logger(__name__)


class LockoutStore(Protocol):
    def record_login_failure(
        self, user_id: str, *, threshold: int, lock_minutes: int, now: datetime
    ) -> Optional[User]: ...

    def record_login_success(self, user_id: str, *, at: datetime) -> Optional[User]: ...


class LockoutTracker:
    """Failed-login counter and temporary lock per account.

    The increment and the lock are one store operation, so two racing failures
    can never both observe a count below the threshold.
    """

    def __init__(
        self,
        store: LockoutStore,
        *,
        threshold: int = 5,
        lock_minutes: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.lock_minutes = lock_minutes
        self._clock = clock or utcnow

    def is_locked(self, user: User) -> bool:
        return user.is_locked(self._clock())

    def record_failure(self, user: User) -> Optional[User]:
        updated = self.store.record_login_failure(
            user.id,
            threshold=self.threshold,
            lock_minutes=self.lock_minutes,
            now=self._clock(),
        )
        if updated and updated.locked_until and not user.is_locked(self._clock()):
            logger.warning(
                "account_locked",
                user_id=user.id,
                failures=updated.login_failure_count,
                locked_until=updated.locked_until.isoformat(),
            )
        return updated

    def record_success(self, user: User) -> Optional[User]:
        return self.store.record_login_success(user.id, at=self._clock())
