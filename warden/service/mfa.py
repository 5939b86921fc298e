from __future__ import annotations

import asyncio
import dataclasses
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol

from warden.logging import get_logger
from warden.service.errors import NotFoundError
from warden.storage.models import MFAChallenge, MFAPurpose, User, utcnow

logger = get_logger(__name__)


class ChallengeStore(Protocol):
    def set_mfa_challenge(self, user_id: str, challenge: MFAChallenge) -> Optional[User]: ...

    def record_mfa_mismatch(self, user_id: str, challenge_id: str) -> Optional[MFAChallenge]: ...

    def consume_mfa_challenge(
        self, user_id: str, challenge_id: str, *, mfa_enabled: Optional[bool] = None
    ) -> bool: ...

    def clear_mfa_challenge(self, user_id: str, challenge_id: Optional[str] = None) -> bool: ...


class CodeSender(Protocol):
    def send_mfa_code(
        self, to_email: str, code: str, *, purpose: MFAPurpose, expires_minutes: int
    ) -> bool: ...


class VerifyOutcome(str, Enum):
    ACCEPTED = "accepted"
    NO_CODE_ISSUED = "no_code_issued"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    # The pending challenge was replaced after the caller's temp token was minted
    SUPERSEDED = "superseded"
    # Too many wrong guesses; the challenge is dead until a new sign-in
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class IssuedChallenge:
    challenge: MFAChallenge
    delivered: bool

    @property
    def expires_at(self) -> datetime:
        return self.challenge.expires_at


class MFAChallengeManager:
    """Issues and checks single-use emailed codes.

    One primitive serves login, OAuth login, enabling and disabling MFA and
    account deletion; only the purpose and the transition applied on
    acceptance differ.
    """

    def __init__(
        self,
        store: ChallengeStore,
        email: CodeSender,
        *,
        ttl_minutes: int = 5,
        max_attempts: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.email = email
        self.ttl_minutes = ttl_minutes
        self.max_attempts = max_attempts
        self._clock = clock or utcnow

    @staticmethod
    def generate_code() -> str:
        return str(secrets.randbelow(900_000) + 100_000)

    async def issue_code(
        self, user: User, purpose: MFAPurpose, *, carry_attempts: bool = False
    ) -> IssuedChallenge:
        """Store a fresh code for ``user`` (replacing any pending one) and email it.

        Delivery failure keeps the code; the caller reports ``delivered=False``
        so the client can offer a resend. With ``carry_attempts`` the wrong
        guesses already spent on a pending challenge of the same purpose count
        against the new one.
        """
        pending = user.pending_challenge
        previous = pending.code if pending else None
        code = self.generate_code()
        while code == previous:
            code = self.generate_code()
        challenge = MFAChallenge.new(
            code, MFAPurpose(purpose), ttl_minutes=self.ttl_minutes, now=self._clock()
        )
        if carry_attempts and pending is not None and pending.purpose is challenge.purpose:
            challenge = dataclasses.replace(challenge, failed_attempts=pending.failed_attempts)
        if self.store.set_mfa_challenge(user.id, challenge) is None:
            raise NotFoundError("User not found")
        delivered = await self._deliver(user, challenge)
        logger.info(
            "mfa_code_issued",
            user_id=user.id,
            purpose=challenge.purpose.value,
            challenge_id=challenge.id,
            delivered=delivered,
        )
        return IssuedChallenge(challenge=challenge, delivered=delivered)

    async def _deliver(self, user: User, challenge: MFAChallenge) -> bool:
        try:
            return bool(
                await asyncio.to_thread(
                    self.email.send_mfa_code,
                    user.email,
                    challenge.code,
                    purpose=challenge.purpose,
                    expires_minutes=self.ttl_minutes,
                )
            )
        except Exception as exc:
            logger.error(
                "mfa_code_delivery_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    def verify_code(
        self,
        user: User,
        supplied_code: Optional[str],
        *,
        purpose: MFAPurpose,
        challenge_id: Optional[str] = None,
        mfa_enabled: Optional[bool] = None,
    ) -> VerifyOutcome:
        """Check ``supplied_code`` against the user's pending challenge.

        ``user`` must be a fresh read. On acceptance the challenge is consumed
        in one store write together with the optional ``mfa_enabled``
        transition; a concurrent verifier that loses that race sees
        ``NO_CODE_ISSUED``. Wrong guesses are counted; once ``max_attempts`` is
        reached the challenge answers ``EXHAUSTED`` until it is replaced or expires.
        """
        pending = user.pending_challenge
        if pending is None or pending.purpose != MFAPurpose(purpose):
            return VerifyOutcome.NO_CODE_ISSUED
        if challenge_id is not None and pending.id != challenge_id:
            return VerifyOutcome.SUPERSEDED
        if pending.is_expired(self._clock()):
            self.store.clear_mfa_challenge(user.id, pending.id)
            return VerifyOutcome.EXPIRED
        if pending.is_exhausted(self.max_attempts):
            return VerifyOutcome.EXHAUSTED
        candidate = (supplied_code or "").strip()
        if not hmac.compare_digest(pending.code.encode(), candidate.encode()):
            updated = self.store.record_mfa_mismatch(user.id, pending.id)
            if updated is not None and updated.is_exhausted(self.max_attempts):
                logger.warning("mfa_challenge_exhausted", user_id=user.id, challenge_id=pending.id)
            return VerifyOutcome.MISMATCH
        if not self.store.consume_mfa_challenge(user.id, pending.id, mfa_enabled=mfa_enabled):
            return VerifyOutcome.NO_CODE_ISSUED
        return VerifyOutcome.ACCEPTED
