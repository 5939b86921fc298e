from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.storage.models import utcnow

logger = get_logger(__name__)

SESSION_TOKEN = "session"
MFA_PENDING_TOKEN = "mfa_pending"
ADMIN_TOKEN = "admin"

_RESERVED_CLAIMS = {"iss", "aud", "sub", "role", "typ", "exp", "iat", "jti"}


class TokenIssuer:
    """Mints and checks HS256 bearer tokens.

    Tokens are stateless: nothing is recorded server side, so verification is
    pure computation and logout is a client-side discard. ``verify`` returns
    ``None`` for every kind of rejection so callers cannot leak which check
    failed.
    """

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.settings = settings
        self._clock = clock or utcnow

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        # exp is exclusive: a token is dead at its expiry instant
        if exp_ts <= self._clock().timestamp() - self.settings.jwt_leeway_seconds:
            return None
        return payload

    def _claims(
        self,
        user_id: str,
        role: str,
        token_type: str,
        expires_at: datetime,
        extra_claims: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        payload = {
            k: v for k, v in (extra_claims or {}).items() if k not in _RESERVED_CLAIMS
        }
        payload.update(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": user_id,
                "role": role,
                "typ": token_type,
                "jti": str(uuid.uuid4()),
                "iat": int(self._clock().timestamp()),
                "exp": expires_at.timestamp(),
            }
        )
        return payload

    def issue_session_token(
        self,
        user_id: str,
        role: str,
        extra_claims: Optional[dict[str, Any]] = None,
        *,
        ttl: timedelta,
        token_type: str = SESSION_TOKEN,
    ) -> str:
        expires_at = self._clock() + ttl
        return self._encode_jwt(self._claims(user_id, role, token_type, expires_at, extra_claims))

    def issue_scoped_token(
        self,
        user_id: str,
        role: str,
        *,
        scope: str = MFA_PENDING_TOKEN,
        expires_at: datetime,
        challenge_id: str,
        extra_claims: Optional[dict[str, Any]] = None,
    ) -> str:
        """Token that only authorizes the MFA step for one pending challenge.

        ``expires_at`` is the challenge expiry itself so the token can never
        outlive its code; ``cid`` ties it to that challenge so a resend
        supersedes it.
        """
        claims = dict(extra_claims or {})
        claims["cid"] = challenge_id
        return self._encode_jwt(self._claims(user_id, role, scope, expires_at, claims))

    def verify(self, token: Optional[str], *, token_type: Optional[str] = None) -> Optional[dict[str, Any]]:
        if not token:
            return None
        payload = self._decode_jwt(token)
        if payload is None or not payload.get("sub"):
            return None
        if token_type is not None and payload.get("typ") != token_type:
            return None
        return payload
