from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx

from warden.config import Settings
from warden.logging import get_logger
from warden.service.errors import ServiceError
from warden.storage.models import utcnow
from warden.storage.redis_cache import RedisCache

logger = get_logger(__name__)

GOOGLE_PROVIDER = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}
STATE_TTL_MINUTES = 10


class OAuthUnavailableError(ServiceError):
    status_code = 503
    error_code = "service_unavailable"


@dataclass(frozen=True)
class OAuthIdentity:
    """A verified identity returned by Google."""

    subject: str
    email: str
    name: str = ""


class GoogleOAuthClient:
    """Authorization-code flow against Google.

    State is single use: it lives in Redis (read with GETDEL) when a cache is
    configured, or in a process-local map for tests and single-process dev.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Optional[RedisCache] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock or utcnow
        self._state_lock = threading.Lock()
        self._states: Dict[str, datetime] = {}
        self._code_registry: Dict[str, dict] = {}

    @property
    def is_configured(self) -> bool:
        return bool(
            self.settings.oauth_google_client_id
            and self.settings.oauth_google_client_secret
            and self.settings.oauth_redirect_uri
        )

    @staticmethod
    def _validate_redirect_uri(redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValueError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValueError("Insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise ValueError("OAuth redirect URI must include host")
        return redirect_uri

    async def start(self) -> dict:
        if not self.is_configured:
            logger.warning("oauth_not_configured", provider="google")
            raise OAuthUnavailableError("Google sign-in is not configured")
        if not self.cache and not (
            self.settings.test_mode or self.settings.allow_redis_fallback_dev
        ):
            raise OAuthUnavailableError("OAuth state cache is required for multi-process safety")

        state = secrets.token_urlsafe(32)
        expires_at = self._clock() + timedelta(minutes=STATE_TTL_MINUTES)
        if self.cache:
            await self.cache.set_oauth_state(state, "google", expires_at)
        else:
            with self._state_lock:
                self._prune_states()
                self._states[state] = expires_at

        params = {
            "client_id": self.settings.oauth_google_client_id,
            "redirect_uri": self._validate_redirect_uri(self.settings.oauth_redirect_uri),
            "response_type": "code",
            "scope": GOOGLE_PROVIDER["scope"],
            "state": state,
            "prompt": "select_account",
        }
        return {
            "authorization_url": f"{GOOGLE_PROVIDER['auth_url']}?{urlencode(params)}",
            "state": state,
        }

    def _prune_states(self) -> None:
        now = self._clock()
        for key in [k for k, exp in self._states.items() if exp <= now]:
            self._states.pop(key, None)

    async def consume_state(self, state: Optional[str]) -> bool:
        """Return True once for a state we issued that has not expired."""
        if not state:
            return False
        stored: Optional[Tuple[str, datetime]] = None
        if self.cache:
            stored = await self.cache.pop_oauth_state(state)
        else:
            with self._state_lock:
                expires_at = self._states.pop(state, None)
            if expires_at is not None:
                stored = ("google", expires_at)
        if stored is None:
            return False
        provider, expires_at = stored
        return provider == "google" and expires_at > self._clock()

    def register_oauth_code(self, code: str, payload: dict) -> None:
        """Record a userinfo payload for ``code`` so tests and offline flows skip Google."""
        self._code_registry[code] = payload

    async def exchange_code(self, code: str) -> Optional[OAuthIdentity]:
        registered = self._code_registry.pop(code, None)
        if registered is not None:
            return self._parse_userinfo(registered)
        if not self.is_configured:
            logger.error("oauth_credentials_missing", provider="google")
            return None
        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    GOOGLE_PROVIDER["token_url"],
                    data={
                        "client_id": self.settings.oauth_google_client_id,
                        "client_secret": self.settings.oauth_google_client_secret,
                        "code": code,
                        "redirect_uri": self.settings.oauth_redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    logger.error("oauth_no_access_token", provider="google")
                    return None
                userinfo_response = await client.get(
                    GOOGLE_PROVIDER["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
                error=str(exc),
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider="google", error=str(exc))
            return None
        if not isinstance(userinfo, dict):
            logger.error("oauth_userinfo_invalid_format", provider="google")
            return None
        return self._parse_userinfo(userinfo)

    @staticmethod
    def _parse_userinfo(userinfo: dict) -> Optional[OAuthIdentity]:
        subject = userinfo.get("id") or userinfo.get("sub")
        email = userinfo.get("email")
        if not subject or not email:
            logger.error("oauth_identity_incomplete", provider="google")
            return None
        if userinfo.get("verified_email") is False or userinfo.get("email_verified") is False:
            logger.warning("oauth_email_unverified", provider="google")
            return None
        name = userinfo.get("name") or email.split("@")[0]
        return OAuthIdentity(subject=str(subject), email=email, name=name)
