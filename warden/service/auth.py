from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple, Union
from urllib.parse import urlencode

from warden.config import DEFAULT_OAUTH_PERMISSIONS, DEFAULT_SIGNUP_PERMISSIONS, PERMISSIONS, Settings
from warden.logging import get_logger
from warden.service.audit import AuditRecorder, RequestMeta
from warden.service.credentials import CredentialVerifier, normalize_email
from warden.service.errors import (
    AccountLockedError,
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTempTokenError,
    MFAAlreadyEnabledError,
    MFACodeError,
    MFANotEnabledError,
    MFARequiredError,
    NotFoundError,
    ServiceError,
)
from warden.service.lockout import LockoutTracker
from warden.service.mfa import CodeSender, IssuedChallenge, MFAChallengeManager, VerifyOutcome
from warden.service.oauth import GoogleOAuthClient
from warden.service.tokens import ADMIN_TOKEN, MFA_PENDING_TOKEN, SESSION_TOKEN, TokenIssuer
from warden.storage.errors import ConstraintViolation
from warden.storage.models import AuditEntry, MFAChallenge, MFAPurpose, User, utcnow

logger = get_logger(__name__)

BOOTSTRAP_ADMIN_ID = "admin"

_OUTCOME_CODES = {
    VerifyOutcome.NO_CODE_ISSUED: MFACodeError.NO_CODE,
    VerifyOutcome.EXPIRED: MFACodeError.EXPIRED,
    VerifyOutcome.MISMATCH: MFACodeError.INVALID,
    VerifyOutcome.EXHAUSTED: MFACodeError.EXHAUSTED,
}


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        name: str = "",
        password_hash: Optional[str] = None,
        oauth_subject_id: Optional[str] = None,
        role: str = "user",
        permissions: Sequence[str] = ("read",),
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_oauth_subject(self, subject: str) -> Optional[User]: ...

    def link_oauth_subject(self, user_id: str, subject: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def list_audit_entries(self, **filters: Any) -> Tuple[List[AuditEntry], int]: ...


@dataclass(frozen=True)
class BootstrapAdmin:
    """The configured out-of-store administrator."""

    email: str
    id: str = BOOTSTRAP_ADMIN_ID
    name: str = "Administrator"
    role: str = "admin"
    permissions: Tuple[str, ...] = PERMISSIONS

    def has_permission(self, permission: str) -> bool:
        return True


@dataclass(frozen=True)
class StoredUser:
    user: User

    @property
    def id(self) -> str:
        return self.user.id

    @property
    def email(self) -> str:
        return self.user.email

    @property
    def role(self) -> str:
        return self.user.role

    @property
    def permissions(self) -> Tuple[str, ...]:
        return tuple(self.user.permissions)

    def has_permission(self, permission: str) -> bool:
        return self.user.has_permission(permission)


Identity = Union[BootstrapAdmin, StoredUser]


@dataclass
class LoginResult:
    """Outcome of a credential step: a session token, or a pending MFA challenge."""

    token: Optional[str] = None
    user: Optional[User] = None
    temp_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    delivered: Optional[bool] = None
    details: dict = field(default_factory=dict)

    @property
    def mfa_required(self) -> bool:
        return self.temp_token is not None


class AuthService:
    """Coordinates login, MFA, OAuth and account deletion.

    Each public operation is a straight sequence of checks that raise a
    ``ServiceError`` on the first failure. Every terminal outcome, success or
    failure, writes exactly one audit entry before returning or raising.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        email: CodeSender,
        audit: AuditRecorder,
        oauth: Optional[GoogleOAuthClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self._clock = clock or utcnow
        self.credentials = CredentialVerifier(store)
        self.lockout = LockoutTracker(
            store,
            threshold=settings.login_max_failures,
            lock_minutes=settings.lockout_minutes,
            clock=self._clock,
        )
        self.mfa = MFAChallengeManager(
            store,
            email,
            ttl_minutes=settings.mfa_code_ttl_minutes,
            max_attempts=settings.mfa_max_code_attempts,
            clock=self._clock,
        )
        self.tokens = TokenIssuer(settings, clock=self._clock)
        self.oauth = oauth or GoogleOAuthClient(settings, clock=self._clock)

    # helpers
    def _failed(
        self,
        action: str,
        error: ServiceError,
        *,
        meta: Optional[RequestMeta],
        user: Optional[User] = None,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        **details: Any,
    ) -> ServiceError:
        """Audit a failed terminal state and hand back the error for the caller to raise."""
        self.audit.failure(
            action,
            user_id=user.id if user else user_id,
            user_email=user.email if user else email,
            details={"reason": error.error_code, **details},
            meta=meta,
        )
        return error

    def _session_token(self, user: User, *, after_mfa: bool = False) -> str:
        minutes = (
            self.settings.mfa_session_token_ttl_minutes
            if after_mfa
            else self.settings.session_token_ttl_minutes
        )
        return self.tokens.issue_session_token(
            user.id,
            user.role,
            {"email": user.email, "mfa": after_mfa},
            ttl=timedelta(minutes=minutes),
        )

    def _temp_token(self, user: User, challenge: MFAChallenge, *, is_oauth: bool = False) -> str:
        return self.tokens.issue_scoped_token(
            user.id,
            user.role,
            scope=MFA_PENDING_TOKEN,
            expires_at=challenge.expires_at,
            challenge_id=challenge.id,
            extra_claims={"oauth": is_oauth},
        )

    def _stored_user(
        self,
        identity: Identity,
        action: Optional[str] = None,
        *,
        meta: Optional[RequestMeta] = None,
    ) -> User:
        """Load the caller's stored record; with ``action`` a miss is audited as its failure."""
        error: Optional[ServiceError] = None
        if not isinstance(identity, StoredUser):
            error = BadRequestError("The bootstrap administrator has no stored account")
        else:
            user = self.store.get_user(identity.id)
            if user is not None:
                return user
            error = NotFoundError("User not found")
        if action is None:
            raise error
        raise self._failed(action, error, meta=meta, user_id=identity.id, email=identity.email)

    # signup / login
    async def signup(
        self,
        email: str,
        password: str,
        name: str,
        *,
        role: str = "user",
        meta: Optional[RequestMeta] = None,
    ) -> LoginResult:
        email = normalize_email(email)
        if not self.settings.allow_signup:
            raise self._failed("signup", ForbiddenError("Signup is disabled"), meta=meta, email=email)
        if role == "admin":
            raise self._failed(
                "signup",
                ForbiddenError("Cannot create admin users through signup"),
                meta=meta,
                email=email,
            )
        try:
            user = self.store.create_user(
                email,
                name=name,
                password_hash=self.credentials.hash_password(password),
                role=role,
                permissions=DEFAULT_SIGNUP_PERMISSIONS,
            )
        except ConstraintViolation:
            raise self._failed(
                "signup", ConflictError("Email already registered"), meta=meta, email=email
            )
        self.audit.success("signup", user_id=user.id, user_email=user.email, meta=meta)
        logger.info("user_signed_up", user_id=user.id, role=user.role)
        return LoginResult(token=self._session_token(user), user=user)

    async def admin_login(
        self, email: str, password: str, *, meta: Optional[RequestMeta] = None
    ) -> str:
        email = normalize_email(email)
        configured = self.settings.bootstrap_admin_configured
        email_ok = configured and hmac.compare_digest(
            email.encode(), (self.settings.admin_email or "").encode()
        )
        password_ok = configured and hmac.compare_digest(
            password.encode(), (self.settings.admin_password or "").encode()
        )
        if not (email_ok and password_ok):
            raise self._failed("admin_login", InvalidCredentialsError(), meta=meta, email=email)
        token = self.tokens.issue_session_token(
            BOOTSTRAP_ADMIN_ID,
            "admin",
            {"email": email},
            ttl=timedelta(minutes=self.settings.admin_token_ttl_minutes),
            token_type=ADMIN_TOKEN,
        )
        self.audit.success("admin_login", user_id=BOOTSTRAP_ADMIN_ID, user_email=email, meta=meta)
        return token

    async def login(
        self, email: str, password: str, *, meta: Optional[RequestMeta] = None
    ) -> LoginResult:
        """Check credentials, then either issue a session or start an MFA challenge.

        The lock is checked before the password so a locked account never
        reveals whether the supplied password was right.
        """
        user = self.credentials.lookup(email)
        if user is None:
            self.credentials.dummy_verify(password)
            raise self._failed(
                "login", InvalidCredentialsError(), meta=meta, email=normalize_email(email)
            )
        if self.lockout.is_locked(user):
            raise self._failed("login", AccountLockedError(user.locked_until), meta=meta, user=user)
        if not self.credentials.check(user, password):
            updated = self.lockout.record_failure(user) or user
            raise self._failed(
                "login",
                InvalidCredentialsError(),
                meta=meta,
                user=user,
                failures=updated.login_failure_count,
                locked=updated.locked_until is not None,
            )
        user = self.lockout.record_success(user) or user

        if not user.mfa_enabled:
            self.audit.success("login", user_id=user.id, user_email=user.email, meta=meta)
            return LoginResult(token=self._session_token(user), user=user)

        issued = await self.mfa.issue_code(user, MFAPurpose.LOGIN)
        self.audit.success(
            "login",
            user_id=user.id,
            user_email=user.email,
            details={"mfa_required": True, "delivered": issued.delivered},
            meta=meta,
        )
        return LoginResult(
            temp_token=self._temp_token(user, issued.challenge),
            expires_at=issued.expires_at,
            delivered=issued.delivered,
        )

    def _pending_user(self, temp_token: Optional[str], action: str, meta: Optional[RequestMeta]) -> Tuple[User, dict]:
        claims = self.tokens.verify(temp_token, token_type=MFA_PENDING_TOKEN)
        user = self.store.get_user(claims["sub"]) if claims else None
        if claims is None or user is None:
            raise self._failed(action, InvalidTempTokenError(), meta=meta)
        return user, claims

    async def resend_mfa(
        self,
        temp_token: Optional[str],
        *,
        is_oauth: bool = False,
        meta: Optional[RequestMeta] = None,
    ) -> Tuple[str, IssuedChallenge]:
        """Replace the pending login code and mint a temp token bound to the new one.

        Wrong guesses already spent on the replaced code carry over, so resending
        never buys more than ``mfa_max_code_attempts`` guesses per sign-in.
        """
        user, claims = self._pending_user(temp_token, "mfa_resend", meta)
        pending = user.pending_challenge
        # A spent, replaced or foreign challenge means this temp token is dead
        if (
            pending is None
            or pending.id != claims.get("cid")
            or pending.purpose is not MFAPurpose.LOGIN
        ):
            raise self._failed("mfa_resend", InvalidTempTokenError(), meta=meta, user=user)
        if pending.is_exhausted(self.mfa.max_attempts):
            raise self._failed(
                "mfa_resend",
                MFACodeError(MFACodeError.EXHAUSTED, status_code=401),
                meta=meta,
                user=user,
            )
        issued = await self.mfa.issue_code(user, MFAPurpose.LOGIN, carry_attempts=True)
        self.audit.success(
            "mfa_resend",
            user_id=user.id,
            user_email=user.email,
            details={"is_oauth": is_oauth, "delivered": issued.delivered},
            meta=meta,
        )
        return self._temp_token(user, issued.challenge, is_oauth=is_oauth), issued

    async def verify_mfa(
        self,
        temp_token: Optional[str],
        code: Optional[str],
        *,
        is_oauth: bool = False,
        meta: Optional[RequestMeta] = None,
    ) -> LoginResult:
        user, claims = self._pending_user(temp_token, "mfa_verification", meta)
        outcome = self.mfa.verify_code(
            user, code, purpose=MFAPurpose.LOGIN, challenge_id=claims.get("cid")
        )
        if outcome is VerifyOutcome.SUPERSEDED:
            raise self._failed("mfa_verification", InvalidTempTokenError(), meta=meta, user=user)
        if outcome is not VerifyOutcome.ACCEPTED:
            raise self._failed(
                "mfa_verification",
                MFACodeError(_OUTCOME_CODES[outcome], status_code=401),
                meta=meta,
                user=user,
                is_oauth=is_oauth,
            )
        user = self.store.get_user(user.id) or user
        self.audit.success(
            "mfa_verification",
            user_id=user.id,
            user_email=user.email,
            details={"is_oauth": is_oauth},
            meta=meta,
        )
        return LoginResult(token=self._session_token(user, after_mfa=True), user=user)

    # mfa settings
    async def setup_mfa(self, identity: Identity, *, meta: Optional[RequestMeta] = None) -> IssuedChallenge:
        user = self._stored_user(identity, "mfa_setup_request", meta=meta)
        if user.mfa_enabled:
            raise self._failed("mfa_setup_request", MFAAlreadyEnabledError(), meta=meta, user=user)
        issued = await self.mfa.issue_code(user, MFAPurpose.ENABLE)
        self.audit.success(
            "mfa_setup_request",
            user_id=user.id,
            user_email=user.email,
            details={"delivered": issued.delivered},
            meta=meta,
        )
        return issued

    def _confirm(
        self,
        action: str,
        user: User,
        code: Optional[str],
        *,
        purpose: MFAPurpose,
        enable: bool,
        meta: Optional[RequestMeta],
    ) -> User:
        outcome = self.mfa.verify_code(user, code, purpose=purpose, mfa_enabled=enable)
        if outcome is not VerifyOutcome.ACCEPTED:
            raise self._failed(
                action, MFACodeError(_OUTCOME_CODES[outcome], status_code=400), meta=meta, user=user
            )
        self.audit.success(action, user_id=user.id, user_email=user.email, meta=meta)
        logger.info("mfa_state_changed", user_id=user.id, mfa_enabled=enable)
        return self.store.get_user(user.id) or user

    async def enable_mfa(
        self, identity: Identity, code: Optional[str], *, meta: Optional[RequestMeta] = None
    ) -> User:
        user = self._stored_user(identity, "enable_mfa", meta=meta)
        if user.mfa_enabled:
            raise self._failed("enable_mfa", MFAAlreadyEnabledError(), meta=meta, user=user)
        return self._confirm(
            "enable_mfa", user, code, purpose=MFAPurpose.ENABLE, enable=True, meta=meta
        )

    async def request_disable_mfa(
        self, identity: Identity, *, meta: Optional[RequestMeta] = None
    ) -> IssuedChallenge:
        user = self._stored_user(identity, "disable_mfa_request", meta=meta)
        if not user.mfa_enabled:
            raise self._failed("disable_mfa_request", MFANotEnabledError(), meta=meta, user=user)
        issued = await self.mfa.issue_code(user, MFAPurpose.DISABLE)
        self.audit.success(
            "disable_mfa_request",
            user_id=user.id,
            user_email=user.email,
            details={"delivered": issued.delivered},
            meta=meta,
        )
        return issued

    async def disable_mfa(
        self, identity: Identity, code: Optional[str], *, meta: Optional[RequestMeta] = None
    ) -> User:
        user = self._stored_user(identity, "disable_mfa", meta=meta)
        if not user.mfa_enabled:
            raise self._failed("disable_mfa", MFANotEnabledError(), meta=meta, user=user)
        return self._confirm(
            "disable_mfa", user, code, purpose=MFAPurpose.DISABLE, enable=False, meta=meta
        )

    def mfa_status(self, identity: Identity) -> bool:
        return self._stored_user(identity).mfa_enabled

    # account deletion
    async def request_delete_mfa(
        self, identity: Identity, *, meta: Optional[RequestMeta] = None
    ) -> IssuedChallenge:
        user = self._stored_user(identity, "delete_account_mfa_request", meta=meta)
        if not user.mfa_enabled:
            raise self._failed(
                "delete_account_mfa_request", MFANotEnabledError(), meta=meta, user=user
            )
        issued = await self.mfa.issue_code(user, MFAPurpose.DELETE_ACCOUNT)
        self.audit.success(
            "delete_account_mfa_request",
            user_id=user.id,
            user_email=user.email,
            details={"delivered": issued.delivered},
            meta=meta,
        )
        return issued

    async def delete_account(
        self,
        identity: Identity,
        mfa_code: Optional[str] = None,
        *,
        meta: Optional[RequestMeta] = None,
    ) -> None:
        """Delete the caller's account, re-authenticating with a fresh code when MFA is on."""
        user = self._stored_user(identity, "delete_account", meta=meta)
        if user.mfa_enabled:
            if not mfa_code:
                raise self._failed("delete_account", MFARequiredError(), meta=meta, user=user)
            outcome = self.mfa.verify_code(user, mfa_code, purpose=MFAPurpose.DELETE_ACCOUNT)
            if outcome is not VerifyOutcome.ACCEPTED:
                raise self._failed(
                    "delete_account",
                    MFACodeError(_OUTCOME_CODES[outcome], status_code=401),
                    meta=meta,
                    user=user,
                )
        if not self.store.delete_user(user.id):
            raise self._failed("delete_account", NotFoundError("User not found"), meta=meta, user=user)
        self.audit.success("delete_account", user_id=user.id, user_email=user.email, meta=meta)
        logger.info("account_deleted", user_id=user.id)

    # oauth
    async def start_oauth(self) -> dict:
        return await self.oauth.start()

    def _frontend_url(self, path: str, **params: str) -> str:
        base = self.settings.frontend_base_url.rstrip("/")
        return f"{base}{path}?{urlencode(params)}"

    def _oauth_user(self, subject: str, email: str, name: str) -> User:
        user = self.store.get_user_by_oauth_subject(subject)
        if user is not None:
            return user
        existing = self.store.get_user_by_email(email)
        if existing is not None:
            return self.store.link_oauth_subject(existing.id, subject) or existing
        try:
            return self.store.create_user(
                email,
                name=name,
                oauth_subject_id=subject,
                permissions=DEFAULT_OAUTH_PERMISSIONS,
            )
        except ConstraintViolation:
            # Lost a race with a concurrent first login for the same address
            raced = self.store.get_user_by_email(email)
            if raced is None:
                raise
            return raced

    async def complete_oauth(
        self, code: Optional[str], state: Optional[str], *, meta: Optional[RequestMeta] = None
    ) -> str:
        """Finish the Google callback and return the frontend URL to redirect to."""
        failure_url = self._frontend_url("/login", error="oauth_failed")
        if not code or not await self.oauth.consume_state(state):
            self.audit.failure("oauth_login", details={"reason": "invalid_state"}, meta=meta)
            return failure_url
        identity = await self.oauth.exchange_code(code)
        if identity is None:
            self.audit.failure("oauth_login", details={"reason": "exchange_failed"}, meta=meta)
            return failure_url
        user = self._oauth_user(identity.subject, normalize_email(identity.email), identity.name)
        if self.lockout.is_locked(user):
            self._failed("oauth_login", AccountLockedError(user.locked_until), meta=meta, user=user)
            return self._frontend_url("/login", error="account_locked")
        if user.mfa_enabled:
            issued = await self.mfa.issue_code(user, MFAPurpose.LOGIN)
            self.audit.success(
                "oauth_login",
                user_id=user.id,
                user_email=user.email,
                details={"mfa_required": True, "delivered": issued.delivered},
                meta=meta,
            )
            temp = self._temp_token(user, issued.challenge, is_oauth=True)
            return self._frontend_url("/verify-mfa", tempToken=temp, isOAuth="true")
        self.audit.success("oauth_login", user_id=user.id, user_email=user.email, meta=meta)
        return self._frontend_url("/auth-success", token=self._session_token(user))

    # identity
    def resolve_identity(self, token: Optional[str]) -> Identity:
        """Turn a bearer token into the caller's identity.

        Only session and bootstrap-admin tokens qualify; a temp token never
        authorizes anything beyond the MFA endpoints.
        """
        claims = self.tokens.verify(token)
        kind = claims.get("typ") if claims else None
        if kind == ADMIN_TOKEN:
            if claims["sub"] == BOOTSTRAP_ADMIN_ID and self.settings.bootstrap_admin_configured:
                return BootstrapAdmin(email=self.settings.admin_email)
            raise AuthenticationError("Invalid or expired token")
        if kind != SESSION_TOKEN:
            raise AuthenticationError("Invalid or expired token")
        user = self.store.get_user(claims["sub"])
        if user is None:
            raise AuthenticationError("Invalid or expired token")
        if self.lockout.is_locked(user):
            raise AccountLockedError(user.locked_until)
        return StoredUser(user)

    # admin reads
    def list_audit_entries(self, **filters: Any) -> Tuple[List[AuditEntry], int]:
        return self.store.list_audit_entries(**filters)
