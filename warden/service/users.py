from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol, Sequence

from warden.config import DEFAULT_SIGNUP_PERMISSIONS
from warden.logging import get_logger
from warden.service.audit import AuditRecorder, RequestMeta
from warden.service.auth import BootstrapAdmin, Identity, StoredUser
from warden.service.credentials import CredentialVerifier, normalize_email
from warden.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    ServiceError,
)
from warden.storage.common import normalize_permissions, normalize_role
from warden.storage.errors import ConstraintViolation
from warden.storage.models import User, utcnow

logger = get_logger(__name__)

# Distinguishes "leave the lock alone" from an explicit null that lifts it
UNCHANGED: Any = object()


class UserStore(Protocol):
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

    def list_users(
        self, limit: int = 100, offset: int = 0, *, role: Optional[str] = None
    ) -> List[User]: ...

    def update_user_role(
        self, user_id: str, role: str, permissions: Optional[Sequence[str]] = None
    ) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def update_profile(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]: ...

    def set_lock(self, user_id: str, locked_until: Optional[datetime]) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...


class UserDirectory:
    """Account management outside the sign-in flow.

    Covers the caller's own profile and the administrative create, update and
    delete of other accounts. Passing ``role`` to the lookups scopes them to one
    kind of account, which is how trainer management reuses the same paths: an
    account of another role behaves as if it did not exist.
    """

    def __init__(
        self,
        store: UserStore,
        *,
        audit: AuditRecorder,
        credentials: Optional[CredentialVerifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.credentials = credentials or CredentialVerifier(store)
        self._clock = clock or utcnow

    def _failed(
        self,
        action: str,
        error: ServiceError,
        *,
        meta: Optional[RequestMeta],
        actor: Identity,
        **details: Any,
    ) -> ServiceError:
        self.audit.failure(
            action,
            user_id=actor.id,
            user_email=actor.email,
            details={"reason": error.error_code, **details},
            meta=meta,
        )
        return error

    def _check_grant(
        self,
        action: str,
        actor: Identity,
        role: Optional[str],
        permissions: Optional[Sequence[str]],
        meta: Optional[RequestMeta],
        **details: Any,
    ) -> None:
        """Nobody hands out more than they hold; only admins mint admins."""
        if actor.role == "admin":
            return
        if role == "admin":
            raise self._failed(
                action,
                ForbiddenError("Only administrators can assign the admin role"),
                meta=meta,
                actor=actor,
                **details,
            )
        excess = [p for p in permissions or () if not actor.has_permission(p)]
        if excess:
            raise self._failed(
                action,
                ForbiddenError("Cannot grant permissions you do not hold", detail={"permissions": excess}),
                meta=meta,
                actor=actor,
                **details,
            )

    def _normalized(
        self,
        action: str,
        actor: Identity,
        role: Optional[str],
        permissions: Optional[Sequence[str]],
        meta: Optional[RequestMeta],
    ) -> tuple[Optional[str], Optional[List[str]]]:
        try:
            return (
                normalize_role(role) if role is not None else None,
                normalize_permissions(permissions) if permissions is not None else None,
            )
        except ValueError as exc:
            raise self._failed(action, BadRequestError(str(exc)), meta=meta, actor=actor)

    # reads
    def get_user(self, user_id: str, *, role: Optional[str] = None) -> User:
        user = self.store.get_user(user_id)
        if user is None or (role is not None and user.role != role):
            raise NotFoundError(f"{(role or 'user').capitalize()} not found")
        return user

    def list_users(
        self, *, limit: int = 100, offset: int = 0, role: Optional[str] = None
    ) -> List[User]:
        return self.store.list_users(limit=limit, offset=offset, role=role)

    # own profile
    def update_profile(
        self,
        identity: Identity,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        current_password: Optional[str] = None,
        new_password: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> User:
        """Change the caller's name, email or password.

        Changing the email or the password needs the current password, so a
        stolen session alone cannot take the account over.
        """
        action = "profile_update"
        if not isinstance(identity, StoredUser):
            raise self._failed(
                action,
                BadRequestError("The bootstrap administrator has no stored account"),
                meta=meta,
                actor=identity,
            )
        user = self.store.get_user(identity.id)
        if user is None:
            raise self._failed(action, NotFoundError("User not found"), meta=meta, actor=identity)
        email = normalize_email(email) if email else None
        if email == user.email:
            email = None
        if email is not None or new_password:
            if not current_password or not self.credentials.check(user, current_password):
                raise self._failed(
                    action,
                    InvalidCredentialsError("Current password is incorrect"),
                    meta=meta,
                    actor=identity,
                )
        try:
            updated = self.store.update_profile(user.id, name=name, email=email) or user
        except ConstraintViolation:
            raise self._failed(
                action, ConflictError("Email already registered"), meta=meta, actor=identity
            )
        if new_password:
            updated = (
                self.store.update_password(user.id, self.credentials.hash_password(new_password))
                or updated
            )
        changed = [
            field
            for field, value in (("name", name), ("email", email), ("password", new_password))
            if value
        ]
        self.audit.success(
            action,
            user_id=updated.id,
            user_email=updated.email,
            details={"fields": changed},
            meta=meta,
        )
        logger.info("profile_updated", user_id=updated.id, fields=changed)
        return updated

    # administration
    def create_user(
        self,
        actor: Identity,
        *,
        email: str,
        password: str,
        name: str = "",
        role: str = "user",
        permissions: Optional[Sequence[str]] = None,
        meta: Optional[RequestMeta] = None,
    ) -> User:
        action = "user_create"
        email = normalize_email(email)
        role_value, perms = self._normalized(action, actor, role, permissions, meta)
        if perms is None:
            perms = list(DEFAULT_SIGNUP_PERMISSIONS)
        self._check_grant(action, actor, role_value, perms, meta, email=email)
        try:
            user = self.store.create_user(
                email,
                name=name,
                password_hash=self.credentials.hash_password(password),
                role=role_value or "user",
                permissions=perms,
            )
        except ConstraintViolation:
            raise self._failed(
                action, ConflictError("User already exists"), meta=meta, actor=actor, email=email
            )
        self.audit.success(
            action,
            user_id=actor.id,
            user_email=actor.email,
            details={"target_user_id": user.id, "role": user.role},
            meta=meta,
        )
        logger.info("user_created", user_id=user.id, role=user.role, created_by=actor.id)
        return user

    def update_user(
        self,
        actor: Identity,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        role: Optional[str] = None,
        permissions: Optional[Sequence[str]] = None,
        locked_until: Any = UNCHANGED,
        scope_role: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> User:
        """Change another account's details, role, permissions or lock.

        ``locked_until=None`` lifts a lock and clears the failure counter.
        """
        action = "user_update"
        target = self.store.get_user(user_id)
        if target is None or (scope_role is not None and target.role != scope_role):
            raise self._failed(
                action,
                NotFoundError(f"{(scope_role or 'user').capitalize()} not found"),
                meta=meta,
                actor=actor,
                target_user_id=user_id,
            )
        role_value, perms = self._normalized(action, actor, role, permissions, meta)
        if target.role == "admin" and actor.role != "admin":
            raise self._failed(
                action,
                ForbiddenError("Only administrators can modify administrators"),
                meta=meta,
                actor=actor,
                target_user_id=user_id,
            )
        self._check_grant(action, actor, role_value, perms, meta, target_user_id=user_id)
        updated = target
        if name is not None or email is not None:
            try:
                updated = (
                    self.store.update_profile(
                        user_id, name=name, email=normalize_email(email) if email else None
                    )
                    or updated
                )
            except ConstraintViolation:
                raise self._failed(
                    action,
                    ConflictError("Email already registered"),
                    meta=meta,
                    actor=actor,
                    target_user_id=user_id,
                )
        if role_value is not None or perms is not None:
            updated = (
                self.store.update_user_role(user_id, role_value or target.role, perms) or updated
            )
        if locked_until is not UNCHANGED:
            updated = self.store.set_lock(user_id, locked_until) or updated
        self.audit.success(
            action,
            user_id=actor.id,
            user_email=actor.email,
            details={
                "target_user_id": user_id,
                "role": updated.role,
                "locked": updated.is_locked(self._clock()),
            },
            meta=meta,
        )
        return updated

    def delete_user(
        self,
        actor: Identity,
        user_id: str,
        *,
        scope_role: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> None:
        action = "user_delete"
        if not isinstance(actor, BootstrapAdmin) and actor.id == user_id:
            raise self._failed(
                action,
                BadRequestError("Use account deletion to remove your own account"),
                meta=meta,
                actor=actor,
                target_user_id=user_id,
            )
        target = self.store.get_user(user_id)
        if target is not None and target.role == "admin" and actor.role != "admin":
            raise self._failed(
                action,
                ForbiddenError("Only administrators can delete administrators"),
                meta=meta,
                actor=actor,
                target_user_id=user_id,
            )
        if (
            target is None
            or (scope_role is not None and target.role != scope_role)
            or not self.store.delete_user(user_id)
        ):
            raise self._failed(
                action,
                NotFoundError(f"{(scope_role or 'user').capitalize()} not found"),
                meta=meta,
                actor=actor,
                target_user_id=user_id,
            )
        self.audit.success(
            action,
            user_id=actor.id,
            user_email=actor.email,
            details={"target_user_id": user_id, "role": target.role},
            meta=meta,
        )
        logger.info("user_deleted", user_id=user_id, deleted_by=actor.id)
