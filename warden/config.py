from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from warden.logging import get_logger

logger = get_logger(__name__)

ROLES: tuple[str, ...] = ("user", "admin", "trainer")
PERMISSIONS: tuple[str, ...] = (
    "read",
    "write",
    "delete",
    "manage_users",
    "view_reports",
)
DEFAULT_SIGNUP_PERMISSIONS: tuple[str, ...] = ("read", "write")
DEFAULT_OAUTH_PERMISSIONS: tuple[str, ...] = ("read",)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional ``.env`` file."""

    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/warden", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI: in-process rate limits, no SMTP required.",
    )
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS", ge=0)
    session_token_ttl_minutes: int = env_field(
        24 * 60,
        "SESSION_TOKEN_TTL_MINUTES",
        description="Lifetime of a session token issued without an MFA step",
        gt=0,
    )
    mfa_session_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "MFA_SESSION_TOKEN_TTL_MINUTES",
        description="Lifetime of a session token issued after a verified MFA code",
        gt=0,
    )
    admin_token_ttl_minutes: int = env_field(15, "ADMIN_TOKEN_TTL_MINUTES", gt=0)

    # MFA and lockout policy
    mfa_code_ttl_minutes: int = env_field(
        5,
        "MFA_CODE_TTL_MINUTES",
        description="Validity window shared by every MFA code and its temporary token",
        gt=0,
    )
    mfa_max_code_attempts: int = env_field(5, "MFA_MAX_CODE_ATTEMPTS", gt=0)
    login_max_failures: int = env_field(5, "LOGIN_MAX_FAILURES", gt=0)
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES", gt=0)
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")

    # Bootstrap administrator
    admin_email: str | None = env_field(None, "ADMIN_EMAIL")
    admin_password: str | None = env_field(None, "ADMIN_PASSWORD")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Warden", "EMAIL_FROM_NAME")
    # Without SMTP, log message bodies (codes included) and treat them as sent
    email_dev_log_codes: bool = env_field(False, "EMAIL_DEV_LOG_CODES")

    # Google OAuth
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    frontend_base_url: str = env_field("http://localhost:3000", "FRONTEND_BASE_URL")

    # HTTP surface
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    cors_allow_origins: str = env_field("http://localhost:3000", "CORS_ALLOW_ORIGINS")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @property
    def bootstrap_admin_configured(self) -> bool:
        return bool(self.admin_email and self.admin_password)

    @field_validator("admin_email")
    @classmethod
    def _normalize_admin_email(cls, value: str | None) -> str | None:
        if not value:
            return None
        return value.strip().lower()

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/warden"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
