import pytest
from pydantic import ValidationError

from warden.config import Settings, get_settings, reset_settings_cache


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_generated_secret_is_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_env_overrides_and_normalization(monkeypatch):
    monkeypatch.setenv("ADMIN_EMAIL", "  Root@Example.COM ")
    monkeypatch.setenv("ADMIN_PASSWORD", "root-password-1")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com,")
    monkeypatch.setenv("MFA_CODE_TTL_MINUTES", "7")
    reset_settings_cache()

    settings = get_settings()
    assert settings.admin_email == "root@example.com"
    assert settings.bootstrap_admin_configured
    assert settings.cors_origins == ["https://a.example.com", "https://b.example.com"]
    assert settings.mfa_code_ttl_minutes == 7
    assert get_settings() is settings


def test_bootstrap_admin_needs_both_values():
    settings = Settings(jwt_secret="x" * 40, admin_email="root@example.com")
    assert not settings.bootstrap_admin_configured
