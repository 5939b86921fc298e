from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from warden.config import PERMISSIONS, ROLES
from warden.logging import get_logger
from warden.storage.models import MFAChallenge, MFAPurpose

logger = get_logger(__name__)


# ============================================================================
# VALUE NORMALIZATION
# ============================================================================

def normalize_role(role: Optional[str]) -> str:
    value = (role or "user").strip().lower()
    if value not in ROLES:
        raise ValueError(f"unknown role: {role}")
    return value


def normalize_permissions(permissions: Optional[Iterable[str]]) -> List[str]:
    """Validate permission tags and drop duplicates while keeping order."""
    seen: List[str] = []
    for perm in permissions or ():
        tag = str(perm).strip().lower()
        if tag not in PERMISSIONS:
            raise ValueError(f"unknown permission: {perm}")
        if tag not in seen:
            seen.append(tag)
    return seen


def parse_datetime(raw: Any) -> Optional[datetime]:
    """Parse an ISO string or pass through a datetime, always returning UTC-aware values."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        value = raw
    else:
        value = datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Extract a column from a dict row or an attribute from an object row."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


# ============================================================================
# PENDING CODE ENCRYPTION
# ============================================================================

def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_code_cipher(key_material: Optional[str], fs_root: Path) -> Fernet:
    """Build the Fernet cipher used to keep pending MFA codes encrypted at rest.

    Key material falls back to ``JWT_SECRET`` and then to the persisted
    ``.jwt_secret`` file; a fresh secret is generated as a last resort.
    """
    material = key_material or os.getenv("MFA_ENCRYPTION_KEY") or os.getenv("JWT_SECRET")
    if not material:
        secret_path = fs_root / ".jwt_secret"
        if secret_path.exists():
            material = secret_path.read_text().strip()
        if not material:
            material = secrets.token_urlsafe(64)
            try:
                fs_root.mkdir(parents=True, exist_ok=True)
                secret_path.write_text(material)
                os.chmod(secret_path, 0o600)
            except OSError as exc:
                raise RuntimeError("Unable to persist MFA encryption key") from exc
    return Fernet(_derive_cipher_key(material))


def challenge_to_dict(challenge: Optional[MFAChallenge], cipher: Fernet) -> Optional[dict]:
    if challenge is None:
        return None
    return {
        "id": challenge.id,
        "code": cipher.encrypt(challenge.code.encode()).decode(),
        "purpose": challenge.purpose.value,
        "issued_at": serialize_datetime(challenge.issued_at),
        "expires_at": serialize_datetime(challenge.expires_at),
        "failed_attempts": challenge.failed_attempts,
    }


def challenge_from_dict(raw: Any, cipher: Fernet) -> Optional[MFAChallenge]:
    """Decode a stored challenge; undecryptable codes are treated as absent."""
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not raw:
        return None
    try:
        code = cipher.decrypt(raw["code"].encode()).decode()
    except InvalidToken:
        logger.warning("mfa_challenge_decrypt_failed", challenge_id=raw.get("id"))
        return None
    return MFAChallenge(
        id=raw["id"],
        code=code,
        purpose=MFAPurpose(raw["purpose"]),
        issued_at=parse_datetime(raw["issued_at"]),
        expires_at=parse_datetime(raw["expires_at"]),
        failed_attempts=int(raw.get("failed_attempts", 0)),
    )
