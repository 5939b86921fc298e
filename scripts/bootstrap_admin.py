#!/usr/bin/env python3
"""Create or promote a stored admin account.

The configured ADMIN_EMAIL/ADMIN_PASSWORD pair already grants a short-lived
out-of-store admin login; this script gives an operator a regular account with
the admin role and every permission, so it can enable MFA like anyone else.

Usage:
    python scripts/bootstrap_admin.py --email ops@example.com --password 'Str0ngPassphrase'
    WARDEN_BOOTSTRAP_EMAIL=ops@example.com WARDEN_BOOTSTRAP_PASSWORD=... python scripts/bootstrap_admin.py

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Admin passwords: at least 12 characters from 3+ character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    email: str, password: str, *, name: str = "Administrator", dry_run: bool = False
) -> dict:
    # Import here so the environment defaults below apply before settings load
    from warden.config import PERMISSIONS
    from warden.service.credentials import normalize_email
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == "admin" and set(existing.permissions) == set(PERMISSIONS):
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, "admin", list(PERMISSIONS))
        runtime.audit.success(
            "role_change", user_id=existing.id, user_email=email, details={"role": "admin"}
        )
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        name=name,
        password_hash=runtime.auth.credentials.hash_password(password),
        role="admin",
        permissions=PERMISSIONS,
    )
    runtime.audit.success(
        "signup", user_id=user.id, user_email=email, details={"role": "admin", "source": "bootstrap"}
    )
    return {"user_id": user.id, "email": email, "status": "created"}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Create or promote a Warden admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("WARDEN_BOOTSTRAP_EMAIL"),
        help="Admin email (or set WARDEN_BOOTSTRAP_EMAIL)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("WARDEN_BOOTSTRAP_PASSWORD"),
        help="Admin password (or set WARDEN_BOOTSTRAP_PASSWORD)",
    )
    parser.add_argument("--name", default="Administrator", help="Display name for a new account")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or WARDEN_BOOTSTRAP_EMAIL required")
        return 1
    if not args.password:
        print("Error: --password or WARDEN_BOOTSTRAP_PASSWORD required")
        return 1
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    # Redis is not needed for a one-shot account write
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, name=args.name, dry_run=args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        return 1

    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed - user is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
