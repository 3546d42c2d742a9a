#!/usr/bin/env python3
"""Bootstrap an administrator account and issue it an API key.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com \
        --password SecurePassword123! --key-name deploy

Environment Variables:
    ADMIN_USERNAME: Login name for the administrator
    ADMIN_EMAIL: Email for the administrator
    ADMIN_PASSWORD: Primary password (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses the file-backed
        memory store under SHARED_FS_ROOT if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "administrator"


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    username: str,
    email: str,
    password: str,
    *,
    key_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create or promote an administrator.

    Returns:
        dict with user_id, email, status ('created', 'promoted', 'already_admin'
        or 'dry_run') and, when requested, the plaintext api_key
    """
    # Import here so the env defaults set in main() apply to Settings
    from apigate.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.get_user_by_email(email) or runtime.store.get_user_by_login(username)
    if existing and ADMIN_ROLE in existing.roles:
        print(f"User {existing.username} already is an administrator (id: {existing.id})")
        user, status = existing, "already_admin"
    elif dry_run:
        action = "promote existing user" if existing else "create administrator"
        print(f"[DRY RUN] Would {action}: {email}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}
    elif existing:
        user = runtime.store.update_user_roles(existing.id, sorted({*existing.roles, ADMIN_ROLE}))
        print(f"Promoted existing user {existing.username} to administrator (id: {existing.id})")
        status = "promoted"
    else:
        user = runtime.store.create_user(username, email, roles=[ADMIN_ROLE])
        password_hash, algo = runtime.passwords.hash(password)
        runtime.store.save_password(user.id, password_hash, algo)
        print(f"Created administrator: {username} (id: {user.id})")
        status = "created"

    result = {"user_id": user.id, "email": user.email, "status": status}
    if key_name and not dry_run:
        record = runtime.api_keys.generate(user.id, key_name)
        result["api_key"] = record.api_key
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for apigate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Administrator login (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Administrator email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Administrator password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--key-name",
        default=None,
        help="Also generate an API key with this name and print it once",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/apigate-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print(f"Note: Using file-backed memory store under {os.environ['SHARED_FS_ROOT']}")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(
            args.username,
            args.email,
            args.password,
            key_name=args.key_name,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to administrator!")
    elif result["status"] == "already_admin":
        print("\nNo role changes needed.")
    if result.get("api_key"):
        print(f"  API Key (shown once): {result['api_key']}")


if __name__ == "__main__":
    main()
