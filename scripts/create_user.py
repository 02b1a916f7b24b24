#!/usr/bin/env python3
"""Create a user with a chosen role, or change the role of an existing one.

Usage:
    python scripts/create_user.py --email analyst@example.com --password 'S3cure-Passw0rd' --role analyst

    USER_EMAIL=admin@example.com USER_PASSWORD=... python scripts/create_user.py --role admin

Environment Variables:
    USER_EMAIL: Email for the user
    USER_PASSWORD: Password for the user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys

ROLES = ("admin", "manager", "analyst", "viewer")


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def create_user(
    email: str,
    password: str,
    role: str,
    *,
    first_name: str | None = None,
    last_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create the user or update the role of an existing one.

    Returns:
        dict with user_id, email, role and status ('created', 'updated',
        'unchanged' or 'dry_run')
    """
    # Imported late so the env defaults set in main() are seen by Settings
    from trafficsafety.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.users.find_by_email(email)

    if existing:
        if existing.role == role:
            return {"user_id": existing.id, "email": existing.email, "role": role, "status": "unchanged"}
        if dry_run:
            return {"user_id": existing.id, "email": existing.email, "role": role, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, role)
        return {"user_id": existing.id, "email": existing.email, "role": role, "status": "updated"}

    if dry_run:
        return {"user_id": None, "email": email, "role": role, "status": "dry_run"}

    user = runtime.users.create_user(
        email, password, role=role, first_name=first_name, last_name=last_name
    )
    return {"user_id": user.id, "email": user.email, "role": user.role, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a user for the traffic safety API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("USER_EMAIL"),
        help="User email (or set USER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("USER_PASSWORD"),
        help="User password (or set USER_PASSWORD env var)",
    )
    parser.add_argument("--role", choices=ROLES, default="viewer")
    parser.add_argument("--first-name", default=None)
    parser.add_argument("--last-name", default=None)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or USER_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = create_user(
            args.email,
            args.password,
            args.role,
            first_name=args.first_name,
            last_name=args.last_name,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"Created {result['role']} user {result['email']} (id: {result['user_id']})")
    elif result["status"] == "updated":
        print(f"Changed role of {result['email']} to {result['role']}")
    elif result["status"] == "unchanged":
        print(f"No changes needed - {result['email']} already has role {result['role']}")
    else:
        print(f"[DRY RUN] Would set {result['email']} to role {result['role']}")


if __name__ == "__main__":
    main()
