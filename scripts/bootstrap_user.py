#!/usr/bin/env python3
"""Create a board member account, e.g. the first tech lead of a fresh install.

Usage:
    # Using environment variables:
    SEED_EMAIL=lead@example.com SEED_PASSWORD=Secret123 SEED_FULL_NAME="Team Lead" \
        python scripts/bootstrap_user.py --role tech_lead

    # Or with command line args:
    python scripts/bootstrap_user.py --email lead@example.com --password Secret123 \
        --full-name "Team Lead" --role tech_lead

Environment Variables:
    SEED_EMAIL: Email for the account
    SEED_PASSWORD: Password for the account (8-72 characters)
    SEED_FULL_NAME: Display name (defaults to the email local part)
    DATABASE_URL: PostgreSQL connection string (required)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from taskboard.storage.models import UserRole  # noqa: E402

_ROLES = [role.value for role in UserRole]


def validate_password(password: str) -> bool:
    return 8 <= len(password) <= 72


async def bootstrap_user(
    email: str,
    password: str,
    full_name: str,
    role: str = UserRole.BACKEND_DEVELOPER.value,
    dry_run: bool = False,
) -> dict:
    """Create the account unless the email is already registered.

    Returns:
        dict with user_id, email, role and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from taskboard.service.runtime import get_runtime
    from taskboard.service.sessions import normalize_email

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(normalize_email(email))
    if existing:
        print(f"User {existing.email} already exists (id: {existing.id}, role: {existing.role})")
        return {
            "user_id": existing.id,
            "email": existing.email,
            "role": existing.role,
            "status": "exists",
        }

    if dry_run:
        print(f"[DRY RUN] Would create {role} account: {email}")
        return {"user_id": None, "email": email, "role": role, "status": "dry_run"}

    password_hash = await asyncio.to_thread(runtime.verifier.hash, password)
    user = await asyncio.to_thread(
        runtime.store.create_user,
        normalize_email(email),
        full_name.strip(),
        password_hash,
        role=role,
    )
    print(f"Created {role} account: {user.email} (id: {user.id})")
    return {
        "user_id": user.id,
        "email": user.email,
        "role": user.role,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Create a taskboard account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SEED_EMAIL"),
        help="Account email (or set SEED_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="Account password (or set SEED_PASSWORD env var)",
    )
    parser.add_argument(
        "--full-name",
        default=os.environ.get("SEED_FULL_NAME"),
        help="Display name (or set SEED_FULL_NAME env var)",
    )
    parser.add_argument(
        "--role",
        default=UserRole.BACKEND_DEVELOPER.value,
        choices=_ROLES,
        help="Board role for the account",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SEED_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or SEED_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be between 8 and 72 characters")
        sys.exit(1)

    full_name = args.full_name or args.email.split("@", 1)[0]

    # An in-memory account would vanish when this process exits
    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL environment variable required")
        sys.exit(1)
    os.environ["USE_MEMORY_STORE"] = "false"

    try:
        result = asyncio.run(
            bootstrap_user(args.email, args.password, full_name, args.role, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Role: {result['role']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - account already exists.")


if __name__ == "__main__":
    main()
