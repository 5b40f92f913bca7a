#!/usr/bin/env python3
"""Create or promote the first super admin.

Usage:
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD='LongPassword123!' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email ops@example.com --password 'LongPassword123!'

Environment Variables:
    ADMIN_EMAIL: Email for the super admin
    ADMIN_PASSWORD: Password for the super admin (at least 10 characters)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys

MIN_PASSWORD_LENGTH = 10


def bootstrap_admin(
    email: str,
    password: str,
    first_name: str = "Admin",
    surname: str = "User",
    dry_run: bool = False,
) -> dict:
    """Create a super admin, or promote an existing account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here so env defaults are in place before settings load
    from loanease.service.passwords import hash_password
    from loanease.service.roles import SUPER_ADMIN
    from loanease.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == SUPER_ADMIN:
            print(f"User {email} already exists as {SUPER_ADMIN} (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to {SUPER_ADMIN}")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, SUPER_ADMIN)
        print(f"Promoted existing user {email} to {SUPER_ADMIN} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create {SUPER_ADMIN}: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        role=SUPER_ADMIN,
        password_hash=hash_password(password),
        first_name=first_name,
        surname=surname,
        email_verified=True,
    )
    print(f"Created {SUPER_ADMIN}: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a Loanease super admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--surname", default="User")
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
    if len(args.password) < MIN_PASSWORD_LENGTH:
        print(f"Error: Password must be at least {MIN_PASSWORD_LENGTH} characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(
            args.email.strip().lower(),
            args.password,
            args.first_name,
            args.surname,
            args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to super admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already a super admin.")


if __name__ == "__main__":
    main()
