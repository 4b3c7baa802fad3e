#!/usr/bin/env python3
"""Bootstrap an admin user for testing and initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must pass the reset-password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    first_name: str = "Admin",
    last_name: str = "User",
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from eoty.service.runtime import get_runtime
    from eoty.storage.models import Role

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == Role.ADMIN.value:
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        runtime.store.update_user_role(existing_user.id, Role.ADMIN.value)
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    chapter = runtime.store.default_chapter()
    password_hash, algo = await runtime.auth.hash_password(password)
    user = runtime.store.create_user(
        email,
        first_name=first_name,
        last_name=last_name,
        role=Role.ADMIN.value,
        chapter_id=chapter.id if chapter else None,
        password_hash=password_hash,
        password_algo=algo,
    )
    token = runtime.sessions.issue_session(user)

    print(f"Created admin user: {user.email} (id: {user.id})")
    return {
        "user_id": user.id,
        "email": user.email,
        "status": "created",
        "access_token": token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the EOTY platform",
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
    parser.add_argument("--last-name", default="User")
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

    from eoty.service.auth import reset_password_error

    policy_error = reset_password_error(args.password)
    if policy_error:
        print(f"Error: {policy_error}")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                dry_run=args.dry_run,
            )
        )

        if result["status"] == "created":
            print("\nAdmin user created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
            if result.get("access_token"):
                print(f"  Access Token: {result['access_token'][:50]}...")
        elif result["status"] == "promoted":
            print("\nExisting user promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - user is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
