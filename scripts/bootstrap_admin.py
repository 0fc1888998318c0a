#!/usr/bin/env python3
"""Bootstrap an administrator account and its wildcard grant.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Sturdy-Lantern-42-Quay!' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Sturdy-Lantern-42-Quay!'

The ADMIN role is created when missing and granted the ``*:*`` permission.
An existing account with the given email is promoted instead of recreated.

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

ADMIN_ROLE = "ADMIN"
WILDCARD_PERMISSION = "manage_all"


def ensure_wildcard_grant(runtime, role_id: str) -> None:
    permissions = runtime.roles.list_permissions()
    wildcard = next(
        (p for p in permissions if p.resource == "*" and p.action == "*"), None
    )
    if wildcard is None:
        wildcard = runtime.roles.create_permission(
            WILDCARD_PERMISSION, "*", "*", "Full access to every resource"
        )
    granted = {p.id for p in runtime.roles.get_role(role_id)["permissions"]}
    if wildcard.id not in granted:
        runtime.roles.assign_permissions(role_id, sorted(granted | {wildcard.id}))


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # imported late so the environment set in main() is what config sees
    from gatekeep.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()
    existing = runtime.store.get_user_by_email(email)

    if dry_run:
        action = "promote" if existing else "create"
        print(f"[DRY RUN] Would {action} admin user: {email}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    role = runtime.roles.ensure_role(ADMIN_ROLE, "Administrators")
    ensure_wildcard_grant(runtime, role.id)

    if existing:
        if existing.role_id == role.id:
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        runtime.store.set_user_role(existing.id, role.id)
        print(f"Promoted existing user {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    result = await runtime.auth.signup(email, password, role=ADMIN_ROLE)
    print(f"Created admin user: {email} (id: {result.user_id})")
    return {
        "user_id": result.user_id,
        "email": email,
        "status": "created",
        "access_token": result.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Gatekeep",
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

    from gatekeep.service import passwords

    problems = passwords.validate(args.password)
    if problems:
        for problem in problems:
            print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/gatekeep-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
