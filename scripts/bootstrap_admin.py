#!/usr/bin/env python3
"""Create or promote a local administrator account.

Usage:
    ADMIN_LOCAL_ID=admin ADMIN_PASSWORD=... ADMIN_EMAIL=admin@example.com \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --local-id admin --password ... --email admin@example.com

Environment Variables:
    ADMIN_LOCAL_ID: Login id for the admin account
    ADMIN_PASSWORD: Password (required when the account does not exist yet)
    ADMIN_EMAIL: Email for a new admin account
    ADMIN_NICKNAME: Nickname for a new admin account (defaults to the login id)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    local_id: str,
    password: Optional[str],
    email: Optional[str],
    nickname: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create a local ADMIN account, or promote an existing local account.

    Returns:
        dict with account_id, local_id and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here so env defaults set by main() apply to settings
    from laos.service.runtime import get_runtime
    from laos.storage.models import Role

    runtime = get_runtime()
    existing = runtime.store.find_by_local_id(local_id)

    if existing:
        if existing.role == Role.ADMIN:
            print(f"Account {local_id} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "local_id": local_id, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote {local_id} to admin")
            return {"account_id": existing.id, "local_id": local_id, "status": "dry_run"}
        runtime.accounts.set_role(existing.id, Role.ADMIN)
        print(f"Promoted {local_id} to admin (id: {existing.id})")
        return {"account_id": existing.id, "local_id": local_id, "status": "promoted"}

    if not password or not email:
        raise ValueError("password and email are required to create a new admin account")
    if dry_run:
        print(f"[DRY RUN] Would create admin account: {local_id}")
        return {"account_id": None, "local_id": local_id, "status": "dry_run"}

    account = runtime.accounts.register(
        local_id=local_id,
        password=password,
        nickname=nickname or local_id,
        email=email,
    )
    runtime.accounts.set_role(account.id, Role.ADMIN)
    print(f"Created admin account: {local_id} (id: {account.id})")
    return {"account_id": account.id, "local_id": local_id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Laos",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--local-id",
        default=os.environ.get("ADMIN_LOCAL_ID"),
        help="Admin login id (or set ADMIN_LOCAL_ID env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--nickname",
        default=os.environ.get("ADMIN_NICKNAME"),
        help="Admin nickname (defaults to the login id)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.local_id:
        print("Error: --local-id or ADMIN_LOCAL_ID environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/laos-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(
            args.local_id, args.password, args.email, args.nickname, args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
