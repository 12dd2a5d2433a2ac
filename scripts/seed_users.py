#!/usr/bin/env python3
"""Seed one demo account per role (admin, editor, user).

Usage:
    # Demo passwords, memory store:
    python scripts/seed_users.py

    # Against Postgres with custom passwords:
    DATABASE_URL=postgresql://localhost/recipeshare \
    SEED_ADMIN_PASSWORD='...' python scripts/seed_users.py --editor-password '...'

    # Show what would happen:
    python scripts/seed_users.py --dry-run

Environment Variables:
    SEED_ADMIN_PASSWORD, SEED_EDITOR_PASSWORD, SEED_USER_PASSWORD:
        Passwords for the three accounts (CLI flags take precedence)
    DATABASE_URL: PostgreSQL connection string (memory store if not set)

Existing accounts are left untouched, so the script can be re-run safely.
"""
from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


@dataclass(frozen=True)
class SeedAccount:
    name: str
    email: str
    role: str
    password: str


def default_accounts(
    admin_password: str | None = None,
    editor_password: str | None = None,
    user_password: str | None = None,
) -> list[SeedAccount]:
    return [
        SeedAccount("Admin User", "admin@example.com", "admin", admin_password or "Admin123!"),
        SeedAccount("Editor User", "editor@example.com", "editor", editor_password or "Editor123!"),
        SeedAccount("Regular User", "user@example.com", "user", user_password or "User123!"),
    ]


def seed_users(accounts: list[SeedAccount], runtime=None, dry_run: bool = False) -> list[dict]:
    """Create each account that does not exist yet.

    Returns one result per account with status ``created``, ``exists`` or
    ``dry_run``.
    """
    # Import here to avoid loading config before env vars are set
    from recipeshare.service.runtime import get_runtime
    from recipeshare.storage.models import Role

    runtime = runtime or get_runtime()
    results: list[dict] = []
    for account in accounts:
        existing = runtime.store.get_user_by_email(account.email)
        if existing:
            print(f"User {account.email} already exists (role: {existing.role.value})")
            results.append(
                {"user_id": existing.id, "email": account.email, "status": "exists"}
            )
            continue
        if dry_run:
            print(f"[DRY RUN] Would create {account.email} (role: {account.role})")
            results.append({"user_id": None, "email": account.email, "status": "dry_run"})
            continue
        user = runtime.auth.create_account(
            account.name, account.email, account.password, role=Role(account.role)
        )
        print(f"Created {account.email} (role: {user.role.value}, id: {user.id})")
        results.append({"user_id": user.id, "email": account.email, "status": "created"})
    return results


def main():
    parser = argparse.ArgumentParser(
        description="Seed demo accounts for RecipeShare",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--admin-password",
        default=os.environ.get("SEED_ADMIN_PASSWORD"),
        help="Admin password (or set SEED_ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--editor-password",
        default=os.environ.get("SEED_EDITOR_PASSWORD"),
        help="Editor password (or set SEED_EDITOR_PASSWORD env var)",
    )
    parser.add_argument(
        "--user-password",
        default=os.environ.get("SEED_USER_PASSWORD"),
        help="User password (or set SEED_USER_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    accounts = default_accounts(args.admin_password, args.editor_password, args.user_password)
    for account in accounts:
        if not 8 <= len(account.password) <= 128:
            print(f"Error: password for {account.email} must be 8-128 characters")
            sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        results = seed_users(accounts, dry_run=args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    created = sum(1 for r in results if r["status"] == "created")
    print(f"\nDone: {created} created, {len(results) - created} unchanged.")


if __name__ == "__main__":
    main()
