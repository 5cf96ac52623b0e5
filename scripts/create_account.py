#!/usr/bin/env python3
"""Create an already-activated account for testing and initial setup.

Usage:
    # Using environment variables:
    ACCOUNT_EMAIL=ops@example.com ACCOUNT_PASSWORD='SecurePass1!' python scripts/create_account.py

    # Or with command line args:
    python scripts/create_account.py --email ops@example.com --password 'SecurePass1!' --name Ops

Environment Variables:
    ACCOUNT_EMAIL: Email for the account
    ACCOUNT_PASSWORD: Password for the account (must meet the password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_account(email: str, name: str, password: str, dry_run: bool = False) -> dict:
    """Create an active account with a local password, skipping email activation.

    Returns:
        dict with account_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from latchkey.service.runtime import Runtime
    from latchkey.storage.models import Account

    runtime = Runtime()

    existing = runtime.store.get_account_by_email(email)
    if existing:
        print(f"Account {existing.email} already exists (id: {existing.id})")
        return {"account_id": existing.id, "email": existing.email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(
        Account.new(
            email,
            name,
            password_hash=runtime.hasher.hash(password),
            active=True,
        )
    )
    session = runtime.sessions.issue(account.id)
    print(f"Created account: {account.email} (id: {account.id})")
    return {
        "account_id": account.id,
        "email": account.email,
        "status": "created",
        "session_token": session.token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Create an active Latchkey account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ACCOUNT_EMAIL"),
        help="Account email (or set ACCOUNT_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ACCOUNT_PASSWORD"),
        help="Account password (or set ACCOUNT_PASSWORD env var)",
    )
    parser.add_argument("--name", default=None, help="Display name (defaults to the email's local part)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ACCOUNT_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ACCOUNT_PASSWORD environment variable required")
        sys.exit(1)

    from latchkey.service.passwords import check_password_policy
    from latchkey.storage.common import normalize_email

    problems = check_password_policy(args.password)
    if problems:
        for problem in problems:
            print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/latchkey-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    email = normalize_email(args.email)
    name = args.name or email.split("@")[0]
    try:
        result = create_account(email, name, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
        print(f"  Session Token: {result['session_token'][:50]}...")
    elif result["status"] == "exists":
        print("\nNo changes needed - account already exists.")


if __name__ == "__main__":
    main()
