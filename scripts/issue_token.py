#!/usr/bin/env python3
"""Provision a gateway account and print a bearer token for it.

Usage:
    # Using environment variables:
    ACCOUNT_ID=acct-123 ACCOUNT_TIER=basic python scripts/issue_token.py

    # Or with command line args:
    python scripts/issue_token.py --account-id acct-123 --tier pro --ttl-minutes 240

Environment Variables:
    ACCOUNT_ID: Account to provision (created on the free tier if missing)
    ACCOUNT_TIER: Tier to set on the account (free, basic or pro)
    JWT_SECRET: Signing secret shared with the running gateway
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

TIERS = ("free", "basic", "pro")


def issue_token(
    account_id: str,
    tier: str | None = None,
    ttl_minutes: int | None = None,
    dry_run: bool = False,
) -> dict:
    """Ensure the account exists at ``tier`` and mint a token for it.

    Returns:
        dict with account_id, tier, status and (unless dry_run) access_token
    """
    # Import here to avoid loading config before env vars are set
    from chatgateway.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account(account_id)

    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} account {account_id} (tier: {tier or 'unchanged'})")
        return {"account_id": account_id, "tier": tier, "status": "dry_run"}

    account = existing or runtime.store.ensure_account(account_id)
    status = "existing" if existing else "created"
    if tier and account.tier != tier:
        account = runtime.store.set_account_tier(account_id, tier)
        status = "updated"

    token = runtime.auth.issue_access_token(account_id, ttl_minutes=ttl_minutes)
    return {
        "account_id": account.id,
        "tier": account.tier,
        "status": status,
        "access_token": token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Provision a chat gateway account and issue a bearer token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--account-id",
        default=os.environ.get("ACCOUNT_ID"),
        help="Account id (or set ACCOUNT_ID env var)",
    )
    parser.add_argument(
        "--tier",
        default=os.environ.get("ACCOUNT_TIER"),
        choices=TIERS,
        help="Tier to assign (or set ACCOUNT_TIER env var)",
    )
    parser.add_argument(
        "--ttl-minutes",
        type=int,
        default=None,
        help="Token lifetime; defaults to ACCESS_TOKEN_TTL_MINUTES",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.account_id:
        print("Error: --account-id or ACCOUNT_ID environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        print("Warning: JWT_SECRET not set; the token is signed with the persisted secret")
        print("         under SHARED_FS_ROOT, which the gateway must share.")

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = issue_token(args.account_id, args.tier, args.ttl_minutes, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "dry_run":
        return
    print(f"\nAccount {result['status']}: {result['account_id']} ({result['tier']})")
    print(f"  Access Token: {result['access_token']}")


if __name__ == "__main__":
    main()
