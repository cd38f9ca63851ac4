#!/usr/bin/env python3
"""Provision a password-mode account directly in the configured store.

Useful when public signup is turned off (ALLOW_SIGNUP=false).

Usage:
    # Using environment variables:
    BAYMAX_USERNAME=alice BAYMAX_PASSWORD='long-password' python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --username alice --password 'long-password'

Environment Variables:
    AUTH_MODE: must be "password"
    JWT_SECRET: signing secret shared with the running service
    REDIS_URL: store holding the accounts
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


async def create_user(username: str, password: str, dry_run: bool = False) -> dict:
    """Create the account and return a summary with a first session token."""
    # Import here to avoid loading config before env vars are set
    from baymax.api.schemas import CredentialsRequest
    from baymax.config import AuthMode
    from baymax.service.auth import PasswordVerifier
    from baymax.service.runtime import get_runtime

    credentials = CredentialsRequest.from_body({"username": username, "password": password})
    runtime = get_runtime()
    try:
        if runtime.auth_mode != AuthMode.PASSWORD or not isinstance(
            runtime.verifier, PasswordVerifier
        ):
            raise RuntimeError("AUTH_MODE=password is required to provision users")

        if dry_run:
            print(f"[DRY RUN] Would create user: {credentials.username}")
            return {"user_id": None, "username": credentials.username, "status": "dry_run"}

        identity = await runtime.verifier.create_user(credentials.username, credentials.password)
        issued = runtime.verifier.tokens.issue(credentials.username)
        return {
            "user_id": identity.user_id,
            "username": credentials.username,
            "status": "created",
            "token": issued.token,
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Provision a Baymax password-mode user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("BAYMAX_USERNAME"),
        help="Username (or set BAYMAX_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BAYMAX_PASSWORD"),
        help="Password (or set BAYMAX_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate input and configuration without writing",
    )

    args = parser.parse_args()

    if not args.username or not args.password:
        print("Error: --username and --password (or BAYMAX_USERNAME/BAYMAX_PASSWORD) required")
        sys.exit(1)

    os.environ.setdefault("AUTH_MODE", "password")

    try:
        result = asyncio.run(create_user(args.username, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Token: {result['token'][:50]}...")


if __name__ == "__main__":
    main()
