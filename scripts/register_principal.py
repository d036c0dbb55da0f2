#!/usr/bin/env python3
"""Register a principal (user + device) for testing and initial setup.

Usage:
    # Using environment variables:
    VAUTH_USERNAME=alice VAUTH_PASSWORD=hunter22 python scripts/register_principal.py

    # Or with command line args:
    python scripts/register_principal.py --username alice --password hunter22 --email alice@example.com

Environment Variables:
    VAUTH_USERNAME: Username for the principal
    VAUTH_PASSWORD: Password for the principal
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    ENCRYPTION_KEY: Key material for profile field encryption
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


async def register(username: str, password: str, profile: dict, dry_run: bool = False) -> dict:
    """Create a principal unless the username is taken.

    Returns:
        dict with principal_id, username, device_id and status
        ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from vauth.service.runtime import get_runtime

    runtime = get_runtime()

    existing = await runtime.identity.find_by_username(username)
    if existing:
        print(f"Principal {username} already exists (device: {existing.device_id})")
        return {
            "principal_id": existing.id,
            "username": username,
            "device_id": existing.device_id,
            "status": "exists",
        }

    if dry_run:
        print(f"[DRY RUN] Would register principal: {username}")
        return {"principal_id": None, "username": username, "device_id": None, "status": "dry_run"}

    principal = await runtime.identity.register_principal(username, password, profile)
    print(f"Registered principal: {username} (id: {principal.id})")
    return {
        "principal_id": principal.id,
        "username": username,
        "device_id": principal.device_id,
        "status": "created",
    }


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Register a principal for vauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("VAUTH_USERNAME"),
        help="Username (or set VAUTH_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("VAUTH_PASSWORD"),
        help="Password (or set VAUTH_PASSWORD env var)",
    )
    parser.add_argument("--name")
    parser.add_argument("--email")
    parser.add_argument("--mobile")
    parser.add_argument("--operating-country", dest="operating_country")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args(argv)

    if not args.username:
        print("Error: --username or VAUTH_USERNAME environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or VAUTH_PASSWORD environment variable required")
        sys.exit(1)

    profile = {
        field: getattr(args, field)
        for field in ("name", "email", "mobile", "operating_country")
        if getattr(args, field)
    }

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/vauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(register(args.username, args.password, profile, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nPrincipal registered successfully!")
        print(f"  Username: {result['username']}")
        print(f"  Device ID: {result['device_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - principal already exists.")
    return result


if __name__ == "__main__":
    main()
