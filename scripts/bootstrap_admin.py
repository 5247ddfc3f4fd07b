#!/usr/bin/env python3
"""Create the first admin account, or promote an existing account to admin.

Signup always lands officers in the approval queue, so someone has to be an
admin before anyone can be verified. This script writes that account
directly, without a one-time code.

Usage:
    ADMIN_EMAIL=chief@example.com ADMIN_PASSWORD=... python scripts/bootstrap_admin.py \
        --name "Asha Rao" --rank "senior inspector"

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account
    DATABASE_URL: PostgreSQL connection string (required unless --memory)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(name: str, rank: str, email: str, password: str) -> dict:
    # Import here so settings are read after the environment is prepared
    from casedesk.service.runtime import Runtime

    runtime = Runtime()
    await runtime.startup()
    try:
        account = await runtime.identity.bootstrap_admin(
            name=name, rank=rank, email=email, password=password
        )
    finally:
        await runtime.shutdown()
    return {"user_id": account.id, "email": account.email, "role": account.role}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Case Desk",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", required=True, help="Display name (2-20 characters)")
    parser.add_argument("--rank", default="inspector", help="Rank of the admin officer")
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
        "--memory",
        action="store_true",
        help="Use the in-memory store (smoke test only; nothing is persisted)",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if args.memory:
        os.environ["USE_MEMORY_STORE"] = "true"
    elif not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required (or pass --memory)")
        sys.exit(1)
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.name, args.rank, args.email, args.password)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("Admin account ready.")
    print(f"  Email: {result['email']}")
    print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
