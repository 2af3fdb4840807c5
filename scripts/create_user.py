#!/usr/bin/env python3
"""Create a password account directly through the service runtime.

Usage:
    python scripts/create_user.py --email ops@example.com --password 'LongPassword123' --verified

Environment Variables:
    USER_EMAIL / USER_PASSWORD: defaults for --email / --password
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
    JWT_SECRET: signing key; required unless TEST_MODE is set
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_user(
    email: str, password: str, *, name: str | None = None, verified: bool = False, dry_run: bool = False
) -> dict:
    # Imported late so the environment is settled before settings load
    from authsvc.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        existing = runtime.store.find_user_by_email(email)
        if existing:
            return {"user_id": existing.id, "email": existing.email, "status": "exists"}
        if dry_run:
            return {"user_id": None, "email": email, "status": "dry_run"}

        session = (await runtime.auth.signup(email, password, name)).unwrap()
        if verified:
            runtime.store.mark_email_verified(session.user.id)
    finally:
        await runtime.close()
    return {
        "user_id": session.user.id,
        "email": session.user.email,
        "status": "created",
        "verified": verified,
    }


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Create an auth service user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("USER_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("USER_PASSWORD"))
    parser.add_argument("--name", default=None, help="Display name (derived from the email when omitted)")
    parser.add_argument("--verified", action="store_true", help="Mark the email as verified")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without making changes")
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email and --password (or USER_EMAIL/USER_PASSWORD) are required")
        sys.exit(1)
    if len(args.password) < 8:
        print("Error: password must be at least 8 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: using the in-memory store (set DATABASE_URL for persistence)")

    from authsvc.service.errors import AuthError

    try:
        result = asyncio.run(
            create_user(
                args.email.strip().lower(),
                args.password,
                name=args.name,
                verified=args.verified,
                dry_run=args.dry_run,
            )
        )
    except AuthError as exc:
        print(f"Error: {exc.code.value}: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"Created user {result['email']} (id: {result['user_id']})")
    elif result["status"] == "exists":
        print(f"User {result['email']} already exists (id: {result['user_id']})")
    else:
        print(f"[DRY RUN] Would create user {result['email']}")


if __name__ == "__main__":
    main()
