#!/usr/bin/env python3
"""Register a church and its first admin user.

Usage:
    # Using environment variables:
    CHURCH_NAME="Grace Chapel" ADMIN_EMAIL=pastor@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_church.py

    # Or with command line args:
    python scripts/bootstrap_church.py --church-name "Grace Chapel" \
        --email pastor@example.com --password SecurePassword123! --phone 0241234567

Environment Variables:
    CHURCH_NAME: Name of the church to register
    ADMIN_EMAIL: Email for the church admin
    ADMIN_PASSWORD: Password for the church admin
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_church(
    church_name: str,
    email: str,
    password: str,
    *,
    admin_name: str = "",
    phone: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create the church and admin unless either already exists.

    Returns:
        dict with church_id, user_id, email and status
    """
    # Import here to avoid loading config before env vars are set
    from pastcare.service.runtime import get_runtime

    runtime = get_runtime()

    if runtime.store.church_name_exists(church_name):
        print(f"Church {church_name!r} is already registered")
        return {"church_id": None, "user_id": None, "email": email, "status": "church_exists"}

    existing_user = runtime.store.get_user_by_email(email.strip().lower())
    if existing_user:
        print(f"User {email} already exists (id: {existing_user.id})")
        return {
            "church_id": existing_user.tenant_id,
            "user_id": existing_user.id,
            "email": email,
            "status": "user_exists",
        }

    if dry_run:
        print(f"[DRY RUN] Would register church {church_name!r} with admin {email}")
        return {"church_id": None, "user_id": None, "email": email, "status": "dry_run"}

    tokens = await runtime.auth.register_church(
        church_name=church_name,
        admin_email=email,
        admin_password=password,
        admin_name=admin_name,
        admin_phone=phone,
    )
    # the CLI never hands out the refresh token
    runtime.tokens.revoke(tokens.refresh_token)
    print(f"Registered church {church_name!r} (id: {tokens.user.tenant_id})")
    return {
        "church_id": tokens.user.tenant_id,
        "user_id": tokens.user.id,
        "email": tokens.user.email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Register a church and its first admin for PastCare",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--church-name",
        default=os.environ.get("CHURCH_NAME"),
        help="Church name (or set CHURCH_NAME env var)",
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
    parser.add_argument("--name", default="", help="Admin display name")
    parser.add_argument("--phone", default=None, help="Admin phone number")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for flag, value in (
        ("--church-name/CHURCH_NAME", args.church_name),
        ("--email/ADMIN_EMAIL", args.email),
        ("--password/ADMIN_PASSWORD", args.password),
    ):
        if not value:
            print(f"Error: {flag} required")
            sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/pastcare-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_church(
                args.church_name,
                args.email,
                args.password,
                admin_name=args.name,
                phone=args.phone,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nChurch registered successfully!")
        print(f"  Church ID: {result['church_id']}")
        print(f"  Admin: {result['email']} ({result['user_id']})")
    elif result["status"] in {"church_exists", "user_exists"}:
        print("\nNo changes made.")


if __name__ == "__main__":
    main()
