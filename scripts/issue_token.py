#!/usr/bin/env python3
"""Create (or reuse) a user and print an access token for calling the chat API.

Usage:
    # Using environment variables:
    TOKEN_EMAIL=dev@example.com python scripts/issue_token.py

    # Or with command line args:
    python scripts/issue_token.py --email dev@example.com --role admin --ttl-minutes 120

Environment Variables:
    TOKEN_EMAIL: Email of the user to issue a token for
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    JWT_SECRET: Signing secret; must match the running server's secret
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def issue_token(email: str, role: str, ttl_minutes: int) -> dict:
    """Ensure the user exists, open an auth session and mint a token.

    Returns:
        dict with user_id, session_id, status ('created' or 'existing') and access_token
    """
    # Import here to avoid loading config before env vars are set
    from chatgate.service.runtime import get_runtime

    runtime = get_runtime()
    user = runtime.store.get_user_by_email(email)
    status = "existing"
    if user is None:
        user = runtime.store.create_user(email, email.split("@")[0], role=role)
        status = "created"
    elif not user.is_active:
        raise RuntimeError(f"user {email} is deactivated")

    session = runtime.store.create_session(
        user.id, ttl_minutes=ttl_minutes, user_agent="issue_token.py"
    )
    token = runtime.identity.issue_access_token(user, session)
    return {
        "user_id": user.id,
        "session_id": session.id,
        "role": user.role,
        "status": status,
        "access_token": token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Issue a chatgate access token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("TOKEN_EMAIL"),
        help="User email (or set TOKEN_EMAIL env var)",
    )
    parser.add_argument(
        "--role",
        choices=["user", "admin"],
        default="user",
        help="Role for a newly created user",
    )
    parser.add_argument(
        "--ttl-minutes",
        type=int,
        default=60 * 24,
        help="Lifetime of the auth session backing the token",
    )

    args = parser.parse_args()

    if not args.email or "@" not in args.email:
        print("Error: --email or TOKEN_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/chatgate-dev"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store persisted under SHARED_FS_ROOT")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = issue_token(args.email, args.role, args.ttl_minutes)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"User {args.email} ({result['status']}, role={result['role']})")
    print(f"  User ID: {result['user_id']}")
    print(f"  Session ID: {result['session_id']}")
    print(f"  Access Token: {result['access_token']}")


if __name__ == "__main__":
    main()
