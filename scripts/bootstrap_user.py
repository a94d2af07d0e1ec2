#!/usr/bin/env python3
"""Create a pre-verified local user for first login or manual testing.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=ops@example.com BOOTSTRAP_PASSWORD='Str0ng!pass' python scripts/bootstrap_user.py

    # Or with command line args; without a password one is generated and printed:
    python scripts/bootstrap_user.py --email ops@example.com --first-name Ops

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    BOOTSTRAP_PASSWORD: Password for the user (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(
    email: str,
    password: str,
    *,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create the user, or report that it already exists.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authkernel.service.auth import compose_display_name
    from authkernel.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.get_user_by_email(email)
    if existing:
        print(f"User {email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": existing.email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create verified user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        first_name=first_name,
        last_name=last_name,
        display_name=compose_display_name(first_name, last_name),
        email_verified=True,
    )
    runtime.store.save_password(user.id, runtime.hasher.hash(password), runtime.hasher.algo)
    print(f"Created user: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a verified user for AuthKernel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="User password (or set BOOTSTRAP_PASSWORD env var); generated when omitted",
    )
    parser.add_argument("--first-name", default=None)
    parser.add_argument("--last-name", default=None)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    from authkernel.api.schemas import validate_email
    from authkernel.service.passwords import check_strength, generate_random_password

    try:
        email = validate_email(args.email)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    generated = not args.password
    password = args.password or generate_random_password(16)
    strength = check_strength(password)
    if not strength.valid:
        print("Error: password does not meet requirements:")
        for problem in strength.errors:
            print(f"       - {problem}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_user(
            email,
            password,
            first_name=args.first_name,
            last_name=args.last_name,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        if generated:
            print(f"  Password: {password}")


if __name__ == "__main__":
    main()
