#!/usr/bin/env python3
"""Seed a SYSTEM_ADMIN principal.

System administrators cannot self-register; this is the only way one is
created. The password is hashed with the same work factor the login path
uses, so the first login does not trigger a rehash.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass1' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass1'

Run standalone it seeds a fresh in-memory directory and prints the result;
applications embedding the core call ``bootstrap_admin`` with their own
directory at startup.
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

from turnstile.api.schemas import validate_email, validate_password_strength  # noqa: E402
from turnstile.service.collaborators import PrincipalDirectory  # noqa: E402
from turnstile.service.hashing import CredentialHasher  # noqa: E402
from turnstile.storage.memory import MemoryStore  # noqa: E402
from turnstile.storage.models import Role  # noqa: E402


def bootstrap_admin(
    directory: PrincipalDirectory,
    email: str,
    password: str,
    *,
    hasher: Optional[CredentialHasher] = None,
    dry_run: bool = False,
) -> dict:
    """Create a verified SYSTEM_ADMIN, or report an existing one.

    Returns:
        dict with principal_id, email, and status ('created', 'already_admin' or 'dry_run')
    """
    email = validate_email(email)
    validate_password_strength(password)

    existing = directory.find_principal_by_identifier(email)
    if existing is not None:
        if existing.role is not Role.SYSTEM_ADMIN:
            raise ValueError(f"{email} is already registered as {existing.role.value}")
        return {"principal_id": existing.id, "email": email, "status": "already_admin"}

    if dry_run:
        return {"principal_id": None, "email": email, "status": "dry_run"}

    hasher = hasher or CredentialHasher()
    principal = directory.create_principal(email, Role.SYSTEM_ADMIN, email_verified=True)
    directory.set_secret_hash(principal.id, hasher.hash_password(password))
    return {"principal_id": principal.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a system administrator for Turnstile",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
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
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    try:
        result = bootstrap_admin(MemoryStore(), args.email, args.password, dry_run=args.dry_run)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSystem administrator created.")
        print(f"  Email: {result['email']}")
        print(f"  Principal ID: {result['principal_id']}")
    elif result["status"] == "dry_run":
        print(f"[DRY RUN] Would create system administrator: {result['email']}")


if __name__ == "__main__":
    main()
