#!/usr/bin/env python3
"""Provision a client tenant and its portal account.

Usage:
    # Using environment variables:
    PORTAL_EMAIL=joao@empresa.com PORTAL_PASSWORD='S3nha!Forte' \
        python scripts/provision_account.py --tenant-name "Empresa Ltda" --business-identity 12.345.678/0001-90

    # Attach an account to an existing tenant:
    python scripts/provision_account.py --tenant-id <id> --email maria@empresa.com --password ...

Environment Variables:
    PORTAL_EMAIL: E-mail of the portal account
    PORTAL_PASSWORD: Initial password (must meet complexity requirements)
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


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 8:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def provision_account(
    email: str,
    password: str,
    *,
    tenant_id: Optional[str] = None,
    tenant_name: Optional[str] = None,
    business_identity: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create the tenant (unless ``tenant_id`` is given) and the account.

    Returns:
        dict with tenant_id, account_id, email and status
        ('created', 'already_exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from clientportal.service.auth import hash_password, normalize_email
    from clientportal.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)

    existing = runtime.store.get_account_by_email(email)
    if existing:
        print(f"Account {email} already exists (id: {existing.id})")
        return {
            "tenant_id": existing.tenant_id,
            "account_id": existing.id,
            "email": email,
            "status": "already_exists",
        }

    if tenant_id and runtime.store.get_tenant(tenant_id) is None:
        raise ValueError(f"tenant {tenant_id} not found")
    if not tenant_id and not tenant_name:
        raise ValueError("either tenant_id or tenant_name is required")

    if dry_run:
        target = tenant_id or f"new tenant '{tenant_name}'"
        print(f"[DRY RUN] Would create portal account {email} for {target}")
        return {"tenant_id": tenant_id, "account_id": None, "email": email, "status": "dry_run"}

    if not tenant_id:
        tenant = runtime.store.create_tenant(tenant_name, business_identity)
        tenant_id = tenant.id
        print(f"Created tenant: {tenant_name} (id: {tenant_id})")

    password_hash, algo = hash_password(password)
    account = runtime.store.create_account(email, tenant_id, password_hash, algo)
    print(f"Created portal account: {email} (id: {account.id})")
    return {
        "tenant_id": tenant_id,
        "account_id": account.id,
        "email": email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Provision a client portal account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("PORTAL_EMAIL"),
        help="Account e-mail (or set PORTAL_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("PORTAL_PASSWORD"),
        help="Initial password (or set PORTAL_PASSWORD env var)",
    )
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--tenant-id", help="Attach the account to this existing tenant")
    group.add_argument("--tenant-name", help="Create a new tenant with this name")
    parser.add_argument(
        "--business-identity",
        help="Business registration number stored on a new tenant",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or PORTAL_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or PORTAL_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 8 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = provision_account(
            args.email,
            args.password,
            tenant_id=args.tenant_id,
            tenant_name=args.tenant_name,
            business_identity=args.business_identity,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nPortal account created successfully!")
        print(f"  E-mail: {result['email']}")
        print(f"  Tenant ID: {result['tenant_id']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "already_exists":
        print("\nNo changes needed - account already exists.")


if __name__ == "__main__":
    main()
