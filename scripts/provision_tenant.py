#!/usr/bin/env python3
"""Provision a tenant with its system roles and an owner account.

Usage:
    # Using environment variables:
    OWNER_EMAIL=owner@example.com OWNER_PASSWORD=SecurePassword123! \
        python scripts/provision_tenant.py --company "Acme Corp" --slug acme

    # Or with command line args:
    python scripts/provision_tenant.py --company "Acme Corp" --slug acme \
        --email owner@example.com --password SecurePassword123!

Environment Variables:
    OWNER_EMAIL: Email for the owner account
    OWNER_PASSWORD: Password for the owner (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    ENCRYPTION_KEY: Key material for second-factor secrets (required with DATABASE_URL)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def provision(
    company: str, slug: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Create the tenant and owner.

    Returns:
        dict with tenant_id, slug, owner_id and status ('created' or 'dry_run')
    """
    # Import here so settings are read after env defaults are applied
    from tenantguard.service.runtime import Runtime

    runtime = Runtime()
    try:
        existing = runtime.store.get_tenant_by_slug(slug)
        if existing:
            print(f"Tenant {slug} already exists (id: {existing.id}, status: {existing.status})")
            return {"tenant_id": existing.id, "slug": slug, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create tenant {slug} owned by {email}")
            return {"tenant_id": None, "slug": slug, "status": "dry_run"}

        result = await runtime.provisioning.provision_tenant(
            company_name=company,
            slug=slug,
            owner_email=email,
            owner_password=password,
        )
        return {
            "tenant_id": result.tenant.id,
            "slug": slug,
            "owner_id": result.owner.id,
            "status": "created",
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Provision a tenant and its owner account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--company", required=True, help="Company display name")
    parser.add_argument("--slug", required=True, help="URL-safe tenant identifier")
    parser.add_argument(
        "--email",
        default=os.environ.get("OWNER_EMAIL"),
        help="Owner email (or set OWNER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("OWNER_PASSWORD"),
        help="Owner password (or set OWNER_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or OWNER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or OWNER_PASSWORD environment variable required")
        sys.exit(1)

    from tenantguard.service.credentials import check_password_strength
    from tenantguard.service.errors import ServiceError

    try:
        check_password_strength(args.password)
    except ServiceError:
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/tenantguard-provision")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            provision(args.company, args.slug, args.email, args.password, args.dry_run)
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nTenant provisioned successfully!")
        print(f"  Slug: {result['slug']}")
        print(f"  Tenant ID: {result['tenant_id']}")
        print(f"  Owner ID: {result['owner_id']}")
    elif result["status"] == "exists":
        print("\nNo changes made - tenant already exists.")


if __name__ == "__main__":
    main()
