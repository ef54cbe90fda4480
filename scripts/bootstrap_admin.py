#!/usr/bin/env python3
"""Bootstrap a local admin account for the buyer portal broker.

Admins are local accounts: they log in with the password set here when the
upstream platform does not recognize them.

Usage:
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD=Secure123Pass python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email ops@example.com --password Secure123Pass \
        --role superadmin --seed-demo

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (8+ chars, upper, lower and digit)
    DATABASE_URL: PostgreSQL connection string (file-backed memory store if unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEMO_PARENT_ID = "demo-holdings"
DEMO_SUBSIDIARIES = (("demo-east", "Demo East"), ("demo-west", "Demo West"))


def seed_demo_companies(store, dry_run: bool = False) -> list[str]:
    """Create a parent company with two subsidiaries unless they already exist."""
    created: list[str] = []
    if store.get_company(DEMO_PARENT_ID) is None:
        if not dry_run:
            store.create_company("Demo Holdings", company_id=DEMO_PARENT_ID)
        created.append(DEMO_PARENT_ID)
    for company_id, name in DEMO_SUBSIDIARIES:
        if store.get_company(company_id) is None:
            if not dry_run:
                store.create_company(name, parent_company_id=DEMO_PARENT_ID, company_id=company_id)
            created.append(company_id)
    return created


def bootstrap_admin(
    email: str,
    password: str,
    *,
    name: Optional[str] = None,
    role: str = "admin",
    company_id: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create or promote a local admin account.

    Returns:
        dict with user_id, email, role and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import late so the environment set up in main() is what config reads
    from buyerportal.service.runtime import get_runtime

    runtime = get_runtime()
    store = runtime.store
    if company_id and store.get_company(company_id) is None and not dry_run:
        raise ValueError(f"company {company_id} does not exist")

    existing = store.get_user_by_email(email)
    if existing:
        if existing.role == role:
            print(f"User {email} already has role {role} (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "role": role, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to {role}")
            return {"user_id": existing.id, "email": email, "role": role, "status": "dry_run"}
        store.update_user(existing.id, role=role, status="active")
        runtime.auth.save_password(existing.id, password)
        print(f"Promoted existing user {email} to {role} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "role": role, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {email}")
        return {"user_id": None, "email": email, "role": role, "status": "dry_run"}

    user = store.create_user(email, name=name, role=role, company_id=company_id)
    runtime.auth.save_password(user.id, password)
    print(f"Created {role} user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "role": role, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the buyer portal broker",
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
    parser.add_argument("--name", default=None, help="Display name")
    parser.add_argument("--role", choices=("admin", "superadmin"), default="admin")
    parser.add_argument("--company-id", default=None, help="Attach the admin to this company")
    parser.add_argument(
        "--seed-demo",
        action="store_true",
        help="Also create a demo parent company with two subsidiaries",
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

    from buyerportal.api.schemas import _validate_email, _validate_password_strength

    try:
        email = _validate_email(args.email)
        _validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/buyerportal-bootstrap")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print(f"Note: Using file-backed memory store under {os.environ['SHARED_FS_ROOT']}")
    # Redis only holds session state, which bootstrapping never touches
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        if args.seed_demo:
            from buyerportal.service.runtime import get_runtime

            seeded = seed_demo_companies(get_runtime().store, dry_run=args.dry_run)
            prefix = "[DRY RUN] Would create" if args.dry_run else "Created"
            print(f"{prefix} demo companies: {', '.join(seeded) or 'none (already present)'}")

        result = bootstrap_admin(
            email,
            args.password,
            name=args.name,
            role=args.role,
            company_id=args.company_id,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"\n{result['role'].capitalize()} user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print(f"\nExisting user promoted to {result['role']}!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
