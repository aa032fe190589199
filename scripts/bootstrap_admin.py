#!/usr/bin/env python3
"""Create or reset an admin console account with a temporary password.

Usage:
    # Create an admin with a generated temporary password:
    python scripts/bootstrap_admin.py --email admin@example.com

    # Reset an existing account, unblock it and drop its two-factor setup:
    python scripts/bootstrap_admin.py --email admin@example.com --unblock --reset-mfa

    # Supply the temporary password yourself (must satisfy the password policy):
    ADMIN_PASSWORD='Temp-Passw0rd!x' python scripts/bootstrap_admin.py --email admin@example.com

The account is always flagged for a forced password change, so the first
login goes straight to the rotation step and no session is issued until the
temporary password has been replaced.

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Temporary password (generated when unset)
    SHARED_FS_ROOT: Directory holding the identity store and secret key
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


def bootstrap_admin(
    email: str,
    *,
    password: Optional[str] = None,
    role: str = "admin",
    unblock: bool = False,
    reset_mfa: bool = False,
    dry_run: bool = False,
    store=None,
) -> dict:
    """Create the account, or reset an existing one, and return what was done.

    ``temporary_password`` is only present in the result when the store was
    actually changed.
    """
    # Imported late so config is not loaded before env vars are set
    from consoleauth.config import get_settings
    from consoleauth.logging import get_logger
    from consoleauth.service.admin_accounts import AdminAccountManager
    from consoleauth.storage.memory import MemoryStore

    logger = get_logger("bootstrap_admin")
    if store is None:
        settings = get_settings()
        store = MemoryStore(
            fs_root=settings.shared_fs_root, mfa_encryption_key=settings.secret_key
        )
    manager = AdminAccountManager(store)
    if password:
        manager.policy.check(password)

    existing = store.get_user_by_email(email)
    if dry_run:
        action = "reset" if existing else "create"
        print(f"[DRY RUN] Would {action} {role} account: {email}")
        return {
            "user_id": existing.id if existing else None,
            "email": email,
            "status": "dry_run",
        }

    if existing:
        user = existing
        status = "reset"
        if user.role != role:
            store.update_user_role(user.id, role)
        password = manager.reset_password(
            user.id, password=password, unblock=unblock, reset_mfa=reset_mfa
        )
    else:
        user, password = manager.create_admin(email, role=role, password=password)
        status = "created"

    logger.info("admin_bootstrapped", user_id=user.id, status=status, role=role)
    return {
        "user_id": user.id,
        "email": user.email,
        "status": status,
        "role": role,
        "temporary_password": password,
    }


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Create or reset an admin console account",
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
        help="Temporary password (or set ADMIN_PASSWORD); generated when omitted",
    )
    parser.add_argument(
        "--role",
        choices=["admin", "super_admin"],
        default="admin",
        help="Role to grant",
    )
    parser.add_argument(
        "--unblock",
        action="store_true",
        help="Re-activate a blocked account",
    )
    parser.add_argument(
        "--reset-mfa",
        action="store_true",
        help="Remove the two-factor secret and backup codes",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1

    from consoleauth.service.errors import WeakPassword
    from consoleauth.storage.errors import ConstraintViolation

    try:
        result = bootstrap_admin(
            args.email,
            password=args.password,
            role=args.role,
            unblock=args.unblock,
            reset_mfa=args.reset_mfa,
            dry_run=args.dry_run,
        )
    except WeakPassword as exc:
        print("Error: password does not meet the policy:")
        for violation in exc.violations:
            print(f"  - {violation}")
        return 1
    except ConstraintViolation as exc:
        print(f"Error: {exc.message}")
        return 1

    if result["status"] == "dry_run":
        return 0
    verb = "created" if result["status"] == "created" else "reset"
    print(f"\nAdmin account {verb}.")
    print(f"  Email: {result['email']}")
    print(f"  User ID: {result['user_id']}")
    print(f"  Role: {result['role']}")
    print(f"  Temporary password: {result['temporary_password']}")
    print("  The password must be changed at first login.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
