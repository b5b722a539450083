#!/usr/bin/env python3
"""Create a super_admin account, or promote an existing account to super_admin.

Examples:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='S3cure-pass' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'S3cure-pass' --dry-run

Without DATABASE_URL the in-memory store is used, which only makes sense for
a dry run or a local smoke test.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

ADMIN_ROLE = "super_admin"

_SUMMARY = {
    "created": "super_admin account created",
    "promoted": "existing account promoted to super_admin",
    "already_admin": "nothing to do, the account is already super_admin",
    "dry_run": "dry run, no changes written",
}


async def bootstrap_admin(
    email: str,
    password: str,
    first_name: str = "System",
    last_name: str = "Administrator",
    dry_run: bool = False,
) -> dict:
    """Ensure ``email`` holds the super_admin role.

    The returned dict carries ``user_id``, ``email`` and ``status``, one of
    ``created``, ``promoted``, ``already_admin`` or ``dry_run``.
    """
    # settings are read on first use, after main() has adjusted the environment
    from taskdeck.service.runtime import get_runtime

    runtime = get_runtime()
    admin_role = runtime.store.get_role_by_name(ADMIN_ROLE)
    if admin_role is None:
        raise RuntimeError(f"role {ADMIN_ROLE} is missing; apply scripts/schema.sql first")

    user = runtime.store.get_user_by_email(email)
    if user is not None and user.role_id == admin_role.id:
        status = "already_admin"
    elif dry_run:
        status = "dry_run"
    elif user is not None:
        runtime.store.update_user(user.id, role_id=admin_role.id)
        status = "promoted"
    else:
        user = await runtime.auth.register(
            email, password, first_name, last_name, role_id=admin_role.id
        )
        runtime.store.update_user(user.id, is_email_verified=True)
        status = "created"

    return {"user_id": user.id if user else None, "email": email, "status": status}


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create or promote the taskdeck super_admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email", default=os.environ.get("ADMIN_EMAIL"), help="defaults to $ADMIN_EMAIL"
    )
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="defaults to $ADMIN_PASSWORD"
    )
    parser.add_argument("--first-name", default="System")
    parser.add_argument("--last-name", default="Administrator")
    parser.add_argument("--dry-run", action="store_true", help="report the outcome without writing")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _parser()
    args = parser.parse_args(argv)
    if not args.email or not args.password:
        parser.error("both an email and a password are required")
    if not 8 <= len(args.password) <= 128:
        parser.error("the password must be 8 to 128 characters long")

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("DATABASE_URL is not set; using the in-memory store", file=sys.stderr)
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email.strip().lower(),
                args.password,
                args.first_name,
                args.last_name,
                args.dry_run,
            )
        )
    except Exception as exc:
        print(f"bootstrap failed: {exc}", file=sys.stderr)
        return 1

    print(f"{result['email']}: {_SUMMARY[result['status']]} (user id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
