#!/usr/bin/env python3
"""Provision the first ``full_access`` account and optional route permission rules.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Passw0rd' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure-Passw0rd' \\
        --rule 'GET /users admin,user' --rule 'POST /users admin'

An existing account with the same email is granted the role instead of being
recreated. Each ``--rule`` is ``METHOD PATH ROLE[,ROLE...]``; ``*`` as the method
matches every verb.

Environment Variables:
    ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_NAME: Defaults for the matching flags
    DATABASE_URL: PostgreSQL connection string; without it the memory store is used
    MEMORY_STORE_PATH: Snapshot file that keeps memory-store results between runs
    JWT_SECRET: Signing secret; a throwaway one is generated when unset
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path
from typing import List, Tuple

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

SUPERUSER_ROLE = "full_access"
MIN_BOOTSTRAP_PASSWORD = 12

Rule = Tuple[str, str, List[str]]


def password_is_strong(password: str) -> bool:
    """Bootstrap accounts need 12+ characters drawn from at least three classes."""
    if len(password) < MIN_BOOTSTRAP_PASSWORD:
        return False
    classes = (
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(not c.isalnum() for c in password),
    )
    return sum(classes) >= 3


def parse_rule(raw: str) -> Rule:
    parts = raw.split()
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(f"expected 'METHOD PATH ROLES', got {raw!r}")
    method, path, roles = parts
    role_list = [r.strip() for r in roles.split(",") if r.strip()]
    if not path.startswith("/") or not role_list:
        raise argparse.ArgumentTypeError(f"invalid permission rule {raw!r}")
    return method, path, role_list


def _prepare_environment() -> None:
    # Settings are read on first runtime access, so this must run before it
    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        if not os.environ.get("MEMORY_STORE_PATH"):
            print("Note: memory store without MEMORY_STORE_PATH; nothing will persist")


async def provision(
    email: str,
    password: str,
    name: str,
    rules: List[Rule],
    dry_run: bool = False,
) -> dict:
    """Ensure ``email`` holds ``full_access`` and the given rules exist.

    Returns:
        Summary with the account's public id and what was changed
    """
    from knowledgecenter.service.auth import RegisterRequestData
    from knowledgecenter.service.runtime import get_runtime

    runtime = get_runtime()
    store = runtime.store
    summary: dict = {"email": email, "user_id": None, "account": None, "rules_added": 0}

    user = store.get_user_by_email(email)
    if user is None:
        summary["account"] = "create"
        if not dry_run:
            grant = await runtime.auth.register(
                RegisterRequestData(email=email, password=password, name={"en-US": name})
            )
            user = grant.user
    elif SUPERUSER_ROLE in store.get_effective_roles(user.id):
        summary["account"] = "unchanged"
    else:
        summary["account"] = "promote"

    if user is not None:
        summary["user_id"] = user.public_id
        if summary["account"] != "unchanged" and not dry_run:
            store.assign_user_role(user.id, SUPERUSER_ROLE)

    existing = {(r.method, r.path_pattern) for r in store.list_permission_rules()}
    for method, path, roles in rules:
        if (method.upper() if method != "*" else method, path) in existing:
            print(f"Skipping existing rule {method} {path}")
            continue
        if not dry_run:
            store.add_permission_rule(method, path, roles)
        summary["rules_added"] += 1

    summary["dry_run"] = dry_run
    return summary


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Provision a full_access administrator for the Knowledge Center API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Display name stored under the en-US locale",
    )
    parser.add_argument(
        "--rule",
        action="append",
        type=parse_rule,
        default=[],
        help="Permission rule 'METHOD PATH ROLE[,ROLE...]' (repeatable)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without writing anything",
    )
    args = parser.parse_args()

    if not args.email or not args.password:
        parser.error("--email and --password (or ADMIN_EMAIL / ADMIN_PASSWORD) are required")
    if not password_is_strong(args.password):
        parser.error(
            "password needs at least 12 characters from three of: "
            "uppercase, lowercase, digits, symbols"
        )

    _prepare_environment()

    try:
        summary = asyncio.run(
            provision(args.email, args.password, args.name, args.rule, args.dry_run)
        )
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    prefix = "[DRY RUN] " if summary["dry_run"] else ""
    print(f"{prefix}account {summary['account']}: {summary['email']} ({summary['user_id'] or 'new'})")
    print(f"{prefix}permission rules added: {summary['rules_added']}")
    if summary["rules_added"] and not summary["dry_run"]:
        print("Running servers pick up new rules after POST /admin/refresh-permissions")


if __name__ == "__main__":
    main()
