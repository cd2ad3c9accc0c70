#!/usr/bin/env python3
"""
TrustAuth -- administrative commands against the credential store.

Usage:
  python manage.py create-user --username alice --email alice@example.com --role 1
  python manage.py create-user --username ops --email ops@example.com --role 1 --role 2 --full-name "Ops Bot"
  python manage.py unlock alice@example.com
  python manage.py purge-tokens

The password for create-user is read interactively (never from argv), or
from TRUSTAUTH_PASSWORD when stdin is not a terminal.

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the auth database (default: auth/trustauth.db)
  SECRET_KEY     Required unless DEBUG=true; see core/config.py
"""

import argparse
import getpass
import os
import sys
from typing import Optional

from auth.errors import AuthError
from auth.ledger import ResetTokenLedger, TokenLedger
from auth.lockout import LockoutPolicy
from auth.password_reset import PasswordResetCoordinator
from auth.policy import MinimumLengthPolicy
from auth.service import AuthenticationCoordinator
from auth.store import UserStore, create_auth_engine
from auth.tokens import TokenIssuer, utc_now
from core.config import get_settings


def _read_password() -> Optional[str]:
    """Prompt twice on a terminal; fall back to TRUSTAUTH_PASSWORD otherwise."""
    if not sys.stdin.isatty():
        return os.environ.get("TRUSTAUTH_PASSWORD")
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Confirm:  ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def _open_store(db_url: Optional[str]) -> UserStore:
    settings = get_settings()
    engine = create_auth_engine(db_url or settings.database_url)
    return UserStore(engine, LockoutPolicy(settings.lockout_threshold))


def cmd_create_user(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = _open_store(args.db_url)
    try:
        password = _read_password()
        if not password:
            print("  [!] No password supplied.")
            return 1
        coordinator = AuthenticationCoordinator(
            users=store,
            ledger=TokenLedger(store.engine),
            issuer=TokenIssuer.from_settings(settings),
            password_policy=MinimumLengthPolicy(settings.password_min_length),
        )
        try:
            user = coordinator.register(
                username=args.username,
                email=args.email,
                password=password,
                full_name=args.full_name,
                role_ids=args.role,
            )
        except AuthError as exc:
            print(f"  [!] {exc.message}")
            return 1
        print(f"  Created user {user.id} ({user.username} <{user.email}>) with roles {user.role_ids}")
        return 0
    finally:
        store.close()


def cmd_unlock(args: argparse.Namespace) -> int:
    store = _open_store(args.db_url)
    try:
        user = store.get_by_email(args.email)
        if user is None:
            print(f"  [!] No account for '{args.email}'.")
            return 1
        if not user.is_locked and user.failed_login_attempts == 0:
            print(f"  {user.email} is not locked.")
            return 0
        store.unlock_user(user.id)
        print(f"  Unlocked {user.email} (cleared {user.failed_login_attempts} failed attempts)")
        return 0
    finally:
        store.close()


def cmd_purge_tokens(args: argparse.Namespace) -> int:
    store = _open_store(args.db_url)
    try:
        resets = PasswordResetCoordinator(users=store, resets=ResetTokenLedger(store.engine))
        purged = resets.purge_spent()
        flagged = TokenLedger(store.engine).mark_expired(utc_now())
        print(f"  Purged {purged} spent reset tokens; flagged {flagged} bearer tokens as expired")
        return 0
    finally:
        store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="manage.py",
        description="TrustAuth administrative commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db-url", metavar="URL", help="Override DATABASE_URL for this command")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Register an active account")
    create.add_argument("--username", required=True)
    create.add_argument("--email", required=True)
    create.add_argument("--full-name", default=None)
    create.add_argument("--role", type=int, action="append", required=True, metavar="ROLE_ID",
                        help="Role id to assign (repeatable)")
    create.set_defaults(func=cmd_create_user)

    unlock = sub.add_parser("unlock", help="Clear the lock and failure counter on an account")
    unlock.add_argument("email")
    unlock.set_defaults(func=cmd_unlock)

    purge = sub.add_parser("purge-tokens", help="Drop spent reset tokens and flag expired bearer tokens")
    purge.set_defaults(func=cmd_purge_tokens)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
