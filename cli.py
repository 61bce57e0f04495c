#!/usr/bin/env python3
"""
Spend Tracker auth -- admin command line.

Bootstraps and maintains the accounts of the two-user deployment without
going through the HTTP API.

Usage:
  python cli.py create-user alex@example.com --role admin
  python cli.py create-user sam@example.com --password 'correct horse battery staple'
  python cli.py revoke-sessions alex@example.com
  python cli.py mfa-status alex@example.com

Environment variables:
  AUTH_DB_URL   SQLAlchemy URL of the credential store (default: sqlite:///spendtracker_auth.db)
  SECRET_KEY    Required unless DEBUG=true; used for backup-code hashing
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.mfa import MFAService
from auth.models import ROLES, User
from auth.passwords import hash_password
from auth.store import UserStore
from core.config import Settings, get_settings
from core.errors import AuthServiceError

MIN_PASSWORD_LENGTH = 8


def _read_password(given: Optional[str]) -> Optional[str]:
    """Return the --password value, or prompt twice on a TTY."""
    if given is not None:
        return given
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def cmd_create_user(store: UserStore, args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    if password is None:
        return 1
    if len(password) < MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        return 1
    if len(password) > 128:
        print("  [!] Password must be at most 128 characters.")
        return 1
    try:
        user_id = store.create_user(User(email=args.email, role=args.role, hashed_password=hash_password(password)))
    except IntegrityError:
        print(f"  [!] A user with email '{args.email}' already exists.")
        return 1
    print(f"  Created {args.role} '{args.email.strip().lower()}' (id {user_id}).")
    return 0


def cmd_revoke_sessions(store: UserStore, args: argparse.Namespace) -> int:
    user = store.get_by_email(args.email)
    if user is None:
        print(f"  [!] No user with email '{args.email}'.")
        return 1
    count = store.revoke_user_sessions(user.id, reason="admin_revoked")
    print(f"  Revoked {count} session(s) for '{user.email}'.")
    return 0


def cmd_mfa_status(store: UserStore, settings: Settings, args: argparse.Namespace) -> int:
    user = store.get_by_email(args.email)
    if user is None:
        print(f"  [!] No user with email '{args.email}'.")
        return 1
    status = MFAService(store, settings).status(user)
    state = "enabled" if status.enabled else ("pending confirmation" if status.has_secret else "disabled")
    print(f"  MFA for '{user.email}': {state}")
    if status.has_secret:
        print(f"  Unused backup codes: {status.remaining_backup_codes}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spendtracker-auth",
        description="Administer Spend Tracker accounts and sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python cli.py create-user alex@example.com --role admin
  python cli.py revoke-sessions alex@example.com
  python cli.py mfa-status alex@example.com
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create a user account")
    create.add_argument("email", help="Login email (stored lower-cased)")
    create.add_argument("--role", choices=ROLES, default="user", help="Account role (default: user)")
    create.add_argument("--password", default=None, help="Password; prompted for when omitted")

    revoke = sub.add_parser("revoke-sessions", help="Sign a user out everywhere")
    revoke.add_argument("email")

    mfa = sub.add_parser("mfa-status", help="Show a user's MFA enrollment")
    mfa.add_argument("email")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    store = UserStore(db_url=settings.auth_db_url, timeout_seconds=settings.store_timeout_seconds)
    try:
        if args.command == "create-user":
            return cmd_create_user(store, args)
        if args.command == "revoke-sessions":
            return cmd_revoke_sessions(store, args)
        return cmd_mfa_status(store, settings, args)
    except AuthServiceError as e:
        print(f"  [!] {e.message}")
        return 2
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
