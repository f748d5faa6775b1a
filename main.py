#!/usr/bin/env python3
"""
Warden -- operator commands for the authentication core.

Self-registration only ever creates staff accounts, so the first administrator
has to be created out of band. Everything else happens over the HTTP API.

Usage:
  python main.py create-admin --email admin@example.com --first-name Ada --last-name Admin
  python main.py purge-tokens

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the user store (default: auth/warden_auth.db).
  SECRET_KEY    Required unless DEBUG=true. See core/config.py.
"""

import argparse
import asyncio
import getpass
import sys
from typing import Optional

from auth.errors import AuthFailure
from auth.service import build_auth_service
from auth.store import UserStore
from core.config import get_settings
from kvstore.store import MemoryCounterStore


def _read_password() -> Optional[str]:
    password = getpass.getpass("  Password: ")
    if password != getpass.getpass("  Confirm password: "):
        print("  [!] Passwords do not match.")
        return None
    return password


async def _create_admin(args: argparse.Namespace, password: str) -> int:
    settings = get_settings()
    store = UserStore(args.database_url or settings.database_url)
    try:
        # Counters are not touched by create_admin; an in-process store is enough.
        service = build_auth_service(settings, store, MemoryCounterStore())
        result = await service.create_admin(args.email, password, args.first_name, args.last_name)
    finally:
        store.close()
    if isinstance(result, AuthFailure):
        print(f"  [!] {result.message}")
        return 1
    print(f"  Admin created: {result.email} (id {result.id})")
    return 0


async def _purge_tokens(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = UserStore(args.database_url or settings.database_url)
    try:
        service = build_auth_service(settings, store, MemoryCounterStore())
        removed = await service.purge_expired_tokens()
    finally:
        store.close()
    print(f"  Purged {removed} expired or consumed token(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="warden",
        description="Operator commands for the Warden authentication core.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --email admin@example.com --first-name Ada --last-name Admin
  DATABASE_URL=postgresql://... python main.py purge-tokens
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default="",
        help="Override DATABASE_URL for this command",
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = commands.add_parser("create-admin", help="Create a verified administrator account")
    create.add_argument("--email", required=True, help="Admin email address (used to log in)")
    create.add_argument("--first-name", required=True)
    create.add_argument("--last-name", required=True)

    commands.add_parser("purge-tokens", help="Delete expired and consumed verification/reset tokens")

    args = parser.parse_args(argv)

    if args.command == "create-admin":
        password = _read_password()
        if password is None:
            return 1
        return asyncio.run(_create_admin(args, password))
    if args.command == "purge-tokens":
        return asyncio.run(_purge_tokens(args))

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
