#!/usr/bin/env python3
"""
Folio -- maintenance commands for the authentication service.

Usage:
  python main.py create-admin --email admin@example.com --name "Site Admin"
  python main.py purge-expired

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default: auth/folio_auth.db)
  CACHE_PATH    Path of the expiring key/value store (default: cache/folio_cache.db)
  SECRET_KEY    Required unless DEBUG=true (see core/config.py)
"""

import argparse
import getpass
import sys

from auth.service import ensure_admin
from auth.store import UserStore
from auth.tokens import PASSWORD_MAX_LENGTH, PASSWORD_MIN_LENGTH, is_strong_password
from cache.store import ExpiringStore
from core.config import get_settings


def _create_admin(args: argparse.Namespace) -> int:
    settings = get_settings()
    password = getpass.getpass("  Admin password: ")
    if not is_strong_password(password):
        print(
            f"  [!] Password must be {PASSWORD_MIN_LENGTH}-{PASSWORD_MAX_LENGTH} characters "
            "with upper, lower, digit and special characters."
        )
        return 1
    if password != getpass.getpass("  Repeat password: "):
        print("  [!] Passwords do not match.")
        return 1

    store = UserStore(settings.database_url)
    try:
        if store.email_exists(args.email):
            print(f"  [!] An account for '{args.email}' already exists.")
            return 1
        user_id = ensure_admin(store, args.email, password, args.name)
    finally:
        store.close()
    if user_id is None:
        print("  [!] Admin account was not created.")
        return 1
    print(f"  Admin account created (id={user_id}).")
    return 0


def _purge_expired(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = UserStore(settings.database_url)
    kv = ExpiringStore(settings.cache_path)
    try:
        refresh = store.purge_expired_refresh_tokens()
        resets = store.purge_expired_reset_tokens()
        entries = kv.purge_expired()
    finally:
        kv.close()
        store.close()
    print(f"  Removed {refresh} refresh token(s), {resets} reset token(s), {entries} cache entries.")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="folio",
        description="Maintenance commands for the Folio authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --email admin@example.com
  python main.py purge-expired
  DATABASE_URL=sqlite:////var/lib/folio/auth.db python main.py purge-expired
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-admin", help="Create an admin account (password is prompted)")
    create.add_argument("--email", required=True, help="Login email of the new admin")
    create.add_argument("--name", default="Administrator", help="Display name (default: Administrator)")
    create.set_defaults(func=_create_admin)

    purge = sub.add_parser("purge-expired", help="Delete expired tokens and cache entries")
    purge.set_defaults(func=_purge_expired)

    args = parser.parse_args()
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
