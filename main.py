#!/usr/bin/env python3
"""
mailadmin -- Administrative command line for the mail-admin auth core.

Usage:
  python main.py hash-password
  python main.py verify-hash '{SSHA256}...'
  python main.py init-db
  python main.py last-login user@x.com

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the admin database (default sqlite:///mailadmin.db)
  DEBUG         Set to true to run without SECRET_KEY
"""

import argparse
import getpass
import sys
from datetime import datetime, timezone
from typing import Optional

from auth.passwords import HashParseError, hash_password, parse_hash, verify_hash
from auth.store import MailAuthStore


def _read_password(prompt: str, confirm: bool = False) -> Optional[str]:
    """Prompt for a password without echo. Returns None when the two entries differ."""
    password = getpass.getpass(prompt)
    if confirm and getpass.getpass("  Repeat: ") != password:
        return None
    return password


def cmd_hash_password(args: argparse.Namespace) -> int:
    password = _read_password("  Password: ", confirm=True)
    if password is None:
        print("  [!] Passwords do not match.", file=sys.stderr)
        return 1
    print(hash_password(password))
    return 0


def cmd_verify_hash(args: argparse.Namespace) -> int:
    try:
        variant = parse_hash(args.hash)
    except HashParseError as e:
        print(f"  [!] Unrecognised hash: {e}", file=sys.stderr)
        return 2
    password = _read_password("  Password: ")
    if verify_hash(args.hash, password):
        print(f"  match ({type(variant).__name__})")
        return 0
    print("  no match")
    return 1


def cmd_init_db(args: argparse.Namespace) -> int:
    store = MailAuthStore(db_url=args.database_url)
    print(f"  Schema ready at {store.engine.url.render_as_string(hide_password=True)}")
    store.close()
    return 0


def cmd_last_login(args: argparse.Namespace) -> int:
    store = MailAuthStore(db_url=args.database_url)
    try:
        entry = store.last_login(args.username.strip().lower())
    finally:
        store.close()
    if entry is None:
        print(f"  No successful login recorded for {args.username}.")
        return 1
    when = datetime.fromtimestamp(entry.time, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    print(f"  {args.username}: {when} from {entry.remote}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailadmin",
        description="Administrative tasks for the mail-admin auth core.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py hash-password
  python main.py verify-hash '{SHA512-CRYPT}$6$salt$...'
  DATABASE_URL=sqlite:////var/lib/mailadmin.db python main.py init-db
  python main.py last-login admin
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL setting)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("hash-password", help="Prompt for a password and print its {SSHA256} hash")
    p.set_defaults(func=cmd_hash_password)

    p = sub.add_parser("verify-hash", help="Check a password against a stored hash")
    p.add_argument("hash", help="Stored hash string, e.g. {SSHA256}..., {MD5-CRYPT}$2y$...")
    p.set_defaults(func=cmd_verify_hash)

    p = sub.add_parser("init-db", help="Create the database tables if they do not exist")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("last-login", help="Show the previous successful login of a user")
    p.add_argument("username")
    p.set_defaults(func=cmd_last_login)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
