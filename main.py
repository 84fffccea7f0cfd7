#!/usr/bin/env python3
"""
terminalpub -- maintenance commands for the identity core.

The server itself runs under uvicorn (uvicorn asgi:app). This script covers
the operator chores that do not need a running server.

Usage:
  python main.py fingerprint ~/.ssh/id_ed25519.pub
  cat key.pub | python main.py fingerprint -
  python main.py keygen
  python main.py sweep

Environment variables:
  DATABASE_URL  Durable store used by `sweep` (default: sqlite:///terminalpub.db)
"""

import argparse
import sys
from pathlib import Path

from auth.sshkey import fingerprint
from auth.store import AuthStore, isoformat, utcnow
from core.config import get_settings
from core.errors import MalformedInputError
from federation.keys import generate_key_pair


def _read_key(source: str) -> str:
    """Read a public key line from a file path, or from stdin when source is '-'."""
    if source == "-":
        return sys.stdin.read().strip()
    key_path = Path(source).expanduser().resolve()
    if not key_path.is_file():
        raise MalformedInputError(f"'{source}' is not a readable file")
    return key_path.read_text().strip()


def cmd_fingerprint(args: argparse.Namespace) -> int:
    try:
        print(fingerprint(_read_key(args.key)))
    except MalformedInputError as e:
        print(f"  [!] {e.message}", file=sys.stderr)
        return 1
    return 0


def cmd_keygen(args: argparse.Namespace) -> int:
    private_pem, public_pem = generate_key_pair()
    print(public_pem, end="")
    if not args.public_only:
        print(private_pem, end="")
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    """Delete expired or consumed device codes and expired sessions once."""
    store = AuthStore(get_settings().database_url)
    try:
        now = isoformat(utcnow())
        devices = store.delete_stale_devices(now)
        sessions = store.delete_expired_sessions(now)
    finally:
        store.close()
    print(f"  Removed {devices} device code(s) and {sessions} session(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="terminalpub",
        description="Maintenance commands for the terminalpub identity core.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py fingerprint ~/.ssh/id_ed25519.pub
  python main.py keygen --public-only
  DATABASE_URL=sqlite:///prod.db python main.py sweep
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_fp = sub.add_parser("fingerprint", help="Print the SHA256 fingerprint of an SSH public key")
    p_fp.add_argument("key", metavar="PATH", help="Public key file, or - to read from stdin")
    p_fp.set_defaults(func=cmd_fingerprint)

    p_kg = sub.add_parser("keygen", help="Generate an RSA key pair for an actor")
    p_kg.add_argument("--public-only", action="store_true", help="Print only the public key")
    p_kg.set_defaults(func=cmd_keygen)

    p_sw = sub.add_parser("sweep", help="Delete expired device codes and sessions")
    p_sw.set_defaults(func=cmd_sweep)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 2
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
