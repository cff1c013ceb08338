#!/usr/bin/env python3
"""Inspect and invalidate sessions from the command line.

Usage:
    # List the live sessions of an account
    python scripts/sessions_admin.py list 10001

    # Kick one device offline (the record is kept so clients see "kicked")
    python scripts/sessions_admin.py kickout 10001 --device PC

    # Hard logout every device of an account
    python scripts/sessions_admin.py logout 10001

    # Mark a device as replaced
    python scripts/sessions_admin.py replace 10001 --device Mobile

    # Validate a single token
    python scripts/sessions_admin.py check <token>

Environment Variables:
    REDIS_URL: Redis connection string for the shared session store
    SESSION_KEY_PREFIX: Namespace of the session keys (default: sessionward)
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Inspect and invalidate sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    list_cmd = commands.add_parser("list", help="List live sessions of an account")
    list_cmd.add_argument("account_id")

    for name, help_text in (
        ("logout", "Delete sessions of an account"),
        ("kickout", "Kick sessions of an account offline"),
        ("replace", "Mark sessions of an account as replaced"),
    ):
        cmd = commands.add_parser(name, help=help_text)
        cmd.add_argument("account_id")
        cmd.add_argument(
            "--device", default=None, help="Only this device (default: all devices)"
        )

    check_cmd = commands.add_parser("check", help="Validate a token")
    check_cmd.add_argument("token")
    return parser


def run(args: argparse.Namespace, runtime) -> int:
    """Execute one parsed command; returns the process exit code."""
    sessions = runtime.sessions

    if args.command == "list":
        records = sessions.list_sessions(args.account_id)
        if not records:
            print(f"No sessions for account {args.account_id}")
            return 0
        for record in records:
            expires = record.expires_at.isoformat() if record.expires_at else "never"
            print(
                f"{record.device}\t{record.status.value}\t{record.token}\texpires={expires}"
            )
        return 0

    if args.command == "check":
        result = sessions.check(args.token)
        if result.valid:
            print(f"valid: account={result.account_id} device={result.device}")
            return 0
        print(f"invalid: {result.reason.value} ({result.message})")
        return 1

    operation = getattr(sessions, args.command)
    count = operation(args.account_id, args.device)
    target = f"device {args.device}" if args.device else "all devices"
    print(f"{args.command}: {count} session(s) of account {args.account_id} on {target}")
    return 0


def main(argv: Optional[List[str]] = None, runtime=None) -> int:
    args = _build_parser().parse_args(argv)

    # Import here to avoid loading config before env vars are set
    from sessionward.service.errors import ServiceError
    from sessionward.storage.errors import StorageError

    try:
        if runtime is None:
            from sessionward.service.runtime import get_runtime

            runtime = get_runtime()
        return run(args, runtime)
    except (ServiceError, StorageError, ValueError, RuntimeError) as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
