#!/usr/bin/env python
"""Manage the YouTube API key pool from the command line.

Run from the project root::

    python scripts/manage_keys.py add --name project-a --key AIza... [--description "..."]
    python scripts/manage_keys.py list
    python scripts/manage_keys.py reset-quota
    python scripts/manage_keys.py activate <key-id>
    python scripts/manage_keys.py deactivate <key-id>
    python scripts/manage_keys.py update <key-id> [--name NEW] [--description "..."]
    python scripts/manage_keys.py test (--id <key-id> | --key AIza...)
    python scripts/manage_keys.py bootstrap

``add`` encrypts the key with ``CREDENTIAL_ENCRYPTION_KEY`` before storing
it; ``list`` only ever prints masked keys.  ``reset-quota`` zeroes every
key's daily counters, including keys already reset today.  ``bootstrap``
imports ``YOUTUBE_API_KEY``, ``YOUTUBE_API_KEY_2``, ... from the
environment.  ``test`` checks a key upstream with one 1-unit call.

Exit codes:
    0 — Success (for ``test``: the key is valid).
    1 — Unknown key, duplicate name, database error, or a failed key check.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import uuid

# Ensure the src layout is on sys.path when run as a standalone script.
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_SRC_DIR = os.path.join(os.path.dirname(_SCRIPT_DIR), "src")
if _SRC_DIR not in sys.path:
    sys.path.insert(0, _SRC_DIR)


async def _run(args: argparse.Namespace) -> int:
    """Execute one sub-command.

    Returns:
        Process exit code.
    """
    from stream_sync.core.credential_bootstrap import bootstrap_keys_from_env  # noqa: PLC0415
    from stream_sync.core.credential_pool import CredentialPool  # noqa: PLC0415
    from stream_sync.core.database import dispose_engine, init_db  # noqa: PLC0415
    from stream_sync.core.exceptions import (  # noqa: PLC0415
        CredentialEncryptionError,
        DuplicateKeyError,
        KeyNotFoundError,
    )
    from stream_sync.core.models.api_keys import ApiKeyStatus  # noqa: PLC0415
    from stream_sync.youtube.key_check import check_api_key  # noqa: PLC0415

    await init_db()
    pool = CredentialPool()
    try:
        if args.command == "add":
            key = await pool.create_key(args.name, args.key, args.description)
            print(f"[manage_keys] Added key '{key.name}' ({key.id}): {key.masked_key}")
        elif args.command == "list":
            for key in await pool.list_keys():
                print(
                    f"{key.id}  {key.name:<24} {key.status:<15} "
                    f"{key.quota_used_today:>6} units  errors={key.consecutive_errors}  "
                    f"{key.masked_key}"
                )
        elif args.command == "reset-quota":
            count = await pool.reset_daily_quota(force=True)
            print(f"[manage_keys] Reset daily quota on {count} key(s).")
        elif args.command in ("activate", "deactivate"):
            status = ApiKeyStatus.ACTIVE if args.command == "activate" else ApiKeyStatus.INACTIVE
            key = await pool.set_status(uuid.UUID(args.key_id), status)
            print(f"[manage_keys] Key '{key.name}' is now {key.status}.")
        elif args.command == "update":
            key = await pool.update_key(uuid.UUID(args.key_id), name=args.name, description=args.description)
            print(f"[manage_keys] Updated key '{key.name}' ({key.id}).")
        elif args.command == "test":
            secret = args.key if args.key else await pool.reveal_secret(uuid.UUID(args.id))
            result = await check_api_key(secret)
            print(f"[manage_keys] {result.status.value}: {result.message}")
            if not result.valid:
                return 1
        elif args.command == "bootstrap":
            count = await bootstrap_keys_from_env(pool)
            print(f"[manage_keys] Imported {count} key(s) from the environment.")
    except (DuplicateKeyError, KeyNotFoundError, CredentialEncryptionError) as exc:
        print(f"[manage_keys] ERROR: {exc}", file=sys.stderr)
        return 1
    finally:
        await dispose_engine()
    return 0


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Manage the Stream Sync YouTube API key pool.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    add = commands.add_parser("add", help="Add a key to the pool.")
    add.add_argument("--name", required=True, help="Unique key name.")
    add.add_argument("--key", required=True, help="The YouTube Data API key.")
    add.add_argument("--description", default=None)

    commands.add_parser("list", help="List keys (masked).")
    commands.add_parser("reset-quota", help="Reset every key's daily quota counters.")
    update = commands.add_parser("update", help="Rename a key or edit its description.")
    update.add_argument("key_id", help="Key UUID (see 'list').")
    update.add_argument("--name", default=None)
    update.add_argument("--description", default=None, help="Empty string clears it.")

    check = commands.add_parser("test", help="Check a key against the YouTube API.")
    target = check.add_mutually_exclusive_group(required=True)
    target.add_argument("--id", help="UUID of a pooled key.")
    target.add_argument("--key", help="A key not yet in the pool.")

    commands.add_parser("bootstrap", help="Import YOUTUBE_API_KEY* environment variables.")
    for name in ("activate", "deactivate"):
        sub = commands.add_parser(name, help=f"{name.capitalize()} a key.")
        sub.add_argument("key_id", help="Key UUID (see 'list').")
    return parser.parse_args()


def main() -> None:
    """Entry point for the key management script."""
    args = _parse_args()
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
