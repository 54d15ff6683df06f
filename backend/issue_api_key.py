"""
Issue API keys and prune the usage log.

Usage:
    python issue_api_key.py create --user <user_id> --tier pro [--name "ci bot"]
    python issue_api_key.py prune-usage [--days 30]
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from db.account_store import TIERS, USAGE_LOG_RETENTION_DAYS, AccountStore
from settings import load_settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage Memory API keys.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create", help="Issue a new API key.")
    create.add_argument("--user", required=True, help="User id that owns the key.")
    create.add_argument("--tier", choices=TIERS, default="free")
    create.add_argument("--name", default=None, help="Optional label for the key.")

    prune = subparsers.add_parser("prune-usage", help="Delete old usage log rows.")
    prune.add_argument("--days", type=int, default=USAGE_LOG_RETENTION_DAYS)
    return parser


async def _run(args: argparse.Namespace) -> int:
    settings = load_settings()
    store = AccountStore(settings.accounts_database_url)
    try:
        await store.init_db()
        if args.command == "create":
            try:
                key, key_id = await store.create_api_key(args.user, args.tier, args.name)
            except ValueError as exc:
                print(f"error: {exc}", file=sys.stderr)
                return 2
            print(f"key_id={key_id}")
            print(f"api_key={key}")
            print("Store this key now; it cannot be shown again.")
        else:
            deleted = await store.prune_usage_log(retention_days=args.days)
            print(f"deleted_usage_rows={deleted}")
    finally:
        await store.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
