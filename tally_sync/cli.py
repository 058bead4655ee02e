"""
Command line interface for Tally Sync.

Usage:
    python -m tally_sync full
    python -m tally_sync partial [--days N]
    python -m tally_sync vouchers --from-date YYYY-MM-DD --to-date YYYY-MM-DD [--voucher-type Sales]
    python -m tally_sync entity ledgers
    python -m tally_sync relationships
    python -m tally_sync init
    python -m tally_sync test-connection
    python -m tally_sync serve [--host HOST] [--port PORT]
"""
from __future__ import annotations
import argparse
import json
import sys
from datetime import date
from typing import Optional
from loguru import logger

from .client import TallyConnectionError, TallyResponseError
from .config import TallySyncConfig
from .logs import setup_logging
from .models import SyncResult
from .sync import TallySync, run_sync


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tally_sync",
        description="Tally Sync - pull Tally masters and vouchers into the document store",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("full", help="Sync all masters (company, groups, ... stock items)")

    partial = commands.add_parser("partial", help="Masters plus recent vouchers")
    partial.add_argument("--days", type=int, default=None, help="Voucher window in days")

    vouchers = commands.add_parser("vouchers", help="Vouchers in a date range")
    vouchers.add_argument(
        "--from-date", type=date.fromisoformat, default=None, help="Start date (YYYY-MM-DD)"
    )
    vouchers.add_argument(
        "--to-date", type=date.fromisoformat, default=None, help="End date (YYYY-MM-DD)"
    )
    vouchers.add_argument(
        "--voucher-type",
        dest="voucher_types",
        action="append",
        default=None,
        help="Only this voucher type (repeat for several)",
    )

    entity = commands.add_parser("entity", help="Sync a single entity type")
    entity.add_argument("name", choices=sorted(TallySync.ENTITIES))

    commands.add_parser("relationships", help="Rebuild ledger voucher summaries")
    commands.add_parser("init", help="Create the database schema and exit")
    commands.add_parser("test-connection", help="Test Tally connection and exit")

    serve = commands.add_parser("serve", help="Run the API server with the daily scheduler")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    return parser


def _print_result(result: SyncResult):
    print(f"\n=== {result.sync_type} sync: {result.status} ===")
    for entity, count in result.counts.items():
        print(f"  {entity}: {count}")
    if result.relationships is not None:
        print(f"  ledgers linked: {result.relationships}")
    for warning in result.warnings:
        print(f"  warning: {warning}")
    for error in result.errors:
        print(f"  error: {error}")


def _serve(config: TallySyncConfig, host: Optional[str], port: Optional[int]) -> int:
    import uvicorn
    from .api import create_app

    uvicorn.run(
        create_app(config, configure_logging=False),
        host=host or config.api_host,
        port=port or config.api_port,
        log_level=config.log_level.lower(),
    )
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = TallySyncConfig.from_env()
    setup_logging(config, level="DEBUG" if args.verbose else None)

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config: {error}")
        return 1

    try:
        if args.command == "serve":
            return _serve(config, args.host, args.port)

        if args.command in ("test-connection", "init"):
            with TallySync(config) as sync:
                if args.command == "test-connection":
                    result = sync.test_connection()
                    print(f"Connection test: {json.dumps(result, indent=2)}")
                    return 0 if result["status"] == "connected" else 1
                sync.initialize_schema()
                print("Schema initialized successfully")
                return 0

        result = run_sync(
            mode=args.command,
            entity=getattr(args, "name", None),
            from_date=getattr(args, "from_date", None),
            to_date=getattr(args, "to_date", None),
            days=getattr(args, "days", None),
            config=config,
            voucher_types=getattr(args, "voucher_types", None),
        )
        _print_result(result)
        return 0 if result.ok else 1

    except (TallyConnectionError, TallyResponseError) as e:
        logger.error(f"Tally error: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Sync failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
