#!/usr/bin/env python3
"""CLI script to run a reconciliation routine once, outside the API.

Usage:
    uv run python scripts/run_reconciliation.py promote-orphans --dry-run
    uv run python scripts/run_reconciliation.py promote-orphans --start 2026-01-01 --end 2026-01-31 --factor 0.9
    uv run python scripts/run_reconciliation.py detect-duplicates --days-back 14
    uv run python scripts/run_reconciliation.py process-replication
    uv run python scripts/run_reconciliation.py distribute --origin-id <uuid>
    uv run python scripts/run_reconciliation.py import-csv deals.csv --origin-id <uuid> --owner-email sdr@example.com
    uv run python scripts/run_reconciliation.py advance-import-jobs

Connects directly to the database using DATABASE_URL from environment or .env file.
Prints the routine's result as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime

# Ensure project root is on sys.path so we can import src.dealops
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


def _print(payload) -> None:
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json", by_alias=True)
    print(json.dumps(payload, indent=2, default=str))


async def run(args: argparse.Namespace) -> None:
    """Build the ledger services and dispatch the selected routine."""
    from src.dealops.api.middleware.logging import configure_structlog
    from src.dealops.config import get_settings
    from src.dealops.core.database import close_db, get_session, init_db
    from src.dealops.ledger.csv_import import decode_csv
    from src.dealops.ledger.repository import LedgerRepository
    from src.dealops.ledger.services import LedgerServices

    configure_structlog()
    await init_db()
    ledger = LedgerServices(LedgerRepository(session_factory=get_session), get_settings())

    try:
        if args.command == "promote-orphans":
            report = await ledger.orphan_promoter.promote(
                start_date=args.start,
                end_date=args.end,
                dry_run=args.dry_run,
                net_value_factor=args.factor,
            )
            _print(report)
        elif args.command == "detect-duplicates":
            _print(await ledger.duplicate_detector.detect(days_back=args.days_back))
        elif args.command == "process-replication":
            results = await ledger.replication_engine.process_queue()
            _print([r.model_dump(mode="json") for r in results])
        elif args.command == "distribute":
            _print(await ledger.distributor.distribute(origin_id=args.origin_id))
        elif args.command == "import-csv":
            with open(args.file, "rb") as fh:
                text = decode_csv(fh.read())
            stats = await ledger.csv_importer.import_text(text, args.origin_id, args.owner_email)
            _print(stats)
        elif args.command == "advance-import-jobs":
            job = await ledger.import_runner.advance()
            _print(job if job is not None else {"message": "No pending import jobs"})
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a reconciliation routine once")
    sub = parser.add_subparsers(dest="command", required=True)

    promote = sub.add_parser("promote-orphans", help="Promote speculative transactions with no twin")
    promote.add_argument("--start", type=datetime.fromisoformat, default=None, help="Window start (ISO date)")
    promote.add_argument("--end", type=datetime.fromisoformat, default=None, help="Window end (ISO date)")
    promote.add_argument("--factor", type=float, default=None, help="Net value factor override")
    promote.add_argument("--dry-run", action="store_true", help="Report without writing")

    detect = sub.add_parser("detect-duplicates", help="Flag repeated stage changes")
    detect.add_argument("--days-back", type=int, default=None, help="Lookback window in days")

    sub.add_parser("process-replication", help="Drain the replication queue once")

    distribute = sub.add_parser("distribute", help="Hand unowned deals to the configured roster")
    distribute.add_argument("--origin-id", default=None, help="Origin to distribute (default: configured)")

    importer = sub.add_parser("import-csv", help="Import a deals CSV file synchronously")
    importer.add_argument("file", help="Path to the CSV file")
    importer.add_argument("--origin-id", default=None, help="Origin for rows without an origin column")
    importer.add_argument("--owner-email", default=None, help="Owner applied to every row")

    sub.add_parser("advance-import-jobs", help="Process one chunk of the oldest import job")

    args = parser.parse_args()
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
