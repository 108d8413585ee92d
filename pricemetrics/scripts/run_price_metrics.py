"""
Run the price metrics pipeline from the command line.

Run from the project root:
    python3 -m pricemetrics.scripts.run_price_metrics import --statements q.csv --foreign-shares intl.csv
    python3 -m pricemetrics.scripts.run_price_metrics hydrate
    python3 -m pricemetrics.scripts.run_price_metrics refresh --lookback-days 7 --window-days 30
    python3 -m pricemetrics.scripts.run_price_metrics ticker AAPL --start 2024-01-01 --end 2024-06-30

--prices-from-db rebuilds metrics from prices already stored in
prices_history instead of fetching them from EODHD.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import date, datetime, time
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session

from pricemetrics import config
from pricemetrics.database import Base, SessionLocal, engine
from pricemetrics.orchestrator.price_metrics_orchestrator import (
    compute_ticker,
    hydrate_all_data,
    refresh_price_data,
)
from pricemetrics.scripts.import_fundamentals import import_foreign_shares, import_statements
from pricemetrics.services.sources import DatabasePriceSource

logging.basicConfig(level=config.LOG_LEVEL, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Derive and load daily price metrics.")
    parser.add_argument("--batch-size", type=int, default=config.BATCH_SIZE)
    parser.add_argument("--prices-from-db", action="store_true",
                        help="read prices from prices_history instead of EODHD")
    sub = parser.add_subparsers(dest="command", required=True)

    load = sub.add_parser("import", help="load statement / foreign shares CSV files")
    load.add_argument("--statements", type=Path)
    load.add_argument("--foreign-shares", type=Path)

    hydrate = sub.add_parser("hydrate", help="full history for every known ticker")
    hydrate.add_argument("--years", type=int, default=config.HYDRATION_YEARS)

    refresh = sub.add_parser("refresh", help="recent window for recently updated tickers")
    refresh.add_argument("--lookback-days", type=int, default=config.REFRESH_LOOKBACK_DAYS)
    refresh.add_argument("--window-days", type=int, default=config.REFRESH_WINDOW_DAYS)

    one = sub.add_parser("ticker", help="one ticker over an explicit range")
    one.add_argument("symbol")
    one.add_argument("--start", type=date.fromisoformat, required=True)
    one.add_argument("--end", type=date.fromisoformat, default=date.today())
    return parser


def _import(db: Session, args: argparse.Namespace) -> dict[str, Any]:
    summary: dict[str, Any] = {"mode": "import"}
    if args.statements:
        summary["statements"] = import_statements(db, args.statements)
    if args.foreign_shares:
        summary["foreign_shares"] = import_foreign_shares(db, args.foreign_shares)
    return summary


async def _run(db: Session, args: argparse.Namespace):
    prices_source = DatabasePriceSource(db) if args.prices_from_db else None
    if args.command == "hydrate":
        return await hydrate_all_data(
            db, prices_source=prices_source, batch_size=args.batch_size, years=args.years
        )
    if args.command == "refresh":
        return await refresh_price_data(
            db,
            prices_source=prices_source,
            batch_size=args.batch_size,
            lookback_days=args.lookback_days,
            window_days=args.window_days,
        )
    return await compute_ticker(
        db,
        args.symbol,
        datetime.combine(args.start, time.min),
        datetime.combine(args.end, time.max),
        prices_source=prices_source,
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "import" and not (args.statements or args.foreign_shares):
        logger.error("import needs --statements and/or --foreign-shares")
        return 2

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        if args.command == "import":
            print(json.dumps(_import(db, args), indent=2))
            return 0
        result = asyncio.run(_run(db, args))
    except Exception as exc:
        logger.error("Run failed: %s", exc)
        return 1
    finally:
        db.close()

    print(json.dumps(result.as_dict(), indent=2))
    return 0 if result.status != "failed" else 1


if __name__ == "__main__":
    sys.exit(main())
