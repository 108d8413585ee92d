"""
Batch orchestrator for price metrics derivation and load.

Modes (same per-batch pipeline, different ticker selection and date range):
  hydrate   all tickers with statements or foreign shares data,
            HYDRATION_YEARS of history
  refresh   tickers whose source records changed in the last
            REFRESH_LOOKBACK_DAYS, over the last REFRESH_WINDOW_DAYS

Per batch of BATCH_SIZE tickers:
  1. derive every ticker concurrently (asyncio.gather); a failing ticker is
     logged and excluded, siblings are not cancelled
  2. once all tasks are done, concatenate rows
  3. save: operational upsert, then staging/merge into the analytical table
  4. only then start the next batch

Failure behavior:
  - Per-ticker failures are recorded on the result, never raised
  - A save failure aborts the run: logged, status="failed", re-raised.
    Batches merged before it stay merged (merges are idempotent, so a
    re-run is safe)
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, time, timedelta
from typing import Any

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from pricemetrics import config, database
from pricemetrics.repositories import financials_repo, metrics_repo
from pricemetrics.repositories.staging_merge import StagingMergeTable, price_metrics_table
from pricemetrics.schemas import DerivedMetricRow, utcnow
from pricemetrics.services.series_builder import build_metric_series
from pricemetrics.services.sources import EodhdPriceSource, FundamentalsSource

logger = logging.getLogger(__name__)


class PriceMetricsRunResult:
    def __init__(self, mode: str):
        self.mode = mode
        self.status: str = "ok"          # "ok", "partial" or "failed"
        self.tickers_total: int = 0
        self.batches_total: int = 0
        self.batches_loaded: int = 0
        self.rows_loaded: int = 0
        self.failed_tickers: dict[str, str] = {}
        self.errors: list[str] = []

    def ticker_failed(self, ticker: str, error: str) -> None:
        self.failed_tickers[ticker] = error
        if self.status == "ok":
            self.status = "partial"

    def batch_loaded(self, rows: int) -> None:
        self.batches_loaded += 1
        self.rows_loaded += rows

    def as_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "status": self.status,
            "tickers_total": self.tickers_total,
            "batches_total": self.batches_total,
            "batches_loaded": self.batches_loaded,
            "rows_loaded": self.rows_loaded,
            "failed_tickers": dict(self.failed_tickers),
            "errors": list(self.errors),
        }


def chunked(items: list[str], size: int) -> list[list[str]]:
    if size < 1:
        raise ValueError(f"batch size must be >= 1, got {size}")
    return [items[i: i + size] for i in range(0, len(items), size)]


def _years_ago(now: datetime, years: int) -> datetime:
    try:
        return now.replace(year=now.year - years)
    except ValueError:
        # Feb 29 -> Feb 28
        return now.replace(year=now.year - years, day=28)


def _start_of_day(d: datetime) -> datetime:
    return datetime.combine(d.date(), time.min)


# ---------------------------------------------------------------------------
# Save step
# ---------------------------------------------------------------------------

def save_metrics(
    rows: list[DerivedMetricRow],
    *,
    db: Session,
    merge_table: StagingMergeTable,
) -> int:
    """Mirror rows into the operational store, then stage+merge into the analytical table."""
    if not rows:
        return 0
    metrics_repo.upsert_price_metrics(db, rows)
    logger.info("[PriceMetrics] saved %d price metrics to operational store", len(rows))
    merged = merge_table.load(r.to_record() for r in rows)
    logger.info("[PriceMetrics] saved %d price metrics to analytical store", merged)
    return merged


# ---------------------------------------------------------------------------
# Batch loop
# ---------------------------------------------------------------------------

async def _derive_one(
    ticker: str,
    is_international: bool,
    start: datetime,
    end: datetime,
    prices_source,
    fundamentals_source,
    computed_at: datetime,
    result: PriceMetricsRunResult,
) -> list[DerivedMetricRow]:
    try:
        return await build_metric_series(
            ticker,
            is_international,
            start,
            end,
            prices_source=prices_source,
            fundamentals_source=fundamentals_source,
            computed_at=computed_at,
        )
    except Exception as exc:
        logger.error("[PriceMetrics] %s: derivation failed: %s", ticker, exc)
        result.ticker_failed(ticker, str(exc))
        return []


async def run_price_metrics(
    tickers: set[str] | list[str],
    international: set[str],
    start: datetime,
    end: datetime,
    *,
    prices_source,
    fundamentals_source,
    save_batch: Callable[[list[DerivedMetricRow]], Any],
    batch_size: int = config.BATCH_SIZE,
    mode: str = "custom",
) -> PriceMetricsRunResult:
    """Derive and save metrics for `tickers`, one batch at a time."""
    result = PriceMetricsRunResult(mode)
    ordered = sorted(set(tickers))
    batches = chunked(ordered, batch_size)
    result.tickers_total = len(ordered)
    result.batches_total = len(batches)
    logger.info("[PriceMetrics][%s] %d tickers in %d batches, %s..%s",
                mode, len(ordered), len(batches), start.date(), end.date())

    try:
        for i, batch in enumerate(batches, start=1):
            computed_at = utcnow()
            per_ticker = await asyncio.gather(*[
                _derive_one(t, t in international, start, end,
                            prices_source, fundamentals_source, computed_at, result)
                for t in batch
            ])

            rows: list[DerivedMetricRow] = []
            for ticker_rows in per_ticker:
                rows.extend(ticker_rows)

            if rows:
                save_batch(rows)
                result.batch_loaded(len(rows))

            logger.info("[PriceMetrics][%s] processed batch %d/%d - %d data points",
                        mode, i, len(batches), len(rows))
    except Exception as exc:
        result.status = "failed"
        result.errors.append(str(exc))
        logger.error("[PriceMetrics][%s] run aborted after %d/%d batches: %s",
                     mode, result.batches_loaded, len(batches), exc)
        raise

    logger.info("[PriceMetrics][%s] completed: %d rows, %d failed tickers",
                mode, result.rows_loaded, len(result.failed_tickers))
    return result


async def _run_with_defaults(
    mode: str,
    db: Session,
    tickers: set[str],
    international: set[str],
    start: datetime,
    end: datetime,
    *,
    prices_source=None,
    analytics_engine: Engine | None = None,
    merge_table: StagingMergeTable | None = None,
    batch_size: int,
) -> PriceMetricsRunResult:
    if merge_table is None:
        merge_table = price_metrics_table(analytics_engine or database.analytics_engine)

    def save_batch(rows: list[DerivedMetricRow]) -> int:
        return save_metrics(rows, db=db, merge_table=merge_table)

    kwargs = dict(
        fundamentals_source=FundamentalsSource(db),
        save_batch=save_batch,
        batch_size=batch_size,
        mode=mode,
    )
    if prices_source is not None:
        return await run_price_metrics(tickers, international, start, end, prices_source=prices_source, **kwargs)

    async with httpx.AsyncClient() as client:
        return await run_price_metrics(
            tickers, international, start, end,
            prices_source=EodhdPriceSource(client, db=db),
            **kwargs,
        )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

async def hydrate_all_data(
    db: Session,
    *,
    prices_source=None,
    analytics_engine: Engine | None = None,
    merge_table: StagingMergeTable | None = None,
    batch_size: int = config.BATCH_SIZE,
    years: int = config.HYDRATION_YEARS,
    now: datetime | None = None,
) -> PriceMetricsRunResult:
    """Full hydration: every known ticker over `years` of history."""
    now = now or utcnow()
    domestic = financials_repo.list_distinct_tickers(db)
    international = financials_repo.list_distinct_foreign_tickers(db)
    logger.info("[PriceMetrics][hydrate] found %d US stocks, %d international stocks",
                len(domestic), len(international))

    return await _run_with_defaults(
        "hydrate", db, domestic | international, international,
        _start_of_day(_years_ago(now, years)), now,
        prices_source=prices_source,
        analytics_engine=analytics_engine,
        merge_table=merge_table,
        batch_size=batch_size,
    )


async def refresh_price_data(
    db: Session,
    *,
    prices_source=None,
    analytics_engine: Engine | None = None,
    merge_table: StagingMergeTable | None = None,
    batch_size: int = config.BATCH_SIZE,
    lookback_days: int = config.REFRESH_LOOKBACK_DAYS,
    window_days: int = config.REFRESH_WINDOW_DAYS,
    now: datetime | None = None,
) -> PriceMetricsRunResult:
    """Incremental refresh: recently changed tickers over a short recent window."""
    now = now or utcnow()
    since = now - timedelta(days=lookback_days)
    domestic = financials_repo.list_distinct_tickers(db, updated_since=since)
    international = financials_repo.list_distinct_foreign_tickers(db, updated_since=since)
    tickers = domestic | international
    logger.info("[PriceMetrics][refresh] found %d tickers to update", len(tickers))

    if not tickers:
        logger.info("[PriceMetrics][refresh] no tickers to update")
        return PriceMetricsRunResult("refresh")

    return await _run_with_defaults(
        "refresh", db, tickers, international,
        _start_of_day(now - timedelta(days=window_days)), now,
        prices_source=prices_source,
        analytics_engine=analytics_engine,
        merge_table=merge_table,
        batch_size=batch_size,
    )


async def compute_ticker(
    db: Session,
    ticker: str,
    start: datetime,
    end: datetime,
    *,
    prices_source=None,
    analytics_engine: Engine | None = None,
    merge_table: StagingMergeTable | None = None,
) -> PriceMetricsRunResult:
    """Derive and load a single ticker; classification comes from the fundamentals tables."""
    ticker = ticker.strip().upper()
    international = financials_repo.list_distinct_foreign_tickers(db)
    return await _run_with_defaults(
        "ticker", db, {ticker}, international & {ticker}, start, end,
        prices_source=prices_source,
        analytics_engine=analytics_engine,
        merge_table=merge_table,
        batch_size=1,
    )
