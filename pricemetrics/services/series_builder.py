"""
Metrics series builder.

Turns one security's price observations and statement history into the
ordered list of DerivedMetricRow for a date range.

  - A row is emitted only for an existing price date.
  - Price dates before the first statement (or whose as-of statement has no
    shares outstanding) are dropped silently.
  - Domestic: as-of join + TTM aggregation.
  - Foreign:  as-of join against shares-outstanding records, market cap only.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Sequence

from pricemetrics.schemas import DerivedMetricRow, PriceObservation, StatementPeriod, utcnow
from pricemetrics.services.metrics_calculator import (
    AsOfCursor,
    aggregate_ttm,
    compute_foreign_market_cap,
)

logger = logging.getLogger(__name__)


def derive_metric_rows(
    ticker: str,
    prices: Sequence[PriceObservation],
    statements: Sequence[StatementPeriod],
    is_international: bool,
    computed_at: datetime | None = None,
) -> list[DerivedMetricRow]:
    """Pure derivation over already-fetched series."""
    computed_at = computed_at or utcnow()
    ordered_statements = sorted(statements, key=lambda s: s.date)
    cursor = AsOfCursor(ordered_statements)

    rows: list[DerivedMetricRow] = []
    for obs in sorted(prices, key=lambda p: p.date):
        if cursor.advance(obs.date) == 0:
            continue

        if is_international:
            market_cap = compute_foreign_market_cap(cursor.current(), obs.price)
            if market_cap is None:
                continue
            rows.append(DerivedMetricRow(
                ticker=ticker,
                symbol=ticker,
                date=obs.date,
                price=obs.price,
                volume=obs.volume,
                market_cap=market_cap,
                is_international=True,
                last_updated=computed_at,
            ))
            continue

        ttm = aggregate_ttm(cursor.window(), obs.price)
        if ttm is None:
            continue
        rows.append(DerivedMetricRow(
            ticker=ticker,
            symbol=ticker,
            date=obs.date,
            price=obs.price,
            volume=obs.volume,
            market_cap=ttm.market_cap,
            pe_ratio_ttm=ttm.pe_ratio_ttm,
            ps_ratio_ttm=ttm.ps_ratio_ttm,
            pb_ratio_ttm=ttm.pb_ratio_ttm,
            enterprise_value=ttm.enterprise_value,
            is_international=False,
            last_updated=computed_at,
        ))

    return rows


async def build_metric_series(
    ticker: str,
    is_international: bool,
    start: datetime,
    end: datetime,
    *,
    prices_source,
    fundamentals_source,
    computed_at: datetime | None = None,
) -> list[DerivedMetricRow]:
    """
    Fetch both series for one security and derive its rows.

    prices_source:       object with `async list_prices(ticker, start, end)`
    fundamentals_source: object with `async list_statements(ticker)` and
                         `async list_foreign_shares(ticker)`
    """
    prices = await prices_source.list_prices(ticker, start, end)
    if not prices:
        logger.info("[PriceMetrics] %s: no price data between %s and %s", ticker, start.date(), end.date())
        return []

    if is_international:
        statements = await fundamentals_source.list_foreign_shares(ticker)
        if not statements:
            logger.info("[PriceMetrics] %s: no shares outstanding data for international stock", ticker)
            return []
    else:
        statements = await fundamentals_source.list_statements(ticker)
        if not statements:
            logger.info("[PriceMetrics] %s: no financial data available", ticker)
            return []

    rows = derive_metric_rows(ticker, prices, statements, is_international, computed_at)
    logger.debug(
        "[PriceMetrics] %s: %d rows from %d prices / %d statements",
        ticker, len(rows), len(prices), len(statements),
    )
    return rows
