"""
Metrics series builder tests

Covers:
  1. Foreign listing -> market cap only, every ratio None.
  2. Price dates before the first statement are dropped, not errors.
  3. Domestic rows carry TTM ratios from the as-of window.
  4. Empty price or statement series -> no rows.
"""

import asyncio
from datetime import datetime

import pytest

from pricemetrics.schemas import PriceObservation, StatementPeriod
from pricemetrics.services.series_builder import build_metric_series, derive_metric_rows


COMPUTED_AT = datetime(2024, 1, 2, 12, 0)


def _price(ticker: str, day: str, price: float, volume: float = 1_000.0) -> PriceObservation:
    return PriceObservation(ticker=ticker, date=datetime.fromisoformat(day + "T21:00:00"), price=price, volume=volume)


class FakePrices:
    def __init__(self, prices):
        self.prices = prices
        self.calls = []

    async def list_prices(self, ticker, start, end):
        self.calls.append((ticker, start, end))
        return [p for p in self.prices if p.ticker == ticker]


class FakeFundamentals:
    def __init__(self, statements=None, shares=None):
        self.statements = statements or {}
        self.shares = shares or {}

    async def list_statements(self, ticker):
        return self.statements.get(ticker, [])

    async def list_foreign_shares(self, ticker):
        return self.shares.get(ticker, [])


# ---------------------------------------------------------------------------
# Foreign listings
# ---------------------------------------------------------------------------

def test_foreign_listing_market_cap_only():
    shares = [StatementPeriod(ticker="SAP.XETRA", date=datetime(2023, 1, 1), shares_outstanding=1_000_000)]
    prices = [_price("SAP.XETRA", "2023-03-15", 12.50)]

    rows = derive_metric_rows("SAP.XETRA", prices, shares, is_international=True, computed_at=COMPUTED_AT)

    assert len(rows) == 1
    row = rows[0]
    assert row.market_cap == 12_500_000
    assert row.is_international is True
    assert row.pe_ratio_ttm is None
    assert row.ps_ratio_ttm is None
    assert row.pb_ratio_ttm is None
    assert row.enterprise_value is None
    assert row.last_updated == COMPUTED_AT


def test_foreign_listing_uses_as_of_share_count():
    shares = [
        StatementPeriod(ticker="F", date=datetime(2023, 1, 1), shares_outstanding=100),
        StatementPeriod(ticker="F", date=datetime(2023, 6, 1), shares_outstanding=200),
    ]
    prices = [_price("F", "2023-05-31", 1.0), _price("F", "2023-06-01", 1.0)]
    rows = derive_metric_rows("F", prices, shares, is_international=True)
    assert [r.market_cap for r in rows] == [100, 200]


# ---------------------------------------------------------------------------
# Domestic derivation
# ---------------------------------------------------------------------------

STATEMENTS = [
    StatementPeriod(ticker="ACME", date=datetime(2023, 3, 31), shares_outstanding=10,
                    fields={"net_income": 100, "total_revenue": 1_000}),
    StatementPeriod(ticker="ACME", date=datetime(2023, 6, 30), shares_outstanding=10,
                    fields={"net_income": 120, "total_revenue": 1_000}),
    StatementPeriod(ticker="ACME", date=datetime(2023, 9, 30), shares_outstanding=10,
                    fields={"net_income": 110, "total_revenue": 1_000, "total_stockholder_equity": 250}),
]


def test_price_dates_before_first_statement_are_dropped():
    prices = [
        _price("ACME", "2023-01-03", 40.0),
        _price("ACME", "2023-03-30", 41.0),
        _price("ACME", "2023-04-03", 42.0),
    ]
    rows = derive_metric_rows("ACME", prices, STATEMENTS, is_international=False)
    assert [r.date.date().isoformat() for r in rows] == ["2023-04-03"]


def test_domestic_row_uses_window_as_of_price_date():
    prices = [_price("ACME", "2023-10-02", 50.0)]
    rows = derive_metric_rows("ACME", prices, list(reversed(STATEMENTS)), is_international=False)

    assert len(rows) == 1
    row = rows[0]
    assert row.market_cap == 500.0
    assert row.pe_ratio_ttm == pytest.approx(500 / 440)
    assert row.ps_ratio_ttm == pytest.approx(500 / 4_000)
    assert row.pb_ratio_ttm == pytest.approx(2.0)
    assert row.enterprise_value is None
    assert row.is_international is False
    assert row.symbol == "ACME"


def test_rows_follow_price_order_and_ignore_future_statements():
    prices = [_price("ACME", "2023-07-05", 30.0), _price("ACME", "2023-04-05", 20.0)]
    rows = derive_metric_rows("ACME", prices, STATEMENTS, is_international=False)

    assert [r.price for r in rows] == [20.0, 30.0]
    # April: one quarter of 100 scaled x4; July: (100 + 120) x2
    assert rows[0].pe_ratio_ttm == pytest.approx(200 / 400)
    assert rows[1].pe_ratio_ttm == pytest.approx(300 / 440)


def test_missing_shares_skips_price_date():
    statements = [StatementPeriod(ticker="NOSH", date=datetime(2023, 3, 31), fields={"net_income": 5})]
    rows = derive_metric_rows("NOSH", [_price("NOSH", "2023-04-03", 10.0)], statements, is_international=False)
    assert rows == []


# ---------------------------------------------------------------------------
# Async builder
# ---------------------------------------------------------------------------

def test_build_metric_series_reads_both_sources():
    prices = FakePrices([_price("ACME", "2023-10-02", 50.0), _price("OTHER", "2023-10-02", 1.0)])
    fundamentals = FakeFundamentals(statements={"ACME": STATEMENTS})
    start, end = datetime(2023, 9, 1), datetime(2023, 10, 31)

    rows = asyncio.run(build_metric_series(
        "ACME", False, start, end,
        prices_source=prices, fundamentals_source=fundamentals, computed_at=COMPUTED_AT,
    ))

    assert prices.calls == [("ACME", start, end)]
    assert [r.ticker for r in rows] == ["ACME"]
    assert rows[0].last_updated == COMPUTED_AT


def test_build_metric_series_without_prices_returns_empty():
    rows = asyncio.run(build_metric_series(
        "ACME", False, datetime(2023, 1, 1), datetime(2023, 12, 31),
        prices_source=FakePrices([]), fundamentals_source=FakeFundamentals(statements={"ACME": STATEMENTS}),
    ))
    assert rows == []


def test_build_metric_series_without_statements_returns_empty():
    rows = asyncio.run(build_metric_series(
        "ACME", True, datetime(2023, 1, 1), datetime(2023, 12, 31),
        prices_source=FakePrices([_price("ACME", "2023-10-02", 50.0)]),
        fundamentals_source=FakeFundamentals(statements={"ACME": STATEMENTS}),
    ))
    # international path reads shares, not statements
    assert rows == []
