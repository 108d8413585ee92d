"""
Point-in-time valuation metrics calculator.

As-of join:
  For a price date d, the statement used is the latest one with
  effective date <= d. Statements must be sorted ascending once per
  security; the scan stops at the first statement dated after d.

TTM aggregation over the <= 4 most recent eligible quarters (n of them):
  scale          = 4 / n
  ttm_net_income = scale * sum(net_income)      (missing quarter value -> 0)
  ttm_revenue    = scale * sum(total_revenue)   (missing quarter value -> 0)
  market_cap     = price * shares_outstanding    (latest statement, not averaged)
  P/E TTM        = market_cap / ttm_net_income          iff ttm_net_income > 0
  P/S TTM        = market_cap / ttm_revenue             iff ttm_revenue > 0
  P/B            = market_cap / total_stockholder_equity iff equity > 0
  EV             = market_cap + total_debt - cash
                   only when one of the five debt/cash fields is present

Foreign listings never go through TTM aggregation: market cap only.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from pricemetrics.schemas import StatementPeriod

logger = logging.getLogger(__name__)

TTM_QUARTERS: int = 4

# Any of these present on the latest statement triggers the EV computation
EV_TRIGGER_FIELDS: tuple[str, ...] = (
    "long_term_debt",
    "short_term_debt",
    "short_long_term_debt",
    "cash_and_short_term_investments",
    "cash",
)
_DEBT_FIELDS: tuple[str, ...] = ("long_term_debt", "short_term_debt", "short_long_term_debt")


def _is_num(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


def _positive_div(numerator: float, denominator: float | None) -> float | None:
    """numerator / denominator, or None unless the denominator is strictly positive."""
    if not _is_num(denominator) or denominator <= 0:
        return None
    return numerator / denominator


# ---------------------------------------------------------------------------
# As-of join
# ---------------------------------------------------------------------------

def find_as_of(statements: Sequence[StatementPeriod], price_date: datetime) -> StatementPeriod | None:
    """
    Return the latest statement with date <= price_date, or None.

    statements must be sorted ascending by date.
    """
    latest: StatementPeriod | None = None
    for stmt in statements:
        if stmt.date > price_date:
            break
        latest = stmt
    return latest


class AsOfCursor:
    """
    Forward-only as-of lookup over an ascending statement list.

    Successive calls must use non-decreasing price dates, so a whole price
    history is joined in one pass over the statements.
    """

    def __init__(self, statements: Sequence[StatementPeriod]):
        self._statements = statements
        self._next = 0
        self._last_date: datetime | None = None

    def advance(self, price_date: datetime) -> int:
        """Move to price_date and return the number of eligible statements."""
        if self._last_date is not None and price_date < self._last_date:
            raise ValueError(
                f"AsOfCursor requires ascending price dates: {price_date} < {self._last_date}"
            )
        self._last_date = price_date
        while self._next < len(self._statements) and self._statements[self._next].date <= price_date:
            self._next += 1
        return self._next

    def current(self) -> StatementPeriod | None:
        return self._statements[self._next - 1] if self._next else None

    def window(self, size: int = TTM_QUARTERS) -> list[StatementPeriod]:
        """The last `size` eligible statements, oldest first."""
        return list(self._statements[max(0, self._next - size): self._next])


# ---------------------------------------------------------------------------
# TTM aggregation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TtmMetrics:
    quarters_available: int
    scale_factor: float
    ttm_net_income: float
    ttm_revenue: float
    market_cap: float
    pe_ratio_ttm: float | None
    ps_ratio_ttm: float | None
    pb_ratio_ttm: float | None
    enterprise_value: float | None


def _ttm_sum(window: Sequence[StatementPeriod], name: str) -> float:
    total = 0.0
    for stmt in window:
        v = stmt.get(name)
        if _is_num(v):
            total += v
    return total


def compute_enterprise_value(latest: StatementPeriod, market_cap: float) -> float | None:
    """
    market_cap + total_debt - cash, where total_debt is the sum of the three
    debt fields and cash is the first non-zero of
    cash_and_short_term_investments, cash.

    None when none of EV_TRIGGER_FIELDS is present on the statement.
    """
    if not any(latest.has(name) for name in EV_TRIGGER_FIELDS):
        return None
    total_debt = sum(latest.get(name) or 0.0 for name in _DEBT_FIELDS)
    cash = latest.get("cash_and_short_term_investments") or latest.get("cash") or 0.0
    return market_cap + total_debt - cash


def aggregate_ttm(window: Sequence[StatementPeriod], price: float) -> TtmMetrics | None:
    """
    Aggregate the eligible statements for one price date.

    window: up to 4 most recent statements with date <= price date, oldest first.
    Returns None for an empty window or when the latest statement has no
    usable shares outstanding (no market cap can be formed).
    """
    window = list(window)[-TTM_QUARTERS:]
    count = len(window)
    if count == 0:
        return None

    latest = window[-1]
    shares = latest.shares_outstanding
    if not _is_num(shares) or shares == 0:
        return None

    scale = TTM_QUARTERS / count
    ttm_net_income = _ttm_sum(window, "net_income") * scale
    ttm_revenue = _ttm_sum(window, "total_revenue") * scale
    market_cap = price * shares

    return TtmMetrics(
        quarters_available=count,
        scale_factor=scale,
        ttm_net_income=ttm_net_income,
        ttm_revenue=ttm_revenue,
        market_cap=market_cap,
        pe_ratio_ttm=_positive_div(market_cap, ttm_net_income),
        ps_ratio_ttm=_positive_div(market_cap, ttm_revenue),
        pb_ratio_ttm=_positive_div(market_cap, latest.get("total_stockholder_equity")),
        enterprise_value=compute_enterprise_value(latest, market_cap),
    )


def compute_foreign_market_cap(shares_record: StatementPeriod | None, price: float) -> float | None:
    """price * shares outstanding for a foreign listing, or None without usable shares."""
    if shares_record is None:
        return None
    shares = shares_record.shares_outstanding
    if not _is_num(shares) or shares == 0:
        return None
    return price * shares
