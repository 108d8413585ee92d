"""
Plain data carriers shared by the repositories, the derivation services and
the load pipeline.

StatementPeriod.fields maps a fixed set of statement field names to an
optional number. A missing key and an explicit None both mean "absent",
which is never the same thing as 0.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

StatementField = Literal[
    "net_income",
    "total_revenue",
    "total_stockholder_equity",
    "long_term_debt",
    "short_term_debt",
    "short_long_term_debt",
    "cash_and_short_term_investments",
    "cash",
]

STATEMENT_FIELDS: tuple[str, ...] = (
    "net_income",
    "total_revenue",
    "total_stockholder_equity",
    "long_term_debt",
    "short_term_debt",
    "short_long_term_debt",
    "cash_and_short_term_investments",
    "cash",
)


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime in this project is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def coerce_num(v: Any) -> float | None:
    """Return a finite float, or None for anything missing or malformed."""
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


@dataclass(frozen=True)
class StatementPeriod:
    ticker: str
    date: datetime
    fields: dict[str, float | None] = field(default_factory=dict)
    shares_outstanding: float | None = None

    def get(self, name: str) -> float | None:
        return self.fields.get(name)

    def has(self, name: str) -> bool:
        return self.fields.get(name) is not None


@dataclass(frozen=True)
class PriceObservation:
    ticker: str
    date: datetime
    price: float
    volume: float


@dataclass
class DerivedMetricRow:
    ticker: str
    symbol: str
    date: datetime
    price: float
    volume: float
    market_cap: float
    pe_ratio_ttm: float | None = None
    ps_ratio_ttm: float | None = None
    pb_ratio_ttm: float | None = None
    enterprise_value: float | None = None
    is_international: bool = False
    last_updated: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, datetime]:
        return (self.ticker, self.date)

    def to_record(self) -> dict[str, Any]:
        return asdict(self)


# Column layout of the durable price metrics table: (name, type, required)
PRICE_METRICS_COLUMNS: list[tuple[str, str, bool]] = [
    ("ticker", "STRING", True),
    ("symbol", "STRING", True),
    ("date", "TIMESTAMP", True),
    ("price", "FLOAT64", True),
    ("volume", "FLOAT64", True),
    ("market_cap", "FLOAT64", True),
    ("pe_ratio_ttm", "FLOAT64", False),
    ("ps_ratio_ttm", "FLOAT64", False),
    ("pb_ratio_ttm", "FLOAT64", False),
    ("enterprise_value", "FLOAT64", False),
    ("is_international", "BOOLEAN", True),
    ("last_updated", "TIMESTAMP", True),
]

PRICE_METRICS_KEY: tuple[str, ...] = ("ticker", "date")
