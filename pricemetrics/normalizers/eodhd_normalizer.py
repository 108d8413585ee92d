"""
EODHD data normalizers.

Every trading date is standardized to the US market close (16:00
America/New_York) and stored as naive UTC, so one observation per
(ticker, date) maps to one stable timestamp.
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Any
from zoneinfo import ZoneInfo

from pricemetrics.schemas import PriceObservation, coerce_num

logger = logging.getLogger(__name__)

MARKET_TZ = ZoneInfo("America/New_York")
MARKET_CLOSE = time(16, 0)


def _parse_day(d: Any) -> date | None:
    if isinstance(d, datetime):
        return d.date()
    if isinstance(d, date):
        return d
    if isinstance(d, str):
        try:
            return date.fromisoformat(d.strip()[:10])
        except ValueError:
            return None
    return None


def standardize_to_market_close(d: Any) -> datetime | None:
    """Calendar day of `d` at 16:00 New York time, as naive UTC."""
    day = _parse_day(d)
    if day is None:
        return None
    local_close = datetime.combine(day, MARKET_CLOSE, tzinfo=MARKET_TZ)
    return local_close.astimezone(timezone.utc).replace(tzinfo=None)


def normalize_prices(ticker: str, bars: list[dict[str, Any]]) -> list[PriceObservation]:
    """
    Map raw EOD bars to PriceObservation, ascending by date.

    Uses the unadjusted close. Bars with an unparsable date or close are
    dropped; a missing volume becomes 0. Duplicate dates keep the last bar.
    """
    by_date: dict[datetime, PriceObservation] = {}
    dropped = 0
    for bar in bars or []:
        ts = standardize_to_market_close(bar.get("date"))
        close = coerce_num(bar.get("close"))
        if ts is None or close is None:
            dropped += 1
            continue
        by_date[ts] = PriceObservation(
            ticker=ticker,
            date=ts,
            price=close,
            volume=coerce_num(bar.get("volume")) or 0.0,
        )

    if dropped:
        logger.warning("[EODHD] %s: dropped %d malformed bars", ticker, dropped)
    return [by_date[k] for k in sorted(by_date)]
