"""
Operational price metrics repository (point lookups).

Idempotency key: (ticker, date)

Upsert behavior:
  - Rows are grouped per ticker and processed in batches of BATCH_SIZE
  - Existing rows: every non-key column is overwritten, including None, so a
    ratio that became absent is cleared rather than left stale
  - New rows: inserted
  - A failing batch is rolled back and re-raised (the caller aborts the load)
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from pricemetrics.models import PriceMetrics
from pricemetrics.schemas import DerivedMetricRow

logger = logging.getLogger(__name__)

BATCH_SIZE: int = 500

_VALUE_COLUMNS: tuple[str, ...] = (
    "symbol",
    "price",
    "volume",
    "market_cap",
    "pe_ratio_ttm",
    "ps_ratio_ttm",
    "pb_ratio_ttm",
    "enterprise_value",
    "is_international",
    "last_updated",
)


def _row_to_dict(row: PriceMetrics) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for col in row.__table__.columns:
        val = getattr(row, col.name)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[col.name] = val
    return result


def upsert_price_metrics(db: Session, rows: list[DerivedMetricRow]) -> dict[str, int]:
    """
    Mirror derived rows into the operational store.
    Returns {"inserted": N, "updated": N}.
    """
    if not rows:
        return {"inserted": 0, "updated": 0}

    # Last row wins for a repeated key
    by_ticker: dict[str, dict[datetime, DerivedMetricRow]] = defaultdict(dict)
    for r in rows:
        by_ticker[r.ticker][r.date] = r

    inserted = 0
    updated = 0
    for ticker, by_date in by_ticker.items():
        dated = list(by_date.values())
        for i in range(0, len(dated), BATCH_SIZE):
            batch = dated[i: i + BATCH_SIZE]
            try:
                existing_rows = db.scalars(
                    select(PriceMetrics).where(
                        and_(
                            PriceMetrics.ticker == ticker,
                            PriceMetrics.date.in_([r.date for r in batch]),
                        )
                    )
                ).all()
                existing_map = {row.date: row for row in existing_rows}

                for r in batch:
                    obj = existing_map.get(r.date)
                    if obj is None:
                        obj = PriceMetrics(ticker=r.ticker, date=r.date)
                        db.add(obj)
                        inserted += 1
                    else:
                        updated += 1
                    for name in _VALUE_COLUMNS:
                        setattr(obj, name, getattr(r, name))

                db.commit()
            except Exception as exc:
                db.rollback()
                logger.error("[DB][PriceMetrics] upsert failed for %s (%d rows): %s", ticker, len(batch), exc)
                raise RuntimeError(f"PriceMetrics upsert failed for {ticker}: {exc}") from exc

    logger.info("[DB][PriceMetrics] inserted=%d updated=%d", inserted, updated)
    return {"inserted": inserted, "updated": updated}


def get_price_metrics(
    db: Session,
    ticker: str,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 2000,
    order_desc: bool = True,
) -> list[dict[str, Any]]:
    """Fetch operational rows for a ticker, newest first by default."""
    q = select(PriceMetrics).where(PriceMetrics.ticker == ticker)
    if start is not None:
        q = q.where(PriceMetrics.date >= start)
    if end is not None:
        q = q.where(PriceMetrics.date <= end)
    q = q.order_by(PriceMetrics.date.desc() if order_desc else PriceMetrics.date.asc()).limit(limit)
    return [_row_to_dict(r) for r in db.scalars(q).all()]


def get_latest_price_metrics(db: Session, ticker: str) -> dict[str, Any] | None:
    rows = get_price_metrics(db, ticker, limit=1)
    return rows[0] if rows else None
