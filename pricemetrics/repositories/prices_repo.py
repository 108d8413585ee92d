"""
PricesHistory repository.

Idempotency key: (ticker, date)

Upsert behavior:
  - Batch size: 25 rows per batch
  - Check existing by (ticker, date in batch)
  - Insert new rows, update close/volume on existing rows
  - Insert retry: 3 attempts, delays [1.5, 3.0, 5.0] s
  - A failing batch is rolled back and counted as skipped
"""

import logging
import time
from datetime import datetime

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from pricemetrics.models import PricesHistory
from pricemetrics.schemas import PriceObservation

logger = logging.getLogger(__name__)

BATCH_SIZE: int = 25
INSERT_RETRY_DELAYS: list[float] = [1.5, 3.0, 5.0]   # seconds


def upsert_prices(
    db: Session,
    prices: list[PriceObservation],
    source: str = "eodhd",
) -> dict[str, int]:
    """
    Upsert PricesHistory rows for one ticker.
    Returns {"inserted": N, "updated": N, "skipped": N}.
    """
    if not prices:
        return {"inserted": 0, "updated": 0, "skipped": 0}

    ticker = prices[0].ticker
    batches = [prices[i: i + BATCH_SIZE] for i in range(0, len(prices), BATCH_SIZE)]
    logger.info("[DB][Prices] %d rows in %d batches for %s", len(prices), len(batches), ticker)

    total_inserted = 0
    total_updated = 0
    total_skipped = 0

    for i, batch in enumerate(batches):
        try:
            existing_rows = db.scalars(
                select(PricesHistory).where(
                    and_(
                        PricesHistory.ticker == ticker,
                        PricesHistory.date.in_([p.date for p in batch]),
                    )
                )
            ).all()
            existing_map: dict[datetime, PricesHistory] = {row.date: row for row in existing_rows}

            to_insert = [p for p in batch if p.date not in existing_map]
            to_update = [p for p in batch if p.date in existing_map]

            if to_insert:
                _bulk_insert_with_retry(db, to_insert, i + 1, source)
                total_inserted += len(to_insert)

            for obs in to_update:
                row = existing_map[obs.date]
                row.close = obs.price
                row.volume = obs.volume
                row.source = source
                total_updated += 1

            db.commit()

        except Exception as exc:
            db.rollback()
            logger.error("[DB][Prices] Batch %d failed: %s", i + 1, exc)
            total_skipped += len(batch)

    logger.info("[DB][Prices] Done: inserted=%d updated=%d skipped=%d",
                total_inserted, total_updated, total_skipped)
    return {"inserted": total_inserted, "updated": total_updated, "skipped": total_skipped}


def _bulk_insert_with_retry(
    db: Session,
    rows: list[PriceObservation],
    batch_num: int,
    source: str,
) -> None:
    for attempt, delay in enumerate(INSERT_RETRY_DELAYS):
        try:
            db.add_all([
                PricesHistory(ticker=r.ticker, date=r.date, close=r.price, volume=r.volume, source=source)
                for r in rows
            ])
            db.flush()
            return
        except Exception as exc:
            db.rollback()
            if attempt == len(INSERT_RETRY_DELAYS) - 1:
                raise RuntimeError(
                    f"DB insert failed on batch {batch_num} after {len(INSERT_RETRY_DELAYS)} attempts: {exc}"
                ) from exc
            logger.warning("[DB][Prices] insert retry %d/%d batch=%d: %s",
                           attempt + 1, len(INSERT_RETRY_DELAYS), batch_num, exc)
            time.sleep(delay)


def list_prices(
    db: Session,
    ticker: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[PriceObservation]:
    """Price observations for a ticker within [start, end], ascending by date."""
    q = select(PricesHistory).where(PricesHistory.ticker == ticker)
    if start is not None:
        q = q.where(PricesHistory.date >= start)
    if end is not None:
        q = q.where(PricesHistory.date <= end)
    q = q.order_by(PricesHistory.date.asc())
    return [
        PriceObservation(ticker=r.ticker, date=r.date, price=r.close, volume=r.volume or 0.0)
        for r in db.scalars(q).all()
    ]
