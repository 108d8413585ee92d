"""
Fundamentals repository.

Two point-in-time tables feed the derivation:
  QuarterlyFinancials  domestic statements, idempotency key (ticker, date)
  InternationalStock   foreign shares outstanding, idempotency key (ticker, date)

Reads always return StatementPeriod ascending by date, so the derivation can
run its as-of scan without re-sorting per price date.

Upsert behavior:
  - Check if (ticker, date) exists
  - If exists: overwrite the statement fields carried by the incoming record
  - If not: create new record
  - Malformed numerics are stored as NULL (absent), never raised
"""

import logging
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from pricemetrics.models import InternationalStock, QuarterlyFinancials
from pricemetrics.schemas import STATEMENT_FIELDS, StatementPeriod, coerce_num

logger = logging.getLogger(__name__)


def _parse_datetime(d: Any) -> datetime | None:
    if d is None:
        return None
    if isinstance(d, datetime):
        return d
    if isinstance(d, date):
        return datetime(d.year, d.month, d.day)
    if isinstance(d, str):
        try:
            parsed = datetime.fromisoformat(d.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return None


def _statement_from_row(row: QuarterlyFinancials) -> StatementPeriod:
    return StatementPeriod(
        ticker=row.ticker,
        date=row.date,
        fields={name: getattr(row, name) for name in STATEMENT_FIELDS},
        shares_outstanding=row.common_stock_shares_outstanding,
    )


def _shares_from_row(row: InternationalStock) -> StatementPeriod:
    return StatementPeriod(
        ticker=row.ticker,
        date=row.date,
        shares_outstanding=row.common_stock_shares_outstanding,
    )


# ---------------------------------------------------------------------------
# Domestic statements
# ---------------------------------------------------------------------------

def upsert_statements(db: Session, records: list[dict[str, Any]]) -> int:
    """
    Upsert QuarterlyFinancials records keyed by (ticker, date).
    Returns count of records upserted.
    """
    upserted = 0
    for record in records:
        ticker = record.get("ticker")
        stmt_date = _parse_datetime(record.get("date"))
        if not ticker or stmt_date is None:
            logger.warning("[DB][Financials] skipping record without ticker/date: %s", record)
            continue

        existing = db.scalars(
            select(QuarterlyFinancials).where(
                and_(QuarterlyFinancials.ticker == ticker, QuarterlyFinancials.date == stmt_date)
            )
        ).first()
        obj = existing or QuarterlyFinancials(ticker=ticker, date=stmt_date)

        for name in (*STATEMENT_FIELDS, "common_stock_shares_outstanding"):
            if name in record:
                setattr(obj, name, coerce_num(record[name]))

        try:
            if existing is None:
                db.add(obj)
            db.commit()
            upserted += 1
        except Exception as exc:
            db.rollback()
            logger.error("[DB][Financials] upsert failed for %s %s: %s", ticker, stmt_date, exc)

    logger.info("[DB][Financials] upserted %d/%d records", upserted, len(records))
    return upserted


def list_statements(db: Session, ticker: str) -> list[StatementPeriod]:
    """All quarterly statements for a ticker, ascending by effective date."""
    rows = db.scalars(
        select(QuarterlyFinancials)
        .where(QuarterlyFinancials.ticker == ticker)
        .order_by(QuarterlyFinancials.date.asc())
    ).all()
    return [_statement_from_row(r) for r in rows]


def list_distinct_tickers(db: Session, updated_since: datetime | None = None) -> set[str]:
    """Tickers with statements, optionally only those changed since `updated_since`."""
    q = select(QuarterlyFinancials.ticker).distinct()
    if updated_since is not None:
        q = q.where(QuarterlyFinancials.updated_at >= updated_since)
    return set(db.scalars(q).all())


# ---------------------------------------------------------------------------
# Foreign shares outstanding
# ---------------------------------------------------------------------------

def upsert_foreign_shares(db: Session, records: list[dict[str, Any]]) -> int:
    """Upsert InternationalStock records keyed by (ticker, date)."""
    upserted = 0
    for record in records:
        ticker = record.get("ticker")
        rec_date = _parse_datetime(record.get("date"))
        if not ticker or rec_date is None:
            logger.warning("[DB][International] skipping record without ticker/date: %s", record)
            continue

        existing = db.scalars(
            select(InternationalStock).where(
                and_(InternationalStock.ticker == ticker, InternationalStock.date == rec_date)
            )
        ).first()
        obj = existing or InternationalStock(ticker=ticker, date=rec_date)
        obj.symbol = record.get("symbol") or obj.symbol or ticker
        obj.country = record.get("country") or obj.country or "unknown"
        if record.get("name"):
            obj.name = record["name"]
        if "common_stock_shares_outstanding" in record:
            obj.common_stock_shares_outstanding = coerce_num(record["common_stock_shares_outstanding"])

        try:
            if existing is None:
                db.add(obj)
            db.commit()
            upserted += 1
        except Exception as exc:
            db.rollback()
            logger.error("[DB][International] upsert failed for %s %s: %s", ticker, rec_date, exc)

    logger.info("[DB][International] upserted %d/%d records", upserted, len(records))
    return upserted


def list_foreign_shares(db: Session, ticker: str) -> list[StatementPeriod]:
    """Shares-outstanding history for a foreign listing, ascending by date."""
    rows = db.scalars(
        select(InternationalStock)
        .where(InternationalStock.ticker == ticker)
        .order_by(InternationalStock.date.asc())
    ).all()
    return [_shares_from_row(r) for r in rows]


def list_distinct_foreign_tickers(db: Session, updated_since: datetime | None = None) -> set[str]:
    q = select(InternationalStock.ticker).distinct()
    if updated_since is not None:
        q = q.where(InternationalStock.updated_at >= updated_since)
    return set(db.scalars(q).all())
