"""
Load quarterly statements and foreign shares-outstanding history from CSV.

Columns are matched by name against the target table (quarterly_financials
or international_stocks); unknown columns are ignored. Rows that fail to
parse are skipped and logged. Parsed rows go through the repository upserts,
so re-importing the same file is a no-op.

Run from the project root:
    python3 -m pricemetrics.scripts.run_price_metrics import --statements q.csv --foreign-shares intl.csv
"""

import csv
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session
from sqlalchemy.sql.sqltypes import DateTime, Float

from pricemetrics.models import InternationalStock, QuarterlyFinancials
from pricemetrics.repositories import financials_repo

logger = logging.getLogger(__name__)

NULL_VALUES = {"", "null", "none", "na", "nan", "n/a"}
_SKIP_COLUMNS = {"id", "created_at", "updated_at"}


def parse_datetime(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1]
    return datetime.fromisoformat(text)


def parse_value(raw: str | None, column_type) -> Any:
    if raw is None:
        return None
    text = raw.strip()
    if text.lower() in NULL_VALUES:
        return None
    if isinstance(column_type, Float):
        return float(text.replace(",", ""))
    if isinstance(column_type, DateTime):
        return parse_datetime(text)
    return text


def read_records(csv_path: Path, model) -> tuple[list[dict[str, Any]], int]:
    """Parse a CSV export into upsert records for `model`. Returns (records, skipped)."""
    columns = {c.name: c for c in model.__table__.columns if c.name not in _SKIP_COLUMNS}
    records: list[dict[str, Any]] = []
    skipped = 0

    with csv_path.open("r", encoding="utf-8-sig", newline="") as handle:
        for line_no, row in enumerate(csv.DictReader(handle), start=2):
            try:
                record = {
                    name: parse_value(row.get(name), column.type)
                    for name, column in columns.items()
                    if name in row
                }
            except ValueError as exc:
                skipped += 1
                logger.warning("[Import] %s:%s skipped row: %s", csv_path.name, line_no, exc)
                continue

            if not record.get("ticker") or record.get("date") is None:
                skipped += 1
                logger.warning("[Import] %s:%s skipped row without ticker/date", csv_path.name, line_no)
                continue
            record["ticker"] = record["ticker"].upper()
            records.append(record)

    return records, skipped


def _import(
    db: Session,
    csv_path: Path,
    model,
    upsert: Callable[[Session, list[dict[str, Any]]], int],
) -> dict[str, int]:
    records, skipped = read_records(csv_path, model)
    upserted = upsert(db, records)
    logger.info("[Import] %s -> upserted=%d skipped=%d", csv_path.name, upserted, skipped)
    return {"upserted": upserted, "skipped": skipped + len(records) - upserted}


def import_statements(db: Session, csv_path: Path) -> dict[str, int]:
    return _import(db, csv_path, QuarterlyFinancials, financials_repo.upsert_statements)


def import_foreign_shares(db: Session, csv_path: Path) -> dict[str, int]:
    return _import(db, csv_path, InternationalStock, financials_repo.upsert_foreign_shares)
