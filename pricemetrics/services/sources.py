"""
Series sources handed to the metrics series builder.

Each exposes async methods so the orchestrator can gather a whole batch;
the database-backed ones run synchronously inside the coroutine.
"""

import logging
from datetime import datetime

import httpx
from sqlalchemy.orm import Session

from pricemetrics.api_clients import eodhd_client
from pricemetrics.normalizers import eodhd_normalizer
from pricemetrics.repositories import financials_repo, prices_repo
from pricemetrics.schemas import PriceObservation, StatementPeriod

logger = logging.getLogger(__name__)


class FundamentalsSource:
    """Fundamentals repository reads for one session."""

    def __init__(self, db: Session):
        self.db = db

    async def list_statements(self, ticker: str) -> list[StatementPeriod]:
        return financials_repo.list_statements(self.db, ticker)

    async def list_foreign_shares(self, ticker: str) -> list[StatementPeriod]:
        return financials_repo.list_foreign_shares(self.db, ticker)


class DatabasePriceSource:
    """Prices already stored in PricesHistory."""

    def __init__(self, db: Session):
        self.db = db

    async def list_prices(self, ticker: str, start: datetime, end: datetime) -> list[PriceObservation]:
        return prices_repo.list_prices(self.db, ticker, start, end)


class EodhdPriceSource:
    """
    Daily closes from EODHD, standardized to market close.

    When `db` is given, fetched observations are also upserted into
    PricesHistory.
    """

    def __init__(self, client: httpx.AsyncClient, exchange: str | None = None, db: Session | None = None):
        self.client = client
        self.exchange = exchange
        self.db = db

    async def list_prices(self, ticker: str, start: datetime, end: datetime) -> list[PriceObservation]:
        bars = await eodhd_client.fetch_historical_prices(
            ticker, start.date(), end.date(), self.client, exchange=self.exchange
        )
        prices = eodhd_normalizer.normalize_prices(ticker, bars)
        if self.db is not None and prices:
            prices_repo.upsert_prices(self.db, prices)
        return prices
