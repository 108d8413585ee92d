from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, UniqueConstraint

from pricemetrics.database import Base
from pricemetrics.schemas import utcnow as _utcnow


class QuarterlyFinancials(Base):
    """One quarterly statement per (ticker, date). Dates are effective dates."""

    __tablename__ = "quarterly_financials"
    __table_args__ = (UniqueConstraint("ticker", "date", name="uq_quarterly_financials_ticker_date"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticker = Column(String, nullable=False, index=True)
    date = Column(DateTime, nullable=False, index=True)

    net_income = Column(Float)
    total_revenue = Column(Float)
    total_stockholder_equity = Column(Float)
    long_term_debt = Column(Float)
    short_term_debt = Column(Float)
    short_long_term_debt = Column(Float)
    cash_and_short_term_investments = Column(Float)
    cash = Column(Float)
    common_stock_shares_outstanding = Column(Float)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, index=True)


class InternationalStock(Base):
    """Shares-outstanding history for foreign-listed securities."""

    __tablename__ = "international_stocks"
    __table_args__ = (UniqueConstraint("ticker", "date", name="uq_international_stocks_ticker_date"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticker = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False)
    country = Column(String, nullable=False, index=True)
    name = Column(String)
    common_stock_shares_outstanding = Column(Float, default=0)
    date = Column(DateTime, nullable=False)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, index=True)


class PricesHistory(Base):
    __tablename__ = "prices_history"
    __table_args__ = (UniqueConstraint("ticker", "date", name="uq_prices_history_ticker_date"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticker = Column(String, nullable=False, index=True)
    date = Column(DateTime, nullable=False, index=True)
    close = Column(Float, nullable=False)
    volume = Column(Float, nullable=False, default=0)
    source = Column(String, default="eodhd")

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class PriceMetrics(Base):
    """Operational mirror of the derived metrics, for point lookups."""

    __tablename__ = "stock_price_metrics"
    __table_args__ = (UniqueConstraint("ticker", "date", name="uq_stock_price_metrics_ticker_date"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticker = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False)
    date = Column(DateTime, nullable=False)
    price = Column(Float, nullable=False)
    volume = Column(Float, nullable=False)
    market_cap = Column(Float, nullable=False)

    # Domestic-only metrics
    pe_ratio_ttm = Column(Float)
    ps_ratio_ttm = Column(Float)
    pb_ratio_ttm = Column(Float)
    enterprise_value = Column(Float)

    is_international = Column(Boolean, nullable=False, index=True)
    last_updated = Column(DateTime, nullable=False, default=_utcnow, index=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
