"""
Runtime configuration.

Values come from the process environment. A `.env` file at the repo root is
loaded first (override=False, so real environment variables win).
"""

import os
from pathlib import Path

from dotenv import load_dotenv

_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path, override=False)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------
_DB_PATH = Path(__file__).resolve().parent / "pricemetrics.db"

OPERATIONAL_DATABASE_URL: str = os.environ.get("OPERATIONAL_DATABASE_URL", f"sqlite:///{_DB_PATH}")
ANALYTICS_DATABASE_URL: str = os.environ.get("ANALYTICS_DATABASE_URL", OPERATIONAL_DATABASE_URL)
ANALYTICS_SCHEMA: str | None = os.environ.get("ANALYTICS_SCHEMA") or None
PRICE_METRICS_TABLE: str = os.environ.get("PRICE_METRICS_TABLE", "stock_metrics")

# ---------------------------------------------------------------------------
# Market data provider
# ---------------------------------------------------------------------------
EOD_API_TOKEN: str = os.environ.get("EOD_API_TOKEN", "")
EODHD_BASE_URL: str = os.environ.get("EODHD_BASE_URL", "https://eodhd.com/api")
DEFAULT_EXCHANGE: str = os.environ.get("DEFAULT_EXCHANGE", "US")

# ---------------------------------------------------------------------------
# Pipeline tuning
# ---------------------------------------------------------------------------
BATCH_SIZE: int = _env_int("BATCH_SIZE", 10)
HYDRATION_YEARS: int = _env_int("HYDRATION_YEARS", 30)
REFRESH_WINDOW_DAYS: int = _env_int("REFRESH_WINDOW_DAYS", 30)
REFRESH_LOOKBACK_DAYS: int = _env_int("REFRESH_LOOKBACK_DAYS", 7)
STAGING_INSERT_BATCH_SIZE: int = _env_int("STAGING_INSERT_BATCH_SIZE", 500)
TABLE_VISIBILITY_MAX_ATTEMPTS: int = _env_int("TABLE_VISIBILITY_MAX_ATTEMPTS", 3)
TABLE_VISIBILITY_BACKOFF_S: float = _env_float("TABLE_VISIBILITY_BACKOFF_S", 1.0)

LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.environ.get("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    if o.strip()
]
