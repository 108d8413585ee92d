"""
EODHD market data client.

Only the end-of-day price endpoint is used:
  GET {EODHD_BASE_URL}/eod/{ticker}.{exchange}?from=&to=&period=d&fmt=json&api_token=

Rate limiting:
  REQUEST_INTERVAL_MS = 100 between requests, enforced globally
  maxRetries = 3
  On 429: exponential backoff = 2^attempt * 1000 + random(1000) ms
"""

import asyncio
import logging
import random
import time
from datetime import date
from typing import Any

import httpx

from pricemetrics import config

logger = logging.getLogger(__name__)

_REQUEST_INTERVAL_MS: int = 100
_MAX_RETRIES: int = 3
_TIMEOUT_S: float = 30.0


class RequestGate:
    """
    Spaces requests at least interval_ms apart across all callers.

    The lock is created for the running event loop on first use and
    replaced when a later asyncio.run() brings a new loop.
    """

    def __init__(self, interval_ms: float):
        self.interval_ms = interval_ms
        self._last_ms = 0.0
        self._lock: asyncio.Lock | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _loop_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._loop is not loop:
            self._lock = asyncio.Lock()
            self._loop = loop
        return self._lock

    async def wait(self) -> None:
        async with self._loop_lock():
            lag = time.time() * 1000 - self._last_ms
            if lag < self.interval_ms:
                await asyncio.sleep((self.interval_ms - lag) / 1000)
            self._last_ms = time.time() * 1000


_gate = RequestGate(_REQUEST_INTERVAL_MS)


async def gated_fetch(
    client: httpx.AsyncClient,
    url: str,
    params: dict[str, Any],
) -> Any:
    """
    Rate-limited GET with retry on 429 and transport errors.
    Raises RuntimeError on any other non-2xx response or after _MAX_RETRIES.
    """
    for attempt in range(1, _MAX_RETRIES + 1):
        await _gate.wait()

        try:
            resp = await client.get(url, params=params, timeout=_TIMEOUT_S)
        except httpx.HTTPError as exc:
            logger.warning("[EODHD] attempt %d/%d failed: %s", attempt, _MAX_RETRIES, exc)
            if attempt == _MAX_RETRIES:
                raise RuntimeError(f"EODHD fetch failed after {_MAX_RETRIES} attempts: {exc}") from exc
            continue

        if resp.status_code == 429:
            backoff_ms = (2 ** attempt) * 1000 + random.random() * 1000
            logger.warning("[EODHD][429] backing off %.0fms (attempt %d/%d)", backoff_ms, attempt, _MAX_RETRIES)
            if attempt < _MAX_RETRIES:
                await asyncio.sleep(backoff_ms / 1000)
                continue
            raise RuntimeError(f"Rate limited after {_MAX_RETRIES} attempts")

        if not resp.is_success:
            raise RuntimeError(f"HTTP {resp.status_code}: {resp.reason_phrase}")

        return resp.json()

    raise RuntimeError("gated_fetch: exhausted all attempts")


def qualified_symbol(ticker: str, exchange: str | None = None) -> str:
    """"AAPL" -> "AAPL.US"; tickers already carrying an exchange suffix are kept."""
    if "." in ticker:
        return ticker
    return f"{ticker}.{exchange or config.DEFAULT_EXCHANGE}"


async def fetch_historical_prices(
    ticker: str,
    start: date,
    end: date,
    client: httpx.AsyncClient,
    exchange: str | None = None,
    period: str = "d",
) -> list[dict[str, Any]]:
    """Raw EOD bars: [{date, open, high, low, close, adjusted_close, volume}, ...]."""
    if not config.EOD_API_TOKEN:
        raise RuntimeError("EOD_API_TOKEN environment variable is not set")

    symbol = qualified_symbol(ticker, exchange)
    data = await gated_fetch(
        client,
        f"{config.EODHD_BASE_URL}/eod/{symbol}",
        {
            "from": start.isoformat(),
            "to": end.isoformat(),
            "period": period,
            "fmt": "json",
            "api_token": config.EOD_API_TOKEN,
        },
    )
    if not isinstance(data, list):
        raise RuntimeError(f"Unexpected EOD payload for {symbol}: {type(data).__name__}")
    logger.debug("[EODHD] %s: %d bars %s..%s", symbol, len(data), start, end)
    return data
