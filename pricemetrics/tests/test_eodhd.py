"""
EODHD client and normalizer tests

No network: the client is exercised through httpx.MockTransport.
"""

import asyncio
import time
from datetime import date, datetime

import httpx
import pytest

from pricemetrics import config
from pricemetrics.api_clients import eodhd_client
from pricemetrics.normalizers.eodhd_normalizer import normalize_prices, standardize_to_market_close


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

def test_market_close_standardization_handles_dst():
    # EST (UTC-5) in January, EDT (UTC-4) in July
    assert standardize_to_market_close("2024-01-16") == datetime(2024, 1, 16, 21, 0)
    assert standardize_to_market_close("2024-07-16") == datetime(2024, 7, 16, 20, 0)
    assert standardize_to_market_close(date(2024, 7, 16)) == datetime(2024, 7, 16, 20, 0)
    assert standardize_to_market_close("not a date") is None


def test_normalize_prices_drops_malformed_and_sorts():
    bars = [
        {"date": "2024-01-17", "close": 11.0, "volume": 900},
        {"date": "2024-01-16", "close": 10.0},
        {"date": "bad", "close": 1.0},
        {"date": "2024-01-18", "close": None},
        {"date": "2024-01-17", "close": 11.5, "volume": 1_000},
    ]
    prices = normalize_prices("AAPL", bars)

    assert [p.date.day for p in prices] == [16, 17]
    assert prices[0].volume == 0.0
    assert prices[1].price == 11.5
    assert prices[1].volume == 1_000.0
    assert all(p.ticker == "AAPL" for p in prices)


def test_normalize_prices_empty():
    assert normalize_prices("AAPL", []) == []


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

def test_qualified_symbol():
    assert eodhd_client.qualified_symbol("AAPL") == f"AAPL.{config.DEFAULT_EXCHANGE}"
    assert eodhd_client.qualified_symbol("AAPL", "NASDAQ") == "AAPL.NASDAQ"
    assert eodhd_client.qualified_symbol("SAP.XETRA", "US") == "SAP.XETRA"


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _fetch(handler):
    async with _client(handler) as client:
        return await eodhd_client.fetch_historical_prices(
            "AAPL", date(2024, 1, 1), date(2024, 1, 31), client
        )


def test_fetch_historical_prices_builds_request(monkeypatch):
    monkeypatch.setattr(config, "EOD_API_TOKEN", "demo")
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"date": "2024-01-02", "close": 185.6, "volume": 1}])

    bars = asyncio.run(_fetch(handler))

    assert bars == [{"date": "2024-01-02", "close": 185.6, "volume": 1}]
    assert seen[0].url.path.endswith("/eod/AAPL.US")
    assert seen[0].url.params["from"] == "2024-01-01"
    assert seen[0].url.params["to"] == "2024-01-31"
    assert seen[0].url.params["api_token"] == "demo"


def test_fetch_retries_transport_errors(monkeypatch):
    monkeypatch.setattr(config, "EOD_API_TOKEN", "demo")
    attempts = []

    def handler(request):
        attempts.append(1)
        if len(attempts) < 2:
            raise httpx.ConnectError("boom", request=request)
        return httpx.Response(200, json=[])

    assert asyncio.run(_fetch(handler)) == []
    assert len(attempts) == 2


def test_fetch_raises_on_http_error(monkeypatch):
    monkeypatch.setattr(config, "EOD_API_TOKEN", "demo")
    with pytest.raises(RuntimeError, match="HTTP 404"):
        asyncio.run(_fetch(lambda request: httpx.Response(404)))


def test_fetch_rejects_non_list_payload(monkeypatch):
    monkeypatch.setattr(config, "EOD_API_TOKEN", "demo")
    with pytest.raises(RuntimeError, match="Unexpected EOD payload"):
        asyncio.run(_fetch(lambda request: httpx.Response(200, json={"error": "x"})))


def test_fetch_requires_token(monkeypatch):
    monkeypatch.setattr(config, "EOD_API_TOKEN", "")
    with pytest.raises(RuntimeError, match="EOD_API_TOKEN"):
        asyncio.run(_fetch(lambda request: httpx.Response(200, json=[])))


def test_request_gate_survives_successive_event_loops(monkeypatch):
    monkeypatch.setattr(config, "EOD_API_TOKEN", "demo")
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json=[])

    async def concurrent_fetches():
        async with _client(handler) as client:
            return await asyncio.gather(*[
                eodhd_client.fetch_historical_prices(t, date(2024, 1, 1), date(2024, 1, 2), client)
                for t in ("AAA", "BBB", "CCC")
            ])

    # the second run contends the gate on a fresh loop
    assert asyncio.run(concurrent_fetches()) == [[], [], []]
    assert asyncio.run(concurrent_fetches()) == [[], [], []]
    assert len(calls) == 6


def test_request_gate_spaces_requests():
    gate = eodhd_client.RequestGate(interval_ms=50)
    stamps = []

    async def hit():
        await gate.wait()
        stamps.append(time.monotonic())

    async def run():
        await asyncio.gather(hit(), hit(), hit())

    asyncio.run(run())
    gaps = [b - a for a, b in zip(stamps, stamps[1:])]
    assert all(g >= 0.04 for g in gaps)
