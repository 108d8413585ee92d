"""
HTTP API tests

The operational session is swapped for an in-memory SQLite session and the
orchestrator entry points are replaced, so no provider is contacted.
"""

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pricemetrics import main
from pricemetrics.database import Base, get_db
from pricemetrics.orchestrator.price_metrics_orchestrator import PriceMetricsRunResult
from pricemetrics.repositories import metrics_repo
from pricemetrics.schemas import DerivedMetricRow


@pytest.fixture
def db():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine)()
    yield session
    session.close()


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _seed(db):
    metrics_repo.upsert_price_metrics(db, [
        DerivedMetricRow(ticker="AAPL", symbol="AAPL", date=datetime(2024, 1, d, 21),
                         price=180.0 + d, volume=1e6, market_cap=2.8e12, pe_ratio_ttm=29.5)
        for d in (2, 3, 4)
    ])


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_list_price_metrics_range_and_case(client, db):
    _seed(db)
    resp = client.get("/price-metrics/aapl", params={"start": "2024-01-03", "end": "2024-01-04"})
    assert resp.status_code == 200
    assert [r["price"] for r in resp.json()] == [184.0, 183.0]


def test_latest_price_metrics(client, db):
    _seed(db)
    assert client.get("/price-metrics/AAPL/latest").json()["price"] == 184.0
    assert client.get("/price-metrics/MSFT/latest").status_code == 404


def test_compute_rejects_inverted_range(client):
    resp = client.post("/price-metrics/AAPL/compute", json={"start": "2024-02-01", "end": "2024-01-01"})
    assert resp.status_code == 422


def test_compute_runs_single_ticker(client, monkeypatch):
    calls = []

    async def fake_compute(db, ticker, start, end):
        calls.append((ticker, start, end))
        result = PriceMetricsRunResult("ticker")
        result.batch_loaded(3)
        return result

    monkeypatch.setattr(main, "compute_ticker", fake_compute)
    resp = client.post("/price-metrics/AAPL/compute", json={"start": "2024-01-01", "end": "2024-01-31"})

    assert resp.status_code == 200
    assert resp.json()["rows_loaded"] == 3
    ticker, start, end = calls[0]
    assert ticker == "AAPL"
    assert start == datetime(2024, 1, 1)
    assert end.date().isoformat() == "2024-01-31"


def test_compute_failure_maps_to_502(client, monkeypatch):
    async def boom(db, ticker, start, end):
        raise RuntimeError("Merge into stock_metrics failed")

    monkeypatch.setattr(main, "compute_ticker", boom)
    resp = client.post("/price-metrics/AAPL/compute", json={})
    assert resp.status_code == 502


def test_hydrate_and_refresh_are_accepted(client, monkeypatch):
    ran = []

    async def fake_run(db, **kwargs):
        ran.append(db)
        return PriceMetricsRunResult("fake")

    monkeypatch.setattr(main, "hydrate_all_data", fake_run)
    monkeypatch.setattr(main, "refresh_price_data", fake_run)

    assert client.post("/price-metrics/hydrate").status_code == 202
    assert client.post("/price-metrics/refresh").status_code == 202
    assert len(ran) == 2
