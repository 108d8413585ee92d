import logging
from datetime import date, datetime, time, timedelta

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy.orm import Session

from pricemetrics import config
from pricemetrics.database import Base, SessionLocal, engine, get_db
from pricemetrics.orchestrator.price_metrics_orchestrator import (
    compute_ticker,
    hydrate_all_data,
    refresh_price_data,
)
from pricemetrics.repositories import metrics_repo

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Price Metrics Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Base.metadata.create_all(bind=engine)


class ComputeRequest(BaseModel):
    start: date | None = None
    end: date | None = None


def _day_start(d: date) -> datetime:
    return datetime.combine(d, time.min)


def _day_end(d: date) -> datetime:
    return datetime.combine(d, time.max)


# ---------------------------------------------------------------------------
# Background runs (own session, errors logged)
# ---------------------------------------------------------------------------

async def _run_hydrate() -> None:
    db = SessionLocal()
    try:
        result = await hydrate_all_data(db)
        logger.info("[API] hydrate finished: %s", result.as_dict())
    except Exception as exc:
        logger.error("[API] hydrate failed: %s", exc)
    finally:
        db.close()


async def _run_refresh() -> None:
    db = SessionLocal()
    try:
        result = await refresh_price_data(db)
        logger.info("[API] refresh finished: %s", result.as_dict())
    except Exception as exc:
        logger.error("[API] refresh failed: %s", exc)
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def healthcheck():
    return {"status": "ok"}


@app.get("/price-metrics/{ticker}")
def list_price_metrics(
    ticker: str,
    start: date | None = None,
    end: date | None = None,
    limit: int = 500,
    db: Session = Depends(get_db),
):
    return metrics_repo.get_price_metrics(
        db,
        ticker.strip().upper(),
        start=_day_start(start) if start else None,
        end=_day_end(end) if end else None,
        limit=limit,
    )


@app.get("/price-metrics/{ticker}/latest")
def latest_price_metrics(ticker: str, db: Session = Depends(get_db)):
    ticker_upper = ticker.strip().upper()
    row = metrics_repo.get_latest_price_metrics(db, ticker_upper)
    if row is None:
        raise HTTPException(status_code=404, detail=f"No price metrics for {ticker_upper}")
    return row


@app.post("/price-metrics/hydrate", status_code=202)
def start_hydrate(background_tasks: BackgroundTasks):
    background_tasks.add_task(_run_hydrate)
    return {"ok": True, "mode": "hydrate"}


@app.post("/price-metrics/refresh", status_code=202)
def start_refresh(background_tasks: BackgroundTasks):
    background_tasks.add_task(_run_refresh)
    return {"ok": True, "mode": "refresh"}


@app.post("/price-metrics/{ticker}/compute")
async def compute_price_metrics(ticker: str, body: ComputeRequest, db: Session = Depends(get_db)):
    end = body.end or date.today()
    start = body.start or (end - timedelta(days=config.REFRESH_WINDOW_DAYS))
    if start > end:
        raise HTTPException(status_code=422, detail="start must not be after end")
    try:
        result = await compute_ticker(db, ticker, _day_start(start), _day_end(end))
    except Exception as exc:
        logger.error("[API] compute failed for %s: %s", ticker, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return result.as_dict()
