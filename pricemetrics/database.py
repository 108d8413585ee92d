from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from pricemetrics.config import ANALYTICS_DATABASE_URL, OPERATIONAL_DATABASE_URL


def _connect_args(url: str) -> dict:
    # SQLite connections are shared with FastAPI's threadpool
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


engine = create_engine(OPERATIONAL_DATABASE_URL, connect_args=_connect_args(OPERATIONAL_DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

if ANALYTICS_DATABASE_URL == OPERATIONAL_DATABASE_URL:
    analytics_engine = engine
else:
    analytics_engine = create_engine(ANALYTICS_DATABASE_URL, connect_args=_connect_args(ANALYTICS_DATABASE_URL))


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
