import logging
import os
import time

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL

logger = logging.getLogger(__name__)

# Pool settings apply to server databases only
POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "300"))
LOG_SLOW_QUERIES = os.getenv("DB_LOG_SLOW_QUERIES", "true").lower() == "true"
SLOW_QUERY_SECONDS = float(os.getenv("DB_SLOW_QUERY_THRESHOLD", "1.0"))


def _engine_options(url: str) -> dict:
    # FastAPI runs sync dependencies in a threadpool, so SQLite connections must be shareable
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_recycle": POOL_RECYCLE,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
    }


engine = create_engine(DATABASE_URL, echo=False, **_engine_options(DATABASE_URL))
logger.info(f"✅ Database engine ready ({engine.url.get_backend_name()})")

if LOG_SLOW_QUERIES:

    @event.listens_for(engine, "before_cursor_execute")
    def _start_query_timer(conn, _cursor, _statement, _parameters, _context, _executemany):
        conn.info.setdefault("query_started", []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def _log_slow_query(conn, _cursor, statement, _parameters, _context, _executemany):
        elapsed = time.perf_counter() - conn.info["query_started"].pop()
        if elapsed > SLOW_QUERY_SECONDS:
            logger.warning(f"🐌 Slow query ({elapsed:.2f}s): {statement[:200]}...")


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """Request-scoped session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
