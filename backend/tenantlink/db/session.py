# backend/tenantlink/db/session.py
import time
import logging
from typing import Any, Dict

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from tenantlink.core.config import settings
from tenantlink.core.request_context import get_request_id, record_store_query

logger = logging.getLogger("tenantlink.db")

DATABASE_URL = settings.database_url or "sqlite:///./tenantlink.db"


def engine_connect_args(url: str, timeout_seconds: float) -> Dict[str, Any]:
    """
    Bound every store call by `timeout_seconds`.

    - SQLite: busy timeout (how long a writer waits for the database lock).
    - PostgreSQL: server-side statement_timeout.
    """
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": float(timeout_seconds)}
    if url.startswith("postgresql"):
        return {"options": f"-c statement_timeout={int(float(timeout_seconds) * 1000)}"}
    return {}


def _sql_head(statement: str) -> str:
    if not statement:
        return ""
    # Collapse whitespace + trim. No params logged (they can carry token hashes).
    return " ".join(statement.split())[:240]


def install_query_observability(target: Engine) -> None:
    """
    Per-query timing into request metrics + slow query warnings.
    """

    @event.listens_for(target, "before_cursor_execute")
    def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        context._tl_query_start = time.perf_counter()

    @event.listens_for(target, "after_cursor_execute")
    def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start = getattr(context, "_tl_query_start", None)
        if start is None:
            return

        duration_ms = (time.perf_counter() - start) * 1000.0
        record_store_query(duration_ms)

        if duration_ms >= float(settings.slow_db_query_ms):
            if settings.log_db_sql:
                logger.warning(
                    "slow_db_query request_id=%s duration_ms=%.2f sql=%s",
                    get_request_id(),
                    duration_ms,
                    _sql_head(statement),
                )
            else:
                logger.warning(
                    "slow_db_query request_id=%s duration_ms=%.2f",
                    get_request_id(),
                    duration_ms,
                )


def build_engine(url: str, *, timeout_seconds: float | None = None) -> Engine:
    timeout = settings.store_timeout_seconds if timeout_seconds is None else timeout_seconds
    built = create_engine(
        url,
        connect_args=engine_connect_args(url, timeout),
        pool_pre_ping=not url.startswith("sqlite"),
        future=True,
    )
    install_query_observability(built)
    return built


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
