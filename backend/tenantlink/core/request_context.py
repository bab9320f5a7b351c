# backend/tenantlink/core/request_context.py
from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("tl_request_id", default=None)


def set_request_id(rid: str | None) -> None:
    request_id_var.set(rid)


def get_request_id() -> str:
    return request_id_var.get() or "-"


# --- Store timing (request-scoped) ---

@dataclass
class StoreMetrics:
    query_count: int = 0
    total_ms: float = 0.0
    slowest_ms: float = 0.0


store_metrics_var: ContextVar[Optional[StoreMetrics]] = ContextVar("tl_store_metrics", default=None)


def reset_store_metrics() -> None:
    """Call once per request (in middleware) to start clean metrics."""
    store_metrics_var.set(StoreMetrics())


def get_store_metrics() -> StoreMetrics:
    m = store_metrics_var.get()
    if m is None:
        m = StoreMetrics()
        store_metrics_var.set(m)
    return m


def clear_store_metrics() -> None:
    store_metrics_var.set(None)


def record_store_query(duration_ms: float) -> None:
    m = get_store_metrics()
    m.query_count += 1
    m.total_ms += float(duration_ms)
    if float(duration_ms) > m.slowest_ms:
        m.slowest_ms = float(duration_ms)
