# backend/tenantlink/main.py

import logging
import time
import traceback
import uuid
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tenantlink.core.config import settings
from tenantlink.core.errors import InviteError, InviteRejected, install_request_id_logging
from tenantlink.core.rate_limit import client_ip
from tenantlink.core.request_context import (
    clear_store_metrics,
    get_request_id,
    get_store_metrics,
    reset_store_metrics,
    set_request_id,
)

# --- Logging setup ---
# LogRecordFactory runs for every record, so %(request_id)s never raises KeyError
# even on third-party loggers the filter is not attached to.
_old_factory = logging.getLogRecordFactory()


def _record_factory(*args, **kwargs):
    record = _old_factory(*args, **kwargs)
    if not hasattr(record, "request_id"):
        record.request_id = "-"
    return record


logging.setLogRecordFactory(_record_factory)

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s %(name)s request_id=%(request_id)s %(message)s",
)
install_request_id_logging()

logger = logging.getLogger("tenantlink")

# Refuse to serve production traffic with development secrets.
_insecure = settings.insecure_secrets()
if _insecure and settings.is_prod:
    raise RuntimeError(f"Refusing to start in {settings.environment}: insecure defaults for {', '.join(_insecure)}")
if _insecure:
    logger.warning("Startup: insecure development defaults in use for %s", ",".join(_insecure))

enable_docs = settings.enable_docs
logger.info("Startup: enable_docs=%s", enable_docs)

# Log DB backend type (sqlite, postgresql, ...) without leaking credentials
db_backend = (settings.database_url or "").split(":", 1)[0] or "unknown"
logger.info("DB backend detected: %s", db_backend)

SLOW_HTTP_MS = float(settings.slow_http_ms)

# --- App setup ---
app = FastAPI(
    title="TenantLink Invite API",
    openapi_url="/api/v1/openapi.json" if enable_docs else None,
    docs_url="/api/v1/docs" if enable_docs else None,
    redoc_url="/api/v1/redoc" if enable_docs else None,
)


def _get_request_id(request: Request) -> str:
    """
    Use an incoming request id if present (common in proxies),
    otherwise generate one.
    """
    incoming = request.headers.get("x-request-id") or request.headers.get("x-correlation-id")
    if incoming and incoming.strip():
        return incoming.strip()[:128]
    return uuid.uuid4().hex


def _rid_from_request(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    if isinstance(rid, str) and rid.strip():
        return rid
    rid2 = get_request_id()
    if rid2 and rid2 != "-":
        return rid2
    return uuid.uuid4().hex


def _error_payload(code: str, message: str, request_id: str, extra: Optional[dict] = None) -> dict:
    """
    Standardized error contract:
    - code/message/request_id (stable)
    - detail mirrors code/message for clients that read FastAPI's default shape
    """
    payload: dict[str, Any] = {
        "code": code,
        "message": message,
        "request_id": request_id,
        "detail": {"code": code, "message": message},
    }
    if extra:
        payload.update(extra)
    return payload


def _http_exception_payload(exc: HTTPException, *, request_id: str) -> dict:
    code = f"HTTP_{exc.status_code}"

    if isinstance(exc.detail, dict):
        msg = exc.detail.get("message")
        if not isinstance(msg, str) or not msg.strip():
            msg = "Request failed."

        merged_detail: dict[str, Any] = {"code": code, "message": msg}
        merged_detail.update(exc.detail)
        return _error_payload(code=code, message=msg, request_id=request_id, extra={"detail": merged_detail})

    msg = exc.detail if isinstance(exc.detail, str) else "Request failed."
    return _error_payload(code=code, message=msg, request_id=request_id)


# --- Exception handlers (standardized error contract) ---
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    request_id = _rid_from_request(request)
    resp = JSONResponse(
        status_code=exc.status_code,
        content=_http_exception_payload(exc, request_id=request_id),
        headers=getattr(exc, "headers", None),
    )
    resp.headers["X-Request-ID"] = request_id
    return resp


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = _rid_from_request(request)
    resp = JSONResponse(
        status_code=422,
        content=_error_payload(
            code="VALIDATION_ERROR",
            message="Validation error. Check request body/query parameters.",
            request_id=request_id,
            extra={"errors": exc.errors()},
        ),
    )
    resp.headers["X-Request-ID"] = request_id
    return resp


@app.exception_handler(InviteError)
async def invite_error_handler(request: Request, exc: InviteError):
    """
    Domain errors keep their lowercase wire code in `error` (acceptance path)
    and their uppercased form in the shared `code` field.
    """
    request_id = _rid_from_request(request)

    extra: dict[str, Any] = {}
    if isinstance(exc, InviteRejected):
        extra = {"success": False, "error": exc.code}

    resp = JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(
            code=exc.code.upper(),
            message=exc.message,
            request_id=request_id,
            extra=extra,
        ),
    )
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        resp.headers["Retry-After"] = str(int(retry_after))
    resp.headers["X-Request-ID"] = request_id
    return resp


# --- Observability middleware: request id + timing + structured logs ---
@app.middleware("http")
async def request_observability(request: Request, call_next):
    request_id = _get_request_id(request)
    request.state.request_id = request_id
    set_request_id(request_id)
    reset_store_metrics()

    start = time.perf_counter()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = getattr(response, "status_code", 200) or 200
        response.headers["X-Request-ID"] = request_id
        return response

    except Exception as e:
        if isinstance(e, (HTTPException, RequestValidationError, InviteError)):
            raise

        # The traceback may carry request values; it goes to the log only.
        logger.error(
            "Unhandled error method=%s path=%s error=%s",
            request.method,
            request.url.path,
            e.__class__.__name__,
        )
        logger.error(traceback.format_exc())

        resp = JSONResponse(
            status_code=500,
            content=_error_payload(
                code="INTERNAL_ERROR",
                message="Internal Server Error",
                request_id=request_id,
            ),
        )
        resp.headers["X-Request-ID"] = request_id
        status_code = 500
        return resp

    finally:
        duration_ms = (time.perf_counter() - start) * 1000.0

        m = get_store_metrics()
        slow_db_total_ms = float(settings.slow_db_total_ms)

        # Path only: invite tokens travel in request bodies, never in URLs or logs.
        log_fn = logger.warning if duration_ms >= SLOW_HTTP_MS else logger.info
        log_fn(
            "req request_id=%s method=%s path=%s status=%s duration_ms=%.2f db_total_ms=%.2f db_q=%s db_slowest_ms=%.2f ip=%s",
            request_id,
            request.method,
            request.url.path,
            status_code,
            duration_ms,
            m.total_ms,
            m.query_count,
            m.slowest_ms,
            client_ip(request),
        )

        if m.total_ms >= slow_db_total_ms:
            logger.warning(
                "slow_db_total request_id=%s method=%s path=%s status=%s db_total_ms=%.2f db_q=%s",
                request_id,
                request.method,
                request.url.path,
                status_code,
                m.total_ms,
                m.query_count,
            )

        clear_store_metrics()
        set_request_id(None)


# --- CORS setup ---
allowed = settings.origins_list()
logger.info("CORS allow_origins=%s", allowed)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Routers ---
from tenantlink.api.v1 import health, invites  # noqa: E402

app.include_router(health.router, prefix="/api/v1")
app.include_router(invites.router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
def root():
    return {"status": "TenantLink invite API is running. See /api/v1/health."}
