# backend/tenantlink/core/errors.py

from __future__ import annotations

import logging
from typing import Any, Optional

from tenantlink.core.redaction import sanitize_log
from tenantlink.core.request_context import get_request_id

logger = logging.getLogger("tenantlink")


class InviteError(Exception):
    """
    Base for every domain error the invite service raises.

    Each subclass pins a stable `code` (wire contract) and the HTTP status the
    API layer renders it with.
    """

    code = "invite_error"
    status_code = 400
    default_message = "Request failed."

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class PermissionDenied(InviteError):
    code = "permission_denied"
    status_code = 403
    default_message = "You do not have permission to manage invites for this property."


class InviteNotFound(InviteError):
    code = "invite_not_found"
    status_code = 404
    default_message = "Invite not found."


class InvalidInviteRequest(InviteError):
    status_code = 400

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class InviteRejected(InviteError):
    """
    Acceptance-path rejection. Only ever surfaced to authenticated callers.
    """


class InvalidInvite(InviteRejected):
    code = "invalid"
    status_code = 404
    default_message = "This invite link is not valid. Please request a new one from your landlord."


class InviteExpired(InviteRejected):
    code = "expired"
    status_code = 410
    default_message = "This invite link has expired. Please request a new one from your landlord."


class InviteRevoked(InviteRejected):
    code = "revoked"
    status_code = 410
    default_message = "This invite link has been cancelled by your landlord. Please request a new one."


class CapacityReached(InviteRejected):
    code = "capacity_reached"
    status_code = 409
    default_message = "This invite link has already been used. Please request a new one from your landlord."


class WrongAccount(InviteRejected):
    code = "wrong_account"
    status_code = 403
    default_message = "This invite was sent to a different account. Sign in with the invited email address."


class RateLimited(InviteError):
    code = "rate_limited"
    status_code = 429
    default_message = "Too many requests, please slow down."

    def __init__(self, retry_after: int, message: Optional[str] = None) -> None:
        super().__init__(message)
        self.retry_after = int(retry_after)


class TransientStoreError(InviteError):
    """
    Connection blip, lock timeout, statement timeout. Safe to retry with backoff.
    """

    code = "store_unavailable"
    status_code = 503
    default_message = "The service is temporarily unavailable. Please retry."
    retry_after = 1


class RequestIdFilter(logging.Filter):
    """
    Injects request_id into every LogRecord as `record.request_id`.
    Falls back to "-" outside a request.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            record.request_id = get_request_id()
        except Exception:
            record.request_id = "-"
        return True


def install_request_id_logging(
    logger_name: str = "tenantlink",
    *,
    include_root: bool = True,
) -> None:
    """
    Attach RequestIdFilter so logs can include %(request_id)s in the formatter.
    Call once during startup.
    """
    filt = RequestIdFilter()

    if include_root:
        logging.getLogger().addFilter(filt)

    logging.getLogger(logger_name).addFilter(filt)


def log_exception_with_context(
    message: str,
    *,
    request_id: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """
    Log the currently-handled exception with stack trace and request context.

    `extra` goes through sanitize_log, so values under token/secret-like keys
    are redacted.
    """
    rid = request_id or _safe_request_id()
    payload: dict[str, Any] = {"request_id": rid}
    if extra:
        payload.update(sanitize_log(extra))

    logger.exception("%s context=%s", message, payload)


def _safe_request_id() -> str:
    try:
        return get_request_id() or "-"
    except Exception:
        return "-"
