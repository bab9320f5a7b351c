# backend/tenantlink/services/cleanup.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import and_, delete, or_
from sqlalchemy.orm import Session

from tenantlink.core.config import settings
from tenantlink.models import InviteToken, RateLimitCounter
from tenantlink.services.invite_tokens import as_utc_aware, expiry_cutoff, utcnow

logger = logging.getLogger("tenantlink.cleanup")


@dataclass(frozen=True)
class CleanupResult:
    tokens_deleted: int
    counters_deleted: int
    cleaned_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tokens_deleted": self.tokens_deleted,
            "counters_deleted": self.counters_deleted,
            "cleaned_at": self.cleaned_at.isoformat(),
        }


def purge_terminal_invites(db: Session, *, now: datetime) -> int:
    """
    Delete invites that have been terminal for longer than their retention:

    - revoked:   revoked_at older than revoked_retention_days
    - expired:   expired (grace included) more than invite_retention_days ago
    - exhausted: exhausted_at older than invite_retention_days

    Active tokens are never touched.
    """
    retention = timedelta(days=int(settings.invite_retention_days))
    revoked_retention = timedelta(days=int(settings.revoked_retention_days))

    stmt = delete(InviteToken).where(
        or_(
            and_(InviteToken.revoked_at.is_not(None), InviteToken.revoked_at < now - revoked_retention),
            InviteToken.expires_at < expiry_cutoff(now) - retention,
            and_(InviteToken.exhausted_at.is_not(None), InviteToken.exhausted_at < now - retention),
        )
    ).execution_options(synchronize_session=False)

    return int(db.execute(stmt).rowcount or 0)


def purge_closed_rate_windows(db: Session, *, now_epoch: float) -> int:
    stmt = delete(RateLimitCounter).where(
        RateLimitCounter.window_start + RateLimitCounter.window_seconds <= int(now_epoch)
    ).execution_options(synchronize_session=False)

    return int(db.execute(stmt).rowcount or 0)


def run_cleanup(db: Session, *, now: Optional[datetime] = None) -> CleanupResult:
    """
    One sweep, one transaction. Errors propagate to the caller (task/script),
    which logs them; the next scheduled run retries.
    """
    now = as_utc_aware(now) or utcnow()
    logger.info("cleanup_started now=%s", now.isoformat())

    try:
        tokens_deleted = purge_terminal_invites(db, now=now)
        counters_deleted = purge_closed_rate_windows(db, now_epoch=now.timestamp())
        db.commit()
    except Exception:
        db.rollback()
        raise

    result = CleanupResult(
        tokens_deleted=tokens_deleted,
        counters_deleted=counters_deleted,
        cleaned_at=now,
    )
    logger.info(
        "cleanup_finished tokens_deleted=%s counters_deleted=%s",
        tokens_deleted,
        counters_deleted,
    )
    return result
