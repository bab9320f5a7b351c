# backend/tenantlink/core/rate_limit.py
import logging
import math
import time
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from tenantlink.core.config import settings
from tenantlink.core.errors import RateLimited, TransientStoreError
from tenantlink.db.session import get_db
from tenantlink.models import RateLimitCounter

logger = logging.getLogger("tenantlink.rate_limit")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    window_start: int
    retry_after: int


def client_ip(request: Request, trusted_hops: Optional[int] = None) -> str:
    """
    Caller address for rate-limit keys.

    Each trusted proxy appends the address it received from to X-Forwarded-For,
    so the client is the entry `trusted_hops` from the right. Anything left of
    it is caller-supplied and ignored. With no trusted proxies the forwarding
    headers are ignored entirely.
    """
    hops = settings.trusted_proxy_hops if trusted_hops is None else trusted_hops
    hops = max(0, int(hops))

    if hops:
        xff = request.headers.get("x-forwarded-for")
        if xff:
            chain = [ip.strip() for ip in xff.split(",") if ip.strip()]
            if chain:
                return chain[-min(hops, len(chain))]

        real_ip = (request.headers.get("x-real-ip") or "").strip()
        if real_ip:
            return real_ip

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Rate limiting needs an upsert-capable store, got dialect={dialect}")
    return insert


class RateLimiter:
    """
    Fixed-window counter stored in the shared database.

    One INSERT ... ON CONFLICT DO UPDATE ... RETURNING per hit, so concurrent
    requests from the same key on different instances never lose an update.
    """

    def __init__(self, scope: str, limit: int, window_seconds: int):
        self.scope = scope
        self.limit = int(limit)
        self.window_seconds = max(1, int(window_seconds))

    def window_start_for(self, now_epoch: float) -> int:
        return int(now_epoch // self.window_seconds) * self.window_seconds

    def check_and_increment(self, db: Session, key: str, *, now: Optional[float] = None) -> RateLimitDecision:
        now_epoch = time.time() if now is None else float(now)
        window_start = self.window_start_for(now_epoch)
        limiter_key = f"{self.scope}:{key}"

        insert = _insert_for(db)
        stmt = (
            insert(RateLimitCounter)
            .values(
                limiter_key=limiter_key,
                window_start=window_start,
                window_seconds=self.window_seconds,
                count=1,
            )
            .on_conflict_do_update(
                index_elements=[RateLimitCounter.limiter_key, RateLimitCounter.window_start],
                set_={"count": RateLimitCounter.count + 1},
            )
            .returning(RateLimitCounter.count)
        )

        try:
            count = int(db.execute(stmt).scalar_one())
            db.commit()
        except OperationalError as exc:
            db.rollback()
            logger.warning("rate_limit_store_error scope=%s error=%s", self.scope, exc.__class__.__name__)
            raise TransientStoreError() from exc

        retry_after = max(1, int(math.ceil(window_start + self.window_seconds - now_epoch)))
        allowed = count <= self.limit

        return RateLimitDecision(
            allowed=allowed,
            count=count,
            limit=self.limit,
            window_start=window_start,
            retry_after=retry_after,
        )

    def hit(self, db: Session, key: str, *, now: Optional[float] = None) -> RateLimitDecision:
        decision = self.check_and_increment(db, key, now=now)
        if not decision.allowed:
            logger.warning(
                "rate_limited scope=%s key=%s count=%s limit=%s retry_after=%s",
                self.scope,
                key,
                decision.count,
                decision.limit,
                decision.retry_after,
            )
            raise RateLimited(retry_after=decision.retry_after)
        return decision


# === Per-endpoint limiters (limits read at call time so config changes apply) ===

def validate_limiter() -> RateLimiter:
    return RateLimiter("validate-invite", settings.validate_rate_limit, settings.validate_rate_window)


def accept_limiter() -> RateLimiter:
    return RateLimiter("accept-invite", settings.accept_rate_limit, settings.accept_rate_window)


def validate_rate_limit(request: Request, db: Session = Depends(get_db)) -> None:
    validate_limiter().hit(db, client_ip(request))


def accept_rate_limit(request: Request, db: Session = Depends(get_db)) -> None:
    accept_limiter().hit(db, client_ip(request))
