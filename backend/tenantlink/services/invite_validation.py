# backend/tenantlink/services/invite_validation.py
"""
Unauthenticated invite preview.

Every non-success outcome collapses to the same generic "invalid" result, and
the hit and miss paths do the same work:

    1 lookup-hash computation
    1 indexed token query
    1 salted-hash computation + constant-time comparison (decoy on a miss)
    1 state evaluation (decoy on a miss)
    1 property query (sentinel id on a miss)

so neither the body nor the latency says whether a token exists.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from tenantlink.core.config import settings
from tenantlink.core.errors import TransientStoreError
from tenantlink.core.redaction import mask_email
from tenantlink.models import InviteToken, Property
from tenantlink.services.invite_tokens import (
    DUMMY_SALT,
    DUMMY_TOKEN_HASH,
    TokenState,
    as_utc_aware,
    lookup_hash,
    normalize_token,
    token_state,
    utcnow,
    verify_invite_token,
)

logger = logging.getLogger("tenantlink.invites")

INVALID_REASON = "invalid"

# Never a real property id (UUIDs are 36 chars with hyphens in fixed places).
_SENTINEL_PROPERTY_ID = "~"


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    resource_preview: Optional[Dict[str, Any]] = field(default=None)

    def to_public(self) -> Dict[str, Any]:
        if not self.valid:
            return {"valid": False, "reason": INVALID_REASON}
        return {"valid": True, "resource_preview": self.resource_preview}


INVALID = ValidationResult(valid=False)


def _preview(prop: Property, inv: InviteToken) -> Dict[str, Any]:
    expires_at = as_utc_aware(inv.expires_at)
    return {
        "id": prop.id,
        "name": prop.name,
        "address": prop.address,
        "city": prop.city,
        "state": prop.state,
        "zip": prop.zip,
        "unit": prop.unit,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "uses_remaining": max(0, int(inv.max_uses) - int(inv.use_count)),
        "intended_recipient_hint": mask_email(inv.intended_identity),
    }


def _pad_latency(started: float) -> None:
    floor_ms = int(settings.validate_min_latency_ms or 0)
    if floor_ms <= 0:
        return
    remaining = (floor_ms / 1000.0) - (time.perf_counter() - started)
    if remaining > 0:
        time.sleep(remaining)


def validate_invite(
    db: Session,
    raw_token: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> ValidationResult:
    started = time.perf_counter()
    now = as_utc_aware(now) or utcnow()
    token = normalize_token(raw_token)

    try:
        inv = db.execute(
            select(InviteToken).where(InviteToken.lookup_hash == lookup_hash(token))
        ).scalar_one_or_none()

        if inv is not None:
            salt, expected = inv.token_salt, inv.token_hash
            state = token_state(
                expires_at=inv.expires_at,
                revoked_at=inv.revoked_at,
                use_count=inv.use_count,
                max_uses=inv.max_uses,
                now=now,
            )
            property_id = inv.resource_id
        else:
            salt, expected = DUMMY_SALT, DUMMY_TOKEN_HASH
            state = token_state(
                expires_at=now - timedelta(days=1),
                revoked_at=None,
                use_count=0,
                max_uses=1,
                now=now,
            )
            property_id = _SENTINEL_PROPERTY_ID

        matches = verify_invite_token(token, salt, expected)

        prop = db.execute(
            select(Property).where(Property.id == property_id)
        ).scalar_one_or_none()
    except OperationalError as exc:
        db.rollback()
        raise TransientStoreError() from exc

    usable = inv is not None and matches and state is TokenState.ACTIVE and prop is not None

    # token_id is safe to log; the state is for operators only and never leaves the process.
    logger.info(
        "invite_validated valid=%s token_id=%s state=%s",
        "yes" if usable else "no",
        inv.id if inv is not None else "-",
        state.value if inv is not None else "not_found",
    )

    result = ValidationResult(valid=True, resource_preview=_preview(prop, inv)) if usable else INVALID
    _pad_latency(started)
    return result
