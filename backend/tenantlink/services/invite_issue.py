# backend/tenantlink/services/invite_issue.py
"""
Owner-side invite operations: generate, revoke, list.

Ownership is the only authorization rule: the caller must be the property's
owner_id. Unknown and foreign properties fail the same way.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from tenantlink.core.config import settings
from tenantlink.core.errors import (
    InvalidInviteRequest,
    InviteNotFound,
    PermissionDenied,
    TransientStoreError,
)
from tenantlink.models import InviteToken, Property
from tenantlink.services.invite_tokens import (
    TokenState,
    as_utc_aware,
    generate_invite_token,
    generate_salt,
    hash_invite_token,
    lookup_hash,
    mask_token,
    normalize_email,
    state_of,
    utcnow,
)

logger = logging.getLogger("tenantlink.invites")

# Collisions at 192 bits are not expected; this only bounds the loop.
_MAX_MINT_ATTEMPTS = 3


@dataclass(frozen=True)
class IssuedInvite:
    token: str  # raw value; returned to the owner exactly once
    invite: InviteToken


@dataclass(frozen=True)
class InviteSummary:
    id: str
    resource_id: str
    max_uses: int
    use_count: int
    intended_identity: Optional[str]
    issued_by: str
    created_at: Optional[datetime]
    expires_at: Optional[datetime]
    revoked_at: Optional[datetime]
    last_used_at: Optional[datetime]
    state: TokenState

    @property
    def uses_remaining(self) -> int:
        return max(0, self.max_uses - self.use_count)

    @property
    def can_revoke(self) -> bool:
        return self.state is not TokenState.REVOKED


def _owned_property_or_403(db: Session, *, owner_id: str, resource_id: str) -> Property:
    prop = db.execute(
        select(Property).where(Property.id == resource_id)
    ).scalar_one_or_none()
    if prop is None or prop.owner_id != owner_id:
        raise PermissionDenied()
    return prop


def coerce_max_uses(v: Optional[int]) -> int:
    max_uses = 1 if v is None else v
    try:
        max_uses = int(max_uses)
    except (TypeError, ValueError):
        raise InvalidInviteRequest("INVITE_BAD_MAX_USES", "max_uses must be an integer.")
    cap = int(settings.invite_max_uses)
    if max_uses < 1 or max_uses > cap:
        raise InvalidInviteRequest("INVITE_BAD_MAX_USES", f"max_uses must be between 1 and {cap}.")
    return max_uses


def coerce_ttl(expires_in_days: Optional[int]) -> timedelta:
    days = settings.invite_default_ttl_days if expires_in_days is None else expires_in_days
    try:
        days = int(days)
    except (TypeError, ValueError):
        raise InvalidInviteRequest("INVITE_BAD_EXPIRY", "expires_in_days must be an integer.")
    cap = int(settings.invite_max_ttl_days)
    if days < 1 or days > cap:
        raise InvalidInviteRequest("INVITE_BAD_EXPIRY", f"expires_in_days must be between 1 and {cap}.")
    return timedelta(days=days)


def _clean_intended_identity(email: Optional[str]) -> Optional[str]:
    e = normalize_email(email)
    if not e:
        return None
    local, _, domain = e.partition("@")
    if not local or "." not in domain:
        raise InvalidInviteRequest("INVITE_BAD_EMAIL", "Invalid email address.")
    return e


def generate_invite(
    db: Session,
    *,
    owner_id: str,
    resource_id: str,
    max_uses: Optional[int] = 1,
    ttl: Optional[timedelta] = None,
    intended_identity: Optional[str] = None,
    now: Optional[datetime] = None,
) -> IssuedInvite:
    """
    Mint a new invite for `resource_id` on behalf of its owner.

    Only the salted hash and the lookup hash are persisted; the raw token is in
    the return value and nowhere else.
    """
    now = as_utc_aware(now) or utcnow()
    max_uses = coerce_max_uses(max_uses)
    ttl = ttl if ttl is not None else coerce_ttl(None)
    if ttl.total_seconds() <= 0:
        raise InvalidInviteRequest("INVITE_BAD_EXPIRY", "ttl must be positive.")
    intended = _clean_intended_identity(intended_identity)

    try:
        _owned_property_or_403(db, owner_id=owner_id, resource_id=resource_id)

        for attempt in range(1, _MAX_MINT_ATTEMPTS + 1):
            raw_token = generate_invite_token()
            salt = generate_salt()
            inv = InviteToken(
                id=str(uuid.uuid4()),
                resource_id=resource_id,
                lookup_hash=lookup_hash(raw_token),
                token_hash=hash_invite_token(raw_token, salt),
                token_salt=salt,
                max_uses=max_uses,
                use_count=0,
                intended_identity=intended,
                issued_by=owner_id,
                created_at=now,
                expires_at=now + ttl,
            )
            db.add(inv)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning("invite_mint_collision resource_id=%s attempt=%s", resource_id, attempt)
                continue

            db.refresh(inv)
            logger.info(
                "invite_generated token_id=%s token=%s resource_id=%s max_uses=%s expires_at=%s intended=%s",
                inv.id,
                mask_token(raw_token),
                resource_id,
                max_uses,
                inv.expires_at.isoformat() if inv.expires_at else None,
                "yes" if intended else "no",
            )
            return IssuedInvite(token=raw_token, invite=inv)
    except OperationalError as exc:
        db.rollback()
        raise TransientStoreError() from exc

    raise TransientStoreError("Could not mint a unique invite token. Please retry.")


def revoke_invite(
    db: Session,
    *,
    owner_id: str,
    token_id: str,
    now: Optional[datetime] = None,
) -> InviteToken:
    """
    Set revoked_at once. Re-revoking is a no-op that reports the original time.
    """
    now = as_utc_aware(now) or utcnow()
    try:
        inv = db.execute(
            select(InviteToken).where(InviteToken.id == token_id)
        ).scalar_one_or_none()
        if inv is None:
            raise InviteNotFound()

        _owned_property_or_403(db, owner_id=owner_id, resource_id=inv.resource_id)

        # Conditional so two concurrent revokes never overwrite revoked_at.
        result = db.execute(
            update(InviteToken)
            .where(InviteToken.id == token_id, InviteToken.revoked_at.is_(None))
            .values(revoked_at=now, revoked_by=owner_id)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(inv)
    except OperationalError as exc:
        db.rollback()
        raise TransientStoreError() from exc

    logger.info(
        "invite_revoked token_id=%s resource_id=%s changed=%s",
        inv.id,
        inv.resource_id,
        "yes" if result.rowcount else "no",
    )
    return inv


def summarize_invite(inv: InviteToken, now: datetime) -> InviteSummary:
    return InviteSummary(
        id=inv.id,
        resource_id=inv.resource_id,
        max_uses=int(inv.max_uses),
        use_count=int(inv.use_count),
        intended_identity=inv.intended_identity,
        issued_by=inv.issued_by,
        created_at=as_utc_aware(inv.created_at),
        expires_at=as_utc_aware(inv.expires_at),
        revoked_at=as_utc_aware(inv.revoked_at),
        last_used_at=as_utc_aware(inv.last_used_at),
        state=state_of(inv, now),
    )


def list_invites(
    db: Session,
    *,
    owner_id: str,
    resource_id: str,
    now: Optional[datetime] = None,
) -> List[InviteSummary]:
    now = as_utc_aware(now) or utcnow()
    try:
        _owned_property_or_403(db, owner_id=owner_id, resource_id=resource_id)
        invites = db.execute(
            select(InviteToken)
            .where(InviteToken.resource_id == resource_id)
            .order_by(InviteToken.created_at.desc())
        ).scalars().all()
    except OperationalError as exc:
        db.rollback()
        raise TransientStoreError() from exc

    return [summarize_invite(inv, now) for inv in invites]
