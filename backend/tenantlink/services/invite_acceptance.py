# backend/tenantlink/services/invite_acceptance.py
"""
Authenticated, transactional redemption of an invite token.

The store decides how many uses remain: consumption is one conditional
UPDATE (use_count < max_uses AND not revoked AND not expired) followed by the
grant INSERT in the same transaction. Zero affected rows means the token was
not usable at that instant; the specific reason is worked out afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, case, literal, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from tenantlink.core.errors import (
    CapacityReached,
    InvalidInvite,
    InviteExpired,
    InviteRejected,
    InviteRevoked,
    TransientStoreError,
    WrongAccount,
)
from tenantlink.models import AccessGrant, InviteToken
from tenantlink.services.invite_tokens import (
    DUMMY_SALT,
    DUMMY_TOKEN_HASH,
    TokenState,
    as_utc_aware,
    expiry_cutoff,
    lookup_hash,
    normalize_email,
    normalize_token,
    state_of,
    utcnow,
    verify_invite_token,
)

logger = logging.getLogger("tenantlink.invites")


@dataclass(frozen=True)
class AcceptResult:
    resource_id: str
    token_id: str
    already_linked: bool

    def to_public(self) -> Dict[str, Any]:
        return {
            "success": True,
            "resource_id": self.resource_id,
            "already_linked": self.already_linked,
        }


def rejection_for(state: TokenState) -> InviteRejected:
    if state is TokenState.REVOKED:
        return InviteRevoked()
    if state is TokenState.EXPIRED:
        return InviteExpired()
    # EXHAUSTED, or ACTIVE when the conditional update lost a race for the last use
    return CapacityReached()


def _consume_one_use(db: Session, token_id: str, now: datetime) -> bool:
    now_param = literal(now, type_=DateTime(timezone=True))
    result = db.execute(
        update(InviteToken)
        .where(
            InviteToken.id == token_id,
            InviteToken.revoked_at.is_(None),
            InviteToken.use_count < InviteToken.max_uses,
            InviteToken.expires_at >= expiry_cutoff(now),
        )
        .values(
            use_count=InviteToken.use_count + 1,
            last_used_at=now,
            exhausted_at=case(
                (InviteToken.use_count + 1 >= InviteToken.max_uses, now_param),
                else_=InviteToken.exhausted_at,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _grant_for(db: Session, grantee_id: str, resource_id: str) -> Optional[AccessGrant]:
    return db.execute(
        select(AccessGrant).where(
            AccessGrant.grantee_id == grantee_id,
            AccessGrant.resource_id == resource_id,
        )
    ).scalar_one_or_none()


def accept_invite(
    db: Session,
    raw_token: Optional[str],
    *,
    grantee_id: str,
    grantee_email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AcceptResult:
    """
    Redeem `raw_token` for `grantee_id`.

    Returns on success (including idempotent replays); raises an
    InviteRejected subclass with a specific code otherwise.
    """
    now = as_utc_aware(now) or utcnow()
    token = normalize_token(raw_token)

    try:
        inv = db.execute(
            select(InviteToken).where(InviteToken.lookup_hash == lookup_hash(token))
        ).scalar_one_or_none()

        salt, expected = (inv.token_salt, inv.token_hash) if inv is not None else (DUMMY_SALT, DUMMY_TOKEN_HASH)
        if not verify_invite_token(token, salt, expected) or inv is None:
            raise InvalidInvite()

        token_id, resource_id = inv.id, inv.resource_id

        existing = _grant_for(db, grantee_id, resource_id)

        if existing is not None and existing.token_id == token_id:
            # Replay of a redemption that already committed.
            logger.info("invite_accept_replay token_id=%s grantee_id=%s", token_id, grantee_id)
            return AcceptResult(resource_id=resource_id, token_id=token_id, already_linked=True)

        intended = normalize_email(inv.intended_identity)
        if intended and normalize_email(grantee_email) != intended:
            raise WrongAccount()

        if existing is not None:
            # Linked through another invite: honor a usable token without spending a use.
            state = state_of(inv, now)
            if state is not TokenState.ACTIVE:
                raise rejection_for(state)
            logger.info("invite_accept_already_linked token_id=%s grantee_id=%s", token_id, grantee_id)
            return AcceptResult(resource_id=resource_id, token_id=token_id, already_linked=True)

        if not _consume_one_use(db, token_id, now):
            db.rollback()
            fresh = db.execute(
                select(InviteToken)
                .where(InviteToken.id == token_id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if fresh is None:
                raise InvalidInvite()
            state = state_of(fresh, now)

            # A duplicate accept by this grantee may have committed between our
            # grant read and the update; that caller is linked, not rejected.
            linked = _grant_for(db, grantee_id, resource_id)
            if linked is not None and (linked.token_id == token_id or state is TokenState.ACTIVE):
                logger.info("invite_accept_concurrent_duplicate token_id=%s grantee_id=%s", token_id, grantee_id)
                return AcceptResult(resource_id=resource_id, token_id=token_id, already_linked=True)
            raise rejection_for(state)

        db.add(
            AccessGrant(
                grantee_id=grantee_id,
                resource_id=resource_id,
                token_id=token_id,
                created_at=now,
            )
        )
        try:
            db.flush()
        except IntegrityError:
            # A concurrent accept by the same grantee won; undo our increment too.
            db.rollback()
            logger.info("invite_accept_concurrent_duplicate token_id=%s grantee_id=%s", token_id, grantee_id)
            return AcceptResult(resource_id=resource_id, token_id=token_id, already_linked=True)

        db.commit()
    except InviteRejected as exc:
        db.rollback()
        logger.info(
            "invite_accept_rejected code=%s grantee_id=%s",
            exc.code,
            grantee_id,
        )
        raise
    except OperationalError as exc:
        db.rollback()
        logger.warning("invite_accept_store_error grantee_id=%s error=%s", grantee_id, exc.__class__.__name__)
        raise TransientStoreError() from exc

    logger.info("invite_accepted token_id=%s resource_id=%s grantee_id=%s", token_id, resource_id, grantee_id)
    return AcceptResult(resource_id=resource_id, token_id=token_id, already_linked=False)
