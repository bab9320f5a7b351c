# backend/tenantlink/api/v1/invites.py

from datetime import datetime, timedelta
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from tenantlink.core.rate_limit import accept_rate_limit, validate_rate_limit
from tenantlink.core.security import Identity, get_current_identity
from tenantlink.db.session import get_db
from tenantlink.services.invite_acceptance import accept_invite
from tenantlink.services.invite_issue import (
    coerce_ttl,
    generate_invite,
    list_invites,
    revoke_invite,
)
from tenantlink.services.invite_tokens import as_utc_aware
from tenantlink.services.invite_validation import validate_invite

router = APIRouter(tags=["invites"])


# ---------- Schemas ----------

class InviteCreateRequest(BaseModel):
    max_uses: Optional[int] = 1
    expires_in_days: Optional[int] = None  # defaults to settings.invite_default_ttl_days
    intended_identity: Optional[str] = None


class InviteCreateResponse(BaseModel):
    token: str  # returned ONLY here, ONLY once
    token_id: str
    resource_id: str
    max_uses: int
    expires_at: datetime


class InviteTokenIn(BaseModel):
    token: str = Field(default="", max_length=512)


class InviteRevokeResponse(BaseModel):
    revoked: bool
    token_id: str
    revoked_at: Optional[datetime] = None


class InviteListItem(BaseModel):
    id: str
    resource_id: str
    max_uses: int
    use_count: int
    uses_remaining: int
    intended_identity: Optional[str] = None
    issued_by: str
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    # canonical server-side state so UI does not guess
    status: Literal["active", "exhausted", "expired", "revoked"]
    can_revoke: bool


# ---------- Routes ----------

@router.post("/properties/{property_id}/invites", response_model=InviteCreateResponse)
def create_invite(
    property_id: str,
    payload: InviteCreateRequest,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    ttl: timedelta = coerce_ttl(payload.expires_in_days)
    issued = generate_invite(
        db,
        owner_id=identity.subject,
        resource_id=property_id,
        max_uses=payload.max_uses,
        ttl=ttl,
        intended_identity=payload.intended_identity,
    )
    inv = issued.invite
    return InviteCreateResponse(
        token=issued.token,
        token_id=inv.id,
        resource_id=inv.resource_id,
        max_uses=inv.max_uses,
        expires_at=as_utc_aware(inv.expires_at),
    )


@router.get("/properties/{property_id}/invites", response_model=list[InviteListItem])
def list_property_invites(
    property_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    out: list[InviteListItem] = []
    for s in list_invites(db, owner_id=identity.subject, resource_id=property_id):
        out.append(
            InviteListItem(
                id=s.id,
                resource_id=s.resource_id,
                max_uses=s.max_uses,
                use_count=s.use_count,
                uses_remaining=s.uses_remaining,
                intended_identity=s.intended_identity,
                issued_by=s.issued_by,
                created_at=s.created_at,
                expires_at=s.expires_at,
                revoked_at=s.revoked_at,
                last_used_at=s.last_used_at,
                status=s.state.value,
                can_revoke=s.can_revoke,
            )
        )
    return out


@router.post(
    "/invites/validate",
    dependencies=[Depends(validate_rate_limit)],
)
def validate_invite_token(payload: InviteTokenIn, db: Session = Depends(get_db)) -> Dict[str, Any]:
    # Public: never anything more specific than {"valid": false, "reason": "invalid"}
    return validate_invite(db, payload.token).to_public()


@router.post(
    "/invites/accept",
    dependencies=[Depends(accept_rate_limit)],
)
def accept_invite_token(
    payload: InviteTokenIn,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    result = accept_invite(
        db,
        payload.token,
        grantee_id=identity.subject,
        grantee_email=identity.email,
    )
    return result.to_public()


@router.delete("/invites/{token_id}", response_model=InviteRevokeResponse)
def revoke_invite_token(
    token_id: str,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    inv = revoke_invite(db, owner_id=identity.subject, token_id=token_id)
    return InviteRevokeResponse(
        revoked=inv.revoked_at is not None,
        token_id=inv.id,
        revoked_at=as_utc_aware(inv.revoked_at),
    )
