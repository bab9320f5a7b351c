# backend/tenantlink/models.py
import sqlalchemy as sa
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.sql import text

from tenantlink.db.base import Base

# Cross-DB timestamp default (SQLite + Postgres)
DB_NOW = text("CURRENT_TIMESTAMP")


class Property(Base):
    """
    The resource an invite grants access to.

    Owned and edited by the property service; this service only reads it for
    ownership checks and the public invite preview.
    """

    __tablename__ = "properties"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(255), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    address = Column(String(255), nullable=True)
    city = Column(String(128), nullable=True)
    state = Column(String(64), nullable=True)
    zip = Column(String(16), nullable=True)
    unit = Column(String(32), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)


class InviteToken(Base):
    """
    Owner-minted property invite token.

    Only hashes are stored:
    - lookup_hash: HMAC-SHA256(pepper, token), indexed for O(log n) lookup
    - token_hash:  SHA-256(salt || token), compared in constant time
    The raw token is returned once at creation and never again.
    """

    __tablename__ = "invite_tokens"
    __table_args__ = (
        CheckConstraint("max_uses >= 1", name="ck_invite_tokens_max_uses_positive"),
        CheckConstraint("use_count >= 0", name="ck_invite_tokens_use_count_non_negative"),
        CheckConstraint("use_count <= max_uses", name="ck_invite_tokens_use_count_within_max"),
        UniqueConstraint("lookup_hash", name="uq_invite_tokens_lookup_hash"),
        UniqueConstraint("token_hash", name="uq_invite_tokens_token_hash"),
        Index("ix_invite_tokens_resource_created", "resource_id", "created_at"),
    )

    id = Column(String(36), primary_key=True)

    resource_id = Column(String(36), ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)

    # hex digests = 64 chars
    lookup_hash = Column(String(64), nullable=False)
    token_hash = Column(String(64), nullable=False)
    token_salt = Column(String(32), nullable=False)

    max_uses = Column(Integer, nullable=False, default=1, server_default=text("1"))
    use_count = Column(Integer, nullable=False, default=0, server_default=text("0"))

    # optional: email the invite was addressed to (wrong-account detection)
    intended_identity = Column(String(255), nullable=True)

    issued_by = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=DB_NOW)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_by = Column(String(255), nullable=True)

    last_used_at = Column(DateTime(timezone=True), nullable=True)
    exhausted_at = Column(DateTime(timezone=True), nullable=True)


class AccessGrant(Base):
    """
    Tenant <-> property link created by a successful redemption.

    (grantee_id, resource_id) is unique: a grantee holds at most one grant per
    property no matter how many invites they redeem.
    """

    __tablename__ = "access_grants"
    __table_args__ = (
        UniqueConstraint("grantee_id", "resource_id", name="uq_access_grants_grantee_resource"),
    )

    id = Column(Integer, primary_key=True, index=True)
    grantee_id = Column(String(255), nullable=False, index=True)
    resource_id = Column(String(36), ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)

    # Kept after token cleanup for audit; nulled when the token row is deleted.
    token_id = Column(String(36), ForeignKey("invite_tokens.id", ondelete="SET NULL"), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=DB_NOW)


class RateLimitCounter(Base):
    """
    Fixed-window request counter shared by every serving instance.

    window_start is epoch seconds aligned to window_seconds.
    """

    __tablename__ = "rate_limit_counters"

    limiter_key = Column(String(255), primary_key=True)
    window_start = Column(BigInteger, primary_key=True)
    window_seconds = Column(Integer, nullable=False)
    count = Column(Integer, nullable=False, default=0, server_default=sa.text("0"))

    __table_args__ = (
        Index("ix_rate_limit_counters_window_start", "window_start"),
    )
