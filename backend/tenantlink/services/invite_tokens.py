# backend/tenantlink/services/invite_tokens.py
"""
Invite token primitives: minting, hashing, constant-time verification and
the canonical token state machine.

Every consumer (validation, acceptance, listing, cleanup) branches on
token_state() so terminal states are handled the same way everywhere.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from tenantlink.core.config import settings

INVITE_TOKEN_PREFIX = "tl_inv_"  # required format

# 24 random bytes -> 32 urlsafe chars -> 192 bits of entropy
INVITE_TOKEN_BYTES = 24
SALT_BYTES = 16

MASK_VISIBLE_CHARS = 4


class TokenState(str, enum.Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"
    REVOKED = "revoked"

    @property
    def is_terminal(self) -> bool:
        return self is not TokenState.ACTIVE


def generate_invite_token() -> str:
    # Opaque bearer token
    return INVITE_TOKEN_PREFIX + secrets.token_urlsafe(INVITE_TOKEN_BYTES)


def generate_salt() -> str:
    return secrets.token_hex(SALT_BYTES)


def normalize_token(raw_token: Optional[str]) -> str:
    return (raw_token or "").strip()


def lookup_hash(raw_token: str, pepper: Optional[str] = None) -> str:
    """
    Deterministic keyed digest used as the indexed lookup column.
    """
    key = (pepper if pepper is not None else settings.token_pepper).encode("utf-8")
    return hmac.new(key, raw_token.encode("utf-8"), hashlib.sha256).hexdigest()


def hash_invite_token(raw_token: str, salt: str) -> str:
    # SHA-256 hex digest (64 chars) of salt || token
    return hashlib.sha256((salt + raw_token).encode("utf-8")).hexdigest()


def verify_invite_token(raw_token: str, salt: str, expected_hash: str) -> bool:
    """
    Full-length comparison; never short-circuits on a prefix mismatch.
    """
    candidate = hash_invite_token(raw_token, salt)
    return hmac.compare_digest(candidate.encode("ascii"), (expected_hash or "").encode("ascii"))


# Fixed decoy used when no row matched so the miss path does the same hashing work.
DUMMY_SALT = "0" * (SALT_BYTES * 2)
DUMMY_TOKEN_HASH = hash_invite_token(INVITE_TOKEN_PREFIX + "decoy", DUMMY_SALT)


def mask_token(raw_token: Optional[str]) -> str:
    """
    "tl_inv_AbCdEf..." -> "tl_inv_AbCd…". Anything unrecognised -> "***".
    """
    s = normalize_token(raw_token)
    if not s.startswith(INVITE_TOKEN_PREFIX):
        return "***"
    return INVITE_TOKEN_PREFIX + s[len(INVITE_TOKEN_PREFIX):][:MASK_VISIBLE_CHARS] + "…"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


# ---------- Time helpers ----------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    SQLite hands timestamps back naive; treat naive values as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def clock_skew_grace() -> timedelta:
    return timedelta(seconds=max(0, int(settings.clock_skew_grace_seconds)))


def expiry_cutoff(now: datetime) -> datetime:
    """
    Oldest expires_at still honored at `now`: expires_at + grace >= now.
    """
    return as_utc_aware(now) - clock_skew_grace()


def token_state(
    *,
    expires_at: Optional[datetime],
    revoked_at: Optional[datetime],
    use_count: int,
    max_uses: int,
    now: datetime,
) -> TokenState:
    """
    Canonical state. Precedence: revoked, expired, exhausted.
    """
    if revoked_at is not None:
        return TokenState.REVOKED

    exp = as_utc_aware(expires_at)
    if exp is None or exp < expiry_cutoff(now):
        return TokenState.EXPIRED

    if int(use_count or 0) >= int(max_uses or 0):
        return TokenState.EXHAUSTED

    return TokenState.ACTIVE


def state_of(invite, now: datetime) -> TokenState:
    return token_state(
        expires_at=invite.expires_at,
        revoked_at=invite.revoked_at,
        use_count=invite.use_count,
        max_uses=invite.max_uses,
        now=now,
    )
