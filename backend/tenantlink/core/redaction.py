# backend/tenantlink/core/redaction.py
"""
Helpers that keep secrets out of logs and error payloads.

Raw invite tokens are masked by invite_tokens.mask_token(); structured log
payloads go through sanitize_log().
"""

from __future__ import annotations

from typing import Any, Optional

REDACTED = "[REDACTED]"

_ALLOWED_TOKEN_KEYS = {"token_id", "token_count", "token_prefix"}
_ALLOWED_KEY_KEYS = {"key_id", "limiter_key"}


def mask_email(email: Optional[str]) -> Optional[str]:
    e = (email or "").strip()
    if not e:
        return None
    local, _, domain = e.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


def _is_sensitive(key: str) -> bool:
    k = key.lower()
    if "token" in k and key not in _ALLOWED_TOKEN_KEYS:
        return True
    if "key" in k and key not in _ALLOWED_KEY_KEYS:
        return True
    return any(word in k for word in ("password", "secret", "salt", "auth", "pepper"))


def sanitize_log(data: Any) -> Any:
    """
    Recursively replace values under sensitive keys with [REDACTED].
    """
    if isinstance(data, dict):
        return {
            k: (REDACTED if _is_sensitive(str(k)) else sanitize_log(v))
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize_log(v) for v in data]
    return data
