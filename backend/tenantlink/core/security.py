from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from tenantlink.core.config import settings

bearer_scheme = HTTPBearer(auto_error=False)


def _http_401(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_jwt(token: str) -> dict:
    """
    Decode an identity-provider JWT using settings.jwt_secret/jwt_algorithm.
    Raises 401 on any error.
    """
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise _http_401("Invalid or expired token")


@dataclass(frozen=True)
class Identity:
    """
    The authenticated caller. `subject` is the identity provider's stable user id.
    """
    subject: str
    email: Optional[str] = None


def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Identity:
    if credentials is None or (credentials.scheme or "").lower() != "bearer":
        raise _http_401("Missing bearer token")

    payload = decode_jwt(credentials.credentials)

    token_type = payload.get("type", "access")
    if token_type != "access":
        raise _http_401("Invalid token type")

    subject = str(payload.get("sub") or "").strip()
    if not subject:
        raise _http_401("Invalid token payload")

    email = payload.get("email")
    email = str(email).strip().lower() if email else None

    return Identity(subject=subject, email=email or None)
