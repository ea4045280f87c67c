"""
Token verification for the external identity provider.

The provider signs access tokens with a shared HS256 secret; we only verify
them. create_access_token mints tokens of the same shape for scripts and tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError
import structlog

from poflow.config import settings

logger = structlog.get_logger()


def create_access_token(
    user_id: str,
    email: str,
    role: Optional[str] = None,
    organization_id: Optional[str] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    now = datetime.now(timezone.utc)
    minutes = expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    claims = {
        "sub": str(user_id),
        "email": email,
        "aud": settings.AUTH_JWT_AUDIENCE,
        "role": "authenticated",
        "iat": now,
        "exp": now + timedelta(minutes=minutes),
    }
    # Informational only; authorization always reads the users table
    app_metadata = {}
    if role:
        app_metadata["role"] = role
    if organization_id:
        app_metadata["organization_id"] = str(organization_id)
    if app_metadata:
        claims["app_metadata"] = app_metadata
    return jwt.encode(
        claims, settings.AUTH_JWT_SECRET, algorithm=settings.AUTH_JWT_ALGORITHM
    )


def decode_token(token: str) -> dict:
    """Decode and verify a JWT. Raises JWTError on failure."""
    return jwt.decode(
        token,
        settings.AUTH_JWT_SECRET,
        algorithms=[settings.AUTH_JWT_ALGORITHM],
        audience=settings.AUTH_JWT_AUDIENCE,
    )


def verify_access_token(token: str) -> dict:
    """Verify an access token and return its claims."""
    payload = decode_token(token)
    if not payload.get("sub"):
        raise JWTError("Token has no subject")
    return payload


def unverified_subject(token: str) -> Optional[str]:
    """Subject claim without signature checks. Only for rate-limit bucketing."""
    try:
        return jwt.get_unverified_claims(token).get("sub")
    except JWTError:
        return None
