"""
JWT utilities for API authentication
Le claim "tid" porte le tenant : toutes les requêtes sont filtrées dessus
"""
from datetime import timedelta
from typing import Optional
from uuid import UUID
from jose import jwt, JWTError

from ..config import settings
from .dates import utcnow

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 30
AUDIENCE = "api"


def create_access_token(
    user_id: UUID,
    tenant_id: UUID,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token for the dashboard

    Args:
        user_id: User UUID ("sub")
        tenant_id: Tenant UUID ("tid", multi-tenant isolation)
        expires_delta: Optional custom expiration
    """
    issued_at = utcnow()
    payload = {
        "sub": str(user_id),
        "tid": str(tenant_id),
        "aud": AUDIENCE,
        "iss": settings.JWT_ISSUER,
        "iat": issued_at,
        "exp": issued_at + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> dict:
    """
    Verify and decode a JWT

    Raises:
        JWTError: invalid signature, expired, wrong audience/issuer, missing claims
    """
    payload = jwt.decode(
        token,
        settings.SECRET_KEY,
        algorithms=[ALGORITHM],
        audience=AUDIENCE,
        issuer=settings.JWT_ISSUER
    )

    if "sub" not in payload or "tid" not in payload:
        raise JWTError("Missing required claims (sub or tid)")

    return payload
