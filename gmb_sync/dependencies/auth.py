"""
Authentication dependencies for FastAPI endpoints
JWT via Authorization: Bearer <token> header or HttpOnly "access_token" cookie
"""
import hmac
from typing import Optional
from uuid import UUID
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError

from ..config import settings
from ..utils.jwt import verify_token

# auto_error=False : fallback sur le cookie si le header est absent
http_bearer = HTTPBearer(auto_error=False)


def _extract_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials]
) -> Optional[str]:
    """Header Bearer en priorité (clients API), puis cookie (dashboard)"""
    if credentials and credentials.scheme.lower() == "bearer" and credentials.credentials:
        return credentials.credentials
    return request.cookies.get("access_token")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _claim_as_uuid(request: Request, credentials: Optional[HTTPAuthorizationCredentials], claim: str) -> UUID:
    token = _extract_token(request, credentials)
    if not token:
        raise _unauthorized("Not authenticated")

    try:
        payload = verify_token(token)
        return UUID(payload[claim])
    except JWTError as e:
        raise _unauthorized(f"Invalid authentication credentials: {e}")
    except (KeyError, ValueError) as e:
        raise _unauthorized(f"Malformed token payload: {e}")


def get_current_tenant_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer)
) -> UUID:
    """
    tenant_id du JWT, à utiliser pour filtrer TOUTES les requêtes

    Raises:
        HTTPException 401: token absent, invalide ou expiré
    """
    return _claim_as_uuid(request, credentials, "tid")


def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer)
) -> UUID:
    return _claim_as_uuid(request, credentials, "sub")


def require_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer)
) -> None:
    """Protège les endpoints cron : Authorization: Bearer <CRON_SECRET>"""
    provided = credentials.credentials if credentials else ""
    if not settings.CRON_SECRET or not hmac.compare_digest(provided, settings.CRON_SECRET):
        raise _unauthorized("Unauthorized")
