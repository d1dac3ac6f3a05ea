"""
Router d'authentification Google OAuth (connexion d'un compte Business Profile)
avec state sécurisé
"""
import secrets
import time
from datetime import timedelta
from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..config import settings
from ..database import get_db
from ..dependencies.auth import get_current_tenant_id, get_current_user_id
from ..errors import StorageError, UpstreamError
from ..services.cache import invalidate_tenant_locations
from ..services.google_client import google_client
from ..utils.dates import utcnow
from ..utils.jwt import ACCESS_TOKEN_EXPIRE_MINUTES, create_access_token
from ..utils.security import encrypt_token

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

DEV_TENANT_NAME = "Dev Tenant"
DEV_USER_EMAIL = "dev@example.com"


def _set_auth_cookie(response, token: str) -> None:
    response.set_cookie(
        key="access_token",
        value=token,
        httponly=True,
        secure=not settings.DEBUG,  # HTTPS seulement en production
        samesite=settings.COOKIE_SAMESITE,
        domain=settings.COOKIE_DOMAIN or None,
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        path="/",
    )


def _pop_valid_state(request: Request, state: str) -> dict:
    """
    Vérifie le state OAuth (présent, identique, TTL) et le retire de la session

    Raises:
        HTTPException 403: state absent, différent ou expiré
    """
    state_data = request.session.pop("oauth_state", None)
    if not state_data or not isinstance(state_data, dict):
        raise HTTPException(status_code=403, detail="Invalid OAuth state (CSRF detected)")

    if not secrets.compare_digest(state, state_data.get("value", "")):
        raise HTTPException(status_code=403, detail="Invalid OAuth state (CSRF detected)")

    if int(time.time()) - state_data.get("timestamp", 0) > settings.OAUTH_STATE_TTL_SECONDS:
        raise HTTPException(status_code=403, detail="Expired OAuth state (session timeout)")

    return state_data


def upsert_connection(
    db: Session,
    tenant_id: UUID,
    user_id: UUID,
    account: dict,
    tokens: dict,
    email: Optional[str],
) -> models.GmbConnection:
    """
    Une connexion par (tenant_id, account_id) : une ré-authentification
    réactive la ligne existante. Ne commit pas.
    """
    account_id = account["name"]
    connection = db.execute(
        select(models.GmbConnection).where(
            models.GmbConnection.tenant_id == tenant_id,
            models.GmbConnection.account_id == account_id,
        )
    ).scalar_one_or_none()

    if connection is None:
        connection = models.GmbConnection(
            tenant_id=tenant_id,
            account_id=account_id,
            data_retention_days=settings.DEFAULT_RETENTION_DAYS,
        )
        db.add(connection)

    expires_in = int(tokens.get("expires_in") or 3600)
    scope = tokens.get("scope") or settings.GOOGLE_SCOPES

    connection.user_id = user_id
    connection.account_name = account.get("accountName") or account_id
    connection.email = email
    connection.access_token = encrypt_token(tokens["access_token"])
    connection.token_expires_at = utcnow() + timedelta(seconds=expires_in)
    connection.scopes = scope.split()
    connection.is_active = True
    connection.disconnected_at = None
    # Google n'envoie un refresh_token qu'au premier consentement : garder l'ancien sinon
    if tokens.get("refresh_token"):
        connection.refresh_token = encrypt_token(tokens["refresh_token"])

    return connection


@router.get("/google/login")
async def google_login(
    request: Request,
    tenant_id: UUID = Depends(get_current_tenant_id),
    user_id: UUID = Depends(get_current_user_id),
):
    """
    🔒 Initie le flux OAuth Google
    Génère un state sécurisé (lié au tenant) et redirige vers l'écran de consentement
    """
    state = secrets.token_urlsafe(32)
    request.session["oauth_state"] = {
        "value": state,
        "timestamp": int(time.time()),
        "tenant_id": str(tenant_id),
        "user_id": str(user_id),
    }
    return RedirectResponse(url=google_client.build_authorization_url(state))


@router.get("/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """
    Callback OAuth Google
    Échange le code, récupère les comptes Business et les rattache au tenant
    """
    if error:
        raise HTTPException(status_code=400, detail=f"OAuth error: {error}")

    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state parameter")

    state_data = _pop_valid_state(request, state)
    tenant_id = UUID(state_data["tenant_id"])
    user_id = UUID(state_data["user_id"])

    # 1. Code → tokens
    tokens = await google_client.exchange_code(code)
    access_token = tokens["access_token"]

    # 2. Infos utilisateur + comptes Business
    user_info = await google_client.get_user_info(access_token)
    email = (user_info.get("email") or "").strip().lower() or None
    accounts = await google_client.list_accounts(access_token)
    if not accounts:
        raise UpstreamError("No Google Business accounts returned for this user")

    # 3. Upsert des connexions (une transaction)
    try:
        for account in accounts:
            upsert_connection(db, tenant_id, user_id, account, tokens, email)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("oauth_connection_upsert_failed", tenant_id=str(tenant_id), error=str(e))
        raise StorageError(f"Failed to save Google connection: {e}")

    invalidate_tenant_locations(tenant_id)
    logger.info("gmb_connected", tenant_id=str(tenant_id), accounts=len(accounts))

    return RedirectResponse(url=f"{settings.DASHBOARD_URL}?gmb_connected=1", status_code=302)


@router.post("/dev-login")
def dev_login(db: Session = Depends(get_db)):
    """
    DEBUG ONLY: Dev login endpoint to bypass OAuth for testing
    Creates/reuses a dev tenant and returns JWT token + cookie
    """
    if not settings.DEBUG:
        raise HTTPException(status_code=404, detail="Not found")

    user = db.execute(
        select(models.User).where(models.User.email == DEV_USER_EMAIL)
    ).scalars().first()

    if not user:
        tenant = models.Tenant(name=DEV_TENANT_NAME)
        db.add(tenant)
        db.flush()
        user = models.User(tenant_id=tenant.id, email=DEV_USER_EMAIL, name="Dev User")
        db.add(user)
        db.commit()

    token = create_access_token(user.id, user.tenant_id)

    resp = JSONResponse({
        "access_token": token,
        "tenant_id": str(user.tenant_id),
        "user_id": str(user.id),
        "message": "Dev login successful (DEBUG mode only)",
    })
    _set_auth_cookie(resp, token)
    return resp


@router.post("/logout")
async def logout(request: Request):
    """Déconnexion (clear session + cookie)"""
    request.session.clear()
    resp = JSONResponse({"success": True, "message": "Logged out successfully"})
    resp.delete_cookie("access_token", path="/", domain=settings.COOKIE_DOMAIN or None)
    return resp
