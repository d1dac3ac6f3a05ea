"""
Router Google Business Profile : sync, connexion, déconnexion, rétention,
locations, réponses aux avis et aux questions

🔒 Tous les endpoints sont protégés par JWT et filtrés par tenant
"""
from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..database import get_db
from ..dependencies.auth import get_current_tenant_id
from ..errors import AuthExpired, NotFound, StorageError
from ..schemas import (
    DisconnectRequest,
    QuestionAnswerRequest,
    RetentionSettingsRequest,
    ReviewReplyRequest,
    SyncRequest,
)
from ..services import retention
from ..services.cache import locations_cache, locations_cache_key
from ..services.google_client import google_client
from ..services.sync import SyncOrchestrator, cancel_sync, get_sync_orchestrator, get_sync_status
from ..services.token_refresher import ensure_valid_token
from ..utils.dates import isoformat, utcnow

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/gmb", tags=["gmb"])


@router.post("/sync")
async def sync(
    payload: Optional[SyncRequest] = Body(default=None),
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """
    🔒 Synchronise le compte Google actif du tenant (1 tentative / cooldown)
    """
    sync_type = payload.sync_type if payload else "locations"
    return await orchestrator.sync_account(db, tenant_id, sync_type=sync_type)


@router.post("/sync/cancel")
async def cancel(tenant_id: UUID = Depends(get_current_tenant_id)):
    """🔒 Annule le sync en cours (pris en compte avant la page suivante)"""
    if not cancel_sync(tenant_id):
        raise NotFound("No sync is running for this account")
    return {"success": True, "message": "Sync cancellation requested"}


@router.get("/sync/status")
def sync_status(
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    return get_sync_status(db, tenant_id)


@router.get("/connection")
def connection_status(
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    """🔒 Comptes actifs / déconnectés + volume de données archivées"""
    return retention.get_connection_status(db, tenant_id)


@router.post("/disconnect")
def disconnect(
    payload: DisconnectRequest,
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    """
    🔒 Déconnecte un compte : keep (archive anonymisée), export (snapshot puis
    archive) ou delete (suppression définitive)
    """
    return retention.disconnect(db, tenant_id, payload.connection_id, payload.option)


@router.put("/connections/{connection_id}/retention")
def update_retention(
    connection_id: UUID,
    payload: RetentionSettingsRequest,
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    return retention.update_retention_settings(
        db, tenant_id, connection_id, payload.retention_days, payload.delete_on_disconnect
    )


@router.post("/connections/{connection_id}/validate-token")
async def validate_token(
    connection_id: UUID,
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    """🔒 Vérifie (et rafraîchit si besoin) le token Google de la connexion"""
    connection = retention.get_owned_connection(db, tenant_id, connection_id)
    if not connection.is_active:
        raise AuthExpired("Connection is disconnected")

    await ensure_valid_token(db, connection)
    return {
        "success": True,
        "valid": True,
        "expires_at": isoformat(connection.token_expires_at),
    }


@router.delete("/archived")
def delete_archived(
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    """🔒 Supprime définitivement toutes les données archivées du tenant"""
    return retention.permanently_delete_archived(db, tenant_id)


@router.get("/locations")
def list_locations(
    include_archived: bool = Query(False),
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    """
    🔒 Locations du tenant (cache TTL, invalidé après sync/déconnexion)
    """
    cache_key = locations_cache_key(tenant_id, include_archived)
    cached = locations_cache.get(cache_key)
    if cached is not None:
        return {"success": True, "locations": cached, "cached": True}

    query = select(models.GmbLocation).where(models.GmbLocation.tenant_id == tenant_id)
    if not include_archived:
        query = query.where(models.GmbLocation.is_archived.is_(False))
    locations = db.execute(query.order_by(models.GmbLocation.location_name)).scalars().all()

    data = [
        {
            "id": str(loc.id),
            "location_id": loc.location_id,
            "name": loc.location_name,
            "address": loc.address,
            "phone": loc.phone,
            "category": loc.category,
            "website": loc.website,
            "latitude": loc.latitude,
            "longitude": loc.longitude,
            "is_active": loc.is_active,
            "is_archived": loc.is_archived,
            "last_synced_at": isoformat(loc.last_synced_at),
        }
        for loc in locations
    ]
    locations_cache.set(cache_key, data)
    return {"success": True, "locations": data, "cached": False}


def _active_connection_for_location(db: Session, location: models.GmbLocation) -> models.GmbConnection:
    connection = db.get(models.GmbConnection, location.connection_id)
    if connection is None or not connection.is_active:
        raise AuthExpired("Google account is disconnected")
    return connection


@router.post("/reviews/{review_id}/reply")
async def reply_to_review(
    review_id: UUID,
    payload: ReviewReplyRequest,
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    """🔒 Répond à un avis via Google puis stocke la réponse"""
    row = db.execute(
        select(models.GmbReview, models.GmbLocation)
        .join(models.GmbLocation, models.GmbReview.location_id == models.GmbLocation.id)
        .where(models.GmbReview.id == review_id, models.GmbReview.tenant_id == tenant_id)
    ).first()
    if row is None:
        raise NotFound("Review not found")
    review, location = row

    connection = _active_connection_for_location(db, location)
    access_token = await ensure_valid_token(db, connection)
    await google_client.reply_to_review(
        access_token, connection.account_id, location.location_id, review.external_review_id, payload.comment
    )

    review.reply_text = payload.comment
    review.replied_at = utcnow()
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Failed to store review reply: {e}")

    logger.info("review_replied", tenant_id=str(tenant_id), review_id=str(review_id))
    return {"success": True, "message": "Reply posted", "replied_at": isoformat(review.replied_at)}


@router.post("/questions/{question_id}/answer")
async def answer_question(
    question_id: UUID,
    payload: QuestionAnswerRequest,
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    """🔒 Répond à une question via Google puis stocke la réponse"""
    row = db.execute(
        select(models.GmbQuestion, models.GmbLocation)
        .join(models.GmbLocation, models.GmbQuestion.location_id == models.GmbLocation.id)
        .where(models.GmbQuestion.id == question_id, models.GmbQuestion.tenant_id == tenant_id)
    ).first()
    if row is None:
        raise NotFound("Question not found")
    question, location = row

    connection = _active_connection_for_location(db, location)
    access_token = await ensure_valid_token(db, connection)
    await google_client.answer_question(access_token, question.external_question_id, payload.text)

    question.answer_text = payload.text
    question.answered_at = utcnow()
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Failed to store answer: {e}")

    logger.info("question_answered", tenant_id=str(tenant_id), question_id=str(question_id))
    return {"success": True, "message": "Answer posted", "answered_at": isoformat(question.answered_at)}
