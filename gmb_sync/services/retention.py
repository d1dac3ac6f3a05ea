"""
Déconnexion d'un compte Google Business + politique de rétention des données

Options de déconnexion:
- keep   : archive + anonymise les données historiques
- export : snapshot JSON (retourné + écrit dans le storage), puis comme keep
- delete : supprime définitivement locations, reviews, questions, posts

Dans tous les cas la connexion est désactivée et ses tokens effacés AVANT
la cascade : c'est la seule étape qui ne peut jamais être sautée.
"""
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..errors import Forbidden, StorageError
from ..utils.dates import as_utc, isoformat, utcnow
from . import storage
from .cache import invalidate_tenant_locations

logger = structlog.get_logger(__name__)

DISCONNECT_OPTIONS = ("keep", "delete", "export")
ANONYMOUS_NAME = "Anonymous User"
MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 365

# Enfants d'une location, dans l'ordre de la cascade
CHILD_MODELS = (models.GmbReview, models.GmbQuestion, models.GmbPost)

DISCONNECT_MESSAGES = {
    "delete": "Account disconnected and all data deleted successfully",
    "export": "Account disconnected and data exported successfully",
    "keep": "Account disconnected. Historical data has been anonymized and archived.",
}


def get_owned_connection(db: Session, tenant_id: UUID, connection_id: UUID) -> models.GmbConnection:
    """
    🔒 Connexion appartenant au tenant

    Raises:
        Forbidden: absente ou appartenant à un autre tenant (même réponse)
    """
    connection = db.execute(
        select(models.GmbConnection).where(
            models.GmbConnection.id == connection_id,
            models.GmbConnection.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if connection is None:
        raise Forbidden()
    return connection


def _row_to_dict(row) -> Dict[str, Any]:
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, datetime):
            value = isoformat(value)
        elif isinstance(value, bytes):
            continue  # Tokens chiffrés : jamais exportés
        elif isinstance(value, UUID):
            value = str(value)
        data[column.key] = value
    return data


def _location_ids_subquery(connection_id: UUID):
    return select(models.GmbLocation.id).where(models.GmbLocation.connection_id == connection_id)


def build_export_payload(db: Session, connection: models.GmbConnection, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Snapshot JSON-sérialisable des données d'une connexion"""
    now = now or utcnow()
    location_ids = _location_ids_subquery(connection.id)

    locations = db.execute(
        select(models.GmbLocation).where(models.GmbLocation.connection_id == connection.id)
    ).scalars().all()

    payload: Dict[str, Any] = {
        "export_date": isoformat(now),
        "account": {
            "id": str(connection.id),
            "account_id": connection.account_id,
            "account_name": connection.account_name,
            "email": connection.email,
        },
        "locations": [_row_to_dict(loc) for loc in locations],
    }
    for key, model in (("reviews", models.GmbReview), ("questions", models.GmbQuestion), ("posts", models.GmbPost)):
        rows = db.execute(select(model).where(model.location_id.in_(location_ids))).scalars().all()
        payload[key] = [_row_to_dict(r) for r in rows]
    return payload


def _deactivate_connection(db: Session, connection: models.GmbConnection, now: datetime) -> None:
    connection.access_token = None
    connection.refresh_token = None
    connection.token_expires_at = None
    # Déjà déconnectée : la rétention court depuis la première déconnexion
    if connection.is_active or connection.disconnected_at is None:
        connection.disconnected_at = now
    connection.is_active = False
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("disconnect_deactivate_failed", connection_id=str(connection.id), error=str(e))
        raise StorageError(f"Failed to deactivate connection: {e}")


def _archive_steps(connection_id: UUID, now: datetime) -> List[Tuple[str, Any]]:
    location_ids = _location_ids_subquery(connection_id)
    return [
        ("reviews", update(models.GmbReview)
            .where(models.GmbReview.location_id.in_(location_ids), models.GmbReview.is_archived.is_(False))
            .values(
                is_archived=True,
                archived_at=now,
                is_anonymized=True,
                reviewer_name=ANONYMOUS_NAME,
                reviewer_profile_photo_url=None,
            )),
        ("questions", update(models.GmbQuestion)
            .where(models.GmbQuestion.location_id.in_(location_ids), models.GmbQuestion.is_archived.is_(False))
            .values(is_archived=True, archived_at=now, author_name=ANONYMOUS_NAME)),
        ("posts", update(models.GmbPost)
            .where(models.GmbPost.location_id.in_(location_ids), models.GmbPost.is_archived.is_(False))
            .values(is_archived=True, archived_at=now)),
        ("locations", update(models.GmbLocation)
            .where(models.GmbLocation.connection_id == connection_id, models.GmbLocation.is_archived.is_(False))
            .values(is_archived=True, archived_at=now, is_active=False, last_synced_at=None)),
    ]


def _delete_steps(connection_id: UUID) -> List[Tuple[str, Any]]:
    location_ids = _location_ids_subquery(connection_id)
    steps = [
        (model.__tablename__.replace("gmb_", ""), delete(model).where(model.location_id.in_(location_ids)))
        for model in CHILD_MODELS
    ]
    steps.append(("locations", delete(models.GmbLocation).where(models.GmbLocation.connection_id == connection_id)))
    return steps


def _run_cascade(db: Session, steps: List[Tuple[str, Any]], connection_id: UUID) -> Tuple[Dict[str, int], List[str]]:
    """
    Chaque étape dans son propre SAVEPOINT : une étape en échec est annulée,
    loggée, et n'empêche pas les suivantes
    """
    counts: Dict[str, int] = {}
    warnings: List[str] = []
    for name, stmt in steps:
        try:
            with db.begin_nested():
                result = db.execute(stmt.execution_options(synchronize_session=False))
            counts[name] = result.rowcount or 0
        except SQLAlchemyError as e:
            logger.warning("disconnect_cascade_step_failed", step=name, connection_id=str(connection_id), error=str(e))
            warnings.append(f"Failed to process {name}")
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("disconnect_cascade_commit_failed", connection_id=str(connection_id), error=str(e))
        warnings.append("Failed to commit data cleanup")
    return counts, warnings


def disconnect(
    db: Session,
    tenant_id: UUID,
    connection_id: UUID,
    option: str = "keep",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Déconnecte un compte Google Business

    Raises:
        Forbidden: connexion absente ou d'un autre tenant
        StorageError: export impossible, ou désactivation impossible
    """
    if option not in DISCONNECT_OPTIONS:
        raise ValueError(f"Invalid disconnect option: {option}")

    connection = get_owned_connection(db, tenant_id, connection_id)
    now = now or utcnow()
    log = logger.bind(tenant_id=str(tenant_id), connection_id=str(connection_id), option=option)

    # 1. Export AVANT toute mutation
    export_payload = None
    export_key = None
    if option == "export":
        try:
            export_payload = build_export_payload(db, connection, now)
            body = json.dumps(export_payload, default=str).encode("utf-8")
        except (SQLAlchemyError, TypeError, ValueError) as e:
            log.error("disconnect_export_failed", error=str(e))
            raise StorageError(f"Failed to build export: {e}")
        export_key = storage.export_key(tenant_id, connection_id, export_payload["export_date"])
        storage.put_object(export_key, body)
        log.info("disconnect_export_stored", key=export_key, size=len(body))

    # 2. Désactivation (commit séparé)
    _deactivate_connection(db, connection, now)

    # 3. Cascade
    cascade = "delete" if option == "delete" or connection.delete_on_disconnect else "archive"
    steps = _delete_steps(connection_id) if cascade == "delete" else _archive_steps(connection_id, now)
    counts, warnings = _run_cascade(db, steps, connection_id)

    invalidate_tenant_locations(tenant_id)
    log.info("gmb_disconnected", cascade=cascade, counts=counts, warnings=len(warnings))

    result: Dict[str, Any] = {
        "success": True,
        "message": DISCONNECT_MESSAGES["delete" if cascade == "delete" and option != "export" else option],
        "cascade": cascade,
        "counts": counts,
        "warnings": warnings,
    }
    if option == "export":
        result["export_payload"] = export_payload
        result["export_key"] = export_key
    return result


def _delete_archived(db: Session, location_filter, archived_before: Optional[datetime] = None) -> Dict[str, int]:
    """Supprime les lignes archivées (enfants puis locations). Ne commit pas."""
    location_ids = select(models.GmbLocation.id).where(location_filter)
    counts: Dict[str, int] = {}

    for model in CHILD_MODELS:
        stmt = delete(model).where(model.is_archived.is_(True), model.location_id.in_(location_ids))
        if archived_before is not None:
            stmt = stmt.where(model.archived_at < archived_before)
        counts[model.__tablename__.replace("gmb_", "")] = db.execute(
            stmt.execution_options(synchronize_session=False)
        ).rowcount or 0

    stmt = delete(models.GmbLocation).where(models.GmbLocation.is_archived.is_(True), location_filter)
    if archived_before is not None:
        stmt = stmt.where(models.GmbLocation.archived_at < archived_before)
    counts["locations"] = db.execute(stmt.execution_options(synchronize_session=False)).rowcount or 0
    return counts


def permanently_delete_archived(db: Session, tenant_id: UUID) -> Dict[str, Any]:
    """Supprime toutes les données archivées du tenant (idempotent)"""
    try:
        counts = _delete_archived(db, models.GmbLocation.tenant_id == tenant_id)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("archived_delete_failed", tenant_id=str(tenant_id), error=str(e))
        raise StorageError(f"Failed to delete archived data: {e}")

    invalidate_tenant_locations(tenant_id)
    logger.info("archived_data_deleted", tenant_id=str(tenant_id), counts=counts)
    return {
        "success": True,
        "message": "All archived data has been permanently deleted",
        "counts": counts,
    }


def sweep_expired_archives(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Purge des archives dont la période de rétention est expirée
    (cron quotidien : cron_cleanup.py ou GET /api/cron/cleanup)
    """
    now = now or utcnow()
    connections = db.execute(
        select(models.GmbConnection).where(models.GmbConnection.disconnected_at.is_not(None))
    ).scalars().all()

    total_deleted = 0
    for connection in connections:
        if not connection.data_retention_days or not connection.disconnected_at:
            continue

        deletion_date = as_utc(connection.disconnected_at) + timedelta(days=connection.data_retention_days)
        if now < deletion_date:
            continue

        try:
            counts = _delete_archived(
                db,
                models.GmbLocation.connection_id == connection.id,
                archived_before=deletion_date,
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("retention_sweep_failed", connection_id=str(connection.id), error=str(e))
            raise StorageError(f"Retention sweep failed: {e}")

        deleted = sum(counts.values())
        total_deleted += deleted
        if deleted:
            invalidate_tenant_locations(connection.tenant_id)
        logger.info("retention_sweep_account", connection_id=str(connection.id), deleted=deleted)

    logger.info("retention_sweep_finished", accounts=len(connections), total_deleted=total_deleted)
    return {
        "success": True,
        "message": f"Cleanup completed. {total_deleted} items deleted.",
        "accounts_processed": len(connections),
        "total_deleted": total_deleted,
    }


def update_retention_settings(
    db: Session,
    tenant_id: UUID,
    connection_id: UUID,
    retention_days: int,
    delete_on_disconnect: bool,
) -> Dict[str, Any]:
    """
    Raises:
        ValueError: retention_days hors de [1, 365]
        Forbidden: connexion d'un autre tenant
    """
    if not MIN_RETENTION_DAYS <= retention_days <= MAX_RETENTION_DAYS:
        raise ValueError(f"retention_days must be between {MIN_RETENTION_DAYS} and {MAX_RETENTION_DAYS}")

    connection = get_owned_connection(db, tenant_id, connection_id)
    connection.data_retention_days = retention_days
    connection.delete_on_disconnect = delete_on_disconnect
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Failed to update retention settings: {e}")

    return {"success": True, "message": "Data retention settings updated successfully"}


def _connection_summary(connection: models.GmbConnection) -> Dict[str, Any]:
    return {
        "id": str(connection.id),
        "account_id": connection.account_id,
        "account_name": connection.account_name,
        "email": connection.email,
        "is_active": connection.is_active,
        "last_sync_at": isoformat(connection.last_sync_at),
        "disconnected_at": isoformat(connection.disconnected_at),
        "data_retention_days": connection.data_retention_days,
        "delete_on_disconnect": connection.delete_on_disconnect,
    }


def get_connection_status(db: Session, tenant_id: UUID) -> Dict[str, Any]:
    connections = db.execute(
        select(models.GmbConnection)
        .where(models.GmbConnection.tenant_id == tenant_id)
        .order_by(models.GmbConnection.created_at)
    ).scalars().all()

    active = [c for c in connections if c.is_active]
    disconnected = [c for c in connections if not c.is_active and c.disconnected_at]

    archived_locations = db.execute(
        select(func.count(models.GmbLocation.id)).where(
            models.GmbLocation.tenant_id == tenant_id,
            models.GmbLocation.is_archived.is_(True),
        )
    ).scalar_one()
    archived_reviews = db.execute(
        select(func.count(models.GmbReview.id)).where(
            models.GmbReview.tenant_id == tenant_id,
            models.GmbReview.is_archived.is_(True),
        )
    ).scalar_one()

    return {
        "success": True,
        "is_connected": bool(active),
        "active_accounts": [_connection_summary(c) for c in active],
        "disconnected_accounts": [_connection_summary(c) for c in disconnected],
        "has_archived_data": archived_locations > 0,
        "archived_locations_count": archived_locations,
        "archived_reviews_count": archived_reviews,
    }
