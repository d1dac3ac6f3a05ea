"""
Service de synchronisation Google Business Profile
Orchestre: cooldown → token → fetch paginé → transform → upsert par batchs

États: Idle → Cooling-down → Idle | Idle → Syncing → Idle
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..config import settings
from ..errors import GmbSyncError, NotFound, RateLimited, StorageError, SyncCancelled, UpstreamError
from ..models.sync_run import SyncStatus
from ..utils.dates import isoformat, utcnow
from ..utils.upsert import upsert_rows
from .cache import invalidate_tenant_locations
from .cooldown import build_cooldown_gate
from .google_client import GoogleClient, google_client
from .token_refresher import TokenRefresher, token_refresher
from .transform import location_to_row, post_to_row, question_to_row, review_to_row

logger = structlog.get_logger(__name__)

SYNC_TYPES = ("locations", "full")

# Syncs en cours dans CE process : tenant_id → event d'annulation
_running_syncs: Dict[UUID, asyncio.Event] = {}


def cancel_sync(tenant_id: UUID) -> bool:
    """Demande l'annulation du sync en cours du tenant (effective à la prochaine page)"""
    event = _running_syncs.get(tenant_id)
    if event is None:
        return False
    event.set()
    logger.info("sync_cancel_requested", tenant_id=str(tenant_id))
    return True


def is_sync_running(tenant_id: UUID) -> bool:
    return tenant_id in _running_syncs


def chunked(items: List[Any], size: int) -> List[List[Any]]:
    if size <= 0:
        return [items]
    return [items[i:i + size] for i in range(0, len(items), size)]


def get_active_connection(db: Session, tenant_id: UUID) -> Optional[models.GmbConnection]:
    """Connexion active la plus récemment synchronisée du tenant"""
    return db.execute(
        select(models.GmbConnection)
        .where(
            models.GmbConnection.tenant_id == tenant_id,
            models.GmbConnection.is_active.is_(True),
        )
        .order_by(
            models.GmbConnection.last_sync_at.desc().nulls_last(),
            models.GmbConnection.created_at.desc(),
        )
        .limit(1)
    ).scalar_one_or_none()


class SyncOrchestrator:
    def __init__(
        self,
        client: Optional[GoogleClient] = None,
        refresher: Optional[TokenRefresher] = None,
        gate=None,
        batch_size: Optional[int] = None,
        clock: Callable = utcnow,
    ):
        self.client = client or google_client
        self.refresher = refresher or token_refresher
        self.gate = gate or build_cooldown_gate()
        self.batch_size = batch_size or settings.UPSERT_BATCH_SIZE
        self.clock = clock

    async def sync_account(self, db: Session, tenant_id: UUID, sync_type: str = "locations") -> Dict[str, Any]:
        """
        Synchronise le compte Google actif du tenant

        Args:
            db: Session SQLAlchemy
            tenant_id: Tenant (isolation)
            sync_type: "locations" ou "full" (+ reviews, questions, posts)

        Returns:
            {"success": True, "count": int, "message": str, ...}

        Raises:
            RateLimited: cooldown actif, sync déjà en cours, ou 429 Google épuisé
            NotFound: aucune connexion active
            AuthExpired, UpstreamError, StorageError, SyncCancelled
        """
        if sync_type not in SYNC_TYPES:
            raise ValueError(f"Unknown sync_type: {sync_type}")

        if is_sync_running(tenant_id):
            raise RateLimited(
                self.gate.cooldown_seconds,
                "A sync is already running for this account",
            )

        # 1. Cooldown gate (enregistre la tentative AVANT tout appel réseau)
        remaining = await self.gate.try_acquire(db, tenant_id)
        if remaining is not None:
            logger.info("sync_cooldown_rejected", tenant_id=str(tenant_id), retry_after_seconds=remaining)
            raise RateLimited(remaining)

        # 2. Connexion active
        connection = get_active_connection(db, tenant_id)
        if connection is None:
            raise NotFound("No active Google Business account found")

        cancel_event = asyncio.Event()
        _running_syncs[tenant_id] = cancel_event
        run = self._start_run(db, tenant_id, connection.id, sync_type)
        log = logger.bind(tenant_id=str(tenant_id), connection_id=str(connection.id), sync_type=sync_type)
        log.info("sync_started")

        try:
            result = await self._run(db, tenant_id, connection, sync_type, cancel_event)
        except GmbSyncError as e:
            self._finish_run(db, run, SyncStatus.CANCELLED if isinstance(e, SyncCancelled) else SyncStatus.ERROR, error=str(e))
            log.warning("sync_failed", error_code=e.code, error=str(e))
            raise
        except SQLAlchemyError as e:
            db.rollback()
            self._finish_run(db, run, SyncStatus.ERROR, error=str(e))
            log.error("sync_storage_failed", error=str(e))
            raise StorageError(f"Database error during sync: {e}")
        finally:
            _running_syncs.pop(tenant_id, None)
            invalidate_tenant_locations(tenant_id)

        self._finish_run(db, run, SyncStatus.OK, items_synced=result["count"])
        log.info("sync_finished", count=result["count"])
        return result

    async def _run(
        self,
        db: Session,
        tenant_id: UUID,
        connection: models.GmbConnection,
        sync_type: str,
        cancel_event: asyncio.Event,
    ) -> Dict[str, Any]:
        access_token = await self.refresher.ensure_valid_token(db, connection)

        # Tout-ou-rien : une page en échec annule toute la collection
        locations = await self.client.list_locations(access_token, connection.account_id, cancel_event=cancel_event)

        if not locations:
            self._touch_last_sync(db, connection)
            return {
                "success": True,
                "count": 0,
                "message": "No locations returned by Google Business Profile API",
                "sync_type": sync_type,
            }

        synced_at = self.clock()
        try:
            rows = [location_to_row(loc, tenant_id, connection.id, synced_at) for loc in locations]
        except (KeyError, TypeError, AttributeError) as e:
            raise UpstreamError(f"Unexpected location payload from Google: {e}")

        self._upsert_in_batches(db, models.GmbLocation, rows, ["location_id", "tenant_id"])

        result: Dict[str, Any] = {
            "success": True,
            "count": len(rows),
            "message": f"Successfully synced {len(rows)} locations",
            "sync_type": sync_type,
        }

        if sync_type == "full":
            synced_ids = [row["location_id"] for row in rows]
            result.update(await self._sync_children(db, tenant_id, connection, synced_ids, access_token, cancel_event))

        self._touch_last_sync(db, connection)
        return result

    async def _sync_children(
        self,
        db: Session,
        tenant_id: UUID,
        connection: models.GmbConnection,
        synced_ids: List[str],
        access_token: str,
        cancel_event: asyncio.Event,
    ) -> Dict[str, int]:
        """Reviews, questions et local posts de chaque location synchronisée"""
        location_pks = dict(db.execute(
            select(models.GmbLocation.location_id, models.GmbLocation.id).where(
                models.GmbLocation.tenant_id == tenant_id,
                models.GmbLocation.connection_id == connection.id,
                models.GmbLocation.location_id.in_(synced_ids),
            )
        ).all())

        counts = {"reviews": 0, "questions": 0, "posts": 0}
        account_id = connection.account_id

        for google_location_id, location_pk in location_pks.items():
            reviews = await self.client.list_reviews(access_token, account_id, google_location_id, cancel_event=cancel_event)
            questions = await self.client.list_questions(access_token, google_location_id, cancel_event=cancel_event)
            posts = await self.client.list_local_posts(access_token, account_id, google_location_id, cancel_event=cancel_event)

            try:
                review_rows = [review_to_row(r, tenant_id, location_pk) for r in reviews]
                question_rows = [question_to_row(q, tenant_id, location_pk) for q in questions]
                post_rows = [post_to_row(p, tenant_id, location_pk) for p in posts]
            except (KeyError, TypeError, AttributeError, ValueError) as e:
                raise UpstreamError(f"Unexpected payload from Google for {google_location_id}: {e}")

            self._upsert_in_batches(db, models.GmbReview, review_rows, ["external_review_id", "tenant_id"])
            self._upsert_in_batches(db, models.GmbQuestion, question_rows, ["external_question_id", "tenant_id"])
            self._upsert_in_batches(db, models.GmbPost, post_rows, ["external_post_id", "tenant_id"])

            counts["reviews"] += len(review_rows)
            counts["questions"] += len(question_rows)
            counts["posts"] += len(post_rows)

        return counts

    def _upsert_in_batches(self, db: Session, model, rows: List[Dict[str, Any]], key: List[str]) -> None:
        """
        Upsert séquentiel par batchs, un commit par batch

        Un batch en échec arrête les suivants ; les batchs déjà commités restent
        (upsert idempotent → relancer le sync est sûr)
        """
        for index, batch in enumerate(chunked(rows, self.batch_size)):
            try:
                upsert_rows(db, model, batch, key)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(
                    "sync_upsert_batch_failed",
                    table=model.__tablename__,
                    batch=index,
                    batch_size=len(batch),
                    error=str(e),
                )
                raise StorageError(f"Failed to save {model.__tablename__} batch {index}: {e}")

    def _touch_last_sync(self, db: Session, connection: models.GmbConnection) -> None:
        """last_sync_at : un échec ici est loggé, jamais fatal"""
        try:
            connection.last_sync_at = self.clock()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("sync_last_sync_update_failed", connection_id=str(connection.id), error=str(e))

    def _start_run(self, db: Session, tenant_id: UUID, connection_id: UUID, sync_type: str) -> Optional[models.SyncRun]:
        run = models.SyncRun(
            tenant_id=tenant_id,
            connection_id=connection_id,
            status=SyncStatus.RUNNING,
            sync_type=sync_type,
            started_at=self.clock(),
        )
        try:
            db.add(run)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("sync_run_create_failed", tenant_id=str(tenant_id), error=str(e))
            return None
        return run

    def _finish_run(
        self,
        db: Session,
        run: Optional[models.SyncRun],
        status: SyncStatus,
        items_synced: int = 0,
        error: Optional[str] = None,
    ) -> None:
        if run is None:
            return
        try:
            run.status = status
            run.finished_at = self.clock()
            run.items_synced = items_synced
            run.error = error[:1000] if error else None  # Limiter à 1000 chars
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("sync_run_update_failed", run_id=str(run.id), error=str(e))


def get_sync_status(db: Session, tenant_id: UUID) -> Dict[str, Any]:
    """Dernier SyncRun du tenant + last_sync_at de la connexion active"""
    last_run = db.execute(
        select(models.SyncRun)
        .where(models.SyncRun.tenant_id == tenant_id)
        .order_by(models.SyncRun.started_at.desc())
        .limit(1)
    ).scalar_one_or_none()
    connection = get_active_connection(db, tenant_id)

    return {
        "success": True,
        "running": is_sync_running(tenant_id),
        "last_sync_at": isoformat(connection.last_sync_at) if connection else None,
        "last_run": {
            "id": str(last_run.id),
            "status": last_run.status.value,
            "sync_type": last_run.sync_type,
            "started_at": isoformat(last_run.started_at),
            "finished_at": isoformat(last_run.finished_at),
            "items_synced": last_run.items_synced,
            "error": last_run.error,
        } if last_run else None,
    }


_orchestrator: Optional[SyncOrchestrator] = None


def get_sync_orchestrator() -> SyncOrchestrator:
    """Instance du process (gate construit d'après SYNC_COOLDOWN_BACKEND)"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SyncOrchestrator()
    return _orchestrator
