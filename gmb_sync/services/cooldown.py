"""
🔒 Cooldown gate du sync (1 tentative / tenant / SYNC_COOLDOWN_SECONDS)

Deux implémentations:
- DatabaseCooldownGate: PostgreSQL arbitre entre les instances, et son
  horloge fait foi. Un UPDATE conditionnel sur tenants.last_sync_attempt_at
  fait office de compare-and-set : une seule requête concurrente passe.
- LocalCooldownGate: dict en mémoire, valable pour UNE instance seulement.

La tentative est enregistrée AVANT tout appel réseau.
"""
import asyncio
import math
from datetime import datetime, timedelta
from typing import Dict, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import NotFound, StorageError
from ..models.tenant import Tenant
from ..utils.dates import as_utc, utcnow

logger = structlog.get_logger(__name__)


def _remaining_seconds(last_attempt: Optional[datetime], now: datetime, cooldown_seconds: int) -> int:
    if last_attempt is None:
        return 1
    elapsed = (now - as_utc(last_attempt)).total_seconds()
    return min(max(math.ceil(cooldown_seconds - elapsed), 1), cooldown_seconds)


def database_now(db: Session) -> datetime:
    """
    Horloge de référence du gate : celle de PostgreSQL, commune à toutes les
    instances. SQLite (tests, dev local) n'a qu'un process : horloge locale.
    """
    if db.get_bind().dialect.name != "postgresql":
        return utcnow()
    try:
        return as_utc(db.execute(select(func.now())).scalar_one())
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Failed to read database clock: {e}")


class DatabaseCooldownGate:
    """Cooldown partagé par toutes les instances (colonne tenants.last_sync_attempt_at)"""

    def __init__(self, cooldown_seconds: Optional[int] = None):
        self.cooldown_seconds = cooldown_seconds or settings.SYNC_COOLDOWN_SECONDS

    async def try_acquire(self, db: Session, tenant_id: UUID, now: Optional[datetime] = None) -> Optional[int]:
        """
        Returns:
            None si la tentative est acceptée (et enregistrée),
            sinon le nombre de secondes à attendre (jamais plus que la fenêtre)

        Sans `now` explicite, seuil et valeur écrite viennent de l'horloge de
        la base, pas de celle du serveur applicatif.
        """
        now = now or database_now(db)
        threshold = now - timedelta(seconds=self.cooldown_seconds)

        try:
            result = db.execute(
                update(Tenant)
                .where(
                    Tenant.id == tenant_id,
                    or_(
                        Tenant.last_sync_attempt_at.is_(None),
                        Tenant.last_sync_attempt_at <= threshold,
                    ),
                )
                .values(last_sync_attempt_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("cooldown_gate_write_failed", tenant_id=str(tenant_id), error=str(e))
            raise StorageError(f"Cooldown gate update failed: {e}")

        if result.rowcount == 1:
            return None

        tenant = db.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFound("Tenant not found")
        return _remaining_seconds(tenant.last_sync_attempt_at, now, self.cooldown_seconds)


class LocalCooldownGate:
    """
    Cooldown process-local

    ⚠️ Ne protège pas contre deux instances : utiliser DatabaseCooldownGate
    dès qu'il y a plus d'un process.
    """

    def __init__(self, cooldown_seconds: Optional[int] = None):
        self.cooldown_seconds = cooldown_seconds or settings.SYNC_COOLDOWN_SECONDS
        self._last_attempts: Dict[UUID, datetime] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, db: Session, tenant_id: UUID, now: Optional[datetime] = None) -> Optional[int]:
        now = now or utcnow()
        async with self._lock:
            last_attempt = self._last_attempts.get(tenant_id)
            if last_attempt is not None and (now - last_attempt).total_seconds() < self.cooldown_seconds:
                return _remaining_seconds(last_attempt, now, self.cooldown_seconds)
            self._last_attempts[tenant_id] = now
            return None

    def reset(self) -> None:
        self._last_attempts.clear()


def build_cooldown_gate(backend: Optional[str] = None):
    backend = backend or settings.SYNC_COOLDOWN_BACKEND
    if backend == "memory":
        return LocalCooldownGate()
    if backend == "database":
        return DatabaseCooldownGate()
    raise ValueError(f"Unknown SYNC_COOLDOWN_BACKEND: {backend}")
