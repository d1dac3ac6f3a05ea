"""
Token Refresher Google : unique point d'entrée pour obtenir un access token valide

Utilisé par le sync, les réponses aux avis, les réponses Q&A et validate-token.

Flow:
1. Token stocké encore valide au-delà du buffer (5 min) → retourné tel quel, pas d'appel réseau
2. Sinon lock par connexion, relecture de la ligne (un autre appel a peut-être déjà rafraîchi)
3. POST grant_type=refresh_token, écriture en base AVANT de retourner
"""
import asyncio
import weakref
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import AuthExpired, StorageError
from ..models.connection import GmbConnection
from ..utils.dates import as_utc, utcnow
from ..utils.security import TokenDecryptionError, decrypt_token, encrypt_token
from .google_client import GoogleClient, google_client

logger = structlog.get_logger(__name__)

DEFAULT_EXPIRES_IN = 3600


class TokenRefresher:
    def __init__(
        self,
        client: Optional[GoogleClient] = None,
        buffer_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client or google_client
        self.buffer = timedelta(seconds=buffer_seconds if buffer_seconds is not None else settings.TOKEN_REFRESH_BUFFER_SECONDS)
        self.clock = clock
        # Un lock vit tant qu'un appel le détient ou l'attend
        self._locks: "weakref.WeakValueDictionary[UUID, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, connection_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = self._locks[connection_id] = asyncio.Lock()
        return lock

    def _cached_token(self, connection: GmbConnection) -> Optional[str]:
        """Access token déchiffré s'il est encore valide au-delà du buffer, sinon None"""
        expires_at = as_utc(connection.token_expires_at)
        if not connection.access_token or expires_at is None:
            return None
        if self.clock() >= expires_at - self.buffer:
            return None
        try:
            return decrypt_token(connection.access_token)
        except TokenDecryptionError:
            # Illisible → on tente un refresh
            logger.warning("stored_access_token_unreadable", connection_id=str(connection.id))
            return None

    async def ensure_valid_token(self, db: Session, connection: GmbConnection) -> str:
        """
        Retourne un access token Google valide pour la connexion

        Raises:
            AuthExpired: pas de refresh token, refresh token illisible ou grant rejeté
            UpstreamError: token endpoint indisponible
            StorageError: impossible de persister le nouveau token
        """
        token = self._cached_token(connection)
        if token:
            return token

        async with self._lock_for(connection.id):
            # Re-check après le lock : un appel concurrent a pu rafraîchir
            try:
                db.refresh(connection)
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to reload connection: {e}")

            token = self._cached_token(connection)
            if token:
                return token

            if not connection.is_active or not connection.refresh_token:
                raise AuthExpired("No refresh token available")

            try:
                refresh_token = decrypt_token(connection.refresh_token)
            except TokenDecryptionError:
                raise AuthExpired("Stored refresh token cannot be decrypted")

            logger.info("google_token_refresh", connection_id=str(connection.id))
            tokens = await self.client.refresh_access_token(refresh_token)
            return self._persist(db, connection, tokens)

    def _persist(self, db: Session, connection: GmbConnection, tokens: dict) -> str:
        access_token = tokens["access_token"]
        expires_in = tokens.get("expires_in") or DEFAULT_EXPIRES_IN

        connection.access_token = encrypt_token(access_token)
        connection.token_expires_at = self.clock() + timedelta(seconds=int(expires_in))
        # Google ne renvoie pas toujours de nouveau refresh_token : garder l'ancien
        if tokens.get("refresh_token"):
            connection.refresh_token = encrypt_token(tokens["refresh_token"])

        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("google_token_persist_failed", connection_id=str(connection.id), error=str(e))
            raise StorageError(f"Failed to persist refreshed token: {e}")

        return access_token


# Instance globale (locks partagés par toutes les requêtes du process)
token_refresher = TokenRefresher()


async def ensure_valid_token(db: Session, connection: GmbConnection) -> str:
    return await token_refresher.ensure_valid_token(db, connection)
