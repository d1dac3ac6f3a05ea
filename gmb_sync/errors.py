"""
Taxonomie des erreurs du sync Google Business Profile

Chaque erreur porte son status HTTP, un code stable et le message montré
à l'utilisateur. Le détail technique (status Google, body, exception DB)
reste dans les logs.
"""
from typing import Optional


class GmbSyncError(Exception):
    """Base de toutes les erreurs typées du service"""

    status_code = 500
    code = "INTERNAL_ERROR"
    public_message = "Something went wrong, please try again"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.public_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.public_message_for_user(), "code": self.code}

    def public_message_for_user(self) -> str:
        return self.message


class AuthExpired(GmbSyncError):
    """Refresh token révoqué/invalide : l'utilisateur doit reconnecter son compte"""

    status_code = 401
    code = "AUTH_EXPIRED"
    public_message = "Google authorization expired. Please reconnect your account."

    def public_message_for_user(self) -> str:
        return self.public_message


class RateLimited(GmbSyncError):
    """Cooldown du sync ou 429 Google après épuisement des retries"""

    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, retry_after_seconds: int, message: Optional[str] = None):
        self.retry_after_seconds = max(int(retry_after_seconds), 1)
        super().__init__(
            message or f"Please wait {self.retry_after_seconds} seconds before syncing again"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retryAfterSeconds"] = self.retry_after_seconds
        return data


class UpstreamError(GmbSyncError):
    """Erreur Google (non-429) après épuisement des retries, ou réponse illisible"""

    status_code = 502
    code = "UPSTREAM_ERROR"
    public_message = "Sync with Google failed. Please try again."

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        self.status = status
        self.body = body[:500] if body else ""
        super().__init__(message)

    def public_message_for_user(self) -> str:
        return self.public_message


class StorageError(GmbSyncError):
    """Échec d'écriture/lecture locale (DB ou storage des exports)"""

    status_code = 500
    code = "STORAGE_ERROR"
    public_message = "Could not save data. Please try again."

    def public_message_for_user(self) -> str:
        return self.public_message


class Forbidden(GmbSyncError):
    status_code = 403
    code = "FORBIDDEN"
    public_message = "Account not found or access denied"


class NotFound(GmbSyncError):
    status_code = 404
    code = "NOT_FOUND"
    public_message = "Not found"


class SyncCancelled(GmbSyncError):
    status_code = 409
    code = "SYNC_CANCELLED"
    public_message = "Sync was cancelled"
