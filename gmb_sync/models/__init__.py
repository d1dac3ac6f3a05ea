"""
Import tous les modèles SQLAlchemy
"""
from .tenant import Tenant
from .user import User
from .connection import GmbConnection
from .location import GmbLocation
from .review import GmbReview
from .question import GmbQuestion
from .post import GmbPost
from .sync_run import SyncRun, SyncStatus

__all__ = [
    "Tenant", "User", "GmbConnection", "GmbLocation", "GmbReview", "GmbQuestion",
    "GmbPost", "SyncRun", "SyncStatus",
]
