"""
Modèle SyncRun (suivi des synchronisations Google)
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Enum, Integer, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid
import enum

from ..database import Base


class SyncStatus(str, enum.Enum):
    """États d'un sync"""
    RUNNING = "running"
    OK = "ok"
    ERROR = "error"
    CANCELLED = "cancelled"


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    connection_id = Column(Uuid, ForeignKey("gmb_accounts.id", ondelete="CASCADE"), nullable=False)

    status = Column(Enum(SyncStatus), nullable=False, default=SyncStatus.RUNNING)
    sync_type = Column(String(32), nullable=False, default="locations")

    # Timing
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    items_synced = Column(Integer, nullable=False, default=0)

    # Errors
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relations
    connection = relationship("GmbConnection", back_populates="sync_runs")

    def __repr__(self):
        return f"<SyncRun {self.status} - connection={self.connection_id}>"
