"""
Modèle GmbConnection (compte Google Business Profile lié à un tenant)
⚠️ SÉCURITÉ: access_token et refresh_token sont chiffrés (Fernet, voir utils/security.py)
"""
from sqlalchemy import (
    Column, String, DateTime, ForeignKey, LargeBinary, Boolean, Integer, JSON,
    UniqueConstraint, Uuid,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid

from ..database import Base


class GmbConnection(Base):
    __tablename__ = "gmb_accounts"
    __table_args__ = (
        # Une seule connexion par (tenant, compte Google) : la ré-auth la réactive
        UniqueConstraint("tenant_id", "account_id", name="uq_gmb_accounts_tenant_account"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Compte Google (ex: "accounts/1234567890")
    account_id = Column(String(255), nullable=False)
    account_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)

    # Tokens CHIFFRÉS - NULL après disconnect
    access_token = Column(LargeBinary, nullable=True)
    refresh_token = Column(LargeBinary, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(JSON, nullable=True)

    # État
    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    disconnected_at = Column(DateTime(timezone=True), nullable=True)

    # Politique de rétention après disconnect
    data_retention_days = Column(Integer, nullable=False, default=30)
    delete_on_disconnect = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relations
    tenant = relationship("Tenant", back_populates="connections")
    locations = relationship("GmbLocation", back_populates="connection", passive_deletes=True)
    sync_runs = relationship("SyncRun", back_populates="connection", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<GmbConnection {self.account_id} active={self.is_active}>"
