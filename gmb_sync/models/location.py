"""
Modèle GmbLocation (fiche établissement synchronisée depuis Google)
"""
from sqlalchemy import (
    Column, String, DateTime, ForeignKey, Boolean, Float, Text, JSON, UniqueConstraint, Uuid,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid

from ..database import Base


class GmbLocation(Base):
    __tablename__ = "gmb_locations"
    __table_args__ = (
        # Clé d'upsert du sync
        UniqueConstraint("location_id", "tenant_id", name="uq_gmb_locations_location_tenant"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    connection_id = Column(Uuid, ForeignKey("gmb_accounts.id", ondelete="CASCADE"), nullable=False, index=True)

    # Resource name Google (ex: "locations/987654321")
    location_id = Column(String(255), nullable=False)
    location_name = Column(String(255), nullable=False)
    address = Column(Text, nullable=True)
    phone = Column(String(64), nullable=True)
    category = Column(String(255), nullable=True)
    website = Column(String(1024), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    business_hours = Column(JSON, nullable=True)
    profile_metadata = Column(JSON, nullable=True)  # profile, categories, regularHours

    is_active = Column(Boolean, nullable=False, default=True)
    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relations
    connection = relationship("GmbConnection", back_populates="locations")
    reviews = relationship("GmbReview", back_populates="location", passive_deletes=True)
    questions = relationship("GmbQuestion", back_populates="location", passive_deletes=True)
    posts = relationship("GmbPost", back_populates="location", passive_deletes=True)

    def __repr__(self):
        return f"<GmbLocation {self.location_id} - {self.location_name}>"
