"""
Modèle GmbReview (avis client)
"""
from sqlalchemy import (
    Column, String, DateTime, ForeignKey, Boolean, Integer, Text, UniqueConstraint, Uuid,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid

from ..database import Base


class GmbReview(Base):
    __tablename__ = "gmb_reviews"
    __table_args__ = (
        UniqueConstraint("external_review_id", "tenant_id", name="uq_gmb_reviews_external_tenant"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    location_id = Column(Uuid, ForeignKey("gmb_locations.id", ondelete="CASCADE"), nullable=False, index=True)

    external_review_id = Column(String(512), nullable=False)

    # Données personnelles (anonymisées au disconnect "keep"/"export")
    reviewer_name = Column(String(255), nullable=True)
    reviewer_profile_photo_url = Column(String(1024), nullable=True)

    rating = Column(Integer, nullable=True)
    comment = Column(Text, nullable=True)
    review_date = Column(DateTime(timezone=True), nullable=True)
    reply_text = Column(Text, nullable=True)
    replied_at = Column(DateTime(timezone=True), nullable=True)

    is_archived = Column(Boolean, nullable=False, default=False)
    is_anonymized = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    location = relationship("GmbLocation", back_populates="reviews")

    def __repr__(self):
        return f"<GmbReview {self.external_review_id} rating={self.rating}>"
