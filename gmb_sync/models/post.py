"""
Modèle GmbPost (local posts publiés sur la fiche)
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean, Text, UniqueConstraint, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid

from ..database import Base


class GmbPost(Base):
    __tablename__ = "gmb_posts"
    __table_args__ = (
        UniqueConstraint("external_post_id", "tenant_id", name="uq_gmb_posts_external_tenant"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    location_id = Column(Uuid, ForeignKey("gmb_locations.id", ondelete="CASCADE"), nullable=False, index=True)

    external_post_id = Column(String(512), nullable=False)
    summary = Column(Text, nullable=True)
    topic_type = Column(String(64), nullable=True)  # STANDARD, EVENT, OFFER, ALERT
    state = Column(String(64), nullable=True)
    media_url = Column(String(1024), nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)

    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    location = relationship("GmbLocation", back_populates="posts")

    def __repr__(self):
        return f"<GmbPost {self.external_post_id} ({self.topic_type})>"
