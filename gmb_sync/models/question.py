"""
Modèle GmbQuestion (Q&A de la fiche)
"""
from sqlalchemy import (
    Column, String, DateTime, ForeignKey, Boolean, Integer, Text, UniqueConstraint, Uuid,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid

from ..database import Base


class GmbQuestion(Base):
    __tablename__ = "gmb_questions"
    __table_args__ = (
        UniqueConstraint("external_question_id", "tenant_id", name="uq_gmb_questions_external_tenant"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    location_id = Column(Uuid, ForeignKey("gmb_locations.id", ondelete="CASCADE"), nullable=False, index=True)

    external_question_id = Column(String(512), nullable=False)
    author_name = Column(String(255), nullable=True)
    question_text = Column(Text, nullable=True)
    answer_text = Column(Text, nullable=True)
    answered_at = Column(DateTime(timezone=True), nullable=True)
    upvote_count = Column(Integer, nullable=False, default=0)

    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    location = relationship("GmbLocation", back_populates="questions")

    def __repr__(self):
        return f"<GmbQuestion {self.external_question_id}>"
