"""
Corps de requête des endpoints /api/gmb
"""
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field


class SyncRequest(BaseModel):
    sync_type: Literal["locations", "full"] = "locations"


class DisconnectRequest(BaseModel):
    connection_id: UUID
    option: Literal["keep", "delete", "export"] = "keep"


class RetentionSettingsRequest(BaseModel):
    retention_days: int = Field(..., ge=1, le=365)
    delete_on_disconnect: bool = False


class ReviewReplyRequest(BaseModel):
    comment: str = Field(..., min_length=1, max_length=4096)


class QuestionAnswerRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4096)
