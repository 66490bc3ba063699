from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from uuid import UUID

from app.models.sync_attempt import SyncStatus, SyncTrigger


class SyncAttemptResponse(BaseModel):
    """Schema for one sync log entry"""
    id: int
    integration_id: UUID
    status: SyncStatus
    trigger: SyncTrigger
    started_at: datetime
    completed_at: Optional[datetime] = None
    records_processed: int
    records_imported: int
    records_skipped: int
    error_message: Optional[str] = None
    cancel_requested: bool = False

    class Config:
        from_attributes = True  # Allows conversion from SQLAlchemy models


class SyncAlreadyRunningResponse(BaseModel):
    """409 body: the attempt that holds the slot"""
    kind: str = "AlreadyRunning"
    message: str
    attempt: Optional[SyncAttemptResponse] = None
