from pydantic import AliasChoices, BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
from uuid import UUID

from app.models.integration import IntegrationKind


class IntegrationResponse(BaseModel):
    """
    Integration summary returned to clients.

    Tokens are deliberately absent.
    """
    id: UUID
    kind: IntegrationKind
    external_user_id: str
    is_active: bool
    connected_at: datetime
    last_sync_at: Optional[datetime] = None
    token_expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("metadata_", "metadata"))

    class Config:
        from_attributes = True  # Allows conversion from SQLAlchemy models


class IntegrationKindInfo(BaseModel):
    kind: IntegrationKind
    name: str
    configured: bool


class IntegrationKindsResponse(BaseModel):
    kinds: List[IntegrationKindInfo]


class ConnectBeginRequest(BaseModel):
    """Schema for starting a provider connection"""
    kind: IntegrationKind
    redirect_url: Optional[str] = Field(None, max_length=500, description="Where the client wants to land after connecting")


class ConnectBeginResponse(BaseModel):
    authorization_url: str
    state_expires_at: datetime


class ConnectCallbackResponse(BaseModel):
    """Schema for a completed connection"""
    integration: IntegrationResponse
    redirect_url: Optional[str] = None
    message: str


class ErrorResponse(BaseModel):
    """Body of every handled error"""
    kind: str
    message: str
