"""
Integration model: a user's durable link to one external fitness provider.

Tokens are encrypted at rest (see app.core.encryption) and never leave the
service through a response schema.
"""

import enum
import uuid
from sqlalchemy import Column, String, Boolean, DateTime, Enum, Index, JSON, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from app.core.database import Base


class IntegrationKind(str, enum.Enum):
    """
    Supported external providers.

    - STRAVA: Strava activities API
    - MYFITNESSPAL: MyFitnessPal diary (exercise entries)
    """
    STRAVA = "strava"
    MYFITNESSPAL = "myfitnesspal"


class Integration(Base):
    """
    Connected provider account for a user.

    One row per (user_id, kind): reconnecting after a disconnect reactivates the
    same row, so the pair is unique regardless of is_active.
    """
    __tablename__ = "integrations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    kind = Column(Enum(IntegrationKind, values_callable=lambda x: [e.value for e in x]), nullable=False, index=True)
    external_user_id = Column(String(100), nullable=False)

    # OAuth tokens (stored encrypted)
    access_token = Column(String, nullable=False)
    refresh_token = Column(String, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Provider-specific data (scopes, athlete name, ...)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    is_active = Column(Boolean, default=True, nullable=False, index=True)
    connected_at = Column(DateTime(timezone=True), nullable=False)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    sync_cursor = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    sync_attempts = relationship(
        "SyncAttempt",
        back_populates="integration",
        cascade="all, delete-orphan",
        order_by="SyncAttempt.id",
    )

    __table_args__ = (
        Index('ix_integrations_user_kind', 'user_id', 'kind', unique=True),
    )

    def __repr__(self):
        return f"<Integration(user_id={self.user_id}, kind={self.kind.value}, is_active={self.is_active})>"
