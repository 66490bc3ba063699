"""
External workout model: a provider record that has been pulled into the
application.

The (integration_id, external_id) pair is the idempotence key for imports.
"""

import uuid
from sqlalchemy import Column, String, Integer, Float, Boolean, DateTime, ForeignKey, Index, JSON, func
from sqlalchemy.dialects.postgresql import UUID
from app.core.database import Base


class ExternalWorkout(Base):
    __tablename__ = "external_workouts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String, nullable=False)

    name = Column(String, nullable=False)
    activity_type = Column(String, nullable=False, default="")
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    calories_burned = Column(Float, nullable=True)
    distance_meters = Column(Float, nullable=True)

    is_imported = Column(Boolean, default=True, nullable=False)
    raw_data = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('ix_external_workouts_integration_external', 'integration_id', 'external_id', unique=True),
    )

    def __repr__(self):
        return f"<ExternalWorkout(integration_id={self.integration_id}, external_id={self.external_id})>"
