"""
Sync attempt model: one execution of the import job for an integration.

Append-only history. Only the sync engine mutates a row, and only while it is
IN_PROGRESS.
"""

import enum
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum, ForeignKey, Index, JSON, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from app.core.database import Base


class SyncStatus(str, enum.Enum):
    """
    Lifecycle status of a sync attempt.

    - IN_PROGRESS: Claimed and running (at most one per integration)
    - COMPLETED: Provider sequence exhausted without errors
    - FAILED: Stopped before importing anything
    - CANCELLED: Stopped at a page boundary on request
    - PARTIALLY_COMPLETED: Stopped by an error after importing at least one record
    """
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PARTIALLY_COMPLETED = "partially_completed"

    @property
    def is_terminal(self) -> bool:
        return self is not SyncStatus.IN_PROGRESS


class SyncTrigger(str, enum.Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


class SyncAttempt(Base):
    """
    Ledger entry for one sync run.

    records_processed == records_imported + records_skipped for every record
    the run observed; `details` keeps the duplicate/invalid split of the
    skipped count.
    """
    __tablename__ = "sync_attempts"

    # Integer key: history is ordered by insertion
    id = Column(Integer, primary_key=True, index=True)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(Enum(SyncStatus, values_callable=lambda x: [e.value for e in x]), default=SyncStatus.IN_PROGRESS, nullable=False, index=True)
    trigger = Column(Enum(SyncTrigger, values_callable=lambda x: [e.value for e in x]), default=SyncTrigger.MANUAL, nullable=False)

    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Counters
    records_processed = Column(Integer, default=0, nullable=False)
    records_imported = Column(Integer, default=0, nullable=False)
    records_skipped = Column(Integer, default=0, nullable=False)

    error_message = Column(Text, nullable=True)
    sync_cursor = Column(String, nullable=True)
    details = Column(JSON, nullable=False, default=dict)

    # Cooperative cancellation, checked between pages
    cancel_requested = Column(Boolean, default=False, nullable=False)

    integration = relationship("Integration", back_populates="sync_attempts")

    __table_args__ = (
        # Single-flight claim: a second IN_PROGRESS row for the same integration
        # violates this index
        Index(
            'uq_sync_attempts_one_in_progress',
            'integration_id',
            unique=True,
            postgresql_where=text("status = 'in_progress'"),
            sqlite_where=text("status = 'in_progress'"),
        ),
        Index('ix_sync_attempts_integration_started', 'integration_id', 'started_at'),
    )

    def __repr__(self):
        return f"<SyncAttempt(id={self.id}, integration_id={self.integration_id}, status={self.status.value})>"
