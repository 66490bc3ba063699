"""
Sync log ledger: append-only history of sync attempts.

Reads are open to everyone. The write helpers at the bottom are used by the
sync engine only; nothing else mutates an attempt.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
from sqlalchemy.orm import Session

from app.models.sync_attempt import SyncAttempt, SyncStatus, SyncTrigger


def get(db: Session, attempt_id: int) -> Optional[SyncAttempt]:
    return db.query(SyncAttempt).filter(SyncAttempt.id == attempt_id).first()


def history(db: Session, integration_id: UUID, limit: Optional[int] = 10) -> List[SyncAttempt]:
    """
    Attempts for an integration, most recent first.

    Args:
        limit: Maximum number of attempts, None for all
    """
    query = db.query(SyncAttempt).filter(
        SyncAttempt.integration_id == integration_id
    ).order_by(SyncAttempt.id.desc())
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def current(db: Session, integration_id: UUID) -> Optional[SyncAttempt]:
    """
    The in-progress attempt for an integration, if any.
    """
    return db.query(SyncAttempt).filter(
        SyncAttempt.integration_id == integration_id,
        SyncAttempt.status == SyncStatus.IN_PROGRESS
    ).first()


def latest(db: Session, integration_id: UUID) -> Optional[SyncAttempt]:
    return db.query(SyncAttempt).filter(
        SyncAttempt.integration_id == integration_id
    ).order_by(SyncAttempt.id.desc()).first()


def list_in_progress_started_before(db: Session, cutoff: datetime) -> List[SyncAttempt]:
    return db.query(SyncAttempt).filter(
        SyncAttempt.status == SyncStatus.IN_PROGRESS,
        SyncAttempt.started_at < cutoff
    ).all()


# --- engine-only writes -----------------------------------------------------


def insert_in_progress(
    db: Session,
    integration_id: UUID,
    started_at: datetime,
    trigger: SyncTrigger = SyncTrigger.MANUAL
) -> SyncAttempt:
    """
    Insert a new IN_PROGRESS attempt.

    Raises IntegrityError when another IN_PROGRESS attempt exists for the
    integration; the caller owns the rollback.
    """
    attempt = SyncAttempt(
        integration_id=integration_id,
        status=SyncStatus.IN_PROGRESS,
        trigger=trigger,
        started_at=started_at,
        records_processed=0,
        records_imported=0,
        records_skipped=0,
        details={},
        cancel_requested=False,
    )
    db.add(attempt)
    db.commit()
    db.refresh(attempt)
    return attempt


def run_flags(db: Session, attempt_id: int) -> Tuple[Optional[SyncStatus], bool]:
    """
    Read status and the cancellation flag straight from the database,
    bypassing the session's identity map.
    """
    row = db.query(SyncAttempt.status, SyncAttempt.cancel_requested).filter(
        SyncAttempt.id == attempt_id
    ).first()
    if row is None:
        return None, False
    return row[0], bool(row[1])


def update_in_progress(db: Session, attempt_id: int, values: Dict[str, Any]) -> int:
    """
    Write `values` only while the attempt is still IN_PROGRESS.

    Nothing is committed; a run that no longer owns its attempt updates 0 rows
    and the caller rolls back.

    Returns:
        int: Rows updated
    """
    return db.query(SyncAttempt).filter(
        SyncAttempt.id == attempt_id,
        SyncAttempt.status == SyncStatus.IN_PROGRESS
    ).update(values, synchronize_session=False)


def set_cancel_requested(db: Session, attempt_id: int) -> int:
    """
    Flag an in-progress attempt for cancellation.

    Returns:
        int: Rows updated (0 if the attempt already finished)
    """
    updated = db.query(SyncAttempt).filter(
        SyncAttempt.id == attempt_id,
        SyncAttempt.status == SyncStatus.IN_PROGRESS
    ).update({"cancel_requested": True}, synchronize_session=False)
    db.commit()
    return updated
