"""
CRUD operations for imported external workouts.
"""

from uuid import UUID
from sqlalchemy.orm import Session

from app.models.external_workout import ExternalWorkout


def exists(db: Session, integration_id: UUID, external_id: str) -> bool:
    """
    True if the provider record was already imported for this integration.
    """
    return db.query(ExternalWorkout.id).filter(
        ExternalWorkout.integration_id == integration_id,
        ExternalWorkout.external_id == external_id
    ).first() is not None


def count_for_integration(db: Session, integration_id: UUID) -> int:
    return db.query(ExternalWorkout).filter(
        ExternalWorkout.integration_id == integration_id
    ).count()


def add(db: Session, workout: ExternalWorkout) -> ExternalWorkout:
    """
    Stage a workout in the current transaction. The caller flushes/commits.
    """
    db.add(workout)
    db.flush()
    return workout
