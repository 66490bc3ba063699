"""
Workout import sink: where records fetched by a sync run end up.

The sync engine only knows the WorkoutImportSink interface. The default sink
stores each provider record as an ExternalWorkout row.
"""

import enum
import logging
from abc import ABC, abstractmethod
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.timeutils import as_utc
from app.crud import external_workout as workout_crud
from app.models.external_workout import ExternalWorkout
from app.models.integration import Integration
from app.services.providers.base import ProviderRecord

logger = logging.getLogger(__name__)


class ImportOutcome(str, enum.Enum):
    IMPORTED = "imported"
    DUPLICATE_SKIPPED = "duplicate_skipped"
    INVALID_SKIPPED = "invalid_skipped"


class WorkoutImportSink(ABC):
    """
    Destination for provider records.

    import_record must leave the database unchanged for a record it does not
    import.
    """

    @abstractmethod
    def import_record(self, db: Session, integration: Integration, record: ProviderRecord) -> ImportOutcome:
        pass


def validate_record(record: ProviderRecord) -> list:
    """
    Return a list of problems with `record`; empty when it can be imported.
    """
    problems = []
    if not record.external_id:
        problems.append("missing external id")
    if not record.name or not record.name.strip():
        problems.append("missing name")
    if record.start_time is None:
        problems.append("missing start time")
    if record.end_time is not None and record.start_time is not None:
        if as_utc(record.end_time) < as_utc(record.start_time):
            problems.append("ends before it starts")
    for field in ("duration_minutes", "calories", "distance_meters"):
        value = getattr(record, field)
        if value is not None and value < 0:
            problems.append(f"negative {field}")
    return problems


class ExternalWorkoutSink(WorkoutImportSink):
    """
    Stores provider records as ExternalWorkout rows.

    Each record is written inside a SAVEPOINT so a failure rolls back only
    that record.
    """

    def import_record(self, db: Session, integration: Integration, record: ProviderRecord) -> ImportOutcome:
        problems = validate_record(record)
        if problems:
            logger.info(
                f"Skipping invalid {integration.kind.value} record {record.external_id!r}: {', '.join(problems)}"
            )
            return ImportOutcome.INVALID_SKIPPED

        if workout_crud.exists(db, integration.id, record.external_id):
            return ImportOutcome.DUPLICATE_SKIPPED

        workout = ExternalWorkout(
            integration_id=integration.id,
            external_id=record.external_id,
            name=record.name.strip(),
            activity_type=record.activity_type or "",
            start_time=record.start_time,
            end_time=record.end_time,
            duration_minutes=record.duration_minutes,
            calories_burned=record.calories,
            distance_meters=record.distance_meters,
            is_imported=True,
            raw_data=record.raw or {},
        )

        savepoint = db.begin_nested()
        try:
            workout_crud.add(db, workout)
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            return ImportOutcome.DUPLICATE_SKIPPED
        except Exception:
            savepoint.rollback()
            raise

        return ImportOutcome.IMPORTED


external_workout_sink = ExternalWorkoutSink()
