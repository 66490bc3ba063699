"""
Sync job engine.

Runs one sync attempt for an integration end to end:
- claim: insert the single IN_PROGRESS attempt (the partial unique index on
  sync_attempts rejects a second one, whoever gets there first)
- run: refresh the token if needed, then walk the provider's pages, importing
  each record through a WorkoutImportSink, until the sequence is exhausted, a
  fatal error stops it, or a cancellation request is seen between pages
- finish: write the terminal status and counters exactly once

Run failures are recorded on the attempt, never raised to the caller.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.retry import retry_async
from app.core.timeutils import as_utc, utcnow
from app.crud import integration as integration_crud
from app.crud import sync_attempt as attempt_crud
from app.models.integration import Integration
from app.models.sync_attempt import SyncAttempt, SyncStatus, SyncTrigger
from app.services.integration_service import IntegrationNotFoundError
from app.services.providers import ExternalServiceError, FitnessProvider, RecordsPage, get_provider
from app.services.workout_import import ImportOutcome, WorkoutImportSink, external_workout_sink

logger = logging.getLogger(__name__)


class SyncAlreadyRunningError(Exception):
    """An attempt is already IN_PROGRESS for the integration."""

    kind = "AlreadyRunning"

    def __init__(self, attempt: Optional[SyncAttempt]):
        self.attempt = attempt
        self.message = "A sync is already running for this integration"
        super().__init__(self.message)


class SyncStateError(Exception):
    """Illegal transition on a sync attempt (it is already terminal)."""
    pass


class NoSyncInProgressError(IntegrationNotFoundError):
    def __init__(self):
        super().__init__("No sync in progress for this integration")


class _RunState:
    """Counters for one run, flushed to the attempt after every page."""

    def __init__(self, attempt: SyncAttempt):
        self.processed = attempt.records_processed or 0
        self.imported = attempt.records_imported or 0
        self.skipped = attempt.records_skipped or 0
        details = attempt.details or {}
        self.duplicates = details.get("duplicates_skipped", 0)
        self.invalid = details.get("invalid_skipped", 0)
        self.pages = details.get("pages", 0)
        self.cursor: Optional[str] = attempt.sync_cursor

    def record(self, outcome: ImportOutcome):
        self.processed += 1
        if outcome is ImportOutcome.IMPORTED:
            self.imported += 1
        elif outcome is ImportOutcome.DUPLICATE_SKIPPED:
            self.skipped += 1
            self.duplicates += 1
        else:
            self.skipped += 1
            self.invalid += 1

    def values(self) -> Dict[str, Any]:
        return {
            "records_processed": self.processed,
            "records_imported": self.imported,
            "records_skipped": self.skipped,
            "sync_cursor": self.cursor,
            "details": {
                "duplicates_skipped": self.duplicates,
                "invalid_skipped": self.invalid,
                "pages": self.pages,
            },
        }


class SyncEngine:
    """
    Executes sync attempts.

    The retry policy and sleep function are injectable so tests run without
    real delays.
    """

    def __init__(
        self,
        sink: Optional[WorkoutImportSink] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.sink = sink or external_workout_sink
        self.max_attempts = max_attempts or settings.SYNC_FETCH_MAX_ATTEMPTS
        self.base_delay = settings.SYNC_BACKOFF_BASE_SECONDS if base_delay is None else base_delay
        self.max_delay = settings.SYNC_BACKOFF_MAX_SECONDS if max_delay is None else max_delay
        self.sleep = sleep

    # --- claiming -----------------------------------------------------------

    def _start_time(self, db: Session, integration_id: UUID) -> datetime:
        """
        now, unless the previous attempt finished "later" (clock skew between
        workers); history never goes backwards.
        """
        now = utcnow()
        previous = attempt_crud.latest(db, integration_id)
        if previous and previous.completed_at is not None:
            finished = as_utc(previous.completed_at)
            if finished > now:
                return finished
        return now

    def claim(
        self,
        db: Session,
        integration_id: UUID,
        trigger: SyncTrigger = SyncTrigger.MANUAL
    ) -> SyncAttempt:
        """
        Claim the single in-progress slot for an integration.

        Raises:
            IntegrationNotFoundError: Unknown or inactive integration
            SyncAlreadyRunningError: Another attempt holds the slot
        """
        trigger = SyncTrigger(trigger)
        integration = integration_crud.get_by_id(db, integration_id)
        if not integration or not integration.is_active:
            raise IntegrationNotFoundError()

        running = attempt_crud.current(db, integration_id)
        if running:
            raise SyncAlreadyRunningError(running)

        try:
            attempt = attempt_crud.insert_in_progress(
                db, integration_id, self._start_time(db, integration_id), trigger
            )
        except IntegrityError:
            # Lost the race to a concurrent claim
            db.rollback()
            raise SyncAlreadyRunningError(attempt_crud.current(db, integration_id))

        logger.info(f"Claimed sync attempt {attempt.id} for integration {integration_id} ({trigger.value})")
        return attempt

    # --- finishing ----------------------------------------------------------

    def _finish(
        self,
        db: Session,
        attempt: SyncAttempt,
        status: SyncStatus,
        error_message: Optional[str] = None,
        state: Optional[_RunState] = None,
    ) -> SyncAttempt:
        """
        Move an attempt to a terminal status. Called once per attempt.
        """
        if not status.is_terminal:
            raise SyncStateError(f"{status.value} is not a terminal status")
        if attempt.status is not SyncStatus.IN_PROGRESS:
            raise SyncStateError(
                f"Sync attempt {attempt.id} is already {attempt.status.value}"
            )

        now = utcnow()
        started = as_utc(attempt.started_at)
        completed_at = now if started is None or now >= started else started

        values = state.values() if state is not None else {}
        values.update(status=status, completed_at=completed_at, error_message=error_message)
        if not attempt_crud.update_in_progress(db, attempt.id, values):
            # Finished by someone else (reaper, abort) since it was loaded
            db.rollback()
            db.refresh(attempt)
            raise SyncStateError(
                f"Sync attempt {attempt.id} is already {attempt.status.value}"
            )

        if status in (SyncStatus.COMPLETED, SyncStatus.PARTIALLY_COMPLETED):
            integration = attempt.integration
            # The watermark only advances when the whole sequence was read
            watermark = started.isoformat() if status is SyncStatus.COMPLETED else integration.sync_cursor
            integration_crud.mark_synced(db, integration, completed_at, watermark)
        else:
            db.commit()
        db.refresh(attempt)

        log = logger.info if status in (SyncStatus.COMPLETED, SyncStatus.CANCELLED) else logger.warning
        log(
            f"Sync attempt {attempt.id} finished {status.value}: processed={attempt.records_processed} "
            f"imported={attempt.records_imported} skipped={attempt.records_skipped}"
            + (f" error={error_message}" if error_message else "")
        )
        return attempt

    def _finish_after_error(self, db: Session, attempt: SyncAttempt, state: _RunState, message: str) -> SyncAttempt:
        status = SyncStatus.PARTIALLY_COMPLETED if state.imported > 0 else SyncStatus.FAILED
        return self._finish(db, attempt, status, error_message=message, state=state)

    def abort(self, db: Session, attempt: SyncAttempt, message: str) -> SyncAttempt:
        """
        Fail an attempt that was claimed but will never run (e.g. the worker
        queue is unreachable).
        """
        return self._finish(db, attempt, SyncStatus.FAILED, error_message=message)

    # --- running ------------------------------------------------------------

    async def _ensure_fresh_token(self, db: Session, integration: Integration, provider: FitnessProvider) -> str:
        """
        Return a usable access token, refreshing it when it is about to expire.

        Raises:
            ExternalServiceError: Refresh failed
        """
        if not provider.is_token_expired(integration.token_expires_at):
            return integration_crud.get_access_token(integration)

        refresh_token = integration_crud.get_refresh_token(integration)
        if not refresh_token:
            return integration_crud.get_access_token(integration)

        logger.info(f"Refreshing {provider.display_name} token for integration {integration.id}")
        grant = await retry_async(
            lambda: provider.refresh_access_token(refresh_token),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            is_retryable=_is_transient,
            sleep=self.sleep,
            description=f"{provider.display_name} token refresh",
        )
        integration_crud.update_tokens(
            db,
            integration,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            token_expires_at=grant.expires_at,
        )
        return grant.access_token

    async def _fetch_page(
        self,
        provider: FitnessProvider,
        access_token: str,
        cursor: Optional[str],
        since: Optional[datetime],
        attempt_id: int,
    ) -> RecordsPage:
        return await retry_async(
            lambda: provider.fetch_records_page(access_token, cursor=cursor, since=since),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            is_retryable=_is_transient,
            sleep=self.sleep,
            description=f"Sync attempt {attempt_id} page fetch (cursor={cursor})",
        )

    def _import(self, db: Session, integration: Integration, sink: WorkoutImportSink, record) -> ImportOutcome:
        try:
            return sink.import_record(db, integration, record)
        except Exception as e:
            logger.warning(
                f"Import of {integration.kind.value} record {getattr(record, 'external_id', None)!r} failed: {e}"
            )
            return ImportOutcome.INVALID_SKIPPED

    async def run(
        self,
        db: Session,
        attempt: SyncAttempt,
        provider: Optional[FitnessProvider] = None,
        sink: Optional[WorkoutImportSink] = None,
    ) -> SyncAttempt:
        """
        Drive a claimed attempt to a terminal status and return it.

        Raises:
            SyncStateError: The attempt is not IN_PROGRESS
        """
        if attempt.status is not SyncStatus.IN_PROGRESS:
            raise SyncStateError(f"Sync attempt {attempt.id} is already {attempt.status.value}")

        integration = attempt.integration
        provider = provider or get_provider(integration.kind)
        sink = sink or self.sink
        state = _RunState(attempt)

        try:
            return await self._run_pages(db, attempt, integration, provider, sink, state)
        except SyncStateError as e:
            logger.warning(f"Sync attempt {attempt.id} stopped: {e}")
            return attempt
        except Exception as e:
            logger.exception(f"Sync attempt {attempt.id} crashed: {e}")
            db.rollback()
            db.refresh(attempt)
            if attempt.status is not SyncStatus.IN_PROGRESS:
                return attempt
            # Work from the failing page was rolled back; keep committed counters
            return self._finish_after_error(db, attempt, _RunState(attempt), f"Unexpected error: {e}")

    async def _run_pages(
        self,
        db: Session,
        attempt: SyncAttempt,
        integration: Integration,
        provider: FitnessProvider,
        sink: WorkoutImportSink,
        state: _RunState,
    ) -> SyncAttempt:
        try:
            access_token = await self._ensure_fresh_token(db, integration, provider)
        except ExternalServiceError as e:
            return self._handle_external_error(db, attempt, integration, state, e)

        since = _parse_watermark(integration.sync_cursor)
        cursor = None

        while True:
            status, cancel_requested = attempt_crud.run_flags(db, attempt.id)
            if status is not SyncStatus.IN_PROGRESS:
                return self._lost_attempt(db, attempt)
            if cancel_requested:
                logger.info(f"Sync attempt {attempt.id} cancelled after {state.pages} page(s)")
                return self._finish(db, attempt, SyncStatus.CANCELLED, state=state)

            try:
                page = await self._fetch_page(provider, access_token, cursor, since, attempt.id)
            except ExternalServiceError as e:
                return self._handle_external_error(db, attempt, integration, state, e)

            for record in page.records:
                state.record(self._import(db, integration, sink, record))

            state.pages += 1
            state.cursor = page.next_cursor
            if not attempt_crud.update_in_progress(db, attempt.id, state.values()):
                # The page's imports go with the rollback
                return self._lost_attempt(db, attempt)
            db.commit()

            if not page.next_cursor:
                return self._finish(db, attempt, SyncStatus.COMPLETED, state=state)
            cursor = page.next_cursor

    def _lost_attempt(self, db: Session, attempt: SyncAttempt) -> SyncAttempt:
        """
        The attempt was finished elsewhere (e.g. reaped as stale) while this
        run was still going. Drop uncommitted work and leave it untouched.
        """
        db.rollback()
        db.refresh(attempt)
        logger.warning(
            f"Sync attempt {attempt.id} is {attempt.status.value} but its run was still going; stopping"
        )
        return attempt

    def _handle_external_error(
        self,
        db: Session,
        attempt: SyncAttempt,
        integration: Integration,
        state: _RunState,
        error: ExternalServiceError,
    ) -> SyncAttempt:
        if error.is_unauthorized:
            logger.warning(
                f"{integration.kind.value} grant for integration {integration.id} is no longer valid; deactivating"
            )
            integration.is_active = False
            return self._finish_after_error(
                db, attempt, state, f"Authorization revoked by provider: {error.message}"
            )
        return self._finish_after_error(db, attempt, state, error.message)

    async def start_sync(
        self,
        db: Session,
        integration_id: UUID,
        trigger: SyncTrigger = SyncTrigger.MANUAL
    ) -> SyncAttempt:
        """
        Claim and run in one call.
        """
        attempt = self.claim(db, integration_id, trigger)
        return await self.run(db, attempt)

    # --- control ------------------------------------------------------------

    def request_cancel(self, db: Session, integration_id: UUID) -> SyncAttempt:
        """
        Ask the in-progress attempt to stop at the next page boundary.

        Raises:
            NoSyncInProgressError: Nothing is running
        """
        attempt = attempt_crud.current(db, integration_id)
        if not attempt or not attempt_crud.set_cancel_requested(db, attempt.id):
            raise NoSyncInProgressError()

        db.refresh(attempt)
        logger.info(f"Cancellation requested for sync attempt {attempt.id}")
        return attempt

    def reap_stale(self, db: Session, now: Optional[datetime] = None) -> int:
        """
        Fail attempts stuck IN_PROGRESS longer than SYNC_STALE_AFTER_MINUTES
        (worker died mid-run), freeing their integration's slot.

        Returns:
            int: Number of attempts reaped
        """
        now = as_utc(now) or utcnow()
        cutoff = now - timedelta(minutes=settings.SYNC_STALE_AFTER_MINUTES)

        reaped = 0
        for attempt in attempt_crud.list_in_progress_started_before(db, cutoff):
            status = SyncStatus.PARTIALLY_COMPLETED if attempt.records_imported else SyncStatus.FAILED
            try:
                self._finish(db, attempt, status, error_message="Sync timed out")
            except SyncStateError:
                # Its run finished it in the meantime
                continue
            reaped += 1
        return reaped


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, ExternalServiceError) and error.is_transient


def _parse_watermark(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value))
    except ValueError:
        logger.warning(f"Ignoring unreadable sync watermark {value!r}")
        return None


# Singleton instance
sync_engine = SyncEngine()
