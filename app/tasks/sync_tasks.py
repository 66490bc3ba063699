"""
Celery tasks for integration syncs.

- run_sync_attempt_task: execute one claimed attempt (queued by the API)
- sync_active_integrations_task: beat sweep that syncs every active integration
- reap_stale_sync_attempts_task / purge_expired_oauth_states_task: housekeeping
"""

import logging
import asyncio
from app.core.celery_app import celery_app
from app.core.database import SessionLocal
from app.core import oauth_state
from app.crud import integration as integration_crud
from app.crud import sync_attempt as attempt_crud
from app.models.sync_attempt import SyncStatus, SyncTrigger
from app.services.integration_service import IntegrationNotFoundError
from app.services.sync_engine import SyncAlreadyRunningError, sync_engine

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.sync_tasks.run_sync_attempt_task", bind=True)
def run_sync_attempt_task(self, attempt_id: int):
    """
    Run a claimed sync attempt to completion.

    The engine records every failure on the attempt itself, so this task only
    reports the outcome.

    Args:
        self: Celery task instance (when bind=True)
        attempt_id: SyncAttempt claimed by the API

    Returns:
        dict: Terminal status and counters
    """
    logger.info(f"[Task {self.request.id}] Starting sync attempt {attempt_id}")

    db = SessionLocal()

    try:
        attempt = attempt_crud.get(db, attempt_id)
        if not attempt:
            logger.error(f"[Task {self.request.id}] Sync attempt {attempt_id} not found")
            return {"status": "error", "message": "Sync attempt not found"}

        if attempt.status is not SyncStatus.IN_PROGRESS:
            # Redelivered after a previous worker already finished it
            logger.warning(f"[Task {self.request.id}] Sync attempt {attempt_id} is already {attempt.status.value}")
            return {"status": attempt.status.value, "attempt_id": attempt_id}

        attempt = asyncio.run(sync_engine.run(db, attempt))

        logger.info(
            f"[Task {self.request.id}] Sync attempt {attempt_id} finished {attempt.status.value} "
            f"({attempt.records_imported} imported, {attempt.records_skipped} skipped)"
        )
        return {
            "status": attempt.status.value,
            "attempt_id": attempt_id,
            "records_processed": attempt.records_processed,
            "records_imported": attempt.records_imported,
            "records_skipped": attempt.records_skipped,
        }

    finally:
        db.close()


@celery_app.task(name="app.tasks.sync_tasks.sync_active_integrations_task", bind=True)
def sync_active_integrations_task(self):
    """
    Scheduled sync of every active integration.

    Integrations with a sync already running are skipped; each one is claimed
    and queued separately so a slow provider does not hold up the others.
    """
    db = SessionLocal()
    queued = 0
    skipped = 0

    try:
        for integration in integration_crud.list_all_active(db):
            try:
                attempt = sync_engine.claim(db, integration.id, SyncTrigger.SCHEDULED)
            except (SyncAlreadyRunningError, IntegrationNotFoundError):
                skipped += 1
                continue

            try:
                run_sync_attempt_task.delay(attempt.id)
                queued += 1
            except Exception as e:
                logger.error(f"[Task {self.request.id}] Could not queue sync for integration {integration.id}: {e}")
                sync_engine.abort(db, attempt, "Could not queue sync job")

        logger.info(f"[Task {self.request.id}] Scheduled sync: {queued} queued, {skipped} already running")
        return {"queued": queued, "skipped": skipped}

    finally:
        db.close()


@celery_app.task(name="app.tasks.sync_tasks.reap_stale_sync_attempts_task", bind=True)
def reap_stale_sync_attempts_task(self):
    db = SessionLocal()
    try:
        reaped = sync_engine.reap_stale(db)
        if reaped:
            logger.warning(f"[Task {self.request.id}] Timed out {reaped} stale sync attempt(s)")
        return {"reaped": reaped}
    finally:
        db.close()


@celery_app.task(name="app.tasks.sync_tasks.purge_expired_oauth_states_task", bind=True)
def purge_expired_oauth_states_task(self):
    db = SessionLocal()
    try:
        purged = oauth_state.purge_expired(db)
        logger.info(f"[Task {self.request.id}] Purged {purged} expired OAuth state token(s)")
        return {"purged": purged}
    finally:
        db.close()
