"""
Queueing Celery tasks from request handlers.

Sync attempts are claimed in the API process and executed by a worker; if the
broker cannot take the task the caller must know, so it can abort the claim
instead of leaving an attempt IN_PROGRESS that nothing will ever run.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Tuple
from celery import Task
from kombu import Connection

from app.core.config import settings

logger = logging.getLogger(__name__)

# Publishing happens off the event loop; kombu's blocking connection would
# otherwise stall uvicorn's loop
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="celery_queue")

QUEUE_TIMEOUT_SECONDS = 5


def _publish(task: Task, args: tuple, kwargs: dict) -> Tuple[bool, str, str]:
    """
    Publish on a fresh broker connection.

    Returns:
        Tuple[bool, str, str]: (success, task_id, error_message)
    """
    try:
        with Connection(settings.REDIS_URL) as conn:
            result = task.apply_async(
                args=args,
                kwargs=kwargs,
                connection=conn,
                retry=True,
                retry_policy={
                    'max_retries': 3,
                    'interval_start': 0,
                    'interval_step': 0.2,
                    'interval_max': 0.2,
                }
            )
            return (True, result.id, "")
    except Exception as e:
        return (False, "", str(e))


def queue_task_safely(task: Task, *args, **kwargs) -> bool:
    """
    Queue a Celery task, reporting failure instead of raising.

    Args:
        task: The Celery task to queue
        *args: Positional arguments for the task
        **kwargs: Keyword arguments for the task

    Returns:
        bool: True if the broker accepted the task

    Example:
        from app.tasks.sync_tasks import run_sync_attempt_task
        if not queue_task_safely(run_sync_attempt_task, attempt.id):
            sync_engine.abort(db, attempt, "Could not queue sync job")
    """
    future = _executor.submit(_publish, task, args, kwargs)
    try:
        success, task_id, error = future.result(timeout=QUEUE_TIMEOUT_SECONDS)
    except FutureTimeoutError:
        success, task_id, error = False, "", f"broker did not answer within {QUEUE_TIMEOUT_SECONDS}s"

    if success:
        logger.info(f"Task {task.name} queued successfully: {task_id}")
        return True

    logger.error(f"Failed to queue task {task.name}: {error}")
    return False
