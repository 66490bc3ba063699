"""
Celery application configuration.

Redis is both the message broker and result backend. Sync attempts run in the
worker; beat schedules the periodic sync sweep and housekeeping.
"""

from celery import Celery
from celery.schedules import crontab
from app.core.config import settings

# Create Celery instance
celery_app = Celery(
    "workout_sync_worker",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL
)

# Configure Celery
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task behavior
    task_track_started=True,  # Track when tasks start (for monitoring)
    task_time_limit=1800,  # 30 minutes max per sync run
    task_soft_time_limit=1740,
    task_acks_late=True,  # A crashed worker leaves the message for another one

    # Result backend
    result_expires=3600,  # Results expire after 1 hour

    # Worker behavior
    worker_prefetch_multiplier=1,  # Only fetch 1 task at a time
    worker_max_tasks_per_child=50,  # Restart worker after 50 tasks (prevent memory leaks)

    beat_schedule={
        "sync-active-integrations": {
            "task": "app.tasks.sync_tasks.sync_active_integrations_task",
            "schedule": settings.SYNC_INTERVAL_MINUTES * 60.0,
        },
        "reap-stale-sync-attempts": {
            "task": "app.tasks.sync_tasks.reap_stale_sync_attempts_task",
            "schedule": crontab(minute="*/10"),
        },
        "purge-expired-oauth-states": {
            "task": "app.tasks.sync_tasks.purge_expired_oauth_states_task",
            "schedule": crontab(minute=0),
        },
    },
)

# Auto-discover tasks from app.tasks module
celery_app.autodiscover_tasks(['app'])
