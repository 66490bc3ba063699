"""
Celery tasks package.

- sync_tasks: sync attempt execution, scheduled syncs and housekeeping
"""

from app.tasks import sync_tasks

__all__ = ["sync_tasks"]
