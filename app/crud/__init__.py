"""
CRUD operations (Create, Read, Update, Delete) for database models.

This layer provides a clean separation between services/routes and database
operations, following the Repository pattern.
"""

from app.crud import external_workout, integration, sync_attempt

__all__ = ["external_workout", "integration", "sync_attempt"]
