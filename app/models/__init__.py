"""
Database models package.
"""

from app.models.integration import Integration, IntegrationKind
from app.models.oauth_state import OAuthState
from app.models.sync_attempt import SyncAttempt, SyncStatus, SyncTrigger
from app.models.external_workout import ExternalWorkout

__all__ = [
    "Integration",
    "IntegrationKind",
    "OAuthState",
    "SyncAttempt",
    "SyncStatus",
    "SyncTrigger",
    "ExternalWorkout",
]
