"""
Provider registry: one FitnessProvider implementation per IntegrationKind.
"""

from typing import Dict

from app.models.integration import IntegrationKind
from app.services.providers.base import (
    ExternalErrorKind,
    ExternalServiceError,
    FitnessProvider,
    ProviderNotConfiguredError,
    ProviderRecord,
    RecordsPage,
    TokenGrant,
)
from app.services.providers.myfitnesspal import MyFitnessPalProvider
from app.services.providers.strava import StravaProvider

_providers: Dict[IntegrationKind, FitnessProvider] = {
    IntegrationKind.STRAVA: StravaProvider(),
    IntegrationKind.MYFITNESSPAL: MyFitnessPalProvider(),
}


def get_provider(kind: IntegrationKind) -> FitnessProvider:
    return _providers[IntegrationKind(kind)]


def register_provider(kind: IntegrationKind, provider: FitnessProvider) -> FitnessProvider:
    """
    Install `provider` for `kind` and return the one it replaced.
    """
    previous = _providers.get(kind)
    _providers[kind] = provider
    return previous


__all__ = [
    "ExternalErrorKind",
    "ExternalServiceError",
    "FitnessProvider",
    "ProviderNotConfiguredError",
    "ProviderRecord",
    "RecordsPage",
    "TokenGrant",
    "get_provider",
    "register_provider",
]
