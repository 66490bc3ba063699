"""
Abstract base class for external fitness providers.

Every provider (Strava, MyFitnessPal, ...) implements the same capability
interface so the handshake coordinator and the sync engine can select one by
IntegrationKind and never branch on provider specifics.
"""

import enum
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import httpx
from pydantic import BaseModel, Field

from app.core.timeutils import as_utc, utcnow
from app.models.integration import IntegrationKind


class ExternalErrorKind(str, enum.Enum):
    """
    - TRANSIENT: rate limit, timeout, 5xx; worth retrying
    - FATAL: provider rejected the request; retrying will not help
    - UNAUTHORIZED: grant revoked or token invalid; the integration is dead
    """
    TRANSIENT = "transient"
    FATAL = "fatal"
    UNAUTHORIZED = "unauthorized"


class ExternalServiceError(Exception):
    """Provider unreachable, rate-limited, or returned a fault."""

    kind = "ExternalServiceError"

    def __init__(
        self,
        message: str,
        error_kind: ExternalErrorKind = ExternalErrorKind.FATAL,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_kind = error_kind
        self.provider = provider
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.error_kind is ExternalErrorKind.TRANSIENT

    @property
    def is_unauthorized(self) -> bool:
        return self.error_kind is ExternalErrorKind.UNAUTHORIZED


class ProviderNotConfiguredError(Exception):
    """Client credentials for a provider are missing from the settings."""

    kind = "ProviderNotConfigured"

    def __init__(self, provider: str):
        self.message = f"{provider} integration is not configured on this server"
        super().__init__(self.message)


class TokenGrant(BaseModel):
    """Result of a code exchange or token refresh."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    external_user_id: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProviderRecord(BaseModel):
    """One workout as reported by a provider."""
    external_id: str
    name: Optional[str] = None
    activity_type: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    calories: Optional[float] = None
    distance_meters: Optional[float] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class RecordsPage(BaseModel):
    records: List[ProviderRecord] = Field(default_factory=list)
    next_cursor: Optional[str] = None


def classify_status(status_code: int) -> ExternalErrorKind:
    if status_code == 429 or status_code >= 500:
        return ExternalErrorKind.TRANSIENT
    if status_code == 401:
        return ExternalErrorKind.UNAUTHORIZED
    return ExternalErrorKind.FATAL


class FitnessProvider(ABC):
    """
    Capability interface for one external provider.

    Implementations talk HTTP through httpx; `transport` lets tests swap the
    network for an httpx.MockTransport.
    """

    kind: IntegrationKind
    display_name: str = "Provider"

    # Refresh tokens this close to expiry
    TOKEN_EXPIRY_BUFFER = timedelta(minutes=5)

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 30.0):
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Issue a request and translate failures into ExternalServiceError.
        """
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise ExternalServiceError(
                f"{self.display_name} unreachable: {e}",
                ExternalErrorKind.TRANSIENT,
                provider=self.kind.value,
            ) from e

        if response.status_code >= 400:
            raise ExternalServiceError(
                f"{self.display_name} API error: {response.status_code} - {response.text[:500]}",
                classify_status(response.status_code),
                provider=self.kind.value,
                status_code=response.status_code,
            )
        return response

    def _json(self, response: httpx.Response) -> Any:
        """
        Decode a successful response body.

        Raises:
            ExternalServiceError: FATAL when the body is not JSON
        """
        try:
            return response.json()
        except ValueError as e:
            raise ExternalServiceError(
                f"{self.display_name} returned a non-JSON response: {response.text[:200]}",
                ExternalErrorKind.FATAL,
                provider=self.kind.value,
                status_code=response.status_code,
            ) from e

    def _grant_from_payload(self, payload: Dict[str, Any]) -> TokenGrant:
        raise NotImplementedError

    def _grant(self, response: httpx.Response) -> TokenGrant:
        """
        Parse a token endpoint response.

        Raises:
            ExternalServiceError: FATAL when the body is not a usable token response
        """
        payload = self._json(response)
        try:
            if not isinstance(payload, dict):
                raise TypeError(f"expected an object, got {type(payload).__name__}")
            return self._grant_from_payload(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise ExternalServiceError(
                f"{self.display_name} returned an incomplete token response: {e}",
                ExternalErrorKind.FATAL,
                provider=self.kind.value,
            ) from e

    def is_token_expired(self, expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        """
        True if the access token is expired or about to expire.

        Tokens without an expiry never need a refresh.
        """
        if expires_at is None:
            return False
        now = as_utc(now) or utcnow()
        return now + self.TOKEN_EXPIRY_BUFFER >= as_utc(expires_at)

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """True when client credentials are present."""
        pass

    @abstractmethod
    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        """
        Authorization endpoint URL with `state` embedded. No network call.
        """
        pass

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        """
        Exchange an authorization code for tokens.

        Raises:
            ExternalServiceError: If the provider rejects the exchange
        """
        pass

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """
        Raises:
            ExternalServiceError: UNAUTHORIZED when the grant was revoked
        """
        pass

    @abstractmethod
    async def fetch_records_page(
        self,
        access_token: str,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> RecordsPage:
        """
        Fetch one page of workout records.

        Args:
            access_token: Decrypted provider access token
            cursor: Opaque cursor from the previous page, None for the first page
            since: Only return records after this instant (incremental sync)

        Raises:
            ExternalServiceError: error_kind tells transient from fatal
        """
        pass

    async def revoke_token(self, access_token: str) -> bool:
        """
        Revoke a token at the provider. Providers without a revoke endpoint
        return False.
        """
        return False
