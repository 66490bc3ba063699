"""
Strava API client.

OAuth 2.0 authorization code flow plus paged reads of the athlete's
activities. API documentation: https://developers.strava.com/docs/reference/
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode
from pydantic import ValidationError

from app.core.config import settings
from app.models.integration import IntegrationKind
from app.services.providers.base import (
    ExternalErrorKind,
    ExternalServiceError,
    FitnessProvider,
    ProviderRecord,
    RecordsPage,
    TokenGrant,
)

logger = logging.getLogger(__name__)


class StravaProvider(FitnessProvider):
    """
    Strava integration.

    Pages are addressed by page number; the cursor is that number as a string.
    A short page means the sequence is exhausted.
    """

    kind = IntegrationKind.STRAVA
    display_name = "Strava"

    AUTH_URL = "https://www.strava.com/oauth/authorize"
    TOKEN_URL = "https://www.strava.com/oauth/token"
    REVOKE_URL = "https://www.strava.com/oauth/deauthorize"
    API_BASE = "https://www.strava.com/api/v3"

    SCOPES = ["read", "activity:read_all"]

    def __init__(self, client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 page_size: Optional[int] = None, **kwargs):
        super().__init__(**kwargs)
        self.client_id = client_id if client_id is not None else settings.STRAVA_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.STRAVA_CLIENT_SECRET
        self.page_size = page_size or settings.SYNC_PAGE_SIZE

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "approval_prompt": "auto",
            "scope": ",".join(self.SCOPES),
            "state": state,
        }
        return f"{self.AUTH_URL}?{urlencode(params)}"

    def _grant_from_payload(self, payload: Dict[str, Any]) -> TokenGrant:
        expires_at = None
        if payload.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(payload["expires_at"]), tz=timezone.utc)

        athlete = payload.get("athlete") or {}
        metadata = {}
        if athlete:
            metadata["athlete_name"] = " ".join(
                part for part in (athlete.get("firstname"), athlete.get("lastname")) if part
            )
            if athlete.get("username"):
                metadata["username"] = athlete["username"]

        return TokenGrant(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
            external_user_id=str(athlete["id"]) if athlete.get("id") is not None else None,
            scopes=list(self.SCOPES),
            metadata=metadata,
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        response = await self._request(
            "POST",
            self.TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "grant_type": "authorization_code",
            },
        )
        grant = self._grant(response)
        if not grant.external_user_id:
            raise ExternalServiceError(
                "Strava token response did not include the athlete",
                ExternalErrorKind.FATAL,
                provider=self.kind.value,
            )
        return grant

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        try:
            response = await self._request(
                "POST",
                self.TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except ExternalServiceError as e:
            # Strava answers a revoked refresh token with 400 Bad Request
            if e.status_code in (400, 401):
                raise ExternalServiceError(
                    "Strava refresh token was rejected; the athlete must reconnect",
                    ExternalErrorKind.UNAUTHORIZED,
                    provider=self.kind.value,
                    status_code=e.status_code,
                ) from e
            raise

        grant = self._grant(response)
        if not grant.refresh_token:
            grant.refresh_token = refresh_token
        return grant

    async def fetch_records_page(
        self,
        access_token: str,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> RecordsPage:
        page = int(cursor) if cursor else 1
        params = {"per_page": self.page_size, "page": page}
        if since is not None:
            params["after"] = int(since.timestamp())

        response = await self._request(
            "GET",
            f"{self.API_BASE}/athlete/activities",
            params=params,
            headers={"Authorization": f"Bearer {access_token}"},
        )

        items = self._json(response)
        if not isinstance(items, list):
            raise ExternalServiceError(
                "Unexpected Strava activities payload",
                ExternalErrorKind.FATAL,
                provider=self.kind.value,
            )

        records = [self._parse_activity(item) for item in items]
        next_cursor = str(page + 1) if len(items) >= self.page_size else None
        return RecordsPage(records=records, next_cursor=next_cursor)

    def _parse_activity(self, data: Dict[str, Any]) -> ProviderRecord:
        external_id = str(data.get("id", ""))
        elapsed = data.get("elapsed_time")
        try:
            return ProviderRecord(
                external_id=external_id,
                name=data.get("name"),
                activity_type=data.get("sport_type") or data.get("type") or "",
                start_time=data.get("start_date"),
                duration_minutes=round(elapsed / 60) if elapsed is not None else None,
                calories=data.get("calories"),
                distance_meters=data.get("distance"),
                raw=data,
            )
        except (ValidationError, TypeError) as e:
            # Left for the import sink to reject as invalid
            logger.warning(f"Unparseable Strava activity {external_id}: {e}")
            return ProviderRecord(external_id=external_id, raw=data)

    async def revoke_token(self, access_token: str) -> bool:
        await self._request("POST", self.REVOKE_URL, data={"access_token": access_token})
        return True
