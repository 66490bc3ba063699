"""
MyFitnessPal API client.

Workouts come from the exercise section of the daily diary. Each page is one
diary day; the cursor is the ISO date of the next day to read.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode
from pydantic import ValidationError

from app.core.config import settings
from app.core.timeutils import as_utc, utcnow
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


class MyFitnessPalProvider(FitnessProvider):

    kind = IntegrationKind.MYFITNESSPAL
    display_name = "MyFitnessPal"

    AUTH_URL = "https://www.myfitnesspal.com/oauth2/authorize"
    TOKEN_URL = "https://www.myfitnesspal.com/oauth2/token"
    API_BASE = "https://api.myfitnesspal.com/v2"

    SCOPES = ["diary"]

    def __init__(self, client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 lookback_days: Optional[int] = None, today=None, **kwargs):
        super().__init__(**kwargs)
        self.client_id = client_id if client_id is not None else settings.MYFITNESSPAL_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.MYFITNESSPAL_CLIENT_SECRET
        self.lookback_days = lookback_days or settings.MYFITNESSPAL_LOOKBACK_DAYS
        self._today = today or (lambda: utcnow().date())

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": ",".join(self.SCOPES),
            "state": state,
        }
        return f"{self.AUTH_URL}?{urlencode(params)}"

    def _grant_from_payload(self, payload: Dict[str, Any]) -> TokenGrant:
        expires_at = None
        if payload.get("expires_in"):
            expires_at = utcnow() + timedelta(seconds=int(payload["expires_in"]))
        scopes = payload.get("scope")
        return TokenGrant(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
            external_user_id=str(payload["user_id"]) if payload.get("user_id") else None,
            scopes=scopes.split(",") if scopes else list(self.SCOPES),
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        response = await self._request(
            "POST",
            self.TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        grant = self._grant(response)

        # The token response does not always name the account; ask the profile
        profile = await self._request(
            "GET",
            f"{self.API_BASE}/profile",
            headers={"Authorization": f"Bearer {grant.access_token}"},
        )
        body = self._json(profile)
        item = (body.get("item") if isinstance(body, dict) else None) or {}
        if item.get("username"):
            grant.metadata["username"] = item["username"]
            grant.external_user_id = grant.external_user_id or item["username"]
        if not grant.external_user_id:
            raise ExternalServiceError(
                "MyFitnessPal did not identify the connected account",
                ExternalErrorKind.FATAL,
                provider=self.kind.value,
            )
        return grant

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
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
        today = self._today()
        if cursor:
            day = date.fromisoformat(cursor)
        elif since is not None:
            day = as_utc(since).date()
        else:
            day = today - timedelta(days=self.lookback_days)

        response = await self._request(
            "GET",
            f"{self.API_BASE}/diary/{day.isoformat()}",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        body = self._json(response)
        if not isinstance(body, dict):
            raise ExternalServiceError(
                "Unexpected MyFitnessPal diary payload",
                ExternalErrorKind.FATAL,
                provider=self.kind.value,
            )
        diary = body.get("item") or {}

        records = [
            self._parse_exercise(entry, day, index)
            for index, entry in enumerate(diary.get("exercises") or [])
        ]
        next_day = day + timedelta(days=1)
        next_cursor = next_day.isoformat() if next_day <= today else None
        return RecordsPage(records=records, next_cursor=next_cursor)

    def _parse_exercise(self, data: Dict[str, Any], day: date, index: int) -> ProviderRecord:
        external_id = str(data.get("id") or f"{day.isoformat()}:{index}")
        start = data.get("start_time") or datetime.combine(day, time.min, tzinfo=timezone.utc)
        try:
            return ProviderRecord(
                external_id=external_id,
                name=data.get("name"),
                activity_type=data.get("type") or "exercise",
                start_time=start,
                duration_minutes=data.get("duration_minutes"),
                calories=data.get("calories"),
                raw=data,
            )
        except ValidationError as e:
            logger.warning(f"Unparseable MyFitnessPal exercise {external_id}: {e}")
            return ProviderRecord(external_id=external_id, raw=data)
