from pydantic_settings import BaseSettings
from typing import List, Union
from pydantic import field_validator
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # API Settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Workout Sync API"
    BASE_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:3000"

    # Database Settings
    POSTGRES_USER: str = "user"
    POSTGRES_PASSWORD: str = "password"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "workout_db"

    @property
    def DATABASE_URL(self) -> str:
        return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # Redis Settings (for Celery task queue)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # Caller authentication (tokens are issued by the accounts service)
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"

    # Fernet key for OAuth tokens at rest
    ENCRYPTION_KEY: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = True

    # OAuth handshake
    OAUTH_STATE_TTL_MINUTES: int = 10

    @property
    def OAUTH_CALLBACK_URL(self) -> str:
        return f"{self.BASE_URL}{self.API_V1_STR}/integrations/connect/callback"

    # Strava
    STRAVA_CLIENT_ID: str = ""
    STRAVA_CLIENT_SECRET: str = ""
    STRAVA_WEBHOOK_VERIFY_TOKEN: str = ""

    # MyFitnessPal
    MYFITNESSPAL_CLIENT_ID: str = ""
    MYFITNESSPAL_CLIENT_SECRET: str = ""
    MYFITNESSPAL_LOOKBACK_DAYS: int = 7

    # Sync engine
    SYNC_PAGE_SIZE: int = 30
    SYNC_FETCH_MAX_ATTEMPTS: int = 4
    SYNC_BACKOFF_BASE_SECONDS: float = 1.0
    SYNC_BACKOFF_MAX_SECONDS: float = 30.0
    SYNC_STALE_AFTER_MINUTES: int = 60
    SYNC_INTERVAL_MINUTES: int = 15
    SYNC_HISTORY_MAX_LIMIT: int = 100

    # CORS Settings - can be set as JSON string in .env
    BACKEND_CORS_ORIGINS: Union[List[str], str] = ["http://localhost:3000", "http://localhost:8000"]

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Union[List[str], str]) -> List[str]:
        """Parse CORS origins from JSON string or list"""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                # If not valid JSON, split by comma
                return [origin.strip() for origin in v.split(",")]
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
