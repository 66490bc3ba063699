import logging
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from app.core.config import settings
from app.core.database import init_db
from app.core.logging_config import setup_logging
from app.core.oauth_state import InvalidStateError
from app.api.endpoints import health, integrations, webhooks
from app.schemas.sync import SyncAlreadyRunningResponse, SyncAttemptResponse
from app.services.integration_service import IntegrationNotFoundError
from app.services.providers import ExternalServiceError, ProviderNotConfiguredError
from app.services.sync_engine import SyncAlreadyRunningError

# Configure logging
setup_logging(log_level=settings.LOG_LEVEL, json_logs=settings.JSON_LOGS)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    """
    # Startup
    logger.info("Starting up Workout Sync API...")
    logger.info("Initializing database...")
    init_db()
    logger.info("Database initialized successfully")

    yield

    # Shutdown
    logger.info("Shutting down Workout Sync API...")


# Create FastAPI application
app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    description="Connects external fitness providers and imports their workouts",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"kind": exc.kind, "message": exc.message},
    )


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return _error(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(ExternalServiceError)
async def external_service_handler(request: Request, exc: ExternalServiceError):
    return _error(status.HTTP_502_BAD_GATEWAY, exc)


@app.exception_handler(IntegrationNotFoundError)
async def not_found_handler(request: Request, exc: IntegrationNotFoundError):
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(ProviderNotConfiguredError)
async def provider_not_configured_handler(request: Request, exc: ProviderNotConfiguredError):
    logger.error(exc.message)
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)


@app.exception_handler(SyncAlreadyRunningError)
async def already_running_handler(request: Request, exc: SyncAlreadyRunningError):
    body = SyncAlreadyRunningResponse(
        message=exc.message,
        attempt=SyncAttemptResponse.model_validate(exc.attempt) if exc.attempt is not None else None,
    )
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.model_dump(mode="json"))


# Include routers
app.include_router(health.router)
app.include_router(integrations.router, prefix=settings.API_V1_STR)
app.include_router(webhooks.router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Workout Sync API",
        "version": "1.0.0",
        "status": "healthy"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,  # Enable auto-reload during development
        log_level="info"
    )
