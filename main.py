"""
Character Chat API - Main Application Entry Point.

This module builds and configures the FastAPI application behind the character
chat playground. Browsers hold their conversations locally; this service only
proxies chat turns to an OpenAI-compatible upstream with the server's own key,
within a daily per-IP, per-model quota, and lists the available models.

Key Responsibilities:
- Build the application with its services: the daily quota tracker, the
  upstream selection service and the chat proxy service.
- Set up middleware for correlation IDs, error normalization and timing.
- Mount the health, monitoring and chat routers.
- Configure logging on startup.

Architecture:
`create_app` assembles everything from a `ServerConfig` and accepts prebuilt
services, which is how the tests install fakes. The module-level `app` is the
production instance served by uvicorn.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from api.endpoints import router
from api.health_router import SERVICE_VERSION, health_router, monitoring_router
from core.config import ServerConfig, get_config
from core.logging_config import get_logger, setup_logging
from core.middleware import (
    CorrelationMiddleware,
    ErrorHandlingMiddleware,
    PerformanceMiddleware,
    request_validation_handler,
)
from core.rate_limiter import DailyQuotaTracker, init_quota_tracker
from services.chat_service import ChatService
from services.upstream_service import UpstreamService

logger = get_logger("api.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: ServerConfig = app.state.config
    setup_logging(config.environment, config.log_level)
    startup_logger = get_logger("api.startup")
    startup_logger.info(
        "Character Chat API starting",
        extra={
            "environment": config.environment,
            "quota_limits": app.state.quota_tracker.get_stats()["limits"],
        },
    )
    yield
    startup_logger.info("Shutting down Character Chat API")


def create_app(
    config: Optional[ServerConfig] = None,
    upstream_service: Optional[UpstreamService] = None,
    quota_tracker: Optional[DailyQuotaTracker] = None,
) -> FastAPI:
    """Build the application and its services"""
    config = config or get_config()
    quota_tracker = quota_tracker or init_quota_tracker(config.daily_limits())
    upstream_service = upstream_service or UpstreamService.from_config(config)

    app = FastAPI(
        title="Character Chat API",
        description="Chat proxy with per-IP daily quotas for the character chat playground",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.quota_tracker = quota_tracker
    app.state.upstream_service = upstream_service
    app.state.chat_service = ChatService(
        upstream_service, quota_tracker, stream_max_seconds=config.stream_max_seconds
    )

    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Added innermost first
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(PerformanceMiddleware)
    app.add_middleware(CorrelationMiddleware)

    # Outermost, so error responses get CORS headers and quota headers stay readable
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-Correlation-ID"],
    )

    app.include_router(health_router)
    app.include_router(monitoring_router)
    app.include_router(router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_config()
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
