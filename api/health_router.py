"""
Health and Monitoring Router.

Public, unauthenticated endpoints for liveness checks and quota monitoring.

Endpoints Provided:
- `/healthcheck`: Lightweight liveness check.
- `/monitoring/ping`: Connectivity test.
- `/monitoring/quota`: Quota tracker statistics (key count and limits only,
  never the tracked IPs).
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends

from core.rate_limiter import DailyQuotaTracker
from .dependencies import get_quota_tracker

SERVICE_NAME = "Character Chat API"
SERVICE_VERSION = "1.0.0"

health_router = APIRouter(tags=["Health & Monitoring"])

monitoring_router = APIRouter(prefix="/monitoring", tags=["Health & Monitoring"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@health_router.get("/healthcheck")
async def health_check() -> Dict[str, Any]:
    """Liveness only; does not call upstream"""
    return {
        "status": "healthy",
        "timestamp": _now(),
        "version": SERVICE_VERSION,
        "service": SERVICE_NAME,
    }


@monitoring_router.get("/ping")
async def ping() -> Dict[str, str]:
    return {"message": "pong", "timestamp": _now(), "version": SERVICE_VERSION}


@monitoring_router.get("/quota")
async def quota_stats(
    tracker: DailyQuotaTracker = Depends(get_quota_tracker),
) -> Dict[str, Any]:
    """Tracked key count and per-tier limits for the current day"""
    return tracker.get_stats()
