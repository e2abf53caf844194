from fastapi import Request

from core.rate_limiter import DailyQuotaTracker
from services.chat_service import ChatService
from services.upstream_service import UpstreamService


def get_quota_tracker(request: Request) -> DailyQuotaTracker:
    return request.app.state.quota_tracker


def get_upstream_service(request: Request) -> UpstreamService:
    return request.app.state.upstream_service


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service
