"""
API Endpoints for character chat.

This module defines the public REST endpoints of the Character Chat API.

Endpoints Provided:
- `POST /api/chat`: Proxies one chat turn to the upstream provider using the
  server's key, charged against the caller's daily quota. Returns either a
  JSON body or a `text/event-stream` of `data: {"content": ...}` frames.
- `GET /api/models`: Lists the upstream model catalog sorted by name.

Architectural Design:
- Dependency Injection: `ChatService` and `UpstreamService` are resolved from
  the application state, so tests can install their own instances.
- Error Handling: Endpoints raise `ChatAPIException` subclasses; the error
  middleware renders them into the shared error envelope.
- Rate-limit Signaling: Every accepted chat response carries
  `X-RateLimit-Limit` / `X-RateLimit-Remaining`.
"""

from typing import List

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from core.exceptions import UpstreamError
from core.logging_config import get_logger, log_function_call
from core.middleware import get_client_ip
from core.models import ChatRequest, ModelOption
from services.chat_service import ChatService
from services.upstream_service import UpstreamService
from .dependencies import get_chat_service, get_upstream_service

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["Chat"])

STREAM_MEDIA_TYPE = "text/event-stream"


@router.post("/chat")
@log_function_call(logger)
async def chat(
    body: ChatRequest,
    request: Request,
    chat_svc: ChatService = Depends(get_chat_service),
):
    """Generate the next assistant turn for a conversation"""
    prepared = chat_svc.prepare(body, get_client_ip(request))

    if not prepared.streaming:
        content = await chat_svc.complete(prepared)
        return JSONResponse({"message": content}, headers=prepared.headers)

    stream = await chat_svc.open_stream(prepared)
    return StreamingResponse(
        chat_svc.relay(stream, request.is_disconnected),
        media_type=STREAM_MEDIA_TYPE,
        headers={
            **prepared.headers,
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


@router.get("/models", response_model=List[ModelOption])
async def list_models(
    upstream_svc: UpstreamService = Depends(get_upstream_service),
):
    """List the available upstream models sorted by name"""
    try:
        return await upstream_svc.list_models()
    except Exception as e:
        logger.error(f"Error fetching models: {e}", exc_info=True)
        raise UpstreamError.from_exception(e, "Failed to fetch models") from e
