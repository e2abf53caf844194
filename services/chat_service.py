"""
Chat Proxy Service.

This module implements the request pipeline behind `POST /api/chat`: it turns a
browser chat request into an upstream chat-completion call made with the
server's own key, charging the caller's daily quota first.

Key Components:
- `build_chat_messages` (core.prompt): Injects the system prompt and maps the
  history onto the chat-completions message format, including images.
- `resolve_generation`: Picks the model, sampling parameters and streaming
  flag from the caller's settings or the proxy defaults.
- `ChatService.prepare`: Runs the ordered pre-flight steps (prompt, history,
  settings, IP check, quota, upstream selection) and returns a `PreparedChat`.
- `ChatService.complete` / `ChatService.open_stream`: Forward the call in
  batched or streamed mode, normalizing upstream failures to `UpstreamError`.
- `ChatService.relay`: Re-emits upstream deltas as `data: {...}` frames,
  terminated by `data: [DONE]`.

Architectural Design:
- Quota before upstream: IP and quota rejections happen before any upstream
  traffic, and an IP rejection never touches the quota.
- Headers fixed at accept time: the remaining quota is computed once when the
  request is accepted; a streamed response carries it in its headers and it
  is not updated per chunk.
- Bounded relay: the relay stops reading upstream when the client disconnects
  or the stream outlives `stream_max_seconds`, and always closes the upstream
  stream. A failure mid-stream ends the body without the `[DONE]` frame.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from core.exceptions import (
    IPNotFoundError,
    RateLimitExceededError,
    UpstreamError,
    rate_limit_headers,
)
from core.logging_config import get_logger
from core.middleware import UNKNOWN_IP
from core.models import ChatRequest, ConversationSettings
from core.prompt import build_chat_messages
from core.rate_limiter import DailyQuotaTracker, QuotaDecision
from providers.upstream_provider import UpstreamProvider, UpstreamStream
from services.upstream_service import UpstreamService

logger = get_logger(__name__)

FALLBACK_REPLY = "I apologize, but I couldn't generate a response."
DONE_FRAME = "data: [DONE]\n\n"

PROXY_DEFAULT_MODEL = "cosmosrp"
PROXY_DEFAULT_PARAMS: Dict[str, Any] = {"temperature": 0.7, "max_tokens": 1000}


def resolve_generation(
    settings: Optional[ConversationSettings],
) -> Tuple[str, Dict[str, Any], bool]:
    """
    Return (model, sampling params, streaming) for a request.

    The proxy answers batched unless the caller explicitly sent
    `streaming: true`; the client-side default of True does not apply here.
    """
    if settings is None:
        return PROXY_DEFAULT_MODEL, dict(PROXY_DEFAULT_PARAMS), False

    streaming = "streaming" in settings.model_fields_set and bool(settings.streaming)
    return settings.model, settings.sampling_params(), streaming


def format_frame(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


@dataclass
class PreparedChat:
    """A chat request that passed the IP and quota checks"""

    provider: UpstreamProvider
    model: str
    messages: List[Dict[str, Any]]
    params: Dict[str, Any]
    streaming: bool
    quota: QuotaDecision
    client_ip: str = field(default=UNKNOWN_IP)

    @property
    def headers(self) -> Dict[str, str]:
        return rate_limit_headers(self.quota.limit, self.quota.remaining)


class ChatService:
    """Service that proxies chat requests to the upstream tiers"""

    def __init__(
        self,
        upstream: UpstreamService,
        quota_tracker: DailyQuotaTracker,
        stream_max_seconds: float = 300.0,
    ):
        self.upstream = upstream
        self.quota_tracker = quota_tracker
        self.stream_max_seconds = stream_max_seconds

    def prepare(self, request: ChatRequest, client_ip: str) -> PreparedChat:
        """
        Validate and charge a chat request.

        Raises:
            IPNotFoundError: the client IP could not be resolved
            RateLimitExceededError: the daily quota is exhausted
        """
        messages = build_chat_messages(
            request.messages, request.character, request.persona
        )
        model, params, streaming = resolve_generation(request.settings)

        if not client_ip or client_ip == UNKNOWN_IP:
            raise IPNotFoundError()

        decision = self.quota_tracker.check_and_increment(client_ip, model)
        if not decision.allowed:
            raise RateLimitExceededError(decision.limit, model)

        provider = self.upstream.select(model)

        logger.info(
            f"Accepted chat request for {model}",
            extra={
                "model": model,
                "tier": provider.tier.value,
                "streaming": streaming,
                "history_length": len(request.messages),
                "remaining": decision.remaining,
            },
        )
        return PreparedChat(
            provider=provider,
            model=model,
            messages=messages,
            params=params,
            streaming=streaming,
            quota=decision,
            client_ip=client_ip,
        )

    async def complete(self, prepared: PreparedChat) -> str:
        """Batched completion; returns the reply text or a fallback"""
        try:
            content = await prepared.provider.complete(
                prepared.messages, prepared.model, **prepared.params
            )
        except Exception as e:
            logger.error(f"Upstream completion failed: {e}", exc_info=True)
            raise UpstreamError.from_exception(e, "Failed to generate response") from e
        return content or FALLBACK_REPLY

    async def open_stream(self, prepared: PreparedChat) -> UpstreamStream:
        """Start the upstream stream before any response bytes are sent"""
        try:
            return await prepared.provider.open_stream(
                prepared.messages, prepared.model, **prepared.params
            )
        except Exception as e:
            logger.error(f"Upstream stream failed to open: {e}", exc_info=True)
            raise UpstreamError.from_exception(e, "Failed to generate response") from e

    async def relay(
        self,
        stream: UpstreamStream,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        """Re-emit upstream deltas as SSE frames, ending with the [DONE] frame"""
        deadline = time.monotonic() + self.stream_max_seconds
        frames = 0
        try:
            async for delta in stream.deltas():
                if is_disconnected is not None and await is_disconnected():
                    logger.info(
                        "Client disconnected mid-stream, closing upstream",
                        extra={"frames_sent": frames},
                    )
                    return
                if time.monotonic() > deadline:
                    raise UpstreamError(
                        f"Stream exceeded {self.stream_max_seconds:.0f}s limit"
                    )
                frames += 1
                yield format_frame({"content": delta})
            yield DONE_FRAME
        except Exception as e:
            logger.error(
                f"Upstream stream failed after {frames} frames: {e}",
                extra={"frames_sent": frames},
                exc_info=True,
            )
            raise
        finally:
            await stream.close()
