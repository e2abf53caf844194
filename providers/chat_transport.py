"""
Chat Transport Classes

Client-side strategies the conversation engine uses to get one assistant turn:
through the chat proxy (quota-tracked, server key), directly to a third-party
OpenAI-compatible endpoint, or directly to the provider's tier URLs with the
user's own key. Each transport supports streamed and batched responses and
knows the response shape it talks, so content extraction never has to guess.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from core.config import DEFAULT_TIER_BASE_URLS
from core.exceptions import (
    RATE_LIMIT_LIMIT_HEADER,
    RATE_LIMIT_REMAINING_HEADER,
    TransportError,
)
from core.logging_config import get_logger
from core.models import Character, ConversationSettings, Message, Persona, RateLimitInfo
from core.prompt import build_chat_messages
from core.tiers import classify_model

logger = get_logger(__name__)

DONE_SENTINEL = "[DONE]"
STREAM_CONTENT_TYPES = ("text/event-stream", "text/stream")
DEFAULT_ERROR_MESSAGE = "Failed to get response"

ProgressCallback = Callable[[str], None]


class ResponseShape(str, Enum):
    OPENAI = "openai"  # choices[0].delta.content / choices[0].message.content
    PROXY = "proxy"  # {"content": ...} frames / {"message": ...} body


def extract_delta(shape: ResponseShape, payload: Any) -> str:
    """Text carried by one streamed frame, or "" when it has none"""
    if not isinstance(payload, dict):
        return ""
    if shape is ResponseShape.PROXY:
        return payload.get("content") or ""
    choices = payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    return (choices[0].get("delta") or {}).get("content") or ""


def extract_content(shape: ResponseShape, payload: Any) -> str:
    """Text of a batched response body"""
    if not isinstance(payload, dict):
        return ""
    if shape is ResponseShape.PROXY:
        return payload.get("message") or ""
    choices = payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    return (choices[0].get("message") or {}).get("content") or ""


def parse_event_line(line: str) -> Optional[str]:
    """Payload of a `data:` line, or None for anything else"""
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    return stripped[len("data:"):].strip()


def read_rate_limit(headers: httpx.Headers) -> Optional[RateLimitInfo]:
    limit = headers.get(RATE_LIMIT_LIMIT_HEADER)
    remaining = headers.get(RATE_LIMIT_REMAINING_HEADER)
    if limit is None or remaining is None:
        return None
    try:
        return RateLimitInfo(limit=int(limit), remaining=int(remaining))
    except ValueError:
        return None


def error_message_from(response: httpx.Response, fallback: str = DEFAULT_ERROR_MESSAGE) -> str:
    """Pull `error.message` out of an error envelope, else return the fallback"""
    try:
        data = response.json()
    except ValueError:
        return fallback
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return fallback


def is_event_stream(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type", "")
    return any(kind in content_type for kind in STREAM_CONTENT_TYPES)


@dataclass
class ChatTurn:
    """Everything a transport needs to produce the next assistant message"""

    history: List[Message]
    settings: ConversationSettings
    character: Optional[Character] = None
    persona: Optional[Persona] = None


@dataclass
class TransportResult:
    content: str
    rate_limit: Optional[RateLimitInfo] = None


class ChatTransport(ABC):
    """Abstract base class for chat transports"""

    shape: ResponseShape = ResponseShape.OPENAI

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    @property
    @abstractmethod
    def source_name(self) -> str:
        """Identifier for this transport strategy"""
        pass

    @abstractmethod
    def build_request(self, turn: ChatTurn) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        """Return (url, headers, json body) for a turn"""
        pass

    async def execute(
        self, turn: ChatTurn, on_progress: Optional[ProgressCallback] = None
    ) -> TransportResult:
        """
        Run one chat turn.

        In streaming mode `on_progress` receives the accumulated text after
        every delta. Rate-limit headers are returned with the result, or
        attached to the raised `TransportError`.

        Raises:
            TransportError: non-2xx response, network failure, unreadable
                body, or a stream that ended without the [DONE] sentinel
        """
        url, headers, body = self.build_request(turn)
        try:
            async with self.client.stream("POST", url, json=body, headers=headers) as response:
                rate_limit = read_rate_limit(response.headers)

                if response.is_error:
                    await response.aread()
                    raise TransportError(
                        error_message_from(response),
                        status_code=response.status_code,
                        rate_limit=rate_limit,
                    )

                if turn.settings.streaming and is_event_stream(response):
                    content = await self._read_stream(response, on_progress)
                else:
                    await response.aread()
                    content = self._read_body(response)
        except httpx.HTTPError as e:
            logger.warning(
                f"{self.source_name} transport failed: {e}",
                extra={"transport": self.source_name},
            )
            raise TransportError(str(e) or "Network error") from e

        return TransportResult(content=content, rate_limit=rate_limit)

    def _read_body(self, response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError as e:
            raise TransportError(
                "Invalid response from server", status_code=response.status_code
            ) from e
        return extract_content(self.shape, payload)

    async def _read_stream(
        self, response: httpx.Response, on_progress: Optional[ProgressCallback]
    ) -> str:
        content = ""
        # aiter_lines reassembles lines split across network chunks
        async for line in response.aiter_lines():
            data = parse_event_line(line)
            if data is None:
                continue
            if data == DONE_SENTINEL:
                return content
            try:
                payload = json.loads(data)
            except ValueError:
                continue
            delta = extract_delta(self.shape, payload)
            if delta:
                content += delta
                if on_progress is not None:
                    on_progress(content)

        raise TransportError("Stream ended before completion", status_code=response.status_code)


class ProxyTransport(ChatTransport):
    """Calls the chat proxy, which charges the caller's daily quota"""

    shape = ResponseShape.PROXY

    def __init__(self, client: httpx.AsyncClient, base_url: str = ""):
        super().__init__(client)
        self.base_url = base_url.rstrip("/")

    @property
    def source_name(self) -> str:
        return "proxy"

    def build_request(self, turn: ChatTurn) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        body = {
            "messages": [message.to_wire() for message in turn.history],
            "character": turn.character.to_wire() if turn.character else None,
            "persona": turn.persona.to_wire() if turn.persona else None,
            # user keys never leave the browser on the proxy path
            "settings": turn.settings.model_dump(
                by_alias=True, exclude={"api_key", "pawan_api_key"}
            ),
        }
        return f"{self.base_url}/api/chat", {"Content-Type": "application/json"}, body


class DirectTransport(ChatTransport):
    """Calls an OpenAI-compatible chat-completions endpoint with the user's key"""

    shape = ResponseShape.OPENAI

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        api_key: str,
        name: str = "direct-third-party",
    ):
        super().__init__(client)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._name = name

    @property
    def source_name(self) -> str:
        return self._name

    def build_request(self, turn: ChatTurn) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        body = {
            "model": turn.settings.model,
            "messages": build_chat_messages(turn.history, turn.character, turn.persona),
            **turn.settings.sampling_params(),
            "stream": turn.settings.streaming,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        return f"{self.base_url}/chat/completions", headers, body


def resolve_transport(
    settings: ConversationSettings, client: httpx.AsyncClient, proxy_url: str = ""
) -> ChatTransport:
    """
    Pick the transport for the current settings.

    openai provider with a base URL and key -> direct third-party call;
    pawan provider with the user's own key -> direct call to the tier URL;
    anything else goes through the proxy.
    """
    if settings.provider == "openai" and settings.api_base_url and settings.api_key:
        return DirectTransport(client, settings.api_base_url, settings.api_key)

    if settings.provider == "pawan" and settings.pawan_api_key:
        base_url = DEFAULT_TIER_BASE_URLS[classify_model(settings.model)]
        return DirectTransport(
            client, base_url, settings.pawan_api_key, name="direct-provider"
        )

    return ProxyTransport(client, proxy_url)
