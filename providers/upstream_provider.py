"""
Upstream Provider Classes

OpenAI-compatible chat-completion backends used by the proxy. Each tier is one
provider instance bound to its own base URL and key.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI

from core.logging_config import get_logger
from core.tiers import Tier

logger = get_logger(__name__)


class UpstreamStream:
    """Incremental completion from an upstream provider"""

    def __init__(self, response: Any):
        self._response = response

    async def deltas(self) -> AsyncIterator[str]:
        """Yield text deltas, skipping chunks without content"""
        async for chunk in self._response:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content

    async def close(self) -> None:
        await self._response.close()


class UpstreamProvider(ABC):
    """Abstract base class for upstream chat-completion providers"""

    tier: Tier
    base_url: str

    @abstractmethod
    async def complete(
        self, messages: List[Dict[str, Any]], model: str, **params
    ) -> Optional[str]:
        """Send messages and return the first choice's content"""
        pass

    @abstractmethod
    async def open_stream(
        self, messages: List[Dict[str, Any]], model: str, **params
    ) -> UpstreamStream:
        """Start a streamed completion; the request is sent before this returns"""
        pass

    @abstractmethod
    async def list_models(self) -> List[Dict[str, Any]]:
        """Return the raw model catalog of this provider"""
        pass


class OpenAICompatibleProvider(UpstreamProvider):
    """Upstream provider backed by the OpenAI SDK"""

    def __init__(
        self,
        tier: Tier,
        base_url: str,
        api_key: str,
        timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.tier = tier
        self.base_url = base_url
        # The SDK refuses an empty key; the upstream answers 401 instead
        self.client = client or AsyncOpenAI(
            api_key=api_key or "missing", base_url=base_url, timeout=timeout
        )

    async def complete(
        self, messages: List[Dict[str, Any]], model: str, **params
    ) -> Optional[str]:
        response = await self.client.chat.completions.create(
            model=model, messages=messages, stream=False, **params
        )
        if not response.choices:
            return None
        return response.choices[0].message.content

    async def open_stream(
        self, messages: List[Dict[str, Any]], model: str, **params
    ) -> UpstreamStream:
        response = await self.client.chat.completions.create(
            model=model, messages=messages, stream=True, **params
        )
        logger.debug(f"Opened upstream stream on {self.tier.value} tier for {model}")
        return UpstreamStream(response)

    async def list_models(self) -> List[Dict[str, Any]]:
        page = await self.client.models.list()
        # Vendor-specific fields (name, description, order) arrive as extras
        return [model.model_dump() for model in page.data]
