"""
Upstream Selection Service.

This module provides the `UpstreamService`, which owns one upstream provider
per model tier and decides which one serves a given model id. The chat proxy
and the models catalog both go through it, so the tier to base URL mapping is
defined exactly once.

Key Components:
- `UpstreamService`: Holds the general/pro, free conversational and free
  instruction-tuned providers. `select` picks one by model id; `list_models`
  aggregates the catalogs of the listed tiers.
- `to_model_option`: Maps a raw catalog entry onto the public `ModelOption`
  shape.

Architectural Design:
- Facade Pattern: Endpoints never construct SDK clients; they ask the service
  for a provider.
- Explicit Listing Tiers: The catalog is built from the pro and free
  conversational tiers only. The instruction-tuned tier is routable but not
  listed; `LISTED_TIERS` makes that choice visible.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional

from core.config import ServerConfig
from core.logging_config import get_logger
from core.models import ModelOption
from core.tiers import Tier, classify_model
from providers.upstream_provider import OpenAICompatibleProvider, UpstreamProvider

logger = get_logger(__name__)

LISTED_TIERS = (Tier.FREE, Tier.PRO)


def to_model_option(raw: Dict[str, Any]) -> ModelOption:
    return ModelOption(
        id=raw.get("id", ""),
        name=raw.get("name"),
        owner=raw.get("owned_by"),
        description=raw.get("description"),
        order=raw.get("order"),
    )


def _name_sort_key(option: ModelOption):
    name = option.name or ""
    return (name.casefold(), name)


class UpstreamService:
    """Service that maps model ids to upstream providers"""

    def __init__(self, providers: Dict[Tier, UpstreamProvider]):
        missing = [tier.value for tier in Tier if tier not in providers]
        if missing:
            raise ValueError(f"Missing upstream providers for tiers: {missing}")
        self.providers = providers

    @classmethod
    def from_config(cls, config: ServerConfig) -> "UpstreamService":
        providers = {
            tier: OpenAICompatibleProvider(
                tier=tier,
                base_url=config.base_url_for(tier),
                api_key=config.upstream_api_key,
                timeout=config.upstream_timeout_seconds,
            )
            for tier in Tier
        }
        if not config.upstream_api_key:
            logger.warning("PAWANKRD_API_KEY is not set; upstream calls will be rejected")
        return cls(providers)

    def select(self, model_id: str) -> UpstreamProvider:
        """Pick the provider serving this model id"""
        tier = classify_model(model_id)
        provider = self.providers[tier]
        logger.debug(f"Selected {tier.value} tier ({provider.base_url}) for model {model_id}")
        return provider

    async def list_models(
        self, tiers: Optional[Iterable[Tier]] = None
    ) -> List[ModelOption]:
        """Fetch, merge and sort the catalogs of the listed tiers by name"""
        tiers = tuple(tiers or LISTED_TIERS)
        catalogs = await asyncio.gather(
            *(self.providers[tier].list_models() for tier in tiers)
        )

        options = [to_model_option(raw) for catalog in catalogs for raw in catalog]
        options.sort(key=_name_sort_key)

        logger.info(
            f"Listed {len(options)} models",
            extra={"tiers": [tier.value for tier in tiers], "model_count": len(options)},
        )
        return options
