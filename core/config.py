"""
Runtime Configuration for the Character Chat API.

All settings come from environment variables and are read once into a
`ServerConfig` pydantic model. The rest of the application reads configuration
through `get_config()` so tests can swap values with `reset_config()`.

Key Components:
- `ServerConfig`: Upstream credentials, per-tier base URLs, daily quota limits,
  timeouts, CORS origins and logging switches.
- `DEFAULT_TIER_BASE_URLS`: The vendor's public tier URLs, shared by the server
  proxy and by clients that call the vendor directly with their own key.
- `get_config` / `reset_config`: Lazily-built process-wide instance.
"""

import os
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from core.tiers import Tier

DEFAULT_TIER_BASE_URLS: Dict[Tier, str] = {
    Tier.PRO: "https://api.pawan.krd/v1",
    Tier.FREE: "https://api.pawan.krd/cosmosrp/v1",
    Tier.FREE_IT: "https://api.pawan.krd/cosmosrp-it/v1",
}


class ServerConfig(BaseModel):
    """Process-level configuration for the proxy service"""

    upstream_api_key: str = ""
    pro_base_url: str = DEFAULT_TIER_BASE_URLS[Tier.PRO]
    free_base_url: str = DEFAULT_TIER_BASE_URLS[Tier.FREE]
    free_it_base_url: str = DEFAULT_TIER_BASE_URLS[Tier.FREE_IT]

    free_daily_limit: int = 25
    free_it_daily_limit: int = 3

    upstream_timeout_seconds: float = 60.0
    stream_max_seconds: float = 300.0

    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    environment: str = "development"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    def base_url_for(self, tier: Tier) -> str:
        return {
            Tier.PRO: self.pro_base_url,
            Tier.FREE: self.free_base_url,
            Tier.FREE_IT: self.free_it_base_url,
        }[tier]

    def daily_limits(self) -> Dict[Tier, int]:
        # Pro tier is never served from the shared key
        return {
            Tier.FREE_IT: self.free_it_daily_limit,
            Tier.FREE: self.free_daily_limit,
            Tier.PRO: 0,
        }

    @classmethod
    def from_env(cls) -> "ServerConfig":
        origins = os.getenv("CORS_ORIGINS", "http://localhost:3000")
        return cls(
            upstream_api_key=os.getenv("PAWANKRD_API_KEY", ""),
            pro_base_url=os.getenv("UPSTREAM_PRO_BASE_URL", DEFAULT_TIER_BASE_URLS[Tier.PRO]),
            free_base_url=os.getenv("UPSTREAM_FREE_BASE_URL", DEFAULT_TIER_BASE_URLS[Tier.FREE]),
            free_it_base_url=os.getenv(
                "UPSTREAM_FREE_IT_BASE_URL", DEFAULT_TIER_BASE_URLS[Tier.FREE_IT]
            ),
            free_daily_limit=int(os.getenv("QUOTA_FREE_DAILY_LIMIT", "25")),
            free_it_daily_limit=int(os.getenv("QUOTA_FREE_IT_DAILY_LIMIT", "3")),
            upstream_timeout_seconds=float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "60")),
            stream_max_seconds=float(os.getenv("STREAM_MAX_SECONDS", "300")),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            environment=os.getenv("ENVIRONMENT", "development").lower(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
        )


_config: Optional[ServerConfig] = None


def get_config() -> ServerConfig:
    """Get the global configuration, loading it from the environment on first use"""
    global _config
    if _config is None:
        _config = ServerConfig.from_env()
    return _config


def reset_config(config: Optional[ServerConfig] = None) -> ServerConfig:
    """Replace the global configuration (reloads from the environment when None)"""
    global _config
    _config = config or ServerConfig.from_env()
    return _config
