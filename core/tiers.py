"""
Model tier classification.

Every model id maps to one of three upstream tiers. The same rule picks the
daily quota, the proxy's upstream client and the base URL a client uses when it
calls the vendor directly, so it lives here in one place.
"""

from enum import Enum

FREE_IT_MARKER = "cosmosrp-it"
FREE_MARKER = "cosmosrp"


class Tier(str, Enum):
    PRO = "pro"
    FREE = "free"
    FREE_IT = "free_it"


def normalize_model_id(model_id: str) -> str:
    return str(model_id or "").lower()


def classify_model(model_id: str) -> Tier:
    """Map a model id to its tier (instruction-tuned marker is checked first)"""
    normalized = normalize_model_id(model_id)
    if FREE_IT_MARKER in normalized:
        return Tier.FREE_IT
    if FREE_MARKER in normalized:
        return Tier.FREE
    return Tier.PRO
