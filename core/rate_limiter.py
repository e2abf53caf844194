"""
Daily Quota Tracking.

This module enforces the proxy's daily call budget per (client IP, model)
pair. Requests that go through the shared server key are counted here; clients
that bring their own key never reach it.

Key Components:
- `QuotaEntry`: The per-key counter, stamped with the UTC calendar day it
  belongs to.
- `QuotaDecision`: The outcome of a check: whether the request is allowed, the
  daily limit and how many calls remain after this one.
- `DailyQuotaTracker`: An in-memory store of `QuotaEntry` objects keyed by
  `"{client_ip}::{normalized_model_id}"`. The check-and-increment runs under a
  single lock, so two concurrent requests can never both take the last slot.
- `init_quota_tracker` / `get_quota_tracker`: Process-wide instance created at
  startup and handed to the endpoints through dependency injection.

Architectural Design:
- Fixed Daily Window: A counter resets whenever its stored date differs from
  today's UTC date. Stale entries are never deleted; memory is bounded by the
  number of distinct (ip, model) pairs seen and the store is not meant to
  survive a restart.
- Tier-based Limits: The limit comes from the model's tier. The pro tier has a
  limit of 0, so the shared key never serves it.
- Injectable Clock: The tracker takes a `clock` callable so tests can cross a
  day boundary without waiting for one.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from core.logging_config import get_logger
from core.tiers import Tier, classify_model, normalize_model_id

logger = get_logger(__name__)

DEFAULT_DAILY_LIMITS: Dict[Tier, int] = {
    Tier.FREE_IT: 3,
    Tier.FREE: 25,
    Tier.PRO: 0,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QuotaEntry:
    """Daily counter for one quota key"""

    date: str  # YYYY-MM-DD, UTC
    count: int = 0


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    limit: int
    remaining: int


class DailyQuotaTracker:
    """In-memory per-IP, per-model daily quota"""

    def __init__(
        self,
        limits: Optional[Dict[Tier, int]] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.limits: Dict[Tier, int] = dict(limits or DEFAULT_DAILY_LIMITS)
        self.entries: Dict[str, QuotaEntry] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def get_daily_limit(self, model_id: str) -> int:
        """Daily limit for a model id, by tier"""
        return self.limits.get(classify_model(model_id), 0)

    @staticmethod
    def quota_key(client_ip: str, model_id: str) -> str:
        return f"{client_ip}::{normalize_model_id(model_id)}"

    def today(self) -> str:
        return self._clock().astimezone(timezone.utc).strftime("%Y-%m-%d")

    def check_and_increment(self, client_ip: str, model_id: str) -> QuotaDecision:
        """Count one request against the daily quota if there is room for it"""
        key = self.quota_key(client_ip, model_id)
        limit = self.get_daily_limit(model_id)

        with self._lock:
            today = self.today()
            entry = self.entries.get(key)
            if entry is None or entry.date != today:
                entry = QuotaEntry(date=today)
                self.entries[key] = entry

            if entry.count >= limit:
                logger.warning(
                    f"Daily quota exhausted for {key}",
                    extra={"quota_key": key, "limit": limit, "count": entry.count},
                )
                return QuotaDecision(allowed=False, limit=limit, remaining=0)

            entry.count += 1
            remaining = max(0, limit - entry.count)

        logger.debug(
            f"Quota consumed for {key}: {remaining}/{limit} remaining",
            extra={"quota_key": key, "limit": limit, "remaining": remaining},
        )
        return QuotaDecision(allowed=True, limit=limit, remaining=remaining)

    def reset(self, client_ip: str, model_id: str):
        """Forget the counter for one key"""
        with self._lock:
            key = self.quota_key(client_ip, model_id)
            if self.entries.pop(key, None) is not None:
                logger.info(f"Reset quota for {key}")

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "tracked_keys": len(self.entries),
                "date": self.today(),
                "limits": {tier.value: limit for tier, limit in self.limits.items()},
            }


# Global quota tracker instance
_quota_tracker: Optional[DailyQuotaTracker] = None


def get_quota_tracker() -> DailyQuotaTracker:
    """Get the global quota tracker instance"""
    global _quota_tracker
    if _quota_tracker is None:
        _quota_tracker = DailyQuotaTracker()
    return _quota_tracker


def init_quota_tracker(
    limits: Optional[Dict[Tier, int]] = None, **kwargs
) -> DailyQuotaTracker:
    """Initialize the global quota tracker"""
    global _quota_tracker
    _quota_tracker = DailyQuotaTracker(limits, **kwargs)
    logger.info(
        "Initialized daily quota tracker",
        extra={"limits": {tier.value: v for tier, v in _quota_tracker.limits.items()}},
    )
    return _quota_tracker
