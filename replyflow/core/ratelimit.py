"""
Token-bucket rate limiter.

- In-memory, keyed by user_id+route.
- A per-instance courtesy throttle in front of the decision endpoint.
  Entitlements are decided by the datastore, never by this limiter.
- Disabled unless RATE_LIMIT_ENABLED is set.
"""

import time
from dataclasses import dataclass
from typing import Dict, Optional, Callable

from replyflow.core.config import Settings, settings


@dataclass
class RateLimitConfig:
    enabled: bool = False
    per_minute_default: int = 120
    burst_default: int = 30


class TokenBucket:
    def __init__(self, capacity: int, refill_rate_per_sec: float, time_fn: Callable[[], float] = time.monotonic):
        self.capacity = max(1, capacity)
        self.tokens = float(self.capacity)
        self.refill_rate = max(0.0, refill_rate_per_sec)
        self.time_fn = time_fn
        self.last_refill = self.time_fn()

    def _refill(self) -> None:
        now = self.time_fn()
        elapsed = now - self.last_refill
        if elapsed <= 0:
            return
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def allow(self, cost: float = 1.0) -> bool:
        self._refill()
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False

    def retry_after(self, cost: float = 1.0) -> Optional[float]:
        """Seconds until `cost` tokens are available; None if never."""
        self._refill()
        missing = cost - self.tokens
        if missing <= 0:
            return 0.0
        if self.refill_rate <= 0:
            return None
        return missing / self.refill_rate


class InMemoryRateLimiter:
    def __init__(self, config: RateLimitConfig, time_fn: Callable[[], float] = time.monotonic):
        self.config = config
        self.time_fn = time_fn
        self.buckets: Dict[str, TokenBucket] = {}

    def _bucket_for(self, key: str, per_minute: int, burst: int) -> TokenBucket:
        if key not in self.buckets:
            refill_rate = per_minute / 60.0
            self.buckets[key] = TokenBucket(capacity=burst, refill_rate_per_sec=refill_rate, time_fn=self.time_fn)
        return self.buckets[key]

    def allow(self, key: str, *, per_minute: Optional[int] = None, burst: Optional[int] = None) -> bool:
        if not self.config.enabled:
            return True
        bucket = self._bucket_for(
            key,
            per_minute or self.config.per_minute_default,
            burst or self.config.burst_default,
        )
        return bucket.allow()

    def retry_after(self, key: str) -> Optional[float]:
        bucket = self.buckets.get(key)
        if bucket is None:
            return 0.0
        return bucket.retry_after()

    def reset(self) -> None:
        self.buckets.clear()


def rate_limit_key(user_id: str, route: str) -> str:
    return f"{user_id}:{route}"


def build_rate_limit_config(settings_obj: Optional[Settings] = None) -> RateLimitConfig:
    cfg = settings_obj or settings
    per_minute = cfg.RATE_LIMIT_PER_MINUTE_DEFAULT
    burst = cfg.RATE_LIMIT_BURST_DEFAULT
    return RateLimitConfig(
        enabled=bool(cfg.RATE_LIMIT_ENABLED),
        per_minute_default=per_minute if per_minute > 0 else 120,
        burst_default=burst if burst > 0 else 30,
    )
