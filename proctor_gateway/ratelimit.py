"""Per-process rate limiting for the public gateway endpoints.

Guardian and substitute links are bearer tokens on unauthenticated routes,
so the gateways are throttled per client to slow down token guessing. This
is a single-process limiter; deployments behind several workers should also
limit at the reverse proxy.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

OFF_VALUES = ("", "off", "none", "0", "disabled")


@dataclass
class TokenBucket:
    """capacity: burst size; refill_rate_per_sec: sustained rate."""

    capacity: float
    refill_rate_per_sec: float
    tokens: float
    last_ts: float

    @classmethod
    def new(cls, capacity: float, refill_rate_per_sec: float) -> "TokenBucket":
        return cls(capacity=capacity, refill_rate_per_sec=refill_rate_per_sec, tokens=capacity, last_ts=time.monotonic())

    def allow(self, cost: float = 1.0) -> bool:
        now = time.monotonic()
        elapsed = max(0.0, now - self.last_ts)
        self.last_ts = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_sec)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False


class RateLimiter:
    """Keyed token buckets. Keys are client addresses, never tokens."""

    def __init__(self, capacity: float, refill_rate_per_sec: float, max_keys: int = 20000):
        if capacity <= 0 or refill_rate_per_sec <= 0:
            raise ValueError("capacity and refill_rate_per_sec must be positive")
        self._capacity = float(capacity)
        self._refill = float(refill_rate_per_sec)
        self._max_keys = int(max_keys) if int(max_keys) > 0 else 20000
        self._buckets: Dict[str, TokenBucket] = {}

    def _evict_full(self) -> None:
        # Buckets that have refilled completely carry no state worth keeping.
        now = time.monotonic()
        stale = [
            k
            for k, b in self._buckets.items()
            if b.tokens + (now - b.last_ts) * b.refill_rate_per_sec >= b.capacity
        ]
        for k in stale:
            del self._buckets[k]

    def allow(self, key: str, cost: float = 1.0) -> bool:
        key = key or "_anon"
        bucket = self._buckets.get(key)
        if bucket is None:
            if len(self._buckets) >= self._max_keys:
                self._evict_full()
                if len(self._buckets) >= self._max_keys:
                    return False
            bucket = TokenBucket.new(self._capacity, self._refill)
            self._buckets[key] = bucket
        return bucket.allow(cost=cost)


def parse_rate_limit(value: str) -> Tuple[float, float]:
    """Parse '30/m', '10/s' or '500/h' into (capacity, refill_rate_per_sec)."""
    s = (value or "").strip().lower()
    if not s:
        raise ValueError("empty rate limit")
    if "/" not in s:
        raise ValueError("invalid rate limit; expected like '30/m' or '10/s'")
    num_str, unit = s.split("/", 1)
    n = float(num_str)
    unit = unit.strip()
    if n <= 0:
        raise ValueError("rate must be positive")
    if unit in ("s", "sec", "second", "seconds"):
        per_sec = n
    elif unit in ("m", "min", "minute", "minutes"):
        per_sec = n / 60.0
    elif unit in ("h", "hr", "hour", "hours"):
        per_sec = n / 3600.0
    else:
        raise ValueError(f"unsupported rate unit: {unit}")
    return float(n), float(per_sec)


def build_limiter(value: Optional[str]) -> Optional[RateLimiter]:
    """None when the rate string disables limiting. Raises ValueError when malformed."""
    if value is None or value.strip().lower() in OFF_VALUES:
        return None
    capacity, refill = parse_rate_limit(value)
    return RateLimiter(capacity, refill)
