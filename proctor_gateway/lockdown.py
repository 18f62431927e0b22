"""Fail-closed circuit breaker around the record store.

Every durable fact (capability digests, responses, navigation) goes through
sqlite. When storage starts failing we stop serving for a short window
rather than answering from a store in an unknown state. Callers see
`StorageLockdownError`, which the gateways surface as a retryable 503.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Optional


class StorageLockdownError(RuntimeError):
    """Raised while the store is locked down after repeated failures."""


@dataclass
class CircuitBreakerConfig:
    """Configuration for DbCircuitBreaker.

    Environment variables:
    - PG_DB_FAILURE_THRESHOLD: consecutive failures required to trip.
    - PG_DB_LOCKDOWN_SECONDS: duration of the lockdown window.
    - PG_DB_CONNECT_TIMEOUT_SECONDS: sqlite connect/busy timeout.
    """

    failure_threshold: int = 3
    lockdown_seconds: int = 15
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        try:
            failures = int(os.getenv("PG_DB_FAILURE_THRESHOLD", str(cls.failure_threshold)).strip())
        except ValueError:
            failures = cls.failure_threshold
        try:
            lockdown = int(os.getenv("PG_DB_LOCKDOWN_SECONDS", str(cls.lockdown_seconds)).strip())
        except ValueError:
            lockdown = cls.lockdown_seconds
        try:
            timeout = float(os.getenv("PG_DB_CONNECT_TIMEOUT_SECONDS", str(cls.connect_timeout_seconds)).strip())
        except ValueError:
            timeout = cls.connect_timeout_seconds

        return cls(
            failure_threshold=max(1, failures),
            lockdown_seconds=max(1, lockdown),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
        )


class DbCircuitBreaker:
    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig.from_env()
        self._failures = 0
        self._open_until = 0.0

    def is_lockdown_active(self) -> bool:
        return time.monotonic() < self._open_until

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise StorageLockdownError("LOCKDOWN_ACTIVE")

    def record_success(self) -> None:
        self._failures = 0

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        self._failures += 1
        if self._failures >= self.config.failure_threshold:
            self._open_until = time.monotonic() + float(self.config.lockdown_seconds)
