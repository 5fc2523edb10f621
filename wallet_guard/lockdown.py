"""Circuit breaker for backing-store calls.

Goal
----
Fail fast under store degradation.

Every store call carries a timeout, but a dead store would still cost one
full timeout per request. After `failure_threshold` consecutive failures (or
one call slower than the latency threshold) the breaker opens for
`cooldown_seconds`; while open, adapters raise `StoreUnavailableError`
immediately and callers take their documented degraded path (fail open for
rate limiting, default tier for trust classification).

This is per-process state, not a distributed breaker.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Optional

from .config import StoreConfig
from .errors import StoreUnavailableError


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 3
    cooldown_seconds: float = 10.0
    latency_threshold_ms: Optional[float] = None

    @classmethod
    def from_store_config(cls, cfg: StoreConfig) -> "BreakerConfig":
        # A call that takes the whole timeout is as bad as a failed one.
        return cls(
            failure_threshold=cfg.failure_threshold,
            cooldown_seconds=float(cfg.cooldown_seconds),
            latency_threshold_ms=cfg.timeout_seconds * 1000.0,
        )


class StoreCircuitBreaker:
    def __init__(self, config: Optional[BreakerConfig] = None, clock=time.monotonic):
        self.config = config or BreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._failure_count = 0
        self._open_until: float = 0.0

    def is_open(self) -> bool:
        with self._lock:
            return self._clock() < self._open_until

    def raise_if_open(self, backend: str) -> None:
        if self.is_open():
            raise StoreUnavailableError("store circuit open", backend=backend)

    def _trip(self) -> None:
        self._open_until = self._clock() + float(self.config.cooldown_seconds)
        # Keep failure_count at threshold so one more failure after cooldown re-trips.
        self._failure_count = self.config.failure_threshold

    def record_success(self, elapsed_ms: float = 0.0) -> None:
        with self._lock:
            threshold = self.config.latency_threshold_ms
            if threshold is not None and elapsed_ms >= threshold:
                self._failure_count += 1
                if self._failure_count >= self.config.failure_threshold:
                    self._trip()
                return
            self._failure_count = 0

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            self._failure_count += 1
            if self._failure_count >= self.config.failure_threshold:
                self._trip()
