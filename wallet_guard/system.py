"""Process-scoped Wallet Guard object.

`WalletGuard` owns one instance of every component, wired to one store and
one event sink. It has an explicit lifecycle:

    guard = WalletGuard.from_env(directory)
    guard.start()        # starts the activity monitor
    ...
    guard.close()        # stops the monitor, releases the store

It is also a context manager doing the same.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Union

from .audit_log import AuditLogEventSink
from .config import SecurityConfig
from .crypto import DecryptResult, EncryptedBlob, EncryptionEngine
from .emergency import EmergencyMode
from .errors import StoreUnavailableError
from .events import EventEmitter, EventSink, FanoutEventSink, LoggingEventSink
from .kvstore import KVStore, build_store
from .monitor import UNHEALTHY, ActivityMonitor
from .ops_stats import OPS_STATS
from .ratelimit import RateLimitDecision, SlidingWindowRateLimiter
from .trust import StaticUserDirectory, TrustClassifier, UserDirectory
from .verifier import SensitiveOperationVerifier, VerificationResult

logger = logging.getLogger("wallet_guard")


class WalletGuard:
    def __init__(
        self,
        config: SecurityConfig,
        directory: Optional[UserDirectory] = None,
        *,
        store: Optional[KVStore] = None,
        sink: Optional[EventSink] = None,
        clock=time.time,
    ):
        self.config = config
        self._clock = clock

        sinks: List[EventSink] = [LoggingEventSink()]
        if config.audit_log_path:
            sinks.append(AuditLogEventSink(config.audit_log_path))
        if sink is not None:
            sinks.append(sink)
        self.events = EventEmitter(FanoutEventSink(sinks), clock=clock)

        self.store = store if store is not None else build_store(config.store)
        self.directory = directory if directory is not None else StaticUserDirectory()
        self.classifier = TrustClassifier(
            self.directory,
            events=self.events,
            timeout_seconds=config.directory_timeout_seconds,
            clock=clock,
        )
        self.rate_limiter = SlidingWindowRateLimiter(
            self.store,
            self.classifier,
            policies=config.policies,
            events=self.events,
            violation_ttl_seconds=config.monitor.rate_limit_violations.window_seconds,
            clock=clock,
        )
        self.verifier = SensitiveOperationVerifier(
            self.rate_limiter,
            self.store,
            events=self.events,
            service_timezone=config.service_timezone,
            clock=clock,
        )
        self.emergency = EmergencyMode(
            self.store,
            ttl_seconds=config.monitor.emergency_ttl_seconds,
            events=self.events,
            clock=clock,
        )
        self.monitor = ActivityMonitor(
            self.store,
            self.emergency,
            config=config.monitor,
            events=self.events,
            clock=clock,
        )
        self._engine: Optional[EncryptionEngine] = None

    @classmethod
    def from_env(cls, directory: Optional[UserDirectory] = None, **kwargs: Any) -> "WalletGuard":
        return cls(SecurityConfig.from_env(), directory, **kwargs)

    @property
    def engine(self) -> EncryptionEngine:
        # Built on first use so operator tooling never needs the master key.
        if self._engine is None:
            self._engine = EncryptionEngine.from_config(self.config, events=self.events)
        return self._engine

    # ---------------------------
    # Lifecycle
    # ---------------------------

    def start(self) -> "WalletGuard":
        self.monitor.start()
        return self

    def close(self) -> None:
        self.monitor.stop()
        self.classifier.close()
        self.store.close()

    def __enter__(self) -> "WalletGuard":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---------------------------
    # Operations
    # ---------------------------

    def encrypt(self, plaintext: Any, user_id: Any) -> str:
        return self.engine.encrypt(plaintext, user_id).to_string()

    def decrypt(self, blob: Union[EncryptedBlob, str], user_id: Any) -> DecryptResult:
        result = self.engine.decrypt(blob, user_id)
        if result.is_integrity_failure:
            self.monitor.record_integrity_failure(user_id)
        return result

    async def encrypt_async(self, plaintext: Any, user_id: Any) -> str:
        blob = await self.engine.encrypt_async(plaintext, user_id)
        return blob.to_string()

    async def decrypt_async(self, blob: Union[EncryptedBlob, str], user_id: Any) -> DecryptResult:
        result = await self.engine.decrypt_async(blob, user_id)
        if result.is_integrity_failure:
            self.monitor.record_integrity_failure(user_id)
        return result

    def check_rate_limit(self, user_id: Any, operation: str) -> RateLimitDecision:
        return self.rate_limiter.check_and_record(user_id, operation)

    def verify(self, user_id: Any, operation: str, context: Any = None) -> VerificationResult:
        return self.verifier.verify(user_id, operation, context)

    def record_sensitive_operation(self, user_id: Any) -> None:
        self.verifier.record_sensitive_operation(user_id)

    def record_failed_attempt(self, user_id: Any, operation: str = "", reason: str = "") -> None:
        self.monitor.record_failed_attempt(user_id, operation, reason)

    def is_emergency_mode(self) -> bool:
        return self.emergency.is_active()

    # ---------------------------
    # Admin views
    # ---------------------------

    def status(self) -> Dict[str, Any]:
        """Snapshot for operators: store health, emergency state, counters, alerts."""
        store_ok = self.store.ping()
        out: Dict[str, Any] = {
            "store": {"backend": self.store.backend, "ok": store_ok},
            "monitor": {"running": self.monitor.running, "interval_seconds": self.config.monitor.interval_seconds},
            "operations": self.config.policies.operations(),
        }
        try:
            out["emergency_mode"] = self.emergency.state()
            out["recent_alerts"] = self.monitor.recent_alerts(limit=20)
            out["health"] = self.monitor.health_status()
        except StoreUnavailableError as e:
            logger.error("Status view degraded: %s", e)
            out["health"] = UNHEALTHY
            out["emergency_mode"] = {"active": False, "degraded": True}
            out["recent_alerts"] = []
        return OPS_STATS.snapshot(extra=out)
