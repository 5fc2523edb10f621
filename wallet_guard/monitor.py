"""Background suspicious-activity monitor.

The monitor periodically scans the shared store for per-user signal logs
(failed attempts, rate-limit violations, integrity failures), raises an alert
for every user over a signal threshold and escalates CRITICAL alerts into
emergency mode. It also flags users whose rate-limit denials span several
sensitive operations, and reports changes in overall system health.

Each alert records a high-water mark (the newest entry it covered) under
`security:monitor_marks:`; later scans count only entries past the mark, so
an admin clear of emergency mode is not undone by evidence already acted on.

Lifecycle is explicit: `start()` spawns a daemon thread that calls
`scan_once()` every `interval_seconds`; `stop()` wakes it and joins. Tests
call `scan_once()` directly.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .config import MonitorConfig, MonitorThreshold
from .emergency import EmergencyMode
from .errors import StoreUnavailableError
from .events import (
    MASS_ATTACK,
    MULTIPLE_FAILED_ATTEMPTS,
    MULTIPLE_SENSITIVE_OPERATIONS,
    PRIVATE_KEY_ACCESS,
    RATE_LIMIT_EXCEEDED,
    REPEATED_RATE_LIMIT_VIOLATIONS,
    SUSPICIOUS_ACTIVITY,
    SYSTEM_HEALTH,
    SYSTEM_INTRUSION,
    EventEmitter,
    Severity,
)
from .kvstore import KVStore
from .ops_stats import OPS_STATS
from .ratelimit import OPERATION_VIOLATIONS_PREFIX, OPERATION_VIOLATIONS_TTL_SECONDS, VIOLATIONS_PREFIX

logger = logging.getLogger("wallet_guard.monitor")

FAILED_ATTEMPTS_PREFIX = "security:failed_attempts:"
INTEGRITY_FAILURES_PREFIX = "security:integrity_failures:"
ALERTS_PREFIX = "security:alerts:"
MARKS_PREFIX = "security:monitor_marks:"

SENSITIVE_PATTERN = "multiple_sensitive_operations"
SENSITIVE_PATTERN_WINDOW_SECONDS = OPERATION_VIOLATIONS_TTL_SECONDS
SENSITIVE_PATTERN_MIN_OPERATIONS = 3
SENSITIVE_PATTERN_MIN_EVENTS = 5

HEALTHY = "HEALTHY"
UNHEALTHY = "UNHEALTHY"
EMERGENCY_MODE = "EMERGENCY_MODE"
HIGH_SECURITY_ACTIVITY = "HIGH_SECURITY_ACTIVITY"
HIGH_ACTIVITY_ALERTS = 10
HIGH_ACTIVITY_WINDOW_SECONDS = 3600

SEVERITY_TABLE: Dict[str, Severity] = {
    SYSTEM_INTRUSION: Severity.CRITICAL,
    PRIVATE_KEY_ACCESS: Severity.CRITICAL,
    MASS_ATTACK: Severity.CRITICAL,
    SUSPICIOUS_ACTIVITY: Severity.HIGH,
    RATE_LIMIT_EXCEEDED: Severity.HIGH,
    MULTIPLE_FAILED_ATTEMPTS: Severity.HIGH,
    REPEATED_RATE_LIMIT_VIOLATIONS: Severity.HIGH,
    MULTIPLE_SENSITIVE_OPERATIONS: Severity.HIGH,
}


def mark_key(signal_name: str, user_id: Any) -> str:
    return f"{MARKS_PREFIX}{signal_name}:{user_id}"


def severity_for(event_type: str) -> Severity:
    return SEVERITY_TABLE.get(event_type, Severity.MEDIUM)


@dataclass(frozen=True)
class Signal:
    name: str
    prefix: str
    threshold: MonitorThreshold
    event_type: str


@dataclass(frozen=True)
class Alert:
    id: str
    type: str
    user_id: Optional[str]
    severity: Severity
    metadata: Dict[str, Any]
    created_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "user_id": self.user_id,
            "severity": self.severity.value,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }


class ActivityMonitor:
    def __init__(
        self,
        store: KVStore,
        emergency: EmergencyMode,
        *,
        config: Optional[MonitorConfig] = None,
        events: Optional[EventEmitter] = None,
        clock=time.time,
    ):
        self.store = store
        self.emergency = emergency
        self.config = config or MonitorConfig()
        self.events = events or EventEmitter()
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._health = HEALTHY
        self.signals = (
            Signal("failed_attempts", FAILED_ATTEMPTS_PREFIX, self.config.failed_attempts, MULTIPLE_FAILED_ATTEMPTS),
            Signal(
                "rate_limit_violations",
                VIOLATIONS_PREFIX,
                self.config.rate_limit_violations,
                REPEATED_RATE_LIMIT_VIOLATIONS,
            ),
            Signal("integrity_failures", INTEGRITY_FAILURES_PREFIX, self.config.integrity_failures, SYSTEM_INTRUSION),
        )

    # ---------------------------
    # Signal recorders
    # ---------------------------

    def _record(self, prefix: str, user_id: Any, threshold: MonitorThreshold) -> None:
        now = self._clock()
        try:
            self.store.append_with_ttl(
                f"{prefix}{user_id}",
                now,
                threshold.window_seconds,
                prune_before=now - threshold.window_seconds,
            )
        except StoreUnavailableError as e:
            logger.warning("Could not record %s for user %s: %s", prefix.rstrip(":"), user_id, e)

    def record_failed_attempt(self, user_id: Any, operation: str = "", reason: str = "") -> None:
        logger.info("Failed attempt by user %s on %s: %s", user_id, operation or "-", reason or "-")
        self._record(FAILED_ATTEMPTS_PREFIX, user_id, self.config.failed_attempts)

    def record_integrity_failure(self, user_id: Any) -> None:
        self._record(INTEGRITY_FAILURES_PREFIX, user_id, self.config.integrity_failures)

    # ---------------------------
    # Alerts
    # ---------------------------

    def raise_alert(self, event_type: str, user_id: Optional[Any], metadata: Optional[Dict[str, Any]] = None) -> Alert:
        now = self._clock()
        severity = severity_for(event_type)
        event = self.events.emit(event_type, user_id, severity, metadata or {})
        alert = Alert(
            id=f"{int(now * 1000)}-{secrets.token_hex(4)}",
            type=event_type,
            user_id=event.user_id,
            severity=severity,
            metadata=event.metadata,
            created_at=now,
        )
        try:
            self.store.set_with_ttl(
                f"{ALERTS_PREFIX}{alert.id}",
                json.dumps(alert.to_dict(), sort_keys=True),
                self.config.alert_ttl_seconds,
            )
        except StoreUnavailableError as e:
            logger.warning("Could not store alert %s: %s", alert.id, e)

        if severity is Severity.CRITICAL:
            try:
                self.emergency.activate(event_type, user_id, reason=str((metadata or {}).get("signal", event_type)))
            except StoreUnavailableError as e:
                logger.critical("Could not activate emergency mode after %s: %s", event_type, e)
        return alert

    def recent_alerts(self, limit: int = 50) -> List[Dict[str, Any]]:
        keys = self.store.list_keys_by_prefix(ALERTS_PREFIX)
        out: List[Dict[str, Any]] = []
        for key in keys:
            raw = self.store.get(key)
            if raw is None:
                continue
            try:
                out.append(json.loads(raw.decode("utf-8")))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.warning("Skipping corrupt alert record %s", key)
        out.sort(key=lambda a: a.get("created_at", 0), reverse=True)
        return out[: max(0, int(limit))]

    # ---------------------------
    # Scanning
    # ---------------------------

    def _mark(self, signal_name: str, user_id: str) -> float:
        raw = self.store.get(mark_key(signal_name, user_id))
        if raw is None:
            return 0.0
        try:
            return float(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.warning("Ignoring corrupt monitor mark for %s/%s", signal_name, user_id)
            return 0.0

    def _set_mark(self, signal_name: str, user_id: str, newest: float, ttl_seconds: int) -> None:
        try:
            self.store.set_with_ttl(mark_key(signal_name, user_id), repr(float(newest)), ttl_seconds)
        except StoreUnavailableError as e:
            logger.warning("Could not store monitor mark for %s/%s: %s", signal_name, user_id, e)

    def _scan_signal(self, signal: Signal, now: float) -> Dict[str, Tuple[int, float]]:
        """user_id -> (count, newest entry) for users at or over the threshold."""
        flagged: Dict[str, Tuple[int, float]] = {}
        since = now - signal.threshold.window_seconds
        for key in self.store.list_keys_by_prefix(signal.prefix):
            user_id = key[len(signal.prefix):]
            entries = self.store.read_log(key, since=max(since, self._mark(signal.name, user_id)))
            if len(entries) >= signal.threshold.count:
                flagged[user_id] = (len(entries), max(entries))
        return flagged

    def _scan_sensitive_operations(self, now: float) -> Dict[str, Tuple[List[str], int, float]]:
        """user_id -> (operations, count, newest) for denials spread over many operations."""
        keys_by_user: Dict[str, Dict[str, str]] = {}
        for key in self.store.list_keys_by_prefix(OPERATION_VIOLATIONS_PREFIX):
            operation, _, user_id = key[len(OPERATION_VIOLATIONS_PREFIX):].partition(":")
            keys_by_user.setdefault(user_id, {})[operation] = key

        flagged: Dict[str, Tuple[List[str], int, float]] = {}
        since = now - SENSITIVE_PATTERN_WINDOW_SECONDS
        for user_id, keys in keys_by_user.items():
            since_mark = max(since, self._mark(SENSITIVE_PATTERN, user_id))
            logs = {op: self.store.read_log(key, since=since_mark) for op, key in keys.items()}
            logs = {op: entries for op, entries in logs.items() if entries}
            count = sum(len(entries) for entries in logs.values())
            if len(logs) >= SENSITIVE_PATTERN_MIN_OPERATIONS and count >= SENSITIVE_PATTERN_MIN_EVENTS:
                newest = max(max(entries) for entries in logs.values())
                flagged[user_id] = (sorted(logs), count, newest)
        return flagged

    def _recent_alert_count(self, now: float) -> int:
        since = now - HIGH_ACTIVITY_WINDOW_SECONDS
        count = 0
        for key in self.store.list_keys_by_prefix(ALERTS_PREFIX):
            # alert ids start with the creation time in milliseconds
            stamp = key[len(ALERTS_PREFIX):].partition("-")[0]
            if stamp.isdigit() and int(stamp) / 1000.0 > since:
                count += 1
        return count

    def health_status(self, now: Optional[float] = None) -> str:
        """HEALTHY, UNHEALTHY (store down), EMERGENCY_MODE or HIGH_SECURITY_ACTIVITY."""
        now = self._clock() if now is None else now
        if not self.store.ping():
            return UNHEALTHY
        if self.emergency.is_active():
            return EMERGENCY_MODE
        try:
            recent = self._recent_alert_count(now)
        except StoreUnavailableError as e:
            logger.error("System health check failed: %s", e)
            return UNHEALTHY
        if recent > HIGH_ACTIVITY_ALERTS:
            return HIGH_SECURITY_ACTIVITY
        return HEALTHY

    def _check_health(self, now: float) -> Optional[Alert]:
        """Alert when health moves to a non-HEALTHY status; steady states stay quiet."""
        status = self.health_status(now)
        previous, self._health = self._health, status
        if status == previous:
            return None
        if status == HEALTHY:
            logger.info("System health recovered from %s", previous)
            return None
        return self.raise_alert(SYSTEM_HEALTH, None, {"signal": "system_health", "status": status, "previous": previous})

    def scan_once(self) -> List[Alert]:
        """Run one pass: health, every signal, then the multi-operation pattern.

        Store failures skip the affected step.
        """
        with self._lock:
            now = self._clock()
            alerts: List[Alert] = []
            health_alert = self._check_health(now)
            if health_alert is not None:
                alerts.append(health_alert)

            flagged_users = set()
            for signal in self.signals:
                try:
                    flagged = self._scan_signal(signal, now)
                except StoreUnavailableError as e:
                    logger.error("Monitor scan of %s failed: %s", signal.name, e)
                    continue
                for user_id, (count, newest) in sorted(flagged.items()):
                    flagged_users.add(user_id)
                    alerts.append(
                        self.raise_alert(
                            signal.event_type,
                            user_id,
                            {
                                "signal": signal.name,
                                "count": count,
                                "threshold": signal.threshold.count,
                                "window_seconds": signal.threshold.window_seconds,
                            },
                        )
                    )
                    self._set_mark(signal.name, user_id, newest, signal.threshold.window_seconds)

            try:
                patterns = self._scan_sensitive_operations(now)
            except StoreUnavailableError as e:
                logger.error("Monitor scan of %s failed: %s", SENSITIVE_PATTERN, e)
                patterns = {}
            for user_id, (operations, count, newest) in sorted(patterns.items()):
                flagged_users.add(user_id)
                alerts.append(
                    self.raise_alert(
                        MULTIPLE_SENSITIVE_OPERATIONS,
                        user_id,
                        {
                            "signal": SENSITIVE_PATTERN,
                            "operations": operations,
                            "count": count,
                            "window_seconds": SENSITIVE_PATTERN_WINDOW_SECONDS,
                        },
                    )
                )
                self._set_mark(SENSITIVE_PATTERN, user_id, newest, SENSITIVE_PATTERN_WINDOW_SECONDS)

            if flagged_users:
                OPS_STATS.record_suspicious(len(flagged_users))
            if len(flagged_users) >= self.config.mass_attack_users:
                alerts.append(
                    self.raise_alert(
                        MASS_ATTACK,
                        None,
                        {"signal": "mass_attack", "flagged_users": len(flagged_users)},
                    )
                )
            return alerts

    # ---------------------------
    # Lifecycle
    # ---------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="wg-activity-monitor", daemon=True)
        self._thread.start()
        logger.info("Activity monitor started (interval %ss)", self.config.interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
        logger.info("Activity monitor stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.config.interval_seconds):
            try:
                self.scan_once()
            except Exception:
                logger.exception("Activity monitor scan failed")
