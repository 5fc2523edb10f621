"""Security events and event sinks.

A SecurityEvent is write-once: components create one, hand it to an EventSink
and never touch it again. Sinks must not raise into the caller; a failing sink
is logged and skipped.
"""

from __future__ import annotations

import abc
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .metrics import record_security_event
from .ops_stats import OPS_STATS
from .redact import redact

logger = logging.getLogger("wallet_guard.events")


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def log_level(self) -> int:
        return _LOG_LEVELS[self]


_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


# Event types raised by the subsystem
DATA_INTEGRITY_FAILURE = "DATA_INTEGRITY_FAILURE"
TRUST_LOOKUP_FAILED = "TRUST_LOOKUP_FAILED"
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
RATE_LIMIT_FAIL_OPEN = "RATE_LIMIT_FAIL_OPEN"
SENSITIVE_OPERATION_VERIFICATION = "SENSITIVE_OPERATION_VERIFICATION"
MULTIPLE_FAILED_ATTEMPTS = "MULTIPLE_FAILED_ATTEMPTS"
REPEATED_RATE_LIMIT_VIOLATIONS = "REPEATED_RATE_LIMIT_VIOLATIONS"
MULTIPLE_SENSITIVE_OPERATIONS = "MULTIPLE_SENSITIVE_OPERATIONS"
SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
SYSTEM_INTRUSION = "SYSTEM_INTRUSION"
PRIVATE_KEY_ACCESS = "PRIVATE_KEY_ACCESS"
MASS_ATTACK = "MASS_ATTACK"
SYSTEM_HEALTH = "SYSTEM_HEALTH"
EMERGENCY_MODE_ACTIVATED = "EMERGENCY_MODE_ACTIVATED"
EMERGENCY_MODE_CLEARED = "EMERGENCY_MODE_CLEARED"
EPHEMERAL_MASTER_KEY = "EPHEMERAL_MASTER_KEY"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class SecurityEvent:
    type: str
    user_id: Optional[str]
    severity: Severity
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_iso)

    @classmethod
    def create(
        cls,
        event_type: str,
        user_id: Optional[Any],
        severity: Severity,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        at: Optional[float] = None,
    ) -> "SecurityEvent":
        ts = datetime.fromtimestamp(at, tz=timezone.utc).isoformat() if at is not None else _now_iso()
        return cls(
            type=event_type,
            user_id=None if user_id is None else str(user_id),
            severity=Severity(severity),
            metadata=redact(dict(metadata or {})),
            timestamp=ts,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "user_id": self.user_id,
            "severity": self.severity.value,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }


class EventSink(abc.ABC):
    """Append-only destination for security events."""

    @abc.abstractmethod
    def record(self, event: SecurityEvent) -> None:
        raise NotImplementedError


class LoggingEventSink(EventSink):
    """Writes events to the `wallet_guard.security` logger, level by severity."""

    def __init__(self, logger_name: str = "wallet_guard.security"):
        self._log = logging.getLogger(logger_name)

    def record(self, event: SecurityEvent) -> None:
        self._log.log(
            event.severity.log_level,
            "Security event %s user=%s severity=%s metadata=%s",
            event.type,
            event.user_id,
            event.severity.value,
            event.metadata,
        )


class MemoryEventSink(EventSink):
    """Keeps events in memory. Useful for tests and the admin status view."""

    def __init__(self, max_events: int = 1000):
        self._lock = threading.Lock()
        self._events: List[SecurityEvent] = []
        self._max = max(1, int(max_events))

    def record(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.append(event)
            if len(self._events) > self._max:
                del self._events[: len(self._events) - self._max]

    @property
    def events(self) -> List[SecurityEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: str) -> List[SecurityEvent]:
        return [e for e in self.events if e.type == event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class FanoutEventSink(EventSink):
    """Delivers each event to several sinks. One failing sink does not block the others."""

    def __init__(self, sinks: Iterable[EventSink]):
        self.sinks = list(sinks)

    def record(self, event: SecurityEvent) -> None:
        for sink in self.sinks:
            try:
                sink.record(event)
            except Exception as e:
                logger.error("Event sink %s failed for %s: %s", type(sink).__name__, event.type, e)


class EventEmitter:
    """Small helper shared by components: builds and delivers events, never raises."""

    def __init__(self, sink: Optional[EventSink] = None, clock=time.time):
        self.sink = sink or LoggingEventSink()
        self._clock = clock

    def emit(
        self,
        event_type: str,
        user_id: Optional[Any],
        severity: Severity,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> SecurityEvent:
        event = SecurityEvent.create(event_type, user_id, severity, metadata, at=self._clock())
        try:
            self.sink.record(event)
        except Exception as e:
            logger.error("Failed to record security event %s: %s", event_type, e)
        record_security_event(event.severity.value)
        OPS_STATS.record_security_event(event.severity.value)
        return event
