"""Operational statistics for the security subsystem.

Lightweight in-memory counters with a snapshot for the admin status view.

Notes
-----
- Counters reset on process restart and are per-process.
- Do not treat these as audit evidence. Use the audit log for evidence.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    encryption_operations: int = 0
    decryption_failures: int = 0
    decryption_failures_by_reason: Dict[str, int] = field(default_factory=dict)

    blocked_operations: int = 0
    blocked_by_operation: Dict[str, int] = field(default_factory=dict)
    fail_open_decisions: int = 0

    security_alerts: int = 0
    events_by_severity: Dict[str, int] = field(default_factory=dict)
    suspicious_activities: int = 0


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_encryption(self) -> None:
        with self._lock:
            self._c.encryption_operations += 1

    def record_decryption_failure(self, reason: str) -> None:
        with self._lock:
            self._c.decryption_failures += 1
            self._inc_map(self._c.decryption_failures_by_reason, reason or "unknown")

    def record_blocked(self, operation: str) -> None:
        with self._lock:
            self._c.blocked_operations += 1
            self._inc_map(self._c.blocked_by_operation, operation or "unknown")

    def record_fail_open(self) -> None:
        with self._lock:
            self._c.fail_open_decisions += 1

    def record_security_event(self, severity: str) -> None:
        with self._lock:
            self._c.security_alerts += 1
            self._inc_map(self._c.events_by_severity, severity or "unknown")

    def record_suspicious(self, count: int = 1) -> None:
        with self._lock:
            self._c.suspicious_activities += int(count)

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "encryption_operations": c.encryption_operations,
                "decryption_failures": c.decryption_failures,
                "decryption_failures_by_reason": dict(c.decryption_failures_by_reason),
                "blocked_operations": c.blocked_operations,
                "blocked_by_operation": dict(c.blocked_by_operation),
                "fail_open_decisions": c.fail_open_decisions,
                "security_alerts": c.security_alerts,
                "events_by_severity": dict(c.events_by_severity),
                "suspicious_activities": c.suspicious_activities,
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
