"""Risk-scored verification of sensitive operations.

Signals are additive; only a rate-limit denial short-circuits:

=================  =====  ======================================
signal             score  condition
=================  =====  ======================================
caller_mismatch      +50  context.caller_id != user_id
unusual_hour         +20  service-time hour in [02:00, 06:00)
high_frequency       +30  > 2 completed sensitive ops in 24 h
=================  =====  ======================================

The operation is allowed while the score stays below 70.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import StoreUnavailableError
from .events import SENSITIVE_OPERATION_VERIFICATION, EventEmitter, Severity
from .kvstore import KVStore
from .metrics import record_verification
from .ratelimit import RateLimitDecision, SlidingWindowRateLimiter

logger = logging.getLogger("wallet_guard.verifier")

RECENT_SENSITIVE_PREFIX = "security:recent_sensitive:"
RECENT_WINDOW_SECONDS = 86400

MAX_RISK_SCORE = 100
DENY_THRESHOLD = 70

CALLER_MISMATCH_SCORE = 50
UNUSUAL_HOUR_SCORE = 20
HIGH_FREQUENCY_SCORE = 30

UNUSUAL_HOURS = range(2, 6)
HIGH_FREQUENCY_THRESHOLD = 2

REASON_RATE_LIMITED = "rate_limit_exceeded"
REASON_CALLER_MISMATCH = "caller_mismatch"
REASON_UNUSUAL_HOUR = "unusual_hour"
REASON_HIGH_FREQUENCY = "high_frequency"


def recent_sensitive_key(user_id: Any) -> str:
    return f"{RECENT_SENSITIVE_PREFIX}{user_id}"


@dataclass(frozen=True)
class VerificationContext:
    caller_id: Any
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "VerificationContext":
        d = dict(data or {})
        caller = d.pop("caller_id", d.pop("callerId", None))
        return cls(caller_id=caller, metadata=d)


@dataclass(frozen=True)
class VerificationResult:
    allowed: bool
    risk_score: int
    reasons: List[str]
    rate_limit: Optional[RateLimitDecision] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "risk_score": self.risk_score,
            "reasons": list(self.reasons),
        }


def _load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown service timezone %r; using UTC", name)
        return ZoneInfo("UTC")


class SensitiveOperationVerifier:
    def __init__(
        self,
        rate_limiter: SlidingWindowRateLimiter,
        store: KVStore,
        *,
        events: Optional[EventEmitter] = None,
        service_timezone: str = "UTC",
        clock=time.time,
    ):
        self.rate_limiter = rate_limiter
        self.store = store
        self.events = events or EventEmitter()
        self.zone = _load_zone(service_timezone)
        self._clock = clock

    def service_hour(self, now: float) -> int:
        return datetime.fromtimestamp(now, tz=self.zone).hour

    def recent_sensitive_count(self, user_id: Any, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        try:
            return len(self.store.read_log(recent_sensitive_key(user_id), since=now - RECENT_WINDOW_SECONDS))
        except StoreUnavailableError as e:
            logger.warning("Could not read sensitive operation history for user %s: %s", user_id, e)
            return 0

    def verify(self, user_id: Any, operation: str, context: Any = None) -> VerificationResult:
        if not isinstance(context, VerificationContext):
            context = VerificationContext.from_mapping(context or {})

        decision = self.rate_limiter.check_and_record(user_id, operation)
        if not decision.allowed:
            result = VerificationResult(
                allowed=False,
                risk_score=MAX_RISK_SCORE,
                reasons=[REASON_RATE_LIMITED],
                rate_limit=decision,
            )
            return self._finish(user_id, operation, result)

        now = self._clock()
        score = 0
        reasons: List[str] = []

        if str(context.caller_id) != str(user_id):
            score += CALLER_MISMATCH_SCORE
            reasons.append(REASON_CALLER_MISMATCH)

        if self.service_hour(now) in UNUSUAL_HOURS:
            score += UNUSUAL_HOUR_SCORE
            reasons.append(REASON_UNUSUAL_HOUR)

        if self.recent_sensitive_count(user_id, now) > HIGH_FREQUENCY_THRESHOLD:
            score += HIGH_FREQUENCY_SCORE
            reasons.append(REASON_HIGH_FREQUENCY)

        score = min(MAX_RISK_SCORE, score)
        result = VerificationResult(
            allowed=score < DENY_THRESHOLD,
            risk_score=score,
            reasons=reasons,
            rate_limit=decision,
        )
        return self._finish(user_id, operation, result)

    def _finish(self, user_id: Any, operation: str, result: VerificationResult) -> VerificationResult:
        self.events.emit(
            SENSITIVE_OPERATION_VERIFICATION,
            user_id,
            Severity.MEDIUM if result.allowed else Severity.HIGH,
            {
                "operation": operation,
                "allowed": result.allowed,
                "risk_score": result.risk_score,
                "reasons": list(result.reasons),
            },
        )
        record_verification(operation, "allowed" if result.allowed else "denied")
        return result

    def record_sensitive_operation(self, user_id: Any) -> None:
        """Call only after the guarded action completed successfully."""
        now = self._clock()
        try:
            self.store.append_with_ttl(
                recent_sensitive_key(user_id),
                now,
                RECENT_WINDOW_SECONDS,
                prune_before=now - RECENT_WINDOW_SECONDS,
            )
        except StoreUnavailableError as e:
            logger.warning("Could not record sensitive operation for user %s: %s", user_id, e)
