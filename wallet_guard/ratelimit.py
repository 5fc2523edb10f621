"""Sliding-window rate limiting for sensitive operations.

Each (user, operation) pair owns a log of attempt timestamps in the shared
store. A check is one atomic `append_with_ttl` call: stale entries are pruned,
the survivors counted, and `now` is appended only while the count is below the
tier-adjusted limit. Concurrent callers on any number of processes therefore
cannot both observe N and both write N+1.

Failure policy: when the store is unavailable the limiter fails OPEN. The
product stays usable during an outage; operators get one MEDIUM
`RATE_LIMIT_FAIL_OPEN` event per degraded decision.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import WG_E_RATE_LIMITED, StoreUnavailableError
from .events import RATE_LIMIT_EXCEEDED, RATE_LIMIT_FAIL_OPEN, EventEmitter, Severity
from .kvstore import KVStore
from .metrics import record_fail_open, record_rate_limit
from .ops_stats import OPS_STATS
from .policy import PolicyTable, describe_window
from .trust import TrustClassifier, TrustTier, adjusted_limit

logger = logging.getLogger("wallet_guard.ratelimit")

RATE_LIMIT_PREFIX = "security:rate_limit:"
VIOLATIONS_PREFIX = "security:rate_limit_violations:"
OPERATION_VIOLATIONS_PREFIX = "security:operation_violations:"
OPERATION_VIOLATIONS_TTL_SECONDS = 3600


def rate_limit_key(user_id: Any, operation: str) -> str:
    return f"{RATE_LIMIT_PREFIX}{operation}:{user_id}"


def violations_key(user_id: Any) -> str:
    return f"{VIOLATIONS_PREFIX}{user_id}"


def operation_violations_key(user_id: Any, operation: str) -> str:
    # operation first: user ids may contain ':'
    return f"{OPERATION_VIOLATIONS_PREFIX}{operation}:{user_id}"


def format_wait(seconds: float) -> str:
    """Human-readable wait, rounded up: 42 minutes, 1 hour 5 minutes, 30 seconds."""
    s = max(1, int(math.ceil(seconds)))
    if s < 60:
        return f"{s} second" + ("s" if s != 1 else "")
    minutes = int(math.ceil(s / 60))
    if minutes < 60:
        return f"{minutes} minute" + ("s" if minutes != 1 else "")
    hours, rest = divmod(minutes, 60)
    out = f"{hours} hour" + ("s" if hours != 1 else "")
    if rest:
        out += f" {rest} minute" + ("s" if rest != 1 else "")
    return out


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    operation: str
    evaluated_at: float
    tier: Optional[TrustTier] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[float] = None
    window_seconds: Optional[int] = None
    description: str = ""
    degraded: bool = False

    @property
    def code(self) -> Optional[str]:
        return None if self.allowed else WG_E_RATE_LIMITED

    @property
    def retry_after_seconds(self) -> float:
        if self.reset_at is None:
            return 0.0
        return max(0.0, self.reset_at - self.evaluated_at)

    def user_message(self) -> str:
        if self.allowed:
            return ""
        what = self.description or self.operation
        wait = format_wait(self.retry_after_seconds)
        window = describe_window(int(self.window_seconds or 0))
        return f"Rate limit exceeded for {what}. Try again in {wait} (limit: {self.limit} per {window})."

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "operation": self.operation,
            "tier": self.tier.value if self.tier is not None else None,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
            "window_seconds": self.window_seconds,
            "degraded": self.degraded,
            "code": self.code,
        }


class SlidingWindowRateLimiter:
    """Per-(user, operation) sliding-window limiter with trust-tiered limits."""

    def __init__(
        self,
        store: KVStore,
        classifier: TrustClassifier,
        *,
        policies: Optional[PolicyTable] = None,
        events: Optional[EventEmitter] = None,
        violation_ttl_seconds: int = 3600,
        clock=time.time,
    ):
        self.store = store
        self.classifier = classifier
        self.policies = policies or PolicyTable()
        self.events = events or EventEmitter()
        self.violation_ttl_seconds = int(violation_ttl_seconds)
        self._clock = clock

    def check_and_record(self, user_id: Any, operation: str) -> RateLimitDecision:
        now = self._clock()
        policy = self.policies.get(operation)
        if policy is None:
            logger.info("No rate limit policy for operation %s; allowing", operation)
            return RateLimitDecision(allowed=True, operation=operation, evaluated_at=now)

        tier = self.classifier.classify(user_id)
        limit = adjusted_limit(policy.base_limit, tier)
        window = policy.window_seconds

        try:
            result = self.store.append_with_ttl(
                rate_limit_key(user_id, operation),
                now,
                window,
                prune_before=now - window,
                max_length=limit,
            )
        except StoreUnavailableError as e:
            return self._fail_open(user_id, operation, tier, limit, window, policy.description, now, e)

        if not result.appended:
            reset_at = min(result.entries) + window
            decision = RateLimitDecision(
                allowed=False,
                operation=operation,
                evaluated_at=now,
                tier=tier,
                limit=limit,
                remaining=0,
                reset_at=reset_at,
                window_seconds=window,
                description=policy.description,
            )
            self._record_violation(user_id, operation, now)
            self.events.emit(
                RATE_LIMIT_EXCEEDED,
                user_id,
                Severity.HIGH,
                {
                    "operation": operation,
                    "limit": limit,
                    "tier": tier.value,
                    "window_seconds": window,
                    "reset_at": reset_at,
                },
            )
            record_rate_limit(operation, "denied", tier.value)
            OPS_STATS.record_blocked(operation)
            return decision

        record_rate_limit(operation, "allowed", tier.value)
        return RateLimitDecision(
            allowed=True,
            operation=operation,
            evaluated_at=now,
            tier=tier,
            limit=limit,
            remaining=max(0, limit - result.length),
            reset_at=min(result.entries) + window,
            window_seconds=window,
            description=policy.description,
        )

    def _fail_open(
        self,
        user_id: Any,
        operation: str,
        tier: TrustTier,
        limit: int,
        window: int,
        description: str,
        now: float,
        error: StoreUnavailableError,
    ) -> RateLimitDecision:
        self.events.emit(
            RATE_LIMIT_FAIL_OPEN,
            user_id,
            Severity.MEDIUM,
            {"operation": operation, "error": error.code, "backend": error.details.get("backend")},
        )
        record_fail_open()
        record_rate_limit(operation, "fail_open", tier.value)
        OPS_STATS.record_fail_open()
        return RateLimitDecision(
            allowed=True,
            operation=operation,
            evaluated_at=now,
            tier=tier,
            limit=limit,
            window_seconds=window,
            description=description,
            degraded=True,
        )

    def _record_violation(self, user_id: Any, operation: str, now: float) -> None:
        """Log the denial twice: per user, and per (operation, user) for pattern scans."""
        ttl = self.violation_ttl_seconds
        op_ttl = OPERATION_VIOLATIONS_TTL_SECONDS
        try:
            self.store.append_with_ttl(violations_key(user_id), now, ttl, prune_before=now - ttl)
            self.store.append_with_ttl(
                operation_violations_key(user_id, operation), now, op_ttl, prune_before=now - op_ttl
            )
        except StoreUnavailableError as e:
            logger.warning("Could not record rate limit violation for user %s: %s", user_id, e)

    # ---------------------------
    # Admin helpers
    # ---------------------------

    def status(self, user_id: Any, operation: str) -> RateLimitDecision:
        """Read-only view of the current window. Store errors propagate."""
        now = self._clock()
        policy = self.policies.get(operation)
        if policy is None:
            return RateLimitDecision(allowed=True, operation=operation, evaluated_at=now)
        tier = self.classifier.classify(user_id)
        limit = adjusted_limit(policy.base_limit, tier)
        window = policy.window_seconds
        entries = self.store.read_log(rate_limit_key(user_id, operation), since=now - window)
        allowed = len(entries) < limit
        return RateLimitDecision(
            allowed=allowed,
            operation=operation,
            evaluated_at=now,
            tier=tier,
            limit=limit,
            remaining=max(0, limit - len(entries)),
            reset_at=(min(entries) + window) if entries else None,
            window_seconds=window,
            description=policy.description,
        )

    def reset(self, user_id: Any, operation: str) -> None:
        """Administrative reset of one (user, operation) window."""
        self.store.delete(rate_limit_key(user_id, operation))
        logger.info("Rate limit reset for user %s operation %s", user_id, operation)
