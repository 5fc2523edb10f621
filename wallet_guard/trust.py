"""Trust tiers derived from account age and transaction history.

Tiers are computed on demand and never persisted. A lookup that fails, times
out or finds no profile classifies as `regular`; rate limiting must keep
working when the user directory does not.
"""

from __future__ import annotations

import abc
import concurrent.futures
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .events import TRUST_LOOKUP_FAILED, EventEmitter, Severity

logger = logging.getLogger("wallet_guard.trust")

DAY_SECONDS = 86400


class TrustTier(str, Enum):
    NEW = "new"
    REGULAR = "regular"
    TRUSTED = "trusted"
    VIP = "vip"


TIER_MULTIPLIERS: Dict[TrustTier, float] = {
    TrustTier.NEW: 0.5,
    TrustTier.REGULAR: 1.0,
    TrustTier.TRUSTED: 1.5,
    TrustTier.VIP: 2.0,
}

# (tier, min account age in days, min transaction count), checked top-down
TIER_RULES: Tuple[Tuple[TrustTier, int, int], ...] = (
    (TrustTier.VIP, 30, 100),
    (TrustTier.TRUSTED, 14, 20),
    (TrustTier.REGULAR, 3, 5),
)

DEFAULT_TIER = TrustTier.REGULAR


def adjusted_limit(base_limit: int, tier: Union[TrustTier, str]) -> int:
    """Scale a base limit by the tier multiplier, rounding up."""
    return int(math.ceil(int(base_limit) * TIER_MULTIPLIERS[TrustTier(tier)]))


def tier_for(account_age_days: float, transaction_count: int) -> TrustTier:
    for tier, min_age, min_tx in TIER_RULES:
        if account_age_days >= min_age and transaction_count >= min_tx:
            return tier
    return TrustTier.NEW


@dataclass(frozen=True)
class UserProfile:
    created_at: datetime


class UserDirectory(abc.ABC):
    """Read-only view of the account database."""

    @abc.abstractmethod
    def get_profile(self, user_id: Any) -> Optional[UserProfile]:
        raise NotImplementedError

    @abc.abstractmethod
    def get_transaction_count(self, user_id: Any) -> int:
        raise NotImplementedError


class StaticUserDirectory(UserDirectory):
    """In-memory directory keyed by str(user_id)."""

    def __init__(
        self,
        profiles: Optional[Mapping[Any, UserProfile]] = None,
        transaction_counts: Optional[Mapping[Any, int]] = None,
    ):
        self._profiles = {str(k): v for k, v in (profiles or {}).items()}
        self._tx = {str(k): int(v) for k, v in (transaction_counts or {}).items()}

    def add_user(self, user_id: Any, created_at: datetime, transaction_count: int = 0) -> None:
        self._profiles[str(user_id)] = UserProfile(created_at=created_at)
        self._tx[str(user_id)] = int(transaction_count)

    def get_profile(self, user_id: Any) -> Optional[UserProfile]:
        return self._profiles.get(str(user_id))

    def get_transaction_count(self, user_id: Any) -> int:
        return self._tx.get(str(user_id), 0)


class TrustClassifier:
    """Maps a user to a TrustTier using a UserDirectory, with a per-call timeout."""

    def __init__(
        self,
        directory: UserDirectory,
        *,
        events: Optional[EventEmitter] = None,
        timeout_seconds: float = 2.0,
        clock=time.time,
        max_workers: int = 4,
    ):
        self.directory = directory
        self.events = events or EventEmitter()
        self.timeout_seconds = float(timeout_seconds)
        self._clock = clock
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)),
            thread_name_prefix="wg-trust",
        )

    def _lookup(self, user_id: Any) -> Optional[TrustTier]:
        """Directory reads and tier evaluation; None when there is no profile."""
        profile = self.directory.get_profile(user_id)
        if profile is None:
            return None
        tx_count = int(self.directory.get_transaction_count(user_id))
        age_days = (self._clock() - profile.created_at.timestamp()) / DAY_SECONDS
        return tier_for(age_days, tx_count)

    def classify(self, user_id: Any) -> TrustTier:
        future = self._pool.submit(self._lookup, user_id)
        try:
            tier = future.result(timeout=self.timeout_seconds)
        except concurrent.futures.TimeoutError:
            future.cancel()
            return self._fallback(user_id, "timeout")
        except Exception as e:
            return self._fallback(user_id, "error", error=type(e).__name__)

        if tier is None:
            return self._fallback(user_id, "missing_profile")
        return tier

    def _fallback(self, user_id: Any, reason: str, **extra: Any) -> TrustTier:
        logger.warning("Trust lookup failed for user %s (%s); using tier %s", user_id, reason, DEFAULT_TIER.value)
        self.events.emit(
            TRUST_LOOKUP_FAILED,
            user_id,
            Severity.LOW,
            {"reason": reason, "tier": DEFAULT_TIER.value, **extra},
        )
        return DEFAULT_TIER

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
