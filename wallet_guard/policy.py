"""Static per-operation rate-limit policy table.

Each sensitive operation has a base limit and a sliding window. Limits are
scaled per user by the trust tier multiplier (see `wallet_guard.trust`).

Overrides:
- WG_OPERATION_POLICIES_JSON: JSON object mapping operation -> compact spec
  such as "3/h", "2/d" or "10/10m".
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

logger = logging.getLogger("wallet_guard.policy")

HOUR = 3600
DAY = 86400

ENV_OPERATION_POLICIES_JSON = "WG_OPERATION_POLICIES_JSON"


@dataclass(frozen=True)
class OperationPolicy:
    operation: str
    base_limit: int
    window_seconds: int
    description: str = ""

    def __post_init__(self) -> None:
        if self.base_limit <= 0 or self.window_seconds <= 0:
            raise ValueError("base_limit and window_seconds must be positive")


DEFAULT_POLICIES: Dict[str, OperationPolicy] = {
    p.operation: p
    for p in (
        OperationPolicy("export_private_key", 3, HOUR, "Private key export"),
        OperationPolicy("reveal_mnemonic", 2, HOUR, "Mnemonic reveal"),
        OperationPolicy("private_key_reveal", 5, HOUR, "Private key reveal"),
        OperationPolicy("import_wallet", 5, HOUR, "Wallet import"),
        OperationPolicy("wallet_delete", 2, DAY, "Wallet deletion"),
        OperationPolicy("change_settings", 10, 600, "Settings modification"),
        OperationPolicy("large_transaction", 20, HOUR, "Large transaction"),
    )
}

_UNITS = {
    "s": 1, "sec": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "minute": 60, "minutes": 60,
    "h": HOUR, "hr": HOUR, "hour": HOUR, "hours": HOUR,
    "d": DAY, "day": DAY, "days": DAY,
}


def parse_policy_spec(spec: str) -> Tuple[int, int]:
    """Parse a compact policy spec like '3/h' or '10/10m'.

    Returns (base_limit, window_seconds).
    """
    s = (spec or "").strip().lower()
    if not s:
        raise ValueError("empty policy spec")
    if "/" not in s:
        raise ValueError("invalid policy spec; expected like '3/h' or '10/10m'")
    num_str, window = s.split("/", 1)
    limit = int(num_str)
    if limit <= 0:
        raise ValueError("limit must be positive")
    window = window.strip()
    digits = ""
    while window and window[0].isdigit():
        digits += window[0]
        window = window[1:]
    count = int(digits) if digits else 1
    unit = window.strip()
    if unit not in _UNITS:
        raise ValueError(f"unsupported window unit: {unit}")
    if count <= 0:
        raise ValueError("window must be positive")
    return limit, count * _UNITS[unit]


def describe_window(window_seconds: int) -> str:
    """Human-readable window, e.g. 3600 -> '1 hour', 600 -> '10 minutes'."""
    for size, name in ((DAY, "day"), (HOUR, "hour"), (60, "minute")):
        if window_seconds >= size and window_seconds % size == 0:
            n = window_seconds // size
            return f"{n} {name}" + ("s" if n != 1 else "")
    return f"{window_seconds} seconds"


class PolicyTable:
    """Lookup table of operation policies."""

    def __init__(self, policies: Optional[Mapping[str, OperationPolicy]] = None):
        self._policies: Dict[str, OperationPolicy] = dict(policies if policies is not None else DEFAULT_POLICIES)

    def get(self, operation: str) -> Optional[OperationPolicy]:
        return self._policies.get(operation)

    def operations(self) -> list[str]:
        return sorted(self._policies)

    @classmethod
    def from_env(cls) -> "PolicyTable":
        policies = dict(DEFAULT_POLICIES)
        raw = os.getenv(ENV_OPERATION_POLICIES_JSON, "").strip()
        if not raw:
            return cls(policies)
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError(f"{ENV_OPERATION_POLICIES_JSON} must be a JSON object")
            for op, spec in data.items():
                limit, window = parse_policy_spec(str(spec))
                existing = policies.get(str(op))
                policies[str(op)] = OperationPolicy(
                    operation=str(op),
                    base_limit=limit,
                    window_seconds=window,
                    description=existing.description if existing else str(op),
                )
        except (ValueError, TypeError) as e:
            logger.warning("Invalid %s (%s); using default policies", ENV_OPERATION_POLICIES_JSON, e)
            return cls(DEFAULT_POLICIES)
        return cls(policies)
