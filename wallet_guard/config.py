"""Process configuration for Wallet Guard.

All settings come from environment variables with clamped defaults. See
`SecurityConfig.from_env` for the full list.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from .policy import PolicyTable

MIN_KDF_ROUNDS = 100_000
DEFAULT_SALT_DOMAIN = "wallet-guard-security-v3"


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except (TypeError, ValueError):
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)).strip())
    except (TypeError, ValueError):
        return default


def _get_bool(name: str, default: bool = False) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class MonitorThreshold:
    """Alert threshold for one monitored signal: `count` entries within `window_seconds`."""

    count: int
    window_seconds: int


@dataclass(frozen=True)
class MonitorConfig:
    interval_seconds: float = 60.0
    emergency_ttl_seconds: int = 1800
    failed_attempts: MonitorThreshold = MonitorThreshold(count=5, window_seconds=900)
    rate_limit_violations: MonitorThreshold = MonitorThreshold(count=3, window_seconds=1800)
    integrity_failures: MonitorThreshold = MonitorThreshold(count=3, window_seconds=3600)
    mass_attack_users: int = 10
    alert_ttl_seconds: int = 7 * 86400

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        interval = _get_float("WG_MONITOR_INTERVAL_SECONDS", cls.interval_seconds)
        ttl = _get_int("WG_EMERGENCY_TTL_SECONDS", cls.emergency_ttl_seconds)
        mass = _get_int("WG_MASS_ATTACK_USERS", cls.mass_attack_users)
        return cls(
            interval_seconds=max(1.0, interval),
            emergency_ttl_seconds=max(1, ttl),
            mass_attack_users=max(1, mass),
        )


@dataclass(frozen=True)
class StoreConfig:
    """Backing store settings.

    Environment variables:
    - WG_STORE_URL: memory:// (default), sqlite:///path/to.db, redis://host:port/db
    - WG_STORE_TIMEOUT_SECONDS: per-call timeout.
    - WG_STORE_FAILURE_THRESHOLD: consecutive failures before the breaker opens.
    - WG_STORE_COOLDOWN_SECONDS: how long the breaker stays open.
    """

    url: str = "memory://"
    timeout_seconds: float = 2.0
    failure_threshold: int = 3
    cooldown_seconds: int = 10

    @classmethod
    def from_env(cls) -> "StoreConfig":
        url = (os.getenv("WG_STORE_URL", cls.url) or cls.url).strip()
        timeout = _get_float("WG_STORE_TIMEOUT_SECONDS", cls.timeout_seconds)
        failures = _get_int("WG_STORE_FAILURE_THRESHOLD", cls.failure_threshold)
        cooldown = _get_int("WG_STORE_COOLDOWN_SECONDS", cls.cooldown_seconds)
        if timeout <= 0:
            timeout = 0.01
        return cls(
            url=url,
            timeout_seconds=timeout,
            failure_threshold=max(1, failures),
            cooldown_seconds=max(1, cooldown),
        )


@dataclass(frozen=True)
class SecurityConfig:
    """Top-level configuration.

    Environment variables:
    - WG_MASTER_KEY (alias ENCRYPTION_KEY): master key for per-user key derivation.
    - WG_REQUIRE_MASTER_KEY: if '1', refuse to start without a master key.
    - WG_KDF_ROUNDS: PBKDF2 rounds (never below 100000).
    - WG_SALT_DOMAIN: domain string for the per-user salt KDF.
    - WG_DIRECTORY_TIMEOUT_SECONDS: user directory lookup timeout.
    - WG_SERVICE_TIMEZONE: IANA timezone used by the unusual-hour heuristic.
    - WG_AUDIT_LOG_PATH: if set, security events are also written to a
      tamper-evident JSONL log.
    """

    master_key: Optional[str] = field(default=None, repr=False)
    require_master_key: bool = False
    kdf_rounds: int = MIN_KDF_ROUNDS
    salt_domain: str = DEFAULT_SALT_DOMAIN
    directory_timeout_seconds: float = 2.0
    service_timezone: str = "UTC"
    audit_log_path: Optional[str] = None
    store: StoreConfig = field(default_factory=StoreConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    policies: PolicyTable = field(default_factory=PolicyTable)

    @classmethod
    def from_env(cls) -> "SecurityConfig":
        master_key = (os.getenv("WG_MASTER_KEY") or os.getenv("ENCRYPTION_KEY") or "").strip() or None
        rounds = _get_int("WG_KDF_ROUNDS", MIN_KDF_ROUNDS)
        dir_timeout = _get_float("WG_DIRECTORY_TIMEOUT_SECONDS", cls.directory_timeout_seconds)
        return cls(
            master_key=master_key,
            require_master_key=_get_bool("WG_REQUIRE_MASTER_KEY"),
            kdf_rounds=max(MIN_KDF_ROUNDS, rounds),
            salt_domain=(os.getenv("WG_SALT_DOMAIN") or DEFAULT_SALT_DOMAIN).strip(),
            directory_timeout_seconds=dir_timeout if dir_timeout > 0 else 0.01,
            service_timezone=(os.getenv("WG_SERVICE_TIMEZONE") or "UTC").strip(),
            audit_log_path=(os.getenv("WG_AUDIT_LOG_PATH") or "").strip() or None,
            store=StoreConfig.from_env(),
            monitor=MonitorConfig.from_env(),
            policies=PolicyTable.from_env(),
        )
