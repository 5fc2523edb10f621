"""Key/value store contract and the bundled adapters.

The security components only ever talk to a `KVStore`. Each backend gets one
adapter implementing the whole contract; there is no per-call capability
detection.

Contract
--------
- get(key) -> bytes | None
- set_with_ttl(key, value, ttl_seconds)
- set_if_absent(key, value, ttl_seconds) -> bool
  Atomic: writes only when no live value exists. True when written.
- delete(key)
- list_keys_by_prefix(prefix) -> [key]
- append_with_ttl(key, value, ttl_seconds, prune_before=, max_length=) -> AppendResult
  Atomic: prune, count, conditionally append and refresh the TTL in one step.
  This is what closes the read-then-write race in the rate limiter.
- read_log(key, since=) -> [float]

Every failure (including timeouts) surfaces as `StoreUnavailableError`.

Adapters
--------
- MemoryKVStore: process-local and best-effort. It is weaker than a shared
  store: limits are enforced per process, not per cluster.
- SQLiteKVStore: single-host durable store, atomic via BEGIN IMMEDIATE.
- RedisKVStore (wallet_guard.redis_store): shared store, atomic via Lua.
"""

from __future__ import annotations

import abc
import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from .config import StoreConfig
from .errors import ConfigurationError, StoreUnavailableError
from .lockdown import BreakerConfig, StoreCircuitBreaker

logger = logging.getLogger("wallet_guard.kvstore")

Value = Union[bytes, str, int, float]


def _to_bytes(value: Value) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


@dataclass(frozen=True)
class AppendResult:
    """Outcome of an atomic append.

    appended: False when `max_length` was already reached (nothing written).
    entries: surviving log entries after pruning (and after the append), oldest first.
    """

    appended: bool
    entries: Tuple[float, ...]

    @property
    def length(self) -> int:
        return len(self.entries)


def _prune_and_append(
    entries: List[float],
    value: float,
    prune_before: Optional[float],
    max_length: Optional[int],
) -> Tuple[bool, List[float]]:
    if prune_before is not None:
        entries = [e for e in entries if e > prune_before]
    entries.sort()
    if max_length is not None and len(entries) >= max_length:
        return False, entries
    entries.append(float(value))
    entries.sort()
    return True, entries


class KVStore(abc.ABC):
    """Capability contract a backing store must offer."""

    backend = "abstract"

    @abc.abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    @abc.abstractmethod
    def set_with_ttl(self, key: str, value: Value, ttl_seconds: int) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def set_if_absent(self, key: str, value: Value, ttl_seconds: int) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def list_keys_by_prefix(self, prefix: str) -> List[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def append_with_ttl(
        self,
        key: str,
        value: float,
        ttl_seconds: int,
        *,
        prune_before: Optional[float] = None,
        max_length: Optional[int] = None,
    ) -> AppendResult:
        raise NotImplementedError

    @abc.abstractmethod
    def read_log(self, key: str, *, since: Optional[float] = None) -> List[float]:
        raise NotImplementedError

    def ping(self) -> bool:
        try:
            self.get("__wg_ping__")
            return True
        except StoreUnavailableError:
            return False

    def close(self) -> None:
        pass


class MemoryKVStore(KVStore):
    """Process-local store. Thread-safe, TTLs evaluated lazily on access."""

    backend = "memory"

    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (value, expires_at); value is bytes or a list of floats (logs)
        self._data: Dict[str, Tuple[Union[bytes, List[float]], float]] = {}

    def _live(self, key: str, now: float):
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= now:
            del self._data[key]
            return None
        return value

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            value = self._live(key, self._clock())
        if value is None:
            return None
        if isinstance(value, list):
            return json.dumps(value).encode("utf-8")
        return value

    def set_with_ttl(self, key: str, value: Value, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (_to_bytes(value), self._clock() + max(1, int(ttl_seconds)))

    def set_if_absent(self, key: str, value: Value, ttl_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            if self._live(key, now) is not None:
                return False
            self._data[key] = (_to_bytes(value), now + max(1, int(ttl_seconds)))
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list_keys_by_prefix(self, prefix: str) -> List[str]:
        now = self._clock()
        with self._lock:
            keys = [k for k in list(self._data) if k.startswith(prefix)]
            return sorted(k for k in keys if self._live(k, now) is not None)

    def append_with_ttl(
        self,
        key: str,
        value: float,
        ttl_seconds: int,
        *,
        prune_before: Optional[float] = None,
        max_length: Optional[int] = None,
    ) -> AppendResult:
        with self._lock:
            now = self._clock()
            current = self._live(key, now)
            entries = list(current) if isinstance(current, list) else []
            appended, entries = _prune_and_append(entries, value, prune_before, max_length)
            if appended:
                self._data[key] = (entries, now + max(1, int(ttl_seconds)))
            elif current is not None:
                self._data[key] = (entries, self._data[key][1])
            return AppendResult(appended=appended, entries=tuple(entries))

    def read_log(self, key: str, *, since: Optional[float] = None) -> List[float]:
        with self._lock:
            current = self._live(key, self._clock())
        if not isinstance(current, list):
            return []
        if since is None:
            return sorted(current)
        return sorted(e for e in current if e > since)


class SQLiteKVStore(KVStore):
    """SQLite-backed store. Atomic appends use an IMMEDIATE transaction."""

    backend = "sqlite"

    def __init__(
        self,
        db_path: str,
        *,
        timeout_seconds: float = 2.0,
        breaker: Optional[StoreCircuitBreaker] = None,
        clock=time.time,
    ):
        self.db_path = db_path
        self.timeout_seconds = float(timeout_seconds)
        self.circuit = breaker or StoreCircuitBreaker()
        self._clock = clock
        self._init_db()

    @contextmanager
    def _db(self, immediate: bool = False):
        """Connection wrapper: breaker check, timeout, error translation.

        immediate=True takes the write lock before the first read, so a
        read-modify-write inside the block is atomic across connections.
        """
        self.circuit.raise_if_open(self.backend)
        start = time.monotonic()
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout_seconds, isolation_level=None)
            try:
                with conn:
                    if immediate:
                        conn.execute("BEGIN IMMEDIATE")
                    yield conn
            finally:
                conn.close()
        except sqlite3.Error as e:
            self.circuit.record_failure(e)
            raise StoreUnavailableError("sqlite store error", backend=self.backend, error=str(e)) from e
        self.circuit.record_success((time.monotonic() - start) * 1000.0)

    def _init_db(self) -> None:
        with self._db() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL,
                    expires_at REAL NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS kv_expires ON kv (expires_at)")

    def _select_live(self, conn: sqlite3.Connection, key: str, now: float) -> Optional[bytes]:
        row = conn.execute("SELECT value, expires_at FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        if float(row[1]) <= now:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            return None
        return bytes(row[0])

    def get(self, key: str) -> Optional[bytes]:
        with self._db() as conn:
            return self._select_live(conn, key, self._clock())

    def set_with_ttl(self, key: str, value: Value, ttl_seconds: int) -> None:
        expires_at = self._clock() + max(1, int(ttl_seconds))
        with self._db() as conn:
            conn.execute(
                "INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at",
                (key, _to_bytes(value), expires_at),
            )

    def set_if_absent(self, key: str, value: Value, ttl_seconds: int) -> bool:
        with self._db(immediate=True) as conn:
            now = self._clock()
            written = self._select_live(conn, key, now) is None
            if written:
                conn.execute(
                    "INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, _to_bytes(value), now + max(1, int(ttl_seconds))),
                )
        return written

    def delete(self, key: str) -> None:
        with self._db() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def list_keys_by_prefix(self, prefix: str) -> List[str]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? AND expires_at > ? ORDER BY key",
                (len(prefix), prefix, self._clock()),
            ).fetchall()
        return [str(r[0]) for r in rows]

    def append_with_ttl(
        self,
        key: str,
        value: float,
        ttl_seconds: int,
        *,
        prune_before: Optional[float] = None,
        max_length: Optional[int] = None,
    ) -> AppendResult:
        # Do not return from inside the transaction so the commit completes first.
        with self._db(immediate=True) as conn:
            now = self._clock()
            raw = self._select_live(conn, key, now)
            entries = _decode_log(raw)
            appended, entries = _prune_and_append(entries, value, prune_before, max_length)
            if appended:
                conn.execute(
                    "INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at",
                    (key, json.dumps(entries).encode("utf-8"), now + max(1, int(ttl_seconds))),
                )
            elif raw is not None:
                conn.execute(
                    "UPDATE kv SET value = ? WHERE key = ?",
                    (json.dumps(entries).encode("utf-8"), key),
                )
        return AppendResult(appended=appended, entries=tuple(entries))

    def read_log(self, key: str, *, since: Optional[float] = None) -> List[float]:
        entries = _decode_log(self.get(key))
        if since is not None:
            entries = [e for e in entries if e > since]
        return sorted(entries)


def _decode_log(raw: Optional[bytes]) -> List[float]:
    if not raw:
        return []
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Discarding corrupt log entry list")
        return []
    if not isinstance(data, list):
        return []
    return [float(x) for x in data if isinstance(x, (int, float))]


def build_store(config: Optional[StoreConfig] = None) -> KVStore:
    """Create the single adapter matching `config.url`."""
    cfg = config or StoreConfig.from_env()
    url = cfg.url.strip()
    breaker = StoreCircuitBreaker(BreakerConfig.from_store_config(cfg))

    if url in ("", "memory://", "memory"):
        logger.warning(
            "Using in-process memory store: rate limits and emergency mode are per-process, "
            "not shared across instances, and reset on restart. Set WG_STORE_URL for production."
        )
        return MemoryKVStore()
    if url.startswith("sqlite:///"):
        return SQLiteKVStore(url[len("sqlite:///"):], timeout_seconds=cfg.timeout_seconds, breaker=breaker)
    if url.startswith("redis://") or url.startswith("rediss://"):
        from .redis_store import RedisKVStore

        return RedisKVStore.from_url(url, timeout_seconds=cfg.timeout_seconds, breaker=breaker)
    raise ConfigurationError("unsupported store url", url=url)
