"""Redis adapter for the KVStore contract.

Attempt logs are sorted sets scored by timestamp. The atomic append runs as a
single Lua script (prune, count, conditional ZADD, EXPIRE) so concurrent
callers on any number of processes cannot both read N and both write N+1.
"""

from __future__ import annotations

import logging
import re
import secrets
import time
from contextlib import contextmanager
from typing import List, Optional

import redis

from .errors import StoreUnavailableError
from .kvstore import AppendResult, KVStore, Value, _to_bytes
from .lockdown import StoreCircuitBreaker

logger = logging.getLogger("wallet_guard.redis_store")

_APPEND_LUA = """
local key = KEYS[1]
local score = ARGV[1]
local member = ARGV[2]
local ttl = tonumber(ARGV[3])
local prune_before = ARGV[4]
local max_length = tonumber(ARGV[5])
if prune_before ~= '' then
  redis.call('ZREMRANGEBYSCORE', key, '-inf', prune_before)
end
local appended = 0
if max_length < 0 or redis.call('ZCARD', key) < max_length then
  redis.call('ZADD', key, score, member)
  redis.call('EXPIRE', key, ttl)
  appended = 1
end
return {appended, redis.call('ZRANGE', key, 0, -1, 'WITHSCORES')}
"""

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def _scores(flat: List[bytes]) -> List[float]:
    # ZRANGE WITHSCORES from Lua: [member, score, member, score, ...]
    return sorted(float(flat[i]) for i in range(1, len(flat), 2))


class RedisKVStore(KVStore):
    backend = "redis"

    def __init__(self, client: "redis.Redis", *, breaker: Optional[StoreCircuitBreaker] = None):
        self._client = client
        self.circuit = breaker or StoreCircuitBreaker()
        self._append_script = client.register_script(_APPEND_LUA)

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        timeout_seconds: float = 2.0,
        breaker: Optional[StoreCircuitBreaker] = None,
    ) -> "RedisKVStore":
        client = redis.Redis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client, breaker=breaker)

    @contextmanager
    def _call(self, op_name: str):
        self.circuit.raise_if_open(self.backend)
        start = time.monotonic()
        try:
            yield
        except redis.exceptions.RedisError as e:
            self.circuit.record_failure(e)
            raise StoreUnavailableError("redis store error", backend=self.backend, op=op_name, error=str(e)) from e
        self.circuit.record_success((time.monotonic() - start) * 1000.0)

    def get(self, key: str) -> Optional[bytes]:
        with self._call("get"):
            value = self._client.get(key)
        return value

    def set_with_ttl(self, key: str, value: Value, ttl_seconds: int) -> None:
        with self._call("set"):
            self._client.set(key, _to_bytes(value), ex=max(1, int(ttl_seconds)))

    def set_if_absent(self, key: str, value: Value, ttl_seconds: int) -> bool:
        with self._call("set_nx"):
            written = self._client.set(key, _to_bytes(value), ex=max(1, int(ttl_seconds)), nx=True)
        return bool(written)

    def delete(self, key: str) -> None:
        with self._call("delete"):
            self._client.delete(key)

    def list_keys_by_prefix(self, prefix: str) -> List[str]:
        pattern = _GLOB_SPECIAL.sub(r"\\\1", prefix) + "*"
        with self._call("scan"):
            keys = [k.decode("utf-8") if isinstance(k, bytes) else str(k) for k in self._client.scan_iter(match=pattern)]
        return sorted(keys)

    def append_with_ttl(
        self,
        key: str,
        value: float,
        ttl_seconds: int,
        *,
        prune_before: Optional[float] = None,
        max_length: Optional[int] = None,
    ) -> AppendResult:
        member = f"{float(value)!r}:{secrets.token_hex(4)}"
        args = [
            repr(float(value)),
            member,
            max(1, int(ttl_seconds)),
            "" if prune_before is None else repr(float(prune_before)),
            -1 if max_length is None else int(max_length),
        ]
        with self._call("append"):
            appended, flat = self._append_script(keys=[key], args=args)
        return AppendResult(appended=bool(int(appended)), entries=tuple(_scores(list(flat))))

    def read_log(self, key: str, *, since: Optional[float] = None) -> List[float]:
        low = "-inf" if since is None else f"({float(since)!r}"
        with self._call("read_log"):
            rows = self._client.zrangebyscore(key, low, "+inf", withscores=True)
        return sorted(float(score) for _member, score in rows)

    def ping(self) -> bool:
        try:
            with self._call("ping"):
                return bool(self._client.ping())
        except StoreUnavailableError:
            return False

    def close(self) -> None:
        self._client.close()
