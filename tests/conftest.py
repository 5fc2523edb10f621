from datetime import datetime, timedelta, timezone

import pytest

from wallet_guard.errors import StoreUnavailableError
from wallet_guard.events import EventEmitter, MemoryEventSink
from wallet_guard.kvstore import MemoryKVStore
from wallet_guard.ratelimit import SlidingWindowRateLimiter
from wallet_guard.trust import StaticUserDirectory, TrustClassifier

# 2024-05-01 12:00:00 UTC, well outside the unusual-hour range
NOON_UTC = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    def __init__(self, start: float = NOON_UTC):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def set(self, ts: float) -> None:
        self.now = float(ts)


class BrokenStore(MemoryKVStore):
    """Memory store whose selected operations raise StoreUnavailableError."""

    def __init__(
        self,
        clock,
        fail=("append_with_ttl", "read_log", "get", "set_with_ttl", "set_if_absent", "delete", "list_keys_by_prefix"),
    ):
        super().__init__(clock=clock)
        self.fail = set(fail)
        self.calls = 0

    def _maybe_fail(self, op):
        if op in self.fail:
            self.calls += 1
            raise StoreUnavailableError("simulated outage", backend="memory", op=op)

    def get(self, key):
        self._maybe_fail("get")
        return super().get(key)

    def set_with_ttl(self, key, value, ttl_seconds):
        self._maybe_fail("set_with_ttl")
        return super().set_with_ttl(key, value, ttl_seconds)

    def set_if_absent(self, key, value, ttl_seconds):
        self._maybe_fail("set_if_absent")
        return super().set_if_absent(key, value, ttl_seconds)

    def delete(self, key):
        self._maybe_fail("delete")
        return super().delete(key)

    def list_keys_by_prefix(self, prefix):
        self._maybe_fail("list_keys_by_prefix")
        return super().list_keys_by_prefix(prefix)

    def append_with_ttl(self, key, value, ttl_seconds, *, prune_before=None, max_length=None):
        self._maybe_fail("append_with_ttl")
        return super().append_with_ttl(key, value, ttl_seconds, prune_before=prune_before, max_length=max_length)

    def read_log(self, key, *, since=None):
        self._maybe_fail("read_log")
        return super().read_log(key, since=since)


def _ago(clock: FakeClock, days: float) -> datetime:
    return datetime.fromtimestamp(clock(), tz=timezone.utc) - timedelta(days=days)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return MemoryEventSink()


@pytest.fixture
def events(sink, clock):
    return EventEmitter(sink, clock=clock)


@pytest.fixture
def store(clock):
    return MemoryKVStore(clock=clock)


@pytest.fixture
def directory(clock):
    d = StaticUserDirectory()
    d.add_user("vip_user", _ago(clock, 40), 150)
    d.add_user("trusted_user", _ago(clock, 20), 30)
    d.add_user("regular_user", _ago(clock, 5), 10)
    d.add_user("new_user", _ago(clock, 1), 0)
    return d


@pytest.fixture
def classifier(directory, events, clock):
    c = TrustClassifier(directory, events=events, clock=clock, timeout_seconds=2.0)
    yield c
    c.close()


@pytest.fixture
def limiter(store, classifier, events, clock):
    return SlidingWindowRateLimiter(store, classifier, events=events, clock=clock)
