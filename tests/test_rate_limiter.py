import logging
import threading

import pytest

from conftest import BrokenStore
from wallet_guard.events import (
    RATE_LIMIT_EXCEEDED,
    RATE_LIMIT_FAIL_OPEN,
    EventEmitter,
    FanoutEventSink,
    LoggingEventSink,
    Severity,
)
from wallet_guard.kvstore import SQLiteKVStore
from wallet_guard.policy import OperationPolicy, PolicyTable
from wallet_guard.ratelimit import (
    SlidingWindowRateLimiter,
    format_wait,
    operation_violations_key,
    rate_limit_key,
    violations_key,
)
from wallet_guard.trust import TrustTier

OP = "export_private_key"


def test_boundary_regular_tier(limiter, clock, sink):
    remaining = []
    for _ in range(3):
        d = limiter.check_and_record("regular_user", OP)
        assert d.allowed
        assert d.tier is TrustTier.REGULAR
        assert d.limit == 3
        remaining.append(d.remaining)
        clock.advance(60)
    assert remaining == [2, 1, 0]

    denied = limiter.check_and_record("regular_user", OP)
    assert not denied.allowed
    assert denied.remaining == 0
    assert denied.reset_at > clock()
    assert denied.code == "WG_E_RATE_LIMITED"

    (event,) = sink.of_type(RATE_LIMIT_EXCEEDED)
    assert event.severity is Severity.HIGH
    assert event.metadata["limit"] == 3


def test_denied_message_reports_wait_and_adjusted_limit(limiter, clock):
    start = clock()
    for _ in range(6):
        limiter.check_and_record("vip_user", OP)
        clock.advance(60)
    clock.set(start + 18 * 60)
    denied = limiter.check_and_record("vip_user", OP)

    assert not denied.allowed
    assert denied.reset_at == start + 3600
    msg = denied.user_message()
    assert "Try again in 42 minutes" in msg
    assert "limit: 6 per 1 hour" in msg


def test_vip_scenario_seventh_call_denied(limiter, clock):
    results = []
    for _ in range(7):
        results.append(limiter.check_and_record("vip_user", OP))
        clock.advance(1)
    assert [r.allowed for r in results] == [True] * 6 + [False]
    assert results[0].limit == 6


def test_new_tier_gets_half_limit(limiter):
    allowed = [limiter.check_and_record("new_user", OP).allowed for _ in range(3)]
    assert allowed == [True, True, False]


def test_window_slides(limiter, clock):
    start = clock()
    for _ in range(3):
        limiter.check_and_record("regular_user", OP)
    assert not limiter.check_and_record("regular_user", OP).allowed

    clock.set(start + 3600)
    d = limiter.check_and_record("regular_user", OP)
    assert d.allowed
    assert d.remaining == 2


def test_no_stuck_timer(limiter, clock):
    for i in range(40):
        d = limiter.check_and_record("regular_user", OP)
        if not d.allowed:
            assert d.reset_at > d.evaluated_at
            assert d.evaluated_at == clock()
        clock.advance(97 + i)


def test_unknown_operation_is_allowed(limiter, store):
    d = limiter.check_and_record("regular_user", "read_balance")
    assert d.allowed
    assert d.limit is None
    assert store.list_keys_by_prefix("security:") == []


def test_denial_records_violation(limiter, store, clock):
    for _ in range(4):
        limiter.check_and_record("regular_user", OP)
    assert len(store.read_log(violations_key("regular_user"))) == 1
    assert len(store.read_log(operation_violations_key("regular_user", OP))) == 1
    assert store.read_log(operation_violations_key("regular_user", "reveal_mnemonic")) == []


def test_operation_violation_key_keeps_colons_in_user_id():
    assert operation_violations_key("tg:42", OP) == f"security:operation_violations:{OP}:tg:42"


def test_fail_open_emits_exactly_one_warning(classifier, clock, sink, caplog):
    broken = BrokenStore(clock)
    emitter = EventEmitter(FanoutEventSink([LoggingEventSink(), sink]), clock=clock)
    limiter = SlidingWindowRateLimiter(broken, classifier, events=emitter, clock=clock)

    with caplog.at_level(logging.INFO, logger="wallet_guard.security"):
        d = limiter.check_and_record("regular_user", OP)

    assert d.allowed
    assert d.degraded
    assert len(sink.events) == 1
    assert sink.events[0].type == RATE_LIMIT_FAIL_OPEN
    assert sink.events[0].severity is Severity.MEDIUM
    warnings = [r for r in caplog.records if r.name == "wallet_guard.security" and r.levelno == logging.WARNING]
    assert len(warnings) == 1


def test_status_and_reset(limiter):
    for _ in range(3):
        limiter.check_and_record("regular_user", OP)
    status = limiter.status("regular_user", OP)
    assert status.allowed is False
    assert status.remaining == 0

    limiter.reset("regular_user", OP)
    status = limiter.status("regular_user", OP)
    assert status.allowed is True
    assert status.remaining == 3
    assert status.reset_at is None


def test_status_does_not_record(limiter, store):
    limiter.status("regular_user", OP)
    assert store.read_log(rate_limit_key("regular_user", OP)) == []


def test_policy_override(store, classifier, events, clock):
    policies = PolicyTable({"withdraw": OperationPolicy("withdraw", 1, 600, "Withdrawal")})
    limiter = SlidingWindowRateLimiter(store, classifier, policies=policies, events=events, clock=clock)
    assert limiter.check_and_record("regular_user", "withdraw").allowed
    denied = limiter.check_and_record("regular_user", "withdraw")
    assert not denied.allowed
    assert "limit: 1 per 10 minutes" in denied.user_message()


def _hammer(limiter, user, n_threads=20):
    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(n_threads)

    def worker():
        barrier.wait()
        d = limiter.check_and_record(user, OP)
        with lock:
            results.append(d.allowed)

    threads = [threading.Thread(target=worker) for _ in range(n_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def test_concurrent_callers_cannot_exceed_limit(limiter):
    results = _hammer(limiter, "vip_user")
    assert results.count(True) == 6


def test_concurrent_callers_sqlite(tmp_path, classifier, events, clock):
    store = SQLiteKVStore(str(tmp_path / "wg.db"), timeout_seconds=10, clock=clock)
    limiter = SlidingWindowRateLimiter(store, classifier, events=events, clock=clock)
    results = _hammer(limiter, "vip_user", n_threads=10)
    assert results.count(True) == 6


@pytest.mark.parametrize(
    "seconds,expected",
    [(1, "1 second"), (30, "30 seconds"), (61, "2 minutes"), (2520, "42 minutes"), (3600, "1 hour"), (3900, "1 hour 5 minutes")],
)
def test_format_wait(seconds, expected):
    assert format_wait(seconds) == expected
