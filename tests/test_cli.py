import json

import pytest

import wallet_guard_cli
from wallet_guard.audit_log import AuditLogEventSink
from wallet_guard.config import SecurityConfig, StoreConfig
from wallet_guard.events import EventEmitter, Severity
from wallet_guard.system import WalletGuard

OP = "export_private_key"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("WG_STORE_URL", "WG_MASTER_KEY", "ENCRYPTION_KEY", "WG_AUDIT_LOG_PATH", "WG_OPERATION_POLICIES_JSON"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store_url(tmp_path):
    return f"sqlite:///{tmp_path / 'guard.db'}"


def _guard(store_url):
    return WalletGuard(SecurityConfig(store=StoreConfig(url=store_url)))


def test_no_command_prints_help(capsys):
    assert wallet_guard_cli.main([]) == 1
    assert "wallet-guard" in capsys.readouterr().out


def test_audit_verify_ok_and_tampered(tmp_path, capsys):
    path = tmp_path / "events.jsonl"
    emitter = EventEmitter(AuditLogEventSink(str(path)))
    emitter.emit("RATE_LIMIT_EXCEEDED", "u1", Severity.HIGH, {"operation": OP})
    emitter.emit("EMERGENCY_MODE_CLEARED", None, Severity.MEDIUM, {"actor": "alice"})

    assert wallet_guard_cli.main(["audit-verify", str(path)]) == 0
    out = capsys.readouterr().out
    assert "Records checked: 2" in out
    assert "verified" in out

    lines = path.read_text(encoding="utf-8").splitlines()
    rec = json.loads(lines[0])
    rec["event"]["user_id"] = "someone-else"
    lines[0] = json.dumps(rec)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    assert wallet_guard_cli.main(["audit-verify", str(path)]) == 1
    assert "EVENT_HASH_MISMATCH" in capsys.readouterr().out


def test_rate_limit_status_and_reset(store_url, capsys):
    guard = _guard(store_url)
    try:
        for _ in range(3):
            guard.check_rate_limit("u1", OP)
    finally:
        guard.close()

    assert wallet_guard_cli.main(["--store-url", store_url, "rate-limit-status", "u1", OP]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["allowed"] is False
    assert status["remaining"] == 0
    assert status["tier"] == "regular"

    assert wallet_guard_cli.main(["--store-url", store_url, "rate-limit-reset", "u1", OP]) == 0
    assert "Rate limit reset" in capsys.readouterr().out

    assert wallet_guard_cli.main(["--store-url", store_url, "rate-limit-status", "u1", OP]) == 0
    assert json.loads(capsys.readouterr().out)["remaining"] == 3


def test_rate_limit_reset_unknown_operation(store_url, capsys):
    assert wallet_guard_cli.main(["--store-url", store_url, "rate-limit-reset", "u1", "launch_rockets"]) == 2
    assert "Unknown operation" in capsys.readouterr().err


def test_scan_and_emergency_clear(store_url, capsys):
    guard = _guard(store_url)
    try:
        for _ in range(3):
            guard.monitor.record_integrity_failure("u1")
    finally:
        guard.close()

    assert wallet_guard_cli.main(["--store-url", store_url, "scan"]) == 0
    out = capsys.readouterr().out
    assert "Alerts raised: 1" in out
    assert "[CRITICAL] SYSTEM_INTRUSION user=u1" in out

    assert wallet_guard_cli.main(["--store-url", store_url, "status"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["emergency_mode"]["active"] is True
    assert status["store"] == {"backend": "sqlite", "ok": True}

    assert wallet_guard_cli.main(["--store-url", store_url, "emergency-clear", "--actor", "ops"]) == 0
    assert "cleared by ops" in capsys.readouterr().out
    assert wallet_guard_cli.main(["--store-url", store_url, "emergency-clear"]) == 0
    assert "was not active" in capsys.readouterr().out

    # a later scan from another process does not re-raise the same failures
    assert wallet_guard_cli.main(["--store-url", store_url, "scan"]) == 0
    assert "Alerts raised: 0" in capsys.readouterr().out


def test_bad_store_url_is_reported(capsys):
    assert wallet_guard_cli.main(["--store-url", "mongodb://db", "status"]) == 3
    assert "unsupported store url" in capsys.readouterr().err
