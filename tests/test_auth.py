import json

from wallet_guard.auth import ENV_ADMIN_API_KEYS_FILE, ENV_ADMIN_API_KEYS_JSON, ApiKeyAuth


def test_auth_disabled_allows_anonymous(monkeypatch):
    monkeypatch.delenv(ENV_ADMIN_API_KEYS_JSON, raising=False)
    monkeypatch.delenv(ENV_ADMIN_API_KEYS_FILE, raising=False)

    auth = ApiKeyAuth.load_from_env()
    assert auth.enabled() is False

    ctx = auth.resolve(None)
    assert ctx.error is None
    assert ctx.actor == "anonymous"
    assert ctx.authenticated is False


def test_auth_configured_requires_api_key(monkeypatch):
    monkeypatch.setenv(ENV_ADMIN_API_KEYS_JSON, json.dumps({"k1": "alice"}))
    monkeypatch.delenv(ENV_ADMIN_API_KEYS_FILE, raising=False)

    auth = ApiKeyAuth.load_from_env()
    assert auth.enabled() is True

    ctx = auth.resolve(None)
    assert ctx.actor is None
    assert ctx.error == "API_KEY_REQUIRED"


def test_auth_valid_key_resolves_actor(monkeypatch):
    monkeypatch.setenv(ENV_ADMIN_API_KEYS_JSON, json.dumps({"k1": "alice"}))
    monkeypatch.delenv(ENV_ADMIN_API_KEYS_FILE, raising=False)

    ctx = ApiKeyAuth.load_from_env().resolve("k1")
    assert ctx.error is None
    assert ctx.actor == "alice"
    assert ctx.authenticated is True


def test_auth_invalid_key_rejected(monkeypatch):
    monkeypatch.setenv(ENV_ADMIN_API_KEYS_JSON, json.dumps({"k1": "alice"}))
    monkeypatch.delenv(ENV_ADMIN_API_KEYS_FILE, raising=False)

    ctx = ApiKeyAuth.load_from_env().resolve("nope")
    assert ctx.error == "API_KEY_INVALID"


def test_auth_keys_from_file(monkeypatch, tmp_path):
    p = tmp_path / "keys.json"
    p.write_text(json.dumps({"file-key": "ops"}), encoding="utf-8")
    monkeypatch.delenv(ENV_ADMIN_API_KEYS_JSON, raising=False)
    monkeypatch.setenv(ENV_ADMIN_API_KEYS_FILE, str(p))

    assert ApiKeyAuth.load_from_env().resolve("file-key").actor == "ops"


def test_malformed_config_fails_closed(monkeypatch):
    monkeypatch.setenv(ENV_ADMIN_API_KEYS_JSON, "[not a dict")
    monkeypatch.delenv(ENV_ADMIN_API_KEYS_FILE, raising=False)

    auth = ApiKeyAuth.load_from_env()
    assert auth.config_error == "API_KEY_CONFIG_INVALID"
    assert auth.resolve("k1").error == "API_KEY_CONFIG_INVALID"
    assert auth.resolve(None).error == "API_KEY_CONFIG_INVALID"


def test_missing_key_file_fails_closed(monkeypatch, tmp_path):
    monkeypatch.delenv(ENV_ADMIN_API_KEYS_JSON, raising=False)
    monkeypatch.setenv(ENV_ADMIN_API_KEYS_FILE, str(tmp_path / "missing.json"))
    assert ApiKeyAuth.load_from_env().resolve("x").error == "API_KEY_CONFIG_INVALID"


def test_blank_operator_name_fails_closed(monkeypatch):
    monkeypatch.setenv(ENV_ADMIN_API_KEYS_JSON, json.dumps({"k1": "alice", "k2": "  "}))
    monkeypatch.delenv(ENV_ADMIN_API_KEYS_FILE, raising=False)
    assert ApiKeyAuth.load_from_env().resolve("k1").error == "API_KEY_CONFIG_INVALID"


def test_blank_api_key_fails_closed(monkeypatch):
    monkeypatch.setenv(ENV_ADMIN_API_KEYS_JSON, json.dumps({"": "alice"}))
    monkeypatch.delenv(ENV_ADMIN_API_KEYS_FILE, raising=False)
    assert ApiKeyAuth.load_from_env().resolve("").error == "API_KEY_CONFIG_INVALID"


def test_json_mapping_wins_over_file(monkeypatch, tmp_path):
    p = tmp_path / "keys.json"
    p.write_text(json.dumps({"file-key": "ops"}), encoding="utf-8")
    monkeypatch.setenv(ENV_ADMIN_API_KEYS_JSON, json.dumps({"k1": "alice"}))
    monkeypatch.setenv(ENV_ADMIN_API_KEYS_FILE, str(p))

    auth = ApiKeyAuth.load_from_env()
    assert auth.resolve("k1").actor == "alice"
    assert auth.resolve("file-key").error == "API_KEY_INVALID"
