import importlib


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    import wallet_guard

    # Access via attribute (lazy import)
    assert hasattr(wallet_guard, "WalletGuard")
    assert hasattr(wallet_guard, "create_app")

    from wallet_guard import EncryptionEngine, SecurityConfig, WalletGuard  # noqa: F401
    from wallet_guard import RateLimitDecision, SlidingWindowRateLimiter, TrustTier  # noqa: F401

    importlib.reload(wallet_guard)


def test_unknown_attribute_raises():
    import pytest

    import wallet_guard

    with pytest.raises(AttributeError):
        wallet_guard.DoesNotExist  # noqa: B018


def test_version_export_matches_pyproject():
    import wallet_guard

    assert hasattr(wallet_guard, "__version__")
    assert wallet_guard.__version__ == _read_pyproject_version()
