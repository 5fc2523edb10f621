"""Wallet Guard package.

Unified security subsystem for multi-user wallet services:

- Per-user authenticated encryption of wallet secrets (AES-256-GCM + HMAC)
- Sliding-window rate limiting with trust-tiered limits
- Risk-scored verification of sensitive operations
- Background activity monitoring with an emergency-mode circuit breaker

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from wallet_guard import WalletGuard, SecurityConfig, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "WalletGuard",
    "SecurityConfig",
    "EncryptionEngine",
    "EncryptedBlob",
    "DecryptResult",
    "TrustClassifier",
    "TrustTier",
    "StaticUserDirectory",
    "SlidingWindowRateLimiter",
    "RateLimitDecision",
    "SensitiveOperationVerifier",
    "VerificationResult",
    "ActivityMonitor",
    "EmergencyMode",
    "build_store",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "WalletGuard": ("wallet_guard.system", "WalletGuard"),
    "SecurityConfig": ("wallet_guard.config", "SecurityConfig"),
    "EncryptionEngine": ("wallet_guard.crypto", "EncryptionEngine"),
    "EncryptedBlob": ("wallet_guard.crypto", "EncryptedBlob"),
    "DecryptResult": ("wallet_guard.crypto", "DecryptResult"),
    "TrustClassifier": ("wallet_guard.trust", "TrustClassifier"),
    "TrustTier": ("wallet_guard.trust", "TrustTier"),
    "StaticUserDirectory": ("wallet_guard.trust", "StaticUserDirectory"),
    "SlidingWindowRateLimiter": ("wallet_guard.ratelimit", "SlidingWindowRateLimiter"),
    "RateLimitDecision": ("wallet_guard.ratelimit", "RateLimitDecision"),
    "SensitiveOperationVerifier": ("wallet_guard.verifier", "SensitiveOperationVerifier"),
    "VerificationResult": ("wallet_guard.verifier", "VerificationResult"),
    "ActivityMonitor": ("wallet_guard.monitor", "ActivityMonitor"),
    "EmergencyMode": ("wallet_guard.emergency", "EmergencyMode"),
    "build_store": ("wallet_guard.kvstore", "build_store"),
    "create_app": ("wallet_guard.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'wallet_guard' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
