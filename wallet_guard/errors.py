"""Stable error taxonomy for Wallet Guard.

This module defines machine-readable error codes and the exception types used
across the encryption engine, the store adapters and the admin surface.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.

Rate-limit denials are *not* exceptions; they are returned as decisions
carrying `WG_E_RATE_LIMITED`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Envelope / crypto
WG_E_FORMAT = "WG_E_FORMAT"
WG_E_INTEGRITY = "WG_E_INTEGRITY"
WG_E_ENCRYPTION = "WG_E_ENCRYPTION"

# Store
WG_E_STORE_UNAVAILABLE = "WG_E_STORE_UNAVAILABLE"

# Policy / control flow
WG_E_RATE_LIMITED = "WG_E_RATE_LIMITED"
WG_E_EMERGENCY_MODE = "WG_E_EMERGENCY_MODE"

# Admin / configuration
WG_E_AUTH_REQUIRED = "WG_E_AUTH_REQUIRED"
WG_E_CONFIG = "WG_E_CONFIG"
WG_E_BAD_REQUEST = "WG_E_BAD_REQUEST"


@dataclass
class GuardError(Exception):
    """Base Wallet Guard exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class FormatError(GuardError):
    """Unknown or corrupt encrypted envelope."""

    def __init__(self, message: str, **details: Any):
        super().__init__(code=WG_E_FORMAT, message=message, http_status=422, details=details)


class IntegrityError(GuardError):
    """HMAC or AEAD tag mismatch. The envelope may have been tampered with."""

    def __init__(self, message: str, **details: Any):
        super().__init__(code=WG_E_INTEGRITY, message=message, http_status=422, details=details)

    def user_message(self) -> str:
        return (
            "Your stored wallet key could not be verified and cannot be recovered. "
            "Please regenerate or re-import the wallet. The previous key data is lost."
        )


class EncryptionError(GuardError):
    """Invalid plaintext handed to the encryption engine."""

    def __init__(self, message: str, **details: Any):
        super().__init__(code=WG_E_ENCRYPTION, message=message, http_status=400, details=details)


class StoreUnavailableError(GuardError):
    """Backing store unreachable, timed out or failed.

    Callers treat this as a policy input (fail open / default tier), never as a crash.
    """

    def __init__(self, message: str, **details: Any):
        super().__init__(
            code=WG_E_STORE_UNAVAILABLE,
            message=message,
            retryable=True,
            http_status=503,
            details=details,
        )


class ConfigurationError(GuardError):
    def __init__(self, message: str, **details: Any):
        super().__init__(code=WG_E_CONFIG, message=message, http_status=500, details=details)


def guard_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> GuardError:
    return GuardError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
