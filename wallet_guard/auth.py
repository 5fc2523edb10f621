"""Operator identity for the admin HTTP surface.

Each admin API key maps to an operator name. That name is recorded as the
actor of emergency clears and rate-limit resets.

Env vars (JSON wins when both are set):
  - WG_ADMIN_API_KEYS_JSON: JSON object, api_key -> operator name
  - WG_ADMIN_API_KEYS_FILE: path to a file holding the same object

With neither set the admin routes are open and the actor is "anonymous"
(local development). A mapping that is set but unreadable, not an object, or
holding blank keys or names rejects every request.
"""

from __future__ import annotations

import hmac
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger("wallet_guard.auth")

ENV_ADMIN_API_KEYS_JSON = "WG_ADMIN_API_KEYS_JSON"
ENV_ADMIN_API_KEYS_FILE = "WG_ADMIN_API_KEYS_FILE"

ANONYMOUS_ACTOR = "anonymous"
CONFIG_INVALID = "API_KEY_CONFIG_INVALID"


@dataclass(frozen=True)
class AdminContext:
    actor: Optional[str]
    authenticated: bool
    error: Optional[str] = None


def _operator_map(data: Any) -> Dict[str, str]:
    if not isinstance(data, dict):
        raise ValueError("admin key mapping must be a JSON object")
    mapping = {str(k).strip(): str(v).strip() for k, v in data.items()}
    if not all(mapping) or not all(mapping.values()):
        raise ValueError("admin key mapping has a blank key or operator name")
    return mapping


@dataclass(frozen=True)
class ApiKeyAuth:
    api_key_to_actor: Dict[str, str]
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        raw = os.getenv(ENV_ADMIN_API_KEYS_JSON)
        path = os.getenv(ENV_ADMIN_API_KEYS_FILE)
        if not raw and not path:
            return cls(api_key_to_actor={})
        try:
            if not raw:
                with open(path, "r", encoding="utf-8") as f:
                    raw = f.read()
            mapping = _operator_map(json.loads(raw))
        except (OSError, ValueError) as e:
            logger.error("Admin API key configuration is invalid; rejecting all admin requests: %s", e)
            return cls(api_key_to_actor={}, configured=True, config_error=CONFIG_INVALID)
        logger.info("Loaded %d admin API key(s)", len(mapping))
        return cls(api_key_to_actor=mapping, configured=True)

    def enabled(self) -> bool:
        return self.configured

    def resolve(self, api_key: Optional[str]) -> AdminContext:
        """Map an X-Api-Key header value to an operator."""
        if self.config_error:
            return AdminContext(actor=None, authenticated=False, error=self.config_error)
        if not self.configured:
            return AdminContext(actor=ANONYMOUS_ACTOR, authenticated=False)
        if not api_key:
            return AdminContext(actor=None, authenticated=False, error="API_KEY_REQUIRED")

        presented = api_key.encode("utf-8")
        # compare against every key so timing does not reveal a partial match
        matches = [a for k, a in self.api_key_to_actor.items() if hmac.compare_digest(k.encode("utf-8"), presented)]
        if not matches:
            return AdminContext(actor=None, authenticated=False, error="API_KEY_INVALID")
        return AdminContext(actor=matches[0], authenticated=True)
