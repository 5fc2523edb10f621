"""Process-wide emergency mode flag held in the shared store.

States: INACTIVE -> (critical event) -> ACTIVE(ttl) -> (ttl expiry | admin clear) -> INACTIVE.

Activating while already active is a no-op; the TTL is never extended, so a
burst of critical events cannot keep the system locked indefinitely.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

from .errors import StoreUnavailableError
from .events import EMERGENCY_MODE_ACTIVATED, EMERGENCY_MODE_CLEARED, EventEmitter, Severity
from .kvstore import KVStore
from .metrics import set_emergency_mode

logger = logging.getLogger("wallet_guard.emergency")

EMERGENCY_KEY = "security:emergency_mode"


class EmergencyMode:
    def __init__(
        self,
        store: KVStore,
        *,
        ttl_seconds: int = 1800,
        events: Optional[EventEmitter] = None,
        clock=time.time,
    ):
        self.store = store
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.events = events or EventEmitter()
        self._clock = clock

    def _read(self) -> Optional[Dict[str, Any]]:
        raw = self.store.get(EMERGENCY_KEY)
        if raw is None:
            return None
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            data = {}
        return data if isinstance(data, dict) else {}

    def is_active(self) -> bool:
        """True while the flag is set. A store failure reads as inactive."""
        try:
            active = self._read() is not None
        except StoreUnavailableError as e:
            logger.error("Could not read emergency mode state: %s", e)
            return False
        set_emergency_mode(active)
        return active

    def state(self) -> Dict[str, Any]:
        """Current flag payload for the admin view. Store errors propagate."""
        data = self._read()
        if data is None:
            return {"active": False}
        return {"active": True, **data}

    def activate(self, trigger_event: str, user_id: Optional[Any] = None, reason: str = "") -> bool:
        """Enter ACTIVE. Returns False if already active (no TTL extension).

        The flag is claimed with a single set-if-absent, so concurrent
        triggers on any number of processes produce exactly one activation.
        """
        now = self._clock()
        payload = {
            "trigger": trigger_event,
            "user_id": None if user_id is None else str(user_id),
            "reason": reason,
            "activated_at": now,
            "expires_at": now + self.ttl_seconds,
        }
        if not self.store.set_if_absent(EMERGENCY_KEY, json.dumps(payload, sort_keys=True), self.ttl_seconds):
            logger.info("Emergency mode already active; ignoring trigger %s", trigger_event)
            return False
        set_emergency_mode(True)
        logger.critical(
            "EMERGENCY MODE ACTIVATED by %s for %ss: %s", trigger_event, self.ttl_seconds, reason or "critical event"
        )
        self.events.emit(
            EMERGENCY_MODE_ACTIVATED,
            user_id,
            Severity.CRITICAL,
            {"trigger": trigger_event, "ttl_seconds": self.ttl_seconds, "reason": reason},
        )
        return True

    def clear(self, actor: str = "admin") -> bool:
        """Administrative reset. Returns True if the flag was set."""
        was_active = self._read() is not None
        self.store.delete(EMERGENCY_KEY)
        set_emergency_mode(False)
        if was_active:
            logger.warning("Emergency mode cleared by %s", actor)
            self.events.emit(EMERGENCY_MODE_CLEARED, None, Severity.MEDIUM, {"actor": actor})
        return was_active
