"""Tamper-evident security event log (JSONL, hash chained).

Every SecurityEvent written through `AuditLogEventSink` becomes one line:

    {"version", "seq", "ts_utc", "prev_hash", "event", "event_hash", "entry_hash"}

`event_hash` covers the canonical event JSON. `entry_hash` binds it to the
previous record, the timestamp and the sequence number. Editing, deleting or
reordering lines breaks the chain; `verify_file` reports the first bad record.

Whoever can rewrite the whole file can also recompute the chain. Ship the log
to a remote append-only store if that matters.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Sequence, Tuple

from .events import EventSink, SecurityEvent, _now_iso

logger = logging.getLogger("wallet_guard.audit_log")

AUDIT_VERSION = "WG_AUDIT_V1"
GENESIS_HASH = "0" * 64

_TAIL_BYTES = 65536


def _safe_hash_encode(components: Sequence[str]) -> bytes:
    """Length-prefixed encoding for hash inputs (no delimiter collisions)."""
    out = bytearray()
    for component in components:
        encoded = component.encode("utf-8")
        out += len(encoded).to_bytes(8, byteorder="big")
        out += encoded
    return bytes(out)


def canonical_json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def event_digest(event: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json_dumps(event).encode("utf-8")).hexdigest()


def entry_digest(prev_hash: str, event_hash: str, ts_utc: str, seq: int) -> str:
    return hashlib.sha256(_safe_hash_encode([prev_hash, event_hash, ts_utc, str(seq)])).hexdigest()


@dataclass(frozen=True)
class AuditLogRecord:
    version: str
    seq: int
    ts_utc: str
    prev_hash: str
    event: Dict[str, Any]
    event_hash: str
    entry_hash: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True, ensure_ascii=False, default=str)


def _iter_lines(path: Path) -> Iterator[str]:
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                yield line


def _check_record(raw: str, prev_hash: str, seq: int) -> Tuple[Optional[str], str]:
    """Validate one line against the chain so far.

    Returns (failure_reason, entry_hash). failure_reason is None when valid.
    """
    try:
        rec = json.loads(raw)
    except ValueError:
        return "PARSE_ERROR", prev_hash
    if not isinstance(rec, dict):
        return "PARSE_ERROR", prev_hash

    version = rec.get("version")
    if version != AUDIT_VERSION:
        return f"BAD_VERSION:{version}", prev_hash
    if str(rec.get("prev_hash")) != prev_hash:
        return "CHAIN_BROKEN", prev_hash
    if rec.get("seq") != seq:
        return "SEQ_GAP", prev_hash

    event = rec.get("event")
    if not isinstance(event, dict):
        return "BAD_EVENT", prev_hash
    event_hash = event_digest(event)
    if event_hash != rec.get("event_hash"):
        return "EVENT_HASH_MISMATCH", prev_hash

    expected = entry_digest(prev_hash, event_hash, str(rec.get("ts_utc")), seq)
    if expected != rec.get("entry_hash"):
        return "ENTRY_HASH_MISMATCH", prev_hash
    return None, expected


def verify_file(path: str) -> Tuple[bool, str, int]:
    """Verify a security event log. Returns (ok, reason, records_checked)."""
    p = Path(path)
    if not p.exists():
        return True, "NO_FILE", 0

    prev = GENESIS_HASH
    count = 0
    for raw in _iter_lines(p):
        count += 1
        reason, prev = _check_record(raw, prev, count)
        if reason is not None:
            return False, reason, count
    return True, "OK", count


class TamperEvidentAuditLog:
    """Append-only writer. Reopening an existing file continues its chain."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._last_hash, self._seq = self._load_tail()

    def _load_tail(self) -> Tuple[str, int]:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return GENESIS_HASH, 0
        with self.path.open("rb") as f:
            f.seek(0, 2)
            end = f.tell()
            f.seek(max(0, end - _TAIL_BYTES))
            lines = [ln for ln in f.read().splitlines() if ln.strip()]
        try:
            rec = json.loads(lines[-1].decode("utf-8"))
            return str(rec["entry_hash"]), int(rec["seq"])
        except (IndexError, KeyError, TypeError, ValueError, UnicodeDecodeError):
            # New records will not chain; verify_file reports where it broke.
            logger.error("Security event log %s has a corrupt tail record", self.path)
            return GENESIS_HASH, 0

    def append_event(self, event: Dict[str, Any], ts_utc: Optional[str] = None) -> AuditLogRecord:
        ts = ts_utc or _now_iso()
        event_hash = event_digest(event)
        with self._lock:
            seq = self._seq + 1
            rec = AuditLogRecord(
                version=AUDIT_VERSION,
                seq=seq,
                ts_utc=ts,
                prev_hash=self._last_hash,
                event=event,
                event_hash=event_hash,
                entry_hash=entry_digest(self._last_hash, event_hash, ts, seq),
            )
            with self.path.open("a", encoding="utf-8") as f:
                f.write(rec.to_json() + "\n")
            self._last_hash = rec.entry_hash
            self._seq = seq
        return rec


class AuditLogEventSink(EventSink):
    """EventSink writing every SecurityEvent to a TamperEvidentAuditLog."""

    def __init__(self, path: str):
        self.log = TamperEvidentAuditLog(path)

    def record(self, event: SecurityEvent) -> None:
        self.log.append_event(event.to_dict(), ts_utc=event.timestamp)
