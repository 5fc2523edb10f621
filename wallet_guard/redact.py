"""Redaction of secrets from log records and event metadata.

Wallet secrets must never reach a log line. `redact()` scrubs strings,
mappings and sequences; `RedactingFilter` applies the same rules to every
`logging.LogRecord` passing through a handler.
"""

from __future__ import annotations

import logging
import re
from typing import Any, List, Pattern, Tuple

REDACTED = "[REDACTED]"
MNEMONIC_REDACTED = "[MNEMONIC_PHRASE_REDACTED]"

# BIP-39 phrase lengths; wordlist entries are 3-8 lowercase letters
MNEMONIC_WORD_COUNTS = frozenset((12, 15, 18, 21, 24))
_WORD_RUN = re.compile(r"\b[a-z]{3,8}(?:\s+[a-z]{3,8})+\b")

SENSITIVE_KEYS = frozenset(
    k.lower()
    for k in (
        "privateKey",
        "private_key",
        "mnemonic",
        "password",
        "secret",
        "token",
        "apiKey",
        "api_key",
        "encryptedPrivateKey",
        "encrypted_private_key",
        "encryptedMnemonic",
        "encrypted_mnemonic",
        "seed",
        "passphrase",
        "master_key",
        "plaintext",
    )
)

_PATTERNS: List[Tuple[Pattern[str], str]] = [
    # EVM-style private keys
    (re.compile(r"0x[a-fA-F0-9]{64}"), "0x[PRIVATE_KEY_REDACTED]"),
    # API keys and tokens
    (re.compile(r"(?:api[_-]?key|token|secret)[\"\s:=]+[a-zA-Z0-9_-]{16,}", re.IGNORECASE), "[API_KEY_REDACTED]"),
    # Passwords in connection strings
    (re.compile(r"(postgres(?:ql)?|rediss?)://([^:/@\s]*):[^@\s]+@", re.IGNORECASE), r"\1://\2:[PASSWORD_REDACTED]@"),
    # JWTs
    (re.compile(r"eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*"), "[JWT_TOKEN_REDACTED]"),
]

_MAX_DEPTH = 16


def _redact_word_run(match: "re.Match[str]") -> str:
    run = match.group(0)
    return MNEMONIC_REDACTED if len(run.split()) in MNEMONIC_WORD_COUNTS else run


def redact_text(text: str) -> str:
    for pattern, replacement in _PATTERNS:
        text = pattern.sub(replacement, text)
    # whole runs only: a phrase-length slice of a longer sentence stays
    return _WORD_RUN.sub(_redact_word_run, text)


def redact(value: Any, _depth: int = 0) -> Any:
    """Return a copy of `value` with secrets scrubbed."""
    if _depth > _MAX_DEPTH:
        return REDACTED
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if str(k).lower() in SENSITIVE_KEYS:
                out[k] = REDACTED
            else:
                out[k] = redact(v, _depth + 1)
        return out
    if isinstance(value, (list, tuple)):
        return type(value)(redact(v, _depth + 1) for v in value)
    return value


class RedactingFilter(logging.Filter):
    """Logging filter that scrubs the arguments of a record.

    Format strings are code and stay untouched; values interpolated into them
    are what may carry secrets.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, dict):
            record.args = redact(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(redact(a) for a in record.args)
        return True


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging for CLI usage with redaction on every handler."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RedactingFilter) for f in handler.filters):
            handler.addFilter(RedactingFilter())
    logging.getLogger("wallet_guard").setLevel(level)
