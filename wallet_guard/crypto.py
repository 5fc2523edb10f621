"""
Wallet Guard Encryption Engine (v3 envelopes)

Per-user authenticated encryption for wallet secrets:
- per-user salt = scrypt(user_id, salt_domain) (deterministic, not secret)
- per-user key  = PBKDF2-HMAC-SHA256(master_key, user_salt, >= 100k rounds)
- AES-256-GCM with a fresh 96-bit IV per call
- independent HMAC-SHA256 over length-prefixed user_salt, iv, ciphertext

Decryption never raises for malformed or tampered input. It returns a
`DecryptResult` that is either ok (plaintext) or carries a `FormatError` or
`IntegrityError`.

Envelope versions
-----------------
v3 (current): "v3:<salt>:<iv>:<tag>:<hmac>:<ciphertext>" (hex fields)
v1 (legacy, decode only): "<iv>:<ciphertext>", AES-256-CBC keyed directly by
the master key. Unauthenticated; never produced.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import secrets
import warnings
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .config import DEFAULT_SALT_DOMAIN, MIN_KDF_ROUNDS, SecurityConfig
from .errors import ConfigurationError, EncryptionError, FormatError, GuardError, IntegrityError
from .events import DATA_INTEGRITY_FAILURE, EPHEMERAL_MASTER_KEY, EventEmitter, Severity
from .metrics import record_crypto
from .ops_stats import OPS_STATS

logger = logging.getLogger("wallet_guard.crypto")

CURRENT_VERSION = "v3"
LEGACY_VERSION = "v1"

SALT_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16
HMAC_LENGTH = 32
KEY_LENGTH = 32
LEGACY_IV_LENGTH = 16

# scrypt parameters for the per-user salt (N=2**14, r=8, p=1)
_SALT_SCRYPT_N = 2 ** 14
_SALT_SCRYPT_R = 8
_SALT_SCRYPT_P = 1


@dataclass(frozen=True)
class EncryptedBlob:
    version: str
    user_salt: bytes
    iv: bytes
    auth_tag: bytes
    hmac: bytes
    ciphertext: bytes

    def to_string(self) -> str:
        if self.version == LEGACY_VERSION:
            return f"{self.iv.hex()}:{self.ciphertext.hex()}"
        return ":".join(
            [
                self.version,
                self.user_salt.hex(),
                self.iv.hex(),
                self.auth_tag.hex(),
                self.hmac.hex(),
                self.ciphertext.hex(),
            ]
        )

    def __str__(self) -> str:
        return self.to_string()

    @classmethod
    def parse(cls, data: str) -> "EncryptedBlob":
        """Decode a serialized envelope, dispatching on its version tag.

        Raises FormatError for unknown versions or corrupt fields.
        """
        if not isinstance(data, str) or not data:
            raise FormatError("encrypted data must be a non-empty string")
        parts = data.strip().split(":")
        if len(parts) == 2:
            decoder = _DECODERS[LEGACY_VERSION]
        else:
            decoder = _DECODERS.get(parts[0])
        if decoder is None:
            raise FormatError("unsupported envelope version", version=parts[0][:16])
        return decoder(parts)


def _unhex(field_name: str, value: str, length: Optional[int] = None) -> bytes:
    try:
        raw = bytes.fromhex(value)
    except ValueError:
        raise FormatError("field is not valid hex", field=field_name) from None
    if length is not None and len(raw) != length:
        raise FormatError("field has wrong length", field=field_name, expected=length, got=len(raw))
    return raw


def _decode_v3(parts) -> EncryptedBlob:
    if len(parts) != 6:
        raise FormatError("v3 envelope must have 6 fields", got=len(parts))
    _, salt, iv, tag, mac, ct = parts
    return EncryptedBlob(
        version=CURRENT_VERSION,
        user_salt=_unhex("user_salt", salt, SALT_LENGTH),
        iv=_unhex("iv", iv, IV_LENGTH),
        auth_tag=_unhex("auth_tag", tag, TAG_LENGTH),
        hmac=_unhex("hmac", mac, HMAC_LENGTH),
        ciphertext=_unhex("ciphertext", ct),
    )


def _decode_v1(parts) -> EncryptedBlob:
    iv, ct = parts
    ciphertext = _unhex("ciphertext", ct)
    if not ciphertext or len(ciphertext) % 16 != 0:
        raise FormatError("legacy ciphertext must be a non-empty multiple of the block size")
    return EncryptedBlob(
        version=LEGACY_VERSION,
        user_salt=b"",
        iv=_unhex("iv", iv, LEGACY_IV_LENGTH),
        auth_tag=b"",
        hmac=b"",
        ciphertext=ciphertext,
    )


_DECODERS: Dict[str, Callable[[Any], EncryptedBlob]] = {
    CURRENT_VERSION: _decode_v3,
    LEGACY_VERSION: _decode_v1,
}

# field -> required length (None: any length)
_FIELD_LENGTHS: Dict[str, Dict[str, Optional[int]]] = {
    CURRENT_VERSION: {
        "user_salt": SALT_LENGTH,
        "iv": IV_LENGTH,
        "auth_tag": TAG_LENGTH,
        "hmac": HMAC_LENGTH,
        "ciphertext": None,
    },
    LEGACY_VERSION: {"iv": LEGACY_IV_LENGTH, "ciphertext": None},
}


def validate_envelope(envelope: EncryptedBlob) -> None:
    """Check field types and lengths of an envelope built in memory.

    `EncryptedBlob.parse` already enforces the same rules on strings.
    """
    lengths = _FIELD_LENGTHS.get(envelope.version)
    if lengths is None:
        raise FormatError("unsupported envelope version", version=str(envelope.version)[:16])
    for name, expected in lengths.items():
        value = getattr(envelope, name)
        if not isinstance(value, (bytes, bytearray)):
            raise FormatError("field must be bytes", field=name)
        if expected is not None and len(value) != expected:
            raise FormatError("field has wrong length", field=name, expected=expected, got=len(value))
    if envelope.version == LEGACY_VERSION and (not envelope.ciphertext or len(envelope.ciphertext) % 16 != 0):
        raise FormatError("legacy ciphertext must be a non-empty multiple of the block size")


@dataclass(frozen=True)
class DecryptResult:
    """Tagged decrypt outcome: exactly one of `plaintext` / `error` is set."""

    plaintext: Optional[str] = None
    error: Optional[GuardError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_integrity_failure(self) -> bool:
        return isinstance(self.error, IntegrityError)

    @property
    def is_format_failure(self) -> bool:
        return isinstance(self.error, FormatError)

    def unwrap(self) -> str:
        if self.error is not None:
            raise self.error
        return self.plaintext  # type: ignore[return-value]

    @classmethod
    def success(cls, plaintext: str) -> "DecryptResult":
        return cls(plaintext=plaintext)

    @classmethod
    def failure(cls, error: GuardError) -> "DecryptResult":
        return cls(error=error)


def _safe_hash_encode(*components: bytes) -> bytes:
    """Length-prefixed encoding for MAC inputs (no field-boundary shifting)."""
    out = bytearray()
    for component in components:
        out += len(component).to_bytes(8, byteorder="big")
        out += component
    return bytes(out)


def _wipe(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0


def load_master_key(config: SecurityConfig) -> tuple[str, bool]:
    """Return (master_key, ephemeral).

    Without a configured key an ephemeral one is generated. Everything
    encrypted with it is unrecoverable after a restart, so this is loud.
    """
    if config.master_key:
        return config.master_key, False
    if config.require_master_key:
        raise ConfigurationError(
            "No master key configured. Set WG_MASTER_KEY (or ENCRYPTION_KEY), "
            "or unset WG_REQUIRE_MASTER_KEY to allow an ephemeral key."
        )
    msg = (
        "No master key configured (WG_MASTER_KEY / ENCRYPTION_KEY). Generated an EPHEMERAL key: "
        "every secret encrypted by this process becomes UNRECOVERABLE after restart."
    )
    logger.critical(msg)
    warnings.warn(msg, RuntimeWarning, stacklevel=2)
    return secrets.token_hex(32), True


class EncryptionEngine:
    """Per-user authenticated encryption engine."""

    def __init__(
        self,
        master_key: Union[str, bytes],
        *,
        kdf_rounds: int = MIN_KDF_ROUNDS,
        salt_domain: str = DEFAULT_SALT_DOMAIN,
        events: Optional[EventEmitter] = None,
    ):
        if not master_key:
            raise ConfigurationError("master key must not be empty")
        if kdf_rounds < MIN_KDF_ROUNDS:
            raise ConfigurationError("kdf_rounds below minimum", minimum=MIN_KDF_ROUNDS, got=kdf_rounds)
        self._master_key = master_key.encode("utf-8") if isinstance(master_key, str) else bytes(master_key)
        self.kdf_rounds = int(kdf_rounds)
        self.salt_domain = salt_domain
        self.events = events or EventEmitter()
        self.ephemeral_key = False

    @classmethod
    def from_config(cls, config: SecurityConfig, events: Optional[EventEmitter] = None) -> "EncryptionEngine":
        master_key, ephemeral = load_master_key(config)
        engine = cls(master_key, kdf_rounds=config.kdf_rounds, salt_domain=config.salt_domain, events=events)
        engine.ephemeral_key = ephemeral
        if ephemeral:
            engine.events.emit(EPHEMERAL_MASTER_KEY, None, Severity.CRITICAL, {"persistent": False})
        return engine

    # ---------------------------
    # Key derivation
    # ---------------------------

    def user_salt(self, user_id: Any) -> bytes:
        kdf = Scrypt(
            salt=self.salt_domain.encode("utf-8"),
            length=SALT_LENGTH,
            n=_SALT_SCRYPT_N,
            r=_SALT_SCRYPT_R,
            p=_SALT_SCRYPT_P,
        )
        return kdf.derive(str(user_id).encode("utf-8"))

    def _derive_key(self, user_salt: bytes) -> bytearray:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=user_salt,
            iterations=self.kdf_rounds,
        )
        return bytearray(kdf.derive(self._master_key))

    @staticmethod
    def _mac(key: bytearray, user_salt: bytes, iv: bytes, ciphertext: bytes) -> bytes:
        return hmac.new(bytes(key), _safe_hash_encode(user_salt, iv, ciphertext), hashlib.sha256).digest()

    # ---------------------------
    # Encrypt / decrypt
    # ---------------------------

    def encrypt(self, plaintext: Any, user_id: Any) -> EncryptedBlob:
        if plaintext is None:
            raise EncryptionError("cannot encrypt None")
        if not isinstance(plaintext, str):
            plaintext = str(plaintext)

        salt = self.user_salt(user_id)
        key = self._derive_key(salt)
        try:
            iv = secrets.token_bytes(IV_LENGTH)
            sealed = AESGCM(bytes(key)).encrypt(iv, plaintext.encode("utf-8"), None)
            ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
            mac = self._mac(key, salt, iv, ciphertext)
        finally:
            _wipe(key)

        record_crypto("encrypt", "ok")
        OPS_STATS.record_encryption()
        return EncryptedBlob(
            version=CURRENT_VERSION,
            user_salt=salt,
            iv=iv,
            auth_tag=tag,
            hmac=mac,
            ciphertext=ciphertext,
        )

    def encrypt_to_string(self, plaintext: Any, user_id: Any) -> str:
        return self.encrypt(plaintext, user_id).to_string()

    def decrypt(self, blob: Union[EncryptedBlob, str], user_id: Any) -> DecryptResult:
        try:
            if isinstance(blob, EncryptedBlob):
                envelope = blob
                validate_envelope(envelope)
            else:
                envelope = EncryptedBlob.parse(blob)
            if envelope.version == CURRENT_VERSION:
                plaintext = self._decrypt_v3(envelope, user_id)
            else:
                plaintext = self._decrypt_legacy(envelope)
        except FormatError as e:
            return self._fail(e, user_id, "format")
        except IntegrityError as e:
            return self._fail(e, user_id, "integrity")

        record_crypto("decrypt", "ok")
        return DecryptResult.success(plaintext)

    def _decrypt_v3(self, envelope: EncryptedBlob, user_id: Any) -> str:
        expected_salt = self.user_salt(user_id)
        key = self._derive_key(expected_salt)
        try:
            computed = self._mac(key, envelope.user_salt, envelope.iv, envelope.ciphertext)
            salt_ok = hmac.compare_digest(expected_salt, envelope.user_salt)
            if not hmac.compare_digest(computed, envelope.hmac) or not salt_ok:
                self.events.emit(
                    DATA_INTEGRITY_FAILURE,
                    user_id,
                    Severity.CRITICAL,
                    {"check": "hmac", "version": envelope.version},
                )
                raise IntegrityError("data integrity verification failed")
            try:
                raw = AESGCM(bytes(key)).decrypt(envelope.iv, envelope.ciphertext + envelope.auth_tag, None)
            except InvalidTag:
                self.events.emit(
                    DATA_INTEGRITY_FAILURE,
                    user_id,
                    Severity.CRITICAL,
                    {"check": "aead_tag", "version": envelope.version},
                )
                raise IntegrityError("authentication tag verification failed") from None
            except ValueError as e:
                raise FormatError("envelope rejected by cipher", error=str(e)) from None
        finally:
            _wipe(key)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            raise IntegrityError("decrypted data is not valid UTF-8") from None

    def _decrypt_legacy(self, envelope: EncryptedBlob) -> str:
        key = bytearray(self._master_key)
        if len(key) != KEY_LENGTH:
            _wipe(key)
            raise FormatError("legacy envelopes need a 32-byte master key")
        try:
            decryptor = Cipher(algorithms.AES(bytes(key)), modes.CBC(envelope.iv)).decryptor()
            padded = decryptor.update(envelope.ciphertext) + decryptor.finalize()
        except ValueError as e:
            raise FormatError("envelope rejected by cipher", error=str(e)) from None
        finally:
            _wipe(key)
        try:
            unpadder = padding.PKCS7(128).unpadder()
            raw = unpadder.update(padded) + unpadder.finalize()
            plaintext = raw.decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            raise IntegrityError("legacy envelope could not be decrypted", version=LEGACY_VERSION) from None
        logger.info("Decrypted legacy v1 envelope; re-encrypt to upgrade it to %s", CURRENT_VERSION)
        return plaintext

    def _fail(self, error: GuardError, user_id: Any, reason: str) -> DecryptResult:
        logger.error("Decryption failed for user %s: %s", user_id, error)
        record_crypto("decrypt", reason)
        OPS_STATS.record_decryption_failure(reason)
        return DecryptResult.failure(error)

    # ---------------------------
    # Async wrappers
    # ---------------------------

    async def encrypt_async(self, plaintext: Any, user_id: Any) -> EncryptedBlob:
        # PBKDF2 is deliberately slow; keep it off the event loop.
        return await asyncio.to_thread(self.encrypt, plaintext, user_id)

    async def decrypt_async(self, blob: Union[EncryptedBlob, str], user_id: Any) -> DecryptResult:
        return await asyncio.to_thread(self.decrypt, blob, user_id)
