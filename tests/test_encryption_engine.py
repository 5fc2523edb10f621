import dataclasses

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

import wallet_guard.crypto as crypto_mod
from wallet_guard.config import SecurityConfig
from wallet_guard.crypto import DecryptResult, EncryptedBlob, EncryptionEngine
from wallet_guard.errors import ConfigurationError, EncryptionError, FormatError, IntegrityError
from wallet_guard.events import DATA_INTEGRITY_FAILURE, EPHEMERAL_MASTER_KEY, Severity

MASTER_KEY = "m" * 32


@pytest.fixture
def engine(events):
    return EncryptionEngine(MASTER_KEY, events=events)


def _flip(data: bytes, index: int = 0) -> bytes:
    b = bytearray(data)
    b[index] ^= 0x01
    return bytes(b)


@pytest.mark.parametrize(
    "plaintext",
    ["0x" + "ab" * 32, "abandon ability able about above absent", "", "ключ 🔑"],
)
def test_round_trip(engine, plaintext):
    blob = engine.encrypt(plaintext, "u1")
    result = engine.decrypt(blob, "u1")
    assert result.ok
    assert result.unwrap() == plaintext


def test_serialized_form_round_trips(engine):
    text = engine.encrypt_to_string("secret", 42)
    assert text.startswith("v3:")
    assert len(text.split(":")) == 6
    assert EncryptedBlob.parse(text).to_string() == text
    assert engine.decrypt(text, 42).plaintext == "secret"


def test_non_string_plaintext_is_coerced(engine):
    assert engine.decrypt(engine.encrypt(12345, "u1"), "u1").plaintext == "12345"


def test_encrypt_none_raises(engine):
    with pytest.raises(EncryptionError):
        engine.encrypt(None, "u1")


def test_fresh_iv_per_call(engine):
    a = engine.encrypt("same", "u1")
    b = engine.encrypt("same", "u1")
    assert a.iv != b.iv
    assert a.ciphertext != b.ciphertext
    assert a.user_salt == b.user_salt


@pytest.mark.parametrize("field", ["ciphertext", "iv", "auth_tag", "hmac", "user_salt"])
def test_single_bit_tamper_is_integrity_failure(engine, sink, field):
    blob = engine.encrypt("top secret key material", "u1")
    tampered = dataclasses.replace(blob, **{field: _flip(getattr(blob, field))})

    result = engine.decrypt(tampered, "u1")

    assert not result.ok
    assert result.is_integrity_failure
    assert result.plaintext is None
    assert isinstance(result.error, IntegrityError)
    events = sink.of_type(DATA_INTEGRITY_FAILURE)
    assert len(events) == 1
    assert events[0].severity is Severity.CRITICAL


def test_tamper_in_serialized_form(engine):
    text = engine.encrypt_to_string("abc", "u1")
    parts = text.split(":")
    last = parts[-1]
    parts[-1] = ("0" if last[0] != "0" else "1") + last[1:]
    assert engine.decrypt(":".join(parts), "u1").is_integrity_failure


def test_cross_user_isolation(engine):
    blob = engine.encrypt("u1 wallet key", "u1")
    result = engine.decrypt(blob, "u2")
    assert not result.ok
    assert result.is_integrity_failure


def test_different_master_key_cannot_decrypt(engine, events):
    other = EncryptionEngine("x" * 32, events=events)
    assert other.decrypt(engine.encrypt("s", "u1"), "u1").is_integrity_failure


@pytest.mark.parametrize(
    "data",
    [
        "",
        "not-an-envelope",
        "v9:aa:bb:cc:dd:ee",
        "v3:zz:00:00:00:00",
        "v3:00:00:00:00:00",
        "v3:" + "00" * 32 + ":" + "00" * 12,
        "0011:zz",
    ],
)
def test_malformed_input_is_format_failure(engine, data):
    result = engine.decrypt(data, "u1")
    assert not result.ok
    assert result.is_format_failure
    with pytest.raises(FormatError):
        result.unwrap()


def test_derived_keys_are_zeroed(engine, monkeypatch):
    wiped = []
    original = crypto_mod._wipe

    def spy(buf):
        original(buf)
        wiped.append(buf)

    monkeypatch.setattr(crypto_mod, "_wipe", spy)
    blob = engine.encrypt("s", "u1")
    engine.decrypt(blob, "u1")
    engine.decrypt(dataclasses.replace(blob, hmac=_flip(blob.hmac)), "u1")

    assert len(wiped) == 3
    assert all(len(buf) == 32 and not any(buf) for buf in wiped)


def test_legacy_v1_envelope_decrypts(engine):
    iv = bytes(range(16))
    padder = padding.PKCS7(128).padder()
    padded = padder.update(b"legacy secret") + padder.finalize()
    enc = Cipher(algorithms.AES(MASTER_KEY.encode("utf-8")), modes.CBC(iv)).encryptor()
    ct = enc.update(padded) + enc.finalize()

    result = engine.decrypt(f"{iv.hex()}:{ct.hex()}", "anyone")
    assert result.ok
    assert result.plaintext == "legacy secret"


def test_legacy_v1_needs_32_byte_master_key(events):
    short = EncryptionEngine("short", events=events)
    result = short.decrypt("00" * 16 + ":" + "00" * 16, "u1")
    assert result.is_format_failure


def test_kdf_rounds_below_minimum_rejected():
    with pytest.raises(ConfigurationError):
        EncryptionEngine(MASTER_KEY, kdf_rounds=1000)


def test_ephemeral_master_key_is_loud(events, sink):
    with pytest.warns(RuntimeWarning, match="UNRECOVERABLE"):
        engine = EncryptionEngine.from_config(SecurityConfig(master_key=None), events=events)
    assert engine.ephemeral_key is True
    assert [e.severity for e in sink.of_type(EPHEMERAL_MASTER_KEY)] == [Severity.CRITICAL]
    assert engine.decrypt(engine.encrypt("x", "u1"), "u1").plaintext == "x"


def test_required_master_key_missing_fails():
    with pytest.raises(ConfigurationError):
        EncryptionEngine.from_config(SecurityConfig(master_key=None, require_master_key=True))


def test_integrity_error_user_message_mentions_regeneration(engine):
    blob = engine.encrypt("s", "u1")
    result = engine.decrypt(dataclasses.replace(blob, hmac=_flip(blob.hmac)), "u1")
    assert "regenerate" in result.error.user_message()
    assert result.error.as_dict()["code"] == "WG_E_INTEGRITY"


def test_decrypt_result_unwrap():
    assert DecryptResult.success("x").unwrap() == "x"
    with pytest.raises(IntegrityError):
        DecryptResult.failure(IntegrityError("bad")).unwrap()


@pytest.mark.asyncio
async def test_async_wrappers_round_trip(engine):
    blob = await engine.encrypt_async("async secret", "u7")
    result = await engine.decrypt_async(blob.to_string(), "u7")
    assert result.plaintext == "async secret"


@pytest.mark.parametrize(
    "change",
    [
        lambda b: {"iv": b.iv[:6], "ciphertext": b.iv[6:] + b.ciphertext},
        lambda b: {"user_salt": b.user_salt[:16]},
        lambda b: {"auth_tag": b""},
        lambda b: {"hmac": b.hmac + b"\x00"},
        lambda b: {"ciphertext": "not bytes"},
        lambda b: {"version": "v7"},
    ],
)
def test_malformed_blob_object_is_format_failure(engine, change):
    blob = engine.encrypt("s", "u1")
    result = engine.decrypt(dataclasses.replace(blob, **change(blob)), "u1")
    assert not result.ok
    assert result.is_format_failure


@pytest.mark.parametrize(
    "blob",
    [
        EncryptedBlob("v1", b"", b"\0" * 5, b"", b"", b"\0" * 16),
        EncryptedBlob("v1", b"", b"\0" * 16, b"", b"", b"\0" * 15),
        EncryptedBlob("v1", b"", b"\0" * 16, b"", b"", b""),
    ],
)
def test_malformed_legacy_blob_object_is_format_failure(engine, blob):
    assert engine.decrypt(blob, "u1").is_format_failure


def test_mac_binds_field_boundaries(engine):
    blob = engine.encrypt("s", "u1")
    key = bytearray(b"k" * 32)
    shifted = EncryptionEngine._mac(key, blob.user_salt, blob.iv[:6], blob.iv[6:] + blob.ciphertext)
    assert shifted != EncryptionEngine._mac(key, blob.user_salt, blob.iv, blob.ciphertext)
