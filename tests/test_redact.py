import logging

from wallet_guard.redact import REDACTED, RedactingFilter, redact, redact_text

MNEMONIC = "abandon ability able about above absent absorb abstract absurd abuse access accident"


def test_sensitive_keys_are_replaced_at_any_depth():
    out = redact({"user": "u1", "privateKey": "abc", "nested": {"Mnemonic": "x", "ok": 1}, "items": [{"password": "p"}]})
    assert out == {"user": "u1", "privateKey": REDACTED, "nested": {"Mnemonic": REDACTED, "ok": 1}, "items": [{"password": REDACTED}]}


def test_private_key_pattern():
    text = "exported 0x" + "ab" * 32 + " for u1"
    assert redact_text(text) == "exported 0x[PRIVATE_KEY_REDACTED] for u1"


def test_mnemonic_pattern():
    assert "[MNEMONIC_PHRASE_REDACTED]" in redact_text(f"seed is {MNEMONIC}")
    assert "abandon" not in redact_text(f"seed is {MNEMONIC}")
    # short lowercase sentences are left alone
    assert redact_text("rate limit exceeded for user") == "rate limit exceeded for user"


def test_mnemonic_lengths():
    words = MNEMONIC.split() * 2
    for n in (12, 15, 18, 21, 24):
        assert redact_text(" ".join(words[:n])) == "[MNEMONIC_PHRASE_REDACTED]"
    for n in (11, 13, 14, 20):
        phrase = " ".join(words[:n])
        assert redact_text(phrase) == phrase


def test_ordinary_sentences_are_not_mnemonics():
    # fourteen lowercase words: a twelve-word slice of it must not match
    long_sentence = "the user asked support again about the wallet export that failed during the night"
    assert redact_text(long_sentence) == long_sentence

    punctuated = "please retry later, the signing service is busy and your request was queued for review today"
    assert redact_text(punctuated) == punctuated

    with_short_words = "we saw it go up to ten and then back to one by the end of day"
    assert redact_text(with_short_words) == with_short_words


def test_mnemonic_split_over_lines():
    text = "restore with:\n" + "\n".join(MNEMONIC.split())
    assert redact_text(text) == "restore with:\n[MNEMONIC_PHRASE_REDACTED]"


def test_connection_string_password():
    assert redact_text("redis://:hunter2@cache:6379/0") == "redis://:[PASSWORD_REDACTED]@cache:6379/0"
    assert redact_text("postgresql://app:s3cret@db/wallets") == "postgresql://app:[PASSWORD_REDACTED]@db/wallets"


def test_jwt_and_api_key_patterns():
    assert redact_text("bearer eyJhbGciOi.eyJzdWIiOi.c2lnbmF0dXJl") == "bearer [JWT_TOKEN_REDACTED]"
    assert redact_text("api_key=abcdefghijklmnopqrstuv") == "[API_KEY_REDACTED]"


def test_non_string_values_pass_through():
    assert redact(42) == 42
    assert redact(None) is None
    assert redact(("0x" + "c" * 64,)) == ("0x[PRIVATE_KEY_REDACTED]",)


def test_filter_scrubs_record_args(caplog):
    logger = logging.getLogger("wallet_guard.test_redact")
    flt = RedactingFilter()
    logger.addFilter(flt)
    try:
        with caplog.at_level(logging.INFO, logger="wallet_guard.test_redact"):
            logger.info("exporting %s for %s", "0x" + "d" * 64, "u1")
    finally:
        logger.removeFilter(flt)
    assert "d" * 64 not in caplog.text
    assert "0x[PRIVATE_KEY_REDACTED] for u1" in caplog.text
