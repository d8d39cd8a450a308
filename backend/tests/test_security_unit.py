"""Unit tests for OTP, token and message encryption helpers."""

from __future__ import annotations

from base64 import b64encode
from datetime import timedelta

import pytest
from fastapi import HTTPException

from app.core.cipher import MessageCipher
from app.core.security import (
    create_access_token,
    decode_access_token,
    generate_otp,
    hash_otp,
    verify_otp,
)


def test_generate_otp_is_numeric_with_requested_length():
    otp = generate_otp(6)

    assert len(otp) == 6
    assert otp.isdigit()


def test_otp_hash_round_trip():
    otp_hash = hash_otp("1234")

    assert otp_hash != "1234"
    assert verify_otp("1234", otp_hash)
    assert not verify_otp("4321", otp_hash)
    assert not verify_otp("1234", None)


def test_access_token_carries_subject():
    token = create_access_token({"sub": "42"})

    assert decode_access_token(token)["sub"] == "42"


def test_expired_token_is_rejected():
    token = create_access_token({"sub": "42"}, expires_delta=timedelta(seconds=-5))

    with pytest.raises(HTTPException) as exc_info:
        decode_access_token(token)
    assert exc_info.value.status_code == 401


def test_cipher_produces_distinct_tokens_for_same_plaintext():
    cipher = MessageCipher.from_secret("secret")

    first, second = cipher.encrypt("hello"), cipher.encrypt("hello")

    assert first != second
    assert "hello" not in first
    assert cipher.decrypt(first) == cipher.decrypt(second) == "hello"


def test_cipher_handles_unicode():
    cipher = MessageCipher.from_secret("secret")

    assert cipher.decrypt(cipher.encrypt("नमस्ते 👋")) == "नमस्ते 👋"


@pytest.mark.parametrize("token", ["", None, "not base64!", b64encode(b"short").decode()])
def test_cipher_unreadable_tokens_decrypt_to_empty(token):
    assert MessageCipher.from_secret("secret").decrypt(token) == ""


def test_cipher_rejects_tokens_from_another_key():
    token = MessageCipher.from_secret("one").encrypt("hello")

    assert MessageCipher.from_secret("two").decrypt(token) == ""


def test_cipher_requires_aes_key_length():
    with pytest.raises(ValueError):
        MessageCipher(b"too-short")
