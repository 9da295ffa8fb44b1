from __future__ import annotations

import hashlib

import pytest

from coordinator.borsh import NONCE_LENGTH, EncodingError, nonce_bytes, payload_digest, serialize_payload

NONCE = "a" * NONCE_LENGTH


def test_payload_layout_without_callback() -> None:
    encoded = serialize_payload(message="hi", nonce=NONCE, recipient="r")

    assert encoded[:4] == bytes.fromhex("9d010080")
    assert encoded[4:8] == (2).to_bytes(4, "little")
    assert encoded[8:10] == b"hi"
    assert encoded[10:42] == NONCE.encode()
    assert encoded[42:46] == (1).to_bytes(4, "little")
    assert encoded[46:47] == b"r"
    assert encoded[47:] == b"\x00"


def test_callback_url_is_encoded_as_present_option() -> None:
    encoded = serialize_payload(message="m", nonce=NONCE, recipient="r", callback_url="https://cb.test")

    tail = b"\x01" + len("https://cb.test").to_bytes(4, "little") + b"https://cb.test"
    assert encoded.endswith(tail)


def test_empty_callback_url_matches_absent_callback() -> None:
    assert serialize_payload(message="m", nonce=NONCE, recipient="r", callback_url="") == serialize_payload(
        message="m", nonce=NONCE, recipient="r"
    )


def test_multibyte_strings_use_byte_length() -> None:
    encoded = serialize_payload(message="héllo", nonce=NONCE, recipient="r")

    assert encoded[4:8] == (6).to_bytes(4, "little")


def test_digest_is_sha256_of_serialized_payload() -> None:
    serialized = serialize_payload(message="hello", nonce=NONCE, recipient="relay.test")

    assert payload_digest(message="hello", nonce=NONCE, recipient="relay.test") == hashlib.sha256(serialized).digest()


@pytest.mark.parametrize("nonce", ["", "short", "x" * 33])
def test_nonce_must_be_exactly_32_bytes(nonce: str) -> None:
    with pytest.raises(EncodingError):
        nonce_bytes(nonce)


def test_nonce_accepts_raw_bytes() -> None:
    assert nonce_bytes(bytes(32)) == bytes(32)
