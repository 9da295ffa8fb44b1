"""Canonical binary encoding of the wallet-signed login payload.

Wallets sign the SHA-256 digest of a Borsh-serialised struct::

    struct Payload {
        tag: u32,                    // always 2147484061
        message: String,
        nonce: [u8; 32],
        recipient: String,
        callback_url: Option<String>,
    }

Integers are little-endian, strings are a ``u32`` byte length followed by
UTF-8 bytes, and options are a single ``0``/``1`` byte followed by the value.
"""

from __future__ import annotations

import hashlib
import struct
from typing import Optional

PAYLOAD_TAG = 2147484061
NONCE_LENGTH = 32


class EncodingError(ValueError):
    """Raised when a payload cannot be represented in the canonical layout."""


def _u32(value: int) -> bytes:
    return struct.pack("<I", value)


def _string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return _u32(len(raw)) + raw


def _option_string(value: Optional[str]) -> bytes:
    if value is None:
        return b"\x00"
    return b"\x01" + _string(value)


def nonce_bytes(nonce: str | bytes) -> bytes:
    """Return the raw nonce bytes; the client string is used verbatim as UTF-8."""

    raw = nonce if isinstance(nonce, bytes) else nonce.encode("utf-8")
    if len(raw) != NONCE_LENGTH:
        raise EncodingError(f"nonce must be exactly {NONCE_LENGTH} bytes, got {len(raw)}")
    return raw


def serialize_payload(
    *,
    message: str,
    nonce: str | bytes,
    recipient: str,
    callback_url: Optional[str] = None,
) -> bytes:
    return b"".join(
        (
            _u32(PAYLOAD_TAG),
            _string(message),
            nonce_bytes(nonce),
            _string(recipient),
            _option_string(callback_url or None),
        )
    )


def payload_digest(
    *,
    message: str,
    nonce: str | bytes,
    recipient: str,
    callback_url: Optional[str] = None,
) -> bytes:
    """SHA-256 of the serialised payload, i.e. the bytes the wallet signed."""

    serialized = serialize_payload(
        message=message,
        nonce=nonce,
        recipient=recipient,
        callback_url=callback_url,
    )
    return hashlib.sha256(serialized).digest()


__all__ = [
    "EncodingError",
    "NONCE_LENGTH",
    "PAYLOAD_TAG",
    "nonce_bytes",
    "payload_digest",
    "serialize_payload",
]
