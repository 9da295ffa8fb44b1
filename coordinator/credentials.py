"""Verification of wallet identity assertions."""

from __future__ import annotations

import base64
import binascii
import logging
import time
from typing import Any, Dict, List, Optional

import base58
import httpx
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from .borsh import EncodingError, payload_digest
from .models import IdentityAssertion

LOGGER = logging.getLogger(__name__)

FULL_ACCESS = "FullAccess"
_ED25519_PREFIX = "ed25519:"


class KeyAuthorityError(RuntimeError):
    """Raised when the access-key lookup cannot be completed."""


class KeyAuthorityClient:
    """Minimal async JSON-RPC client for the chain's access-key index."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def _rpc(self, method: str, params: Any) -> Any:
        payload = {"jsonrpc": "2.0", "id": int(time.time() * 1000), "method": method, "params": params}
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(self._url, json=payload)
        if response.status_code >= 400:
            raise KeyAuthorityError(f"Key authority responded with HTTP {response.status_code}")
        data = response.json()
        if not isinstance(data, dict):
            raise KeyAuthorityError("Key authority returned a non-object JSON-RPC response")
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise KeyAuthorityError(str(message or "Key authority error"))
        return data.get("result")

    async def access_keys(self, account_id: str) -> List[Dict[str, Any]]:
        """Return the access-key records registered for ``account_id``."""

        result = await self._rpc("query", [f"access_key/{account_id}", ""])
        if not isinstance(result, dict):
            raise KeyAuthorityError("Key authority returned an invalid result payload")
        keys = result.get("keys") or []
        if not isinstance(keys, list):
            raise KeyAuthorityError("Key authority returned an invalid key list")
        return [entry for entry in keys if isinstance(entry, dict)]


def _permission(entry: Dict[str, Any]) -> Any:
    access_key = entry.get("access_key")
    if isinstance(access_key, dict):
        return access_key.get("permission")
    return entry.get("permission")


def decode_public_key(public_key: str) -> bytes:
    """Decode an ``ed25519:<base58>`` public key into its 32 raw bytes."""

    text = public_key.strip()
    if ":" in text:
        if not text.startswith(_ED25519_PREFIX):
            raise ValueError(f"unsupported key type in {text.split(':', 1)[0]!r}")
        text = text[len(_ED25519_PREFIX):]
    raw = base58.b58decode(text)
    if len(raw) != 32:
        raise ValueError("ed25519 public keys are 32 bytes")
    return raw


def verify_signature(assertion: IdentityAssertion) -> bool:
    """Check the assertion signature over the canonical payload digest."""

    try:
        digest = payload_digest(
            message=assertion.message,
            nonce=assertion.nonce,
            recipient=assertion.recipient,
            callback_url=assertion.callback_url,
        )
        signature = base64.b64decode(assertion.signature, validate=True)
        verify_key = VerifyKey(decode_public_key(assertion.public_key))
        verify_key.verify(digest, signature)
    except EncodingError as exc:
        LOGGER.info("relay.auth.payload_rejected", extra={"account": assertion.account_id, "reason": str(exc)})
        return False
    except (binascii.Error, ValueError) as exc:
        LOGGER.info("relay.auth.malformed", extra={"account": assertion.account_id, "reason": str(exc)})
        return False
    except BadSignatureError:
        LOGGER.info("relay.auth.bad_signature", extra={"account": assertion.account_id})
        return False
    return True


class CredentialVerifier:
    """Accepts an assertion only when the key holds full access and the signature checks out."""

    def __init__(self, key_authority: KeyAuthorityClient) -> None:
        self._key_authority = key_authority

    async def key_has_full_access(self, account_id: str, public_key: str) -> bool:
        try:
            keys = await self._key_authority.access_keys(account_id)
        except (KeyAuthorityError, httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("relay.auth.key_lookup_failed", extra={"account": account_id, "error": str(exc)})
            return False
        return any(
            entry.get("public_key") == public_key and _permission(entry) == FULL_ACCESS
            for entry in keys
        )

    async def authenticate(self, assertion: IdentityAssertion) -> bool:
        full_access = await self.key_has_full_access(assertion.account_id, assertion.public_key)
        signature_valid = verify_signature(assertion)
        return full_access and signature_valid


__all__ = [
    "CredentialVerifier",
    "FULL_ACCESS",
    "KeyAuthorityClient",
    "KeyAuthorityError",
    "decode_public_key",
    "verify_signature",
]
