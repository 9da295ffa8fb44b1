"""Session storage for verified identity assertions."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from pydantic import ValidationError

from .models import IdentityAssertion


class SessionNotFoundError(RuntimeError):
    """Raised when an account has no live session."""


class SessionStore:
    """Abstract key-value store of serialised sessions keyed by account."""

    def set(self, account_id: str, session_json: str, ttl: int) -> None:
        raise NotImplementedError

    def get(self, account_id: str) -> Optional[str]:
        raise NotImplementedError

    def load(self, account_id: str) -> IdentityAssertion:
        """Return the stored assertion or raise :class:`SessionNotFoundError`."""

        raw = self.get(account_id)
        if not raw:
            raise SessionNotFoundError(f"No session for `{account_id}`")
        try:
            return IdentityAssertion.model_validate_json(raw)
        except ValidationError as exc:
            raise SessionNotFoundError(f"Stored session for `{account_id}` is unreadable") from exc


class MemorySessionStore(SessionStore):
    """Process-local store honouring per-entry expiry."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[float, str]] = {}

    def set(self, account_id: str, session_json: str, ttl: int) -> None:
        with self._lock:
            self._entries[account_id] = (self._clock() + ttl, session_json)

    def get(self, account_id: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(account_id)
            if entry is None:
                return None
            expires_at, payload = entry
            if self._clock() >= expires_at:
                del self._entries[account_id]
                return None
            return payload


@dataclass
class _RedisFacade:
    client: "redis.Redis[bytes]"

    @classmethod
    def create(cls, url: str) -> "_RedisFacade":
        import redis

        return cls(redis.from_url(url))


class RedisSessionStore(SessionStore):
    """Redis-backed sessions stored under ``session:<accountId>`` with ``EX`` expiry."""

    def __init__(self, url: str | None = None, *, client=None) -> None:
        if client is None:
            if url is None:
                raise ValueError("url or client is required")
            client = _RedisFacade.create(url).client
        self._client = client

    @staticmethod
    def _key(account_id: str) -> str:
        return f"session:{account_id}"

    def set(self, account_id: str, session_json: str, ttl: int) -> None:
        self._client.set(self._key(account_id), session_json, ex=ttl)

    def get(self, account_id: str) -> Optional[str]:
        data = self._client.get(self._key(account_id))
        if data is None:
            return None
        return data.decode("utf-8") if isinstance(data, bytes) else str(data)


__all__ = [
    "MemorySessionStore",
    "RedisSessionStore",
    "SessionNotFoundError",
    "SessionStore",
]
