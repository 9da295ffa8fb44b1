"""Persistence helpers for agent run records."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .models import RunRecord, RunStatus


class RunRegistryError(RuntimeError):
    """Raised when a persistence backend cannot be initialised or read."""


class RunRegistry:
    """Abstract interface for run record backends.

    Exactly one record is kept per account; :meth:`upsert` replaces it.
    :meth:`transition` is the only way a record leaves ``running`` and it is
    atomic per key: the update is applied only when the stored record still
    has ``run_id`` and is still running.
    """

    def upsert(self, record: RunRecord) -> None:
        raise NotImplementedError

    def get(self, account_id: str) -> Optional[RunRecord]:
        raise NotImplementedError

    def running(self) -> List[str]:
        """Return the accounts whose current run is still ``running``."""

        raise NotImplementedError

    def transition(
        self,
        account_id: str,
        run_id: str,
        status: RunStatus,
        *,
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        raise NotImplementedError

    def discard_running(self, account_id: str) -> None:
        """Drop ``account_id`` from the running index without touching its record."""

        raise NotImplementedError


def _apply(record: RunRecord, status: RunStatus, result: Optional[str], error: Optional[str]) -> RunRecord:
    updated = record.model_copy()
    updated.status = status
    if result is not None:
        updated.result = result
    if error is not None:
        updated.error = error
    updated.updated_at = time.time()
    return updated


class MemoryRunRegistry(RunRegistry):
    """In-process registry used for tests and single-node deployments."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, RunRecord] = {}
        self._running: Dict[str, None] = {}

    def upsert(self, record: RunRecord) -> None:
        with self._lock:
            self._records[record.account_id] = record.model_copy()
            if record.status is RunStatus.RUNNING:
                self._running[record.account_id] = None
            else:
                self._running.pop(record.account_id, None)

    def get(self, account_id: str) -> Optional[RunRecord]:
        with self._lock:
            record = self._records.get(account_id)
            return record.model_copy() if record else None

    def running(self) -> List[str]:
        with self._lock:
            return list(self._running)

    def transition(
        self,
        account_id: str,
        run_id: str,
        status: RunStatus,
        *,
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        with self._lock:
            record = self._records.get(account_id)
            if record is None or record.run_id != run_id or record.status is not RunStatus.RUNNING:
                return False
            self._records[account_id] = _apply(record, status, result, error)
            if status is not RunStatus.RUNNING:
                self._running.pop(account_id, None)
            return True

    def discard_running(self, account_id: str) -> None:
        with self._lock:
            self._running.pop(account_id, None)


@dataclass
class _RedisFacade:
    client: "redis.Redis[bytes]"

    @classmethod
    def create(cls, url: str) -> "_RedisFacade":
        try:
            import redis
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RunRegistryError("redis package is required for RedisRunRegistry") from exc
        return cls(redis.from_url(url))


_RUNNING_INDEX = "agent:running"


def _decode(raw: Dict[Any, Any]) -> Dict[str, str]:
    decoded: Dict[str, str] = {}
    for key, value in raw.items():
        key = key.decode("utf-8") if isinstance(key, bytes) else str(key)
        value = value.decode("utf-8") if isinstance(value, bytes) else str(value)
        decoded[key] = value
    return decoded


def _to_hash(record: RunRecord) -> Dict[str, str]:
    payload = {
        "accountId": record.account_id,
        "threadId": record.thread_id,
        "runId": record.run_id,
        "status": record.status.value,
        "createdAt": repr(record.created_at),
        "updatedAt": repr(record.updated_at),
    }
    if record.result is not None:
        payload["result"] = record.result
    if record.error is not None:
        payload["error"] = record.error
    return payload


def _from_hash(data: Dict[str, str]) -> RunRecord:
    try:
        return RunRecord(
            account_id=data["accountId"],
            thread_id=data["threadId"],
            run_id=data["runId"],
            status=RunStatus(data.get("status", RunStatus.RUNNING.value)),
            result=data.get("result"),
            error=data.get("error"),
            created_at=float(data.get("createdAt") or time.time()),
            updated_at=float(data.get("updatedAt") or time.time()),
        )
    except (KeyError, ValueError, ValidationError) as exc:
        raise RunRegistryError(f"Corrupted run record: {exc}") from exc


class RedisRunRegistry(RunRegistry):
    """Redis-backed registry: ``agent:<accountId>`` hashes plus a running-set index."""

    def __init__(self, url: str | None = None, *, client=None) -> None:
        if client is None:
            if url is None:
                raise ValueError("url or client is required")
            client = _RedisFacade.create(url).client
        self._client = client

    @staticmethod
    def _key(account_id: str) -> str:
        return f"agent:{account_id}"

    def upsert(self, record: RunRecord) -> None:
        key = self._key(record.account_id)
        pipe = self._client.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(key, mapping=_to_hash(record))
        if record.status is RunStatus.RUNNING:
            pipe.sadd(_RUNNING_INDEX, record.account_id)
        else:
            pipe.srem(_RUNNING_INDEX, record.account_id)
        pipe.execute()

    def get(self, account_id: str) -> Optional[RunRecord]:
        raw = self._client.hgetall(self._key(account_id))
        if not raw:
            return None
        return _from_hash(_decode(raw))

    def running(self) -> List[str]:
        members: Iterable[Any] = self._client.smembers(_RUNNING_INDEX) or ()
        return sorted(m.decode("utf-8") if isinstance(m, bytes) else str(m) for m in members)

    def transition(
        self,
        account_id: str,
        run_id: str,
        status: RunStatus,
        *,
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        import redis

        key = self._key(account_id)
        with self._client.pipeline() as pipe:
            try:
                pipe.watch(key)
                raw = pipe.hgetall(key)
                if not raw:
                    pipe.unwatch()
                    return False
                record = _from_hash(_decode(raw))
                if record.run_id != run_id or record.status is not RunStatus.RUNNING:
                    pipe.unwatch()
                    return False
                updated = _apply(record, status, result, error)
                pipe.multi()
                pipe.hset(key, mapping=_to_hash(updated))
                if status is not RunStatus.RUNNING:
                    pipe.srem(_RUNNING_INDEX, account_id)
                pipe.execute()
                return True
            except redis.WatchError:
                # A concurrent ask replaced the record; the newer run wins.
                return False

    def discard_running(self, account_id: str) -> None:
        self._client.srem(_RUNNING_INDEX, account_id)


__all__ = [
    "MemoryRunRegistry",
    "RedisRunRegistry",
    "RunRegistry",
    "RunRegistryError",
]
