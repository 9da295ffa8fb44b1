"""Tests for the redis-backed run registry against an in-memory redis double."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Set

import pytest
import redis

from coordinator.models import RunRecord, RunStatus
from coordinator.state import RedisRunRegistry, RunRegistryError


class FakeRedis:
    """Hash, set and WATCH/MULTI semantics for the commands the registry uses."""

    def __init__(self) -> None:
        self.hashes: Dict[str, Dict[bytes, bytes]] = {}
        self.sets: Dict[str, Set[bytes]] = {}
        self.versions: Dict[str, int] = {}
        self.before_commit: Optional[Callable[[], None]] = None

    @staticmethod
    def _b(value: Any) -> bytes:
        return value if isinstance(value, bytes) else str(value).encode("utf-8")

    def _touch(self, key: str) -> None:
        self.versions[key] = self.versions.get(key, 0) + 1

    def delete(self, key: str) -> int:
        removed = int(self.hashes.pop(key, None) is not None)
        self._touch(key)
        return removed

    def hset(self, key: str, mapping: Dict[str, Any]) -> int:
        target = self.hashes.setdefault(key, {})
        for field, value in mapping.items():
            target[self._b(field)] = self._b(value)
        self._touch(key)
        return len(mapping)

    def hgetall(self, key: str) -> Dict[bytes, bytes]:
        return dict(self.hashes.get(key, {}))

    def sadd(self, key: str, member: str) -> int:
        self.sets.setdefault(key, set()).add(self._b(member))
        return 1

    def srem(self, key: str, member: str) -> int:
        self.sets.get(key, set()).discard(self._b(member))
        return 1

    def smembers(self, key: str) -> Set[bytes]:
        return set(self.sets.get(key, set()))

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, server: FakeRedis) -> None:
        self._server = server
        self._watched: Dict[str, int] = {}
        self._immediate = False
        self._queued: List[Callable[[], Any]] = []

    def __enter__(self) -> "FakePipeline":
        return self

    def __exit__(self, *exc: Any) -> None:
        self._watched.clear()
        self._queued.clear()

    def watch(self, *keys: str) -> None:
        self._immediate = True
        for key in keys:
            self._watched[key] = self._server.versions.get(key, 0)

    def unwatch(self) -> None:
        self._watched.clear()
        self._immediate = False

    def multi(self) -> None:
        self._immediate = False

    def _run(self, command: Callable[[], Any]) -> Any:
        if self._immediate:
            return command()
        self._queued.append(command)
        return self

    def delete(self, key: str) -> Any:
        return self._run(lambda: self._server.delete(key))

    def hset(self, key: str, mapping: Dict[str, Any]) -> Any:
        return self._run(lambda: self._server.hset(key, mapping=mapping))

    def hgetall(self, key: str) -> Any:
        return self._run(lambda: self._server.hgetall(key))

    def sadd(self, key: str, member: str) -> Any:
        return self._run(lambda: self._server.sadd(key, member))

    def srem(self, key: str, member: str) -> Any:
        return self._run(lambda: self._server.srem(key, member))

    def execute(self) -> List[Any]:
        if self._watched and self._server.before_commit is not None:
            hook, self._server.before_commit = self._server.before_commit, None
            hook()
        for key, version in self._watched.items():
            if self._server.versions.get(key, 0) != version:
                self._queued.clear()
                raise redis.WatchError(f"Watched variable changed: {key}")
        results = [command() for command in self._queued]
        self._queued.clear()
        self._watched.clear()
        return results


def _record(account: str = "alice.test", run: str = "r1", thread: str = "t1") -> RunRecord:
    return RunRecord(account_id=account, thread_id=thread, run_id=run)


@pytest.fixture
def server() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def registry(server: FakeRedis) -> RedisRunRegistry:
    return RedisRunRegistry(client=server)


def test_upsert_writes_camel_case_hash_and_running_index(server: FakeRedis, registry: RedisRunRegistry) -> None:
    registry.upsert(_record())

    stored = server.hashes["agent:alice.test"]
    assert stored[b"accountId"] == b"alice.test"
    assert stored[b"threadId"] == b"t1"
    assert stored[b"runId"] == b"r1"
    assert stored[b"status"] == b"running"
    assert b"result" not in stored
    assert server.sets["agent:running"] == {b"alice.test"}
    assert registry.get("alice.test").run_id == "r1"


def test_upsert_replaces_previous_fields(server: FakeRedis, registry: RedisRunRegistry) -> None:
    registry.upsert(_record())
    registry.transition("alice.test", "r1", RunStatus.COMPLETED, result="first answer")

    registry.upsert(_record(run="r2", thread="t2"))

    record = registry.get("alice.test")
    assert record.run_id == "r2"
    assert record.status is RunStatus.RUNNING
    assert record.result is None
    assert registry.running() == ["alice.test"]


def test_transition_completes_and_leaves_running_index(registry: RedisRunRegistry) -> None:
    registry.upsert(_record())
    registry.upsert(_record("bob.test", "r2", "t2"))

    assert registry.transition("alice.test", "r1", RunStatus.COMPLETED, result="hi there") is True

    record = registry.get("alice.test")
    assert record.status is RunStatus.COMPLETED
    assert record.result == "hi there"
    assert registry.running() == ["bob.test"]


def test_transition_rejects_stale_run_id(registry: RedisRunRegistry) -> None:
    registry.upsert(_record(run="r1"))
    registry.upsert(_record(run="r2", thread="t2"))

    assert registry.transition("alice.test", "r1", RunStatus.COMPLETED, result="stale") is False
    assert registry.get("alice.test").status is RunStatus.RUNNING
    assert registry.running() == ["alice.test"]


def test_transition_leaves_terminal_record_alone(registry: RedisRunRegistry) -> None:
    registry.upsert(_record())
    registry.transition("alice.test", "r1", RunStatus.FAILED, error="expired")

    assert registry.transition("alice.test", "r1", RunStatus.COMPLETED, result="late") is False

    record = registry.get("alice.test")
    assert record.status is RunStatus.FAILED
    assert record.error == "expired"
    assert record.result is None


def test_transition_for_unknown_account_is_rejected(registry: RedisRunRegistry) -> None:
    assert registry.transition("ghost.test", "r1", RunStatus.COMPLETED, result="x") is False
    assert registry.get("ghost.test") is None


def test_concurrent_ask_during_transition_wins(server: FakeRedis, registry: RedisRunRegistry) -> None:
    registry.upsert(_record(run="r1"))
    server.before_commit = lambda: registry.upsert(_record(run="r2", thread="t2"))

    assert registry.transition("alice.test", "r1", RunStatus.COMPLETED, result="stale") is False

    record = registry.get("alice.test")
    assert record.run_id == "r2"
    assert record.status is RunStatus.RUNNING
    assert registry.running() == ["alice.test"]


def test_discard_running_keeps_hash(server: FakeRedis, registry: RedisRunRegistry) -> None:
    registry.upsert(_record())

    registry.discard_running("alice.test")

    assert registry.running() == []
    assert "agent:alice.test" in server.hashes


def test_corrupted_hash_raises_registry_error(server: FakeRedis, registry: RedisRunRegistry) -> None:
    server.hset("agent:alice.test", mapping={"accountId": "alice.test", "status": "running"})

    with pytest.raises(RunRegistryError):
        registry.get("alice.test")

    server.hset("agent:alice.test", mapping={"threadId": "t1", "runId": "r1", "status": "exploded"})

    with pytest.raises(RunRegistryError):
        registry.get("alice.test")


def test_registry_requires_url_or_client() -> None:
    with pytest.raises(ValueError):
        RedisRunRegistry()
