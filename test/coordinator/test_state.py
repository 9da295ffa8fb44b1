from __future__ import annotations

from coordinator.models import RunRecord, RunStatus
from coordinator.state import MemoryRunRegistry


def _record(account: str = "alice.test", run: str = "r1", thread: str = "t1") -> RunRecord:
    return RunRecord(account_id=account, thread_id=thread, run_id=run)


def test_upsert_indexes_running_records() -> None:
    registry = MemoryRunRegistry()
    registry.upsert(_record())
    registry.upsert(_record("bob.test", "r2", "t2"))

    assert sorted(registry.running()) == ["alice.test", "bob.test"]
    assert registry.get("alice.test").status is RunStatus.RUNNING
    assert registry.get("carol.test") is None


def test_transition_moves_record_out_of_running_index() -> None:
    registry = MemoryRunRegistry()
    registry.upsert(_record())

    assert registry.transition("alice.test", "r1", RunStatus.COMPLETED, result="hi there") is True

    record = registry.get("alice.test")
    assert record.status is RunStatus.COMPLETED
    assert record.result == "hi there"
    assert registry.running() == []


def test_transition_is_rejected_for_stale_run_id() -> None:
    registry = MemoryRunRegistry()
    registry.upsert(_record(run="r1"))
    registry.upsert(_record(run="r2", thread="t2"))

    assert registry.transition("alice.test", "r1", RunStatus.COMPLETED, result="old") is False

    record = registry.get("alice.test")
    assert record.run_id == "r2"
    assert record.status is RunStatus.RUNNING
    assert record.result is None


def test_terminal_records_cannot_transition_again() -> None:
    registry = MemoryRunRegistry()
    registry.upsert(_record())
    registry.transition("alice.test", "r1", RunStatus.FAILED, error="cancelled")

    assert registry.transition("alice.test", "r1", RunStatus.COMPLETED, result="late") is False
    assert registry.get("alice.test").error == "cancelled"


def test_new_ask_after_completion_is_running_again() -> None:
    registry = MemoryRunRegistry()
    registry.upsert(_record())
    registry.transition("alice.test", "r1", RunStatus.COMPLETED, result="first")

    registry.upsert(_record(run="r2", thread="t2"))

    record = registry.get("alice.test")
    assert record.status is RunStatus.RUNNING
    assert record.result is None
    assert registry.running() == ["alice.test"]


def test_returned_records_are_copies() -> None:
    registry = MemoryRunRegistry()
    registry.upsert(_record())

    record = registry.get("alice.test")
    record.status = RunStatus.COMPLETED

    assert registry.get("alice.test").status is RunStatus.RUNNING


def test_discard_running_keeps_the_record() -> None:
    registry = MemoryRunRegistry()
    registry.upsert(_record())

    registry.discard_running("alice.test")

    assert registry.running() == []
    assert registry.get("alice.test") is not None
