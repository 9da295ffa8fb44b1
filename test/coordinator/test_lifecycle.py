from __future__ import annotations

import asyncio
import json

import pytest

from coordinator.agent_client import AgentServiceError
from coordinator.config import ConfigurationError, RelayConfig
from coordinator.ledger import LedgerUnavailableError
from coordinator.lifecycle import build_coordinator, build_stores
from coordinator.models import IdentityAssertion, RunStatus
from coordinator.sessions import MemorySessionStore, SessionNotFoundError
from coordinator.state import MemoryRunRegistry

from relay_fakes import Harness


def _sign_in(harness: Harness, account_id: str = "alice.test") -> IdentityAssertion:
    assertion = IdentityAssertion.model_validate(harness.sign_in(account_id))
    assert asyncio.run(harness.coordinator.authenticate(assertion)) is True
    return assertion


def test_authenticate_stores_session_for_ttl(harness: Harness) -> None:
    assertion = _sign_in(harness)

    stored = harness.coordinator.sessions.load("alice.test")
    assert stored == assertion
    assert harness.coordinator.metrics.registry.get_sample_value(
        "relay_sessions_total", {"outcome": "stored"}
    ) == 1.0


def test_rejected_assertion_does_not_touch_sessions(harness: Harness) -> None:
    assertion = IdentityAssertion.model_validate(harness.assertion())

    assert asyncio.run(harness.coordinator.authenticate(assertion)) is False
    assert harness.coordinator.sessions.get("alice.test") is None


def test_ask_without_session_fails(harness: Harness) -> None:
    with pytest.raises(SessionNotFoundError):
        asyncio.run(harness.coordinator.ask("alice.test", "hello?"))

    assert harness.coordinator.registry.get("alice.test") is None
    assert harness.agent.authorizations == []


def test_ask_starts_run_with_session_credential(harness: Harness) -> None:
    assertion = _sign_in(harness)

    out = asyncio.run(harness.coordinator.ask("alice.test", "What is a relay?"))

    assert out.model_dump(by_alias=True) == {"success": True, "threadId": "t1", "runId": "r1"}
    assert harness.agent.messages["t1"] == [{"role": "user", "content": "What is a relay?"}]
    bearer = harness.agent.authorizations[0]
    assert bearer.startswith("Bearer {")
    assert json.loads(bearer[len("Bearer "):])["accountId"] == assertion.account_id
    record = harness.coordinator.registry.get("alice.test")
    assert (record.thread_id, record.run_id, record.status) == ("t1", "r1", RunStatus.RUNNING)
    assert harness.ledger.events("AgentInitiated") == [("alice.test", "t1")]


def test_agent_failure_leaves_no_record(harness: Harness) -> None:
    _sign_in(harness)
    harness.agent.fail_create_with = 500

    with pytest.raises(AgentServiceError) as excinfo:
        asyncio.run(harness.coordinator.ask("alice.test", "hello?"))

    assert excinfo.value.status_code == 500
    assert harness.coordinator.registry.get("alice.test") is None
    assert harness.ledger.sent == []


def test_initiated_notification_failure_keeps_run_pollable(harness: Harness) -> None:
    _sign_in(harness)
    harness.ledger.failures = [LedgerUnavailableError("rpc down")] * 3

    with pytest.raises(LedgerUnavailableError):
        asyncio.run(harness.coordinator.ask("alice.test", "hello?"))

    assert harness.coordinator.registry.running() == ["alice.test"]
    assert harness.sleeps == [0.5, 1.0]


def test_ask_requires_assistant_id(make_harness) -> None:
    harness = make_harness(assistant_id=None)
    _sign_in(harness)

    with pytest.raises(ConfigurationError):
        asyncio.run(harness.coordinator.ask("alice.test", "hello?"))


def test_build_stores_defaults_to_memory() -> None:
    sessions, registry = build_stores(RelayConfig())

    assert isinstance(sessions, MemorySessionStore)
    assert isinstance(registry, MemoryRunRegistry)


def test_build_coordinator_requires_ledger_settings() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        build_coordinator(RelayConfig(assistant_id="agent"))

    assert "EVM_RPC_URL" in str(excinfo.value)
