"""Coordinator tying verification, sessions, runs and ledger notifications together."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .agent_client import AgentClientFactory
from .config import RelayConfig, get_config
from .credentials import CredentialVerifier, KeyAuthorityClient
from .ledger import LedgerNotifier, Web3Ledger
from .metrics import RelayMetrics
from .models import AskAgentOut, IdentityAssertion, ResultOut, RunRecord
from .poller import RunPoller
from .sessions import MemorySessionStore, RedisSessionStore, SessionStore
from .state import MemoryRunRegistry, RedisRunRegistry, RunRegistry

LOGGER = logging.getLogger(__name__)


class RunCoordinator:
    """Implements the three relay operations on top of injected collaborators."""

    def __init__(
        self,
        *,
        config: RelayConfig,
        verifier: CredentialVerifier,
        sessions: SessionStore,
        registry: RunRegistry,
        clients: AgentClientFactory,
        ledger: LedgerNotifier,
        metrics: Optional[RelayMetrics] = None,
    ) -> None:
        self.config = config
        self.verifier = verifier
        self.sessions = sessions
        self.registry = registry
        self.clients = clients
        self.ledger = ledger
        self.metrics = metrics or RelayMetrics()
        self.poller = RunPoller(
            registry=registry,
            sessions=sessions,
            clients=clients,
            ledger=ledger,
            interval_seconds=config.poll_interval_seconds,
            call_timeout_seconds=config.request_timeout_seconds,
            run_timeout_seconds=config.run_timeout_seconds,
            fallback_credential=config.agent_api_key,
            metrics=self.metrics,
        )

    async def authenticate(self, assertion: IdentityAssertion) -> bool:
        """Verify ``assertion`` and, when valid, store it as the account's session."""

        if not await self.verifier.authenticate(assertion):
            self.metrics.sessions.labels("rejected").inc()
            LOGGER.info("relay.session.rejected", extra={"account": assertion.account_id})
            return False
        self.sessions.set(assertion.account_id, assertion.to_session_json(), self.config.session_ttl_seconds)
        self.metrics.sessions.labels("stored").inc()
        LOGGER.info("relay.session.stored", extra={"account": assertion.account_id})
        return True

    async def ask(self, account_id: str, question: str) -> AskAgentOut:
        """Start a run for ``question`` on behalf of a signed-in account.

        The registry record is written before the ledger call so the run is
        pollable even when the initiated notification fails.
        """

        session = self.sessions.load(account_id)
        self.config.require("assistant_id")
        client = self.clients.for_session(session)
        handle = await client.start_run(question, str(self.config.assistant_id))
        self.registry.upsert(
            RunRecord(account_id=account_id, thread_id=handle.thread_id, run_id=handle.run_id)
        )
        self.metrics.runs_initiated.inc()
        LOGGER.info(
            "relay.run.initiated",
            extra={"account": account_id, "thread": handle.thread_id, "run": handle.run_id},
        )
        await self.ledger.notify_initiated(account_id, handle.thread_id, run_id=handle.run_id)
        return AskAgentOut(thread_id=handle.thread_id, run_id=handle.run_id)

    def result(self, account_id: str) -> ResultOut:
        return ResultOut.from_record(self.registry.get(account_id))


def build_stores(config: RelayConfig) -> tuple[SessionStore, RunRegistry]:
    if config.state_backend == "redis":
        return RedisSessionStore(config.redis_url), RedisRunRegistry(config.redis_url)
    return MemorySessionStore(), MemoryRunRegistry()


def build_coordinator(config: Optional[RelayConfig] = None) -> RunCoordinator:
    """Wire a coordinator from configuration (RPC endpoints, relayer key, storage backend)."""

    config = config or get_config()
    metrics = RelayMetrics()
    sessions, registry = build_stores(config)
    verifier = CredentialVerifier(
        KeyAuthorityClient(config.key_authority_url, timeout=config.request_timeout_seconds)
    )
    ledger = LedgerNotifier(
        Web3Ledger.from_config(config),
        max_attempts=config.ledger_max_attempts,
        backoff_seconds=config.ledger_backoff_seconds,
        metrics=metrics,
    )
    return RunCoordinator(
        config=config,
        verifier=verifier,
        sessions=sessions,
        registry=registry,
        clients=AgentClientFactory(config.agent_base_url, timeout=config.request_timeout_seconds),
        ledger=ledger,
        metrics=metrics,
    )


_COORDINATOR: RunCoordinator | None = None
_COORDINATOR_LOCK = threading.Lock()


def get_coordinator() -> RunCoordinator:
    global _COORDINATOR
    with _COORDINATOR_LOCK:
        if _COORDINATOR is None:
            _COORDINATOR = build_coordinator()
        return _COORDINATOR


def set_coordinator(coordinator: RunCoordinator | None) -> None:
    global _COORDINATOR
    with _COORDINATOR_LOCK:
        _COORDINATOR = coordinator


__all__ = [
    "RunCoordinator",
    "build_coordinator",
    "build_stores",
    "get_coordinator",
    "set_coordinator",
]
