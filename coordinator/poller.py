"""Background loop that advances running agent runs to a terminal state."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .agent_client import COMPLETED_RUN_STATE, FAILED_RUN_STATES, AgentClientFactory, AgentServiceClient
from .ledger import LedgerNotifier, LedgerRevertedError
from .metrics import RelayMetrics
from .models import RunRecord, RunStatus
from .sessions import SessionNotFoundError, SessionStore
from .state import RunRegistry

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TickReport:
    """Outcome of a single poll pass, mostly useful to tests and the CLI."""

    examined: int = 0
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    skipped: bool = False


class RunPoller:
    """Polls the agent service for every running record on a fixed interval.

    Ticks never overlap: a tick that starts while the previous one is still
    in flight is skipped. Each record is processed under its own timeout and
    a failure on one record does not stop the others.
    """

    def __init__(
        self,
        *,
        registry: RunRegistry,
        sessions: SessionStore,
        clients: AgentClientFactory,
        ledger: LedgerNotifier,
        interval_seconds: float = 10.0,
        call_timeout_seconds: float = 30.0,
        run_timeout_seconds: float = 0.0,
        fallback_credential: Optional[str] = None,
        metrics: Optional[RelayMetrics] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._sessions = sessions
        self._clients = clients
        self._ledger = ledger
        self._interval = interval_seconds
        self._call_timeout = call_timeout_seconds
        self._run_timeout = run_timeout_seconds
        self._fallback_credential = fallback_credential
        self._metrics = metrics
        self._clock = clock
        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run_loop(), name="relay-run-poller")

    async def close(self) -> None:
        task = self._task
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover - tick already isolates per-run failures
                LOGGER.exception("relay.poll.tick_failed")

    async def tick(self) -> TickReport:
        """Examine every running record once."""

        if self._tick_lock.locked():
            LOGGER.warning("relay.poll.skipped", extra={"reason": "previous tick still in flight"})
            return TickReport(skipped=True)
        async with self._tick_lock:
            report = TickReport()
            for account_id in self._registry.running():
                report.examined += 1
                try:
                    outcome = await self._poll_account(account_id)
                except Exception as exc:
                    report.errors.append(account_id)
                    if self._metrics is not None:
                        self._metrics.poll_errors.inc()
                    LOGGER.warning(
                        "relay.poll.error",
                        extra={"account": account_id, "error": f"{type(exc).__name__}: {exc}"},
                    )
                    continue
                if outcome is RunStatus.COMPLETED:
                    report.completed.append(account_id)
                elif outcome is RunStatus.FAILED:
                    report.failed.append(account_id)
            return report

    def _client_for(self, account_id: str) -> Optional[AgentServiceClient]:
        try:
            return self._clients.for_session(self._sessions.load(account_id))
        except SessionNotFoundError:
            if self._fallback_credential:
                return self._clients.for_credential(self._fallback_credential)
            return None

    async def _poll_account(self, account_id: str) -> Optional[RunStatus]:
        record = self._registry.get(account_id)
        if record is None or record.status is not RunStatus.RUNNING:
            self._registry.discard_running(account_id)
            return None

        if self._run_timeout and record.age(self._clock()) > self._run_timeout:
            return self._finish(record, RunStatus.FAILED, error="timed_out")

        client = self._client_for(account_id)
        if client is None:
            return self._finish(record, RunStatus.FAILED, error="session_expired")

        status = await asyncio.wait_for(client.run_status(record.thread_id, record.run_id), self._call_timeout)
        if status == COMPLETED_RUN_STATE:
            result = await asyncio.wait_for(client.latest_reply(record.thread_id), self._call_timeout)
            try:
                await self._ledger.notify_finished(account_id, record.thread_id, result, run_id=record.run_id)
            except LedgerRevertedError:
                return self._finish(record, RunStatus.FAILED, result=result, error="ledger_reverted")
            return self._finish(record, RunStatus.COMPLETED, result=result)
        if status in FAILED_RUN_STATES:
            return self._finish(record, RunStatus.FAILED, error=status)
        LOGGER.debug("relay.poll.pending", extra={"account": account_id, "run": record.run_id, "status": status})
        return None

    def _finish(
        self,
        record: RunRecord,
        status: RunStatus,
        *,
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[RunStatus]:
        applied = self._registry.transition(record.account_id, record.run_id, status, result=result, error=error)
        if not applied:
            LOGGER.info(
                "relay.poll.superseded",
                extra={"account": record.account_id, "run": record.run_id},
            )
            return None
        if self._metrics is not None:
            self._metrics.runs_finished.labels(status.value).inc()
        LOGGER.info(
            "relay.poll.%s" % status.value,
            extra={"account": record.account_id, "run": record.run_id, "error": error},
        )
        return status


__all__ = ["RunPoller", "TickReport"]
