"""Prometheus counters for the relay."""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest


class RelayMetrics:
    """Counters shared by the coordinator, poller and ledger notifier."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self) -> None:
        self.registry = CollectorRegistry()
        self.sessions = Counter(
            "relay_sessions_total",
            "Identity assertions processed by outcome",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self.runs_initiated = Counter(
            "relay_runs_initiated_total",
            "Agent runs started",
            registry=self.registry,
        )
        self.runs_finished = Counter(
            "relay_runs_finished_total",
            "Agent runs moved to a terminal state",
            labelnames=("status",),
            registry=self.registry,
        )
        self.poll_errors = Counter(
            "relay_poll_errors_total",
            "Per-run failures raised while polling",
            registry=self.registry,
        )
        self.ledger_transactions = Counter(
            "relay_ledger_transactions_total",
            "Ledger notifications by event and outcome",
            labelnames=("event", "outcome"),
            registry=self.registry,
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)


__all__ = ["RelayMetrics"]
