"""Agent-run lifecycle coordinator: sessions, runs, polling and ledger notifications."""

from .config import RelayConfig, get_config, load_config
from .lifecycle import RunCoordinator, build_coordinator, get_coordinator, set_coordinator
from .models import IdentityAssertion, ResultOut, RunRecord, RunStatus
from .poller import RunPoller

__all__ = [
    "IdentityAssertion",
    "RelayConfig",
    "ResultOut",
    "RunCoordinator",
    "RunPoller",
    "RunRecord",
    "RunStatus",
    "build_coordinator",
    "get_config",
    "get_coordinator",
    "load_config",
    "set_coordinator",
]
