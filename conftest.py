"""Repository-wide pytest configuration.

Keeps the repository root on ``sys.path`` so ``coordinator``, ``routes`` and
``services`` resolve regardless of the invocation directory, and resets the
process-wide relay singletons between tests.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("PYTHONPATH", str(ROOT))


@pytest.fixture(autouse=True)
def _reset_relay_state():
    """Clear the cached configuration and coordinator around each test."""

    from coordinator.config import reset_config
    from coordinator.lifecycle import set_coordinator

    for key in ("RELAY_CONFIG", "RELAY_STATE_BACKEND", "AGENT_ID", "AGENT_API_KEY"):
        os.environ.pop(key, None)
    reset_config()
    set_coordinator(None)
    yield
    reset_config()
    set_coordinator(None)
