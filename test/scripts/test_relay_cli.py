from __future__ import annotations

import asyncio
import json

import pytest

from coordinator.lifecycle import set_coordinator
from coordinator.models import IdentityAssertion
from scripts.relay import build_parser, main

from relay_fakes import Harness


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_serve_defaults() -> None:
    args = build_parser().parse_args(["serve"])

    assert (args.host, args.port) == ("0.0.0.0", 8000)


def test_poll_once_prints_report(harness: Harness, capsys: pytest.CaptureFixture[str]) -> None:
    set_coordinator(harness.coordinator)
    assertion = IdentityAssertion.model_validate(harness.sign_in())

    async def scenario() -> None:
        await harness.coordinator.authenticate(assertion)
        await harness.coordinator.ask("alice.test", "hello?")

    asyncio.run(scenario())
    harness.agent.script("r1", "completed")
    harness.agent.replies["t1"] = "hi there"

    assert main(["poll-once"]) == 0

    report = json.loads(capsys.readouterr().out)
    assert report["completed"] == ["alice.test"]
    assert report["errors"] == []


def test_show_reports_missing_record(harness: Harness) -> None:
    set_coordinator(harness.coordinator)

    assert main(["show", "nobody.test"]) == 1
