#!/usr/bin/env python3
"""Operator CLI for the agent-run relay."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from coordinator.lifecycle import get_coordinator

LOGGER = logging.getLogger("relay.cli")


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def handle_poll_once() -> int:
    report = await get_coordinator().poller.tick()
    print(
        json.dumps(
            {
                "examined": report.examined,
                "completed": report.completed,
                "failed": report.failed,
                "errors": report.errors,
                "skipped": report.skipped,
            },
            sort_keys=True,
        )
    )
    return 1 if report.errors else 0


def handle_show(account_id: str) -> int:
    coordinator = get_coordinator()
    record = coordinator.registry.get(account_id)
    if record is None:
        LOGGER.warning("No run recorded for %s", account_id)
        return 1
    print(record.model_dump_json(indent=2))
    return 0


def handle_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("services.relay_api.app.main:app", host=args.host, port=args.port, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agent-run relay operator toolkit")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API with the background poller")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    sub.add_parser("poll-once", help="Run a single poll pass over running records and exit")

    show = sub.add_parser("show", help="Print the stored run record for an account")
    show.add_argument("account_id")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    command = args.command
    if command == "serve":
        return handle_serve(args)
    if command == "poll-once":
        return asyncio.run(handle_poll_once())
    if command == "show":
        return handle_show(args.account_id)
    parser.error(f"Unsupported command {command}")  # pragma: no cover - argparse enforces valid subcommands
    return 2


if __name__ == "__main__":  # pragma: no cover - manual execution
    sys.exit(main())
