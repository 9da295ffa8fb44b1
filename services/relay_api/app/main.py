"""FastAPI application serving the relay endpoints and running the poller."""

from __future__ import annotations

import logging
import os
from typing import Final, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from coordinator.config import ConfigurationError
from coordinator.lifecycle import RunCoordinator, get_coordinator, set_coordinator
from routes.relay import router as relay_router

LOGGER: Final[logging.Logger] = logging.getLogger("relay.api")


def _configure_logging() -> None:
    level = os.environ.get("RELAY_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    LOGGER.info("Relay API logging configured", extra={"level": level})


def create_app(coordinator: Optional[RunCoordinator] = None, *, start_poller: bool = True) -> FastAPI:
    """Instantiate the FastAPI application.

    ``coordinator`` overrides the one built from configuration; tests pass
    a fully faked one and usually disable the background poller.
    """

    _configure_logging()
    if coordinator is not None:
        set_coordinator(coordinator)

    app = FastAPI(title="Agent Run Relay", version="0.1.0", docs_url="/docs")
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.include_router(relay_router)

    @app.on_event("startup")
    async def _start_poller() -> None:  # pragma: no cover - FastAPI lifecycle wiring
        if start_poller:
            await get_coordinator().poller.start()

    @app.on_event("shutdown")
    async def _stop_poller() -> None:  # pragma: no cover - FastAPI lifecycle wiring
        if start_poller:
            await get_coordinator().poller.close()

    def _configured() -> RunCoordinator:
        try:
            return get_coordinator()
        except ConfigurationError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.get("/healthz", tags=["health"])
    def root_health() -> dict[str, bool]:
        coordinator_ = _configured()
        return {"ok": True, "poller": coordinator_.poller.running}

    @app.get("/metrics", tags=["health"])
    def metrics() -> Response:
        coordinator_ = _configured()
        return Response(coordinator_.metrics.render(), media_type=coordinator_.metrics.content_type)

    return app


app = create_app()
