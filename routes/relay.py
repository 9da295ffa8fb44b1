"""FastAPI router exposing the session, ask and result endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from coordinator.agent_client import AgentServiceError
from coordinator.config import ConfigurationError
from coordinator.ledger import LedgerError, LedgerRevertedError
from coordinator.lifecycle import RunCoordinator, get_coordinator
from coordinator.models import AskAgentIn, IdentityAssertion, ResultOut
from coordinator.sessions import SessionNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["relay"])


def _coordinator() -> RunCoordinator:
    try:
        return get_coordinator()
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def _handle_error(exc: Exception) -> None:
    if isinstance(exc, ConfigurationError):
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if isinstance(exc, AgentServiceError):
        raise HTTPException(status_code=502, detail="AGENT_SERVICE_UNAVAILABLE") from exc
    if isinstance(exc, LedgerRevertedError):
        raise HTTPException(status_code=502, detail="LEDGER_REVERTED") from exc
    if isinstance(exc, LedgerError):
        raise HTTPException(status_code=502, detail="LEDGER_UNAVAILABLE") from exc
    raise exc


@router.post("/store-session")
async def store_session(
    payload: IdentityAssertion,
    coordinator: RunCoordinator = Depends(_coordinator),
) -> JSONResponse:
    if not await coordinator.authenticate(payload):
        return JSONResponse({"error": "Invalid session"}, status_code=401)
    return JSONResponse({"success": True})


@router.post("/ask-agent")
async def ask_agent(
    payload: AskAgentIn,
    coordinator: RunCoordinator = Depends(_coordinator),
) -> JSONResponse:
    try:
        out = await coordinator.ask(payload.account_id, payload.question)
    except SessionNotFoundError:
        return JSONResponse({"error": "Session not found"}, status_code=401)
    except (AgentServiceError, LedgerError, ConfigurationError) as exc:
        logger.error("relay.ask.failed", extra={"account": payload.account_id, "error": str(exc)})
        _handle_error(exc)
    return JSONResponse(out.model_dump(by_alias=True))


@router.get("/result", response_model=ResultOut, response_model_exclude_none=True)
def get_result(
    account_id: str = Query(..., alias="accountId"),
    coordinator: RunCoordinator = Depends(_coordinator),
) -> ResultOut:
    return coordinator.result(account_id)


__all__ = ["router", "store_session", "ask_agent", "get_result"]
