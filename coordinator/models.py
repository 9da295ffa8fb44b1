"""Shared Pydantic models for the agent-run relay."""

from __future__ import annotations

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RunStatus(str, Enum):
    """Lifecycle states of a tracked agent run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class IdentityAssertion(BaseModel):
    """Client-signed proof that the caller controls ``account_id``.

    The wire format is the camelCase JSON produced by the wallet; the
    signed fields are ``message``, ``nonce``, ``recipient`` and the optional
    ``callback_url``.
    """

    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId", min_length=1)
    public_key: str = Field(..., alias="publicKey", min_length=1)
    signature: str = Field(..., min_length=1)
    message: str
    nonce: str
    recipient: str
    callback_url: Optional[str] = Field(default=None, alias="callbackUrl")

    def to_session_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class AskAgentIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId", min_length=1)
    question: str


class RunHandle(BaseModel):
    """Opaque identifiers returned by the agent service for a new run."""

    thread_id: str
    run_id: str


class AskAgentOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    thread_id: str = Field(..., serialization_alias="threadId")
    run_id: str = Field(..., serialization_alias="runId")


class RunRecord(BaseModel):
    """Registry entry describing the latest run for an account."""

    account_id: str
    thread_id: str
    run_id: str
    status: RunStatus = RunStatus.RUNNING
    result: Optional[str] = None
    error: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    def age(self, now: float | None = None) -> float:
        return max(0.0, (now if now is not None else time.time()) - self.created_at)


class ResultOut(BaseModel):
    """Payload served by ``GET /api/result``."""

    status: str
    result: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_record(cls, record: Optional[RunRecord]) -> "ResultOut":
        if record is None:
            return cls(status="pending")
        if record.status is RunStatus.FAILED:
            return cls(status="failed", error=record.error)
        if record.status is RunStatus.COMPLETED:
            return cls(status="completed", result=record.result or "")
        return cls(status="pending")


__all__ = [
    "AskAgentIn",
    "AskAgentOut",
    "IdentityAssertion",
    "ResultOut",
    "RunHandle",
    "RunRecord",
    "RunStatus",
]
