"""HTTP client for the thread/run based agent service."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import httpx

from .models import IdentityAssertion, RunHandle

#: Run states after which the agent service will not change the run again.
FAILED_RUN_STATES = frozenset({"failed", "cancelled", "expired", "incomplete"})
COMPLETED_RUN_STATE = "completed"


class AgentServiceError(RuntimeError):
    """Raised when the agent service rejects a call or returns garbage."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def bearer_from_assertion(assertion: IdentityAssertion) -> str:
    """Credential the agent service accepts: the signed assertion itself, as JSON.

    Kept behind this function so a conventional API token can replace it
    without touching callers.
    """

    return assertion.to_session_json()


class AgentServiceClient:
    """Async client bound to a single bearer credential."""

    def __init__(
        self,
        base_url: str,
        credential: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
            "OpenAI-Beta": "assistants=v2",
        }
        self._timeout = timeout
        self._transport = transport

    async def _request(self, method: str, path: str, *, json: Any = None, params: Any = None) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            response = await client.request(method, path, json=json, params=params)
        if response.status_code >= 400:
            raise AgentServiceError(
                f"Agent service responded with HTTP {response.status_code} for {method} {path}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise AgentServiceError(f"Agent service returned invalid JSON for {method} {path}") from exc
        if not isinstance(data, dict):
            raise AgentServiceError(f"Agent service returned an unexpected payload for {method} {path}")
        return data

    @staticmethod
    def _require_id(data: Dict[str, Any], what: str) -> str:
        value = data.get("id")
        if not isinstance(value, str) or not value:
            raise AgentServiceError(f"Agent service returned no {what} id")
        return value

    async def create_thread(self) -> str:
        return self._require_id(await self._request("POST", "/threads", json={}), "thread")

    async def add_user_message(self, thread_id: str, content: str) -> None:
        await self._request("POST", f"/threads/{thread_id}/messages", json={"role": "user", "content": content})

    async def create_run(self, thread_id: str, assistant_id: str) -> str:
        data = await self._request("POST", f"/threads/{thread_id}/runs", json={"assistant_id": assistant_id})
        return self._require_id(data, "run")

    async def start_run(self, question: str, assistant_id: str) -> RunHandle:
        """Open a thread, post ``question`` and start a run of ``assistant_id``."""

        thread_id = await self.create_thread()
        await self.add_user_message(thread_id, question)
        run_id = await self.create_run(thread_id, assistant_id)
        return RunHandle(thread_id=thread_id, run_id=run_id)

    async def run_status(self, thread_id: str, run_id: str) -> str:
        data = await self._request("GET", f"/threads/{thread_id}/runs/{run_id}")
        status = data.get("status")
        return str(status) if status is not None else "unknown"

    async def list_messages(self, thread_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/threads/{thread_id}/messages", params={"order": "desc"})
        messages = data.get("data") or []
        return [message for message in messages if isinstance(message, dict)]

    async def latest_reply(self, thread_id: str) -> str:
        """Text of the newest assistant message, or ``""`` when there is none."""

        for message in await self.list_messages(thread_id):
            if message.get("role") != "assistant":
                continue
            content = message.get("content") or []
            first = content[0] if isinstance(content, list) and content else None
            if isinstance(first, dict) and first.get("type") == "text":
                text = first.get("text")
                if isinstance(text, dict):
                    return str(text.get("value") or "")
                return str(text or "")
            return ""
        return ""


class AgentClientFactory:
    """Builds one :class:`AgentServiceClient` per credential."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        credential_for: Callable[[IdentityAssertion], str] = bearer_from_assertion,
    ) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport
        self._credential_for = credential_for

    def for_session(self, assertion: IdentityAssertion) -> AgentServiceClient:
        return self.for_credential(self._credential_for(assertion))

    def for_credential(self, credential: str) -> AgentServiceClient:
        return AgentServiceClient(
            self._base_url,
            credential,
            timeout=self._timeout,
            transport=self._transport,
        )


__all__ = [
    "AgentClientFactory",
    "AgentServiceClient",
    "AgentServiceError",
    "COMPLETED_RUN_STATE",
    "FAILED_RUN_STATES",
    "bearer_from_assertion",
]
