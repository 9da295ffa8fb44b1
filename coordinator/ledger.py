"""On-chain notifications for agent run lifecycle transitions."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from web3 import Web3
from web3.exceptions import ContractLogicError

from .config import RelayConfig
from .metrics import RelayMetrics

LOGGER = logging.getLogger(__name__)

EVENT_INITIATED = "initiated"
EVENT_FINISHED = "finished"

QUERY_STATES = ("Pending", "Initiated", "Finished")

RELAY_ABI: List[Dict[str, Any]] = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "user", "type": "address"},
            {"indexed": False, "internalType": "string", "name": "queryText", "type": "string"},
            {"indexed": True, "internalType": "uint256", "name": "runId", "type": "uint256"},
        ],
        "name": "QueryInitiated",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "user", "type": "address"},
            {"indexed": True, "internalType": "uint256", "name": "runId", "type": "uint256"},
        ],
        "name": "QueryFinished",
        "type": "event",
    },
    {
        "inputs": [
            {"internalType": "string", "name": "accountId", "type": "string"},
            {"internalType": "string", "name": "threadId", "type": "string"},
        ],
        "name": "AgentInitiated",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "string", "name": "accountId", "type": "string"},
            {"internalType": "string", "name": "threadId", "type": "string"},
            {"internalType": "string", "name": "result", "type": "string"},
        ],
        "name": "AgentFinished",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "string", "name": "_queryText", "type": "string"}],
        "name": "submitQuery",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "address", "name": "_user", "type": "address"},
            {"internalType": "uint256", "name": "_runId", "type": "uint256"},
        ],
        "name": "finishQuery",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "owner",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "name": "queries",
        "outputs": [
            {"internalType": "address", "name": "user", "type": "address"},
            {"internalType": "string", "name": "queryText", "type": "string"},
            {"internalType": "enum QueryProcessor.QueryState", "name": "state", "type": "uint8"},
            {"internalType": "uint256", "name": "runId", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


class LedgerError(RuntimeError):
    """Base class for ledger notification failures."""


class LedgerUnavailableError(LedgerError):
    """Transient failure: RPC unreachable, receipt wait timed out, nonce races."""


class LedgerRevertedError(LedgerError):
    """Terminal failure: the contract rejected the call."""


class LedgerTransport(Protocol):
    """Subset of contract access the notifier needs."""

    async def send(self, function: str, args: Sequence[Any]) -> str:  # pragma: no cover - protocol
        """Sign and broadcast a state-changing call and return its tx hash."""

    async def wait(self, tx_hash: str) -> None:  # pragma: no cover - protocol
        """Block until ``tx_hash`` is mined; raise :class:`LedgerRevertedError` if it failed."""

    async def call(self, function: str, args: Sequence[Any]) -> Any:  # pragma: no cover - protocol
        """Evaluate a read-only contract function."""


class Web3Ledger:
    """Relayer-signed contract calls through a JSON-RPC provider."""

    def __init__(
        self,
        w3: Web3,
        contract_address: str,
        private_key: str,
        *,
        chain_id: Optional[int] = None,
        receipt_timeout: float = 180.0,
        abi: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self._w3 = w3
        self._contract = w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=abi or RELAY_ABI)
        self._account = w3.eth.account.from_key(private_key)
        self._chain_id = chain_id
        self._receipt_timeout = receipt_timeout
        self._send_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: RelayConfig) -> "Web3Ledger":
        config.require("evm_rpc_url", "contract_address", "relayer_private_key")
        w3 = Web3(Web3.HTTPProvider(config.evm_rpc_url, request_kwargs={"timeout": config.request_timeout_seconds}))
        return cls(
            w3,
            str(config.contract_address),
            str(config.relayer_private_key),
            chain_id=config.chain_id,
            receipt_timeout=config.receipt_timeout_seconds,
        )

    @property
    def sender(self) -> str:
        return self._account.address

    def _build_tx(self, func) -> dict:
        sender = self._account.address
        tx = func.build_transaction({"from": sender, "nonce": self._w3.eth.get_transaction_count(sender, "pending")})
        if self._chain_id:
            tx["chainId"] = self._chain_id
        return tx

    async def send(self, function: str, args: Sequence[Any]) -> str:
        func = getattr(self._contract.functions, function)(*args)
        # Nonce allocation and broadcast must not interleave between callers.
        async with self._send_lock:
            try:
                tx = await asyncio.to_thread(self._build_tx, func)
                signed = await asyncio.to_thread(self._account.sign_transaction, tx)
                tx_hash = await asyncio.to_thread(self._w3.eth.send_raw_transaction, signed.raw_transaction)
            except ContractLogicError as exc:
                raise LedgerRevertedError(f"{function} reverted: {exc}") from exc
            except Exception as exc:
                raise LedgerUnavailableError(f"{function} could not be broadcast: {exc}") from exc
        return Web3.to_hex(tx_hash)

    async def wait(self, tx_hash: str) -> None:
        try:
            receipt = await asyncio.to_thread(
                self._w3.eth.wait_for_transaction_receipt,
                tx_hash,
                timeout=self._receipt_timeout,
            )
        except Exception as exc:
            raise LedgerUnavailableError(f"transaction {tx_hash} not confirmed: {exc}") from exc
        if int(receipt.get("status", 1)) == 0:
            raise LedgerRevertedError(f"transaction {tx_hash} reverted")

    async def call(self, function: str, args: Sequence[Any]) -> Any:
        func = getattr(self._contract.functions, function)(*args)
        try:
            return await asyncio.to_thread(func.call)
        except ContractLogicError as exc:
            raise LedgerRevertedError(f"{function} reverted: {exc}") from exc
        except Exception as exc:
            raise LedgerUnavailableError(f"{function} call failed: {exc}") from exc


def idempotency_key(account_id: str, run_id: str, event: str) -> str:
    return hashlib.sha256(f"{account_id}:{run_id}:{event}".encode("utf-8")).hexdigest()


class LedgerNotifier:
    """Sends lifecycle notifications with bounded retries and de-duplication.

    A notification is identified by ``(account, run, event)``. Once a
    notification has been confirmed, repeating it returns the recorded
    transaction hash instead of sending a second transaction. A transaction
    that was broadcast but not yet confirmed is only waited on again, never
    re-sent, until it is mined or reverts.
    """

    def __init__(
        self,
        transport: LedgerTransport,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        metrics: Optional[RelayMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        remember: int = 10_000,
    ) -> None:
        self._transport = transport
        self._max_attempts = max(1, max_attempts)
        self._backoff = max(0.0, backoff_seconds)
        self._metrics = metrics
        self._sleep = sleep
        self._remember = remember
        self._confirmed: "OrderedDict[str, str]" = OrderedDict()
        self._broadcast: Dict[str, str] = {}

    async def notify_initiated(self, account_id: str, thread_id: str, *, run_id: str) -> str:
        return await self._deliver(EVENT_INITIATED, "AgentInitiated", (account_id, thread_id), account_id, run_id)

    async def notify_finished(self, account_id: str, thread_id: str, result: str, *, run_id: str) -> str:
        return await self._deliver(
            EVENT_FINISHED, "AgentFinished", (account_id, thread_id, result), account_id, run_id
        )

    def was_confirmed(self, account_id: str, run_id: str, event: str) -> bool:
        return idempotency_key(account_id, run_id, event) in self._confirmed

    async def owner(self) -> str:
        return str(await self._transport.call("owner", ()))

    async def query(self, index: int) -> Dict[str, Any]:
        user, text, state, run_id = await self._transport.call("queries", (index,))
        state = int(state)
        return {
            "user": user,
            "queryText": text,
            "state": QUERY_STATES[state] if 0 <= state < len(QUERY_STATES) else str(state),
            "runId": int(run_id),
        }

    async def _deliver(self, event: str, function: str, args: Sequence[Any], account_id: str, run_id: str) -> str:
        key = idempotency_key(account_id, run_id, event)
        if key in self._confirmed:
            LOGGER.info("relay.ledger.duplicate", extra={"event": event, "account": account_id, "run": run_id})
            self._count(event, "duplicate")
            return self._confirmed[key]

        attempt = 0
        while True:
            attempt += 1
            try:
                tx_hash = self._broadcast.get(key)
                if tx_hash is None:
                    tx_hash = await self._transport.send(function, args)
                    self._broadcast[key] = tx_hash
                await self._transport.wait(tx_hash)
            except LedgerRevertedError:
                self._broadcast.pop(key, None)
                self._count(event, "reverted")
                LOGGER.error("relay.ledger.reverted", extra={"event": event, "account": account_id, "run": run_id})
                raise
            except LedgerUnavailableError as exc:
                if attempt >= self._max_attempts:
                    self._count(event, "unavailable")
                    LOGGER.error(
                        "relay.ledger.unavailable",
                        extra={
                            "event": event,
                            "account": account_id,
                            "run": run_id,
                            "attempts": attempt,
                            "tx": self._broadcast.get(key),
                        },
                    )
                    raise
                delay = self._backoff * attempt
                LOGGER.warning(
                    "relay.ledger.retry",
                    extra={"event": event, "account": account_id, "attempt": attempt, "delay": delay, "error": str(exc)},
                )
                await self._sleep(delay)
                continue
            break

        self._broadcast.pop(key, None)
        self._confirmed[key] = tx_hash
        while len(self._confirmed) > self._remember:
            self._confirmed.popitem(last=False)
        self._count(event, "confirmed")
        LOGGER.info(
            "relay.ledger.confirmed",
            extra={"event": event, "account": account_id, "run": run_id, "tx": tx_hash},
        )
        return tx_hash

    def _count(self, event: str, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.ledger_transactions.labels(event, outcome).inc()


__all__ = [
    "EVENT_FINISHED",
    "EVENT_INITIATED",
    "LedgerError",
    "LedgerNotifier",
    "LedgerRevertedError",
    "LedgerTransport",
    "LedgerUnavailableError",
    "RELAY_ABI",
    "Web3Ledger",
    "idempotency_key",
]
