"""Configuration models for the agent-run relay."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml


class ConfigurationError(RuntimeError):
    """Raised when a component is used without the settings it requires."""


_ENV_KEYS: Dict[str, str] = {
    "key_authority_url": "KEY_AUTHORITY_RPC_URL",
    "agent_base_url": "AGENT_API_BASE_URL",
    "assistant_id": "AGENT_ID",
    "agent_api_key": "AGENT_API_KEY",
    "evm_rpc_url": "EVM_RPC_URL",
    "contract_address": "CONTRACT_ADDRESS",
    "relayer_private_key": "PRIVATE_KEY",
    "chain_id": "CHAIN_ID",
    "session_ttl_seconds": "SESSION_TTL_SECONDS",
    "poll_interval_seconds": "POLL_INTERVAL_SECONDS",
    "request_timeout_seconds": "REQUEST_TIMEOUT_SECONDS",
    "receipt_timeout_seconds": "RECEIPT_TIMEOUT_SECONDS",
    "ledger_max_attempts": "LEDGER_MAX_ATTEMPTS",
    "ledger_backoff_seconds": "LEDGER_BACKOFF_SECONDS",
    "run_timeout_seconds": "RUN_TIMEOUT_SECONDS",
    "state_backend": "RELAY_STATE_BACKEND",
    "redis_url": "RELAY_REDIS_URL",
}

_CAMEL_ALIASES: Dict[str, str] = {
    "keyAuthorityUrl": "key_authority_url",
    "agentBaseUrl": "agent_base_url",
    "assistantId": "assistant_id",
    "agentId": "assistant_id",
    "agentApiKey": "agent_api_key",
    "evmRpcUrl": "evm_rpc_url",
    "contractAddress": "contract_address",
    "relayerPrivateKey": "relayer_private_key",
    "chainId": "chain_id",
    "sessionTtlSeconds": "session_ttl_seconds",
    "pollIntervalSeconds": "poll_interval_seconds",
    "requestTimeoutSeconds": "request_timeout_seconds",
    "receiptTimeoutSeconds": "receipt_timeout_seconds",
    "ledgerMaxAttempts": "ledger_max_attempts",
    "ledgerBackoffSeconds": "ledger_backoff_seconds",
    "runTimeoutSeconds": "run_timeout_seconds",
    "stateBackend": "state_backend",
    "redisUrl": "redis_url",
}

_BACKENDS = {"memory", "redis"}


@dataclass
class RelayConfig:
    """Loaded relay configuration."""

    key_authority_url: str = "https://test.rpc.fastnear.com"
    agent_base_url: str = "https://api.near.ai/v1"
    assistant_id: Optional[str] = None
    agent_api_key: Optional[str] = None
    evm_rpc_url: Optional[str] = None
    contract_address: Optional[str] = None
    relayer_private_key: Optional[str] = None
    chain_id: Optional[int] = None
    session_ttl_seconds: int = 3600
    poll_interval_seconds: float = 10.0
    request_timeout_seconds: float = 30.0
    receipt_timeout_seconds: float = 180.0
    ledger_max_attempts: int = 3
    ledger_backoff_seconds: float = 2.0
    run_timeout_seconds: float = 0.0
    state_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"

    def __post_init__(self) -> None:
        for name in ("key_authority_url", "agent_base_url"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.startswith(("http://", "https://")):
                raise ValueError(f"{name} must be an http(s) URL")
        if self.contract_address is not None:
            address = self.contract_address
            if not isinstance(address, str) or not address.startswith("0x") or len(address) != 42:
                raise ValueError("contract_address must be a 0x-prefixed 20-byte address")
        if self.chain_id is not None and (not isinstance(self.chain_id, int) or self.chain_id <= 0):
            raise ValueError("chain_id must be a positive integer")
        if not isinstance(self.session_ttl_seconds, int) or self.session_ttl_seconds <= 0:
            raise ValueError("session_ttl_seconds must be a positive integer")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        if self.request_timeout_seconds <= 0 or self.receipt_timeout_seconds <= 0:
            raise ValueError("timeouts must be positive")
        if not isinstance(self.ledger_max_attempts, int) or not (1 <= self.ledger_max_attempts <= 10):
            raise ValueError("ledger_max_attempts must be between 1 and 10")
        if self.ledger_backoff_seconds < 0:
            raise ValueError("ledger_backoff_seconds must be non-negative")
        if self.run_timeout_seconds < 0:
            raise ValueError("run_timeout_seconds must be non-negative (0 disables it)")
        self.state_backend = str(self.state_backend).lower()
        if self.state_backend not in _BACKENDS:
            raise ValueError(f"state_backend must be one of {sorted(_BACKENDS)}")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RelayConfig":
        known = {item.name: item for item in fields(cls)}
        values: Dict[str, Any] = {}
        for key, raw in data.items():
            name = _CAMEL_ALIASES.get(key, key)
            if name not in known or raw is None or raw == "":
                continue
            values[name] = _coerce(name, raw)
        return cls(**values)

    def require(self, *names: str) -> None:
        """Raise :class:`ConfigurationError` unless every named setting is present."""

        missing = [name for name in names if not getattr(self, name)]
        if missing:
            env = ", ".join(_ENV_KEYS.get(name, name) for name in missing)
            raise ConfigurationError(f"missing relay configuration: {env}")


def _coerce(name: str, raw: Any) -> Any:
    if name in {"chain_id", "session_ttl_seconds", "ledger_max_attempts"}:
        return int(raw)
    if name.endswith("_seconds"):
        return float(raw)
    return str(raw)


def load_config(path: str | Path) -> RelayConfig:
    """Load relay configuration from a YAML or JSON file."""

    text = Path(path).read_text(encoding="utf-8")
    if Path(path).suffix == ".json":
        data = json.loads(text or "{}")
    else:
        data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError("relay configuration must be a mapping")
    return RelayConfig.from_mapping(data)


def config_from_env(base: Optional[Mapping[str, Any]] = None) -> RelayConfig:
    """Build configuration from ``base`` overlaid with environment variables."""

    data: Dict[str, Any] = dict(base or {})
    for name, env_key in _ENV_KEYS.items():
        value = os.getenv(env_key)
        if value is not None and value.strip():
            data[name] = value.strip()
    return RelayConfig.from_mapping(data)


@lru_cache(maxsize=1)
def get_config() -> RelayConfig:
    """Return the process configuration (``RELAY_CONFIG`` file + environment)."""

    path = os.getenv("RELAY_CONFIG")
    base: Dict[str, Any] = {}
    if path:
        loaded = load_config(path)
        base = {item.name: getattr(loaded, item.name) for item in fields(loaded)}
    return config_from_env(base)


def reset_config() -> None:
    get_config.cache_clear()


__all__ = [
    "ConfigurationError",
    "RelayConfig",
    "config_from_env",
    "get_config",
    "load_config",
    "reset_config",
]
