"""Environment-driven configuration.

Environment variables (legacy aliases in parentheses):
- AGENTTRAIL_DB_PATH: SQLite database path (default: agenttrail.db)
- AGENTTRAIL_CHAIN_MODE: web3 | local (default: web3)
- AGENTTRAIL_RPC_URL (BASE_SEPOLIA_RPC_URL): ledger RPC endpoint
- AGENTTRAIL_WALLET_PRIVATE_KEY (AGENT_WALLET_PRIVATE_KEY): signing key
- AGENTTRAIL_CONTRACT_ADDRESS: AgentTrail contract address
- AGENTTRAIL_CHAIN_NAME: chain display name (default: Base Sepolia)
- AGENTTRAIL_CHAIN_ID: chain id used when signing (default: 84532)
- AGENTTRAIL_CONFIRM_TIMEOUT_SECONDS: bound on confirmation wait (default: 120)
- AGENTTRAIL_POLL_INTERVAL_SECONDS: receipt poll latency (default: 2)
- AGENTTRAIL_ANCHOR_WORKERS: anchor worker pool size (default: 4)
- AGENTTRAIL_AUTOMATION_URL: automation engine SSE endpoint
- TINYFISH_API_KEY: automation engine API key
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .eventlog import DEFAULT_CONTRACT_ADDRESS

DEFAULT_AUTOMATION_URL = "https://agent.tinyfish.ai/v1/automation/run-sse"


def _env(name: str, *aliases: str, default: Optional[str] = None) -> Optional[str]:
    for key in (name,) + aliases:
        v = os.getenv(key)
        if v is not None and v.strip():
            return v.strip()
    return default


def _get_int(name: str, default: int) -> int:
    try:
        return int((os.getenv(name) or str(default)).strip())
    except Exception:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float((os.getenv(name) or str(default)).strip())
    except Exception:
        return default


@dataclass(frozen=True)
class TrailConfig:
    db_path: str = "agenttrail.db"
    chain_mode: str = "web3"
    rpc_url: Optional[str] = None
    wallet_private_key: Optional[str] = None
    contract_address: str = DEFAULT_CONTRACT_ADDRESS
    chain_name: str = "Base Sepolia"
    chain_id: Optional[int] = 84532
    confirm_timeout_s: float = 120.0
    poll_interval_s: float = 2.0
    anchor_workers: int = 4
    automation_url: str = DEFAULT_AUTOMATION_URL
    automation_api_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "TrailConfig":
        chain_id_raw = _env("AGENTTRAIL_CHAIN_ID")
        chain_id: Optional[int] = cls.chain_id
        if chain_id_raw is not None:
            try:
                chain_id = int(chain_id_raw, 0)
            except ValueError:
                chain_id = None

        confirm_timeout = _get_float("AGENTTRAIL_CONFIRM_TIMEOUT_SECONDS", cls.confirm_timeout_s)
        poll_interval = _get_float("AGENTTRAIL_POLL_INTERVAL_SECONDS", cls.poll_interval_s)
        workers = _get_int("AGENTTRAIL_ANCHOR_WORKERS", cls.anchor_workers)

        # Clamp
        if confirm_timeout <= 0:
            confirm_timeout = cls.confirm_timeout_s
        if poll_interval <= 0:
            poll_interval = 0.1
        if workers < 1:
            workers = 1

        return cls(
            db_path=_env("AGENTTRAIL_DB_PATH", default=cls.db_path) or cls.db_path,
            chain_mode=(_env("AGENTTRAIL_CHAIN_MODE", default=cls.chain_mode) or cls.chain_mode).lower(),
            rpc_url=_env("AGENTTRAIL_RPC_URL", "BASE_SEPOLIA_RPC_URL"),
            wallet_private_key=_env("AGENTTRAIL_WALLET_PRIVATE_KEY", "AGENT_WALLET_PRIVATE_KEY"),
            contract_address=_env("AGENTTRAIL_CONTRACT_ADDRESS", default=cls.contract_address) or cls.contract_address,
            chain_name=_env("AGENTTRAIL_CHAIN_NAME", default=cls.chain_name) or cls.chain_name,
            chain_id=chain_id,
            confirm_timeout_s=confirm_timeout,
            poll_interval_s=poll_interval,
            anchor_workers=workers,
            automation_url=_env("AGENTTRAIL_AUTOMATION_URL", default=DEFAULT_AUTOMATION_URL) or DEFAULT_AUTOMATION_URL,
            automation_api_key=_env("TINYFISH_API_KEY"),
        )
