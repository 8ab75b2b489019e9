"""Ledger gateway: submit a PoA hash, await confirmation, fetch receipts.

A `ChainGateway` is constructed once by the caller and injected into the
anchor worker and the verifier. Implementations:

- Web3ChainGateway: signs with eth_account and talks JSON-RPC via web3.py.
- LocalChainGateway: in-process ledger with the same log encoding, for
  development, demos and tests. Opt-in via AGENTTRAIL_CHAIN_MODE=local.

Error contract:
- submit             -> AnchorSubmitError
- await_confirmation -> AnchorConfirmError (timeout, revert, RPC failure)
- fetch_receipt      -> VerificationFetchError
"""

from __future__ import annotations

import abc
import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from .config import TrailConfig
from .errors import (
    AnchorConfirmError,
    AnchorSubmitError,
    ConfigurationError,
    VerificationFetchError,
    trail_error,
    TRAIL_E_ANCHOR_CONFIRM,
    TRAIL_E_ANCHOR_REVERTED,
    TRAIL_E_ANCHOR_SUBMIT,
    TRAIL_E_ANCHOR_TIMEOUT,
    TRAIL_E_CONFIG,
    TRAIL_E_VERIFY_FETCH,
)
from .eventlog import AGENT_TRAIL_ABI, DEFAULT_CONTRACT_ADDRESS, LedgerLog, encode_receipt_stored

logger = logging.getLogger("agenttrail.chain")


@dataclass(frozen=True)
class LedgerReceipt:
    tx_id: str
    block_number: Optional[int]
    status: int = 1
    logs: List[LedgerLog] = field(default_factory=list)


def _submit_error(message: str, **details: Any) -> AnchorSubmitError:
    return trail_error(TRAIL_E_ANCHOR_SUBMIT, message, kind=AnchorSubmitError, retryable=True, http_status=502, **details)  # type: ignore[return-value]


def _confirm_error(code: str, message: str, **details: Any) -> AnchorConfirmError:
    return trail_error(code, message, kind=AnchorConfirmError, retryable=True, http_status=504, **details)  # type: ignore[return-value]


def _fetch_error(message: str, **details: Any) -> VerificationFetchError:
    return trail_error(TRAIL_E_VERIFY_FETCH, message, kind=VerificationFetchError, retryable=True, http_status=502, **details)  # type: ignore[return-value]


def confirmation_timeout_error(tx_id: str, timeout_s: float) -> AnchorConfirmError:
    return _confirm_error(
        TRAIL_E_ANCHOR_TIMEOUT,
        f"Transaction {tx_id} not confirmed within {timeout_s:g}s",
        tx_id=tx_id,
        timeout_seconds=timeout_s,
    )


class ChainGateway(abc.ABC):
    """Single-function contract on a ledger: one write, one event."""

    contract_address: str = DEFAULT_CONTRACT_ADDRESS
    chain: str = ""

    @abc.abstractmethod
    async def submit(self, poa_hash: str) -> str:
        """Sign and broadcast `storeReceipt(poa_hash)`. Returns the tx id."""
        raise NotImplementedError

    @abc.abstractmethod
    async def await_confirmation(self, tx_id: str, timeout: float) -> LedgerReceipt:
        """Suspend until `tx_id` is mined or `timeout` seconds elapse."""
        raise NotImplementedError

    @abc.abstractmethod
    async def fetch_receipt(self, tx_id: str) -> LedgerReceipt:
        """Read-only receipt lookup; does not wait."""
        raise NotImplementedError


class Web3ChainGateway(ChainGateway):
    """EVM JSON-RPC gateway (web3.py AsyncWeb3 + eth_account signing)."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        *,
        contract_address: str = DEFAULT_CONTRACT_ADDRESS,
        chain: str = "Base Sepolia",
        chain_id: Optional[int] = None,
        poll_interval_s: float = 2.0,
        request_timeout_s: float = 30.0,
    ):
        if not rpc_url:
            raise trail_error(TRAIL_E_CONFIG, "Missing ledger RPC URL", kind=ConfigurationError, http_status=500)
        if not private_key:
            raise trail_error(TRAIL_E_CONFIG, "Missing wallet private key", kind=ConfigurationError, http_status=500)
        self.rpc_url = rpc_url
        self.chain = chain
        self.chain_id = chain_id
        self.poll_interval_s = float(poll_interval_s)
        self.contract_address = Web3.to_checksum_address(contract_address)
        self._account = Account.from_key(private_key)
        self._w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": float(request_timeout_s)}))
        self._contract = self._w3.eth.contract(address=self.contract_address, abi=AGENT_TRAIL_ABI)
        # Nonce selection and broadcast must not interleave between tasks.
        # Created on first submit so it binds to the serving event loop.
        self._send_lock: Optional[asyncio.Lock] = None

    @property
    def agent_address(self) -> str:
        return self._account.address

    def _get_send_lock(self) -> asyncio.Lock:
        if self._send_lock is None:
            self._send_lock = asyncio.Lock()
        return self._send_lock

    async def submit(self, poa_hash: str) -> str:
        try:
            async with self._get_send_lock():
                nonce = await self._w3.eth.get_transaction_count(self._account.address, "pending")
                tx_params: Dict[str, Any] = {"from": self._account.address, "nonce": nonce}
                if self.chain_id is not None:
                    tx_params["chainId"] = int(self.chain_id)
                tx = await self._contract.functions.storeReceipt(poa_hash).build_transaction(tx_params)
                signed = self._account.sign_transaction(tx)
                tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            raise _submit_error(f"Ledger submission failed: {e}", error_type=type(e).__name__) from e
        tx_id = Web3.to_hex(tx_hash)
        logger.info("Submitted storeReceipt tx %s", tx_id)
        return tx_id

    async def await_confirmation(self, tx_id: str, timeout: float) -> LedgerReceipt:
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_id,
                timeout=float(timeout),
                poll_latency=self.poll_interval_s,
            )
        except (TimeExhausted, asyncio.TimeoutError) as e:
            raise confirmation_timeout_error(tx_id, float(timeout)) from e
        except Exception as e:
            raise _confirm_error(TRAIL_E_ANCHOR_CONFIRM, f"Confirmation failed: {e}", tx_id=tx_id) from e

        ledger_receipt = self._to_ledger_receipt(tx_id, receipt)
        if ledger_receipt.status != 1:
            raise _confirm_error(
                TRAIL_E_ANCHOR_REVERTED,
                f"Transaction {tx_id} reverted",
                tx_id=tx_id,
                block_number=ledger_receipt.block_number,
            )
        return ledger_receipt

    async def fetch_receipt(self, tx_id: str) -> LedgerReceipt:
        try:
            receipt = await self._w3.eth.get_transaction_receipt(tx_id)
        except TransactionNotFound as e:
            raise _fetch_error(f"Transaction {tx_id} not found", tx_id=tx_id) from e
        except Exception as e:
            raise _fetch_error(f"Failed to fetch receipt: {e}", tx_id=tx_id) from e
        return self._to_ledger_receipt(tx_id, receipt)

    @staticmethod
    def _to_ledger_receipt(tx_id: str, receipt: Any) -> LedgerReceipt:
        logs = [
            LedgerLog(
                address=str(log["address"]),
                topics=[Web3.to_hex(t) for t in log["topics"]],
                data=Web3.to_hex(log["data"]),
                log_index=log.get("logIndex"),
            )
            for log in receipt["logs"]
        ]
        block_number = receipt.get("blockNumber")
        return LedgerReceipt(
            tx_id=tx_id,
            block_number=int(block_number) if block_number is not None else None,
            status=int(receipt.get("status", 1)),
            logs=logs,
        )


@dataclass
class _LocalTx:
    poa_hash: str
    submitted_monotonic: float
    block_number: Optional[int] = None
    timestamp: int = 0


class LocalChainGateway(ChainGateway):
    """In-process ledger.

    Transactions are mined `confirm_delay_s` after submission and emit the
    same `ReceiptStored` log encoding as the deployed contract. State is lost
    on restart.
    """

    def __init__(
        self,
        *,
        contract_address: str = DEFAULT_CONTRACT_ADDRESS,
        chain: str = "Local Devnet",
        confirm_delay_s: float = 0.0,
        agent_address: Optional[str] = None,
    ):
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.chain = chain
        self.confirm_delay_s = float(confirm_delay_s)
        self.agent_address = agent_address or Account.create().address
        self._txs: Dict[str, _LocalTx] = {}
        self._next_block = 1

    async def submit(self, poa_hash: str) -> str:
        if not isinstance(poa_hash, str) or not poa_hash:
            raise _submit_error("poa_hash must be a non-empty string")
        tx_id = "0x" + secrets.token_hex(32)
        self._txs[tx_id] = _LocalTx(poa_hash=poa_hash, submitted_monotonic=time.monotonic())
        return tx_id

    def _mine_if_due(self, tx: _LocalTx) -> None:
        if tx.block_number is None and time.monotonic() - tx.submitted_monotonic >= self.confirm_delay_s:
            tx.block_number = self._next_block
            tx.timestamp = int(time.time())
            self._next_block += 1

    def _receipt(self, tx_id: str, tx: _LocalTx) -> LedgerReceipt:
        log = encode_receipt_stored(
            contract_address=self.contract_address,
            agent=self.agent_address,
            poa_hash=tx.poa_hash,
            timestamp=tx.timestamp,
            log_index=0,
        )
        return LedgerReceipt(tx_id=tx_id, block_number=tx.block_number, status=1, logs=[log])

    async def await_confirmation(self, tx_id: str, timeout: float) -> LedgerReceipt:
        tx = self._txs.get(tx_id)
        if tx is None:
            raise _confirm_error(TRAIL_E_ANCHOR_CONFIRM, f"Unknown transaction {tx_id}", tx_id=tx_id)
        remaining = self.confirm_delay_s - (time.monotonic() - tx.submitted_monotonic)
        if remaining > float(timeout):
            await asyncio.sleep(float(timeout))
            raise confirmation_timeout_error(tx_id, float(timeout))
        if remaining > 0:
            await asyncio.sleep(remaining)
        self._mine_if_due(tx)
        return self._receipt(tx_id, tx)

    async def fetch_receipt(self, tx_id: str) -> LedgerReceipt:
        tx = self._txs.get(tx_id)
        if tx is None:
            raise _fetch_error(f"Transaction {tx_id} not found", tx_id=tx_id)
        self._mine_if_due(tx)
        if tx.block_number is None:
            raise _fetch_error(f"Transaction {tx_id} not yet mined", tx_id=tx_id)
        return self._receipt(tx_id, tx)


def build_chain_gateway_from_env(config: Optional[TrailConfig] = None) -> ChainGateway:
    """Build the ledger gateway from configuration.

    AGENTTRAIL_CHAIN_MODE=web3 (default) requires an RPC URL and wallet key;
    AGENTTRAIL_CHAIN_MODE=local builds an in-process ledger.
    """
    cfg = config or TrailConfig.from_env()
    if cfg.chain_mode == "local":
        logger.warning("Using in-process local ledger; anchors are NOT publicly verifiable")
        return LocalChainGateway(contract_address=cfg.contract_address, chain=cfg.chain_name or "Local Devnet")
    if cfg.chain_mode != "web3":
        raise trail_error(TRAIL_E_CONFIG, f"Unknown chain mode: {cfg.chain_mode!r}", kind=ConfigurationError, http_status=500)
    return Web3ChainGateway(
        cfg.rpc_url or "",
        cfg.wallet_private_key or "",
        contract_address=cfg.contract_address,
        chain=cfg.chain_name,
        chain_id=cfg.chain_id,
        poll_interval_s=cfg.poll_interval_s,
    )
