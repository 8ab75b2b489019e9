"""AgentTrail contract ABI and the `ReceiptStored` log codec.

The contract has one write entry point and one event:

    function storeReceipt(string poaHash)
    event ReceiptStored(address indexed agent, string poaHash, uint256 timestamp)

`find_receipt_stored` is the parser the verifier runs over a receipt's
ordered log entries: it returns the first entry that comes from the expected
contract address and decodes as `ReceiptStored`. An entry that fails to
decode is skipped; it never aborts the scan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import decode_hex, encode_hex, keccak, to_checksum_address

logger = logging.getLogger("agenttrail.eventlog")


DEFAULT_CONTRACT_ADDRESS = "0x1abE15Ed2a424781f0b8C2C484aa237061E2B443"

RECEIPT_STORED_SIGNATURE = "ReceiptStored(address,string,uint256)"
RECEIPT_STORED_TOPIC = encode_hex(keccak(text=RECEIPT_STORED_SIGNATURE))

AGENT_TRAIL_ABI = [
    {
        "type": "function",
        "name": "storeReceipt",
        "inputs": [{"name": "poaHash", "type": "string"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "event",
        "name": "ReceiptStored",
        "anonymous": False,
        "inputs": [
            {"name": "agent", "type": "address", "indexed": True},
            {"name": "poaHash", "type": "string", "indexed": False},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
]


class LogDecodeError(ValueError):
    """A log entry is not a well-formed ReceiptStored event."""


@dataclass(frozen=True)
class LedgerLog:
    """Chain-agnostic log entry: emitting address, hex topics, hex data."""

    address: str
    topics: List[str] = field(default_factory=list)
    data: str = "0x"
    log_index: Optional[int] = None


@dataclass(frozen=True)
class ReceiptStoredEvent:
    agent: str
    poa_hash: str
    timestamp: int
    log_index: Optional[int] = None


def _same_address(a: str, b: str) -> bool:
    return str(a or "").lower() == str(b or "").lower()


def decode_receipt_stored(log: LedgerLog) -> ReceiptStoredEvent:
    """Decode one log entry. Raises LogDecodeError if it does not match."""
    topics = list(log.topics or [])
    if len(topics) != 2:
        raise LogDecodeError(f"expected 2 topics, got {len(topics)}")
    if str(topics[0]).lower() != RECEIPT_STORED_TOPIC:
        raise LogDecodeError("topic0 is not ReceiptStored")
    try:
        agent_word = decode_hex(topics[1])
        if len(agent_word) != 32 or any(agent_word[:12]):
            raise LogDecodeError("indexed agent topic is not an address word")
        poa_hash, timestamp = abi_decode(["string", "uint256"], decode_hex(log.data or "0x"))
    except LogDecodeError:
        raise
    except (DecodingError, ValueError, TypeError) as e:
        raise LogDecodeError(f"undecodable ReceiptStored data: {e}") from e
    return ReceiptStoredEvent(
        agent=to_checksum_address(agent_word[12:]),
        poa_hash=str(poa_hash),
        timestamp=int(timestamp),
        log_index=log.log_index,
    )


def find_receipt_stored(logs: Iterable[LedgerLog], contract_address: str) -> Optional[ReceiptStoredEvent]:
    """First structurally valid ReceiptStored event from `contract_address`."""
    for log in logs:
        if not _same_address(log.address, contract_address):
            continue
        try:
            return decode_receipt_stored(log)
        except LogDecodeError as e:
            logger.debug("Skipping log entry %s: %s", log.log_index, e)
            continue
    return None


def encode_receipt_stored(
    *,
    contract_address: str,
    agent: str,
    poa_hash: str,
    timestamp: int,
    log_index: Optional[int] = None,
) -> LedgerLog:
    """Build the log entry the contract emits for `storeReceipt(poa_hash)`."""
    agent_bytes = decode_hex(to_checksum_address(agent))
    return LedgerLog(
        address=to_checksum_address(contract_address),
        topics=[RECEIPT_STORED_TOPIC, encode_hex(b"\x00" * 12 + agent_bytes)],
        data=encode_hex(abi_encode(["string", "uint256"], [poa_hash, int(timestamp)])),
        log_index=log_index,
    )
