"""Execution records and verification results."""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional

from .errors import SerializationError, trail_error, TRAIL_E_CANON_FIELD


class RecordStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class AnchorState(str, Enum):
    """Persisted progress marker of the current anchor attempt.

    Anything other than IDLE means an attempt is queued or in flight; a
    restarted process re-queues such records.
    """

    IDLE = "idle"
    QUEUED = "queued"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"


@dataclass(frozen=True)
class RawPayload:
    """The hash inputs of a PoA commitment. Immutable once set."""

    goal: str
    url: str
    timestamp: str
    result_json: Any = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "goal": self.goal,
            "url": self.url,
            "timestamp": self.timestamp,
            "result_json": self.result_json,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawPayload":
        """Build from a mapping; a missing result_json means `{}`.

        Raises SerializationError (TRAIL_E_CANON_FIELD) when a string field
        is absent.
        """
        missing = [f for f in ("goal", "url", "timestamp") if f not in data]
        if missing:
            raise trail_error(
                TRAIL_E_CANON_FIELD,
                "PoA payload is missing fields",
                kind=SerializationError,
                http_status=400,
                missing=missing,
            )
        result_json = data.get("result_json")
        return cls(
            goal=data["goal"],
            url=data["url"],
            timestamp=data["timestamp"],
            result_json={} if result_json is None else result_json,
        )


@dataclass
class ExecutionRecord:
    id: str
    raw_payload: RawPayload
    poa_hash: str
    status: RecordStatus = RecordStatus.PENDING
    tx_id: Optional[str] = None
    anchor_error: Optional[str] = None
    anchor_state: AnchorState = AnchorState.IDLE
    anchor_attempts: int = 0
    block_number: Optional[int] = None
    org_id: Optional[str] = None
    run_id: Optional[str] = None
    streaming_url: Optional[str] = None
    created_at_utc: str = ""
    updated_at_utc: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "run_id": self.run_id,
            "streaming_url": self.streaming_url,
            "goal": self.raw_payload.goal,
            "target_url": self.raw_payload.url,
            "poa_timestamp": self.raw_payload.timestamp,
            "result_json": self.raw_payload.result_json,
            "poa_hash": self.poa_hash,
            "tx_hash": self.tx_id,
            "status": self.status.value,
            "anchor_error": self.anchor_error,
            "anchor_state": self.anchor_state.value,
            "anchor_attempts": self.anchor_attempts,
            "block_number": self.block_number,
            "created_at": self.created_at_utc,
            "updated_at": self.updated_at_utc,
        }


@dataclass
class VerificationResult:
    """Outcome of the three-way reconciliation. Never persisted."""

    verified: bool
    stored_hash: str
    on_chain_hash: Optional[str] = None
    recomputed_hash: Optional[str] = None
    tx_id: Optional[str] = None
    block_number: Optional[int] = None
    contract_address: Optional[str] = None
    chain: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
