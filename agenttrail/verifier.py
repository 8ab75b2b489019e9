"""Triple verification of a stored record.

Three hashes are reconciled:
- stored:     `poa_hash` persisted at creation
- recomputed: canonical hash of the persisted raw payload
- on-chain:   `poaHash` of the first ReceiptStored event in the anchor tx

`verified` requires on-chain == stored, and recomputed == stored whenever a
recomputation was possible. Ledger read failures are reported in `error`,
never raised.
"""

from __future__ import annotations

import logging
from typing import Optional

from .canonical import compute_poa_hash
from .chain import ChainGateway
from .errors import NotFoundError, SerializationError, TrailError, trail_error, TRAIL_E_NOT_FOUND
from .eventlog import find_receipt_stored
from .metrics import record_verification
from .models import ExecutionRecord, VerificationResult
from .ops_stats import OPS_STATS
from .store import RecordStore

logger = logging.getLogger("agenttrail.verifier")

ANCHOR_PENDING = "anchor pending"
NO_RECEIPT_EVENT = "No ReceiptStored event found in transaction"


def recompute_hash(record: ExecutionRecord) -> Optional[str]:
    """Hash of the persisted raw payload, or None when it cannot be rebuilt."""
    payload = record.raw_payload
    if not payload.timestamp or payload.result_json is None:
        return None
    try:
        return compute_poa_hash(payload)
    except SerializationError as e:
        logger.warning("Stored payload of %s is not canonicalizable: %s", record.id, e)
        return None


class Verifier:
    def __init__(self, store: RecordStore, gateway: ChainGateway):
        self.store = store
        self.gateway = gateway

    def _finish(self, result: VerificationResult) -> VerificationResult:
        if result.verified:
            verdict = "verified"
        elif result.error == ANCHOR_PENDING:
            verdict = "pending"
        elif result.error:
            verdict = "error"
        else:
            verdict = "mismatch"
        record_verification(verdict)
        OPS_STATS.record_verification(verdict)
        return result

    async def verify(self, record_id: str) -> VerificationResult:
        record = self.store.get_record(record_id)
        if record is None:
            raise trail_error(
                TRAIL_E_NOT_FOUND,
                f"Execution {record_id} not found",
                kind=NotFoundError,
                http_status=404,
                record_id=record_id,
            )

        stored = record.poa_hash
        recomputed = recompute_hash(record)

        if not record.tx_id:
            return self._finish(VerificationResult(
                verified=False,
                stored_hash=stored,
                recomputed_hash=recomputed,
                contract_address=self.gateway.contract_address,
                chain=self.gateway.chain,
                error=ANCHOR_PENDING,
            ))

        result = VerificationResult(
            verified=False,
            stored_hash=stored,
            recomputed_hash=recomputed,
            tx_id=record.tx_id,
            block_number=record.block_number,
            contract_address=self.gateway.contract_address,
            chain=self.gateway.chain,
        )
        try:
            receipt = await self.gateway.fetch_receipt(record.tx_id)
        except TrailError as e:
            logger.warning("Ledger read for %s failed: %s", record_id, e)
            result.error = e.message
            return self._finish(result)
        except Exception as e:
            logger.exception("Unexpected ledger read failure for %s", record_id)
            result.error = f"{type(e).__name__}: {e}"
            return self._finish(result)

        if receipt.block_number is not None:
            result.block_number = receipt.block_number
        event = find_receipt_stored(receipt.logs, self.gateway.contract_address)
        if event is None:
            result.error = NO_RECEIPT_EVENT
            return self._finish(result)

        result.on_chain_hash = event.poa_hash
        result.verified = event.poa_hash == stored and (recomputed is None or recomputed == stored)
        if not result.verified:
            logger.warning(
                "Verification mismatch for %s: stored=%s on_chain=%s recomputed=%s",
                record_id, stored, event.poa_hash, recomputed,
            )
        return self._finish(result)
