"""Asynchronous anchoring of PoA hashes.

One anchor attempt walks `submitting -> confirming -> completed | failed`.
Every transition is persisted before the next suspension point, so a
restarted process can tell which records were left in flight.

AnchorWorker runs a single attempt and never raises ledger errors to its
caller; they become `status=failed` + `anchor_error` on the record.

AnchorDispatcher owns the queue and the worker pool:
- at most one attempt per record id is queued or running (later triggers
  are coalesced and reported as "in_progress"); the claim is a
  compare-and-set on the persisted `anchor_state`, so it also holds
  against other processes sharing the database
- triggers before `start()` are buffered and enqueued on start
- `recover()` re-queues records whose persisted `anchor_state` is not idle
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Set

from .chain import ChainGateway, confirmation_timeout_error
from .errors import AnchorConfirmError, AnchorSubmitError, TrailError
from .metrics import record_anchor_attempt, set_queue_depth
from .models import AnchorState
from .ops_stats import OPS_STATS
from .store import RecordStore

logger = logging.getLogger("agenttrail.anchor")


class AnchorPhase(str, Enum):
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    COMPLETED = "completed"
    FAILED = "failed"


def _failure_reason(exc: BaseException) -> str:
    if isinstance(exc, TrailError):
        return exc.message or exc.code
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def _outcome_label(exc: BaseException) -> str:
    if isinstance(exc, AnchorSubmitError):
        return "submit_failed"
    if isinstance(exc, AnchorConfirmError):
        return "timeout" if exc.code.endswith("_TIMEOUT") else "confirm_failed"
    return "error"


class AnchorWorker:
    """Runs one anchor attempt for one record against an injected gateway."""

    def __init__(self, store: RecordStore, gateway: ChainGateway, *, confirm_timeout_s: float = 120.0):
        self.store = store
        self.gateway = gateway
        self.confirm_timeout_s = float(confirm_timeout_s)

    async def run(self, record_id: str, poa_hash: str, *, resume_tx_id: Optional[str] = None) -> AnchorPhase:
        """Drive one attempt to a terminal phase.

        With `resume_tx_id` the submit step is skipped and the attempt waits
        on the already-broadcast transaction.
        """
        start = time.monotonic()
        phase = AnchorPhase.SUBMITTING
        try:
            if resume_tx_id:
                tx_id = resume_tx_id
                logger.info("Resuming confirmation of %s for record %s", tx_id, record_id)
            else:
                self.store.mark_submitting(record_id)
                tx_id = await self.gateway.submit(poa_hash)
                self.store.record_submitted(record_id, tx_id)

            phase = AnchorPhase.CONFIRMING
            timeout = self.confirm_timeout_s
            try:
                receipt = await asyncio.wait_for(self.gateway.await_confirmation(tx_id, timeout), timeout)
            except asyncio.TimeoutError as e:
                raise confirmation_timeout_error(tx_id, timeout) from e

            self.store.mark_completed(record_id, tx_id, receipt.block_number)
        except Exception as e:
            reason = _failure_reason(e)
            outcome = _outcome_label(e)
            if isinstance(e, TrailError):
                logger.error("Anchor attempt for %s failed while %s: %s", record_id, phase.value, e)
            else:
                logger.exception("Unexpected error anchoring %s while %s", record_id, phase.value)
            self.store.mark_failed(record_id, reason)
            record_anchor_attempt(outcome, time.monotonic() - start)
            OPS_STATS.record_anchor_attempt(outcome)
            return AnchorPhase.FAILED

        logger.info("Anchored record %s in tx %s (block %s)", record_id, tx_id, receipt.block_number)
        record_anchor_attempt("completed", time.monotonic() - start)
        OPS_STATS.record_anchor_attempt("completed")
        return AnchorPhase.COMPLETED


@dataclass(frozen=True)
class _AnchorJob:
    record_id: str
    poa_hash: str
    resume_tx_id: Optional[str] = None


class AnchorDispatcher:
    """Queue + fixed worker pool with a single-flight guard per record id."""

    def __init__(self, worker: AnchorWorker, store: RecordStore, *, concurrency: int = 4):
        self.worker = worker
        self.store = store
        self.concurrency = max(1, int(concurrency))
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self._claimed: Set[str] = set()
        self._backlog: List[_AnchorJob] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def in_flight(self, record_id: str) -> bool:
        return record_id in self._claimed

    def _enqueue(self, job: _AnchorJob) -> None:
        if self._queue is None:
            self._backlog.append(job)
            return
        self._queue.put_nowait(job)
        set_queue_depth(self._queue.qsize())

    def submit(self, record_id: str, poa_hash: str) -> str:
        """Trigger an anchor attempt. Returns "queued" or "in_progress"."""
        if record_id in self._claimed or not self.store.claim_anchor(record_id):
            OPS_STATS.record_anchor_coalesced()
            logger.info("Anchor attempt for %s already in progress; coalesced", record_id)
            return "in_progress"
        self._claimed.add(record_id)
        self._enqueue(_AnchorJob(record_id=record_id, poa_hash=poa_hash))
        return "queued"

    def recover(self) -> int:
        """Re-queue records a previous process left queued or in flight."""
        recovered = 0
        for record in self.store.list_in_flight():
            if record.id in self._claimed:
                continue
            resume = record.tx_id if record.anchor_state == AnchorState.CONFIRMING and record.tx_id else None
            self._claimed.add(record.id)
            self._enqueue(_AnchorJob(record_id=record.id, poa_hash=record.poa_hash, resume_tx_id=resume))
            recovered += 1
        if recovered:
            logger.warning("Recovered %d anchor attempt(s) left in flight", recovered)
            OPS_STATS.record_anchor_recovered(recovered)
        return recovered

    async def start(self) -> None:
        if self._tasks:
            return
        self._queue = asyncio.Queue()
        backlog, self._backlog = self._backlog, []
        for job in backlog:
            self._queue.put_nowait(job)
        self.recover()
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"agenttrail-anchor-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Anchor dispatcher started with %d worker(s)", self.concurrency)

    async def _worker_loop(self, index: int) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            set_queue_depth(self._queue.qsize())
            try:
                await self.worker.run(job.record_id, job.poa_hash, resume_tx_id=job.resume_tx_id)
            except Exception:
                # Store failures while persisting the outcome; the record keeps
                # its non-idle anchor_state and is recovered on next start.
                logger.exception("Anchor worker %d failed on %s", index, job.record_id)
            finally:
                self._claimed.discard(job.record_id)
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued attempt has reached a terminal phase."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        """Cancel the worker pool. Interrupted attempts keep their anchor_state."""
        tasks, self._tasks = self._tasks, []
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._queue is not None:
            while not self._queue.empty():
                job = self._queue.get_nowait()
                self._backlog.append(job)
                self._queue.task_done()
        self._queue = None
        self._claimed = {job.record_id for job in self._backlog}
        logger.info("Anchor dispatcher stopped")
