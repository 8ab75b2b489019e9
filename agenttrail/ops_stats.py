"""Operational statistics for the AgentTrail service.

Lightweight in-memory counters behind `/v1/stats`.

Notes
-----
- Counters reset on process restart.
- Do not treat these as evidence. The ledger and the record store are the
  sources of truth.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    records_created_total: int = 0

    anchor_attempts_total: int = 0
    anchor_attempts_by_outcome: Dict[str, int] = field(default_factory=dict)
    anchor_coalesced_total: int = 0
    anchor_recovered_total: int = 0

    verifications_total: int = 0
    verifications_by_verdict: Dict[str, int] = field(default_factory=dict)

    automation_errors_total: int = 0


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_created(self) -> None:
        with self._lock:
            self._c.records_created_total += 1

    def record_anchor_attempt(self, outcome: str) -> None:
        with self._lock:
            self._c.anchor_attempts_total += 1
            self._inc_map(self._c.anchor_attempts_by_outcome, outcome or "unknown")

    def record_anchor_coalesced(self) -> None:
        with self._lock:
            self._c.anchor_coalesced_total += 1

    def record_anchor_recovered(self, count: int = 1) -> None:
        with self._lock:
            self._c.anchor_recovered_total += int(count)

    def record_verification(self, verdict: str) -> None:
        with self._lock:
            self._c.verifications_total += 1
            self._inc_map(self._c.verifications_by_verdict, verdict or "unknown")

    def record_automation_error(self) -> None:
        with self._lock:
            self._c.automation_errors_total += 1

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "records_created_total": c.records_created_total,
                "anchor_attempts_total": c.anchor_attempts_total,
                "anchor_attempts_by_outcome": dict(c.anchor_attempts_by_outcome),
                "anchor_coalesced_total": c.anchor_coalesced_total,
                "anchor_recovered_total": c.anchor_recovered_total,
                "verifications_total": c.verifications_total,
                "verifications_by_verdict": dict(c.verifications_by_verdict),
                "automation_errors_total": c.automation_errors_total,
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
