"""AgentTrail package.

Proof-of-Action (PoA) receipts for browser automation runs:

- Canonical, key-order independent hashing of a run's inputs and result
- Asynchronous anchoring of the hash on an EVM ledger
- Triple verification (ledger, stored, recomputed)

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports:

    from agenttrail import TrailGateway, create_app, compute_poa_hash

All of the above are loaded lazily.
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "TrailGateway",
    "create_app",
    "compute_poa_hash",
    "canonical_json_dumps",
    "RawPayload",
    "ExecutionRecord",
    "VerificationResult",
    "ChainGateway",
    "Web3ChainGateway",
    "LocalChainGateway",
    "TrailError",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "TrailGateway": ("agenttrail.server", "TrailGateway"),
    "create_app": ("agenttrail.server", "create_app"),
    "compute_poa_hash": ("agenttrail.canonical", "compute_poa_hash"),
    "canonical_json_dumps": ("agenttrail.canonical", "canonical_json_dumps"),
    "RawPayload": ("agenttrail.models", "RawPayload"),
    "ExecutionRecord": ("agenttrail.models", "ExecutionRecord"),
    "VerificationResult": ("agenttrail.models", "VerificationResult"),
    "ChainGateway": ("agenttrail.chain", "ChainGateway"),
    "Web3ChainGateway": ("agenttrail.chain", "Web3ChainGateway"),
    "LocalChainGateway": ("agenttrail.chain", "LocalChainGateway"),
    "TrailError": ("agenttrail.errors", "TrailError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'agenttrail' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
