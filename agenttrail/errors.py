"""Stable error taxonomy for AgentTrail.

Every failure the core can report carries a machine-readable `code` string,
an optional `retryable` flag and an `http_status` for the transport layer.

Propagation rules:
- SerializationError aborts hashing and therefore record creation.
- AnchorSubmitError / AnchorConfirmError never leave the anchor task; they
  are converted into `anchor_error` on the persisted record.
- VerificationFetchError never leaves the verifier; it becomes the `error`
  field of the verification result.
- NotFoundError is reported to the caller with no state change.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Type


# Canonicalization / hashing
TRAIL_E_CANON_NON_JSON = "TRAIL_E_CANON_NON_JSON"
TRAIL_E_CANON_DEPTH = "TRAIL_E_CANON_DEPTH"
TRAIL_E_CANON_NONFINITE = "TRAIL_E_CANON_NONFINITE"
TRAIL_E_CANON_KEY_TYPE = "TRAIL_E_CANON_KEY_TYPE"
TRAIL_E_CANON_INT_TOO_LARGE = "TRAIL_E_CANON_INT_TOO_LARGE"
TRAIL_E_CANON_FIELD = "TRAIL_E_CANON_FIELD"

# Ledger
TRAIL_E_ANCHOR_SUBMIT = "TRAIL_E_ANCHOR_SUBMIT"
TRAIL_E_ANCHOR_CONFIRM = "TRAIL_E_ANCHOR_CONFIRM"
TRAIL_E_ANCHOR_TIMEOUT = "TRAIL_E_ANCHOR_TIMEOUT"
TRAIL_E_ANCHOR_REVERTED = "TRAIL_E_ANCHOR_REVERTED"
TRAIL_E_VERIFY_FETCH = "TRAIL_E_VERIFY_FETCH"

# Records / API
TRAIL_E_NOT_FOUND = "TRAIL_E_NOT_FOUND"
TRAIL_E_AUTH_REQUIRED = "TRAIL_E_AUTH_REQUIRED"
TRAIL_E_AUTH_INVALID = "TRAIL_E_AUTH_INVALID"
TRAIL_E_BAD_REQUEST = "TRAIL_E_BAD_REQUEST"
TRAIL_E_CONFIG = "TRAIL_E_CONFIG"

# Automation engine
TRAIL_E_AUTOMATION_HTTP = "TRAIL_E_AUTOMATION_HTTP"
TRAIL_E_AUTOMATION_FAILED = "TRAIL_E_AUTOMATION_FAILED"
TRAIL_E_AUTOMATION_PROTOCOL = "TRAIL_E_AUTOMATION_PROTOCOL"


@dataclass
class TrailError(Exception):
    """Base AgentTrail exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class SerializationError(TrailError):
    """Payload is not representable canonically."""


class AnchorSubmitError(TrailError):
    """Ledger write failed (network, signing, node rejection)."""


class AnchorConfirmError(TrailError):
    """Submitted transaction was not confirmed in time, or reverted."""


class VerificationFetchError(TrailError):
    """Ledger read failed during verification."""


class NotFoundError(TrailError):
    """Unknown record id."""


class AutomationError(TrailError):
    """Automation engine run did not produce a completion event."""


class ConfigurationError(TrailError):
    """Required configuration is missing or malformed."""


def trail_error(
    code: str,
    message: str,
    *,
    kind: Type[TrailError] = TrailError,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> TrailError:
    return kind(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
