"""Canonical serialization and PoA hashing.

The record store is allowed to reorder mapping keys (a jsonb-backed store
returns them alphabetically), so the PoA hash must be insensitive to key
order at every depth. The canonical form is:

- mapping keys sorted by code point at every nesting level
- sequence order preserved
- compact JSON: no whitespace, `,` and `:` separators, non-ASCII kept as UTF-8
- numbers written from exact decimal text (see `_number_text`)

The PoA envelope fixes the top-level order to goal, url, timestamp,
result_json, regardless of how the caller built the payload:

    {"goal":...,"url":...,"timestamp":...,"result_json":<canonical>}

poa_hash = sha256(canonical_poa_bytes(payload)).hexdigest()
"""

from __future__ import annotations

import hashlib
import json
import math
from collections.abc import Mapping
from decimal import Decimal
from typing import Any, Dict

from .errors import (
    SerializationError,
    trail_error,
    TRAIL_E_CANON_DEPTH,
    TRAIL_E_CANON_FIELD,
    TRAIL_E_CANON_INT_TOO_LARGE,
    TRAIL_E_CANON_KEY_TYPE,
    TRAIL_E_CANON_NON_JSON,
    TRAIL_E_CANON_NONFINITE,
)


POA_FIELDS = ("goal", "url", "timestamp", "result_json")

_MAX_DEPTH = 64
_MAX_INT_DIGITS = 128


def _serialization_error(code: str, message: str, **details: Any) -> SerializationError:
    return trail_error(code, message, kind=SerializationError, http_status=400, **details)  # type: ignore[return-value]


def _path_key(k: str) -> str:
    ks = k.replace("\\", "\\\\").replace("'", "\\'")
    return f"['{ks}']"


def _number_text(value: Decimal) -> str:
    # A float goes through Decimal(repr(f)), so 1e16 and Decimal("1e+16")
    # both render as "1E+16" and survive a store round trip unchanged.
    return str(value)


def _string_text(s: str, path: str) -> str:
    text = json.dumps(s, ensure_ascii=False)
    try:
        text.encode("utf-8")
    except UnicodeEncodeError as e:
        raise _serialization_error(TRAIL_E_CANON_NON_JSON, "string is not valid UTF-8", path=path) from e
    return text


def _encode(obj: Any, path: str, depth: int) -> str:
    if depth > _MAX_DEPTH:
        raise _serialization_error(TRAIL_E_CANON_DEPTH, "max nesting depth exceeded", path=path, max_depth=_MAX_DEPTH)

    if obj is None:
        return "null"
    if obj is True:
        return "true"
    if obj is False:
        return "false"
    if isinstance(obj, str):
        return _string_text(obj, path)
    if isinstance(obj, int):
        digits = len(str(abs(obj)))
        if digits > _MAX_INT_DIGITS:
            raise _serialization_error(TRAIL_E_CANON_INT_TOO_LARGE, "integer has too many digits", path=path, digits=digits)
        return str(obj)
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise _serialization_error(TRAIL_E_CANON_NONFINITE, "non-finite float", path=path)
        return _number_text(Decimal(repr(obj)))
    if isinstance(obj, Decimal):
        if not obj.is_finite():
            raise _serialization_error(TRAIL_E_CANON_NONFINITE, "non-finite decimal", path=path)
        return _number_text(obj)

    if isinstance(obj, Mapping):
        parts = []
        for k in obj.keys():
            if not isinstance(k, str):
                raise _serialization_error(TRAIL_E_CANON_KEY_TYPE, "mapping key must be str", path=path, got=type(k).__name__)
        for k in sorted(obj.keys()):
            child = _encode(obj[k], path + _path_key(k), depth + 1)
            parts.append(_string_text(k, path) + ":" + child)
        return "{" + ",".join(parts) + "}"

    if isinstance(obj, (list, tuple)):
        return "[" + ",".join(_encode(v, f"{path}[{i}]", depth + 1) for i, v in enumerate(obj)) + "]"

    raise _serialization_error(TRAIL_E_CANON_NON_JSON, "non-JSON-serializable type", path=path, got=type(obj).__name__)


def canonical_json_dumps(obj: Any) -> str:
    """Canonical JSON text of an arbitrary JSON-like value (keys sorted)."""
    return _encode(obj, "$", 0)


def canonical_json_bytes(obj: Any) -> bytes:
    return canonical_json_dumps(obj).encode("utf-8")


def _payload_fields(payload: Any) -> Dict[str, Any]:
    if hasattr(payload, "as_dict"):
        payload = payload.as_dict()
    if not isinstance(payload, Mapping):
        raise _serialization_error(TRAIL_E_CANON_FIELD, "PoA payload must be a mapping", got=type(payload).__name__)
    missing = [f for f in POA_FIELDS if f not in payload]
    if missing:
        raise _serialization_error(TRAIL_E_CANON_FIELD, "PoA payload is missing fields", missing=missing)
    for f in ("goal", "url", "timestamp"):
        if not isinstance(payload[f], str):
            raise _serialization_error(TRAIL_E_CANON_FIELD, f"PoA field {f!r} must be a string", got=type(payload[f]).__name__)
    return {f: payload[f] for f in POA_FIELDS}


def canonical_poa_bytes(payload: Any) -> bytes:
    """Serialize a PoA payload with the fixed top-level field order.

    Accepts a `RawPayload` or any mapping holding goal, url, timestamp and
    result_json. Extra top-level keys are ignored.
    """
    fields = _payload_fields(payload)
    parts = []
    for name in POA_FIELDS:
        parts.append(json.dumps(name) + ":" + _encode(fields[name], "$" + _path_key(name), 1))
    return ("{" + ",".join(parts) + "}").encode("utf-8")


def digest_hex(data: bytes) -> str:
    """Lowercase hex SHA-256 of canonical bytes."""
    return hashlib.sha256(data).hexdigest()


def compute_poa_hash(payload: Any) -> str:
    return digest_hex(canonical_poa_bytes(payload))
