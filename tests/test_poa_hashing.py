import hashlib
import json
from collections import OrderedDict
from decimal import Decimal

import pytest

from agenttrail.canonical import (
    canonical_json_dumps,
    canonical_poa_bytes,
    compute_poa_hash,
)
from agenttrail.errors import SerializationError, TRAIL_E_CANON_FIELD
from agenttrail.models import RawPayload


SCENARIO_PAYLOAD = {
    "goal": "Extract price",
    "url": "https://example.com",
    "timestamp": "2024-01-01T00:00:00Z",
    "result_json": {"price": "63481.08"},
}

SCENARIO_CANONICAL = (
    b'{"goal":"Extract price","url":"https://example.com",'
    b'"timestamp":"2024-01-01T00:00:00Z","result_json":{"price":"63481.08"}}'
)


def test_scenario_payload_canonical_bytes_and_hash():
    assert canonical_poa_bytes(SCENARIO_PAYLOAD) == SCENARIO_CANONICAL
    h = compute_poa_hash(SCENARIO_PAYLOAD)
    assert h == hashlib.sha256(SCENARIO_CANONICAL).hexdigest()
    assert len(h) == 64 and h == h.lower()


def test_hash_is_deterministic_and_accepts_raw_payload():
    payload = RawPayload.from_dict(SCENARIO_PAYLOAD)
    assert compute_poa_hash(payload) == compute_poa_hash(payload)
    assert compute_poa_hash(payload) == compute_poa_hash(SCENARIO_PAYLOAD)


def test_top_level_order_is_fixed_regardless_of_input_order():
    reordered = OrderedDict(
        [
            ("result_json", SCENARIO_PAYLOAD["result_json"]),
            ("timestamp", SCENARIO_PAYLOAD["timestamp"]),
            ("url", SCENARIO_PAYLOAD["url"]),
            ("goal", SCENARIO_PAYLOAD["goal"]),
        ]
    )
    assert canonical_poa_bytes(reordered) == SCENARIO_CANONICAL


def test_reversed_result_keys_at_every_depth_yield_same_hash():
    a = dict(SCENARIO_PAYLOAD)
    a["result_json"] = {"price": "63481.08", "currency": "USD", "meta": {"x": 1, "a": [{"k": 1, "b": 2}]}}
    b = dict(SCENARIO_PAYLOAD)
    b["result_json"] = {"meta": {"a": [{"b": 2, "k": 1}], "x": 1}, "currency": "USD", "price": "63481.08"}
    assert compute_poa_hash(a) == compute_poa_hash(b)


def test_result_keys_sorted_and_array_order_kept():
    assert canonical_json_dumps({"b": [3, 1, 2], "a": None}) == '{"a":null,"b":[3,1,2]}'


def test_tamper_sensitivity():
    base = compute_poa_hash(SCENARIO_PAYLOAD)
    for field, value in (
        ("goal", "Extract price!"),
        ("url", "https://example.org"),
        ("timestamp", "2024-01-01T00:00:01Z"),
        ("result_json", {"price": "63481.09"}),
    ):
        changed = dict(SCENARIO_PAYLOAD)
        changed[field] = value
        assert compute_poa_hash(changed) != base, field


def test_array_order_changes_hash():
    a = dict(SCENARIO_PAYLOAD, result_json={"items": [1, 2]})
    b = dict(SCENARIO_PAYLOAD, result_json={"items": [2, 1]})
    assert compute_poa_hash(a) != compute_poa_hash(b)


def test_non_ascii_is_kept_as_utf8():
    payload = dict(SCENARIO_PAYLOAD, goal="Prix en €")
    data = canonical_poa_bytes(payload)
    assert "€".encode("utf-8") in data
    assert b"\\u20ac" not in data


def test_float_and_decimal_text_agree():
    assert canonical_json_dumps({"p": 63481.08}) == canonical_json_dumps({"p": Decimal("63481.08")})
    assert canonical_json_dumps([1.5, 0.1]) == "[1.5,0.1]"


def test_empty_result_payload_hashes():
    payload = dict(SCENARIO_PAYLOAD, result_json={})
    assert canonical_poa_bytes(payload).endswith(b'"result_json":{}}')


def test_missing_field_rejected():
    payload = dict(SCENARIO_PAYLOAD)
    del payload["timestamp"]
    with pytest.raises(SerializationError) as ei:
        compute_poa_hash(payload)
    assert ei.value.code == TRAIL_E_CANON_FIELD


def test_canonical_bytes_parse_back_to_equal_payload():
    data = canonical_poa_bytes(SCENARIO_PAYLOAD)
    assert json.loads(data.decode("utf-8")) == SCENARIO_PAYLOAD
