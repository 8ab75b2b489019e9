from decimal import Decimal

import pytest

from agenttrail.canonical import canonical_json_dumps
from agenttrail.errors import (
    SerializationError,
    TRAIL_E_CANON_DEPTH,
    TRAIL_E_CANON_INT_TOO_LARGE,
    TRAIL_E_CANON_KEY_TYPE,
    TRAIL_E_CANON_NON_JSON,
    TRAIL_E_CANON_NONFINITE,
)


@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf"), Decimal("NaN"), Decimal("Infinity")])
def test_non_finite_numbers_rejected(value):
    with pytest.raises(SerializationError) as ei:
        canonical_json_dumps({"x": value})
    assert ei.value.code == TRAIL_E_CANON_NONFINITE
    assert ei.value.details["path"] == "$['x']"


def test_non_string_keys_rejected():
    with pytest.raises(SerializationError) as ei:
        canonical_json_dumps({1: "a"})
    assert ei.value.code == TRAIL_E_CANON_KEY_TYPE


def test_non_json_types_rejected():
    with pytest.raises(SerializationError) as ei:
        canonical_json_dumps({"when": object()})
    assert ei.value.code == TRAIL_E_CANON_NON_JSON
    with pytest.raises(SerializationError):
        canonical_json_dumps({"b": b"bytes"})


def test_depth_limit():
    obj = current = {}
    for _ in range(100):
        current["n"] = {}
        current = current["n"]
    with pytest.raises(SerializationError) as ei:
        canonical_json_dumps(obj)
    assert ei.value.code == TRAIL_E_CANON_DEPTH


def test_huge_integer_rejected():
    with pytest.raises(SerializationError) as ei:
        canonical_json_dumps({"n": 10 ** 200})
    assert ei.value.code == TRAIL_E_CANON_INT_TOO_LARGE


def test_lone_surrogate_rejected():
    with pytest.raises(SerializationError) as ei:
        canonical_json_dumps({"s": "\ud800"})
    assert ei.value.code == TRAIL_E_CANON_NON_JSON


def test_literals_and_escapes():
    assert canonical_json_dumps([None, True, False]) == "[null,true,false]"
    assert canonical_json_dumps({"q": 'say "hi"\n'}) == '{"q":"say \\"hi\\"\\n"}'


def test_bool_is_not_treated_as_int():
    assert canonical_json_dumps({"a": True, "b": 1}) == '{"a":true,"b":1}'


def test_keys_sorted_by_code_point():
    assert canonical_json_dumps({"b": 1, "B": 2, "a": 3, "é": 4}) == '{"B":2,"a":3,"b":1,"é":4}'


def test_tuples_serialize_as_arrays():
    assert canonical_json_dumps({"t": (1, "x")}) == '{"t":[1,"x"]}'


def test_error_as_dict_envelope():
    with pytest.raises(SerializationError) as ei:
        canonical_json_dumps({"x": float("nan")})
    d = ei.value.as_dict()
    assert d["code"] == TRAIL_E_CANON_NONFINITE
    assert d["http_status"] == 400
    assert d["retryable"] is False
