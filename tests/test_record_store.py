import sqlite3
from decimal import Decimal

import pytest

from agenttrail.canonical import compute_poa_hash
from agenttrail.models import AnchorState, ExecutionRecord, RawPayload, RecordStatus
from agenttrail.store import RecordStore, new_record_id


def _record(store, result_json=None, org_id="org_a"):
    payload = RawPayload(
        goal="Extract price",
        url="https://example.com",
        timestamp="2024-01-01T00:00:00Z",
        result_json={"price": "63481.08"} if result_json is None else result_json,
    )
    record = ExecutionRecord(id=new_record_id(), raw_payload=payload, poa_hash=compute_poa_hash(payload), org_id=org_id)
    return store.insert_record(record)


def test_record_id_format():
    rid = new_record_id()
    assert rid.startswith("exec_") and len(rid) == 5 + 32


def test_round_trip_preserves_hash_with_reordered_keys_and_numbers(tmp_path):
    store = RecordStore(str(tmp_path / "t.db"))
    result = {"z": 1.1, "a": {"y": 1e16, "b": [3, 2, 1]}, "m": 0.30000000000000004}
    rec = _record(store, result_json=result)

    loaded = store.get_record(rec.id)
    assert loaded is not None
    assert list(loaded.raw_payload.result_json.keys()) == ["a", "m", "z"]
    assert isinstance(loaded.raw_payload.result_json["z"], Decimal)
    assert compute_poa_hash(loaded.raw_payload) == rec.poa_hash


def test_defaults_on_insert(tmp_path):
    store = RecordStore(str(tmp_path / "t.db"))
    rec = _record(store)
    loaded = store.get_record(rec.id)
    assert loaded.status == RecordStatus.PENDING
    assert loaded.tx_id is None and loaded.anchor_error is None
    assert loaded.anchor_state == AnchorState.IDLE
    assert loaded.created_at_utc and loaded.updated_at_utc


def test_anchor_transitions(tmp_path):
    store = RecordStore(str(tmp_path / "t.db"))
    rec = _record(store)

    store.mark_failed(rec.id, "boom")
    store.mark_submitting(rec.id)
    r = store.get_record(rec.id)
    assert r.status == RecordStatus.PENDING
    assert r.anchor_error is None
    assert r.anchor_state == AnchorState.SUBMITTING
    assert r.anchor_attempts == 1

    store.record_submitted(rec.id, "0xabc")
    r = store.get_record(rec.id)
    assert r.tx_id == "0xabc" and r.anchor_state == AnchorState.CONFIRMING

    store.mark_completed(rec.id, "0xabc", 7)
    r = store.get_record(rec.id)
    assert r.status == RecordStatus.COMPLETED
    assert r.block_number == 7
    assert r.anchor_state == AnchorState.IDLE


def test_mark_failed_always_sets_reason(tmp_path):
    store = RecordStore(str(tmp_path / "t.db"))
    rec = _record(store)
    store.mark_failed(rec.id, "")
    r = store.get_record(rec.id)
    assert r.status == RecordStatus.FAILED
    assert r.anchor_error


def test_hash_inputs_not_updatable(tmp_path):
    store = RecordStore(str(tmp_path / "t.db"))
    rec = _record(store)
    with pytest.raises(ValueError):
        store.update_fields(rec.id, poa_hash="0" * 64)
    assert store.update_fields("exec_missing", status="failed") is False


def test_list_scoped_by_org_and_in_flight(tmp_path):
    store = RecordStore(str(tmp_path / "t.db"))
    a1 = _record(store, org_id="org_a")
    _record(store, org_id="org_b")
    a2 = _record(store, org_id="org_a")

    ids = [r.id for r in store.list_records(org_id="org_a")]
    assert set(ids) == {a1.id, a2.id}
    assert len(store.list_records()) == 3

    store.mark_queued(a1.id)
    store.mark_submitting(a2.id)
    store.record_submitted(a2.id, "0xdef")
    in_flight = {r.id: r for r in store.list_in_flight()}
    assert set(in_flight) == {a1.id, a2.id}
    assert in_flight[a2.id].tx_id == "0xdef"

    assert store.count_by_status() == {"pending": 3}


def test_claim_anchor_only_from_idle(tmp_path):
    store = RecordStore(str(tmp_path / "t.db"))
    rec = _record(store)

    assert store.claim_anchor(rec.id) is True
    assert store.get_record(rec.id).anchor_state == AnchorState.QUEUED
    assert store.claim_anchor(rec.id) is False

    store.mark_submitting(rec.id)
    store.record_submitted(rec.id, "0xabc")
    assert store.claim_anchor(rec.id) is False

    store.mark_completed(rec.id, "0xabc", 7)
    assert store.claim_anchor(rec.id) is True
    assert store.claim_anchor("exec_missing") is False


def test_claim_anchor_is_shared_across_store_instances(tmp_path):
    db = str(tmp_path / "t.db")
    rec = _record(RecordStore(db))

    assert RecordStore(db).claim_anchor(rec.id) is True
    assert RecordStore(db).claim_anchor(rec.id) is False


def test_streaming_url_round_trip_and_migration(tmp_path):
    db = str(tmp_path / "old.db")
    conn = sqlite3.connect(db)
    with conn:
        conn.execute(
            """
            CREATE TABLE executions (
                id TEXT PRIMARY KEY, org_id TEXT, run_id TEXT, goal TEXT NOT NULL,
                target_url TEXT NOT NULL, poa_timestamp TEXT NOT NULL, result_json TEXT NOT NULL,
                poa_hash TEXT NOT NULL, tx_hash TEXT, status TEXT NOT NULL DEFAULT 'pending',
                anchor_error TEXT, anchor_state TEXT NOT NULL DEFAULT 'idle',
                anchor_attempts INTEGER NOT NULL DEFAULT 0, block_number INTEGER,
                created_at_utc TEXT NOT NULL, updated_at_utc TEXT NOT NULL
            )
            """
        )
    conn.close()

    store = RecordStore(db)
    payload = RawPayload(goal="g", url="https://example.com", timestamp="t", result_json={})
    rec = store.insert_record(
        ExecutionRecord(
            id=new_record_id(),
            raw_payload=payload,
            poa_hash=compute_poa_hash(payload),
            streaming_url="https://stream.example/run_1",
        )
    )
    loaded = RecordStore(db).get_record(rec.id)
    assert loaded.streaming_url == "https://stream.example/run_1"
    assert loaded.to_dict()["streaming_url"] == "https://stream.example/run_1"
