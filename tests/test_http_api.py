import json
import time

import pytest
from fastapi.testclient import TestClient

from agenttrail.auth import ENV_API_KEYS_FILE, ENV_API_KEYS_JSON, hash_api_key
from agenttrail.automation import AutomationResult
from agenttrail.canonical import compute_poa_hash
from agenttrail.chain import LocalChainGateway
from agenttrail.config import TrailConfig
from agenttrail.errors import SerializationError, TRAIL_E_CANON_FIELD
from agenttrail.server import TrailGateway, create_app
from agenttrail.store import RecordStore


RECORD_BODY = {
    "goal": "Extract price",
    "url": "https://example.com",
    "timestamp": "2024-01-01T00:00:00Z",
    "result_json": {"price": "63481.08"},
}


class FakeAutomation:
    def __init__(self):
        self.calls = []

    async def run(self, goal, url):
        self.calls.append((goal, url))
        return AutomationResult(
            run_id="run_123",
            streaming_url="https://stream.example/run_123",
            final_url=url + "/final",
            timestamp="2024-01-01T00:00:05Z",
            result_json={"url": url + "/final", "price": "63481.08"},
        )


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (ENV_API_KEYS_JSON, ENV_API_KEYS_FILE, "AGENTTRAIL_ENV", "AGENTTRAIL_STATS_REQUIRE_AUTH", "AGENTTRAIL_STATS_TOKEN", "ENV"):
        monkeypatch.delenv(name, raising=False)


def _gateway(tmp_path, automation=None) -> TrailGateway:
    return TrailGateway(
        RecordStore(str(tmp_path / "api.db")),
        LocalChainGateway(),
        config=TrailConfig(confirm_timeout_s=5, anchor_workers=2),
        automation=automation,
    )


def _wait_for_status(client, record_id, want, headers=None):
    body = None
    for _ in range(300):
        r = client.get(f"/v1/executions/{record_id}", headers=headers or {})
        assert r.status_code == 200
        body = r.json()
        if body["status"] == want:
            return body
        time.sleep(0.01)
    raise AssertionError(f"record {record_id} never reached {want}: {body}")


def test_create_anchor_and_verify(tmp_path):
    with TestClient(create_app(_gateway(tmp_path))) as client:
        r = client.post("/v1/records", json=RECORD_BODY)
        assert r.status_code == 200
        created = r.json()
        assert created["status"] == "pending"
        assert created["poa_hash"] == compute_poa_hash(RECORD_BODY)

        record = _wait_for_status(client, created["id"], "completed")
        assert record["tx_hash"].startswith("0x")
        assert record["anchor_error"] is None

        for method in (client.post, client.get):
            v = method(f"/v1/verify/{created['id']}")
            assert v.status_code == 200
            body = v.json()
            assert body["verified"] is True
            assert body["on_chain_hash"] == body["stored_hash"] == body["recomputed_hash"] == created["poa_hash"]


def test_verify_unknown_record_is_404(tmp_path):
    with TestClient(create_app(_gateway(tmp_path))) as client:
        r = client.post("/v1/verify/exec_missing")
        assert r.status_code == 404
        assert r.json()["code"] == "TRAIL_E_NOT_FOUND"


def test_retry_endpoint(tmp_path):
    with TestClient(create_app(_gateway(tmp_path))) as client:
        rid = client.post("/v1/records", json=RECORD_BODY).json()["id"]
        _wait_for_status(client, rid, "completed")

        r = client.post(f"/v1/executions/{rid}/anchor")
        assert r.status_code == 200
        assert r.json()["status"] in ("queued", "in_progress")
        record = None
        for _ in range(300):
            record = client.get(f"/v1/executions/{rid}").json()
            if record["anchor_attempts"] >= 2 and record["status"] == "completed":
                break
            time.sleep(0.01)
        assert record["anchor_attempts"] == 2
        assert record["status"] == "completed"

        assert client.post("/v1/executions/exec_missing/anchor").status_code == 404


def test_non_canonical_payload_rejected_and_not_persisted(tmp_path):
    with TestClient(create_app(_gateway(tmp_path))) as client:
        body = '{"goal":"g","url":"https://example.com","timestamp":"t","result_json":{"x":NaN}}'
        r = client.post("/v1/records", content=body, headers={"content-type": "application/json"})
        assert r.status_code == 400
        assert r.json()["code"] == "TRAIL_E_CANON_NONFINITE"
        assert client.get("/v1/executions").json()["executions"] == []


def test_create_record_without_timestamp_raises_serialization_error(tmp_path):
    gw = _gateway(tmp_path)
    with pytest.raises(SerializationError) as ei:
        gw.create_record({"goal": "g", "url": "u", "result_json": {}})
    assert ei.value.code == TRAIL_E_CANON_FIELD
    assert ei.value.http_status == 400
    assert ei.value.details["missing"] == ["timestamp"]
    assert gw.store.list_records() == []


def test_create_record_with_non_string_goal_is_rejected(tmp_path):
    gw = _gateway(tmp_path)
    with pytest.raises(SerializationError) as ei:
        gw.create_record({"goal": 7, "url": "u", "timestamp": "t", "result_json": {}})
    assert ei.value.code == TRAIL_E_CANON_FIELD
    assert gw.store.list_records() == []


def test_execute_requires_configured_automation(tmp_path):
    with TestClient(create_app(_gateway(tmp_path))) as client:
        r = client.post("/v1/execute", json={"goal": "g", "url": "https://example.com"})
        assert r.status_code == 503
        assert r.json()["code"] == "TRAIL_E_CONFIG"


def test_execute_hashes_the_final_url(tmp_path):
    automation = FakeAutomation()
    with TestClient(create_app(_gateway(tmp_path, automation=automation))) as client:
        r = client.post("/v1/execute", json={"goal": "Extract price", "url": "https://example.com"})
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "pending"
        assert body["result_json"]["price"] == "63481.08"
        assert body["streaming_url"] == "https://stream.example/run_123"

        record = _wait_for_status(client, body["receipt_id"], "completed")
        assert record["streaming_url"] == "https://stream.example/run_123"
        assert record["target_url"] == "https://example.com/final"
        assert record["poa_timestamp"] == "2024-01-01T00:00:05Z"
        assert record["run_id"] == "run_123"
        assert body["poa_hash"] == compute_poa_hash({
            "goal": "Extract price",
            "url": "https://example.com/final",
            "timestamp": "2024-01-01T00:00:05Z",
            "result_json": {"url": "https://example.com/final", "price": "63481.08"},
        })
    assert automation.calls == [("Extract price", "https://example.com")]


def test_execute_rejects_empty_goal(tmp_path):
    with TestClient(create_app(_gateway(tmp_path, automation=FakeAutomation()))) as client:
        r = client.post("/v1/execute", json={"goal": "", "url": "https://example.com"})
        assert r.status_code == 422


def test_org_scoping_with_api_keys(tmp_path, monkeypatch):
    monkeypatch.setenv(ENV_API_KEYS_JSON, json.dumps({hash_api_key("key-a"): "org_a", hash_api_key("key-b"): "org_b"}))
    a = {"Authorization": "Bearer key-a"}
    b = {"X-AgentTrail-Key": "key-b"}

    with TestClient(create_app(_gateway(tmp_path))) as client:
        assert client.post("/v1/records", json=RECORD_BODY).status_code == 401
        assert client.post("/v1/records", json=RECORD_BODY, headers={"Authorization": "Bearer nope"}).status_code == 401

        rid = client.post("/v1/records", json=RECORD_BODY, headers=a).json()["id"]
        record = _wait_for_status(client, rid, "completed", headers=a)
        assert record["org_id"] == "org_a"

        assert client.get(f"/v1/executions/{rid}", headers=b).status_code == 404
        assert client.post(f"/v1/executions/{rid}/anchor", headers=b).status_code == 404
        assert client.get("/v1/executions", headers=b).json()["executions"] == []
        assert [e["id"] for e in client.get("/v1/executions", headers=a).json()["executions"]] == [rid]

        # Verification is public.
        assert client.post(f"/v1/verify/{rid}").json()["verified"] is True


def test_health_and_metrics(tmp_path):
    with TestClient(create_app(_gateway(tmp_path))) as client:
        h = client.get("/v1/health").json()
        assert h["status"] == "healthy"
        assert h["contract_address"].lower() == "0x1abe15ed2a424781f0b8c2c484aa237061e2b443"
        m = client.get("/metrics")
        assert m.status_code == 200
        assert "agenttrail_anchor_attempts_total" in m.text


def test_stats_requires_auth_by_default_in_prod(tmp_path, monkeypatch):
    monkeypatch.setenv("AGENTTRAIL_ENV", "prod")
    with TestClient(create_app(_gateway(tmp_path))) as client:
        assert client.get("/v1/stats").status_code == 401


def test_stats_token_and_dev_default(tmp_path, monkeypatch):
    with TestClient(create_app(_gateway(tmp_path))) as client:
        r = client.get("/v1/stats")
        assert r.status_code == 200
        assert "anchor_attempts_total" in r.json()

    monkeypatch.setenv("AGENTTRAIL_ENV", "prod")
    monkeypatch.setenv("AGENTTRAIL_STATS_TOKEN", "s3cret")
    with TestClient(create_app(_gateway(tmp_path))) as client:
        assert client.get("/v1/stats", headers={"X-Stats-Token": "s3cret"}).status_code == 200
        assert client.get("/v1/stats", headers={"X-Stats-Token": "wrong"}).status_code == 401


def test_request_size_limit(tmp_path, monkeypatch):
    monkeypatch.setenv("AGENTTRAIL_MAX_REQUEST_BYTES", "64")
    with TestClient(create_app(_gateway(tmp_path))) as client:
        big = dict(RECORD_BODY, result_json={"blob": "x" * 500})
        assert client.post("/v1/records", json=big).status_code == 413
