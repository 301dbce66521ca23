import base64

import pytest
from fastapi.testclient import TestClient

from impact_gateway.auth import ENV_API_KEYS_FILE, ENV_API_KEYS_JSON, ApiKeyAuth
from impact_gateway.config import ImpactSettings
from impact_gateway.crypto import content_hash
from impact_gateway.errors import IMP_E_ACCESS_DENIED, IMP_E_AUTH_REQUIRED, IMP_E_BAD_REQUEST, IMP_E_CONTRACT_REVERT
from impact_gateway.runtime import build_runtime
from impact_gateway.server import create_app

from conftest import make_jpeg

SF = {"latitude": 37.7749, "longitude": -122.4194}


def _client(tmp_path, monkeypatch, dao, signing_key, auth=None, **overrides) -> TestClient:
    # Tests shouldn't depend on local API key or metrics configuration.
    for name in (ENV_API_KEYS_JSON, ENV_API_KEYS_FILE, "IMPACT_METRICS_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    settings = ImpactSettings(ledger_path=str(tmp_path / "ledger.db"), **overrides)
    runtime = build_runtime(settings, signing_key=signing_key, dao=dao)
    return TestClient(create_app(runtime, auth=auth or ApiKeyAuth(api_key_to_address={})))


def _as(address):
    return {"X-Member-Address": address}


@pytest.fixture
def client(tmp_path, monkeypatch, dao, signing_key):
    with _client(tmp_path, monkeypatch, dao, signing_key) as c:
        yield c


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["ledger"] == {"claimed": 0, "success": 0, "failed": 0}
    assert body["scheduler_running"] is True
    assert body["governance"] == "local"


def test_evidence_submission_and_ledger_views(client, dao):
    data = make_jpeg()
    payload = {
        "data_b64": base64.b64encode(data).decode("ascii"),
        "filename": "bridge.jpg",
        "hints": SF,
        "description": "Collapsed footbridge over the creek",
    }

    r = client.post("/v1/evidence", json=payload)
    assert r.status_code == 200, r.text
    first = r.json()
    assert first["status"] == "success"
    assert first["content_hash"] == content_hash(data)
    assert dao.get_proposal(first["proposal_id"]).exists

    r = client.post("/v1/evidence", json=payload)
    again = r.json()
    assert again["status"] == "duplicate"
    assert again["prior"]["proposal_id"] == first["proposal_id"]

    r = client.get(f"/v1/ledger/{first['content_hash']}")
    assert r.status_code == 200
    assert r.json()["state"] == "success"

    assert client.get("/v1/ledger/counts").json()["success"] == 1
    listed = client.get("/v1/ledger", params={"state": "success"}).json()["records"]
    assert [rec["content_hash"] for rec in listed] == [first["content_hash"]]


def test_batch_endpoint_reports_per_item_outcomes(client):
    items = [
        {"data_b64": base64.b64encode(make_jpeg()).decode("ascii"), "filename": "a.jpg"},
        {"data_b64": base64.b64encode(b"not an image").decode("ascii"), "filename": "b.jpg"},
    ]
    r = client.post("/v1/evidence/batch", json={"items": items, "concurrency": 2})
    assert r.status_code == 200
    body = r.json()
    assert body["summary"]["success"] == 1
    assert body["summary"]["rejected"] == 1
    assert [o["filename"] for o in body["outcomes"]] == ["a.jpg", "b.jpg"]


def test_bad_requests(client):
    r = client.post("/v1/evidence", json={"data_b64": "%%% not base64 %%%"})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == IMP_E_BAD_REQUEST

    r = client.get("/v1/ledger/" + "ab" * 32)
    assert r.status_code == 404

    r = client.get("/v1/ledger", params={"state": "pending"})
    assert r.status_code == 400

    r = client.get("/v1/governance/proposals/0xdeadbeef")
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == IMP_E_BAD_REQUEST


def test_governance_flow_over_http(client, dao):
    dao.ledger.mint("0xv1", 1_000)
    dao.ledger.mint("0xdonor", 1_000)

    r = client.post("/v1/governance/members/verifier", json={"stake": 100}, headers=_as("0xv1"))
    assert r.status_code == 200, r.text
    assert r.json()["events"][0]["name"] == "MemberJoined"

    member = client.get("/v1/governance/members/0xv1").json()
    assert member["is_member"] is True
    assert member["role"] == "verifier"
    assert member["stake"] == 100

    r = client.post(
        "/v1/governance/proposals",
        json={"description": "Repair the footbridge", "requested_amount": 50, "beneficiary": "0xben"},
        headers=_as("0xv1"),
    )
    assert r.status_code == 200
    pid = r.json()["proposal_id"]
    assert pid in client.get("/v1/governance/proposals").json()["proposal_ids"]

    assert client.post(f"/v1/governance/proposals/{pid}/verify", headers=_as("0xv1")).status_code == 200
    assert client.post(f"/v1/governance/proposals/{pid}/vote", json={"support": True}, headers=_as("0xv1")).status_code == 200
    assert client.get(f"/v1/governance/proposals/{pid}/voters/0xv1").json()["has_voted"] is True

    r = client.post(f"/v1/governance/proposals/{pid}/vote", json={"support": False}, headers=_as("0xv1"))
    assert r.status_code == 409
    detail = r.json()["detail"]
    assert detail["code"] == IMP_E_CONTRACT_REVERT
    assert detail["reason"] == "AlreadyVoted"

    r = client.post("/v1/governance/fund", json={"amount": 500}, headers=_as("0xdonor"))
    assert r.status_code == 200
    assert client.get("/v1/governance/treasury").json() == {"available": 500}

    r = client.post(f"/v1/governance/proposals/{pid}/execute", headers=_as("0xdonor"))
    assert r.json()["detail"]["reason"] == "VotingOpen"

    dao.ledger.advance_time(3_601)
    r = client.post(f"/v1/governance/proposals/{pid}/execute", headers=_as("0xdonor"))
    assert r.status_code == 200, r.text
    assert dao.ledger.balance_of("0xben") == 50

    view = client.get(f"/v1/governance/proposals/{pid}").json()
    assert view["status"] == "executed"
    assert view["executed"] is True
    assert client.get("/v1/governance/treasury").json() == {"available": 450}


def test_governance_requires_an_identity(client):
    r = client.post("/v1/governance/members/agent", json={})
    assert r.status_code == 401
    assert r.json()["detail"]["code"] == IMP_E_AUTH_REQUIRED


def test_api_keys_bind_the_sender(tmp_path, monkeypatch, dao, signing_key):
    auth = ApiKeyAuth(api_key_to_address={"k1": "0xagent"}, configured=True)
    with _client(tmp_path, monkeypatch, dao, signing_key, auth=auth) as c:
        r = c.post("/v1/governance/members/agent", json={}, headers=_as("0xagent"))
        assert r.status_code == 401
        assert r.json()["detail"]["message"] == "API_KEY_REQUIRED"

        r = c.post("/v1/governance/members/agent", json={}, headers={"X-Api-Key": "k1", "X-Member-Address": "0xother"})
        assert r.status_code == 401

        r = c.post("/v1/governance/members/agent", json={}, headers={"X-Api-Key": "k1"})
        assert r.status_code == 200
        assert r.json()["sender"] == "0xagent"
    assert dao.is_member("0xagent")


def test_metrics_endpoint(client):
    client.post("/v1/evidence", json={"data_b64": base64.b64encode(b"nope").decode("ascii")})
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "impact_pipeline_outcomes_total" in r.text


def test_intake_scan_is_limited_to_members_and_the_intake_root(tmp_path, monkeypatch, dao, signing_key):
    root = tmp_path / "intake"
    (root / "inbox").mkdir(parents=True)
    (root / "inbox" / "bridge.jpg").write_bytes(make_jpeg())
    outside = tmp_path / "private"
    outside.mkdir()
    (outside / "secret.jpg").write_bytes(make_jpeg(color=(0, 90, 0)))
    (root / "escape").symlink_to(outside, target_is_directory=True)
    dao.ledger.mint("0xv1", 1_000)

    with _client(tmp_path, monkeypatch, dao, signing_key, intake_dir=str(root)) as c:
        r = c.post("/v1/intake/scan", json={"directory": "inbox"})
        assert r.status_code == 401
        assert r.json()["detail"]["code"] == IMP_E_AUTH_REQUIRED

        r = c.post("/v1/intake/scan", json={"directory": "inbox"}, headers=_as("0xv1"))
        assert r.status_code == 403
        assert r.json()["detail"]["message"] == "NOT_A_MEMBER"

        assert c.post("/v1/governance/members/verifier", json={"stake": 100}, headers=_as("0xv1")).status_code == 200

        for directory in ("../private", str(outside), "escape"):
            r = c.post("/v1/intake/scan", json={"directory": directory}, headers=_as("0xv1"))
            assert r.status_code == 403, directory
            assert r.json()["detail"]["code"] == IMP_E_ACCESS_DENIED

        r = c.post("/v1/intake/scan", json={"directory": "inbox"}, headers=_as("0xv1"))
        assert r.status_code == 200, r.text
        assert r.json() == {"queued": 1}


def test_intake_scan_is_disabled_without_an_intake_root(tmp_path, monkeypatch, dao, signing_key):
    dao.ledger.mint("0xv1", 1_000)
    with _client(tmp_path, monkeypatch, dao, signing_key) as c:
        c.post("/v1/governance/members/verifier", json={"stake": 100}, headers=_as("0xv1"))
        r = c.post("/v1/intake/scan", json={"directory": str(tmp_path)}, headers=_as("0xv1"))
        assert r.status_code == 403
        assert r.json()["detail"]["message"] == "directory intake is not configured"
