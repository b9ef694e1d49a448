import json

import pytest
from fastapi.testclient import TestClient

import api as api_module
from integration_dispatch import WorkerResponse


class FakeWorkerClient:
    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def post_dispatch(self, body):
        self.calls.append(body)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture()
def api_client(store, monkeypatch):
    monkeypatch.setattr(api_module, "_get_store", lambda: store)
    with TestClient(api_module.app) as client:
        yield client


def _seed(api_client):
    resp = api_client.put("/ad-groups/grp1", json={"integration_id": "compass", "integration_name": "Compass"})
    assert resp.status_code == 200
    for asset_id, ratio in (("a1", "9x16"), ("a2", "1x1")):
        resp = api_client.put(
            f"/ad-groups/grp1/assets/{asset_id}",
            json={"status": "approved", "recipeCode": "007", "aspectRatio": ratio},
        )
        assert resp.status_code == 200
        assert resp.json()["asset_id"] == asset_id


def test_health(api_client):
    assert api_client.get("/health").json() == {"ok": True}
    assert api_client.get("/").json()["ok"] is True


def test_dispatch_and_summary(api_client, monkeypatch):
    _seed(api_client)
    worker = FakeWorkerClient(WorkerResponse(status_code=200, reason="OK", text=json.dumps({"ok": True})))
    monkeypatch.setattr(api_module, "_get_client", lambda: worker)

    resp = api_client.post("/ad-groups/grp1/dispatch")

    assert resp.status_code == 200
    dispatched = resp.json()["dispatched"]
    assert [d["group_key"] for d in dispatched] == ["7"]
    assert len(worker.calls) == 1
    assert worker.calls[0]["payload"]["approvedAsset"]["id"] == "a2"

    summary = api_client.get("/ad-groups/grp1/integration-status").json()["summary"]
    assert summary["integrationId"] == "compass"
    assert summary["wasTriggered"] is True
    assert summary["outcome"] == "success"


def test_dispatch_failure_maps_to_502(api_client, monkeypatch):
    _seed(api_client)
    worker = FakeWorkerClient(RuntimeError("connection reset"))
    monkeypatch.setattr(api_module, "_get_client", lambda: worker)

    resp = api_client.post("/ad-groups/grp1/dispatch", json={})

    assert resp.status_code == 502
    assert resp.json()["detail"] == {"message": "7: connection reset"}

    summary = api_client.get("/ad-groups/grp1/integration-status").json()["summary"]
    assert summary["outcome"] == "error"
    assert summary["errorMessage"] == "connection reset"


def test_dispatch_with_explicit_assets_and_integration(api_client, monkeypatch):
    api_client.put("/ad-groups/grp2", json={})
    api_client.put("/ad-groups/grp2/assets/x1", json={"status": "approved"})
    worker = FakeWorkerClient(WorkerResponse(status_code=200, text="{}"))
    monkeypatch.setattr(api_module, "_get_client", lambda: worker)

    resp = api_client.post(
        "/ad-groups/grp2/dispatch",
        json={"integration_id": "other", "assets": [{"id": "x1", "status": "approved"}]},
    )

    assert resp.status_code == 200
    assert worker.calls[0]["integrationId"] == "other"

    summary = api_client.get("/ad-groups/grp2/integration-status", params={"integration_id": "other"}).json()["summary"]
    assert summary["outcome"] == "success"


def test_summary_without_integration_is_null(api_client):
    api_client.put("/ad-groups/grp3", json={})
    assert api_client.get("/ad-groups/grp3/integration-status").json()["summary"] is None


def test_dispatch_without_worker_config_is_500(api_client, monkeypatch):
    monkeypatch.setenv("INTEGRATION_WORKER_URL", "")
    resp = api_client.post("/ad-groups/grp1/dispatch")
    assert resp.status_code == 500
    assert "Server misconfigured" in resp.json()["detail"]


def test_api_key_required_when_configured(api_client, monkeypatch):
    monkeypatch.setenv("SERVICE_API_KEY", "s3cret")

    assert api_client.get("/ad-groups/grp1/integration-status").status_code == 401
    resp = api_client.get("/ad-groups/grp1/integration-status", headers={"X-API-Key": "s3cret"})
    assert resp.status_code == 200
