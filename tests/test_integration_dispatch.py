import json
import logging

import pytest
import requests

from integration_dispatch import (
    NO_ASSETS_MESSAGE,
    DispatchConfig,
    IntegrationDispatchError,
    IntegrationWorkerClient,
    WorkerRequestError,
    WorkerResponse,
    classify_worker_response,
    dispatch_integration_for_assets,
    run_integration_for_ad_group,
    summarize_ad_group,
    update_integration_status_for_assets,
)


class FakeWorkerClient:
    """Replays canned worker replies; an Exception entry is raised instead."""

    def __init__(self, *replies, on_call=None):
        self.replies = list(replies)
        self.calls = []
        self.on_call = on_call

    def post_dispatch(self, body):
        self.calls.append(body)
        if self.on_call:
            self.on_call(body)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def _ok(body=None):
    return WorkerResponse(status_code=200, reason="OK", text=json.dumps(body or {"ok": True}))


def _asset(asset_id, recipe, ratio, status="approved"):
    return {"id": asset_id, "status": status, "recipeCode": recipe, "aspectRatio": ratio, "filename": f"{asset_id}.png"}


@pytest.fixture()
def seeded(store):
    store.upsert_ad_group("grp1", integration_id="compass", integration_name="Compass")
    for a in (
        _asset("a1", "003", "9x16"),
        _asset("a2", "3", "1x1"),
        _asset("b1", "004", "4x5"),
        _asset("r1", "005", "1x1", status="rejected"),
    ):
        store.upsert_asset("grp1", a)
    return store


def _dispatch(store, client, assets, **kwargs):
    return dispatch_integration_for_assets(
        store,
        client,
        group_id="grp1",
        integration_id="compass",
        integration_name="Compass",
        assets=assets,
        **kwargs,
    )


def test_one_call_per_recipe_with_square_primary(seeded):
    client = FakeWorkerClient(_ok())
    assets = [_asset("a1", "003", "9x16"), _asset("a2", "3", "1x1")]

    outcomes = _dispatch(seeded, client, assets)

    assert len(client.calls) == 1
    body = client.calls[0]
    assert body["integrationId"] == "compass"
    assert body["reviewId"] == "grp1"
    assert body["attempt"] == 1
    payload = body["payload"]
    assert payload["adGroupId"] == "grp1"
    assert payload["recipeIdentifier"] == "3"
    assert payload["approvedAssetIds"] == ["a1", "a2"]
    assert payload["approvedAsset"]["id"] == "a2"
    assert payload["approvedAsset"]["aspectRatio"] == "1x1"
    assert payload["approvedAssetId"] == payload["approvedAdId"] == "a2"
    assert {a["recipeCode"] for a in payload["approvedAssets"]} == {"3"}

    assert [o.state for o in outcomes] == ["received"]
    for asset_id in ("a1", "a2"):
        entry = seeded.get_integration_status("grp1", asset_id, "compass")
        assert entry["state"] == "received"
        assert entry["errorMessage"] == ""
        assert entry["responseStatus"] == 200
        assert entry["requestPayload"]["approvedAssetIds"] == ["a1", "a2"]


def test_groups_run_in_order_with_increasing_attempt(seeded):
    client = FakeWorkerClient(_ok(), _ok())
    assets = [_asset("a1", "003", "9x16"), _asset("b1", "004", "4x5"), _asset("a2", "3", "1x1")]

    outcomes = _dispatch(seeded, client, assets)

    assert [c["payload"]["recipeIdentifier"] for c in client.calls] == ["3", "4"]
    assert [c["attempt"] for c in client.calls] == [1, 2]
    assert [o.group_key for o in outcomes] == ["3", "4"]


def test_sending_is_written_before_the_call(seeded):
    seen = []

    def check(body):
        seen.append(seeded.get_integration_status("grp1", "b1", "compass")["state"])

    client = FakeWorkerClient(_ok(), on_call=check)
    _dispatch(seeded, client, [_asset("b1", "004", "4x5")])

    assert seen == ["sending"]
    assert seeded.get_integration_status("grp1", "b1", "compass")["state"] == "received"


def test_network_error_marks_error_and_other_groups_still_run(seeded):
    client = FakeWorkerClient(
        WorkerRequestError("Network error calling integration worker: connection refused"),
        _ok(),
    )
    assets = [_asset("a1", "003", "9x16"), _asset("b1", "004", "4x5")]

    with pytest.raises(IntegrationDispatchError) as exc:
        _dispatch(seeded, client, assets)

    assert "3: Network error calling integration worker: connection refused" in str(exc.value)
    assert len(client.calls) == 2

    failed = seeded.get_integration_status("grp1", "a1", "compass")
    assert failed["state"] == "error"
    assert failed["errorMessage"] == "Network error calling integration worker: connection refused"
    assert failed["responsePayload"] is None
    assert seeded.get_integration_status("grp1", "b1", "compass")["state"] == "received"


def test_aggregate_error_lists_every_failed_group(seeded):
    client = FakeWorkerClient(RuntimeError("boom"), RuntimeError("bang"))
    assets = [_asset("a1", "003", "9x16"), _asset("b1", "004", "4x5")]

    with pytest.raises(IntegrationDispatchError, match=r"^3: boom; 4: bang$"):
        _dispatch(seeded, client, assets)


def test_duplicate_conflict_counts_as_received(seeded, caplog):
    reply = {
        "dispatch": {
            "status": "error",
            "errorMessage": "Duplicate submission: creative already exists",
            "response": {"status": 409, "headers": {"x-request-id": "r1"}},
        }
    }
    client = FakeWorkerClient(WorkerResponse(status_code=409, reason="Conflict", text=json.dumps(reply)))

    with caplog.at_level(logging.INFO, logger="integration_dispatch"):
        outcomes = _dispatch(seeded, client, [_asset("b1", "004", "4x5")])

    assert outcomes[0].duplicate is True
    entry = seeded.get_integration_status("grp1", "b1", "compass")
    assert entry["state"] == "received"
    assert entry["errorMessage"] == ""
    assert entry["duplicateConflict"] is True
    assert entry["responseStatus"] == 409
    assert entry["responseHeaders"] == {"x-request-id": "r1"}
    assert "Duplicate conflict" in caplog.text

    assert summarize_ad_group(seeded, "grp1").outcome == "success"


def test_plain_conflict_is_an_error(seeded):
    reply = {"dispatch": {"errorMessage": "Conflict updating record", "response": {"status": 409}}}
    client = FakeWorkerClient(WorkerResponse(status_code=409, reason="Conflict", text=json.dumps(reply)))

    with pytest.raises(IntegrationDispatchError, match="4: Conflict updating record"):
        _dispatch(seeded, client, [_asset("b1", "004", "4x5")])

    entry = seeded.get_integration_status("grp1", "b1", "compass")
    assert entry["state"] == "error"
    assert entry["errorMessage"] == "Conflict updating record"
    assert "duplicateConflict" not in entry


def test_business_error_inside_http_200(seeded):
    client = FakeWorkerClient(_ok({"dispatch": {"response": {"status": 500}}}))

    with pytest.raises(IntegrationDispatchError, match="Integration responded with status 500."):
        _dispatch(seeded, client, [_asset("b1", "004", "4x5")])

    entry = seeded.get_integration_status("grp1", "b1", "compass")
    assert entry["state"] == "error"
    assert entry["responseStatus"] == 500


def test_dispatch_status_failed_is_an_error(seeded):
    client = FakeWorkerClient(_ok({"dispatch": {"status": "failed", "message": "Rejected by partner"}}))

    with pytest.raises(IntegrationDispatchError, match="Rejected by partner"):
        _dispatch(seeded, client, [_asset("b1", "004", "4x5")])


def test_zero_approved_assets_makes_no_call(seeded):
    client = FakeWorkerClient()
    pending = [_asset("r1", "005", "1x1", status="rejected")]

    with pytest.raises(IntegrationDispatchError, match=NO_ASSETS_MESSAGE):
        _dispatch(seeded, client, pending)

    assert client.calls == []
    assert seeded.get_integration_status("grp1", "r1", "compass") is None


def test_store_failures_do_not_fail_dispatch(caplog):
    class BrokenStore:
        def set_integration_statuses(self, *args, **kwargs):
            raise RuntimeError("database is locked")

    client = FakeWorkerClient(_ok())
    outcomes = _dispatch(BrokenStore(), client, [_asset("b1", "004", "4x5")])

    assert [o.state for o in outcomes] == ["received"]
    assert "Failed to update integration statuses" in caplog.text


def test_update_status_writes_only_passed_fields(seeded):
    updated_at = update_integration_status_for_assets(
        seeded,
        "grp1",
        "compass",
        "Compass",
        [{"id": "a1"}, {"id": "a2"}, {"status": "approved"}],
        "error",
        error_message="nope",
        response_status=None,
    )

    entry = seeded.get_integration_status("grp1", "a1", "compass")
    assert entry == {
        "state": "error",
        "integrationId": "compass",
        "integrationName": "Compass",
        "errorMessage": "nope",
        "responseStatus": None,
        "updatedAt": updated_at,
    }

    with pytest.raises(TypeError):
        update_integration_status_for_assets(seeded, "grp1", "compass", "", [{"id": "a1"}], "error", bogus=1)

    assert update_integration_status_for_assets(seeded, "grp1", "compass", "", [], "received") is None


def test_run_integration_for_ad_group_uses_stored_assignment(seeded):
    client = FakeWorkerClient(_ok(), _ok())

    outcomes = run_integration_for_ad_group(seeded, client, "grp1")

    assert [o.group_key for o in outcomes] == ["3", "4"]
    assert all(c["integrationId"] == "compass" for c in client.calls)
    assert all(c["payload"]["integrationName"] == "Compass" for c in client.calls)
    assert seeded.get_integration_status("grp1", "r1", "compass") is None


def test_run_integration_without_assignment_is_a_no_op(store):
    store.upsert_ad_group("grp2")
    store.upsert_asset("grp2", _asset("a1", "1", "1x1"))
    client = FakeWorkerClient()

    assert run_integration_for_ad_group(store, client, "grp2") == []
    assert client.calls == []


# -----------------------------
# Response classification
# -----------------------------

def test_classify_uses_worker_echoed_request_body():
    reply = {"request": {"body": {"creative": "c1"}}, "dispatch": {"response": {"status": 201}}}
    verdict = classify_worker_response(WorkerResponse(status_code=200, text=json.dumps(reply)), {"ours": True})

    assert verdict.state == "received"
    assert verdict.request_payload == {"creative": "c1"}
    assert verdict.response_status == 201
    assert verdict.response_payload == reply


def test_classify_non_json_error_keeps_raw_text():
    verdict = classify_worker_response(
        WorkerResponse(status_code=502, reason="Bad Gateway", text="<html>upstream down</html>"),
        {"ours": True},
    )

    assert verdict.state == "error"
    assert verdict.error_message == "Bad Gateway"
    assert verdict.response_payload == "<html>upstream down</html>"
    assert verdict.request_payload == {"ours": True}
    assert verdict.response_headers is None


def test_classify_empty_success_body():
    verdict = classify_worker_response(WorkerResponse(status_code=204), None)
    assert verdict.state == "received"
    assert verdict.response_payload is None
    assert verdict.response_status == 204


# -----------------------------
# Config / client
# -----------------------------

def test_config_from_env(monkeypatch):
    monkeypatch.setenv("INTEGRATION_WORKER_URL", "https://worker.example.com/")
    monkeypatch.delenv("INTEGRATION_WORKER_PATH", raising=False)
    monkeypatch.setenv("INTEGRATION_WORKER_API_KEY", "secret")
    monkeypatch.setenv("INTEGRATION_WORKER_TIMEOUT_S", "12")

    cfg = DispatchConfig.from_env()

    assert cfg.endpoint == "https://worker.example.com/api/integration-worker"
    assert cfg.api_key == "secret"
    assert cfg.timeout_s == 12


def test_config_requires_worker_url(monkeypatch):
    monkeypatch.setenv("INTEGRATION_WORKER_URL", "")
    with pytest.raises(ValueError, match="INTEGRATION_WORKER_URL"):
        DispatchConfig.from_env()


def test_worker_client_posts_json_with_api_key(monkeypatch):
    captured = {}

    class Resp:
        status_code = 200
        reason = "OK"
        text = '{"ok": true}'
        headers = {"Content-Type": "application/json"}

    def fake_post(url, data=None, headers=None, timeout=None):
        captured.update(url=url, body=json.loads(data), headers=headers, timeout=timeout)
        return Resp()

    client = IntegrationWorkerClient(DispatchConfig(worker_url="https://w.example.com", api_key="k", timeout_s=5))
    monkeypatch.setattr(client.session, "post", fake_post)

    resp = client.post_dispatch({"integrationId": "compass"})

    assert resp.ok
    assert resp.headers == {"Content-Type": "application/json"}
    assert captured["url"] == "https://w.example.com/api/integration-worker"
    assert captured["headers"]["X-API-Key"] == "k"
    assert captured["body"] == {"integrationId": "compass"}
    assert captured["timeout"] == 5


def test_worker_client_wraps_network_errors(monkeypatch):
    def fake_post(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    client = IntegrationWorkerClient(DispatchConfig(worker_url="https://w.example.com"))
    monkeypatch.setattr(client.session, "post", fake_post)

    with pytest.raises(WorkerRequestError, match="connection refused") as exc:
        client.post_dispatch({})
    assert exc.value.http_status is None


def test_exception_without_text_gets_default_message(seeded):
    client = FakeWorkerClient(RuntimeError(""))

    with pytest.raises(IntegrationDispatchError, match="4: Integration dispatch failed."):
        _dispatch(seeded, client, [_asset("b1", "004", "4x5")])


def test_duplicate_conflict_wrapped_in_http_200(seeded):
    reply = {
        "dispatch": {
            "status": "error",
            "response": {
                "status": 409,
                "body": {"message": "Duplicate creative: this ad already exists"},
            },
        }
    }
    client = FakeWorkerClient(_ok(reply))

    outcomes = _dispatch(seeded, client, [_asset("b1", "004", "4x5")])

    assert outcomes[0].state == "received"
    assert outcomes[0].duplicate is True
    entry = seeded.get_integration_status("grp1", "b1", "compass")
    assert entry["state"] == "received"
    assert entry["duplicateConflict"] is True
    assert entry["responseStatus"] == 409
    assert entry["errorMessage"] == ""

    assert summarize_ad_group(seeded, "grp1").outcome == "success"
