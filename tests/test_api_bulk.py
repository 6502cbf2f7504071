"""Tests for the bulk-operation routes, including the SSE stream."""

import asyncio
import json

from core.config import Settings


async def wait_for_terminal(client, op_id: str, timeout: float = 5.0) -> dict:
    deadline = asyncio.get_event_loop().time() + timeout
    last: dict = {}
    while asyncio.get_event_loop().time() < deadline:
        resp = await client.get(f"/bulk-operations/{op_id}")
        last = resp.json()
        if last["status"] in {"completed", "completed_with_errors", "failed"}:
            return last
        await asyncio.sleep(0.05)
    raise TimeoutError(f"Operation did not finish within {timeout}s. Last state: {last}")


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


async def test_submit_returns_immediately(client):
    resp = await client.post("/bulk-operations/delete", json={"site_id": "blog", "target_ids": ["1", "2"]})
    assert resp.status_code == 202
    body = resp.json()
    assert body["status"] == "queued"
    assert body["operation_id"]


async def test_partial_failure_reported(client, remote):
    remote.fail_ids = {"3", "7"}
    resp = await client.post(
        "/bulk-operations/unpublish",
        json={"site_id": "blog", "target_ids": [str(i) for i in range(1, 11)]},
    )
    done = await wait_for_terminal(client, resp.json()["operation_id"])

    assert done["status"] == "completed_with_errors"
    assert (done["total"], done["processed"], done["succeeded"], done["failed"]) == (10, 10, 8, 2)
    assert {e["target_id"] for e in done["errors"]} == {"3", "7"}


async def test_integer_post_ids_accepted(client, remote):
    resp = await client.post("/bulk-operations/delete", json={"site_id": "blog", "target_ids": [1, 2, 3]})
    assert resp.status_code == 202
    done = await wait_for_terminal(client, resp.json()["operation_id"])

    assert done["status"] == "completed"
    assert done["succeeded"] == 3
    assert sorted(t for _, t in remote.calls) == ["1", "2", "3"]


async def test_non_scalar_target_ids_rejected(client):
    resp = await client.post("/bulk-operations/delete", json={"site_id": "blog", "target_ids": [{"id": 1}]})
    assert resp.status_code == 422


async def test_update_metadata_requires_fields(client):
    resp = await client.post("/bulk-operations/update-metadata", json={"site_id": "blog", "target_ids": ["1"]})
    assert resp.status_code == 422

    resp = await client.post(
        "/bulk-operations/update-metadata",
        json={"site_id": "blog", "target_ids": ["1"], "fields": {"categories": [3]}},
    )
    assert resp.status_code == 202


async def test_empty_targets_rejected(client):
    resp = await client.post("/bulk-operations/delete", json={"site_id": "blog", "target_ids": []})
    assert resp.status_code == 422


async def test_unknown_action_is_404(client):
    resp = await client.post("/bulk-operations/explode", json={"site_id": "blog", "target_ids": ["1"]})
    assert resp.status_code == 404


async def test_unknown_or_foreign_site_is_404(client):
    resp = await client.post("/bulk-operations/delete", json={"site_id": "nope", "target_ids": ["1"]})
    assert resp.status_code == 404

    resp = await client.post(
        "/bulk-operations/delete",
        json={"site_id": "blog", "target_ids": ["1"]},
        headers={"X-User-Id": "mallory"},
    )
    assert resp.status_code == 404


async def test_missing_credentials_fail_the_operation(client):
    resp = await client.post("/bulk-operations/publish", json={"site_id": "bare", "target_ids": ["1"]})
    done = await wait_for_terminal(client, resp.json()["operation_id"])
    assert done["status"] == "failed"
    assert done["errors"][0]["target_id"] is None


async def test_status_is_owner_scoped(client):
    resp = await client.post("/bulk-operations/delete", json={"site_id": "blog", "target_ids": ["1"]})
    op_id = resp.json()["operation_id"]
    await wait_for_terminal(client, op_id)

    resp = await client.get(f"/bulk-operations/{op_id}", headers={"X-User-Id": "mallory"})
    assert resp.status_code == 404
    assert (await client.get("/bulk-operations/does-not-exist")).status_code == 404


async def test_list_operations(client):
    for _ in range(3):
        resp = await client.post("/bulk-operations/delete", json={"site_id": "blog", "target_ids": ["1"]})
        await wait_for_terminal(client, resp.json()["operation_id"])

    resp = await client.get("/bulk-operations", params={"per_page": 2})
    body = resp.json()
    assert resp.status_code == 200
    assert body["total"] == 3
    assert len(body["items"]) == 2
    assert body["items"][0]["status"] == "completed"


async def test_stream_ends_with_terminal_event(client, remote):
    remote.delay = 0.01
    resp = await client.post("/bulk-operations/delete", json={"site_id": "blog", "target_ids": ["1", "2", "3"]})
    op_id = resp.json()["operation_id"]

    events = []
    async with client.stream("GET", f"/bulk-operations/{op_id}/stream") as stream:
        assert stream.headers["content-type"].startswith("text/event-stream")
        async for line in stream.aiter_lines():
            if line.startswith("data: "):
                events.append(json.loads(line[len("data: "):]))

    assert events[0]["type"] == "snapshot"
    assert events[-1]["status"] == "completed"
    assert events[-1]["processed"] == 3
    processed = [e["processed"] for e in events]
    assert processed == sorted(processed)


async def test_stream_of_finished_operation_sends_snapshot_only(client):
    resp = await client.post("/bulk-operations/delete", json={"site_id": "blog", "target_ids": ["1"]})
    op_id = resp.json()["operation_id"]
    await wait_for_terminal(client, op_id)

    resp = await client.get(f"/bulk-operations/{op_id}/stream")
    events = [json.loads(line[6:]) for line in resp.text.splitlines() if line.startswith("data: ")]
    assert len(events) == 1
    assert events[0]["type"] == "snapshot"
    assert events[0]["status"] == "completed"


async def test_bearer_tokens(client, api, monkeypatch):
    monkeypatch.setattr(api, "_settings", Settings(api_tokens={"s3cret": "alice"}))

    resp = await client.get("/bulk-operations")
    assert resp.status_code == 401
    assert resp.headers["www-authenticate"] == "Bearer"

    resp = await client.get("/bulk-operations", headers={"Authorization": "Bearer wrong"})
    assert resp.status_code == 401

    resp = await client.get("/bulk-operations", headers={"Authorization": "Bearer s3cret"})
    assert resp.status_code == 200
