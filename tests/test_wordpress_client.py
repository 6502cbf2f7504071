"""Tests for the WordPress REST client against an httpx MockTransport."""

import base64
import json

import httpx
import pytest

from clients.base import PostPayload
from clients.wordpress import WordPressClient
from core.errors import RemoteActionError
from scheduler.models import PublishStatus


def make_client(handler) -> tuple[WordPressClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = WordPressClient(
        "https://blog.example.com/", "editor", "abcd efgh", transport=httpx.MockTransport(record),
    )
    return client, seen


async def test_publish_creates_post():
    client, seen = make_client(
        lambda r: httpx.Response(201, json={"id": 42, "link": "https://blog.example.com/?p=42"}),
    )

    result = await client.publish(PostPayload(title="Hi", content="<p>x</p>", status=PublishStatus.DRAFT))

    assert result.remote_id == "42"
    assert result.link == "https://blog.example.com/?p=42"
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "https://blog.example.com/wp-json/wp/v2/posts"
    body = json.loads(request.content)
    assert body["status"] == "draft"
    assert "excerpt" not in body
    expected = base64.b64encode(b"editor:abcd efgh").decode()
    assert request.headers["authorization"] == f"Basic {expected}"


@pytest.mark.parametrize("method,status", [
    ("publish_existing", "publish"),
    ("unpublish", "draft"),
])
async def test_status_changes(method, status):
    client, seen = make_client(lambda r: httpx.Response(200, json={"id": 7}))
    await getattr(client, method)("7")
    assert seen[0].url.path == "/wp-json/wp/v2/posts/7"
    assert json.loads(seen[0].content) == {"status": status}


async def test_update_metadata_sends_fields():
    client, seen = make_client(lambda r: httpx.Response(200, json={"id": 7}))
    await client.update_metadata("7", {"categories": [3], "sticky": True})
    assert json.loads(seen[0].content) == {"categories": [3], "sticky": True}


async def test_delete_treats_missing_post_as_done():
    client, seen = make_client(lambda r: httpx.Response(404, json={"code": "rest_post_invalid_id"}))
    await client.delete("99")
    assert seen[0].method == "DELETE"


async def test_permanent_error():
    client, _ = make_client(
        lambda r: httpx.Response(403, json={"code": "rest_forbidden", "message": "Sorry, you are not allowed"}),
    )
    with pytest.raises(RemoteActionError) as exc:
        await client.unpublish("7")
    assert not exc.value.transient
    assert exc.value.status_code == 403
    assert "not allowed" in str(exc.value)


@pytest.mark.parametrize("status", [429, 500, 503])
async def test_transient_http_error(status):
    client, _ = make_client(lambda r: httpx.Response(status, text="busy"))
    with pytest.raises(RemoteActionError) as exc:
        await client.publish_existing("7")
    assert exc.value.transient


async def test_network_error_is_transient():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, _ = make_client(boom)
    with pytest.raises(RemoteActionError) as exc:
        await client.delete("7")
    assert exc.value.transient


async def test_keyed_publish_sets_slug_after_lookup():
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json=[])
        return httpx.Response(201, json={"id": 5, "link": "https://blog.example.com/?p=5"})

    client, seen = make_client(handler)
    result = await client.publish(PostPayload(title="Hi", content="x"), key="scheduled-post-abc")

    assert result.remote_id == "5"
    lookup, create = seen
    assert lookup.url.params["slug"] == "scheduled-post-abc"
    assert lookup.url.params["status"] == "any"
    assert json.loads(create.content)["slug"] == "scheduled-post-abc"


async def test_retry_after_lost_response_reuses_post():
    created: list[dict] = []

    def handler(request):
        if request.method == "GET":
            slug = request.url.params["slug"]
            return httpx.Response(200, json=[p for p in created if p["slug"] == slug])
        body = json.loads(request.content)
        created.append({"id": 77, "slug": body["slug"], "link": "https://blog.example.com/?p=77"})
        # The post exists remotely but the caller never hears back
        return httpx.Response(504, text="gateway timeout")

    client, seen = make_client(handler)
    payload = PostPayload(title="Hi", content="x")

    with pytest.raises(RemoteActionError) as exc:
        await client.publish(payload, key="scheduled-post-abc")
    assert exc.value.transient

    result = await client.publish(payload, key="scheduled-post-abc")

    assert result.remote_id == "77"
    assert len(created) == 1
    assert [r.method for r in seen] == ["GET", "POST", "GET"]


async def test_unkeyed_publish_skips_lookup():
    client, seen = make_client(lambda r: httpx.Response(201, json={"id": 9}))
    await client.publish(PostPayload(title="Hi", content="x"))
    assert [r.method for r in seen] == ["POST"]
    assert "slug" not in json.loads(seen[0].content)
