"""
Unit tests for the HTTP remote store (httpx.MockTransport).
"""

import json

import httpx
import pytest

from boardsync.remote import HttpRemoteStore, PushItem, RemoteRejectedError, RemoteUnavailableError


def item(entity_id="t1", version=1):
    return PushItem(id=entity_id, type="task", op="create", payload={"id": entity_id}, version=version)


def make_remote(handler, api_token=None):
    return HttpRemoteStore(
        "https://sync.example.com/",
        api_token=api_token,
        transport=httpx.MockTransport(handler),
    )


class TestPush:
    """Tests for POST /sync/push."""

    @pytest.mark.asyncio
    async def test_sends_items_and_parses_acks(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"acks": [{"id": "t1", "accepted": True, "server_version": 1}]})

        remote = make_remote(handler, api_token="secret")
        await remote.connect()
        [ack] = await remote.push_batch([item()])
        await remote.close()

        assert ack.accepted and ack.server_version == 1
        assert seen["path"] == "/sync/push"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["items"][0]["id"] == "t1"

    @pytest.mark.asyncio
    async def test_conflict_status_carries_stale_acks(self):
        def handler(request):
            return httpx.Response(
                409, json={"acks": [{"id": "t1", "accepted": False, "server_version": 4, "error": "stale"}]}
            )

        remote = make_remote(handler)
        await remote.connect()
        [ack] = await remote.push_batch([item()])
        assert ack.stale

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 503, 429])
    async def test_server_errors_are_transient(self, status):
        remote = make_remote(lambda request: httpx.Response(status))
        await remote.connect()
        with pytest.raises(RemoteUnavailableError):
            await remote.push_batch([item()])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 403, 422])
    async def test_client_errors_are_permanent(self, status):
        remote = make_remote(lambda request: httpx.Response(status, text="nope"))
        await remote.connect()
        with pytest.raises(RemoteRejectedError):
            await remote.push_batch([item()])

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        remote = make_remote(handler)
        await remote.connect()
        with pytest.raises(RemoteUnavailableError):
            await remote.push_batch([item()])

    @pytest.mark.asyncio
    async def test_ack_count_mismatch(self):
        remote = make_remote(lambda request: httpx.Response(200, json={"acks": []}))
        await remote.connect()
        with pytest.raises(RemoteRejectedError):
            await remote.push_batch([item()])

    @pytest.mark.asyncio
    async def test_body_that_is_not_json(self):
        remote = make_remote(lambda request: httpx.Response(200, text="<html>"))
        await remote.connect()
        with pytest.raises(RemoteRejectedError):
            await remote.push_batch([item()])

    @pytest.mark.asyncio
    async def test_not_connected(self):
        remote = make_remote(lambda request: httpx.Response(200))
        with pytest.raises(RemoteUnavailableError):
            await remote.push_batch([item()])


class TestPull:
    """Tests for GET /sync/pull."""

    @pytest.mark.asyncio
    async def test_sends_checkpoint_and_parses_page(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(
                200, json={"entities": [{"id": "t1"}], "new_checkpoint": "c2", "has_more": True}
            )

        remote = make_remote(handler)
        await remote.connect()
        page = await remote.pull_since("c1", "me", limit=10)

        assert seen["params"] == {"checkpoint": "c1", "scope": "me", "limit": "10"}
        assert page.entities == [{"id": "t1"}]
        assert page.new_checkpoint == "c2"
        assert page.has_more

    @pytest.mark.asyncio
    async def test_first_pull_omits_checkpoint(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"entities": []})

        remote = make_remote(handler)
        await remote.connect()
        page = await remote.pull_since(None, "me")

        assert "checkpoint" not in seen["params"]
        assert not page.has_more

    @pytest.mark.asyncio
    async def test_malformed_page(self):
        remote = make_remote(lambda request: httpx.Response(200, json=["not", "a", "page"]))
        await remote.connect()
        with pytest.raises(RemoteRejectedError):
            await remote.pull_since(None, "me")
