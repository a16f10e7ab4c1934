"""
Unit tests for the in-memory remote store.

Tests cover:
- Push idempotence and staleness
- Rejections and injected failures
- Pull pagination and checkpoints
"""

import pytest

from boardsync.remote import (
    InMemoryRemoteStore,
    PushItem,
    RemoteRejectedError,
    RemoteStore,
    RemoteUnavailableError,
)


def item(entity_id, version, title="Walk"):
    payload = {
        "entity_type": "task",
        "id": entity_id,
        "owner_id": "me",
        "version": version,
        "updated_at": 1000 + version,
        "is_deleted": False,
        "deleted_at": None,
        "data": {"title": title},
    }
    return PushItem(id=entity_id, type="task", op="update", payload=payload, version=version)


@pytest.fixture
async def remote():
    remote = InMemoryRemoteStore()
    await remote.connect()
    yield remote
    await remote.close()


class TestPush:
    """Tests for push_batch."""

    @pytest.mark.asyncio
    async def test_satisfies_protocol(self, remote):
        assert isinstance(remote, RemoteStore)

    @pytest.mark.asyncio
    async def test_accepts_new_versions(self, remote):
        acks = await remote.push_batch([item("t1", 1), item("t2", 1)])
        assert [a.accepted for a in acks] == [True, True]
        assert remote.get_document_count() == 2

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, remote):
        await remote.push_batch([item("t1", 2)])
        seq = remote.change_seq

        [ack] = await remote.push_batch([item("t1", 2)])

        assert ack.accepted
        assert ack.server_version == 2
        assert remote.change_seq == seq

    @pytest.mark.asyncio
    async def test_older_or_conflicting_version_is_stale(self, remote):
        await remote.push_batch([item("t1", 3)])

        older, same = await remote.push_batch([item("t1", 2), item("t1", 3, title="Other")])

        assert older.stale and older.server_version == 3
        assert same.stale
        assert remote.get_document("t1")["data"]["title"] == "Walk"

    @pytest.mark.asyncio
    async def test_rejected_ids(self, remote):
        remote.reject_ids("t1")
        [ack] = await remote.push_batch([item("t1", 1)])
        assert not ack.accepted
        assert not ack.stale

    @pytest.mark.asyncio
    async def test_injected_failure_applies_nothing(self, remote):
        remote.inject_failure(RemoteUnavailableError("down"))
        with pytest.raises(RemoteUnavailableError):
            await remote.push_batch([item("t1", 1)])
        assert remote.get_document_count() == 0

        await remote.push_batch([item("t1", 1)])
        assert remote.get_document_count() == 1

    @pytest.mark.asyncio
    async def test_not_connected(self):
        remote = InMemoryRemoteStore()
        with pytest.raises(RemoteUnavailableError):
            await remote.push_batch([item("t1", 1)])


class TestPull:
    """Tests for pull_since."""

    @pytest.mark.asyncio
    async def test_pages_in_change_order(self, remote):
        await remote.push_batch([item(f"t{i}", 1) for i in range(5)])

        first = await remote.pull_since(None, "me", limit=2)
        second = await remote.pull_since(first.new_checkpoint, "me", limit=2)
        third = await remote.pull_since(second.new_checkpoint, "me", limit=2)

        assert [e["id"] for e in first.entities] == ["t0", "t1"]
        assert first.has_more and second.has_more
        assert [e["id"] for e in third.entities] == ["t4"]
        assert not third.has_more

    @pytest.mark.asyncio
    async def test_checkpoint_only_returns_later_changes(self, remote):
        await remote.push_batch([item("t1", 1)])
        page = await remote.pull_since(None, "me")
        await remote.push_batch([item("t1", 2, title="Run")])

        later = await remote.pull_since(page.new_checkpoint, "me")

        assert [e["data"]["title"] for e in later.entities] == ["Run"]

    @pytest.mark.asyncio
    async def test_empty_pull_keeps_checkpoint(self, remote):
        page = await remote.pull_since("7", "me")
        assert page.entities == []
        assert page.new_checkpoint == "7"

    @pytest.mark.asyncio
    async def test_invalid_checkpoint(self, remote):
        with pytest.raises(RemoteRejectedError):
            await remote.pull_since("not-a-number", "me")

    @pytest.mark.asyncio
    async def test_planted_documents_are_returned_raw(self, remote):
        remote.put_document({"entity_type": "task", "id": "t9", "version": "banana", "data": {}})
        page = await remote.pull_since(None, "me")
        assert page.entities[0]["version"] == "banana"
