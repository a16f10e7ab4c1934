"""
Integration tests for the sync engine against the in-memory remote.

Tests cover:
- Push acks (accepted, stale, rejected) and failure routing
- Cancellation and overlapping triggers
- Pull application, checkpoints and malformed remote data
- The periodic loop
"""

import asyncio
import tempfile

import pytest

from boardsync.config import SyncConfig
from boardsync.domain import LocalDataLayer
from boardsync.remote import InMemoryRemoteStore, RemoteRejectedError, RemoteUnavailableError
from boardsync.store import EntityStore, OutboundQueue
from boardsync.store.records import EntityType, QueueStatus, new_entity
from boardsync.sync.engine import RunGuard, SyncEngine


class GatedRemote(InMemoryRemoteStore):
    """Remote whose pushes wait until the gate is opened."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def push_batch(self, items):
        self.entered.set()
        await self.gate.wait()
        return await super().push_batch(items)


class FlakyPullRemote(InMemoryRemoteStore):
    """Remote that drops every pull page after the first."""

    def __init__(self):
        super().__init__()
        self.fail_after_first_page = True

    async def pull_since(self, checkpoint, user_scope, limit=200):
        if self.fail_after_first_page and checkpoint is not None:
            raise RemoteUnavailableError("connection dropped")
        return await super().pull_since(checkpoint, user_scope, limit)


def remote_task(entity_id, version=1, updated_at=1000, **data):
    entity = new_entity(EntityType.TASK, "me", {"title": "Remote task", **data}, entity_id=entity_id)
    entity.version = version
    entity.updated_at = updated_at
    return entity.to_dict()


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def store(data_dir):
    store = EntityStore(data_dir, device_id="phone", wal_mode=False)
    store.initialize()
    return store


@pytest.fixture
def queue(store):
    return OutboundQueue(store, max_retries=2, backoff_base_ms=1, backoff_max_ms=1)


@pytest.fixture
def layer(store, queue):
    return LocalDataLayer(store, queue)


@pytest.fixture
async def remote():
    remote = InMemoryRemoteStore()
    await remote.connect()
    yield remote
    await remote.close()


@pytest.fixture
def engine(store, queue, remote):
    return SyncEngine(store, queue, remote, SyncConfig(batch_size=1, pull_page_size=2))


class TestRunGuard:
    """Tests for overlapping trigger handling."""

    @pytest.mark.asyncio
    async def test_overlapping_runs_coalesce_into_one_follow_up(self):
        guard = RunGuard("push")
        gate = asyncio.Event()
        calls = []

        async def cycle():
            calls.append(len(calls))
            await gate.wait()
            return len(calls)

        first = asyncio.create_task(guard.run(cycle))
        await asyncio.sleep(0)

        assert guard.running
        assert await guard.run(cycle) is None
        assert await guard.run(cycle) is None

        gate.set()
        assert await first == 2
        assert guard.coalesced == 2
        assert guard.runs == 2
        assert not guard.running


class TestPush:
    """Tests for the push cycle."""

    @pytest.mark.asyncio
    async def test_accepted_entries_are_done_and_synced(self, engine, layer, store, queue, remote):
        task = layer.create_task({"title": "Walk"}).entity

        result = await engine.push_cycle()

        assert result.success
        assert result.pushed == 1
        assert queue.pending_count() == 0
        assert remote.get_document(task.id)["version"] == 1
        assert store.get(EntityType.TASK, task.id).last_synced_at is not None

    @pytest.mark.asyncio
    async def test_nothing_to_push(self, engine, remote):
        result = await engine.push_cycle()
        assert result.batches == 0
        assert remote.push_requests == 0

    @pytest.mark.asyncio
    async def test_stale_entry_is_done_and_remote_row_pulled(self, engine, layer, store, queue, remote):
        remote.put_document(remote_task("t1", version=5, title="Newer"))
        layer.create(EntityType.TASK, {"title": "Mine"}, entity_id="t1")

        result = await engine.sync_now()

        assert result.push.stale == 1
        assert queue.pending_count() == 0
        local = store.get(EntityType.TASK, "t1")
        assert local.version == 5
        assert local.data["title"] == "Newer"

    @pytest.mark.asyncio
    async def test_rejected_ack_dead_letters(self, engine, layer, queue, remote):
        task = layer.create_task({"title": "Walk"}).entity
        remote.reject_ids(task.id)

        result = await engine.push_cycle()

        assert result.dead_lettered == 1
        assert [e.entity_id for e in queue.dead_letters()] == [task.id]

    @pytest.mark.asyncio
    async def test_transient_failure_stops_cycle_and_retries(self, engine, layer, queue, remote):
        layer.create_task({"title": "One"})
        layer.create_task({"title": "Two"})
        remote.inject_failure(RemoteUnavailableError("offline"))

        result = await engine.push_cycle()

        assert not result.success
        assert result.batches == 1
        assert result.failed == 1
        assert queue.pending_count() == 2
        assert [e.retry_count for e in queue.pending()] == [1, 0]

        await asyncio.sleep(0.01)
        result = await engine.push_cycle()
        assert result.pushed == 2
        assert remote.get_document_count() == 2

    @pytest.mark.asyncio
    async def test_permanent_failure_dead_letters_batch_and_continues(self, engine, layer, queue, remote):
        layer.create_task({"title": "One"})
        layer.create_task({"title": "Two"})
        remote.inject_failure(RemoteRejectedError("forbidden"))

        result = await engine.push_cycle()

        assert result.dead_lettered == 1
        assert result.pushed == 1
        assert len(queue.dead_letters()) == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted_dead_letters(self, engine, layer, queue, remote):
        layer.create_task({"title": "One"})
        remote.inject_failure(RemoteUnavailableError("offline"), count=3)

        results = []
        for _ in range(3):
            results.append(await engine.push_cycle())
            await asyncio.sleep(0.01)

        assert [r.failed for r in results] == [1, 1, 0]
        assert results[-1].dead_lettered == 1
        assert queue.pending_count() == 0
        assert queue.dead_letters()[0].retry_count == 3

    @pytest.mark.asyncio
    async def test_write_during_push_is_queued_separately(self, store, queue, layer):
        remote = GatedRemote()
        await remote.connect()
        engine = SyncEngine(store, queue, remote)
        task = layer.create_task({"title": "Walk"}).entity

        push = asyncio.create_task(engine.push_cycle())
        await remote.entered.wait()
        assert layer.mutate(EntityType.TASK, task.id, {"title": "Run"}).success
        remote.gate.set()
        result = await push

        # The write made during the await is queued separately and pushed
        # by the next batch of the same cycle.
        assert result.batches == 2
        assert result.pushed == 2
        assert remote.get_document(task.id)["data"]["title"] == "Run"
        assert store.get(EntityType.TASK, task.id).last_synced_at is not None

    @pytest.mark.asyncio
    async def test_cancelled_push_releases_batch(self, store, queue, layer):
        remote = GatedRemote()
        await remote.connect()
        engine = SyncEngine(store, queue, remote)
        layer.create_task({"title": "Walk"})

        push = asyncio.create_task(engine.push_cycle())
        await remote.entered.wait()
        push.cancel()
        with pytest.raises(asyncio.CancelledError):
            await push

        [entry] = queue.pending()
        assert entry.status == QueueStatus.PENDING
        assert entry.retry_count == 0

    @pytest.mark.asyncio
    async def test_overlapping_push_returns_none(self, store, queue, layer):
        remote = GatedRemote()
        await remote.connect()
        engine = SyncEngine(store, queue, remote)
        layer.create_task({"title": "Walk"})

        first = asyncio.create_task(engine.push_cycle())
        await remote.entered.wait()
        assert await engine.push_cycle() is None
        remote.gate.set()
        result = await first

        # The follow-up run finds nothing left to push.
        assert result.batches == 0
        assert queue.pending_count() == 0
        assert remote.push_requests == 1

    @pytest.mark.asyncio
    async def test_on_start_recovers_in_flight_entries(self, engine, layer, queue, remote):
        task = layer.create_task({"title": "Walk"}).entity
        queue.drain(10)

        result = await engine.on_start()

        assert result.push.pushed == 1
        assert remote.get_document(task.id) is not None
        assert engine.stats["cycles"] == 1


class TestPull:
    """Tests for the pull cycle."""

    @pytest.mark.asyncio
    async def test_applies_remote_rows_and_saves_checkpoint(self, engine, store, remote):
        for i in range(3):
            remote.put_document(remote_task(f"r{i}"))

        result = await engine.pull_cycle()

        assert result.success
        assert result.pages == 2
        assert result.applied == 3
        assert result.checkpoint == "3"
        assert store.get_checkpoint() == "3"
        assert store.get(EntityType.TASK, "r2").last_synced_at is not None

        again = await engine.pull_cycle()
        assert again.received == 0
        assert again.applied == 0

    @pytest.mark.asyncio
    async def test_failed_pull_keeps_checkpoint(self, store, queue):
        remote = FlakyPullRemote()
        await remote.connect()
        engine = SyncEngine(store, queue, remote, SyncConfig(pull_page_size=1))
        remote.put_document(remote_task("r1"))
        remote.put_document(remote_task("r2"))

        result = await engine.pull_cycle()

        assert not result.success
        assert result.applied == 1
        assert store.get_checkpoint() is None

        remote.fail_after_first_page = False
        result = await engine.pull_cycle()
        assert result.success
        assert result.applied == 1
        assert store.get_checkpoint() == "2"

    @pytest.mark.asyncio
    async def test_recompute_error_after_failed_pull_keeps_pull_error(self, store, queue, monkeypatch):
        remote = FlakyPullRemote()
        await remote.connect()
        engine = SyncEngine(store, queue, remote, SyncConfig(pull_page_size=1))
        remote.put_document(remote_task("r1"))
        remote.put_document(remote_task("r2"))

        def broken_refresh(entities, conn):
            raise RuntimeError("recompute broke")

        monkeypatch.setattr(engine.recomputer, "refresh_for", broken_refresh)

        result = await engine.pull_cycle()

        assert not result.success
        assert "connection dropped" in result.error
        assert store.get(EntityType.TASK, "r1") is not None
        assert store.get_checkpoint() is None

    @pytest.mark.asyncio
    async def test_new_row_with_invalid_version_is_ignored(self, engine, store, remote):
        remote.put_document(remote_task("r1", version="banana"))

        result = await engine.pull_cycle()

        assert result.anomalies == 1
        assert store.get(EntityType.TASK, "r1") is None
        assert engine.stats["anomalies"] == 1

    @pytest.mark.asyncio
    async def test_invalid_remote_version_loses_and_local_is_repushed(self, engine, layer, store, queue, remote):
        task = layer.create_task({"title": "Walk"}).entity
        await engine.push_cycle()
        remote.put_document(remote_task(task.id, version=None, title="Broken"))

        result = await engine.pull_cycle()

        assert result.anomalies == 1
        assert result.kept_local == 1
        assert store.get(EntityType.TASK, task.id).data["title"] == "Walk"
        assert [e.entity_id for e in queue.pending()] == [task.id]

    @pytest.mark.asyncio
    async def test_malformed_snapshot_is_skipped(self, engine, remote):
        remote.put_document({"id": "x1", "version": 1})
        remote.put_document(remote_task("r1"))

        result = await engine.pull_cycle()

        assert result.skipped == 1
        assert result.applied == 1

    @pytest.mark.asyncio
    async def test_local_win_on_equal_version_overtakes_remote(self, engine, layer, store, queue, remote):
        task = layer.create_task({"title": "Walk"}).entity
        await engine.push_cycle()
        layer.mutate(EntityType.TASK, task.id, {"title": "Run"})
        remote.put_document(remote_task(task.id, version=2, updated_at=1, title="Old"))

        result = await engine.pull_cycle()

        assert result.kept_local == 1
        local = store.get(EntityType.TASK, task.id)
        assert local.version == 3
        assert local.data["title"] == "Run"
        [entry] = queue.pending()
        assert entry.version == 3

        await engine.push_cycle()
        assert remote.get_document(task.id)["version"] == 3
        assert remote.get_document(task.id)["data"]["title"] == "Run"

    @pytest.mark.asyncio
    async def test_remote_win_keeps_local_derived_fields(self, engine, layer, store, queue, remote):
        task = layer.create_task({"title": "Walk"}).entity
        board = layer.create_board({"name": "Week"}).entity
        layer.place_task(board.id, 0, 0, task_id=task.id)
        await engine.sync_now()
        remote.put_document(remote_task(task.id, version=9, updated_at=10**13, title="Renamed"))

        result = await engine.pull_cycle()

        assert result.applied == 1
        local = store.get(EntityType.TASK, task.id)
        assert local.version == 9
        assert local.data["title"] == "Renamed"
        assert local.data["total_instances"] == 1
        assert queue.pending_count() == 0


class TestPeriodicLoop:
    """Tests for start/stop of the background loop."""

    @pytest.mark.asyncio
    async def test_loop_syncs_until_stopped(self, store, queue, layer, remote):
        engine = SyncEngine(store, queue, remote, SyncConfig(interval_seconds=0.01))
        layer.create_task({"title": "Walk"})

        engine.start()
        await asyncio.sleep(0.1)
        await engine.stop()

        stats = engine.stats
        assert stats["cycles"] >= 2
        assert stats["pushed"] == 1
        assert not stats["running"]
        assert stats["last_sync_at"] is not None
