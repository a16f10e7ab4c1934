"""
Sync engine: moves queued local writes to the remote and remote changes
into the local store.

Push cycle:
    drain a batch -> push_batch -> apply acks in one transaction
    accepted: entry done, row stamped synced
    stale: entry done (the newer remote row arrives with the next pull)
    rejected: entry dead-lettered
    TransientSyncError: whole batch back to pending with backoff, cycle stops
    PermanentSyncError: whole batch dead-lettered, cycle continues

Pull cycle:
    pull_since(checkpoint) page by page; each page is resolved and applied
    in one transaction. The recomputers run once for everything that
    changed, after the last page.
    Composite tasks and nodes are buffered over all pages and reconciled
    tree by tree. The checkpoint advances only after everything is applied.

Triggers (on_start, on_reconnect, the periodic loop, sync_now) all go
through one RunGuard per cycle kind: while a cycle runs, further triggers
schedule exactly one follow-up run.

Invariants:
    - The store is never held across an await
    - A cancelled push returns its in-flight entries to pending
    - A failed pull leaves the checkpoint where it was (replay is safe,
      resolution is idempotent)
    - Composite trees are adopted or re-asserted as a whole, never mixed

How to change safely:
    - New ack outcomes need a branch in _apply_acks
    - Keep public triggers exception-free; errors go to the results and logs
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ..config import SyncConfig
from ..domain.recompute import DerivedDataRecomputer
from ..errors import BoardSyncError, PermanentSyncError, TransientSyncError
from ..remote.base import PushAck, PushItem, RemoteStore
from ..store.entity_store import EntityStore
from ..store.outbound_queue import OutboundQueue, QueueEntry
from ..store.records import Entity, EntityType, now_ms
from ..store.write_path import LocalWriter
from .clock import compare, is_valid_version
from .resolver import ConflictResolver, Source

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RunGuard:
    """Run a cycle, or queue exactly one follow-up run if one is active."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._running = False
        self._rerun = False
        self.runs = 0
        self.coalesced = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, cycle: Callable[[], Awaitable[T]]) -> T | None:
        """Run ``cycle`` now, or schedule a rerun and return None."""
        if self._running:
            self._rerun = True
            self.coalesced += 1
            logger.debug("Cycle already running, follow-up scheduled", extra={"cycle": self.name})
            return None

        self._running = True
        try:
            while True:
                self._rerun = False
                self.runs += 1
                result = await cycle()
                if not self._rerun:
                    return result
        finally:
            self._running = False
            self._rerun = False


@dataclass
class PushResult:
    """Outcome of one push cycle."""

    batches: int = 0
    pushed: int = 0
    stale: int = 0
    failed: int = 0
    dead_lettered: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class PullResult:
    """Outcome of one pull cycle.

    Attributes:
        pages: Pages fetched
        received: Entities received
        applied: Remote rows written locally
        kept_local: Conflicts the local row won (re-pushed)
        merged: Counters merged from both sides
        conflicts: Entities where both sides existed with different content
        tree_conflicts: Composite trees with diverging stamps
        anomalies: Rows with unorderable versions
        skipped: Malformed snapshots ignored
        recomputed: Derived rows rewritten after applying
        checkpoint: Checkpoint saved at the end (None when not advanced)
    """

    pages: int = 0
    received: int = 0
    applied: int = 0
    kept_local: int = 0
    merged: int = 0
    conflicts: int = 0
    tree_conflicts: int = 0
    anomalies: int = 0
    skipped: int = 0
    recomputed: int = 0
    checkpoint: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class SyncResult:
    """Outcome of a full sync (push then pull). None means coalesced."""

    push: PushResult | None = None
    pull: PullResult | None = None


@dataclass
class _TreeBuffer:
    task: Entity | None = None
    nodes: dict[str, Entity] = field(default_factory=dict)


class SyncEngine:
    """Push/pull orchestration for one device.

    Example:
        >>> engine = SyncEngine(store, queue, remote, SyncConfig())
        >>> await engine.on_start()
        >>> engine.start()          # periodic loop in the background
        >>> await engine.stop()
    """

    def __init__(
        self,
        store: EntityStore,
        queue: OutboundQueue,
        remote: RemoteStore,
        config: SyncConfig | None = None,
        resolver: ConflictResolver | None = None,
        recomputer: DerivedDataRecomputer | None = None,
        writer: LocalWriter | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.remote = remote
        self.config = config or SyncConfig()
        self.writer = writer or LocalWriter(store, queue)
        self.resolver = resolver or ConflictResolver(additive_merge=self.config.additive_merge)
        self.recomputer = recomputer or DerivedDataRecomputer(store, self.writer)

        self._push_guard = RunGuard("push")
        self._pull_guard = RunGuard("pull")
        self._running = False
        self._loop_task: asyncio.Task | None = None
        self._wake: asyncio.Event | None = None

        self._cycles = 0
        self._pushed = 0
        self._failed = 0
        self._dead_lettered = 0
        self._pulled = 0
        self._conflicts = 0
        self._anomalies = 0
        self._last_checkpoint: str | None = None
        self._last_error: str | None = None
        self._last_sync_at: int | None = None

    # Triggers

    async def on_start(self) -> SyncResult:
        """App start: release entries left in flight, then sync.

        Call before start(); entries in flight at that point belong to a
        previous process.
        """
        released = self.queue.recover_in_flight()
        if released:
            logger.info("Recovered in-flight entries", extra={"released": released})
        return await self.sync_now()

    async def on_reconnect(self) -> SyncResult:
        """Connectivity regained: sync immediately."""
        return await self.sync_now()

    async def sync_now(self) -> SyncResult:
        """Push pending writes, then pull remote changes."""
        push = await self.push_cycle()
        pull = await self.pull_cycle()
        self._cycles += 1
        self._last_sync_at = now_ms()
        return SyncResult(push=push, pull=pull)

    async def push_cycle(self) -> PushResult | None:
        """Run a push cycle (None if one was already running)."""
        return await self._push_guard.run(self._push)

    async def pull_cycle(self, since_checkpoint: str | None = None) -> PullResult | None:
        """Run a pull cycle (None if one was already running).

        Args:
            since_checkpoint: Start from this checkpoint instead of the saved one
        """
        return await self._pull_guard.run(lambda: self._pull(since_checkpoint))

    # Periodic loop

    def start(self) -> asyncio.Task:
        """Start the periodic loop as a background task."""
        if self._loop_task is not None and not self._loop_task.done():
            logger.warning("Sync loop already running")
            return self._loop_task
        self._running = True
        self._loop_task = asyncio.create_task(self.run_periodic())
        return self._loop_task

    async def stop(self) -> None:
        """Stop the periodic loop and wait for it to finish."""
        self._running = False
        logger.info("Stopping sync loop")
        task, self._loop_task = self._loop_task, None
        if task is None:
            return
        if self._wake is not None:
            self._wake.set()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_periodic(self) -> None:
        """Sync every ``interval_seconds`` until stop() is called."""
        self._running = True
        self._wake = asyncio.Event()
        logger.info(
            "Starting sync loop", extra={"interval_seconds": self.config.interval_seconds}
        )
        try:
            while self._running:
                await self.sync_now()
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.config.interval_seconds)
                except asyncio.TimeoutError:
                    pass
                self._wake.clear()
        except asyncio.CancelledError:
            logger.info("Sync loop cancelled")
            raise
        finally:
            self._running = False

    @property
    def stats(self) -> dict[str, Any]:
        """Engine statistics."""
        return {
            "running": self._running,
            "cycles": self._cycles,
            "pushed": self._pushed,
            "failed": self._failed,
            "dead_lettered": self._dead_lettered,
            "pulled": self._pulled,
            "conflicts": self._conflicts,
            "anomalies": self._anomalies,
            "pending": self.queue.pending_count(),
            "last_checkpoint": self._last_checkpoint,
            "last_error": self._last_error,
            "last_sync_at": self._last_sync_at,
        }

    # Push

    async def _push(self) -> PushResult:
        result = PushResult()
        batch: list[QueueEntry] = []
        try:
            while True:
                batch = self.queue.drain(self.config.batch_size)
                if not batch:
                    break
                result.batches += 1
                items = [
                    PushItem(
                        id=entry.entity_id,
                        type=entry.entity_type.value,
                        op=entry.operation.value,
                        payload=entry.payload,
                        version=entry.version,
                    )
                    for entry in batch
                ]
                try:
                    acks = await self.remote.push_batch(items)
                except asyncio.CancelledError:
                    self.queue.release(batch)
                    logger.info("Push cancelled, batch released", extra={"entries": len(batch)})
                    raise
                except TransientSyncError as e:
                    self._fail_batch(batch, str(e), result)
                    result.error = str(e)
                    logger.warning(
                        "Push failed, will retry",
                        extra={"entries": len(batch), "error": str(e)},
                    )
                    break
                except PermanentSyncError as e:
                    self.queue.mark_dead_lettered(batch, str(e))
                    result.dead_lettered += len(batch)
                    logger.error(
                        "Push batch rejected", extra={"entries": len(batch), "error": str(e)}
                    )
                    continue

                self._apply_acks(batch, acks, result)
                batch = []
        except Exception as e:
            if batch:
                self.queue.release(batch)
            result.error = str(e)
            logger.error(f"Push cycle error: {e}", exc_info=True)

        self._pushed += result.pushed
        self._failed += result.failed
        self._dead_lettered += result.dead_lettered
        if result.error:
            self._last_error = result.error
        logger.info(
            "Push cycle finished",
            extra={
                "batches": result.batches,
                "pushed": result.pushed,
                "stale": result.stale,
                "failed": result.failed,
                "dead_lettered": result.dead_lettered,
            },
        )
        return result

    def _fail_batch(self, batch: list[QueueEntry], error: str, result: PushResult) -> None:
        exhausted = [e for e in batch if e.retry_count + 1 > self.queue.max_retries]
        self.queue.mark_failed(batch, error)
        result.failed += len(batch) - len(exhausted)
        result.dead_lettered += len(exhausted)

    def _apply_acks(self, batch: list[QueueEntry], acks: list[PushAck], result: PushResult) -> None:
        by_id = {ack.id: ack for ack in acks}
        ts = now_ms()
        with self.store.transaction() as c:
            for entry in batch:
                ack = by_id.get(entry.entity_id)
                if ack is None:
                    self.queue.mark_failed(entry, "missing ack", conn=c)
                    result.failed += 1
                elif ack.accepted:
                    self.queue.mark_done(entry, conn=c)
                    current = self.store.get(entry.entity_type, entry.entity_id, conn=c)
                    if current is not None and current.version == entry.version:
                        self.store.mark_synced(entry.entity_type, entry.entity_id, ts, conn=c)
                    result.pushed += 1
                elif ack.stale:
                    self.queue.mark_done(entry, conn=c)
                    result.stale += 1
                    logger.debug(
                        "Push stale, remote is ahead",
                        extra={
                            "entity_id": entry.entity_id,
                            "version": entry.version,
                            "server_version": ack.server_version,
                        },
                    )
                else:
                    self.queue.mark_dead_lettered(entry, ack.error or "rejected", conn=c)
                    result.dead_lettered += 1

    # Pull

    async def _pull(self, since_checkpoint: str | None) -> PullResult:
        result = PullResult()
        checkpoint = since_checkpoint if since_checkpoint is not None else self.store.get_checkpoint()
        trees: dict[str, _TreeBuffer] = {}
        touched: list[Entity] = []
        try:
            while True:
                page = await self.remote.pull_since(
                    checkpoint, self.config.user_scope, limit=self.config.pull_page_size
                )
                result.pages += 1
                result.received += len(page.entities)
                touched.extend(self._apply_page(page.entities, trees, result))
                if page.new_checkpoint is not None:
                    checkpoint = page.new_checkpoint
                if not page.has_more:
                    break

            for composite_id, tree in trees.items():
                touched.extend(self._apply_tree(composite_id, tree, result))

            applied, touched = touched, []
            self._recompute(applied, result)
            if checkpoint is not None:
                self.store.set_checkpoint(checkpoint)
                result.checkpoint = checkpoint
                self._last_checkpoint = checkpoint
        except asyncio.CancelledError:
            logger.info("Pull cancelled, checkpoint not advanced")
            self._recompute_partial(touched, result)
            raise
        except BoardSyncError as e:
            result.error = str(e)
            logger.warning("Pull failed", extra={"error": str(e), "pages": result.pages})
        except Exception as e:
            result.error = str(e)
            logger.error(f"Pull cycle error: {e}", exc_info=True)
        # Rows applied before a failure still get their derived data.
        self._recompute_partial(touched, result)

        self._pulled += result.applied
        self._conflicts += result.conflicts + result.tree_conflicts
        self._anomalies += result.anomalies
        if result.error:
            self._last_error = result.error
        logger.info(
            "Pull cycle finished",
            extra={
                "pages": result.pages,
                "received": result.received,
                "applied": result.applied,
                "kept_local": result.kept_local,
                "merged": result.merged,
                "conflicts": result.conflicts,
                "tree_conflicts": result.tree_conflicts,
                "anomalies": result.anomalies,
            },
        )
        return result

    def _apply_page(
        self,
        snapshots: list[dict[str, Any]],
        trees: dict[str, _TreeBuffer],
        result: PullResult,
    ) -> list[Entity]:
        """Apply one page; composite rows are buffered for _apply_tree.

        Returns:
            Rows whose dependents must be recomputed
        """
        touched: list[Entity] = []
        with self.store.transaction() as c:
            for snapshot in snapshots:
                remote = self._parse(snapshot, result)
                if remote is None:
                    continue
                if remote.entity_type == EntityType.COMPOSITE_TASK:
                    trees.setdefault(remote.id, _TreeBuffer()).task = remote
                    continue
                if remote.entity_type == EntityType.COMPOSITE_NODE:
                    owner = remote.data.get("composite_task_id")
                    if isinstance(owner, str) and owner:
                        trees.setdefault(owner, _TreeBuffer()).nodes[remote.id] = remote
                        continue
                touched.extend(self._apply_remote(remote, c, result))
        return touched

    def _recompute(self, touched: list[Entity], result: PullResult) -> None:
        """Rebuild derived data once every page of the pull is applied."""
        if not touched:
            return
        with self.store.transaction() as c:
            result.recomputed += self.recomputer.refresh_for(touched, c)

    def _recompute_partial(self, touched: list[Entity], result: PullResult) -> None:
        """Rebuild derived data for rows applied before a pull stopped.

        A failure here is logged and never replaces the pull's own error.
        """
        try:
            self._recompute(touched, result)
        except Exception as e:
            logger.error(
                f"Recompute after failed pull failed: {e}",
                exc_info=True,
                extra={"rows": len(touched)},
            )
            if result.error is None:
                result.error = str(e)

    def _parse(self, snapshot: dict[str, Any], result: PullResult) -> Entity | None:
        try:
            return Entity.from_dict(snapshot)
        except (ValueError, KeyError, TypeError) as e:
            result.skipped += 1
            logger.warning(
                "Skipping malformed remote snapshot",
                extra={"entity_id": snapshot.get("id") if isinstance(snapshot, dict) else None, "error": str(e)},
            )
            return None

    def _apply_remote(self, remote: Entity, c: sqlite3.Connection, result: PullResult) -> list[Entity]:
        """Resolve one remote row against the local one and store the outcome.

        Returns:
            Rows whose dependents must be recomputed
        """
        local = self.store.get(remote.entity_type, remote.id, conn=c)
        if local is None:
            if not is_valid_version(remote.version):
                result.anomalies += 1
                logger.warning(
                    "Ignoring remote row with invalid version",
                    extra={"entity_id": remote.id, "version": repr(remote.version)},
                )
                return []
            stored = self._store_remote(remote, c)
            result.applied += 1
            return [stored]

        resolution = self.resolver.resolve(local, remote)
        if resolution.anomaly is not None:
            result.anomalies += 1
        if not local.same_content(remote):
            result.conflicts += 1

        if resolution.source is Source.REMOTE and is_valid_version(resolution.winner.version):
            put = self.store.put(resolution.winner.clone(last_synced_at=now_ms()), bump=False, conn=c)
            if not put.changed:
                return []
            result.applied += 1
            return [put.entity]

        if resolution.source is Source.MERGED:
            stored = self.store.put(resolution.winner, bump=False, conn=c).entity
            self.writer.enqueue_current(stored, conn=c)
            result.merged += 1
            return [stored]

        # Local row wins (or both versions are unorderable and the local row stays).
        if resolution.anomaly is None and compare(local, remote) == 0:
            self.store.mark_synced(local.entity_type, local.id, conn=c)
            return []
        if (
            resolution.anomaly is None
            and local.version == remote.version
            and local.same_content(remote)
        ):
            # Both devices wrote the same state; take the remote stamps.
            self._store_remote(remote, c)
            return []
        result.kept_local += 1
        if resolution.anomaly is None and local.version <= remote.version:
            self.writer.write(local, conn=c, min_version=remote.version + 1)
        else:
            self.writer.enqueue_current(local, conn=c)
        return []

    def _store_remote(self, remote: Entity, c: sqlite3.Connection) -> Entity:
        return self.store.put(remote.clone(last_synced_at=now_ms()), bump=False, conn=c).entity

    # Composite trees

    def _apply_tree(self, composite_id: str, tree: _TreeBuffer, result: PullResult) -> list[Entity]:
        touched: list[Entity] = []
        with self.store.transaction() as c:
            remote_task = tree.task
            local_task = self.store.get(EntityType.COMPOSITE_TASK, composite_id, conn=c)

            if remote_task is None:
                for node in tree.nodes.values():
                    touched.extend(self._apply_remote(node, c, result))
            elif local_task is None or _stamp(local_task) == _stamp(remote_task):
                touched.extend(self._apply_remote(remote_task, c, result))
                if self.store.get(EntityType.COMPOSITE_TASK, composite_id, conn=c) is not None:
                    for node in tree.nodes.values():
                        touched.extend(self._apply_remote(node, c, result))
            else:
                result.tree_conflicts += 1
                side = self.resolver.resolve_tree(local_task, remote_task)
                if not is_valid_version(remote_task.version):
                    result.anomalies += 1
                if side is Source.REMOTE and is_valid_version(remote_task.version):
                    touched.extend(self._adopt_remote_tree(local_task, remote_task, tree, c, result))
                else:
                    self._reassert_local_tree(local_task, remote_task, tree, c)
                    result.kept_local += 1
        return touched

    def _adopt_remote_tree(
        self,
        local_task: Entity,
        remote_task: Entity,
        tree: _TreeBuffer,
        c: sqlite3.Connection,
        result: PullResult,
    ) -> list[Entity]:
        """Replace the local tree with the one carrying the remote stamp."""
        stamp = _stamp(remote_task)
        winners = {n.id: n for n in tree.nodes.values() if _stamp(n) == stamp}
        local_nodes = self.store.query(
            EntityType.COMPOSITE_NODE,
            include_deleted=True,
            where={"composite_task_id": local_task.id},
            conn=c,
        )
        if not winners and not any(_stamp(n) == stamp for n in local_nodes):
            result.skipped += 1
            logger.warning(
                "Remote composite tree incomplete, keeping local tree",
                extra={"composite_task_id": local_task.id, "tree_stamp": stamp},
            )
            return []

        touched = [self._store_remote(remote_task, c)]
        result.applied += 1
        for node in winners.values():
            local = self.store.get(EntityType.COMPOSITE_NODE, node.id, conn=c)
            if local is not None and is_valid_version(node.version) and local.version >= node.version:
                # Overtake our own newer row so the remote converges too.
                touched.append(
                    self.writer.write(
                        local.clone(data=node.data, is_deleted=node.is_deleted, owner_id=node.owner_id),
                        conn=c,
                        min_version=local.version + 1,
                    ).entity
                )
            elif is_valid_version(node.version):
                touched.append(self._store_remote(node, c))
            result.applied += 1

        for local in local_nodes:
            if local.is_deleted or local.id in winners or _stamp(local) == stamp:
                continue
            touched.append(self.writer.write(local.clone(is_deleted=True), conn=c).entity)

        logger.info(
            "Adopted remote composite tree",
            extra={"composite_task_id": local_task.id, "nodes": len(winners)},
        )
        return touched

    def _reassert_local_tree(
        self,
        local_task: Entity,
        remote_task: Entity,
        tree: _TreeBuffer,
        c: sqlite3.Connection,
    ) -> None:
        """Rewrite the local tree above every remote version so it wins remotely."""
        floors = {n.id: n.version for n in tree.nodes.values() if is_valid_version(n.version)}
        if is_valid_version(remote_task.version):
            floors[remote_task.id] = remote_task.version

        local_nodes = self.store.query(
            EntityType.COMPOSITE_NODE, where={"composite_task_id": local_task.id}, conn=c
        )
        local_ids = {n.id for n in local_nodes}
        removed = [
            n.clone(is_deleted=True)
            for n in tree.nodes.values()
            if n.id not in local_ids and not n.is_deleted
        ]
        remote_revision = remote_task.data.get("tree_revision")
        self.writer.write_tree(
            local_task,
            local_nodes + removed,
            conn=c,
            version_floors=floors,
            min_revision=remote_revision if isinstance(remote_revision, int) else 0,
        )
        logger.info(
            "Kept local composite tree",
            extra={"composite_task_id": local_task.id, "nodes": len(local_nodes)},
        )


def _stamp(entity: Entity) -> str | None:
    return entity.data.get("tree_stamp")
