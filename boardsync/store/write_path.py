"""
Local write path: store the entity and enqueue it in one transaction.

Every state change that must reach the remote goes through LocalWriter,
whether it comes from the UI, a recomputer or a conflict the local side
won. Remote data applied by the pull cycle is stored with bump=False and
not queued.

Invariants:
    - put + enqueue commit together or not at all
    - A no-op write neither bumps version nor enqueues
    - write_tree gives a composite tree a fresh stamp and rewrites every
      node with it, so the tree travels and reconciles as one unit
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable

from .entity_store import EntityStore, PutResult, _joined
from .outbound_queue import OutboundQueue
from .records import Entity, EntityType, OperationKind, new_id, now_ms

logger = logging.getLogger(__name__)


class LocalWriter:
    """Versioned, queued local writes."""

    def __init__(self, store: EntityStore, queue: OutboundQueue) -> None:
        self.store = store
        self.queue = queue

    def write(
        self,
        entity: Entity,
        conn: sqlite3.Connection | None = None,
        min_version: int | None = None,
    ) -> PutResult:
        """Store a local change and enqueue it for push.

        Args:
            entity: New state of the entity (version is assigned by the store)
            conn: Optional connection of an open transaction
            min_version: Lowest acceptable resulting version; used when the
                remote already holds a version the write has to overtake

        Returns:
            PutResult of the store write
        """
        with self.store.transaction() if conn is None else _joined(conn) as c:
            result = self.store.put(entity, bump=True, conn=c)
            if min_version is not None and result.entity.version < min_version:
                raised = result.entity.clone(
                    version=min_version,
                    updated_at=max(now_ms(), result.entity.updated_at + 1),
                )
                stored = self.store.put(raised, bump=False, conn=c)
                result = PutResult(entity=stored.entity, changed=True, created=result.created)
            if not result.changed:
                return result

            stored_entity = result.entity
            if result.created:
                operation = OperationKind.CREATE
            elif stored_entity.is_deleted:
                operation = OperationKind.DELETE
            else:
                operation = OperationKind.UPDATE
            self.queue.enqueue(
                stored_entity.entity_type,
                stored_entity.id,
                operation,
                stored_entity.to_dict(),
                stored_entity.version,
                conn=c,
            )
        return result

    def delete(
        self,
        entity_type: EntityType,
        entity_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> PutResult | None:
        """Soft-delete an entity and enqueue the tombstone.

        Returns:
            PutResult, or None if the entity does not exist
        """
        with self.store.transaction() if conn is None else _joined(conn) as c:
            existing = self.store.get(entity_type, entity_id, conn=c)
            if existing is None:
                return None
            return self.write(existing.clone(is_deleted=True), conn=c)

    def enqueue_current(self, entity: Entity, conn: sqlite3.Connection | None = None) -> None:
        """Queue the stored state of an entity without changing it.

        Used when the local row already wins a conflict and the remote has
        to catch up.
        """
        self.queue.enqueue(
            entity.entity_type,
            entity.id,
            OperationKind.UPDATE,
            entity.to_dict(),
            entity.version,
            conn=conn,
        )

    def write_tree(
        self,
        task: Entity,
        nodes: Iterable[Entity],
        conn: sqlite3.Connection | None = None,
        version_floors: dict[str, int] | None = None,
        min_revision: int = 0,
    ) -> Entity:
        """Write a composite task and all of its nodes as a new tree revision.

        Args:
            task: composite_task row (new title, root, ...)
            nodes: Every node of the tree, including ones being removed
            conn: Optional connection of an open transaction
            version_floors: Versions (by id) the remote holds that the
                written rows have to overtake
            min_revision: Remote tree revision to overtake

        Returns:
            The stored composite_task
        """
        floors = version_floors or {}
        stamp = new_id()
        revision = max(int(task.data.get("tree_revision") or 0), min_revision) + 1

        with self.store.transaction() if conn is None else _joined(conn) as c:
            stored_task = self.write(
                task.with_data({"tree_revision": revision, "tree_stamp": stamp}),
                conn=c,
                min_version=floors[task.id] + 1 if task.id in floors else None,
            ).entity
            count = 0
            for node in nodes:
                self.write(
                    node.with_data({"tree_stamp": stamp}),
                    conn=c,
                    min_version=floors[node.id] + 1 if node.id in floors else None,
                )
                count += 1

        logger.debug(
            "Wrote composite tree",
            extra={"composite_task_id": task.id, "tree_revision": revision, "nodes": count},
        )
        return stored_task
