"""
Local storage for boardsync.

This package handles:
- The per-device SQLite entity store (one table per entity type)
- The durable outbound queue of mutations awaiting push
- The local write path that couples the two

The store is the only source of truth for reads. The network is never
consulted on the read or write path.

Invariants:
    - A local write and its queue entry commit in one transaction
    - Version increments happen inside the write transaction
    - Soft-deleted rows are hidden from queries but readable by id

How to change safely:
    - Use store.transaction() for all multi-statement operations
    - Never hold a transaction across an await
"""

from .entity_store import EntityStore, PutResult, StoreNotInitializedError
from .outbound_queue import OutboundQueue, QueueEntry
from .records import Entity, EntityType, OperationKind, QueueStatus, new_entity
from .write_path import LocalWriter

__all__ = [
    "EntityStore",
    "PutResult",
    "StoreNotInitializedError",
    "OutboundQueue",
    "QueueEntry",
    "Entity",
    "EntityType",
    "OperationKind",
    "QueueStatus",
    "new_entity",
    "LocalWriter",
]
