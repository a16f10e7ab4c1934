"""
boardsync - local-first data layer for a bingo-board task tracker.

Every device keeps a complete, independently writable SQLite copy of the
user's data and reconciles it with a remote document store:

    ┌──────────────┐  mutate()  ┌──────────────┐  same txn  ┌──────────────┐
    │  UI layer    │──────────▶│ Entity Store │──────────▶│ Outbound     │
    │  (external)  │◀──────────│  (SQLite)    │            │ Queue        │
    └──────────────┘   read()   └──────┬───────┘            └──────┬───────┘
                                       │ resolve / recompute       │ drain
                                       ▼                           ▼
                                ┌──────────────┐  pull   ┌──────────────────┐
                                │ Sync Engine  │◀───────▶│ Remote Store     │
                                │ push / pull  │  push   │ (memory / HTTP)  │
                                └──────────────┘         └──────────────────┘

Invariants:
    - Reads and writes never block on the network
    - Every local write and its queue entry commit in one transaction
    - Derived values (bingo lines, composite completion, aggregate counts)
      are always recomputed locally, never trusted from the remote
    - Conflict resolution is deterministic, commutative and idempotent

How to change safely:
    - New entity types need a resolver policy and parent references
    - New derived fields must be listed in records.DERIVED_FIELDS
    - Test convergence with two devices sharing an in-memory remote
"""

from ._version import __version__

__all__ = ["__version__"]
