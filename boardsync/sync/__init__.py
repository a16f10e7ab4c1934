"""
Synchronisation with the remote store.

- clock: version counters and the total write order
- resolver: per-type conflict resolution
- engine: push/pull cycles, triggers and the periodic loop

Submodules are imported explicitly (``from boardsync.sync.engine import
SyncEngine``); the store depends on ``sync.clock``, so this package must not
import the engine eagerly.
"""
