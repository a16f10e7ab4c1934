"""
Remote document store abstraction for boardsync.

This module provides a pluggable remote backend interface supporting:
- HTTP (httpx) against a sync server
- In-memory (for testing and multi-device simulation)

The remote is never on the read or write path; only the sync engine
talks to it.

Invariants:
    - Pushes are idempotent on (id, version)
    - Pulls return changes in remote order after an opaque checkpoint
    - Transient and permanent failures are distinguished by exception type

How to change safely:
    - New backends must implement the RemoteStore protocol
    - Test with failure injection (InMemoryRemoteStore.inject_failure)
"""

from .base import (
    STALE,
    PullPage,
    PushAck,
    PushItem,
    RemoteRejectedError,
    RemoteStore,
    RemoteUnavailableError,
    create_remote_store,
)
from .http import HttpRemoteStore
from .memory import InMemoryRemoteStore

__all__ = [
    # Protocol and types
    "RemoteStore",
    "PushItem",
    "PushAck",
    "PullPage",
    "STALE",
    # Errors
    "RemoteUnavailableError",
    "RemoteRejectedError",
    # Implementations
    "InMemoryRemoteStore",
    "HttpRemoteStore",
    # Factory
    "create_remote_store",
]
