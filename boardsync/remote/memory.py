"""
In-memory remote store implementation for testing.

This module provides a simple in-memory remote backend for:
- Unit tests
- Integration tests simulating several devices against one remote
- Local development without a server

Invariants:
    - All data is lost on process exit
    - Same idempotency and staleness rules as a real remote
    - Safe for concurrent coroutines (asyncio lock)

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with RemoteStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set
import logging

from .base import (
    STALE,
    PullPage,
    PushAck,
    PushItem,
    RemoteRejectedError,
    RemoteUnavailableError,
)

logger = logging.getLogger(__name__)


@dataclass
class StoredDocument:
    """A document as held by the in-memory remote."""
    snapshot: Dict[str, Any]
    change_seq: int


class InMemoryRemoteStore:
    """In-memory implementation of RemoteStore for testing.

    One instance can be shared by several SyncEngines to simulate devices
    syncing through the same remote.

    Thread safety:
        Uses an asyncio lock. Safe to use from multiple coroutines.

    Example:
        >>> remote = InMemoryRemoteStore()
        >>> await remote.connect()
        >>> acks = await remote.push_batch([item])
        >>> page = await remote.pull_since(None, "me")
    """

    def __init__(self) -> None:
        """Initialize the in-memory remote."""
        self._documents: Dict[str, StoredDocument] = {}
        self._change_seq = 0
        self._connected = False
        self._lock = asyncio.Lock()
        self._pending_failures: List[Exception] = []
        self._rejected_ids: Set[str] = set()
        self.push_requests = 0
        self.pull_requests = 0

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryRemoteStore connected")

    async def close(self) -> None:
        """Close (data is kept so devices can reconnect)."""
        self._connected = False
        logger.debug("InMemoryRemoteStore closed")

    async def push_batch(self, items: List[PushItem]) -> List[PushAck]:
        """Apply a batch of mutations.

        Args:
            items: Mutations in queue order

        Returns:
            One PushAck per item
        """
        self._check_available()
        async with self._lock:
            self.push_requests += 1
            acks = [self._apply(item) for item in items]

        logger.debug(
            "Push batch applied to in-memory remote",
            extra={
                "items": len(items),
                "accepted": sum(1 for a in acks if a.accepted),
            },
        )
        return acks

    async def pull_since(
        self,
        checkpoint: Optional[str],
        user_scope: str,
        limit: int = 200,
    ) -> PullPage:
        """Return changes after ``checkpoint`` in change order.

        Args:
            checkpoint: Change sequence number as a string (None = all)
            user_scope: "me" or "*" for everything, otherwise an owner id
            limit: Maximum entities per page

        Returns:
            PullPage
        """
        self._check_available()
        try:
            after = int(checkpoint) if checkpoint else 0
        except ValueError:
            raise RemoteRejectedError(f"Invalid checkpoint: {checkpoint!r}")

        async with self._lock:
            self.pull_requests += 1
            changes = sorted(
                (doc for doc in self._documents.values() if doc.change_seq > after),
                key=lambda d: d.change_seq,
            )
            if user_scope not in ("me", "*"):
                changes = [d for d in changes if d.snapshot.get("owner_id") == user_scope]

            page = changes[:limit]
            new_checkpoint = str(page[-1].change_seq) if page else (checkpoint or str(after))
            return PullPage(
                entities=[copy.deepcopy(d.snapshot) for d in page],
                new_checkpoint=new_checkpoint,
                has_more=len(changes) > limit,
            )

    def _apply(self, item: PushItem) -> PushAck:
        if item.id in self._rejected_ids:
            return PushAck(id=item.id, accepted=False, error="rejected by remote")
        if not isinstance(item.version, int) or item.version < 1:
            return PushAck(id=item.id, accepted=False, error="invalid version")

        existing = self._documents.get(item.id)
        if existing is not None:
            stored_version = existing.snapshot.get("version")
            if isinstance(stored_version, int) and stored_version >= item.version:
                if stored_version == item.version and _same(existing.snapshot, item.payload):
                    return PushAck(id=item.id, accepted=True, server_version=stored_version)
                return PushAck(
                    id=item.id, accepted=False, server_version=stored_version, error=STALE
                )

        self._store(copy.deepcopy(item.payload))
        return PushAck(id=item.id, accepted=True, server_version=item.version)

    def _store(self, snapshot: Dict[str, Any]) -> None:
        self._change_seq += 1
        self._documents[snapshot["id"]] = StoredDocument(
            snapshot=snapshot, change_seq=self._change_seq
        )

    def _check_available(self) -> None:
        if not self._connected:
            raise RemoteUnavailableError("Not connected")
        if self._pending_failures:
            raise self._pending_failures.pop(0)

    # Testing helpers

    def inject_failure(self, exception: Exception, count: int = 1) -> None:
        """Make the next ``count`` requests raise ``exception``."""
        self._pending_failures.extend([exception] * count)

    def reject_ids(self, *entity_ids: str) -> None:
        """Permanently reject pushes of these entities."""
        self._rejected_ids.update(entity_ids)

    def put_document(self, snapshot: Dict[str, Any]) -> None:
        """Store a raw snapshot as if another client pushed it.

        No validation is done, so malformed versions can be planted.
        """
        self._store(copy.deepcopy(snapshot))

    def get_document(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """Get the stored snapshot of an entity (testing helper)."""
        doc = self._documents.get(entity_id)
        return copy.deepcopy(doc.snapshot) if doc else None

    def get_document_count(self) -> int:
        """Number of stored documents (testing helper)."""
        return len(self._documents)

    @property
    def change_seq(self) -> int:
        return self._change_seq


def _same(a: Dict[str, Any], b: Dict[str, Any]) -> bool:
    return json.dumps(a, sort_keys=True) == json.dumps(b, sort_keys=True)
