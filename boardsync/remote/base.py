"""
Base protocol and types for the remote document store.

This module defines the RemoteStore protocol that all backends must
implement, along with the wire types exchanged by push and pull.

Invariants:
    - push_batch is idempotent on (id, version): replaying an accepted
      item is accepted again and changes nothing
    - An item whose version is not above the stored one is rejected as
      stale, never applied
    - pull_since returns every change after the checkpoint, in change
      order, paginated; checkpoints are opaque strings

How to change safely:
    - Protocol changes require updating all implementations
    - Transient failures must raise RemoteUnavailableError and permanent
      ones RemoteRejectedError so the queue routes them correctly
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
    TYPE_CHECKING,
)
import logging

from ..errors import PermanentSyncError, TransientSyncError

if TYPE_CHECKING:
    from ..config import RemoteConfig

logger = logging.getLogger(__name__)

STALE = "stale"


class RemoteUnavailableError(TransientSyncError):
    """Remote unreachable, timed out or failing with a server error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)


class RemoteRejectedError(PermanentSyncError):
    """Remote refused the request (bad payload, permission denied)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)


@dataclass(frozen=True)
class PushItem:
    """One mutation sent to the remote.

    Attributes:
        id: Entity id
        type: Entity type value (table name)
        op: create, update or delete
        payload: Entity snapshot (Entity.to_dict())
        version: Entity version carried by the payload
    """
    id: str
    type: str
    op: str
    payload: Dict[str, Any]
    version: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "type": self.type,
            "op": self.op,
            "payload": self.payload,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PushItem:
        """Create from dictionary."""
        return cls(
            id=data["id"],
            type=data["type"],
            op=data["op"],
            payload=data["payload"],
            version=data["version"],
        )


@dataclass(frozen=True)
class PushAck:
    """Per-item result of a push.

    Attributes:
        id: Entity id
        accepted: Whether the remote stored the item
        server_version: Version the remote holds after the push
        error: Rejection reason ("stale" when the remote already has an
            equal or newer version)
    """
    id: str
    accepted: bool
    server_version: Optional[int] = None
    error: Optional[str] = None

    @property
    def stale(self) -> bool:
        return not self.accepted and self.error == STALE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "accepted": self.accepted,
            "server_version": self.server_version,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PushAck:
        """Create from dictionary."""
        return cls(
            id=data["id"],
            accepted=bool(data["accepted"]),
            server_version=data.get("server_version"),
            error=data.get("error"),
        )


@dataclass
class PullPage:
    """A page of remote changes.

    Attributes:
        entities: Raw entity snapshots (may be malformed; the engine
            validates them)
        new_checkpoint: Checkpoint to request the next page with
        has_more: More changes are available after this page
    """
    entities: List[Dict[str, Any]] = field(default_factory=list)
    new_checkpoint: Optional[str] = None
    has_more: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PullPage:
        """Create from dictionary."""
        return cls(
            entities=list(data.get("entities") or []),
            new_checkpoint=data.get("new_checkpoint"),
            has_more=bool(data.get("has_more", False)),
        )


@runtime_checkable
class RemoteStore(Protocol):
    """Protocol for remote document store backends.

    Delivery contract:
        - At-least-once: the client may resend an item after a timeout;
          the (id, version) pair makes the resend harmless

    Ordering contract:
        - pull_since returns changes in the order the remote applied them

    Example:
        >>> remote = InMemoryRemoteStore()
        >>> await remote.connect()
        >>> acks = await remote.push_batch([item])
        >>> page = await remote.pull_since(None, "me", limit=200)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the remote.

        Raises:
            RemoteUnavailableError: If the remote cannot be reached
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        ...

    @abstractmethod
    async def push_batch(self, items: List[PushItem]) -> List[PushAck]:
        """Submit a batch of mutations.

        Args:
            items: Mutations in queue order

        Returns:
            One PushAck per item, in the same order

        Raises:
            RemoteUnavailableError: Transient failure, nothing was applied
            RemoteRejectedError: The whole batch was refused
        """
        ...

    @abstractmethod
    async def pull_since(
        self,
        checkpoint: Optional[str],
        user_scope: str,
        limit: int = 200,
    ) -> PullPage:
        """Fetch changes after ``checkpoint``.

        Args:
            checkpoint: Checkpoint of the last completed pull (None = all)
            user_scope: Owner scope of the data to return
            limit: Maximum entities per page

        Returns:
            PullPage

        Raises:
            RemoteUnavailableError: Transient failure
            RemoteRejectedError: Request refused
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the remote."""
        ...


def create_remote_store(config: "RemoteConfig") -> RemoteStore:
    """Factory function to create a remote store from configuration.

    Args:
        config: Remote configuration

    Returns:
        Appropriate RemoteStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import RemoteBackend
    from .http import HttpRemoteStore
    from .memory import InMemoryRemoteStore

    if config.backend == RemoteBackend.MEMORY:
        return InMemoryRemoteStore()
    elif config.backend == RemoteBackend.HTTP:
        return HttpRemoteStore(
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
            api_token=config.api_token,
        )
    else:
        raise ValueError(f"Unsupported remote backend: {config.backend}")
