"""
Record types shared by the store, the queue and the sync engine.

This module defines:
- EntityType: the closed set of synced entity kinds (one table each)
- Entity: the common row shape every synced entity shares
- OperationKind / QueueStatus: outbound queue enums
- Per-type field defaults, derived fields and parent references

Invariants:
    - Entity ids are opaque client-generated UUID strings
    - version starts at 1 and only moves forward on local writes
    - Timestamps are Unix milliseconds
    - Derived fields are never trusted from the remote side

How to change safely:
    - Adding an EntityType requires a table (entity_store), a resolver
      policy (resolver.POLICIES) and a PARENT_FIELDS entry
    - Never rename a field in DEFAULT_DATA; remote payloads carry the names
"""

from __future__ import annotations

import copy
import json
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class EntityType(Enum):
    """Synced entity kinds. The value is the table name."""

    BOARD = "board"
    TASK = "task"
    BOARD_TASK = "board_task"
    COMPOSITE_TASK = "composite_task"
    COMPOSITE_NODE = "composite_node"
    PROGRESS_COUNTER = "progress_counter"


class OperationKind(Enum):
    """Kind of mutation carried by an outbound queue entry."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class QueueStatus(Enum):
    """Lifecycle of an outbound queue entry."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    DEAD_LETTERED = "dead_lettered"


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    """Generate a client-side entity id."""
    return str(uuid.uuid4())


def canonical_json(value: Any) -> str:
    """Serialize deterministically (sorted keys, no whitespace)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


@dataclass
class Entity:
    """A synced row.

    Attributes:
        entity_type: Table the row lives in
        id: Unique entity identifier (UUID)
        owner_id: Owning user
        version: Monotonic write counter (starts at 1)
        updated_at: Last modification timestamp (Unix ms)
        data: Type-specific fields
        is_deleted: Soft-delete flag
        deleted_at: Deletion timestamp (Unix ms)
        last_synced_at: Last confirmed push/pull timestamp (Unix ms)
    """

    entity_type: EntityType
    id: str
    owner_id: str
    version: int
    updated_at: int
    data: dict[str, Any] = field(default_factory=dict)
    is_deleted: bool = False
    deleted_at: int | None = None
    last_synced_at: int | None = None

    def same_content(self, other: Entity) -> bool:
        """Whether two rows carry identical state (ignoring stamps)."""
        return (
            self.is_deleted == other.is_deleted
            and self.owner_id == other.owner_id
            and canonical_json(self.data) == canonical_json(other.data)
        )

    def with_data(self, patch: dict[str, Any]) -> Entity:
        """Return a copy with ``patch`` merged into ``data``."""
        merged = copy.deepcopy(self.data)
        merged.update(copy.deepcopy(patch))
        return replace(self, data=merged)

    def clone(self, **changes: Any) -> Entity:
        """Deep copy with optional attribute overrides."""
        changes["data"] = copy.deepcopy(changes.get("data", self.data))
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a snapshot dictionary for the wire and the queue."""
        return {
            "entity_type": self.entity_type.value,
            "id": self.id,
            "owner_id": self.owner_id,
            "version": self.version,
            "updated_at": self.updated_at,
            "is_deleted": self.is_deleted,
            "deleted_at": self.deleted_at,
            "data": copy.deepcopy(self.data),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Entity:
        """Create from a snapshot dictionary.

        The version is taken as-is (it may be malformed on remote
        snapshots; the resolver deals with that).

        Raises:
            ValueError: If the entity type or id is missing or unknown
        """
        missing = [f for f in ("entity_type", "id") if f not in data]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")

        return cls(
            entity_type=EntityType(data["entity_type"]),
            id=data["id"],
            owner_id=data.get("owner_id", ""),
            version=data.get("version"),  # type: ignore[arg-type]
            updated_at=int(data.get("updated_at") or 0),
            data=copy.deepcopy(data.get("data") or {}),
            is_deleted=bool(data.get("is_deleted", False)),
            deleted_at=data.get("deleted_at"),
        )


# Defaults applied when an entity is created locally.
DEFAULT_DATA: dict[EntityType, dict[str, Any]] = {
    EntityType.BOARD: {
        "name": "",
        "description": None,
        "status": "draft",
        "board_size": 3,
        "timeframe": "custom",
        "start_date": None,
        "end_date": None,
        "center_square_type": "none",
        "center_square_custom_name": None,
        "is_randomized": False,
        "total_tasks": 9,
        "completed_tasks": 0,
        "lines_completed": 0,
        "completed_line_ids": [],
        "is_full_board": False,
        "completed_at": None,
    },
    EntityType.TASK: {
        "title": "",
        "description": None,
        "kind": "simple",
        "action": None,
        "unit": None,
        "target": None,
        "step_ids": [],
        "total_completions": 0,
        "total_instances": 0,
    },
    EntityType.BOARD_TASK: {
        "board_id": None,
        "task_id": None,
        "composite_task_id": None,
        "row": 0,
        "col": 0,
        "is_center": False,
        "is_completed": False,
        "completed_at": None,
        "current_count": 0,
        "completed_step_ids": [],
        "completed_task_ids": [],
        "is_achievement_square": False,
        "achievement_type": None,
        "achievement_count": None,
        "achievement_timeframe": None,
        "achievement_progress": 0,
    },
    EntityType.COMPOSITE_TASK: {
        "title": "",
        "description": None,
        "root_node_id": None,
        "tree_revision": 0,
        "tree_stamp": None,
    },
    EntityType.COMPOSITE_NODE: {
        "composite_task_id": None,
        "parent_node_id": None,
        "node_index": 0,
        "node_type": "leaf",
        "operator_type": None,
        "threshold": None,
        "task_id": None,
        "child_composite_task_id": None,
        "tree_stamp": None,
    },
    EntityType.PROGRESS_COUNTER: {
        "name": "",
        "unit": "",
        "target_value": 1,
        "increments": {},
        "decrements": {},
        "current_value": 0,
    },
}

# Fields rebuilt by the recomputers; remote values are discarded.
# Timestamps such as completed_at follow the row (LWW) and are only
# corrected by the recomputers when they contradict the derived state.
DERIVED_FIELDS: dict[EntityType, frozenset[str]] = {
    EntityType.BOARD: frozenset(
        {"completed_tasks", "lines_completed", "completed_line_ids", "is_full_board"}
    ),
    EntityType.TASK: frozenset({"total_completions", "total_instances"}),
    EntityType.BOARD_TASK: frozenset({"achievement_progress"}),
    EntityType.COMPOSITE_TASK: frozenset(),
    EntityType.COMPOSITE_NODE: frozenset(),
    EntityType.PROGRESS_COUNTER: frozenset({"current_value"}),
}

# Fields that point at a parent whose create must be pushed first.
PARENT_FIELDS: dict[EntityType, tuple[str, ...]] = {
    EntityType.BOARD: (),
    EntityType.TASK: (),
    EntityType.BOARD_TASK: ("board_id", "task_id", "composite_task_id"),
    EntityType.COMPOSITE_TASK: (),
    EntityType.COMPOSITE_NODE: ("composite_task_id", "task_id", "child_composite_task_id"),
    EntityType.PROGRESS_COUNTER: (),
}


# Entries pushed in the same batch as their owner's entry, so that a
# composite tree reaches the remote in one piece.
GROUPED_WITH: dict[EntityType, tuple[str, EntityType]] = {
    EntityType.COMPOSITE_NODE: ("composite_task_id", EntityType.COMPOSITE_TASK),
}


def parent_ids(entity_type: EntityType, data: dict[str, Any]) -> list[str]:
    """Ids of the parents an entity of this type depends on."""
    ids = []
    for name in PARENT_FIELDS[entity_type]:
        value = data.get(name)
        if isinstance(value, str) and value:
            ids.append(value)
    return ids


def new_entity(
    entity_type: EntityType,
    owner_id: str,
    data: dict[str, Any],
    entity_id: str | None = None,
) -> Entity:
    """Build an unsaved entity with type defaults filled in.

    The store assigns version 1 and the timestamp when it is first put.
    """
    merged = copy.deepcopy(DEFAULT_DATA[entity_type])
    merged.update(copy.deepcopy(data))
    return Entity(
        entity_type=entity_type,
        id=entity_id or new_id(),
        owner_id=owner_id,
        version=0,
        updated_at=0,
        data=merged,
    )
