"""
Local data layer: the synchronous API the UI talks to.

Every operation validates, writes through LocalWriter (version bump plus
queue entry) and runs the recomputers in a single store transaction, so a
returned WriteResult means the change is durable locally and queued for
push. Nothing here waits for the network.

Invariants:
    - Validation failures return a failed WriteResult and never reach
      the queue (the transaction rolls back)
    - Derived fields cannot be patched directly; the recomputers own them
    - Every structural edit of a composite tree rewrites the whole tree
      under a fresh tree_stamp (LocalWriter.write_tree)
    - Progress counters only grow per-device totals; a reset adds the
      current value to this device's decrements

How to change safely:
    - New operations go through _run so errors map to WriteResult
    - Keep store-aware checks in validation.py and structural ones in
      schemas.py
"""

from __future__ import annotations

import logging
import random
import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from ..errors import BoardSyncError, EntityNotFoundError, ValidationError
from ..store.entity_store import EntityStore
from ..store.outbound_queue import OutboundQueue
from ..store.records import DERIVED_FIELDS, Entity, EntityType, new_entity, new_id, now_ms
from ..store.write_path import LocalWriter
from .evaluator import Operator, clamp_threshold
from .layout import generate_counter_task_title as _counter_title
from .layout import Slot, plan_layout
from .recompute import DerivedDataRecomputer, counter_total
from .schemas import (
    CenterSquareType,
    CompositeNodeInput,
    CreateBoardInput,
    CreateCompositeTaskInput,
    CreateProgressCounterInput,
    CreateTaskInput,
    TaskKind,
    validate_model,
    validate_record,
)
from .validation import check_acyclic, check_not_a_step, check_references, check_steps

logger = logging.getLogger(__name__)

# Fields of a composite_task that only tree edits may change.
TREE_FIELDS = frozenset({"root_node_id", "tree_revision", "tree_stamp"})


@dataclass
class WriteResult:
    """Result of a local write.

    Attributes:
        success: Whether the write was committed
        entity: The primary row after the write and recompute
        error: Error message if failed
        error_code: Stable error code (VALIDATION_ERROR, NOT_FOUND, ...)
        related: Other rows created by the operation (board placements,
            composite nodes)
    """

    success: bool
    entity: Optional[Entity] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    related: list[Entity] = field(default_factory=list)


class LocalDataLayer:
    """CRUD and domain operations on the local store.

    Example:
        >>> layer = LocalDataLayer(store, queue)
        >>> result = layer.create_task({"title": "Read a book"})
        >>> layer.set_completed(placement_id, True)
    """

    def __init__(
        self,
        store: EntityStore,
        queue: OutboundQueue,
        device_id: Optional[str] = None,
        owner_id: str = "me",
        rng: Optional[random.Random] = None,
    ) -> None:
        """Initialize the data layer.

        Args:
            store: Local entity store
            queue: Outbound queue sharing the store
            device_id: Key for this device's counter totals (defaults to
                the store's device id)
            owner_id: Owner stamped on created rows
            rng: Random source for board shuffles
        """
        self.store = store
        self.queue = queue
        self.device_id = device_id or store.device_id
        self.owner_id = owner_id
        self.rng = rng or random.Random()
        self.writer = LocalWriter(store, queue)
        self.recomputer = DerivedDataRecomputer(store, self.writer)

    # =========================================================================
    # Generic access
    # =========================================================================

    def read(
        self, entity_type: EntityType, entity_id: str, include_deleted: bool = False
    ) -> Optional[Entity]:
        """Get one row (soft-deleted rows are hidden unless asked for)."""
        entity = self.store.get(entity_type, entity_id)
        if entity is None or (entity.is_deleted and not include_deleted):
            return None
        return entity

    def query(
        self,
        entity_type: EntityType,
        predicate: Optional[Callable[[Entity], bool]] = None,
        include_deleted: bool = False,
        where: Optional[dict[str, Any]] = None,
    ) -> list[Entity]:
        """List rows of a type, optionally filtered."""
        return self.store.query(
            entity_type, predicate=predicate, include_deleted=include_deleted, where=where
        )

    def create(
        self, entity_type: EntityType, data: dict[str, Any], entity_id: Optional[str] = None
    ) -> WriteResult:
        """Create a row of any type from raw data."""

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            entity = new_entity(entity_type, self.owner_id, data, entity_id=entity_id)
            if self.store.get(entity_type, entity.id, conn=c) is not None:
                raise ValidationError(f"{entity_type.value} {entity.id} already exists", field_name="id")
            if entity_type == EntityType.COMPOSITE_NODE:
                return self._save_node(entity, c)
            if entity_type == EntityType.COMPOSITE_TASK and entity.data.get("root_node_id"):
                raise ValidationError(
                    "Composite trees are created with create_composite_task",
                    field_name="root_node_id",
                )
            if entity_type == EntityType.TASK:
                check_steps(self.store, entity.data.get("step_ids") or [], conn=c)
            stored = self._save(entity, c)
            return stored, [stored]

        return self._run(f"create_{entity_type.value}", op)

    def mutate(self, entity_type: EntityType, entity_id: str, patch: dict[str, Any]) -> WriteResult:
        """Apply a partial update to a row."""

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            existing = self._require(entity_type, entity_id, c)
            derived = sorted(set(patch) & DERIVED_FIELDS[entity_type])
            if derived:
                raise ValidationError(
                    f"Derived fields cannot be set directly: {derived}", field_name=derived[0]
                )
            updated = existing.with_data(patch)
            if entity_type == EntityType.COMPOSITE_NODE:
                return self._save_node(updated, c)
            if entity_type == EntityType.COMPOSITE_TASK and set(patch) & TREE_FIELDS:
                raise ValidationError(
                    "Tree fields change only through composite node operations",
                    field_name=sorted(set(patch) & TREE_FIELDS)[0],
                )
            if entity_type == EntityType.TASK and ("step_ids" in patch or "kind" in patch):
                step_ids = updated.data.get("step_ids") or []
                if entity_id in step_ids:
                    raise ValidationError("A task cannot be its own step", field_name="step_ids")
                if step_ids or updated.data.get("kind") == TaskKind.MULTI_STEP.value:
                    check_not_a_step(self.store, entity_id, conn=c)
                check_steps(self.store, step_ids, conn=c)
            stored = self._save(updated, c)
            return stored, [stored]

        return self._run(f"mutate_{entity_type.value}", op)

    def delete(self, entity_type: EntityType, entity_id: str) -> WriteResult:
        """Soft-delete a row (composite tasks take their nodes along)."""
        if entity_type == EntityType.COMPOSITE_NODE:
            return self.remove_composite_node(entity_id)

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            existing = self._require(entity_type, entity_id, c)
            if entity_type == EntityType.COMPOSITE_TASK:
                nodes = {
                    n.id: n.clone(is_deleted=True)
                    for n in self.store.query(
                        EntityType.COMPOSITE_NODE, where={"composite_task_id": entity_id}, conn=c
                    )
                }
                stored = self._write_tree(existing.clone(is_deleted=True), nodes, c)
            else:
                stored = self.writer.write(existing.clone(is_deleted=True), conn=c).entity
            return stored, [stored]

        return self._run(f"delete_{entity_type.value}", op)

    # =========================================================================
    # Tasks and boards
    # =========================================================================

    def create_task(self, task_input: Union[CreateTaskInput, dict[str, Any]]) -> WriteResult:
        """Create a simple, quantified or multi-step task.

        Quantified tasks without a title get one generated from action,
        target and unit.
        """

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            params = _as_model(CreateTaskInput, task_input)
            title = params.title
            if params.kind == TaskKind.QUANTIFIED:
                title = _counter_title(params.action or "", params.target or 0, params.unit or "", params.title)
            check_steps(self.store, params.step_ids, conn=c)
            entity = new_entity(
                EntityType.TASK,
                self.owner_id,
                {
                    "title": title,
                    "description": params.description,
                    "kind": params.kind.value,
                    "action": params.action,
                    "unit": params.unit,
                    "target": params.target,
                    "step_ids": list(params.step_ids),
                },
            )
            stored = self._save(entity, c)
            return stored, [stored]

        return self._run("create_task", op)

    def create_board(self, board_input: Union[CreateBoardInput, dict[str, Any]]) -> WriteResult:
        """Create a board, laying out ``task_ids`` when given.

        ``task_ids`` may name tasks or composite tasks; they fill every
        square except a special center. With no task_ids the board starts
        empty (a free center is still placed) and squares are filled with
        place_task.
        """

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            params = _as_model(CreateBoardInput, board_input)
            size = params.board_size
            center_type = params.center_square_type.value
            board = new_entity(
                EntityType.BOARD,
                self.owner_id,
                {
                    "name": params.name,
                    "description": params.description,
                    "status": "active" if params.task_ids else "draft",
                    "board_size": size,
                    "timeframe": params.timeframe.value,
                    "start_date": params.start_date.isoformat() if params.start_date else None,
                    "end_date": params.end_date.isoformat() if params.end_date else None,
                    "center_square_type": center_type,
                    "center_square_custom_name": params.center_square_custom_name,
                    "is_randomized": params.is_randomized,
                    "total_tasks": size * size,
                },
            )
            stored_board = self._save(board, c)

            if params.task_ids:
                try:
                    slots = plan_layout(
                        params.task_ids,
                        size,
                        center_square_type=center_type,
                        center_ref=params.center_task_id,
                        randomize=params.is_randomized,
                        rng=self.rng,
                    )
                except ValueError as e:
                    raise ValidationError(str(e), field_name="task_ids") from e
            elif params.center_square_type in (CenterSquareType.FREE, CenterSquareType.CUSTOM_FREE):
                center = size // 2
                slots = [Slot(row=center, col=center, ref=None, is_center=True)]
            else:
                slots = []

            placements = [
                self._new_placement(stored_board.id, slot.row, slot.col, slot.ref, slot.is_center, c)
                for slot in slots
            ]
            return stored_board, [stored_board, *placements]

        return self._run("create_board", op)

    def place_task(
        self,
        board_id: str,
        row: int,
        col: int,
        task_id: Optional[str] = None,
        composite_task_id: Optional[str] = None,
    ) -> WriteResult:
        """Put a task or a composite task on a free square of a board."""

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            board = self._require(EntityType.BOARD, board_id, c)
            if bool(task_id) == bool(composite_task_id):
                raise ValidationError(
                    "Place exactly one of task_id or composite_task_id", field_name="task_id"
                )
            self._check_square(board, row, col, c)
            size = board.data["board_size"]
            is_center = size % 2 == 1 and row == col == size // 2
            placement = self._new_placement(board_id, row, col, task_id or composite_task_id, is_center, c)
            return placement, [placement]

        return self._run("place_task", op)

    def place_achievement_square(
        self,
        board_id: str,
        row: int,
        col: int,
        achievement_type: str,
        achievement_count: int,
        achievement_timeframe: Optional[str] = None,
    ) -> WriteResult:
        """Put an achievement square on a free square of a board.

        The square completes once ``achievement_count`` other boards (of
        ``achievement_timeframe``, or any timeframe when None) have a bingo
        or are fully completed, depending on ``achievement_type``.
        """

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            board = self._require(EntityType.BOARD, board_id, c)
            self._check_square(board, row, col, c)
            size = board.data["board_size"]
            data = {
                "board_id": board_id,
                "row": row,
                "col": col,
                "is_center": size % 2 == 1 and row == col == size // 2,
                "is_achievement_square": True,
                "achievement_type": achievement_type,
                "achievement_count": achievement_count,
                "achievement_timeframe": achievement_timeframe,
            }
            placement = self._save(new_entity(EntityType.BOARD_TASK, self.owner_id, data), c)
            return placement, [placement]

        return self._run("place_achievement_square", op)

    def set_completed(self, board_task_id: str, completed: bool = True) -> WriteResult:
        """Tick or untick a simple task square."""

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            placement = self._require(EntityType.BOARD_TASK, board_task_id, c)
            kind = self._placement_kind(placement, c)
            if kind != TaskKind.SIMPLE.value:
                raise ValidationError(
                    f"Completion of a {kind} square is derived from its progress",
                    field_name="is_completed",
                )
            completed_at = placement.data.get("completed_at") if completed else None
            if completed and completed_at is None:
                completed_at = now_ms()
            stored = self._save(
                placement.with_data({"is_completed": completed, "completed_at": completed_at}), c
            )
            return stored, [stored]

        return self._run("set_completed", op)

    def increment_count(self, board_task_id: str, amount: int = 1) -> WriteResult:
        """Add to the count of a quantified square (never below zero)."""

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            placement = self._require(EntityType.BOARD_TASK, board_task_id, c)
            if self._placement_kind(placement, c) != TaskKind.QUANTIFIED.value:
                raise ValidationError("Only quantified squares have a count", field_name="current_count")
            count = max(0, int(placement.data.get("current_count") or 0) + amount)
            stored = self._save(placement.with_data({"current_count": count}), c)
            return stored, [stored]

        return self._run("increment_count", op)

    def complete_step(self, board_task_id: str, step_id: str, completed: bool = True) -> WriteResult:
        """Tick or untick one step of a multi-step square."""

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            placement = self._require(EntityType.BOARD_TASK, board_task_id, c)
            if self._placement_kind(placement, c) != TaskKind.MULTI_STEP.value:
                raise ValidationError("Only multi-step squares have steps", field_name="step_id")
            task = self._require(EntityType.TASK, placement.data["task_id"], c)
            if step_id not in (task.data.get("step_ids") or []):
                raise ValidationError(f"{step_id} is not a step of this task", field_name="step_id")
            done = _toggled(placement.data.get("completed_step_ids") or [], step_id, completed)
            stored = self._save(placement.with_data({"completed_step_ids": done}), c)
            return stored, [stored]

        return self._run("complete_step", op)

    def tick_composite_task(self, board_task_id: str, task_id: str, completed: bool = True) -> WriteResult:
        """Tick or untick a leaf task of a composite square."""

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            placement = self._require(EntityType.BOARD_TASK, board_task_id, c)
            composite_id = placement.data.get("composite_task_id")
            if not composite_id:
                raise ValidationError("Square does not hold a composite task", field_name="composite_task_id")
            if task_id not in self._composite_leaf_tasks(composite_id, c):
                raise ValidationError(f"{task_id} is not part of this composite task", field_name="task_id")
            done = _toggled(placement.data.get("completed_task_ids") or [], task_id, completed)
            stored = self._save(placement.with_data({"completed_task_ids": done}), c)
            return stored, [stored]

        return self._run("tick_composite_task", op)

    # =========================================================================
    # Composite tasks
    # =========================================================================

    def create_composite_task(
        self, composite_input: Union[CreateCompositeTaskInput, dict[str, Any]]
    ) -> WriteResult:
        """Create a composite task from a nested node tree.

        The tree is flattened into composite_node rows, THRESHOLD operators
        are clamped to their child count and child composites are checked
        for cycles.
        """

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            params = _as_model(CreateCompositeTaskInput, composite_input)
            composite_id = new_id()
            nodes = self._flatten(composite_id, params.root, None, 0)
            self._check_leaves(composite_id, nodes, c)
            task = new_entity(
                EntityType.COMPOSITE_TASK,
                self.owner_id,
                {"title": params.title, "description": params.description, "root_node_id": nodes[0].id},
                entity_id=composite_id,
            )
            validate_record(EntityType.COMPOSITE_TASK, task.data)
            stored = self._write_tree(task, {n.id: n for n in nodes}, c)
            logger.info(
                "Created composite task",
                extra={"composite_task_id": composite_id, "nodes": len(nodes)},
            )
            return stored, [stored]

        return self._run("create_composite_task", op)

    def add_composite_node(
        self,
        parent_node_id: str,
        node_input: Union[CompositeNodeInput, dict[str, Any]],
        index: Optional[int] = None,
    ) -> WriteResult:
        """Attach a node (with its subtree) under an operator node."""

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            parent = self._require(EntityType.COMPOSITE_NODE, parent_node_id, c)
            if parent.data.get("node_type") != "operator":
                raise ValidationError("Nodes can only be added under operator nodes", field_name="parent_node_id")
            composite_id = parent.data["composite_task_id"]
            task = self._require(EntityType.COMPOSITE_TASK, composite_id, c)
            siblings = self._children(composite_id, parent_node_id, c)
            position = len(siblings) if index is None else index
            nodes = self._flatten(composite_id, _as_model(CompositeNodeInput, node_input), parent_node_id, position)
            self._check_leaves(composite_id, nodes, c)

            changed = {n.id: n for n in nodes}
            for sibling in siblings:
                if sibling.data.get("node_index", 0) >= position:
                    changed[sibling.id] = sibling.with_data({"node_index": sibling.data["node_index"] + 1})
            stored = self._write_tree(task, changed, c)
            return stored, [stored]

        return self._run("add_composite_node", op)

    def remove_composite_node(self, node_id: str) -> WriteResult:
        """Remove a node and its subtree; the parent's threshold is re-clamped."""

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            node = self._require(EntityType.COMPOSITE_NODE, node_id, c)
            composite_id = node.data["composite_task_id"]
            task = self._require(EntityType.COMPOSITE_TASK, composite_id, c)
            if task.data.get("root_node_id") == node_id:
                raise ValidationError(
                    "The root node cannot be removed; delete the composite task instead",
                    field_name="node_id",
                )

            live = self.store.query(
                EntityType.COMPOSITE_NODE, where={"composite_task_id": composite_id}, conn=c
            )
            by_parent: dict[Optional[str], list[Entity]] = {}
            for n in live:
                by_parent.setdefault(n.data.get("parent_node_id"), []).append(n)

            changed: dict[str, Entity] = {}
            stack = [node]
            while stack:
                current = stack.pop()
                changed[current.id] = current.clone(is_deleted=True)
                stack.extend(by_parent.get(current.id, []))

            parent_id = node.data.get("parent_node_id")
            parent = self.store.get(EntityType.COMPOSITE_NODE, parent_id or "", conn=c)
            if parent is not None:
                remaining = len(by_parent.get(parent_id, [])) - 1
                reclamped = self._reclamped(parent, remaining)
                if reclamped is not None:
                    changed[parent.id] = reclamped

            stored = self._write_tree(task, changed, c)
            return stored, [stored]

        return self._run("remove_composite_node", op)

    # =========================================================================
    # Progress counters
    # =========================================================================

    def create_progress_counter(
        self, counter_input: Union[CreateProgressCounterInput, dict[str, Any]]
    ) -> WriteResult:
        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            params = _as_model(CreateProgressCounterInput, counter_input)
            entity = new_entity(
                EntityType.PROGRESS_COUNTER,
                self.owner_id,
                {"name": params.name, "unit": params.unit, "target_value": params.target_value},
            )
            stored = self._save(entity, c)
            return stored, [stored]

        return self._run("create_progress_counter", op)

    def increment_progress_counter(self, counter_id: str, amount: float = 1) -> WriteResult:
        """Add (or with a negative amount, subtract) on this device's totals."""

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            counter = self._require(EntityType.PROGRESS_COUNTER, counter_id, c)
            if amount == 0:
                return counter, []
            name = "increments" if amount > 0 else "decrements"
            totals = dict(counter.data.get(name) or {})
            totals[self.device_id] = totals.get(self.device_id, 0) + abs(amount)
            updated = counter.with_data({name: totals})
            updated = updated.with_data({"current_value": counter_total(updated.data)})
            stored = self._save(updated, c)
            return stored, [stored]

        return self._run("increment_progress_counter", op)

    def reset_progress_counter(self, counter_id: str) -> WriteResult:
        """Bring the counter back to zero without losing other devices' totals."""

        def op(c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
            counter = self._require(EntityType.PROGRESS_COUNTER, counter_id, c)
            current = counter_total(counter.data)
            if current == 0:
                return counter, []
            name = "decrements" if current > 0 else "increments"
            totals = dict(counter.data.get(name) or {})
            totals[self.device_id] = totals.get(self.device_id, 0) + abs(current)
            updated = counter.with_data({name: totals})
            updated = updated.with_data({"current_value": counter_total(updated.data)})
            stored = self._save(updated, c)
            return stored, [stored]

        return self._run("reset_progress_counter", op)

    @staticmethod
    def generate_counter_task_title(
        action: str, target: float, unit: str, provided_title: Optional[str] = None
    ) -> str:
        return _counter_title(action, target, unit, provided_title)

    # =========================================================================
    # Board queries
    # =========================================================================

    def count_bingos(self, timeframe: Optional[str] = None) -> int:
        """Live boards with at least one completed line (any timeframe if None)."""
        return self.recomputer.count_bingo_boards(timeframe)

    def count_completed_boards(self, timeframe: Optional[str] = None) -> int:
        """Live boards with every square completed (any timeframe if None)."""
        return self.recomputer.count_full_boards(timeframe)

    def fetch_boards_by_timeframe(self, timeframe: str) -> list[Entity]:
        """Completed boards of one timeframe."""
        return self.store.query(
            EntityType.BOARD,
            predicate=lambda b: bool(b.data.get("is_full_board")),
            where={"timeframe": timeframe},
        )

    def fetch_boards_using_task(self, task_id: str) -> list[str]:
        """Ids of the live boards with a square pointing at ``task_id``."""
        board_ids: list[str] = []
        for placement in self.store.query(EntityType.BOARD_TASK, where={"task_id": task_id}):
            board_id = placement.data["board_id"]
            if board_id in board_ids:
                continue
            board = self.store.get(EntityType.BOARD, board_id)
            if board is not None and not board.is_deleted:
                board_ids.append(board_id)
        return board_ids

    def fetch_achievement_squares(self, timeframe: Optional[str] = None) -> list[Entity]:
        """Achievement squares, optionally only those tracking ``timeframe``."""
        where: dict[str, Any] = {"is_achievement_square": True}
        if timeframe is not None:
            where["achievement_timeframe"] = timeframe
        return self.store.query(EntityType.BOARD_TASK, where=where)

    # =========================================================================
    # Internals
    # =========================================================================

    def _run(
        self, action: str, op: Callable[[sqlite3.Connection], tuple[Entity, list[Entity]]]
    ) -> WriteResult:
        try:
            with self.store.transaction() as c:
                entity, changed = op(c)
                if changed:
                    self.recomputer.refresh_for(changed, c)
                entity = self.store.get(entity.entity_type, entity.id, conn=c) or entity
                related = [
                    self.store.get(e.entity_type, e.id, conn=c) or e
                    for e in changed
                    if e.id != entity.id
                ]
        except BoardSyncError as e:
            logger.info(
                "Write rejected",
                extra={"action": action, "code": e.code, "error": e.message},
            )
            return WriteResult(success=False, error=e.message, error_code=e.code)
        except Exception as e:
            logger.error(f"Write failed: {e}", exc_info=True, extra={"action": action})
            return WriteResult(success=False, error=str(e), error_code="INTERNAL_ERROR")

        logger.debug(
            "Write committed",
            extra={"action": action, "entity_id": entity.id, "version": entity.version},
        )
        return WriteResult(success=True, entity=entity, related=related)

    def _require(self, entity_type: EntityType, entity_id: str, c: sqlite3.Connection) -> Entity:
        entity = self.store.get(entity_type, entity_id, conn=c)
        if entity is None or entity.is_deleted:
            raise EntityNotFoundError(entity_type.value, entity_id)
        return entity

    def _save(self, entity: Entity, c: sqlite3.Connection) -> Entity:
        validate_record(entity.entity_type, entity.data)
        check_references(self.store, entity, conn=c)
        return self.writer.write(entity, conn=c).entity

    def _save_node(self, node: Entity, c: sqlite3.Connection) -> tuple[Entity, list[Entity]]:
        validate_record(EntityType.COMPOSITE_NODE, node.data)
        check_references(self.store, node, conn=c)
        composite_id = node.data["composite_task_id"]
        child = node.data.get("child_composite_task_id")
        if child:
            check_acyclic(self.store, composite_id, [child], conn=c)
        task = self._require(EntityType.COMPOSITE_TASK, composite_id, c)
        if node.data.get("parent_node_id") is None:
            if task.data.get("root_node_id") not in (None, node.id):
                raise ValidationError("A composite tree has exactly one root", field_name="parent_node_id")
            task = task.with_data({"root_node_id": node.id})
        if node.data.get("operator_type") == Operator.THRESHOLD.value:
            children = self._children(composite_id, node.id, c)
            node = node.with_data({"threshold": clamp_threshold(node.data.get("threshold"), len(children))})
        changed = {node.id: node}
        previous = self.store.get(EntityType.COMPOSITE_NODE, node.id, conn=c)
        old_parent_id = previous.data.get("parent_node_id") if previous is not None else None
        if old_parent_id and old_parent_id != node.data.get("parent_node_id"):
            old_parent = self.store.get(EntityType.COMPOSITE_NODE, old_parent_id, conn=c)
            if old_parent is not None and not old_parent.is_deleted:
                remaining = [n for n in self._children(composite_id, old_parent_id, c) if n.id != node.id]
                reclamped = self._reclamped(old_parent, len(remaining))
                if reclamped is not None:
                    changed[old_parent.id] = reclamped
        stored_task = self._write_tree(task, changed, c)
        return self.store.get(EntityType.COMPOSITE_NODE, node.id, conn=c) or node, [stored_task]

    def _reclamped(self, parent: Entity, child_count: int) -> Optional[Entity]:
        """Threshold parent with its threshold clamped to ``child_count``."""
        if parent.data.get("operator_type") != Operator.THRESHOLD.value:
            return None
        threshold = clamp_threshold(parent.data.get("threshold"), child_count)
        if threshold != parent.data.get("threshold"):
            logger.info(
                "Re-clamped threshold",
                extra={"node_id": parent.id, "threshold": threshold, "children": child_count},
            )
        return parent.with_data({"threshold": threshold})

    def _write_tree(self, task: Entity, changed: dict[str, Entity], c: sqlite3.Connection) -> Entity:
        nodes = {
            n.id: n
            for n in self.store.query(
                EntityType.COMPOSITE_NODE,
                include_deleted=True,
                where={"composite_task_id": task.id},
                conn=c,
            )
        }
        nodes.update(changed)
        return self.writer.write_tree(task, nodes.values(), conn=c)

    def _flatten(
        self,
        composite_id: str,
        root: CompositeNodeInput,
        parent_id: Optional[str],
        index: int,
    ) -> list[Entity]:
        """Nested input -> composite_node rows, parents before children."""
        nodes: list[Entity] = []
        stack: list[tuple[CompositeNodeInput, Optional[str], int]] = [(root, parent_id, index)]
        while stack:
            params, parent, position = stack.pop()
            node_id = new_id()
            data: dict[str, Any] = {
                "composite_task_id": composite_id,
                "parent_node_id": parent,
                "node_index": position,
                "node_type": params.node_type,
            }
            if params.node_type == "operator":
                operator = Operator.parse(params.operator_type or "")
                threshold = None
                if operator is Operator.THRESHOLD:
                    threshold = clamp_threshold(params.threshold, len(params.children))
                data.update({"operator_type": operator.value, "threshold": threshold})
                for i in range(len(params.children) - 1, -1, -1):
                    stack.append((params.children[i], node_id, i))
            else:
                data.update(
                    {"task_id": params.task_id, "child_composite_task_id": params.child_composite_task_id}
                )
            node = new_entity(EntityType.COMPOSITE_NODE, self.owner_id, data, entity_id=node_id)
            validate_record(EntityType.COMPOSITE_NODE, node.data)
            nodes.append(node)
        return nodes

    def _check_leaves(self, composite_id: str, nodes: Iterable[Entity], c: sqlite3.Connection) -> None:
        child_ids = []
        for node in nodes:
            task_id = node.data.get("task_id")
            child_id = node.data.get("child_composite_task_id")
            if task_id:
                self._require_ref(EntityType.TASK, task_id, "task_id", c)
            if child_id:
                self._require_ref(EntityType.COMPOSITE_TASK, child_id, "child_composite_task_id", c)
                child_ids.append(child_id)
        if child_ids:
            check_acyclic(self.store, composite_id, child_ids, conn=c)

    def _require_ref(self, entity_type: EntityType, entity_id: str, field_name: str, c: sqlite3.Connection) -> None:
        target = self.store.get(entity_type, entity_id, conn=c)
        if target is None or target.is_deleted:
            raise ValidationError(
                f"{field_name} references missing {entity_type.value} {entity_id}",
                field_name=field_name,
            )

    def _children(self, composite_id: str, parent_id: str, c: sqlite3.Connection) -> list[Entity]:
        return self.store.query(
            EntityType.COMPOSITE_NODE,
            where={"composite_task_id": composite_id, "parent_node_id": parent_id},
            conn=c,
        )

    def _new_placement(
        self,
        board_id: str,
        row: int,
        col: int,
        ref: Optional[str],
        is_center: bool,
        c: sqlite3.Connection,
    ) -> Entity:
        data: dict[str, Any] = {"board_id": board_id, "row": row, "col": col, "is_center": is_center}
        if ref is not None:
            if self.store.get(EntityType.TASK, ref, conn=c) is not None:
                data["task_id"] = ref
            elif self.store.get(EntityType.COMPOSITE_TASK, ref, conn=c) is not None:
                data["composite_task_id"] = ref
            else:
                raise ValidationError(f"Task not found: {ref}", field_name="task_ids")
        return self._save(new_entity(EntityType.BOARD_TASK, self.owner_id, data), c)

    def _check_square(self, board: Entity, row: int, col: int, c: sqlite3.Connection) -> None:
        size = board.data["board_size"]
        if not (0 <= row < size and 0 <= col < size):
            raise ValidationError(f"Square ({row}, {col}) is outside a {size}x{size} board", field_name="row")
        occupied = self.store.query(
            EntityType.BOARD_TASK, where={"board_id": board.id, "row": row, "col": col}, conn=c
        )
        if occupied:
            raise ValidationError(f"Square ({row}, {col}) is already taken", field_name="row")

    def _placement_kind(self, placement: Entity, c: sqlite3.Connection) -> str:
        if placement.data.get("is_achievement_square"):
            return "achievement"
        if placement.data.get("composite_task_id"):
            return "composite"
        task_id = placement.data.get("task_id")
        if not task_id:
            return "free"
        return self._require(EntityType.TASK, task_id, c).data.get("kind", TaskKind.SIMPLE.value)

    def _composite_leaf_tasks(self, composite_id: str, c: sqlite3.Connection) -> set[str]:
        """Task ids reachable from a composite, through child composites."""
        task_ids: set[str] = set()
        seen: set[str] = set()
        stack = [composite_id]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            for node in self.store.query(
                EntityType.COMPOSITE_NODE, where={"composite_task_id": current}, conn=c
            ):
                if node.data.get("task_id"):
                    task_ids.add(node.data["task_id"])
                if node.data.get("child_composite_task_id"):
                    stack.append(node.data["child_composite_task_id"])
        return task_ids


def _as_model(model: Any, value: Any) -> Any:
    if isinstance(value, model):
        return value
    return validate_model(model, value)


def _toggled(values: list[str], value: str, present: bool) -> list[str]:
    result = [v for v in values if v != value]
    if present:
        result.append(value)
    return result
