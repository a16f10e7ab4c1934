"""
Derived-data recomputers.

Derived values are rebuilt locally from source rows after every local
write and after every pull resolution:
- placement completion (quantified, multi-step, composite and achievement
  squares)
- board line statistics (completed lines, full board, completed status)
- task aggregates across boards (instances, completions)
- progress counter totals

Invariants:
    - A recomputer writes only when a value actually changes, so equal
      source data on two devices never causes push ping-pong
    - All writes go through LocalWriter (version bump + queue entry)
    - Child composites are evaluated independently, memoised per run and
      guarded against cycles arriving from the remote

How to change safely:
    - A new derived field must be listed in records.DERIVED_FIELDS and
      rebuilt here from source rows only
    - Keep every refresh inside the caller's transaction
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable

from ..store.entity_store import EntityStore
from ..store.records import Entity, EntityType, now_ms
from ..store.write_path import LocalWriter
from .bingo import BOARD_SIZES, center_square_index, detect_bingo_lines, is_center_auto_completed
from .evaluator import child_composite_ids, evaluate_composite_tree, nodes_from_entities
from .schemas import AchievementType, BoardStatus

logger = logging.getLogger(__name__)


def counter_total(data: dict) -> float:
    """Current value of a progress counter from its per-device totals."""
    increments = data.get("increments") or {}
    decrements = data.get("decrements") or {}
    return sum(increments.values()) - sum(decrements.values())


class DerivedDataRecomputer:
    """Rebuilds derived fields and writes the deltas."""

    def __init__(self, store: EntityStore, writer: LocalWriter) -> None:
        self.store = store
        self.writer = writer

    def refresh_for(self, entities: Entity | Iterable[Entity], conn: sqlite3.Connection) -> int:
        """Refresh everything that depends on the given entities.

        Args:
            entities: Changed rows (local writes or pull results)
            conn: Connection of the caller's open transaction

        Returns:
            Number of derived rows rewritten
        """
        entities = [entities] if isinstance(entities, Entity) else list(entities)

        placement_ids: dict[str, None] = {}
        board_ids: dict[str, None] = {}
        task_ids: dict[str, None] = {}
        composite_ids: set[str] = set()
        counters: list[Entity] = []

        for entity in entities:
            data = entity.data
            if entity.entity_type == EntityType.BOARD:
                board_ids[entity.id] = None
                for placement in self.store.query(
                    EntityType.BOARD_TASK, where={"board_id": entity.id}, conn=conn
                ):
                    placement_ids[placement.id] = None
            elif entity.entity_type == EntityType.BOARD_TASK:
                placement_ids[entity.id] = None
                if data.get("board_id"):
                    board_ids[data["board_id"]] = None
                if data.get("task_id"):
                    task_ids[data["task_id"]] = None
            elif entity.entity_type == EntityType.TASK:
                task_ids[entity.id] = None
                for placement in self.store.query(
                    EntityType.BOARD_TASK, where={"task_id": entity.id}, conn=conn
                ):
                    placement_ids[placement.id] = None
            elif entity.entity_type == EntityType.COMPOSITE_TASK:
                composite_ids.add(entity.id)
            elif entity.entity_type == EntityType.COMPOSITE_NODE:
                if data.get("composite_task_id"):
                    composite_ids.add(data["composite_task_id"])
            elif entity.entity_type == EntityType.PROGRESS_COUNTER:
                counters.append(entity)

        if composite_ids:
            for composite_id in self._including_composites(composite_ids, conn):
                for placement in self.store.query(
                    EntityType.BOARD_TASK, where={"composite_task_id": composite_id}, conn=conn
                ):
                    placement_ids[placement.id] = None

        written = 0
        for placement_id in placement_ids:
            placement = self.store.get(EntityType.BOARD_TASK, placement_id, conn=conn)
            if placement is None:
                continue
            if self.refresh_placement(placement, conn):
                written += 1
            if placement.data.get("board_id"):
                board_ids[placement.data["board_id"]] = None
            if placement.data.get("task_id"):
                task_ids[placement.data["task_id"]] = None

        moved: dict[str, None] = {}
        for board_id in board_ids:
            if self.refresh_board(board_id, conn):
                written += 1
                moved[board_id] = None
        for task_id in task_ids:
            if self.refresh_task_aggregates(task_id, conn):
                written += 1
        for counter in counters:
            if self.refresh_counter(counter.id, conn):
                written += 1
        for entity in entities:
            if entity.entity_type == EntityType.BOARD:
                moved[entity.id] = None
        written += self._refresh_achievements(moved, conn)

        if written:
            logger.debug("Recomputed derived rows", extra={"written": written})
        return written

    def refresh_placement(self, placement: Entity, conn: sqlite3.Connection) -> bool:
        """Recompute completion of one placement.

        Simple task squares are user-controlled and left alone, except for
        free centers which are always complete. Achievement squares count
        qualifying boards other than their own.

        Returns:
            Whether the placement was rewritten
        """
        if placement.is_deleted:
            return False
        data = placement.data
        patch: dict = {}
        if data.get("is_achievement_square"):
            progress = self.achievement_progress(placement, conn)
            target = data.get("achievement_count") or 0
            patch["achievement_progress"] = progress
            completed: bool | None = target > 0 and progress >= target
        else:
            completed = self._placement_completion(placement, conn)
            if completed is None:
                return False

        completed_at = data.get("completed_at")
        if completed and completed_at is None:
            completed_at = now_ms()
        elif not completed:
            completed_at = None
        patch.update({"is_completed": completed, "completed_at": completed_at})

        if all(data.get(k) == v for k, v in patch.items()):
            return False
        self.writer.write(placement.with_data(patch), conn=conn)
        return True

    def achievement_progress(self, placement: Entity, conn: sqlite3.Connection | None = None) -> int:
        """Boards (other than the square's own) that count for an achievement square."""
        data = placement.data
        exclude = data.get("board_id")
        timeframe = data.get("achievement_timeframe")
        if data.get("achievement_type") == AchievementType.FULL_COMPLETION.value:
            return self.count_full_boards(timeframe, conn, exclude=exclude)
        return self.count_bingo_boards(timeframe, conn, exclude=exclude)

    def count_bingo_boards(
        self,
        timeframe: str | None = None,
        conn: sqlite3.Connection | None = None,
        exclude: str | None = None,
    ) -> int:
        """Live boards with at least one completed line."""
        return sum(
            1 for b in self._boards(timeframe, conn, exclude) if (b.data.get("lines_completed") or 0) >= 1
        )

    def count_full_boards(
        self,
        timeframe: str | None = None,
        conn: sqlite3.Connection | None = None,
        exclude: str | None = None,
    ) -> int:
        """Live boards with every square completed."""
        return sum(1 for b in self._boards(timeframe, conn, exclude) if b.data.get("is_full_board"))

    def _boards(
        self, timeframe: str | None, conn: sqlite3.Connection | None, exclude: str | None
    ) -> list[Entity]:
        where = {"timeframe": timeframe} if timeframe else None
        return [b for b in self.store.query(EntityType.BOARD, where=where, conn=conn) if b.id != exclude]

    def refresh_board(self, board_id: str, conn: sqlite3.Connection) -> bool:
        """Recompute line statistics of a board.

        Returns:
            Whether the board was rewritten
        """
        board = self.store.get(EntityType.BOARD, board_id, conn=conn)
        if board is None or board.is_deleted:
            return False
        data = board.data
        size = data.get("board_size")
        if size not in BOARD_SIZES:
            logger.warning("Board has unsupported size", extra={"board_id": board_id, "size": size})
            return False

        grid = [False] * (size * size)
        for placement in self.store.query(EntityType.BOARD_TASK, where={"board_id": board_id}, conn=conn):
            row, col = placement.data.get("row", -1), placement.data.get("col", -1)
            if 0 <= row < size and 0 <= col < size:
                grid[row * size + col] = bool(placement.data.get("is_completed"))

        center = center_square_index(size)
        if center >= 0 and is_center_auto_completed(data.get("center_square_type")):
            grid[center] = True

        result = detect_bingo_lines(grid, size)
        completed_at = data.get("completed_at")
        status = data.get("status")
        if result.full_board:
            if completed_at is None:
                completed_at = now_ms()
            if status in (BoardStatus.DRAFT.value, BoardStatus.ACTIVE.value):
                status = BoardStatus.COMPLETED.value
        else:
            completed_at = None
            if status == BoardStatus.COMPLETED.value:
                status = BoardStatus.ACTIVE.value

        patch = {
            "completed_tasks": result.total_completed,
            "lines_completed": result.lines_completed,
            "completed_line_ids": list(result.completed_lines),
            "is_full_board": result.full_board,
            "completed_at": completed_at,
            "status": status,
        }
        if all(data.get(k) == v for k, v in patch.items()):
            return False

        if result.completed_lines != tuple(data.get("completed_line_ids") or ()):
            logger.info(
                "Board lines changed",
                extra={
                    "board_id": board_id,
                    "completed_lines": list(result.completed_lines),
                    "full_board": result.full_board,
                },
            )
        self.writer.write(board.with_data(patch), conn=conn)
        return True

    def _refresh_achievements(self, moved: dict[str, None], conn: sqlite3.Connection) -> int:
        """Follow board changes into the achievement squares of other boards.

        Completing an achievement square can complete a line on its own
        board, which moves the squares of other boards in turn. Progress only
        follows the direction of the change, so this settles within one
        round per board.
        """
        written = 0
        rounds = 0
        limit = len(self.store.query(EntityType.BOARD, include_deleted=True, conn=conn)) + 1
        while moved:
            squares = self.store.query(EntityType.BOARD_TASK, where={"is_achievement_square": True}, conn=conn)
            if not squares:
                break
            if rounds >= limit:
                logger.warning("Achievement squares did not settle", extra={"rounds": rounds})
                break
            rounds += 1
            boards: dict[str, None] = {}
            for square in squares:
                if self.refresh_placement(square, conn):
                    written += 1
                    boards[square.data["board_id"]] = None
            moved = {}
            for board_id in boards:
                if self.refresh_board(board_id, conn):
                    written += 1
                    moved[board_id] = None
        return written

    def refresh_task_aggregates(self, task_id: str, conn: sqlite3.Connection) -> bool:
        """Recompute instance and completion counts of a task across boards.

        Returns:
            Whether the task was rewritten
        """
        task = self.store.get(EntityType.TASK, task_id, conn=conn)
        if task is None or task.is_deleted:
            return False
        placements = self.store.query(EntityType.BOARD_TASK, where={"task_id": task_id}, conn=conn)
        live_boards = {
            b.id for b in self.store.query(EntityType.BOARD, conn=conn)
        }
        placements = [p for p in placements if p.data.get("board_id") in live_boards]
        patch = {
            "total_instances": len(placements),
            "total_completions": sum(1 for p in placements if p.data.get("is_completed")),
        }
        if all(task.data.get(k) == v for k, v in patch.items()):
            return False
        self.writer.write(task.with_data(patch), conn=conn)
        return True

    def refresh_counter(self, counter_id: str, conn: sqlite3.Connection) -> bool:
        """Re-sum a progress counter from its per-device totals."""
        counter = self.store.get(EntityType.PROGRESS_COUNTER, counter_id, conn=conn)
        if counter is None or counter.is_deleted:
            return False
        total = counter_total(counter.data)
        if counter.data.get("current_value") == total:
            return False
        self.writer.write(counter.with_data({"current_value": total}), conn=conn)
        return True

    def composite_complete(
        self,
        composite_id: str,
        completed_task_ids: Iterable[str],
        conn: sqlite3.Connection,
    ) -> bool:
        """Whether a composite task is complete given the ticked leaf tasks."""
        return self._evaluate_composite(composite_id, set(completed_task_ids), conn, {}, set())

    def _placement_completion(self, placement: Entity, conn: sqlite3.Connection) -> bool | None:
        """Derived completion of a placement, or None when user-controlled."""
        data = placement.data
        if data.get("is_center") and not data.get("task_id") and not data.get("composite_task_id"):
            board = self.store.get(EntityType.BOARD, data.get("board_id") or "", conn=conn)
            if board is not None and is_center_auto_completed(board.data.get("center_square_type")):
                return True
            return None

        if data.get("composite_task_id"):
            return self.composite_complete(
                data["composite_task_id"], data.get("completed_task_ids") or [], conn
            )

        task = self.store.get(EntityType.TASK, data.get("task_id") or "", conn=conn)
        if task is None or task.is_deleted:
            return None
        kind = task.data.get("kind")
        if kind == "quantified":
            target = task.data.get("target") or 0
            return target > 0 and (data.get("current_count") or 0) >= target
        if kind == "multi_step":
            step_ids = task.data.get("step_ids") or []
            done = set(data.get("completed_step_ids") or [])
            return bool(step_ids) and all(step_id in done for step_id in step_ids)
        return None

    def _evaluate_composite(
        self,
        composite_id: str,
        completed_task_ids: set[str],
        conn: sqlite3.Connection,
        memo: dict[str, bool],
        visiting: set[str],
    ) -> bool:
        if composite_id in memo:
            return memo[composite_id]
        if composite_id in visiting:
            logger.warning("Composite cycle found during evaluation", extra={"composite_task_id": composite_id})
            return False

        composite = self.store.get(EntityType.COMPOSITE_TASK, composite_id, conn=conn)
        if composite is None or composite.is_deleted or not composite.data.get("root_node_id"):
            memo[composite_id] = False
            return False

        visiting.add(composite_id)
        try:
            nodes = nodes_from_entities(
                self.store.query(
                    EntityType.COMPOSITE_NODE, where={"composite_task_id": composite_id}, conn=conn
                )
            )
            children = {
                child_id: self._evaluate_composite(child_id, completed_task_ids, conn, memo, visiting)
                for child_id in child_composite_ids(nodes)
            }
            result = evaluate_composite_tree(
                nodes,
                composite.data["root_node_id"],
                {task_id: True for task_id in completed_task_ids},
                children,
            )
        except ValueError as e:
            logger.warning(
                "Composite tree cannot be evaluated",
                extra={"composite_task_id": composite_id, "error": str(e)},
            )
            result = False
        finally:
            visiting.discard(composite_id)

        memo[composite_id] = result
        return result

    def _including_composites(self, composite_ids: set[str], conn: sqlite3.Connection) -> set[str]:
        """The given composites plus every composite that includes them."""
        parents: dict[str, set[str]] = {}
        for node in self.store.query(EntityType.COMPOSITE_NODE, conn=conn):
            child = node.data.get("child_composite_task_id")
            owner = node.data.get("composite_task_id")
            if child and owner:
                parents.setdefault(child, set()).add(owner)

        result = set(composite_ids)
        stack = list(composite_ids)
        while stack:
            for owner in parents.get(stack.pop(), ()):
                if owner not in result:
                    result.add(owner)
                    stack.append(owner)
        return result
