"""
Store-aware validation run before a local write is accepted.

Structural checks are in schemas.py. The checks here look at other rows:
referenced parents must exist, steps of a multi-step task must not be
multi-step themselves, and composite tasks must not reference themselves
through any chain of child composites.

All checks raise ValidationError and never write.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable

from ..errors import ValidationError
from ..store.entity_store import EntityStore
from ..store.records import Entity, EntityType

logger = logging.getLogger(__name__)

# Parent field -> entity type it points at
REFERENCE_TYPES: dict[EntityType, dict[str, EntityType]] = {
    EntityType.BOARD_TASK: {
        "board_id": EntityType.BOARD,
        "task_id": EntityType.TASK,
        "composite_task_id": EntityType.COMPOSITE_TASK,
    },
    EntityType.COMPOSITE_NODE: {
        "composite_task_id": EntityType.COMPOSITE_TASK,
        "task_id": EntityType.TASK,
        "child_composite_task_id": EntityType.COMPOSITE_TASK,
        "parent_node_id": EntityType.COMPOSITE_NODE,
    },
}


def check_references(store: EntityStore, entity: Entity, conn: sqlite3.Connection | None = None) -> None:
    """Every referenced row must exist and not be deleted.

    Raises:
        ValidationError: On the first dangling reference
    """
    for field_name, target_type in REFERENCE_TYPES.get(entity.entity_type, {}).items():
        ref = entity.data.get(field_name)
        if not ref:
            continue
        target = store.get(target_type, ref, conn=conn)
        if target is None or target.is_deleted:
            raise ValidationError(
                f"{entity.entity_type.value}.{field_name} references missing "
                f"{target_type.value} {ref}",
                field_name=field_name,
            )


def check_steps(store: EntityStore, step_ids: Iterable[str], conn: sqlite3.Connection | None = None) -> None:
    """Steps must be existing tasks that are not multi-step.

    Raises:
        ValidationError: If a step is missing, repeated or multi-step
    """
    seen: set[str] = set()
    for step_id in step_ids:
        if step_id in seen:
            raise ValidationError(f"Step {step_id} is listed twice", field_name="step_ids")
        seen.add(step_id)
        step = store.get(EntityType.TASK, step_id, conn=conn)
        if step is None or step.is_deleted:
            raise ValidationError(f"Step task not found: {step_id}", field_name="step_ids")
        if step.data.get("kind") == "multi_step":
            raise ValidationError(
                f"Step {step_id} is itself a multi-step task", field_name="step_ids"
            )


def check_not_a_step(store: EntityStore, task_id: str, conn: sqlite3.Connection | None = None) -> None:
    """A task used as a step of a multi-step task cannot get steps of its own.

    Raises:
        ValidationError: If any live task lists ``task_id`` as a step
    """
    parents = store.query(
        EntityType.TASK,
        predicate=lambda t: task_id in (t.data.get("step_ids") or []),
        conn=conn,
    )
    if parents:
        raise ValidationError(
            f"Task {task_id} is a step of {parents[0].id} and cannot be multi-step",
            field_name="step_ids",
        )


def composite_graph(store: EntityStore, conn: sqlite3.Connection | None = None) -> dict[str, set[str]]:
    """Map each composite task id to the composite ids its leaves reference."""
    graph: dict[str, set[str]] = {}
    for node in store.query(EntityType.COMPOSITE_NODE, conn=conn):
        child = node.data.get("child_composite_task_id")
        owner = node.data.get("composite_task_id")
        if owner:
            graph.setdefault(owner, set())
            if child:
                graph[owner].add(child)
    return graph


def check_acyclic(
    store: EntityStore,
    composite_id: str,
    child_ids: Iterable[str],
    conn: sqlite3.Connection | None = None,
) -> None:
    """Adding ``child_ids`` under ``composite_id`` must not create a cycle.

    Raises:
        ValidationError: If ``composite_id`` is reachable from any child
    """
    child_ids = list(child_ids)
    graph = composite_graph(store, conn=conn)
    stack = list(child_ids)
    seen: set[str] = set()
    while stack:
        current = stack.pop()
        if current == composite_id:
            logger.info(
                "Rejected composite cycle",
                extra={"composite_task_id": composite_id, "child_ids": child_ids},
            )
            raise ValidationError(
                f"Composite task {composite_id} would contain itself",
                field_name="child_composite_task_id",
            )
        if current in seen:
            continue
        seen.add(current)
        stack.extend(graph.get(current, ()))
