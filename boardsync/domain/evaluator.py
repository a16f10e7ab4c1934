"""
Composite task evaluation.

A composite task is a tree of nodes stored flat (arena) and linked by
parent_node_id. Operator nodes combine their children with AND, OR or
THRESHOLD (at least N of M). Leaf nodes reference exactly one task or
one other composite task.

Invariants:
    - Evaluation is pure: no store access, no side effects
    - Children are visited in node_index order (ties broken by id)
    - A child composite is never expanded inline; its completion comes
      from ``composite_completions``
    - AND of zero children is True; OR and THRESHOLD of zero are False

How to change safely:
    - A new node kind must be handled in _evaluate_node and
      nodes_from_entities, or evaluation raises TypeError
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Union

from ..store.records import Entity


class Operator(Enum):
    """Operator of an operator node."""

    AND = "AND"
    OR = "OR"
    THRESHOLD = "THRESHOLD"

    @classmethod
    def parse(cls, value: str) -> Operator:
        """Parse an operator name (M_OF_N is accepted for THRESHOLD)."""
        name = str(value).upper()
        if name == "M_OF_N":
            return cls.THRESHOLD
        return cls(name)


@dataclass(frozen=True)
class OperatorNode:
    """Node combining its children with an operator."""

    id: str
    parent_id: str | None
    index: int
    operator: Operator
    threshold: int | None = None


@dataclass(frozen=True)
class LeafNode:
    """Node referencing exactly one task or one child composite."""

    id: str
    parent_id: str | None
    index: int
    task_id: str | None = None
    composite_id: str | None = None

    def __post_init__(self) -> None:
        if (self.task_id is None) == (self.composite_id is None):
            raise ValueError(f"Leaf {self.id} must reference exactly one task or composite")


CompositeNode = Union[OperatorNode, LeafNode]


def clamp_threshold(threshold: int | None, child_count: int) -> int:
    """Clamp a threshold into [1, child_count] (1 when there are no children)."""
    if child_count < 1:
        return 1
    if threshold is None:
        return child_count
    return max(1, min(int(threshold), child_count))


def nodes_from_entities(entities: Iterable[Entity]) -> list[CompositeNode]:
    """Build evaluator nodes from stored composite_node rows.

    Soft-deleted rows are skipped.

    Raises:
        ValueError: If a row is neither a valid operator nor a valid leaf
    """
    nodes: list[CompositeNode] = []
    for entity in entities:
        if entity.is_deleted:
            continue
        data = entity.data
        if data.get("node_type") == "operator":
            nodes.append(
                OperatorNode(
                    id=entity.id,
                    parent_id=data.get("parent_node_id"),
                    index=int(data.get("node_index") or 0),
                    operator=Operator.parse(data.get("operator_type")),
                    threshold=data.get("threshold"),
                )
            )
        else:
            nodes.append(
                LeafNode(
                    id=entity.id,
                    parent_id=data.get("parent_node_id"),
                    index=int(data.get("node_index") or 0),
                    task_id=data.get("task_id"),
                    composite_id=data.get("child_composite_task_id"),
                )
            )
    return nodes


def children_index(nodes: Iterable[CompositeNode]) -> dict[str | None, list[CompositeNode]]:
    """Map parent id to its children in evaluation order."""
    children: dict[str | None, list[CompositeNode]] = defaultdict(list)
    for node in nodes:
        children[node.parent_id].append(node)
    for siblings in children.values():
        siblings.sort(key=lambda n: (n.index, n.id))
    return children


def evaluate_composite_tree(
    nodes: Iterable[CompositeNode],
    root_id: str,
    task_completions: Mapping[str, bool],
    composite_completions: Mapping[str, bool] | None = None,
) -> bool:
    """Evaluate whether a composite tree is complete.

    Args:
        nodes: All nodes of the tree
        root_id: Id of the root node
        task_completions: Completion by task id (missing = not complete)
        composite_completions: Completion by child composite id
            (missing = not complete)

    Returns:
        True if the root evaluates to complete

    Raises:
        ValueError: If root_id is not among the nodes or the node links
            form a cycle
    """
    arena = {node.id: node for node in nodes}
    if root_id not in arena:
        raise ValueError(f"Root node not found: {root_id}")
    children = children_index(arena.values())
    composites = composite_completions or {}

    results: dict[str, bool] = {}
    # Iterative post-order walk
    stack: list[tuple[str, bool]] = [(root_id, False)]
    on_path: set[str] = set()
    while stack:
        node_id, expanded = stack.pop()
        node = arena[node_id]
        if expanded:
            on_path.discard(node_id)
            child_values = [results[c.id] for c in children.get(node_id, [])]
            results[node_id] = _evaluate_node(node, child_values, task_completions, composites)
            continue
        if node_id in on_path:
            raise ValueError(f"Cycle detected at node {node_id}")
        on_path.add(node_id)
        stack.append((node_id, True))
        for child in reversed(children.get(node_id, [])):
            if child.id in on_path:
                raise ValueError(f"Cycle detected at node {child.id}")
            stack.append((child.id, False))

    return results[root_id]


def _evaluate_node(
    node: CompositeNode,
    child_values: list[bool],
    task_completions: Mapping[str, bool],
    composite_completions: Mapping[str, bool],
) -> bool:
    if isinstance(node, LeafNode):
        if node.task_id is not None:
            return bool(task_completions.get(node.task_id, False))
        return bool(composite_completions.get(node.composite_id, False))

    if isinstance(node, OperatorNode):
        if node.operator is Operator.AND:
            return all(child_values)
        if node.operator is Operator.OR:
            return any(child_values)
        if node.operator is Operator.THRESHOLD:
            if not child_values:
                return False
            return sum(child_values) >= clamp_threshold(node.threshold, len(child_values))
        raise TypeError(f"Unhandled operator: {node.operator}")

    raise TypeError(f"Unhandled node kind: {type(node).__name__}")


def leaf_task_ids(nodes: Iterable[CompositeNode]) -> set[str]:
    """Task ids referenced by leaves."""
    return {n.task_id for n in nodes if isinstance(n, LeafNode) and n.task_id}


def child_composite_ids(nodes: Iterable[CompositeNode]) -> set[str]:
    """Composite ids referenced by leaves."""
    return {n.composite_id for n in nodes if isinstance(n, LeafNode) and n.composite_id}
