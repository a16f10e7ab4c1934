"""
Unit tests for composite task evaluation.

Tests cover:
- AND / OR / THRESHOLD semantics, including empty operators
- Threshold clamping
- Nested operators and child composites
- Node construction from stored rows
- Malformed trees
"""

import pytest

from boardsync.domain.evaluator import (
    LeafNode,
    Operator,
    OperatorNode,
    child_composite_ids,
    clamp_threshold,
    evaluate_composite_tree,
    leaf_task_ids,
    nodes_from_entities,
)
from boardsync.store.records import EntityType, new_entity


def leaves(parent, *task_ids):
    return [LeafNode(id=f"leaf-{t}", parent_id=parent, index=i, task_id=t) for i, t in enumerate(task_ids)]


class TestOperators:
    """Tests for operator semantics."""

    def test_and_requires_all_children(self):
        nodes = [OperatorNode("root", None, 0, Operator.AND), *leaves("root", "t1", "t2")]
        assert evaluate_composite_tree(nodes, "root", {"t1": True, "t2": True})
        assert not evaluate_composite_tree(nodes, "root", {"t1": True})

    def test_or_requires_any_child(self):
        nodes = [OperatorNode("root", None, 0, Operator.OR), *leaves("root", "t1", "t2")]
        assert evaluate_composite_tree(nodes, "root", {"t2": True})
        assert not evaluate_composite_tree(nodes, "root", {})

    def test_empty_and_is_true(self):
        assert evaluate_composite_tree([OperatorNode("root", None, 0, Operator.AND)], "root", {})

    def test_empty_or_is_false(self):
        assert not evaluate_composite_tree([OperatorNode("root", None, 0, Operator.OR)], "root", {})

    def test_empty_threshold_is_false(self):
        nodes = [OperatorNode("root", None, 0, Operator.THRESHOLD, threshold=1)]
        assert not evaluate_composite_tree(nodes, "root", {})

    def test_two_of_three(self):
        nodes = [
            OperatorNode("root", None, 0, Operator.THRESHOLD, threshold=2),
            *leaves("root", "t1", "t2", "t3"),
        ]
        assert not evaluate_composite_tree(nodes, "root", {"t1": True})
        assert evaluate_composite_tree(nodes, "root", {"t1": True, "t3": True})

    def test_threshold_above_child_count_is_clamped(self):
        nodes = [
            OperatorNode("root", None, 0, Operator.THRESHOLD, threshold=5),
            *leaves("root", "t1", "t2"),
        ]
        assert evaluate_composite_tree(nodes, "root", {"t1": True, "t2": True})

    def test_nested_operators(self):
        nodes = [
            OperatorNode("root", None, 0, Operator.AND),
            LeafNode("l1", "root", 0, task_id="t1"),
            OperatorNode("or", "root", 1, Operator.OR),
            *leaves("or", "t2", "t3"),
        ]
        assert evaluate_composite_tree(nodes, "root", {"t1": True, "t3": True})
        assert not evaluate_composite_tree(nodes, "root", {"t2": True, "t3": True})

    def test_child_composite_uses_given_completion(self):
        nodes = [
            OperatorNode("root", None, 0, Operator.AND),
            LeafNode("l1", "root", 0, composite_id="other"),
        ]
        assert evaluate_composite_tree(nodes, "root", {}, {"other": True})
        assert not evaluate_composite_tree(nodes, "root", {}, {"other": False})
        assert not evaluate_composite_tree(nodes, "root", {})

    def test_m_of_n_alias(self):
        assert Operator.parse("m_of_n") is Operator.THRESHOLD
        assert Operator.parse("and") is Operator.AND


class TestClampThreshold:
    """Tests for clamp_threshold."""

    @pytest.mark.parametrize(
        "threshold,count,expected",
        [(2, 3, 2), (5, 3, 3), (0, 3, 1), (-4, 2, 1), (None, 4, 4), (3, 0, 1)],
    )
    def test_clamp(self, threshold, count, expected):
        assert clamp_threshold(threshold, count) == expected


class TestMalformedTrees:
    """Tests for invalid trees."""

    def test_unknown_root_raises(self):
        with pytest.raises(ValueError):
            evaluate_composite_tree([], "missing", {})

    def test_cycle_raises(self):
        nodes = [
            OperatorNode("a", "b", 0, Operator.AND),
            OperatorNode("b", "a", 0, Operator.AND),
        ]
        with pytest.raises(ValueError):
            evaluate_composite_tree(nodes, "a", {})

    def test_leaf_needs_exactly_one_reference(self):
        with pytest.raises(ValueError):
            LeafNode("l", None, 0)
        with pytest.raises(ValueError):
            LeafNode("l", None, 0, task_id="t", composite_id="c")


class TestNodesFromEntities:
    """Tests for building evaluator nodes from stored rows."""

    def test_builds_operators_and_leaves_skipping_deleted(self):
        root = new_entity(
            EntityType.COMPOSITE_NODE,
            "me",
            {"composite_task_id": "c", "node_type": "operator", "operator_type": "OR"},
            entity_id="root",
        )
        leaf = new_entity(
            EntityType.COMPOSITE_NODE,
            "me",
            {"composite_task_id": "c", "parent_node_id": "root", "task_id": "t1"},
            entity_id="leaf",
        )
        gone = new_entity(
            EntityType.COMPOSITE_NODE,
            "me",
            {"composite_task_id": "c", "parent_node_id": "root", "child_composite_task_id": "x"},
            entity_id="gone",
        ).clone(is_deleted=True)

        nodes = nodes_from_entities([root, leaf, gone])

        assert [n.id for n in nodes] == ["root", "leaf"]
        assert isinstance(nodes[0], OperatorNode)
        assert nodes[0].operator is Operator.OR
        assert leaf_task_ids(nodes) == {"t1"}
        assert child_composite_ids(nodes) == set()
