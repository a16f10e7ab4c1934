"""
Unit tests for the conflict resolver.

Tests cover:
- Last-writer-wins ordering and tie-breaks
- Commutativity and idempotence
- Derived field handling
- Additive counter merge
- Malformed versions
- Composite tree decisions
"""

import pytest

from boardsync.errors import ConflictResolutionAnomaly
from boardsync.store.records import DERIVED_FIELDS, Entity, EntityType
from boardsync.sync.resolver import ConflictResolver, Source


def board(version, updated_at, **data):
    base = {"name": "Board", "completed_tasks": 0, "lines_completed": 0}
    base.update(data)
    return Entity(EntityType.BOARD, "board-1", "me", version, updated_at, base)


def core(entity):
    """Row data without the fields the recomputers own."""
    return {k: v for k, v in entity.data.items() if k not in DERIVED_FIELDS[entity.entity_type]}


def counter(version, updated_at, increments=None, decrements=None):
    increments = increments or {}
    decrements = decrements or {}
    return Entity(
        EntityType.PROGRESS_COUNTER,
        "counter-1",
        "me",
        version,
        updated_at,
        {
            "name": "Water",
            "unit": "glasses",
            "target_value": 8,
            "increments": increments,
            "decrements": decrements,
            "current_value": sum(increments.values()) - sum(decrements.values()),
        },
    )


@pytest.fixture
def resolver():
    return ConflictResolver(additive_merge=True)


class TestLastWriterWins:
    """Tests for LWW entity types."""

    def test_higher_version_wins(self, resolver):
        local, remote = board(2, 100, name="Local"), board(3, 50, name="Remote")
        resolution = resolver.resolve(local, remote)
        assert resolution.source is Source.REMOTE
        assert resolution.winner.data["name"] == "Remote"

    def test_tie_broken_by_updated_at(self, resolver):
        local, remote = board(2, 200, name="Local"), board(2, 100, name="Remote")
        resolution = resolver.resolve(local, remote)
        assert resolution.source is Source.LOCAL
        assert resolution.winner.data["name"] == "Local"

    def test_identical_rows_keep_local(self, resolver):
        row = board(4, 100)
        resolution = resolver.resolve(row, row.clone())
        assert resolution.source is Source.LOCAL
        assert resolution.anomaly is None

    @pytest.mark.parametrize(
        "a, b",
        [
            (board(2, 100, name="A"), board(2, 100, name="B")),
            (board(2, 100, name="A", completed_tasks=4), board(3, 50, name="B", completed_tasks=1)),
            (board(None, 100, name="A"), board("7", 100, name="B")),
            (board(None, 300, name="A"), board(0, 100, name="B")),
            (board("x", 100, name="A"), board(2, 1, name="B")),
        ],
    )
    def test_commutative(self, resolver, a, b):
        ab = resolver.resolve(a, b).winner
        ba = resolver.resolve(b, a).winner
        assert core(ab) == core(ba)
        assert ab.version == ba.version

    def test_idempotent(self, resolver):
        local, remote = board(1, 100, name="L"), board(2, 100, name="R")
        winner = resolver.resolve(local, remote).winner
        again = resolver.resolve(local, winner).winner
        assert again.data == winner.data
        assert again.version == winner.version

    def test_remote_derived_fields_discarded(self, resolver):
        local = board(1, 100, completed_tasks=3, lines_completed=1)
        remote = board(2, 100, name="Renamed", completed_tasks=9, lines_completed=8)
        resolution = resolver.resolve(local, remote)
        assert resolution.source is Source.REMOTE
        assert resolution.winner.data["name"] == "Renamed"
        assert resolution.winner.data["completed_tasks"] == 3
        assert resolution.winner.data["lines_completed"] == 1
        assert resolution.derived_discarded == ["completed_tasks", "lines_completed"]


class TestMalformedVersions:
    """Tests for rows whose version cannot be ordered."""

    @pytest.mark.parametrize("bad", [None, 0, -3, "7", 1.5])
    def test_malformed_remote_loses(self, resolver, bad):
        local, remote = board(1, 100, name="L"), board(bad, 999, name="R")
        resolution = resolver.resolve(local, remote)
        assert resolution.source is Source.LOCAL
        assert isinstance(resolution.anomaly, ConflictResolutionAnomaly)
        assert resolution.anomaly.side == "remote"

    def test_malformed_local_loses(self, resolver):
        local, remote = board(None, 100, name="L"), board(1, 1, name="R")
        resolution = resolver.resolve(local, remote)
        assert resolution.source is Source.REMOTE
        assert resolution.anomaly.side == "local"

    def test_anomaly_is_never_raised(self, resolver):
        resolver.resolve(board("x", 1), board(None, 1))

    def test_both_malformed_ordered_by_timestamp(self, resolver):
        older, newer = board(None, 100, name="Old"), board("7", 200, name="New")
        for local, remote, source in ((older, newer, Source.REMOTE), (newer, older, Source.LOCAL)):
            resolution = resolver.resolve(local, remote)
            assert resolution.source is source
            assert resolution.winner.data["name"] == "New"
            assert resolution.anomaly is not None

    def test_both_malformed_same_stamps_pick_same_row(self, resolver):
        x, y = board(None, 100, name="X"), board("7", 100, name="Y")
        assert resolver.resolve(x, y).winner.data == resolver.resolve(y, x).winner.data
        assert resolver.resolve(x, y).winner.version == resolver.resolve(y, x).winner.version

    def test_malformed_loses_in_either_order(self, resolver):
        valid, broken = board(1, 1, name="Valid"), board(1.5, 999, name="Broken")
        assert resolver.resolve(valid, broken).winner.data["name"] == "Valid"
        assert resolver.resolve(broken, valid).winner.data["name"] == "Valid"


class TestAdditiveMerge:
    """Tests for progress counter merging."""

    def test_concurrent_increments_both_survive(self, resolver):
        local = counter(2, 100, increments={"phone": 3})
        remote = counter(2, 200, increments={"laptop": 2})
        resolution = resolver.resolve(local, remote)
        assert resolution.source is Source.MERGED
        assert resolution.winner.data["increments"] == {"phone": 3, "laptop": 2}
        assert resolution.winner.data["current_value"] == 5
        assert resolution.winner.version == 3

    def test_per_device_maximum(self, resolver):
        local = counter(5, 100, increments={"phone": 7}, decrements={"phone": 1})
        remote = counter(3, 100, increments={"phone": 4}, decrements={"phone": 2})
        winner = resolver.resolve(local, remote).winner
        assert winner.data["increments"] == {"phone": 7}
        assert winner.data["decrements"] == {"phone": 2}
        assert winner.data["current_value"] == 5

    def test_merge_is_commutative(self, resolver):
        a = counter(2, 100, increments={"phone": 3})
        b = counter(2, 200, increments={"laptop": 2})
        ab = resolver.resolve(a, b).winner
        ba = resolver.resolve(b, a).winner
        assert ab.data == ba.data
        assert ab.version == ba.version

    def test_merge_is_idempotent(self, resolver):
        local = counter(2, 100, increments={"phone": 3})
        remote = counter(2, 200, increments={"laptop": 2})
        merged = resolver.resolve(local, remote).winner
        again = resolver.resolve(merged, remote)
        assert again.source is Source.LOCAL
        assert again.winner.data == merged.data

    def test_dominated_side_returns_winner_unchanged(self, resolver):
        local = counter(1, 100, increments={"phone": 1})
        remote = counter(4, 100, increments={"phone": 5, "laptop": 1})
        resolution = resolver.resolve(local, remote)
        assert resolution.source is Source.REMOTE
        assert resolution.winner.version == 4

    def test_disabled_merge_uses_lww(self):
        resolver = ConflictResolver(additive_merge=False)
        local = counter(2, 100, increments={"phone": 3})
        remote = counter(2, 200, increments={"laptop": 2})
        resolution = resolver.resolve(local, remote)
        assert resolution.source is Source.REMOTE
        assert resolution.winner.data["increments"] == {"laptop": 2}


class TestResolveTree:
    """Tests for composite tree decisions."""

    def composite(self, version, updated_at, stamp):
        return Entity(
            EntityType.COMPOSITE_TASK,
            "comp-1",
            "me",
            version,
            updated_at,
            {"title": "Combo", "root_node_id": "n1", "tree_revision": version, "tree_stamp": stamp},
        )

    def test_missing_local_adopts_remote(self, resolver):
        assert resolver.resolve_tree(None, self.composite(1, 1, "s1")) is Source.REMOTE

    def test_newer_tree_wins(self, resolver):
        local, remote = self.composite(3, 100, "s-local"), self.composite(2, 900, "s-remote")
        assert resolver.resolve_tree(local, remote) is Source.LOCAL
        assert resolver.resolve_tree(remote, local) is Source.REMOTE
