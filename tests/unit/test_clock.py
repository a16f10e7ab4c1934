"""
Unit tests for the version clock.

Tests cover:
- Version validity
- Total order (version, updated_at, id, content)
- Winner selection
"""

import pytest

from boardsync.store.records import Entity, EntityType
from boardsync.sync.clock import compare, is_valid_version, newer, next_version


def make(version=1, updated_at=1000, entity_id="a", data=None):
    return Entity(
        entity_type=EntityType.TASK,
        id=entity_id,
        owner_id="me",
        version=version,
        updated_at=updated_at,
        data=data or {"title": "x"},
    )


class TestVersionValidity:
    """Tests for is_valid_version and next_version."""

    @pytest.mark.parametrize("version", [1, 2, 10**9])
    def test_positive_ints_are_valid(self, version):
        assert is_valid_version(version)

    @pytest.mark.parametrize("version", [0, -1, None, "3", 2.0, True])
    def test_other_values_are_invalid(self, version):
        assert not is_valid_version(version)

    def test_next_version_increments(self):
        assert next_version(1) == 2
        assert next_version(41) == 42


class TestCompare:
    """Tests for the total write order."""

    def test_higher_version_wins(self):
        assert compare(make(version=3, updated_at=1), make(version=2, updated_at=9999)) == 1

    def test_equal_version_later_timestamp_wins(self):
        assert compare(make(updated_at=1000), make(updated_at=2000)) == -1

    def test_equal_stamps_larger_id_wins(self):
        assert compare(make(entity_id="b"), make(entity_id="a")) == 1

    def test_equal_stamps_content_breaks_tie(self):
        a = make(data={"title": "apple"})
        b = make(data={"title": "banana"})
        assert compare(a, b) == -compare(b, a)
        assert compare(a, b) != 0

    def test_identical_rows_compare_equal(self):
        assert compare(make(), make()) == 0

    def test_newer_returns_winner(self):
        old, new = make(version=1), make(version=2)
        assert newer(old, new) is new
        assert newer(new, old) is new
