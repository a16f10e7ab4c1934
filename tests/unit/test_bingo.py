"""
Unit tests for bingo line detection and center squares.

Tests cover:
- Rows, columns and diagonals on every board size
- Full board detection
- Display messages
- Center square helpers
"""

import pytest

from boardsync.domain.bingo import (
    center_display_text,
    center_square_index,
    detect_bingo_lines,
    format_bingo_message,
    highlighted_squares,
    is_center_auto_completed,
    line_indices,
)


def grid_with(size, *indices):
    grid = [False] * (size * size)
    for i in indices:
        grid[i] = True
    return grid


class TestDetectBingoLines:
    """Tests for detect_bingo_lines."""

    def test_empty_board_has_no_lines(self):
        result = detect_bingo_lines(grid_with(3), 3)
        assert result.completed_lines == ()
        assert not result.full_board
        assert result.total_completed == 0
        assert result.total_squares == 9

    def test_first_row(self):
        result = detect_bingo_lines(grid_with(3, 0, 1, 2), 3)
        assert result.completed_lines == ("row_0",)
        assert result.lines_completed == 1
        assert not result.full_board

    def test_column_and_diagonals_on_4x4(self):
        col = [1, 5, 9, 13]
        main = [0, 5, 10, 15]
        anti = [3, 6, 9, 12]
        result = detect_bingo_lines(grid_with(4, *col, *main, *anti), 4)
        assert result.completed_lines == ("col_1", "diag_main", "diag_anti")

    def test_full_board(self):
        result = detect_bingo_lines([True] * 25, 5)
        assert result.full_board
        assert result.lines_completed == 12
        assert result.total_completed == 25

    @pytest.mark.parametrize("size,count", [(3, 8), (4, 10), (5, 12)])
    def test_line_count_per_size(self, size, count):
        assert len(line_indices(size)) == count

    def test_unsupported_size_raises(self):
        with pytest.raises(ValueError):
            detect_bingo_lines([True] * 4, 2)

    def test_wrong_grid_length_raises(self):
        with pytest.raises(ValueError):
            detect_bingo_lines([True] * 8, 3)


class TestMessages:
    """Tests for display helpers."""

    def test_no_lines_no_message(self):
        assert format_bingo_message(detect_bingo_lines(grid_with(3, 0), 3)) is None

    def test_lines_listed(self):
        result = detect_bingo_lines(grid_with(3, 0, 1, 2, 3, 6), 3)
        assert format_bingo_message(result) == "Bingo! (row_0, col_0)"

    def test_full_board_message(self):
        assert format_bingo_message(detect_bingo_lines([True] * 9, 3)) == "GREENLOG!"

    def test_highlighted_squares(self):
        assert highlighted_squares(["row_0", "col_0"], 3) == {0, 1, 2, 3, 6}


class TestCenterSquare:
    """Tests for center square helpers."""

    def test_center_index(self):
        assert center_square_index(3) == 4
        assert center_square_index(5) == 12
        assert center_square_index(4) == -1

    def test_auto_completed_types(self):
        assert is_center_auto_completed("free")
        assert is_center_auto_completed("custom_free")
        assert not is_center_auto_completed("chosen")
        assert not is_center_auto_completed(None)

    def test_display_text(self):
        assert center_display_text("free") == "FREE SPACE"
        assert center_display_text("custom_free", "Coffee") == "Coffee"
        assert center_display_text("none") == ""
