"""
Bingo line detection on an N x N completion grid.

The grid is a flat, row-major list of booleans (index = row * size + col).
Line ids: ``row_i``, ``col_i``, ``diag_main`` (top-left to bottom-right)
and ``diag_anti`` (top-right to bottom-left).
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

BOARD_SIZES = (3, 4, 5)

AUTO_COMPLETED_CENTER_TYPES = frozenset({"free", "custom_free"})


@dataclass(frozen=True)
class BingoResult:
    """Outcome of line detection.

    Attributes:
        completed_lines: Completed line ids (rows, then columns, then diagonals)
        full_board: Every square is complete
        total_completed: Number of completed squares
        total_squares: size * size
    """

    completed_lines: tuple[str, ...]
    full_board: bool
    total_completed: int
    total_squares: int

    @property
    def lines_completed(self) -> int:
        return len(self.completed_lines)


def line_indices(size: int) -> list[tuple[str, list[int]]]:
    """All lines of a board as (line id, square indices)."""
    lines = []
    for row in range(size):
        lines.append((f"row_{row}", [row * size + col for col in range(size)]))
    for col in range(size):
        lines.append((f"col_{col}", [row * size + col for row in range(size)]))
    lines.append(("diag_main", [i * size + i for i in range(size)]))
    lines.append(("diag_anti", [i * size + (size - 1 - i) for i in range(size)]))
    return lines


def detect_bingo_lines(grid: Sequence[bool], size: int) -> BingoResult:
    """Find every completed line and whether the board is full.

    Args:
        grid: Flat row-major completion states
        size: Board size (3, 4 or 5)

    Returns:
        BingoResult

    Raises:
        ValueError: If size is unsupported or grid length is not size * size
    """
    if size not in BOARD_SIZES:
        raise ValueError(f"Unsupported board size: {size}")
    total_squares = size * size
    if len(grid) != total_squares:
        raise ValueError(
            f"Grid length ({len(grid)}) does not match size * size ({total_squares})"
        )

    completed = tuple(
        line_id for line_id, indices in line_indices(size) if all(grid[i] for i in indices)
    )
    total_completed = sum(1 for square in grid if square)
    return BingoResult(
        completed_lines=completed,
        full_board=total_completed == total_squares,
        total_completed=total_completed,
        total_squares=total_squares,
    )


def highlighted_squares(completed_lines: Iterable[str], size: int) -> set[int]:
    """Square indices that belong to any of the given lines."""
    wanted = set(completed_lines)
    highlighted: set[int] = set()
    for line_id, indices in line_indices(size):
        if line_id in wanted:
            highlighted.update(indices)
    return highlighted


def format_bingo_message(result: BingoResult) -> str | None:
    """Display message for a detection result, or None without lines."""
    if result.full_board:
        return "GREENLOG!"
    if not result.completed_lines:
        return None
    return f"Bingo! ({', '.join(result.completed_lines)})"


def center_square_index(size: int) -> int:
    """Flat index of the center square, or -1 for even sizes."""
    if size % 2 == 0:
        return -1
    return (size * size) // 2


def is_center_auto_completed(center_square_type: str | None) -> bool:
    """FREE and CUSTOM_FREE centers count as complete and cannot be unticked."""
    return (center_square_type or "none") in AUTO_COMPLETED_CENTER_TYPES


def center_display_text(center_square_type: str | None, custom_name: str | None = None) -> str:
    if center_square_type == "free":
        return "FREE SPACE"
    if center_square_type == "custom_free":
        return custom_name or "FREE SPACE"
    return ""
