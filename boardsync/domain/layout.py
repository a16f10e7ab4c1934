"""
Board layout: shuffling and grid placement of tasks.
"""

from __future__ import annotations

import random
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TypeVar

from .bingo import BOARD_SIZES, center_square_index

T = TypeVar("T")


@dataclass(frozen=True)
class Slot:
    """One square of a planned board."""

    row: int
    col: int
    ref: str | None
    is_center: bool = False


def fisher_yates_shuffle(items: Sequence[T], rng: random.Random | None = None) -> list[T]:
    """Unbiased shuffle returning a new list (the input is not mutated)."""
    rng = rng or random.Random()
    result = list(items)
    for i in range(len(result) - 1, 0, -1):
        j = rng.randint(0, i)
        result[i], result[j] = result[j], result[i]
    return result


def plan_layout(
    refs: Sequence[str],
    size: int,
    center_square_type: str = "none",
    center_ref: str | None = None,
    randomize: bool = False,
    rng: random.Random | None = None,
) -> list[Slot]:
    """Assign task references to grid squares.

    Free centers (free, custom_free) get no reference. A chosen center
    takes ``center_ref``. The other squares are filled in order (or
    shuffled) from ``refs``.

    Args:
        refs: Task or composite ids for the non-center squares
        size: Board size (3, 4 or 5)
        center_square_type: free, custom_free, chosen or none
        center_ref: Task id for a chosen center
        randomize: Shuffle ``refs`` first
        rng: Random source for the shuffle

    Returns:
        One Slot per square in row-major order

    Raises:
        ValueError: If the board size is unsupported, the number of refs
            does not fit, or a chosen center has no reference
    """
    if size not in BOARD_SIZES:
        raise ValueError(f"Unsupported board size: {size}")

    center = center_square_index(size)
    has_special_center = center >= 0 and center_square_type != "none"
    if center_square_type == "chosen" and has_special_center and not center_ref:
        raise ValueError("A chosen center square requires a task")

    expected = size * size - (1 if has_special_center else 0)
    if len(refs) != expected:
        raise ValueError(f"Board of size {size} needs {expected} tasks, got {len(refs)}")

    ordered = fisher_yates_shuffle(refs, rng) if randomize else list(refs)
    slots: list[Slot] = []
    remaining = iter(ordered)
    for index in range(size * size):
        row, col = divmod(index, size)
        if has_special_center and index == center:
            ref = center_ref if center_square_type == "chosen" else None
            slots.append(Slot(row=row, col=col, ref=ref, is_center=True))
        else:
            slots.append(Slot(row=row, col=col, ref=next(remaining), is_center=index == center))
    return slots


def generate_counter_task_title(
    action: str,
    target: float,
    unit: str,
    provided_title: str | None = None,
) -> str:
    """Title for a counting task: the provided title, or "<action> <n> <unit>"."""
    if provided_title and provided_title.strip():
        return provided_title.strip()
    return f"{action.strip()} {int(target // 1)} {unit.strip()}"
