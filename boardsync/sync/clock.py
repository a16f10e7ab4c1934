"""
Version clock: per-entity version counters and the total write order.

Ordering rule for two versions of the same entity:
    1. higher version wins
    2. equal version: later updated_at wins
    3. equal timestamps: lexicographically larger id wins
    4. still equal (same entity, same stamps): larger canonical JSON of
       the row content wins, so the order stays total and reproducible

Known limitation: updated_at is wall-clock time from the writing device.
Devices with skewed clocks can order concurrent equal-version writes
"wrong". This is accepted and not corrected here.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..store.records import Entity


def next_version(current: int) -> int:
    """Version to assign on the next state-changing local write."""
    return current + 1


def is_valid_version(version: Any) -> bool:
    """Whether a version can be ordered (positive int, not bool)."""
    return isinstance(version, int) and not isinstance(version, bool) and version >= 1


def order_key(entity: Entity) -> tuple[int, int, str, str]:
    """Sort key implementing the total write order."""
    content = json.dumps(
        {"deleted": entity.is_deleted, "owner": entity.owner_id, "data": entity.data},
        sort_keys=True,
        separators=(",", ":"),
    )
    return (entity.version, entity.updated_at, entity.id, content)


def compare(a: Entity, b: Entity) -> int:
    """Compare two versions of an entity.

    Returns:
        1 if ``a`` wins, -1 if ``b`` wins, 0 if they are indistinguishable
    """
    ka, kb = order_key(a), order_key(b)
    if ka > kb:
        return 1
    if ka < kb:
        return -1
    return 0


def newer(a: Entity, b: Entity) -> Entity:
    """Return the winner of ``a`` and ``b`` (``a`` on a full tie)."""
    return b if compare(a, b) < 0 else a
