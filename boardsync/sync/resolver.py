"""
Conflict resolution between a local row and an incoming remote row.

Policy per entity type:
    - LWW: the higher row in the version clock order wins wholesale
    - ADDITIVE: shared counters merge per-device totals (max per device),
      so concurrent increments from different devices all survive
    - RECOMPUTE: derived fields of the remote side are discarded and the
      local ones kept; the recomputers rebuild them after resolution

Invariants:
    - resolve(a, b) and resolve(b, a) pick the same winner
    - resolve(x, resolve(x, y).winner) returns the same winner again
    - A side with a malformed version loses to a valid one; when both are
      malformed the rest of the write order decides. The anomaly is logged
      and attached to the resolution, never raised
    - Composite trees are decided at the composite_task level and the
      winning side's node set is adopted as a whole

How to change safely:
    - A new entity type needs a POLICIES entry
    - Never make a policy depend on which side is "local"
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum

from ..errors import ConflictResolutionAnomaly
from ..store.records import DERIVED_FIELDS, Entity, EntityType
from .clock import compare, is_valid_version, order_key

logger = logging.getLogger(__name__)


class Policy(Enum):
    LWW = "lww"
    ADDITIVE = "additive"


POLICIES: dict[EntityType, Policy] = {
    EntityType.BOARD: Policy.LWW,
    EntityType.TASK: Policy.LWW,
    EntityType.BOARD_TASK: Policy.LWW,
    EntityType.COMPOSITE_TASK: Policy.LWW,
    EntityType.COMPOSITE_NODE: Policy.LWW,
    EntityType.PROGRESS_COUNTER: Policy.ADDITIVE,
}


class Source(Enum):
    """Where the winning row came from."""

    LOCAL = "local"
    REMOTE = "remote"
    MERGED = "merged"


@dataclass
class Resolution:
    """Outcome of resolving one entity.

    Attributes:
        winner: The row to keep
        source: LOCAL (keep, push if needed), REMOTE (store as-is) or
            MERGED (new row, store and push)
        anomaly: Set when one side had an unorderable version
        derived_discarded: Remote derived fields that were dropped
    """

    winner: Entity
    source: Source
    anomaly: ConflictResolutionAnomaly | None = None
    derived_discarded: list[str] = field(default_factory=list)


class ConflictResolver:
    """Deterministic per-type conflict resolution.

    Example:
        >>> resolver = ConflictResolver(additive_merge=True)
        >>> resolution = resolver.resolve(local, remote)
        >>> resolution.winner.version
        4
    """

    def __init__(self, additive_merge: bool = True) -> None:
        self.additive_merge = additive_merge
        if not additive_merge:
            logger.warning(
                "Additive merge disabled: concurrent counter increments from "
                "different devices resolve last-writer-wins and can be lost"
            )

    def resolve(self, local: Entity, remote: Entity) -> Resolution:
        """Resolve two versions of the same entity.

        Args:
            local: Row currently in the store
            remote: Row received from the remote

        Returns:
            Resolution naming the winner
        """
        anomalies = self._check_versions(local, remote)
        if anomalies:
            if len(anomalies) == 2:
                local_wins = _fallback_key(local) >= _fallback_key(remote)
            else:
                local_wins = anomalies[0].side == "remote"
            winner = local if local_wins else remote
            source = Source.LOCAL if local_wins else Source.REMOTE
            return Resolution(winner=winner.clone(), source=source, anomaly=anomalies[0])

        if compare(local, remote) == 0:
            return Resolution(winner=local.clone(), source=Source.LOCAL)

        policy = POLICIES[local.entity_type]
        if policy is Policy.ADDITIVE and self.additive_merge:
            return self._merge_additive(local, remote)
        return self._last_writer_wins(local, remote)

    def resolve_tree(self, local_task: Entity | None, remote_task: Entity) -> Source:
        """Decide which side's composite tree to keep.

        The composite_task row carries tree_revision and is bumped on every
        node edit, so ordering the task rows orders the whole trees.

        Returns:
            LOCAL or REMOTE
        """
        if local_task is None:
            return Source.REMOTE
        resolution = self.resolve(local_task, remote_task)
        return Source.REMOTE if resolution.source is Source.REMOTE else Source.LOCAL

    def _last_writer_wins(self, local: Entity, remote: Entity) -> Resolution:
        if compare(local, remote) > 0:
            return Resolution(winner=local.clone(), source=Source.LOCAL)

        winner = remote.clone()
        discarded = []
        for name in DERIVED_FIELDS[remote.entity_type]:
            if name in local.data and winner.data.get(name) != local.data[name]:
                discarded.append(name)
            if name in local.data:
                winner.data[name] = copy.deepcopy(local.data[name])
        return Resolution(winner=winner, source=Source.REMOTE, derived_discarded=sorted(discarded))

    def _merge_additive(self, local: Entity, remote: Entity) -> Resolution:
        """Merge per-device counter totals (max per device)."""
        base = local if compare(local, remote) > 0 else remote
        merged_data = copy.deepcopy(base.data)
        for name in ("increments", "decrements"):
            totals: dict[str, float] = {}
            for side in (local, remote):
                for device, value in (side.data.get(name) or {}).items():
                    totals[device] = max(totals.get(device, 0), value)
            merged_data[name] = totals
        merged_data["current_value"] = sum(merged_data["increments"].values()) - sum(
            merged_data["decrements"].values()
        )

        if base.same_content(base.clone(data=merged_data)):
            source = Source.LOCAL if base is local else Source.REMOTE
            return Resolution(winner=base.clone(), source=source)

        merged = base.clone(
            data=merged_data,
            version=max(local.version, remote.version) + 1,
            updated_at=max(local.updated_at, remote.updated_at),
        )
        logger.debug(
            "Merged counter totals",
            extra={"entity_id": local.id, "version": merged.version},
        )
        return Resolution(winner=merged, source=Source.MERGED)

    def _check_versions(self, local: Entity, remote: Entity) -> list[ConflictResolutionAnomaly]:
        anomalies = []
        for side, entity in (("remote", remote), ("local", local)):
            if not is_valid_version(entity.version):
                anomalies.append(
                    ConflictResolutionAnomaly(entity.entity_type.value, entity.id, side, entity.version)
                )
                logger.warning(
                    "Conflict resolution anomaly",
                    extra={
                        "entity_type": entity.entity_type.value,
                        "entity_id": entity.id,
                        "side": side,
                        "version": repr(entity.version),
                    },
                )
        return anomalies


def _fallback_key(entity: Entity) -> tuple[tuple[int, int, str, str], str]:
    """Write order for a row whose version cannot be ordered."""
    return order_key(entity.clone(version=0)), repr(entity.version)
