"""
Durable outbound queue of local mutations awaiting push.

The queue lives in the device database (table ``sync_queue``) so that an
entry is written in the same transaction as the entity it describes.

Invariants:
    - At most one pending entry per entity (later writes coalesce onto it)
    - A coalesced pending create stays a create
    - Drain order is FIFO by seq; coalescing keeps the original seq
    - A child is never drained ahead of its parent's outstanding create
    - retry_count > max_retries moves an entry to dead_lettered
    - Dead-lettered entries are never drained again unless requeued

How to change safely:
    - Keep every status change inside store.transaction()
    - Backoff must stay monotonic in retry_count
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .entity_store import EntityStore, _joined
from .records import GROUPED_WITH, EntityType, OperationKind, QueueStatus, now_ms, parent_ids

logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    """A pending mutation.

    Attributes:
        seq: Queue position (FIFO key)
        entity_id: Entity the mutation applies to
        entity_type: Entity table
        operation: create, update or delete
        payload: Snapshot of the entity at enqueue time (Entity.to_dict())
        version: Entity version carried by the payload
        retry_count: Failed push attempts so far
        next_eligible_at: Earliest drain time (Unix ms)
        status: Lifecycle status
        last_error: Last push error message
        created_at: Enqueue time (Unix ms)
        updated_at: Last status change (Unix ms)
    """

    seq: int
    entity_id: str
    entity_type: EntityType
    operation: OperationKind
    payload: dict[str, Any]
    version: int
    retry_count: int = 0
    next_eligible_at: int = 0
    status: QueueStatus = QueueStatus.PENDING
    last_error: str | None = None
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Inspection format used by tooling and debug dumps."""
        return {
            "seq": self.seq,
            "entityId": self.entity_id,
            "entityType": self.entity_type.value,
            "operation": self.operation.value,
            "payloadSnapshot": self.payload,
            "version": self.version,
            "retryCount": self.retry_count,
            "nextEligibleAt": self.next_eligible_at,
            "status": self.status.value,
            "lastError": self.last_error,
        }


class OutboundQueue:
    """FIFO of local mutations with coalescing, backoff and dead-letter.

    Example:
        >>> queue = OutboundQueue(store, max_retries=10)
        >>> batch = queue.drain(50)
        >>> queue.mark_done(batch)
    """

    def __init__(
        self,
        store: EntityStore,
        max_retries: int = 10,
        backoff_base_ms: int = 1000,
        backoff_max_ms: int = 15 * 60 * 1000,
    ) -> None:
        self.store = store
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms

    def backoff_ms(self, retry_count: int) -> int:
        """Delay before the next attempt after ``retry_count`` failures."""
        if retry_count <= 0:
            return 0
        return min(self.backoff_base_ms * (2 ** (retry_count - 1)), self.backoff_max_ms)

    def enqueue(
        self,
        entity_type: EntityType,
        entity_id: str,
        operation: OperationKind,
        payload: dict[str, Any],
        version: int,
        conn: sqlite3.Connection | None = None,
    ) -> QueueEntry:
        """Append a mutation, coalescing onto a pending entry for the entity.

        Args:
            entity_type: Entity table
            entity_id: Entity identifier
            operation: Mutation kind
            payload: Entity snapshot
            version: Snapshot version
            conn: Optional connection of an open transaction

        Returns:
            The pending entry now carrying the mutation
        """
        ts = now_ms()
        with self.store.transaction() if conn is None else _joined(conn) as c:
            existing = self._pending_for(c, entity_id)
            if existing is not None:
                op = existing.operation if existing.operation == OperationKind.CREATE else operation
                c.execute(
                    """
                    UPDATE sync_queue
                    SET operation = ?, payload_json = ?, version = ?, updated_at = ?
                    WHERE seq = ?
                    """,
                    (op.value, json.dumps(payload), version, ts, existing.seq),
                )
                logger.debug(
                    "Coalesced queue entry",
                    extra={"seq": existing.seq, "entity_id": entity_id, "version": version},
                )
                return self._get(c, existing.seq)

            cursor = c.execute(
                """
                INSERT INTO sync_queue
                    (entity_id, entity_type, operation, payload_json, version,
                     retry_count, next_eligible_at, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 0, 0, ?, ?, ?)
                """,
                (
                    entity_id,
                    entity_type.value,
                    operation.value,
                    json.dumps(payload),
                    version,
                    QueueStatus.PENDING.value,
                    ts,
                    ts,
                ),
            )
            return self._get(c, cursor.lastrowid)

    def drain(self, batch_size: int, now: int | None = None) -> list[QueueEntry]:
        """Take the next batch of eligible entries and mark them in flight.

        An entry whose parent (see records.PARENT_FIELDS) still has an
        outstanding create is held back unless that create is earlier in
        the same batch. Grouped entries (records.GROUPED_WITH) travel with
        their owner's entry, even past batch_size, and are held back while
        the owner has an outstanding entry outside the batch.

        Args:
            batch_size: Maximum entries to return
            now: Eligibility time (Unix ms), defaults to the current time

        Returns:
            Entries in FIFO order
        """
        now = now_ms() if now is None else now
        with self.store.transaction() as c:
            rows = c.execute(
                """
                SELECT * FROM sync_queue
                WHERE status = ? AND next_eligible_at <= ?
                ORDER BY seq
                """,
                (QueueStatus.PENDING.value, now),
            ).fetchall()
            outstanding: dict[str, set[str]] = {}
            for entity_id, operation in c.execute(
                "SELECT entity_id, operation FROM sync_queue WHERE status IN (?, ?)",
                (QueueStatus.PENDING.value, QueueStatus.IN_FLIGHT.value),
            ):
                outstanding.setdefault(entity_id, set()).add(operation)
            outstanding_creates = {
                entity_id
                for entity_id, operations in outstanding.items()
                if OperationKind.CREATE.value in operations
            }

            entries = [self._row_to_entry(row) for row in rows]
            members: dict[str, list[QueueEntry]] = {}
            for entry in entries:
                grouping = GROUPED_WITH.get(entry.entity_type)
                if grouping:
                    owner = (entry.payload.get("data") or {}).get(grouping[0])
                    if owner:
                        members.setdefault(owner, []).append(entry)

            batch: list[QueueEntry] = []
            in_batch: set[str] = set()
            taken: set[int] = set()
            for entry in entries:
                if len(batch) >= batch_size:
                    break
                if entry.seq in taken:
                    continue

                group = [entry]
                grouping = GROUPED_WITH.get(entry.entity_type)
                if grouping:
                    owner = (entry.payload.get("data") or {}).get(grouping[0])
                    if owner in outstanding and owner not in in_batch:
                        continue
                else:
                    group.extend(m for m in members.get(entry.entity_id, []) if m.seq not in taken)

                group_ids = {member.entity_id for member in group}
                blocked = [
                    p
                    for member in group
                    for p in parent_ids(member.entity_type, member.payload.get("data") or {})
                    if p in outstanding_creates and p not in in_batch and p not in group_ids
                ]
                if blocked:
                    logger.debug(
                        "Holding back queue entry until parent is pushed",
                        extra={"seq": entry.seq, "entity_id": entry.entity_id, "parents": blocked},
                    )
                    continue

                batch.extend(group)
                in_batch.update(group_ids)
                taken.update(member.seq for member in group)

            ts = now_ms()
            for entry in batch:
                c.execute(
                    "UPDATE sync_queue SET status = ?, updated_at = ? WHERE seq = ?",
                    (QueueStatus.IN_FLIGHT.value, ts, entry.seq),
                )
                entry.status = QueueStatus.IN_FLIGHT
                entry.updated_at = ts

        return batch

    def mark_done(
        self,
        entries: QueueEntry | Iterable[QueueEntry],
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Mark entries as acknowledged by the remote."""
        ts = now_ms()
        with self.store.transaction() if conn is None else _joined(conn) as c:
            for entry in _as_list(entries):
                c.execute(
                    "UPDATE sync_queue SET status = ?, last_error = NULL, updated_at = ? WHERE seq = ?",
                    (QueueStatus.DONE.value, ts, entry.seq),
                )
                entry.status = QueueStatus.DONE

    def mark_failed(
        self,
        entries: QueueEntry | Iterable[QueueEntry],
        error: str,
        now: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Record a transient failure and schedule a retry with backoff.

        An entry whose retry_count exceeds max_retries is dead-lettered.
        """
        now = now_ms() if now is None else now
        with self.store.transaction() if conn is None else _joined(conn) as c:
            for entry in _as_list(entries):
                retry_count = entry.retry_count + 1
                if retry_count > self.max_retries:
                    self._dead_letter(c, entry, error, retry_count)
                    continue
                next_eligible_at = now + self.backoff_ms(retry_count)
                self._return_to_pending(c, entry, retry_count, next_eligible_at, error)
                logger.info(
                    "Queue entry failed, will retry",
                    extra={
                        "seq": entry.seq,
                        "entity_id": entry.entity_id,
                        "retry_count": retry_count,
                        "next_eligible_at": next_eligible_at,
                        "error": error,
                    },
                )

    def mark_dead_lettered(
        self,
        entries: QueueEntry | Iterable[QueueEntry],
        error: str,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Move entries to dead-letter after a permanent failure."""
        with self.store.transaction() if conn is None else _joined(conn) as c:
            for entry in _as_list(entries):
                self._dead_letter(c, entry, error, entry.retry_count)

    def release(
        self,
        entries: QueueEntry | Iterable[QueueEntry],
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Return in-flight entries to pending without a retry penalty."""
        with self.store.transaction() if conn is None else _joined(conn) as c:
            for entry in _as_list(entries):
                current = self._get(c, entry.seq)
                if current is None or current.status != QueueStatus.IN_FLIGHT:
                    continue
                self._return_to_pending(
                    c, current, current.retry_count, current.next_eligible_at, current.last_error
                )
                entry.status = QueueStatus.PENDING

    def recover_in_flight(self) -> int:
        """Release entries left in flight by a crash or shutdown.

        Returns:
            Number of entries released
        """
        with self.store.transaction() as c:
            rows = c.execute(
                "SELECT * FROM sync_queue WHERE status = ? ORDER BY seq",
                (QueueStatus.IN_FLIGHT.value,),
            ).fetchall()
            entries = [self._row_to_entry(row) for row in rows]
            self.release(entries, conn=c)

        if entries:
            logger.info("Recovered in-flight queue entries", extra={"count": len(entries)})
        return len(entries)

    def dead_letters(self) -> list[QueueEntry]:
        """Entries that need manual intervention."""
        return self._by_status(QueueStatus.DEAD_LETTERED)

    def pending(self) -> list[QueueEntry]:
        """Pending entries in FIFO order (eligible or not)."""
        return self._by_status(QueueStatus.PENDING)

    def requeue(self, seq: int) -> QueueEntry | None:
        """Give a dead-lettered entry a fresh set of retries.

        Returns:
            The pending entry, or None if ``seq`` is not dead-lettered
        """
        with self.store.transaction() as c:
            entry = self._get(c, seq)
            if entry is None or entry.status != QueueStatus.DEAD_LETTERED:
                return None
            self._return_to_pending(c, entry, 0, 0, None)
            result = self._pending_for(c, entry.entity_id)

        logger.info("Requeued dead-lettered entry", extra={"seq": seq, "entity_id": entry.entity_id})
        return result

    def pending_count(self) -> int:
        """Number of entries waiting to be pushed."""
        with self.store.reader(None) as c:
            row = c.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE status IN (?, ?)",
                (QueueStatus.PENDING.value, QueueStatus.IN_FLIGHT.value),
            ).fetchone()
            return row[0]

    def purge_done(self) -> int:
        """Delete acknowledged entries.

        Returns:
            Number of rows deleted
        """
        with self.store.transaction() as c:
            cursor = c.execute("DELETE FROM sync_queue WHERE status = ?", (QueueStatus.DONE.value,))
            return cursor.rowcount

    def get(self, seq: int) -> QueueEntry | None:
        """Get an entry by seq."""
        with self.store.reader(None) as c:
            return self._get(c, seq)

    def stats(self) -> dict[str, int]:
        """Entry counts per status."""
        counts = {status.value: 0 for status in QueueStatus}
        with self.store.reader(None) as c:
            for status, count in c.execute(
                "SELECT status, COUNT(*) FROM sync_queue GROUP BY status"
            ):
                counts[status] = count
        return counts

    def _return_to_pending(
        self,
        c: sqlite3.Connection,
        entry: QueueEntry,
        retry_count: int,
        next_eligible_at: int,
        error: str | None,
    ) -> None:
        """Put an entry back to pending, folding in any newer pending entry.

        A local write made while the entry was in flight created a second
        pending entry for the same entity. The older seq keeps its place
        and takes the newer payload so there is still one pending entry.
        """
        ts = now_ms()
        newer = self._pending_for(c, entry.entity_id)
        operation = entry.operation
        payload = entry.payload
        version = entry.version
        if newer is not None and newer.seq != entry.seq:
            if entry.operation != OperationKind.CREATE:
                operation = newer.operation
            payload = newer.payload
            version = newer.version
            c.execute("DELETE FROM sync_queue WHERE seq = ?", (newer.seq,))

        c.execute(
            """
            UPDATE sync_queue
            SET status = ?, operation = ?, payload_json = ?, version = ?,
                retry_count = ?, next_eligible_at = ?, last_error = ?, updated_at = ?
            WHERE seq = ?
            """,
            (
                QueueStatus.PENDING.value,
                operation.value,
                json.dumps(payload),
                version,
                retry_count,
                next_eligible_at,
                error,
                ts,
                entry.seq,
            ),
        )
        entry.status = QueueStatus.PENDING
        entry.retry_count = retry_count
        entry.next_eligible_at = next_eligible_at

    def _dead_letter(
        self, c: sqlite3.Connection, entry: QueueEntry, error: str, retry_count: int
    ) -> None:
        c.execute(
            """
            UPDATE sync_queue
            SET status = ?, retry_count = ?, last_error = ?, updated_at = ?
            WHERE seq = ?
            """,
            (QueueStatus.DEAD_LETTERED.value, retry_count, error, now_ms(), entry.seq),
        )
        entry.status = QueueStatus.DEAD_LETTERED
        entry.retry_count = retry_count
        entry.last_error = error
        logger.warning(
            "Queue entry dead-lettered",
            extra={
                "seq": entry.seq,
                "entity_id": entry.entity_id,
                "entity_type": entry.entity_type.value,
                "retry_count": retry_count,
                "error": error,
            },
        )

    def _pending_for(self, c: sqlite3.Connection, entity_id: str) -> QueueEntry | None:
        row = c.execute(
            "SELECT * FROM sync_queue WHERE entity_id = ? AND status = ? ORDER BY seq LIMIT 1",
            (entity_id, QueueStatus.PENDING.value),
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def _get(self, c: sqlite3.Connection, seq: int | None) -> QueueEntry | None:
        row = c.execute("SELECT * FROM sync_queue WHERE seq = ?", (seq,)).fetchone()
        return self._row_to_entry(row) if row else None

    def _by_status(self, status: QueueStatus) -> list[QueueEntry]:
        with self.store.reader(None) as c:
            rows = c.execute(
                "SELECT * FROM sync_queue WHERE status = ? ORDER BY seq", (status.value,)
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def _row_to_entry(self, row: sqlite3.Row) -> QueueEntry:
        return QueueEntry(
            seq=row["seq"],
            entity_id=row["entity_id"],
            entity_type=EntityType(row["entity_type"]),
            operation=OperationKind(row["operation"]),
            payload=json.loads(row["payload_json"]),
            version=row["version"],
            retry_count=row["retry_count"],
            next_eligible_at=row["next_eligible_at"],
            status=QueueStatus(row["status"]),
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _as_list(entries: QueueEntry | Iterable[QueueEntry]) -> list[QueueEntry]:
    if isinstance(entries, QueueEntry):
        return [entries]
    return list(entries)
