"""
Local SQLite entity store for boardsync.

This module manages the per-device SQLite database that stores:
- One table per entity type (boards, tasks, board_tasks, ...)
- The outbound sync queue (see outbound_queue.py)
- Key/value sync state such as the pull checkpoint

The store is the source of truth for every read. Nothing in it touches
the network.

Invariants:
    - One SQLite file per device
    - Single writer: a process lock plus BEGIN IMMEDIATE serializes writes
    - put() checks and increments version inside the write transaction
    - A no-op put (same content) never bumps version
    - Soft-deleted rows stay readable by id but are hidden from queries

How to change safely:
    - Schema migrations must be backward compatible
    - Use transaction() for every multi-row write
    - Never await while holding a transaction

Table schema (one per EntityType):
    - id TEXT PRIMARY KEY
    - owner_id TEXT
    - version INTEGER
    - updated_at INTEGER (Unix ms)
    - is_deleted INTEGER
    - deleted_at INTEGER (Unix ms)
    - last_synced_at INTEGER (Unix ms)
    - data_json TEXT
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import ValidationError
from ..sync.clock import next_version
from .records import Entity, EntityType, now_ms

logger = logging.getLogger(__name__)

TABLES: dict[EntityType, str] = {
    EntityType.BOARD: "boards",
    EntityType.TASK: "tasks",
    EntityType.BOARD_TASK: "board_tasks",
    EntityType.COMPOSITE_TASK: "composite_tasks",
    EntityType.COMPOSITE_NODE: "composite_nodes",
    EntityType.PROGRESS_COUNTER: "progress_counters",
}

CHECKPOINT_KEY = "pull_checkpoint"


class StoreNotInitializedError(Exception):
    """Device database does not exist yet."""

    pass


@dataclass
class PutResult:
    """Outcome of a put.

    Attributes:
        entity: The row as stored (or the unchanged existing row)
        changed: Whether anything was written
        created: Whether the row did not exist before
    """

    entity: Entity
    changed: bool
    created: bool = False


class EntityStore:
    """Per-device SQLite store for synced entities.

    Thread safety:
        Reads open a short-lived connection per call, or reuse the
        connection of the transaction open on the calling thread so that
        they see uncommitted writes. Writes are serialized by an RLock.

    Example:
        >>> store = EntityStore("/var/lib/boardsync", device_id="phone")
        >>> store.initialize()
        >>> with store.transaction() as conn:
        ...     store.put(task, conn=conn)
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        device_id: str = "local",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -16000,
    ) -> None:
        """Initialize the entity store.

        Args:
            data_dir: Directory for the SQLite database file
            device_id: Device identifier (names the database file)
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.device_id = device_id
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._write_lock = threading.RLock()
        self._local = threading.local()

    def _get_db_path(self) -> Path:
        """Get database file path for this device."""
        # Sanitize device_id to prevent path traversal
        safe_id = "".join(c for c in self.device_id if c.isalnum() or c in "-_")
        return self.data_dir / f"device_{safe_id}.db"

    @contextmanager
    def _get_connection(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Args:
            create: Whether to create the database if it does not exist

        Yields:
            SQLite connection

        Raises:
            StoreNotInitializedError: If the database is missing and create=False
        """
        db_path = self._get_db_path()

        if not create and not db_path.exists():
            raise StoreNotInitializedError(f"Device database not found: {self.device_id}")

        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def reader(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        """Use the given connection, the open transaction, or a fresh one."""
        if conn is not None:
            yield conn
            return
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return
        with self._get_connection() as fresh:
            yield fresh

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        statements = [
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            )
            """
        ]
        for table in TABLES.values():
            statements.append(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    deleted_at INTEGER,
                    last_synced_at INTEGER,
                    data_json TEXT NOT NULL DEFAULT '{{}}'
                )
            """)
            statements.append(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_active ON {table}(is_deleted, updated_at)"
            )

        statements.append("""
            CREATE TABLE IF NOT EXISTS sync_queue (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                operation TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                version INTEGER NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                next_eligible_at INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                last_error TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)
        statements.append(
            "CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status, next_eligible_at, seq)"
        )
        statements.append(
            "CREATE INDEX IF NOT EXISTS idx_sync_queue_entity ON sync_queue(entity_id, status)"
        )
        statements.append("""
            CREATE TABLE IF NOT EXISTS sync_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        for statement in statements:
            conn.execute(statement)
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (self.SCHEMA_VERSION, now_ms()),
        )

    def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self._write_lock:
            with self._get_connection(create=True) as conn:
                self._create_schema(conn)
        logger.info("Initialized device database", extra={"device_id": self.device_id})

    def exists(self) -> bool:
        """Check if the device database exists."""
        return self._get_db_path().exists()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one atomic write.

        Nested use on the same thread joins the outer transaction.

        Yields:
            Connection bound to the open transaction
        """
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return

        with self._write_lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                self._local.conn = conn
                try:
                    yield conn
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                finally:
                    self._local.conn = None

    # Entities

    def get(
        self,
        entity_type: EntityType,
        entity_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> Entity | None:
        """Get an entity by id, including soft-deleted rows.

        Args:
            entity_type: Entity table
            entity_id: Entity identifier
            conn: Optional connection of an open transaction

        Returns:
            Entity or None if not found
        """
        with self.reader(conn) as c:
            cursor = c.execute(
                f"SELECT * FROM {TABLES[entity_type]} WHERE id = ?",
                (entity_id,),
            )
            row = cursor.fetchone()
            return self._row_to_entity(entity_type, row) if row else None

    def put(
        self,
        entity: Entity,
        bump: bool = True,
        conn: sqlite3.Connection | None = None,
    ) -> PutResult:
        """Upsert an entity.

        With ``bump=True`` (local writes) the version is derived from the
        stored row: 1 for a new row, stored + 1 for a changed row, and
        unchanged when the content is identical. With ``bump=False``
        (remote data) the given version and timestamp are stored verbatim.

        Args:
            entity: Entity to write
            bump: Assign version/timestamp locally
            conn: Optional connection of an open transaction

        Returns:
            PutResult with the stored entity

        Raises:
            ValidationError: If the row violates a constraint
        """
        with self.transaction() if conn is None else _joined(conn) as c:
            existing = self.get(entity.entity_type, entity.id, conn=c)
            ts = now_ms()
            stored = entity.clone()

            if bump:
                if existing is not None and existing.same_content(entity):
                    return PutResult(entity=existing, changed=False)
                stored.version = next_version(existing.version) if existing else 1
                stored.updated_at = max(ts, existing.updated_at + 1) if existing else ts
                stored.last_synced_at = existing.last_synced_at if existing else None
            else:
                if (
                    existing is not None
                    and existing.version == entity.version
                    and existing.updated_at == entity.updated_at
                    and existing.same_content(entity)
                ):
                    return PutResult(entity=existing, changed=False)

            if stored.is_deleted and stored.deleted_at is None:
                stored.deleted_at = stored.updated_at or ts
            if not stored.is_deleted:
                stored.deleted_at = None

            try:
                c.execute(
                    f"""
                    INSERT INTO {TABLES[stored.entity_type]}
                        (id, owner_id, version, updated_at, is_deleted, deleted_at,
                         last_synced_at, data_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        owner_id = excluded.owner_id,
                        version = excluded.version,
                        updated_at = excluded.updated_at,
                        is_deleted = excluded.is_deleted,
                        deleted_at = excluded.deleted_at,
                        last_synced_at = excluded.last_synced_at,
                        data_json = excluded.data_json
                    """,
                    (
                        stored.id,
                        stored.owner_id,
                        stored.version,
                        stored.updated_at,
                        1 if stored.is_deleted else 0,
                        stored.deleted_at,
                        stored.last_synced_at,
                        json.dumps(stored.data),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(
                    f"Constraint violated writing {stored.entity_type.value} {stored.id}: {e}"
                ) from e

        logger.debug(
            "Stored entity",
            extra={
                "entity_type": stored.entity_type.value,
                "entity_id": stored.id,
                "version": stored.version,
                "local": bump,
            },
        )
        return PutResult(entity=stored, changed=True, created=existing is None)

    def soft_delete(
        self,
        entity_type: EntityType,
        entity_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> PutResult | None:
        """Flag an entity as deleted (the row stays in place).

        Returns:
            PutResult, or None if the entity does not exist
        """
        with self.transaction() if conn is None else _joined(conn) as c:
            existing = self.get(entity_type, entity_id, conn=c)
            if existing is None:
                return None
            return self.put(existing.clone(is_deleted=True), conn=c)

    def query(
        self,
        entity_type: EntityType,
        predicate: Callable[[Entity], bool] | None = None,
        include_deleted: bool = False,
        where: dict[str, str] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[Entity]:
        """Query entities of one type.

        The result is a fresh, finite list on every call.

        Args:
            entity_type: Entity table
            predicate: Optional Python-side filter
            include_deleted: Include soft-deleted rows
            where: Optional equality filters on top-level string data fields
            conn: Optional connection of an open transaction

        Returns:
            Matching entities in insertion order
        """
        sql = f"SELECT * FROM {TABLES[entity_type]}"
        clauses: list[str] = []
        params: list[Any] = []
        if not include_deleted:
            clauses.append("is_deleted = 0")
        for name, value in (where or {}).items():
            if not name.isidentifier():
                raise ValueError(f"Invalid field name: {name}")
            clauses.append(f"json_extract(data_json, '$.{name}') = ?")
            params.append(value)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY rowid"

        with self.reader(conn) as c:
            rows = c.execute(sql, params).fetchall()

        entities = [self._row_to_entity(entity_type, row) for row in rows]
        if predicate is not None:
            entities = [e for e in entities if predicate(e)]
        return entities

    def mark_synced(
        self,
        entity_type: EntityType,
        entity_id: str,
        ts: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Stamp last_synced_at without touching version."""
        with self.transaction() if conn is None else _joined(conn) as c:
            c.execute(
                f"UPDATE {TABLES[entity_type]} SET last_synced_at = ? WHERE id = ?",
                (ts or now_ms(), entity_id),
            )

    # Sync state

    def get_state(self, key: str, conn: sqlite3.Connection | None = None) -> str | None:
        """Read a sync state value."""
        with self.reader(conn) as c:
            row = c.execute("SELECT value FROM sync_state WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

    def set_state(self, key: str, value: str, conn: sqlite3.Connection | None = None) -> None:
        """Write a sync state value."""
        with self.transaction() if conn is None else _joined(conn) as c:
            c.execute(
                """
                INSERT INTO sync_state (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )

    def get_checkpoint(self) -> str | None:
        """Last successfully completed pull checkpoint."""
        return self.get_state(CHECKPOINT_KEY)

    def set_checkpoint(self, checkpoint: str) -> None:
        """Persist the pull checkpoint."""
        self.set_state(CHECKPOINT_KEY, checkpoint)

    def stats(self) -> dict[str, int]:
        """Row counts per table (including soft-deleted rows)."""
        stats = {}
        with self.reader(None) as c:
            for entity_type, table in TABLES.items():
                stats[entity_type.value] = c.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            stats["sync_queue"] = c.execute("SELECT COUNT(*) FROM sync_queue").fetchone()[0]
        return stats

    def get_db_path(self) -> Path:
        """Get the database file path for this device."""
        return self._get_db_path()

    def _row_to_entity(self, entity_type: EntityType, row: sqlite3.Row) -> Entity:
        return Entity(
            entity_type=entity_type,
            id=row["id"],
            owner_id=row["owner_id"],
            version=row["version"],
            updated_at=row["updated_at"],
            data=json.loads(row["data_json"]),
            is_deleted=bool(row["is_deleted"]),
            deleted_at=row["deleted_at"],
            last_synced_at=row["last_synced_at"],
        )


@contextmanager
def _joined(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Reuse a connection whose transaction the caller owns."""
    yield conn
