"""
Audit log storage using SQLite, one append-only table per entity type.

This module provides the per-entity-type log handles read by the query,
correlation and snapshot layers, and the registry they fan out over.
"""

import hashlib
import json
import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Protocol
from uuid import uuid4

from pydantic import ValidationError

from packages.change_classifier import CONTEXT_KEY, EVENT_KEY
from packages.structured_logging import get_logger

from .models import AuditRecord, ChangeKind, LogQuery, LogStats, SortDirection, ensure_aware

logger = get_logger(__name__)

CATALOG_TABLE = "audit_log_catalog"

# Sort field -> column
SORTABLE_COLUMNS = {
    "id": "id",
    "subject_id": "subject_id",
    "change_kind": "change_kind",
    "occurred_at": "occurred_at",
}
DEFAULT_SORT_COLUMN = "occurred_at"


class StoreUnavailableError(Exception):
    """Raised when an audit log cannot be read (unreachable or corrupt)."""

    def __init__(self, entity_type: str, message: str) -> None:
        self.entity_type = entity_type
        super().__init__(f"Audit log for {entity_type} unavailable: {message}")


class AuditLog(Protocol):
    """Read capabilities of one entity type's audit log."""

    entity_type: str
    supports_actor_search: bool
    supports_context_lookup: bool

    def query(self, query: LogQuery) -> list[AuditRecord]: ...

    def count(self, query: LogQuery) -> int: ...

    def get(self, record_id: int) -> AuditRecord | None: ...


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO format so stored timestamps sort lexicographically."""
    return ensure_aware(value).isoformat(timespec="microseconds")


def generate_correlation_hash() -> str:
    """Generate a hash identifying one atomic write."""
    return hashlib.sha1(uuid4().hex.encode("utf-8")).hexdigest()


def table_slug(entity_type: str) -> str:
    """Derive a table name from an entity type (e.g. App\\Entity\\Order -> audit_app_entity_order)."""
    slug = re.sub(r"[^0-9a-zA-Z]+", "_", entity_type).strip("_").lower()
    return f"audit_{slug or 'entity'}"


class AuditDatabase:
    """
    SQLite database holding the audit logs of all entity types.

    Each entity type gets its own append-only table; a catalog table maps
    entity types to table names. Log handles are cached per entity type.
    """

    def __init__(
        self,
        db_path: str | Path = "audit.db",
        actor_search: bool = True,
        context_lookup: bool = True,
    ) -> None:
        """
        Initialize audit database.

        Args:
            db_path: Path to SQLite database file
            actor_search: Advertise case-insensitive actor label search
            context_lookup: Advertise structured lookup into @context
        """
        self.db_path = Path(db_path)
        self.actor_search = actor_search
        self.context_lookup = context_lookup
        self._logs: dict[str, EntityAuditLog] = {}
        self._init_db()

    def _init_db(self) -> None:
        """Create catalog table if it doesn't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection("catalog") as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {CATALOG_TABLE} (
                    entity_type TEXT PRIMARY KEY,
                    table_name TEXT NOT NULL UNIQUE
                )
            """)
            conn.commit()

    @contextmanager
    def connection(self, entity_type: str) -> Iterator[sqlite3.Connection]:
        """Get database connection, mapping sqlite failures to StoreUnavailableError."""
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise StoreUnavailableError(entity_type, str(e)) from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreUnavailableError(entity_type, str(e)) from e
        finally:
            conn.close()

    def entity_types(self) -> list[str]:
        """List entity types that have an audit log."""
        with self.connection("catalog") as conn:
            rows = conn.execute(
                f"SELECT entity_type FROM {CATALOG_TABLE} ORDER BY entity_type"
            ).fetchall()
        return [row["entity_type"] for row in rows]

    def log(self, entity_type: str) -> "EntityAuditLog":
        """
        Get the audit log of an entity type, creating its table on first use.

        Args:
            entity_type: Audited entity type

        Returns:
            Cached log handle
        """
        if entity_type in self._logs:
            return self._logs[entity_type]

        table_name = self._ensure_table(entity_type)
        log = EntityAuditLog(
            database=self,
            entity_type=entity_type,
            table_name=table_name,
            supports_actor_search=self.actor_search,
            supports_context_lookup=self.context_lookup,
        )
        self._logs[entity_type] = log
        return log

    def registry(self) -> "AuditLogRegistry":
        """Build a registry over every entity type known to the catalog."""
        return AuditLogRegistry(self.log(entity_type) for entity_type in self.entity_types())

    def _ensure_table(self, entity_type: str) -> str:
        with self.connection(entity_type) as conn:
            row = conn.execute(
                f"SELECT table_name FROM {CATALOG_TABLE} WHERE entity_type = ?",
                (entity_type,),
            ).fetchone()
            if row:
                return row["table_name"]

            base = table_slug(entity_type)
            table_name = base
            suffix = 1
            while conn.execute(
                f"SELECT 1 FROM {CATALOG_TABLE} WHERE table_name = ?", (table_name,)
            ).fetchone():
                suffix += 1
                table_name = f"{base}_{suffix}"

            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {table_name} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subject_id TEXT NOT NULL,
                    change_kind TEXT NOT NULL,
                    change_set TEXT NOT NULL,
                    correlation_hash TEXT NOT NULL,
                    actor_id TEXT,
                    actor_label TEXT,
                    source_address TEXT,
                    occurred_at TEXT NOT NULL
                )
            """)

            # Create indexes for efficient queries
            conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table_name}_subject
                ON {table_name}(subject_id)
            """)
            conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table_name}_occurred_at
                ON {table_name}(occurred_at DESC)
            """)
            conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table_name}_correlation
                ON {table_name}(correlation_hash)
            """)

            conn.execute(
                f"INSERT INTO {CATALOG_TABLE} (entity_type, table_name) VALUES (?, ?)",
                (entity_type, table_name),
            )
            conn.commit()

        logger.info("audit_log_created", entity_type=entity_type, table_name=table_name)
        return table_name


class EntityAuditLog:
    """
    Append-only audit log of a single entity type.

    Records cannot be modified or deleted.
    """

    def __init__(
        self,
        database: AuditDatabase,
        entity_type: str,
        table_name: str,
        supports_actor_search: bool = True,
        supports_context_lookup: bool = True,
    ) -> None:
        self.database = database
        self.entity_type = entity_type
        self.table_name = table_name
        self.supports_actor_search = supports_actor_search
        self.supports_context_lookup = supports_context_lookup

    def append(
        self,
        subject_id: str | int,
        change_kind: ChangeKind | str,
        change_set: Mapping[str, Any] | None = None,
        *,
        actor_id: str | None = None,
        actor_label: str | None = None,
        source_address: str | None = None,
        correlation_hash: str | None = None,
        occurred_at: datetime | None = None,
    ) -> AuditRecord:
        """
        Append a new record to the log.

        Args:
            subject_id: Identity of the changed entity
            change_kind: Kind of change
            change_set: Change payload
            actor_id: Actor identifier
            actor_label: Actor email, username or automation name
            source_address: Client address
            correlation_hash: Hash shared by records of one atomic write
                (generated when omitted)
            occurred_at: Change time (defaults to now)

        Returns:
            The stored record with its assigned id
        """
        kind = ChangeKind.parse(change_kind)
        payload = dict(change_set or {})
        when = ensure_aware(occurred_at or datetime.now(timezone.utc))
        correlation_hash = correlation_hash or generate_correlation_hash()

        with self.database.connection(self.entity_type) as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO {self.table_name}
                (subject_id, change_kind, change_set, correlation_hash,
                 actor_id, actor_label, source_address, occurred_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(subject_id),
                    kind.value,
                    json.dumps(payload, default=str),
                    correlation_hash,
                    actor_id,
                    actor_label,
                    source_address,
                    format_timestamp(when),
                ),
            )
            record_id = cursor.lastrowid
            conn.commit()

        logger.debug(
            "audit_record_appended",
            entity_type=self.entity_type,
            record_id=record_id,
            change_kind=kind.value,
        )

        return AuditRecord(
            id=record_id,
            entity_type=self.entity_type,
            subject_id=str(subject_id),
            change_kind=kind,
            change_set=payload,
            correlation_hash=correlation_hash,
            actor_id=actor_id,
            actor_label=actor_label,
            source_address=source_address,
            occurred_at=when,
        )

    def append_event(
        self,
        subject_id: str | int,
        event_name: str,
        data: Mapping[str, Any] | None = None,
        context: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> AuditRecord:
        """
        Append a domain event record (e.g. order.created) for a subject.

        The event name is stored under @event and the optional producer
        context under @context.
        """
        change_set: dict[str, Any] = {EVENT_KEY: event_name, **(data or {})}
        if context:
            change_set[CONTEXT_KEY] = dict(context)
        return self.append(subject_id, ChangeKind.DOMAIN_EVENT, change_set, **kwargs)

    def get(self, record_id: int) -> AuditRecord | None:
        """
        Retrieve a specific record by id.

        Returns:
            The record if found, None otherwise
        """
        with self.database.connection(self.entity_type) as conn:
            row = conn.execute(
                f"SELECT * FROM {self.table_name} WHERE id = ?", (record_id,)
            ).fetchone()

        if not row:
            return None
        return self._row_to_record(row)

    def query(self, query: LogQuery) -> list[AuditRecord]:
        """
        Query records with native filters, ordering and pagination.

        Args:
            query: Query parameters

        Returns:
            Matching records in the requested order
        """
        if query.request_id and not self.supports_context_lookup:
            return self._scan_request_id(query)

        where_clause, params = self._build_where(query)

        column = SORTABLE_COLUMNS.get(query.order_by, DEFAULT_SORT_COLUMN)
        direction = query.direction.value
        order_clause = f"ORDER BY {column} {direction}"
        if column != "id":
            order_clause += f", id {direction}"

        sql = f"SELECT * FROM {self.table_name} {where_clause} {order_clause}"
        if query.limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([query.limit, query.offset])
        elif query.offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(query.offset)

        with self.database.connection(self.entity_type) as conn:
            rows = conn.execute(sql, params).fetchall()

        return [self._row_to_record(row) for row in rows]

    def count(self, query: LogQuery) -> int:
        """Count records matching the query filters (pagination ignored)."""
        if query.request_id and not self.supports_context_lookup:
            return len(self._scan_request_id(query.model_copy(update={"limit": None, "offset": 0})))

        where_clause, params = self._build_where(query)
        with self.database.connection(self.entity_type) as conn:
            return conn.execute(
                f"SELECT COUNT(*) FROM {self.table_name} {where_clause}", params
            ).fetchone()[0]

    def _scan_request_id(self, query: LogQuery) -> list[AuditRecord]:
        """Match @context requestId in memory when the log has no structured lookup."""
        unpaged = query.model_copy(update={"request_id": None, "limit": None, "offset": 0})
        matches = [record for record in self.query(unpaged) if record.request_id == query.request_id]
        end = None if query.limit is None else query.offset + query.limit
        return matches[query.offset : end]

    def get_stats(self) -> LogStats:
        """
        Get statistics about the log.

        Returns:
            Statistics summary
        """
        with self.database.connection(self.entity_type) as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM {self.table_name}").fetchone()[0]

            kind_rows = conn.execute(f"""
                SELECT change_kind, COUNT(*) as count
                FROM {self.table_name}
                GROUP BY change_kind
            """).fetchall()

            time_range = conn.execute(f"""
                SELECT MIN(occurred_at) as earliest, MAX(occurred_at) as latest
                FROM {self.table_name}
            """).fetchone()

        return LogStats(
            entity_type=self.entity_type,
            total_records=total,
            change_kind_counts={row["change_kind"]: row["count"] for row in kind_rows},
            earliest_record=(
                datetime.fromisoformat(time_range["earliest"]) if time_range["earliest"] else None
            ),
            latest_record=(
                datetime.fromisoformat(time_range["latest"]) if time_range["latest"] else None
            ),
        )

    def _build_where(self, query: LogQuery) -> tuple[str, list[Any]]:
        conditions: list[str] = []
        params: list[Any] = []

        if query.record_ids is not None:
            if not query.record_ids:
                conditions.append("0")
            else:
                placeholders = ",".join("?" * len(query.record_ids))
                conditions.append(f"id IN ({placeholders})")
                params.extend(query.record_ids)

        if query.subject_ids is not None:
            if not query.subject_ids:
                conditions.append("0")
            else:
                placeholders = ",".join("?" * len(query.subject_ids))
                conditions.append(f"subject_id IN ({placeholders})")
                params.extend(query.subject_ids)

        if query.subject_prefix:
            conditions.append("substr(subject_id, 1, length(?)) = ?")
            params.extend([query.subject_prefix, query.subject_prefix])

        if query.subject_contains:
            conditions.append("instr(subject_id, ?) > 0")
            params.append(query.subject_contains)

        if query.change_kinds:
            placeholders = ",".join("?" * len(query.change_kinds))
            conditions.append(f"change_kind IN ({placeholders})")
            params.extend(kind.value for kind in query.change_kinds)

        if query.occurred_from:
            conditions.append("occurred_at >= ?")
            params.append(format_timestamp(query.occurred_from))

        if query.occurred_to:
            conditions.append("occurred_at <= ?")
            params.append(format_timestamp(query.occurred_to))

        if query.correlation_hash:
            conditions.append("correlation_hash = ?")
            params.append(query.correlation_hash)

        if query.actor_label:
            conditions.append("actor_label = ?")
            params.append(query.actor_label)

        if query.request_id and self.supports_context_lookup:
            conditions.append(
                f"CAST(json_extract(change_set, '$.\"{CONTEXT_KEY}\".requestId') AS TEXT) = ?"
            )
            params.append(query.request_id)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where_clause, params

    def _row_to_record(self, row: sqlite3.Row) -> AuditRecord:
        """Convert database row to AuditRecord model."""
        try:
            return AuditRecord(
                id=row["id"],
                entity_type=self.entity_type,
                subject_id=row["subject_id"],
                change_kind=ChangeKind(row["change_kind"]),
                change_set=json.loads(row["change_set"]),
                correlation_hash=row["correlation_hash"],
                actor_id=row["actor_id"],
                actor_label=row["actor_label"],
                source_address=row["source_address"],
                occurred_at=datetime.fromisoformat(row["occurred_at"]),
            )
        except (ValueError, ValidationError) as e:
            raise StoreUnavailableError(
                self.entity_type, f"corrupt record {row['id']}: {e}"
            ) from e


class AuditLogRegistry:
    """
    Registry of per-entity-type audit logs.

    Holds one read-only handle per entity type; scatter-gather operations fan
    out over it.
    """

    def __init__(self, logs: Iterable[AuditLog] = ()) -> None:
        self._logs: dict[str, AuditLog] = {}
        for log in logs:
            self.register(log)

    def register(self, log: AuditLog) -> None:
        """Register (or replace) the log of an entity type."""
        self._logs[log.entity_type] = log

    def get(self, entity_type: str) -> AuditLog | None:
        """Get the log of an entity type, None if unknown."""
        return self._logs.get(entity_type)

    def entity_types(self) -> list[str]:
        """List registered entity types in registration order."""
        return list(self._logs)

    def logs(self) -> list[AuditLog]:
        return list(self._logs.values())

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._logs

    def __len__(self) -> int:
        return len(self._logs)
