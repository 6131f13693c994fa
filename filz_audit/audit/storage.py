"""Audit storage backends.

Append-only storage for audit entries. Both backends are write-once at
the adapter boundary: `update` and `delete` always raise
ImmutabilityViolation, and an append may only extend the current tail.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from filz_audit.audit.exceptions import (
    AppendInvariantViolation,
    AuditError,
    ImmutabilityViolation,
    StorageFailure,
)
from filz_audit.audit.models import (
    AuditAction,
    AuditLogEntry,
    AuditSearchQuery,
    ResourceType,
    SortOrder,
)

logger = logging.getLogger(__name__)


class AuditStorage(Protocol):
    """Protocol for audit storage backends.

    Implementations must provide append-only semantics.
    Updates and deletes must be rejected at the storage level.
    """

    async def append(self, entry: AuditLogEntry) -> None:
        """Append an entry (insert only, must extend the current tail)."""
        ...

    async def get_latest(self) -> AuditLogEntry | None:
        """Get the most recently written entry."""
        ...

    async def get_by_sequence(self, sequence_id: int) -> AuditLogEntry | None:
        """Get an entry by sequence id."""
        ...

    async def get_all(self) -> list[AuditLogEntry]:
        """Get all entries ordered by sequence id."""
        ...

    async def find_genesis(self) -> AuditLogEntry | None:
        """Get the CHAIN_GENESIS entry if one exists."""
        ...

    async def count(self) -> int:
        """Get total entry count."""
        ...

    async def query(self, query: AuditSearchQuery) -> list[AuditLogEntry]:
        """Search entries, ascending by sequence id."""
        ...

    async def get_trail(
        self, resource_id: str, sort_order: SortOrder
    ) -> list[AuditLogEntry]:
        """Get every entry referencing a resource."""
        ...

    async def update(self, sequence_id: int, **changes: Any) -> None:
        """Always rejected."""
        ...

    async def delete(self, sequence_id: int) -> None:
        """Always rejected."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...


def _check_extends_tail(entry: AuditLogEntry, tail_id: int | None, tail_hash: str | None) -> None:
    """Reject an append that would overwrite, skip or fork the tail."""
    if tail_id is not None and entry.sequence_id <= tail_id:
        raise ImmutabilityViolation(entry.sequence_id, "overwrite")

    expected_id = tail_id + 1 if tail_id is not None else 1
    if entry.sequence_id != expected_id:
        raise AppendInvariantViolation(
            f"Sequence gap: expected {expected_id}, got {entry.sequence_id}"
        )

    if tail_id is None:
        if not entry.is_genesis:
            raise AppendInvariantViolation("First entry of the chain must be CHAIN_GENESIS")
        return

    if entry.is_genesis:
        raise AppendInvariantViolation("Chain already has entries; refusing a second CHAIN_GENESIS")
    if entry.previous_hash != tail_hash:
        raise AppendInvariantViolation(
            f"Fork at sequence {entry.sequence_id}: previous_hash does not match "
            f"the hash of entry {tail_id}"
        )


def metadata_contains(haystack: Any, needle: Any) -> bool:
    """JSON containment: every key/value in `needle` is present in `haystack`.

    Nested objects match recursively, arrays match when every needle
    element is contained in some haystack element.
    """
    if isinstance(needle, dict):
        if not isinstance(haystack, dict):
            return False
        return all(
            key in haystack and metadata_contains(haystack[key], value)
            for key, value in needle.items()
        )
    if isinstance(needle, list):
        if not isinstance(haystack, list):
            return False
        return all(
            any(metadata_contains(candidate, item) for candidate in haystack)
            for item in needle
        )
    return haystack == needle


def matches_query(entry: AuditLogEntry, query: AuditSearchQuery) -> bool:
    if query.resource_id and entry.resource_id != query.resource_id:
        return False
    if query.resource_type and entry.resource_type != query.resource_type:
        return False
    if query.action and entry.action != query.action:
        return False
    if query.user_principal and entry.user_principal != query.user_principal:
        return False
    if query.start_time and entry.timestamp < query.start_time:
        return False
    if query.end_time and entry.timestamp > query.end_time:
        return False
    if query.metadata and not metadata_contains(entry.metadata or {}, query.metadata):
        return False
    return True


class FileAuditStorage:
    """File-based audit storage for development and small deployments.

    Stores entries in JSONL (JSON Lines) format, one entry per line, in a
    single file. The file is only ever opened for append by this class.

    WARNING: This is NOT suitable for high-volume production use.
    Use PostgresAuditStorage for production deployments.
    """

    FILE_NAME = "audit_log.jsonl"
    TAIL_CHUNK_SIZE = 4096

    def __init__(self, storage_path: str | Path):
        """Initialize file storage.

        Args:
            storage_path: Directory to store the audit file
        """
        self.storage_path = Path(storage_path)
        try:
            self.storage_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFailure(f"Cannot create audit directory {self.storage_path}", e) from e
        self.file_path = self.storage_path / self.FILE_NAME
        logger.info("FileAuditStorage initialized at %s", self.file_path)

    def _parse_line(self, line: str | bytes, where: str) -> AuditLogEntry:
        try:
            return AuditLogEntry.model_validate_json(line)
        except (ValidationError, UnicodeDecodeError) as e:
            raise StorageFailure(f"Unreadable audit entry at {where} of {self.file_path}", e) from e

    def _read_entries(self) -> list[AuditLogEntry]:
        if not self.file_path.exists():
            return []

        entries = []
        try:
            with open(self.file_path, "r", encoding="utf-8") as f:
                for line_number, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    entries.append(self._parse_line(line, f"line {line_number}"))
        except OSError as e:
            raise StorageFailure(f"Cannot read audit file {self.file_path}", e) from e
        except UnicodeDecodeError as e:
            raise StorageFailure(f"Audit file {self.file_path} is not valid UTF-8", e) from e

        return sorted(entries, key=lambda e: e.sequence_id)

    def _read_last_entry(self) -> AuditLogEntry | None:
        """Parse only the final line, scanning backwards from the end of the file."""
        if not self.file_path.exists():
            return None

        try:
            with open(self.file_path, "rb") as f:
                position = f.seek(0, os.SEEK_END)
                buffer = b""
                while position > 0:
                    step = min(self.TAIL_CHUNK_SIZE, position)
                    position -= step
                    f.seek(position)
                    buffer = f.read(step) + buffer
                    if b"\n" in buffer.rstrip():
                        break
        except OSError as e:
            raise StorageFailure(f"Cannot read audit file {self.file_path}", e) from e

        last_line = buffer.rstrip().rsplit(b"\n", 1)[-1].strip()
        if not last_line:
            return None
        return self._parse_line(last_line, "last line")

    async def append(self, entry: AuditLogEntry) -> None:
        """Append an entry to storage.

        The entry must extend the tail currently on disk, whoever wrote it.
        """
        tail = self._read_last_entry()
        _check_extends_tail(
            entry,
            tail.sequence_id if tail else None,
            tail.hash if tail else None,
        )

        try:
            with open(self.file_path, "a", encoding="utf-8") as f:
                f.write(entry.model_dump_json() + "\n")
                f.flush()
        except OSError as e:
            raise StorageFailure(f"Cannot append audit entry {entry.sequence_id}", e) from e

        logger.debug("Appended audit entry: seq=%d action=%s", entry.sequence_id, entry.action.value)

    async def get_latest(self) -> AuditLogEntry | None:
        """Get the most recently written entry."""
        return self._read_last_entry()

    async def get_by_sequence(self, sequence_id: int) -> AuditLogEntry | None:
        """Get an entry by sequence id."""
        for entry in self._read_entries():
            if entry.sequence_id == sequence_id:
                return entry
        return None

    async def get_all(self) -> list[AuditLogEntry]:
        """Get all entries ordered by sequence id."""
        return self._read_entries()

    async def find_genesis(self) -> AuditLogEntry | None:
        for entry in self._read_entries():
            if entry.is_genesis:
                return entry
        return None

    async def count(self) -> int:
        """Get total entry count."""
        return len(self._read_entries())

    async def query(self, query: AuditSearchQuery) -> list[AuditLogEntry]:
        """Query entries with filters."""
        filtered = [e for e in self._read_entries() if matches_query(e, query)]

        # Apply pagination
        start = query.offset
        end = start + query.limit
        return filtered[start:end]

    async def get_trail(
        self, resource_id: str, sort_order: SortOrder = SortOrder.DESC
    ) -> list[AuditLogEntry]:
        trail = [e for e in self._read_entries() if e.resource_id == resource_id]
        if sort_order == SortOrder.DESC:
            trail.reverse()
        return trail

    async def update(self, sequence_id: int, **changes: Any) -> None:
        logger.warning("Rejected update of audit entry %s", sequence_id)
        raise ImmutabilityViolation(sequence_id, "update")

    async def delete(self, sequence_id: int) -> None:
        logger.warning("Rejected delete of audit entry %s", sequence_id)
        raise ImmutabilityViolation(sequence_id, "delete")

    async def close(self) -> None:
        return None


# SQLSTATEs raised through asyncpg
_SQLSTATE_RAISE_EXCEPTION = "P0001"
_SQLSTATE_UNIQUE_VIOLATION = "23505"


class PostgresAuditStorage:
    """PostgreSQL-based audit storage for production.

    Uses the audit_logs table with database-level immutability
    enforcement via the audit_log_immutable trigger (see
    migrations/versions/001_audit_log_chain.py). Appends take a
    transaction-scoped advisory lock so writers in other processes
    cannot interleave with this one.
    """

    ADVISORY_LOCK_KEY = 1

    _COLUMNS = (
        "id, timestamp, user_principal, action, resource_type, resource_id, "
        "metadata, previous_hash, hash"
    )

    def __init__(self, connection_pool: Any):
        """Initialize PostgreSQL storage.

        Args:
            connection_pool: asyncpg connection pool
        """
        self.pool = connection_pool
        logger.info("PostgresAuditStorage initialized")

    @staticmethod
    def _translate(exc: Exception, entry_id: int | None = None) -> AuditError:
        sqlstate = getattr(exc, "sqlstate", None)
        if sqlstate == _SQLSTATE_RAISE_EXCEPTION and "immutable" in str(exc):
            return ImmutabilityViolation(entry_id)
        if sqlstate == _SQLSTATE_UNIQUE_VIOLATION:
            return AppendInvariantViolation(f"Unique constraint rejected audit entry {entry_id}: {exc}")
        return StorageFailure(f"Audit database error: {exc}", exc)

    async def _fetch(self, sql: str, *args: Any) -> list[Any]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetch(sql, *args)
        except AuditError:
            raise
        except Exception as e:
            raise self._translate(e) from e

    async def append(self, entry: AuditLogEntry) -> None:
        """Append an entry to storage."""
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("SELECT pg_advisory_xact_lock($1)", self.ADVISORY_LOCK_KEY)
                    tail = await conn.fetchrow(
                        "SELECT id, hash FROM audit_logs ORDER BY id DESC LIMIT 1"
                    )
                    _check_extends_tail(
                        entry,
                        tail["id"] if tail else None,
                        tail["hash"] if tail else None,
                    )
                    await conn.execute(
                        f"""
                        INSERT INTO audit_logs ({self._COLUMNS})
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                        """,
                        entry.sequence_id,
                        entry.timestamp,
                        entry.user_principal,
                        entry.action.value,
                        entry.resource_type.value if entry.resource_type else None,
                        entry.resource_id,
                        json.dumps(entry.metadata) if entry.metadata is not None else None,
                        entry.previous_hash,
                        entry.hash,
                    )
        except AuditError:
            raise
        except Exception as e:
            raise self._translate(e, entry.sequence_id) from e

    async def get_latest(self) -> AuditLogEntry | None:
        """Get the most recently written entry."""
        rows = await self._fetch(
            f"SELECT {self._COLUMNS} FROM audit_logs ORDER BY id DESC LIMIT 1"
        )
        return self._row_to_entry(rows[0]) if rows else None

    async def get_by_sequence(self, sequence_id: int) -> AuditLogEntry | None:
        """Get an entry by sequence id."""
        rows = await self._fetch(
            f"SELECT {self._COLUMNS} FROM audit_logs WHERE id = $1", sequence_id
        )
        return self._row_to_entry(rows[0]) if rows else None

    async def get_all(self) -> list[AuditLogEntry]:
        """Get all entries ordered by sequence id."""
        rows = await self._fetch(f"SELECT {self._COLUMNS} FROM audit_logs ORDER BY id")
        return [self._row_to_entry(row) for row in rows]

    async def find_genesis(self) -> AuditLogEntry | None:
        rows = await self._fetch(
            f"SELECT {self._COLUMNS} FROM audit_logs WHERE action = $1 LIMIT 1",
            AuditAction.CHAIN_GENESIS.value,
        )
        return self._row_to_entry(rows[0]) if rows else None

    async def count(self) -> int:
        """Get total entry count."""
        rows = await self._fetch("SELECT COUNT(*) AS total FROM audit_logs")
        return rows[0]["total"] if rows else 0

    async def query(self, query: AuditSearchQuery) -> list[AuditLogEntry]:
        """Query entries with filters."""
        conditions = []
        params: list[Any] = []

        def add(condition: str, value: Any) -> None:
            params.append(value)
            conditions.append(condition.format(n=len(params)))

        if query.resource_id:
            add("resource_id = ${n}", query.resource_id)
        if query.resource_type:
            add("resource_type = ${n}", query.resource_type.value)
        if query.action:
            add("action = ${n}", query.action.value)
        if query.user_principal:
            add("user_principal = ${n}", query.user_principal)
        if query.metadata:
            add("metadata @> ${n}::jsonb", json.dumps(query.metadata))
        if query.start_time:
            add("timestamp >= ${n}", query.start_time)
        if query.end_time:
            add("timestamp <= ${n}", query.end_time)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        limit_param = len(params) + 1

        rows = await self._fetch(
            f"""
            SELECT {self._COLUMNS} FROM audit_logs
            {where_clause}
            ORDER BY id
            LIMIT ${limit_param} OFFSET ${limit_param + 1}
            """,
            *params,
            query.limit,
            query.offset,
        )
        return [self._row_to_entry(row) for row in rows]

    async def get_trail(
        self, resource_id: str, sort_order: SortOrder = SortOrder.DESC
    ) -> list[AuditLogEntry]:
        direction = "DESC" if sort_order == SortOrder.DESC else "ASC"
        rows = await self._fetch(
            f"SELECT {self._COLUMNS} FROM audit_logs WHERE resource_id = $1 ORDER BY id {direction}",
            resource_id,
        )
        return [self._row_to_entry(row) for row in rows]

    async def update(self, sequence_id: int, **changes: Any) -> None:
        logger.warning("Rejected update of audit entry %s", sequence_id)
        raise ImmutabilityViolation(sequence_id, "update")

    async def delete(self, sequence_id: int) -> None:
        logger.warning("Rejected delete of audit entry %s", sequence_id)
        raise ImmutabilityViolation(sequence_id, "delete")

    async def close(self) -> None:
        await self.pool.close()

    def _row_to_entry(self, row: Any) -> AuditLogEntry:
        """Convert database row to entry."""
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return AuditLogEntry(
            sequence_id=row["id"],
            timestamp=row["timestamp"],
            user_principal=row["user_principal"],
            action=AuditAction(row["action"]),
            resource_type=ResourceType(row["resource_type"]) if row["resource_type"] else None,
            resource_id=row["resource_id"],
            metadata=metadata,
            previous_hash=row["previous_hash"],
            hash=row["hash"],
        )


async def create_audit_storage(
    storage_type: str = "file",
    storage_path: str | Path = "data/audit",
    database_url: str | None = None,
) -> AuditStorage:
    """Create the storage backend named by configuration."""
    if storage_type == "postgres":
        if not database_url:
            raise ValueError("PostgreSQL audit storage requires a database_url")
        import asyncpg

        try:
            pool = await asyncpg.create_pool(database_url)
        except (OSError, asyncpg.PostgresError) as e:
            raise StorageFailure("Cannot connect to the audit database", e) from e
        return PostgresAuditStorage(pool)

    # Default to file storage
    return FileAuditStorage(storage_path)
