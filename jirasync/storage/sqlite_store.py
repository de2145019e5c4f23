"""Embedded SQL store backed by SQLite."""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

import structlog
from pydantic import ValidationError

from jirasync.errors import PersistenceError
from jirasync.models.entity import EntityRecord, HistoryRecord, SyncState
from jirasync.models.query import EntityFilter, HistoryFilter, StorageStats
from jirasync.storage.base import PersistenceStore
from jirasync.utils.time import ensure_utc

log = structlog.stdlib.get_logger()

MEMORY = ":memory:"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS entities (
        key TEXT PRIMARY KEY,
        entity_id TEXT,
        category TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        payload TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_entities_category ON entities (category)",
    "CREATE INDEX IF NOT EXISTS idx_entities_updated_at ON entities (updated_at)",
    """
    CREATE TABLE IF NOT EXISTS history (
        entity_key TEXT NOT NULL,
        change_id TEXT NOT NULL,
        field_name TEXT NOT NULL,
        change_timestamp TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        author_account_id TEXT,
        payload TEXT NOT NULL,
        PRIMARY KEY (entity_key, change_id, field_name)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_history_timestamp ON history (change_timestamp)",
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        payload TEXT NOT NULL
    )
    """,
)

# Updates only fire when the payload differs, so rowcount counts real writes.
_UPSERT_ENTITY = """
    INSERT INTO entities (key, entity_id, category, updated_at, payload)
    VALUES (?, ?, ?, ?, ?)
    ON CONFLICT (key) DO UPDATE SET
        entity_id = excluded.entity_id,
        category = excluded.category,
        updated_at = excluded.updated_at,
        payload = excluded.payload
    WHERE entities.payload IS NOT excluded.payload
"""

_UPSERT_HISTORY = """
    INSERT INTO history (
        entity_key, change_id, field_name, change_timestamp, sequence, author_account_id, payload
    )
    VALUES (?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (entity_key, change_id, field_name) DO UPDATE SET
        change_timestamp = excluded.change_timestamp,
        sequence = excluded.sequence,
        author_account_id = excluded.author_account_id,
        payload = excluded.payload
    WHERE history.payload IS NOT excluded.payload
"""


def _instant(value: datetime) -> str:
    return ensure_utc(value).isoformat(timespec="microseconds")


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _chunks(values: Sequence[Any], size: int) -> Iterator[list[Any]]:
    for start in range(0, len(values), size):
        yield list(values[start : start + size])


class SqliteStore(PersistenceStore):
    """SQLite implementation of the persistence contract.

    Rows are returned in rowid order unless a sort is requested; an upsert keeps
    the original rowid, so insertion order survives updates. Each public call
    runs in its own transaction. Key lists longer than ``max_keys_per_query``
    are split across statements to stay under SQLite's bound-variable limit.
    """

    max_keys_per_query = 500

    def __init__(self, path: str | Path = MEMORY):
        """Open (or create) a database.

        Args:
            path: Database file, or ``:memory:`` for a private in-memory database

        Raises:
            PersistenceError: If the database cannot be opened or migrated
        """
        self.path = str(path)
        try:
            if self.path != MEMORY:
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path)
            if self.path != MEMORY:
                self._conn.execute("PRAGMA journal_mode=WAL")
            with self._conn:
                for statement in _SCHEMA:
                    self._conn.execute(statement)
        except (OSError, sqlite3.Error) as e:
            raise PersistenceError(f"Failed to open SQLite store {self.path}: {e}") from e

        log.info("sqlite_store_initialized", path=self.path)

    def save_entities(self, entities: Iterable[EntityRecord]) -> int:
        batch = {entity.key: entity for entity in entities}
        if not batch:
            return 0

        rows = []
        for entity in batch.values():
            payload = entity.storage_payload()
            rows.append(
                (
                    entity.key,
                    entity.entity_id,
                    entity.category,
                    _instant(entity.updated_at),
                    json.dumps(payload, ensure_ascii=False),
                )
            )

        written = self._execute_many(_UPSERT_ENTITY, rows, "save_entities")
        log.debug("entities_saved", written=written, batch_size=len(rows))
        return written

    def load_entities(self, entity_filter: EntityFilter | None = None) -> list[EntityRecord]:
        entity_filter = entity_filter or EntityFilter()
        return entity_filter.apply(self._select_entities(entity_filter))

    def count_entities(self, entity_filter: EntityFilter | None = None) -> int:
        entity_filter = entity_filter or EntityFilter()
        return sum(1 for entity in self._select_entities(entity_filter) if entity_filter.matches(entity))

    def delete_entities(self, keys: Iterable[str]) -> int:
        key_list = sorted(set(keys))
        if not key_list:
            return 0
        deleted = self._execute_chunked(
            "DELETE FROM entities WHERE key IN ({placeholders})", key_list, "delete_entities"
        )
        log.info("entities_deleted", count=deleted)
        return deleted

    def save_history(self, records: Iterable[HistoryRecord]) -> int:
        batch = {record.identity: record for record in records}
        if not batch:
            return 0

        rows = [
            (
                record.entity_key,
                record.change_id,
                record.field_name,
                _instant(record.change_timestamp),
                record.sequence,
                record.author.account_id if record.author else None,
                record.model_dump_json(),
            )
            for record in batch.values()
        ]

        written = self._execute_many(_UPSERT_HISTORY, rows, "save_history")
        log.debug("history_saved", written=written, batch_size=len(rows))
        return written

    def load_history(self, history_filter: HistoryFilter | None = None) -> list[HistoryRecord]:
        history_filter = history_filter or HistoryFilter()

        clauses: list[str] = []
        params: list[Any] = []
        if history_filter.field_names:
            clauses.append(f"field_name IN ({_placeholders(history_filter.field_names)})")
            params.extend(history_filter.field_names)
        if history_filter.authors:
            clauses.append(f"author_account_id IN ({_placeholders(history_filter.authors)})")
            params.extend(history_filter.authors)

        payloads = self._select_payloads(
            "history", "entity_key", history_filter.entity_keys, clauses, params, "load_history"
        )
        records = [self._parse(HistoryRecord, payload) for payload in payloads]
        return history_filter.apply(records)

    def delete_history(self, entity_keys: Iterable[str]) -> int:
        key_list = sorted(set(entity_keys))
        if not key_list:
            return 0
        deleted = self._execute_chunked(
            "DELETE FROM history WHERE entity_key IN ({placeholders})", key_list, "delete_history"
        )
        log.info("history_deleted", count=deleted)
        return deleted

    def save_sync_state(self, state: SyncState) -> None:
        self._execute(
            """
            INSERT INTO sync_state (id, payload) VALUES (1, ?)
            ON CONFLICT (id) DO UPDATE SET payload = excluded.payload
            """,
            [state.model_dump_json()],
            "save_sync_state",
        )
        log.debug(
            "sync_state_saved",
            last_sync_time=state.last_sync_time.isoformat(),
            synced_key_count=len(state.synced_keys),
        )

    def load_sync_state(self) -> SyncState | None:
        rows = self._query("SELECT payload FROM sync_state WHERE id = 1", [], "load_sync_state")
        if not rows:
            return None
        return self._parse(SyncState, rows[0][0])

    def get_stats(self) -> StorageStats:
        by_category = self._query(
            "SELECT category, COUNT(*) FROM entities GROUP BY category", [], "get_stats"
        )
        by_day = self._query(
            "SELECT substr(updated_at, 1, 10), COUNT(*) FROM entities GROUP BY 1", [], "get_stats"
        )
        by_field = self._query(
            "SELECT field_name, COUNT(*) FROM history GROUP BY field_name", [], "get_stats"
        )
        newest = self._query("SELECT MAX(updated_at) FROM entities", [], "get_stats")[0][0]
        page_count = self._query("PRAGMA page_count", [], "get_stats")[0][0]
        page_size = self._query("PRAGMA page_size", [], "get_stats")[0][0]

        history_by_field = {name: count for name, count in by_field}
        return StorageStats(
            total_entities=sum(count for _, count in by_category),
            entities_by_category={category: count for category, count in by_category},
            entities_by_day={day: count for day, count in by_day},
            total_history_records=sum(history_by_field.values()),
            history_by_field=history_by_field,
            storage_size_bytes=page_count * page_size,
            last_updated=datetime.fromisoformat(newest) if newest else None,
        )

    def close(self) -> None:
        self._conn.close()
        log.debug("sqlite_store_closed", path=self.path)

    def _select_entities(self, entity_filter: EntityFilter) -> list[EntityRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if entity_filter.categories:
            clauses.append(f"category IN ({_placeholders(entity_filter.categories)})")
            params.extend(entity_filter.categories)
        if entity_filter.updated_range is not None:
            clauses.append("updated_at BETWEEN ? AND ?")
            params.extend(
                [
                    _instant(entity_filter.updated_range.start),
                    _instant(entity_filter.updated_range.end),
                ]
            )

        # field_equals, sorting and pagination are applied by EntityFilter.apply.
        payloads = self._select_payloads(
            "entities", "key", entity_filter.keys, clauses, params, "load_entities"
        )
        return [self._parse(EntityRecord, payload) for payload in payloads]

    def _select_payloads(
        self,
        table: str,
        key_column: str,
        keys: Sequence[str] | None,
        clauses: list[str],
        params: list[Any],
        operation: str,
    ) -> list[str]:
        """Select payloads in rowid order, optionally restricted to ``keys``."""
        if not keys:
            sql = f"SELECT rowid, payload FROM {table}" + _where(clauses) + " ORDER BY rowid"
            return [row[1] for row in self._query(sql, params, operation)]

        rows: list[tuple] = []
        for chunk in _chunks(list(dict.fromkeys(keys)), self.max_keys_per_query):
            key_clause = f"{key_column} IN ({_placeholders(chunk)})"
            sql = f"SELECT rowid, payload FROM {table}" + _where([key_clause, *clauses])
            rows.extend(self._query(sql, [*chunk, *params], operation))
        rows.sort(key=lambda row: row[0])
        return [row[1] for row in rows]

    def _parse(self, model: type, payload: str) -> Any:
        try:
            return model.model_validate_json(payload)
        except ValidationError as e:
            raise PersistenceError(f"Stored {model.__name__} row is invalid: {e}") from e

    def _query(self, sql: str, params: Sequence[Any], operation: str) -> list[tuple]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            log.error("sqlite_query_failed", operation=operation, error=str(e))
            raise PersistenceError(f"{operation} failed: {e}") from e

    def _execute(self, sql: str, params: Sequence[Any], operation: str) -> int:
        try:
            with self._conn:
                return self._conn.execute(sql, params).rowcount
        except sqlite3.Error as e:
            log.error("sqlite_write_failed", operation=operation, error=str(e))
            raise PersistenceError(f"{operation} failed: {e}") from e

    def _execute_chunked(self, sql: str, keys: list[str], operation: str) -> int:
        """Run ``sql`` once per key chunk in a single transaction."""
        try:
            with self._conn:
                return sum(
                    self._conn.execute(sql.format(placeholders=_placeholders(chunk)), chunk).rowcount
                    for chunk in _chunks(keys, self.max_keys_per_query)
                )
        except sqlite3.Error as e:
            log.error("sqlite_write_failed", operation=operation, error=str(e))
            raise PersistenceError(f"{operation} failed: {e}") from e

    def _execute_many(self, sql: str, rows: list[tuple], operation: str) -> int:
        try:
            with self._conn:
                return self._conn.executemany(sql, rows).rowcount
        except sqlite3.Error as e:
            log.error("sqlite_write_failed", operation=operation, error=str(e))
            raise PersistenceError(f"{operation} failed: {e}") from e


def _where(clauses: list[str]) -> str:
    if not clauses:
        return ""
    return " WHERE " + " AND ".join(clauses)
