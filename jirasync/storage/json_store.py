"""File-backed store keeping each collection in one (optionally gzipped) JSON document."""

import gzip
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable

import structlog
from pydantic import ValidationError

from jirasync.errors import PersistenceError
from jirasync.models.entity import EntityRecord, HistoryRecord, SyncState
from jirasync.models.query import EntityFilter, HistoryFilter, StorageStats
from jirasync.storage.base import PersistenceStore

log = structlog.stdlib.get_logger()

ENTITIES_FILE = "entities.json"
HISTORY_FILE = "history.json"
SYNC_STATE_FILE = "sync_state.json"


class JsonStore(PersistenceStore):
    """JSON document implementation of the persistence contract.

    The whole dataset is held in memory and every save rewrites the affected
    document through a temporary file and ``os.replace``, so a crash leaves
    either the old or the new document on disk, never a torn one.
    """

    def __init__(self, data_dir: str | Path, compress: bool = True):
        """Open (or create) a store directory.

        Args:
            data_dir: Directory holding the JSON documents
            compress: Gzip the documents (``*.json.gz``)

        Raises:
            PersistenceError: If the directory or an existing document cannot be read
        """
        self.data_dir = Path(data_dir)
        self.compress = compress

        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create data directory {self.data_dir}: {e}") from e

        self._entities: dict[str, EntityRecord] = {
            entity.key: entity
            for entity in self._read_models(ENTITIES_FILE, EntityRecord)
        }
        self._history: dict[tuple[str, str, str], HistoryRecord] = {
            record.identity: record
            for record in self._read_models(HISTORY_FILE, HistoryRecord)
        }

        log.info(
            "json_store_initialized",
            data_dir=str(self.data_dir),
            compress=compress,
            entity_count=len(self._entities),
            history_count=len(self._history),
        )

    def save_entities(self, entities: Iterable[EntityRecord]) -> int:
        updated = dict(self._entities)
        written: set[str] = set()

        # Last occurrence of a key in the batch wins.
        batch = {entity.key: entity for entity in entities}
        for entity in batch.values():
            stored = EntityRecord.model_validate(entity.storage_payload())
            existing = updated.get(entity.key)
            if existing is not None and existing == stored:
                continue
            updated[entity.key] = stored
            written.add(entity.key)

        if not written:
            return 0

        self._write_document(ENTITIES_FILE, [e.storage_payload() for e in updated.values()])
        self._entities = updated

        log.debug("entities_saved", written=len(written), total=len(updated))
        return len(written)

    def load_entities(self, entity_filter: EntityFilter | None = None) -> list[EntityRecord]:
        return (entity_filter or EntityFilter()).apply(self._entities.values())

    def count_entities(self, entity_filter: EntityFilter | None = None) -> int:
        entity_filter = entity_filter or EntityFilter()
        return sum(1 for entity in self._entities.values() if entity_filter.matches(entity))

    def delete_entities(self, keys: Iterable[str]) -> int:
        doomed = {key for key in keys if key in self._entities}
        if not doomed:
            return 0

        remaining = {key: e for key, e in self._entities.items() if key not in doomed}
        self._write_document(ENTITIES_FILE, [e.storage_payload() for e in remaining.values()])
        self._entities = remaining

        log.info("entities_deleted", count=len(doomed))
        return len(doomed)

    def save_history(self, records: Iterable[HistoryRecord]) -> int:
        updated = dict(self._history)
        written: set[tuple[str, str, str]] = set()

        batch = {record.identity: record for record in records}
        for record in batch.values():
            if updated.get(record.identity) == record:
                continue
            updated[record.identity] = record
            written.add(record.identity)

        if not written:
            return 0

        self._write_document(HISTORY_FILE, [r.model_dump(mode="json") for r in updated.values()])
        self._history = updated

        log.debug("history_saved", written=len(written), total=len(updated))
        return len(written)

    def load_history(self, history_filter: HistoryFilter | None = None) -> list[HistoryRecord]:
        return (history_filter or HistoryFilter()).apply(self._history.values())

    def delete_history(self, entity_keys: Iterable[str]) -> int:
        keys = set(entity_keys)
        remaining = {
            identity: record
            for identity, record in self._history.items()
            if record.entity_key not in keys
        }
        deleted = len(self._history) - len(remaining)
        if not deleted:
            return 0

        self._write_document(HISTORY_FILE, [r.model_dump(mode="json") for r in remaining.values()])
        self._history = remaining

        log.info("history_deleted", count=deleted)
        return deleted

    def save_sync_state(self, state: SyncState) -> None:
        self._write_document(SYNC_STATE_FILE, state.model_dump(mode="json"))
        log.debug(
            "sync_state_saved",
            last_sync_time=state.last_sync_time.isoformat(),
            synced_key_count=len(state.synced_keys),
        )

    def load_sync_state(self) -> SyncState | None:
        document = self._read_document(SYNC_STATE_FILE)
        if document is None:
            return None
        try:
            return SyncState.model_validate(document)
        except ValidationError as e:
            raise PersistenceError(f"Stored sync state is invalid: {e}") from e

    def get_stats(self) -> StorageStats:
        size = 0
        for name in (ENTITIES_FILE, HISTORY_FILE, SYNC_STATE_FILE):
            path = self._path(name)
            if path.exists():
                size += path.stat().st_size
        return StorageStats.from_records(
            self._entities.values(), self._history.values(), storage_size_bytes=size
        )

    def _path(self, name: str) -> Path:
        return self.data_dir / (f"{name}.gz" if self.compress else name)

    def _read_document(self, name: str) -> Any:
        path = self._path(name)
        if not path.exists():
            return None
        try:
            if self.compress:
                with gzip.open(path, "rt", encoding="utf-8") as f:
                    return json.load(f)
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e

    def _read_models(self, name: str, model: type) -> list:
        document = self._read_document(name)
        if document is None:
            return []
        try:
            return [model.model_validate(item) for item in document]
        except (TypeError, ValidationError) as e:
            raise PersistenceError(f"Stored document {name} is invalid: {e}") from e

    def _write_document(self, name: str, document: Any) -> None:
        path = self._path(name)
        fd, tmp_name = tempfile.mkstemp(dir=self.data_dir, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as raw:
                payload = json.dumps(document, ensure_ascii=False).encode("utf-8")
                if self.compress:
                    with gzip.GzipFile(fileobj=raw, mode="wb", mtime=0) as gz:
                        gz.write(payload)
                else:
                    raw.write(payload)
                raw.flush()
                os.fsync(raw.fileno())
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as e:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            log.error("json_store_write_failed", path=str(path), error=str(e))
            raise PersistenceError(f"Failed to write {path}: {e}") from e
