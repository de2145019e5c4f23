"""Change detection for telling new, updated and already-ingested entities apart."""

from datetime import datetime
from typing import Iterable

import structlog

from jirasync.models.entity import EntityRecord
from jirasync.sync.models import ChangeSet

log = structlog.stdlib.get_logger()


class ChangeDetector:
    """Classifies fetched entities against stored versions and the boundary bucket."""

    def detect_changes(
        self,
        fetched: Iterable[EntityRecord],
        stored_versions: dict[str, datetime],
        synced_keys: Iterable[str] = (),
    ) -> ChangeSet:
        """
        Classify a fetched batch.

        An entity is skipped when its key is known with the same ``updated_at``
        (or is a boundary-bucket key with no stored version to compare against),
        updated when known with a different ``updated_at``, and new otherwise.

        Args:
            fetched: Entities returned by one fetch
            stored_versions: ``updated_at`` of already stored entities, by key
            synced_keys: Keys already ingested from the boundary bucket

        Returns:
            ChangeSet with entities in first-seen order
        """
        entities = self.collapse_duplicates(fetched)
        bucket_keys = set(synced_keys)

        change_set = ChangeSet()
        for entity in entities:
            stored_at = stored_versions.get(entity.key)

            if stored_at is None:
                if entity.key in bucket_keys:
                    change_set.skipped_keys.append(entity.key)
                else:
                    change_set.new_entities.append(entity)
            elif stored_at == entity.updated_at:
                change_set.skipped_keys.append(entity.key)
            else:
                change_set.updated_entities.append(entity)

        log.debug(
            "changes_detected",
            fetched=len(entities),
            new_entities=len(change_set.new_entities),
            updated_entities=len(change_set.updated_entities),
            skipped=len(change_set.skipped_keys),
        )

        return change_set

    def collapse_duplicates(self, fetched: Iterable[EntityRecord]) -> list[EntityRecord]:
        """
        Keep one entity per key, the one with the latest ``updated_at``.

        Order follows each key's first appearance.
        """
        latest: dict[str, EntityRecord] = {}
        for entity in fetched:
            current = latest.get(entity.key)
            if current is None or entity.updated_at > current.updated_at:
                latest[entity.key] = entity
        return list(latest.values())
