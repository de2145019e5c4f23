"""Checkpoint tracking for maintaining synchronization state."""

from datetime import datetime
from typing import Any

import structlog

from jirasync.models.entity import SyncState
from jirasync.storage.base import PersistenceStore
from jirasync.utils.time import ensure_utc, floor_hour

log = structlog.stdlib.get_logger()


class CheckpointTracker:
    """Loads, advances and persists the SyncState through a PersistenceStore."""

    def __init__(self, store: PersistenceStore):
        """
        Initialize checkpoint tracker.

        Args:
            store: Backend the checkpoint is persisted in
        """
        self._store = store

    def load(self) -> SyncState | None:
        """
        Load the last committed checkpoint.

        Raises:
            PersistenceError: If the backend cannot be read
        """
        state = self._store.load_sync_state()
        if state is None:
            log.info("no_sync_state_found")
            return None

        log.info(
            "sync_state_loaded",
            last_sync_time=state.last_sync_time.isoformat(),
            bucket_start=state.bucket_start.isoformat() if state.bucket_start else None,
            synced_key_count=len(state.synced_keys),
        )
        return state

    def save(self, state: SyncState) -> None:
        """
        Persist a checkpoint as a full replace.

        Raises:
            PersistenceError: If the write fails; the stored checkpoint is unchanged
        """
        self._store.save_sync_state(state)
        log.info(
            "sync_state_saved",
            last_sync_time=state.last_sync_time.isoformat(),
            synced_key_count=len(state.synced_keys),
        )

    @staticmethod
    def advance(
        previous: SyncState | None,
        committed_until: datetime,
        observed: dict[str, datetime],
        filter_config: dict[str, Any] | None = None,
        keep_previous_keys: bool = True,
    ) -> SyncState:
        """
        Build the checkpoint that follows ``previous``.

        ``last_sync_time`` never moves backwards. ``synced_keys`` holds the
        observed keys whose ``updated_at`` falls in the new boundary bucket;
        the previous keys are kept only while the bucket stays the same.

        Args:
            previous: Checkpoint the cycle started from
            committed_until: End of the last contiguous committed window
            observed: ``updated_at`` of every key fetched by committed windows
            filter_config: Caller-owned settings; defaults to the previous ones
            keep_previous_keys: Merge previous keys when the bucket is unchanged

        Returns:
            New SyncState
        """
        committed_until = ensure_utc(committed_until)
        if previous is not None and previous.last_sync_time > committed_until:
            committed_until = previous.last_sync_time

        bucket = floor_hour(committed_until)
        keys = {key for key, updated_at in observed.items() if updated_at >= bucket}

        if keep_previous_keys and previous is not None and previous.bucket_start == bucket:
            keys |= previous.synced_keys

        if filter_config is None:
            filter_config = dict(previous.filter_config) if previous is not None else {}

        return SyncState(
            last_sync_time=committed_until,
            synced_keys=keys,
            bucket_start=bucket,
            filter_config=filter_config,
        )
