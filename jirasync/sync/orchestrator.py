"""Sync orchestrator coordinating planning, fetching, normalization and persistence."""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog

from jirasync.errors import InvalidRange, JiraSyncError, PersistenceError, SyncInProgressError
from jirasync.ingestion.base import EntityFetcher, FetchPage, Pagination
from jirasync.models.config import SyncConfig
from jirasync.models.entity import EntityRecord, HistoryRecord, SyncState
from jirasync.models.query import EntityFilter
from jirasync.processing.changelog_normalizer import ChangelogNormalizer
from jirasync.storage.base import PersistenceStore
from jirasync.sync.change_detector import ChangeDetector
from jirasync.sync.checkpoint_tracker import CheckpointTracker
from jirasync.sync.models import (
    FailedWindow,
    PlannedWindow,
    SyncPhase,
    SyncResult,
    SyncServiceStats,
    SyncType,
    WindowPlan,
)
from jirasync.sync.time_window_planner import TimeWindowPlanner
from jirasync.utils.retry import RetryExhaustedError, RetryPolicy, SleepFunc, retry_async
from jirasync.utils.time import HOUR, UTC, ensure_utc, floor_hour

log = structlog.stdlib.get_logger()

_RUNNING_PHASES = {
    SyncPhase.PLANNING,
    SyncPhase.FETCHING,
    SyncPhase.NORMALIZING,
    SyncPhase.PERSISTING,
    SyncPhase.CHECKPOINTING,
}


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class WindowFetch:
    """Everything one window's fetch task produced."""

    planned: PlannedWindow
    entities: list[EntityRecord] = field(default_factory=list)
    error: BaseException | None = None
    attempts: int = 0


@dataclass
class _BatchOutcome:
    new: int = 0
    updated: int = 0
    skipped: int = 0
    history: int = 0
    parse_errors: int = 0
    observed: dict[str, datetime] = field(default_factory=dict)


class SyncOrchestrator:
    """
    Runs full and incremental sync cycles against one persistence store.

    Windows are fetched concurrently (bounded by ``max_concurrent_windows``)
    but applied strictly in time order, and the checkpoint only ever covers
    the contiguous run of windows that fully succeeded.
    """

    def __init__(
        self,
        fetcher: EntityFetcher,
        store: PersistenceStore,
        config: SyncConfig | None = None,
        planner: TimeWindowPlanner | None = None,
        normalizer: ChangelogNormalizer | None = None,
        change_detector: ChangeDetector | None = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: SleepFunc = asyncio.sleep,
        filter_config: dict[str, Any] | None = None,
    ):
        """
        Initialize sync orchestrator.

        Args:
            fetcher: Remote fetch collaborator
            store: Backend for entities, history and the checkpoint
            config: Sync settings (defaults apply if None)
            planner: Window planner (built from config if None)
            normalizer: Changelog normalizer
            change_detector: Dedup classifier
            clock: Returns the current UTC time
            sleep: Awaitable sleep used between retries
            filter_config: Caller-owned settings stored with the checkpoint
        """
        self._config = config or SyncConfig()
        self._fetcher = fetcher
        self._store = store
        self._planner = planner or TimeWindowPlanner(
            granularity_hours=self._config.granularity_hours,
            base_query=self._config.base_query,
            max_exclusion_keys=self._config.max_exclusion_keys,
        )
        self._normalizer = normalizer or ChangelogNormalizer()
        self._change_detector = change_detector or ChangeDetector()
        self._checkpoints = CheckpointTracker(store)
        self._retry_policy = RetryPolicy.from_config(self._config.retry)
        self._clock = clock
        self._sleep = sleep
        self._filter_config = filter_config

        self._phase = SyncPhase.IDLE
        self._cancel_requested = False
        self._history: deque[SyncResult] = deque(maxlen=self._config.max_history_count)
        self._last_successful_sync: datetime | None = None

        log.info(
            "sync_orchestrator_initialized",
            max_concurrent_windows=self._config.max_concurrent_windows,
            granularity_hours=self._config.granularity_hours,
        )

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def is_syncing(self) -> bool:
        return self._phase in _RUNNING_PHASES

    @property
    def sync_history(self) -> list[SyncResult]:
        """Retained results, oldest first."""
        return list(self._history)

    @property
    def latest_result(self) -> SyncResult | None:
        return self._history[-1] if self._history else None

    def cancel(self) -> None:
        """Ask the running cycle to stop after the window being applied."""
        if self.is_syncing:
            log.info("sync_cancel_requested", phase=self._phase.value)
            self._cancel_requested = True

    def recover_from_error(self) -> None:
        """Reset a FAILED orchestrator to IDLE."""
        if self._phase is SyncPhase.FAILED:
            log.info("sync_recovered_from_error")
            self._phase = SyncPhase.IDLE

    def should_sync(self, now: datetime | None = None) -> bool:
        """True if no cycle is running and ``interval_minutes`` passed since the last one."""
        if self.is_syncing:
            return False
        latest = self.latest_result
        if latest is None or latest.end_time is None:
            return True
        now = ensure_utc(now) if now is not None else self._clock()
        return now - latest.end_time >= timedelta(minutes=self._config.interval_minutes)

    def get_stats(self) -> SyncServiceStats:
        """Statistics over the retained results."""
        results = list(self._history)
        if not results:
            return SyncServiceStats()

        return SyncServiceStats(
            total_syncs=len(results),
            successful_syncs=sum(1 for r in results if r.success),
            total_entities_synced=sum(r.synced_count for r in results),
            average_duration_seconds=sum(r.duration_seconds for r in results) / len(results),
            last_sync_time=results[-1].end_time,
            last_successful_sync_time=self._last_successful_sync,
        )

    async def sync_incremental(self, now: datetime | None = None) -> SyncResult:
        """
        Fetch everything updated since the last checkpoint.

        Args:
            now: End of the range to sync; defaults to the clock

        Returns:
            SyncResult describing the cycle; partial failures are reported in
            it rather than raised

        Raises:
            SyncInProgressError: If a cycle is already running
        """
        now = ensure_utc(now) if now is not None else self._clock()
        result = self._begin(SyncType.INCREMENTAL, now)

        with structlog.contextvars.bound_contextvars(sync_type=SyncType.INCREMENTAL.value):
            try:
                await self._run_incremental(now, result)
            except BaseException:
                self._phase = SyncPhase.FAILED
                raise

        return self._finish(result)

    async def sync_full(self, now: datetime | None = None) -> SyncResult:
        """
        Re-fetch the whole dataset, persisting page by page.

        On success the checkpoint is replaced by one at ``now``; on failure the
        previous checkpoint is left untouched.

        Raises:
            SyncInProgressError: If a cycle is already running
        """
        now = ensure_utc(now) if now is not None else self._clock()
        result = self._begin(SyncType.FULL, now)

        with structlog.contextvars.bound_contextvars(sync_type=SyncType.FULL.value):
            try:
                await self._run_full(now, result)
            except BaseException:
                self._phase = SyncPhase.FAILED
                raise

        return self._finish(result)

    async def run_scheduled(
        self, stop_event: asyncio.Event, max_cycles: int | None = None
    ) -> int:
        """
        Run incremental cycles every ``interval_minutes`` until ``stop_event`` is set.

        A failed cycle is recovered from before the next one.

        Returns:
            Number of cycles run
        """
        interval = self._config.interval_minutes * 60
        cycles = 0
        log.info("scheduled_sync_started", interval_minutes=self._config.interval_minutes)

        while not stop_event.is_set():
            if self.should_sync():
                result = await self.sync_incremental()
                cycles += 1
                if self._phase is SyncPhase.FAILED:
                    log.warning("scheduled_sync_cycle_failed", errors=result.errors)
                    self.recover_from_error()
                if max_cycles is not None and cycles >= max_cycles:
                    break

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        log.info("scheduled_sync_stopped", cycles=cycles)
        return cycles

    def _begin(self, sync_type: SyncType, now: datetime) -> SyncResult:
        if self.is_syncing:
            raise SyncInProgressError(f"A {self._phase.value} sync cycle is already running")
        self._cancel_requested = False
        self._phase = SyncPhase.PLANNING
        log.info("sync_started", sync_type=sync_type.value, now=now.isoformat())
        return SyncResult(sync_type=sync_type, start_time=now)

    def _finish(self, result: SyncResult) -> SyncResult:
        result.finish(max(self._clock(), result.start_time))
        if result.success:
            self._last_successful_sync = result.end_time
        self._history.append(result)

        if result.is_hard_failure and not result.cancelled:
            self._phase = SyncPhase.FAILED
        else:
            self._phase = SyncPhase.IDLE

        log.info(
            "sync_completed",
            new_count=result.new_count,
            updated_count=result.updated_count,
            skipped_count=result.skipped_count,
            history_count=result.history_count,
            windows_total=result.windows_total,
            windows_succeeded=result.windows_succeeded,
            failed_windows=len(result.failed_windows),
            checkpoint_advanced=result.checkpoint_advanced,
            cancelled=result.cancelled,
            success=result.success,
            duration_seconds=result.duration_seconds,
        )
        return result

    async def _run_incremental(self, now: datetime, result: SyncResult) -> None:
        try:
            previous = self._checkpoints.load()
        except PersistenceError as e:
            log.error("sync_state_load_failed", error=str(e))
            result.add_error(f"Failed to load sync state: {e}")
            return

        if previous is None:
            start = now - timedelta(hours=self._config.initial_lookback_hours)
        else:
            start = previous.last_sync_time
        result.last_sync_time = previous.last_sync_time if previous else None

        try:
            plan = self._planner.plan(
                start,
                now,
                excluded_keys=previous.synced_keys if previous else None,
                exclusion_bucket=previous.bucket_start if previous else None,
            )
        except InvalidRange as e:
            log.error("sync_planning_failed", error=str(e))
            result.add_error(f"Invalid sync range: {e}")
            return

        result.windows_total = len(plan.windows)
        if plan.is_empty:
            log.info("nothing_to_sync", last_sync_time=start.isoformat())
            return

        committed_until, observed = await self._run_windows(plan, previous, result)

        if committed_until is None:
            return

        self._phase = SyncPhase.CHECKPOINTING
        state = CheckpointTracker.advance(
            previous, committed_until, observed, filter_config=self._filter_config
        )
        self._commit(state, previous, result)

    async def _run_windows(
        self, plan: WindowPlan, previous: SyncState | None, result: SyncResult
    ) -> tuple[datetime | None, dict[str, datetime]]:
        """Fetch concurrently and apply in order; return the committed end and observed keys."""
        self._phase = SyncPhase.FETCHING
        semaphore = asyncio.Semaphore(self._config.max_concurrent_windows)
        tasks = [
            asyncio.create_task(self._fetch_window(planned, semaphore))
            for planned in plan.windows
        ]

        expected = deque(planned.window.start for planned in plan.windows)
        ready: dict[datetime, WindowFetch] = {}
        committed_until: datetime | None = None
        observed: dict[str, datetime] = {}
        contiguous = True

        try:
            for finished in asyncio.as_completed(tasks):
                fetched = await finished
                ready[fetched.planned.window.start] = fetched

                while expected and expected[0] in ready:
                    if self._cancel_requested:
                        break
                    window_fetch = ready.pop(expected.popleft())
                    outcome = self._apply_window(window_fetch, previous, result)

                    if outcome is None:
                        contiguous = False
                        continue

                    result.windows_succeeded += 1
                    if contiguous:
                        committed_until = window_fetch.planned.window.end
                        _merge_observed(observed, outcome.observed)

                if self._cancel_requested:
                    log.info("sync_cancelled", windows_remaining=len(expected))
                    result.cancelled = True
                    break
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        return committed_until, observed

    async def _fetch_window(
        self, planned: PlannedWindow, semaphore: asyncio.Semaphore
    ) -> WindowFetch:
        async with semaphore:
            window_fetch = WindowFetch(planned=planned)
            try:
                async for page, attempts in self._iter_pages(planned):
                    window_fetch.entities.extend(page.entities)
                    window_fetch.attempts = max(window_fetch.attempts, attempts)
            except RetryExhaustedError as e:
                _reraise_programming_error(e)
                window_fetch.error = e.last_error
                window_fetch.attempts = e.attempts
            return window_fetch

    async def _iter_pages(self, planned: PlannedWindow):
        """Yield ``(page, attempts)`` for every page of a window's predicate."""
        pagination = Pagination(start_at=0, max_results=self._config.page_size)
        while True:
            attempts = 0

            async def fetch_page() -> FetchPage:
                nonlocal attempts
                attempts += 1
                return await self._fetcher.fetch(planned.predicate, pagination)

            page = await retry_async(
                fetch_page,
                self._retry_policy,
                sleep=self._sleep,
                operation="fetch_window",
            )
            yield page, attempts

            if page.is_last or page.advance_by == 0:
                return
            pagination = pagination.next(page.advance_by)

    def _apply_window(
        self, window_fetch: WindowFetch, previous: SyncState | None, result: SyncResult
    ) -> _BatchOutcome | None:
        planned = window_fetch.planned
        window = planned.window

        if window_fetch.error is not None:
            self._record_failure(result, planned, window_fetch.error, window_fetch.attempts)
            return None

        entities = window_fetch.entities
        if planned.post_filter_keys and previous is not None and previous.bucket_start:
            entities = _post_filter(entities, planned.post_filter_keys, previous.bucket_start + HOUR)

        synced_keys = previous.synced_keys if (planned.is_boundary and previous) else set()

        try:
            outcome = self._apply_entities(entities, synced_keys)
        except PersistenceError as e:
            self._record_failure(result, planned, e, window_fetch.attempts)
            return None

        # Keys dropped by the post-filter still count as observed.
        _merge_observed(outcome.observed, _observed(window_fetch.entities))
        _add_outcome(result, outcome)

        log.info(
            "window_persisted",
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
            fetched=len(window_fetch.entities),
            new_count=outcome.new,
            updated_count=outcome.updated,
            skipped_count=outcome.skipped,
            history_count=outcome.history,
        )
        return outcome

    def _apply_entities(
        self, entities: list[EntityRecord], synced_keys: set[str]
    ) -> _BatchOutcome:
        """Classify, normalize and persist one batch. Raises PersistenceError."""
        outcome = _BatchOutcome(observed=_observed(entities))
        if not entities:
            return outcome

        keys = sorted({entity.key for entity in entities})
        stored_versions = {
            entity.key: entity.updated_at
            for entity in self._store.load_entities(EntityFilter(keys=keys))
        }
        change_set = self._change_detector.detect_changes(entities, stored_versions, synced_keys)

        self._phase = SyncPhase.NORMALIZING
        records: list[HistoryRecord] = []
        for entity in change_set.to_persist:
            normalized = self._normalizer.normalize_entity(entity)
            records.extend(normalized.records)
            outcome.parse_errors += normalized.skipped

        self._phase = SyncPhase.PERSISTING
        # History first: a stored entity version implies its history is stored,
        # so a failed write is redone when the window is fetched again.
        if records:
            outcome.history = self._store.save_history(records)
        if change_set.has_changes:
            self._store.save_entities(change_set.to_persist)

        outcome.new = len(change_set.new_entities)
        outcome.updated = len(change_set.updated_entities)
        outcome.skipped = len(change_set.skipped_keys)
        self._phase = SyncPhase.FETCHING
        return outcome

    async def _run_full(self, now: datetime, result: SyncResult) -> None:
        try:
            previous = self._checkpoints.load()
        except PersistenceError as e:
            log.error("sync_state_load_failed", error=str(e))
            result.add_error(f"Failed to load sync state: {e}")
            return
        result.last_sync_time = previous.last_sync_time if previous else None

        try:
            plan = self._planner.plan_full(now, since=self._config.full_sync_since)
        except InvalidRange as e:
            log.error("sync_planning_failed", error=str(e))
            result.add_error(f"Invalid sync range: {e}")
            return

        result.windows_total = len(plan.windows)
        observed: dict[str, datetime] = {}

        for planned in plan.windows:
            if self._cancel_requested:
                log.info("sync_cancelled")
                result.cancelled = True
                break

            self._phase = SyncPhase.FETCHING
            if await self._run_full_window(planned, result, observed):
                result.windows_succeeded += 1

        if result.failed_windows or result.cancelled:
            log.warning("full_sync_incomplete_checkpoint_kept")
            return

        self._phase = SyncPhase.CHECKPOINTING
        state = CheckpointTracker.advance(
            previous,
            now,
            {key: at for key, at in observed.items() if at >= floor_hour(now)},
            filter_config=self._filter_config,
            keep_previous_keys=False,
        )
        self._commit(state, previous, result)

    async def _run_full_window(
        self, planned: PlannedWindow, result: SyncResult, observed: dict[str, datetime]
    ) -> bool:
        last_attempts = 0
        try:
            async for page, attempts in self._iter_pages(planned):
                last_attempts = attempts
                outcome = self._apply_entities(page.entities, set())
                _add_outcome(result, outcome)
                _merge_observed(observed, outcome.observed)
                if self._cancel_requested:
                    result.cancelled = True
                    return False
        except RetryExhaustedError as e:
            _reraise_programming_error(e)
            self._record_failure(result, planned, e.last_error, e.attempts)
            return False
        except PersistenceError as e:
            self._record_failure(result, planned, e, last_attempts)
            return False
        return True

    def _commit(self, state: SyncState, previous: SyncState | None, result: SyncResult) -> None:
        try:
            self._checkpoints.save(state)
        except PersistenceError as e:
            log.error("sync_state_save_failed", error=str(e))
            result.add_error(f"Failed to save sync state: {e}")
            return

        result.last_sync_time = state.last_sync_time
        result.checkpoint_advanced = (
            previous is None or state.last_sync_time > previous.last_sync_time
        )

    def _record_failure(
        self, result: SyncResult, planned: PlannedWindow, error: BaseException, attempts: int
    ) -> None:
        log.error(
            "window_failed",
            window_start=planned.window.start.isoformat(),
            window_end=planned.window.end.isoformat(),
            error=str(error),
            error_type=type(error).__name__,
            attempts=attempts,
        )
        result.failed_windows.append(
            FailedWindow(
                window=planned.window,
                cause=str(error),
                error_type=type(error).__name__,
                attempts=attempts,
            )
        )


def _reraise_programming_error(error: RetryExhaustedError) -> None:
    """Only taxonomy errors become failed windows; anything else is a bug."""
    if not isinstance(error.last_error, JiraSyncError):
        raise error.last_error


def _observed(entities: list[EntityRecord]) -> dict[str, datetime]:
    observed: dict[str, datetime] = {}
    for entity in entities:
        current = observed.get(entity.key)
        if current is None or entity.updated_at > current:
            observed[entity.key] = entity.updated_at
    return observed


def _merge_observed(target: dict[str, datetime], source: dict[str, datetime]) -> None:
    for key, updated_at in source.items():
        current = target.get(key)
        if current is None or updated_at > current:
            target[key] = updated_at


def _post_filter(
    entities: list[EntityRecord], keys: list[str], bucket_end: datetime
) -> list[EntityRecord]:
    excluded = set(keys)
    return [e for e in entities if not (e.key in excluded and e.updated_at < bucket_end)]


def _add_outcome(result: SyncResult, outcome: _BatchOutcome) -> None:
    result.new_count += outcome.new
    result.updated_count += outcome.updated
    result.skipped_count += outcome.skipped
    result.history_count += outcome.history
    result.parse_error_count += outcome.parse_errors
