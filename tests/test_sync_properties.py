"""Property-based tests for synchronization logic.

**Feature: jira-incremental-sync, Property 8: Re-sync without remote changes is a no-op**
**Feature: jira-incremental-sync, Property 9: Checkpoint never regresses**
**Feature: jira-incremental-sync, Property 10: Windows are applied in time order**
"""

import asyncio
import importlib.util
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable

import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from jirasync.errors import PersistenceError, RemoteRejection, SyncInProgressError, TransportError
from jirasync.ingestion.base import FetchPage, Pagination
from jirasync.models.config import RetryConfig, SyncConfig
from jirasync.models.entity import EntityRecord, HistoryRecord, SyncState
from jirasync.models.query import HistoryFilter
from jirasync.storage.sqlite_store import SqliteStore
from jirasync.sync.change_detector import ChangeDetector
from jirasync.sync.models import FailedWindow, SyncPhase, SyncResult, SyncType, TimeWindow
from jirasync.sync.orchestrator import SyncOrchestrator

log = structlog.stdlib.get_logger()

UTC = timezone.utc
NOW = datetime(2024, 1, 15, 12, 20, tzinfo=UTC)

_NOT_IN_BUCKET = re.compile(r"NOT \(key IN \(([^)]*)\) AND updated < '([^']+)'\)")
_NOT_IN = re.compile(r"key NOT IN \(([^)]*)\)")
_LOWER = re.compile(r"updated >= '([^']+)'")
_UPPER = re.compile(r"updated < '([^']+)'")


def _jql_time(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%d %H:%M").replace(tzinfo=UTC)


def _keys(key_list: str) -> set[str]:
    return {key.strip().strip("'") for key in key_list.split(",")}


class FakeJira:
    """In-memory remote answering the JQL the planner generates."""

    def __init__(self, entities: list[EntityRecord] | None = None):
        self.entities: dict[str, EntityRecord] = {}
        self.predicates: list[str] = []
        self.fail: Callable[[str], Exception | None] = lambda predicate: None
        self.on_fetch: Callable[[str], None] = lambda predicate: None
        self.delay_for: Callable[[str], float] = lambda predicate: 0.0
        for entity in entities or []:
            self.put(entity)

    def put(self, entity: EntityRecord) -> None:
        self.entities[entity.key] = entity

    def matches(self, predicate: str, entity: EntityRecord) -> bool:
        bucket_clause = _NOT_IN_BUCKET.search(predicate)
        if bucket_clause:
            if entity.key in _keys(bucket_clause.group(1)) and entity.updated_at < _jql_time(
                bucket_clause.group(2)
            ):
                return False
            predicate = _NOT_IN_BUCKET.sub("", predicate)

        not_in = _NOT_IN.search(predicate)
        if not_in and entity.key in _keys(not_in.group(1)):
            return False

        lower = _LOWER.search(predicate)
        if lower and entity.updated_at < _jql_time(lower.group(1)):
            return False
        upper = _UPPER.search(predicate)
        if upper and entity.updated_at >= _jql_time(upper.group(1)):
            return False
        return True

    async def fetch(self, predicate: str, pagination: Pagination) -> FetchPage:
        self.predicates.append(predicate)
        self.on_fetch(predicate)
        delay = self.delay_for(predicate)
        if delay:
            await asyncio.sleep(delay)

        error = self.fail(predicate)
        if error is not None:
            raise error

        hits = sorted(
            (e for e in self.entities.values() if self.matches(predicate, e)),
            key=lambda e: (e.updated_at, e.key),
        )
        page = hits[pagination.start_at : pagination.start_at + pagination.max_results]
        return FetchPage(
            entities=page,
            start_at=pagination.start_at,
            total=len(hits),
            is_last=pagination.start_at + len(page) >= len(hits),
        )


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def issue(key: str, updated_at: datetime, changelog_items: int = 0) -> EntityRecord:
    histories = [
        {
            "id": f"{key}-c{n}",
            "created": updated_at.isoformat(),
            "items": [{"field": "status", "fromString": "Open", "toString": "Done"}],
        }
        for n in range(changelog_items)
    ]
    return EntityRecord(
        key=key,
        updated_at=updated_at,
        fields={"summary": f"Issue {key}"},
        changelog={"histories": histories},
    )


def make_orchestrator(
    remote: FakeJira, store: SqliteStore | None = None, sleep=None, **config
) -> SyncOrchestrator:
    config.setdefault("page_size", 2)
    return SyncOrchestrator(
        fetcher=remote,
        store=store or SqliteStore(),
        config=SyncConfig(**config),
        clock=lambda: NOW + timedelta(days=30),
        sleep=sleep or RecordingSleep(),
    )


def test_scenario_b_boundary_keys_are_not_reingested():
    """synced_keys = {X-1} for bucket H; a fetch returning {X-1, X-2} gives new=1, updated=0."""
    bucket = datetime(2024, 1, 15, 10, tzinfo=UTC)
    x1 = issue("X-1", bucket + timedelta(minutes=15))
    x2 = issue("X-2", bucket + timedelta(minutes=45))

    change_set = ChangeDetector().detect_changes([x1, x2], stored_versions={}, synced_keys={"X-1"})

    assert [e.key for e in change_set.new_entities] == ["X-2"]
    assert change_set.updated_entities == []
    assert change_set.skipped_keys == ["X-1"]


@pytest.mark.parametrize("max_exclusion_keys", [200, 0])
def test_scenario_b_through_the_orchestrator(max_exclusion_keys: int):
    """The same outcome whether the exclusion runs in JQL or client side."""
    bucket = datetime(2024, 1, 15, 10, tzinfo=UTC)
    x1 = issue("X-1", bucket + timedelta(minutes=15))
    remote = FakeJira([x1, issue("X-2", bucket + timedelta(minutes=45))])
    store = SqliteStore()
    store.save_entities([x1])
    store.save_sync_state(
        SyncState(last_sync_time=bucket + timedelta(minutes=30), synced_keys={"X-1"})
    )
    orchestrator = make_orchestrator(remote, store, max_exclusion_keys=max_exclusion_keys)

    result = asyncio.run(orchestrator.sync_incremental(now=bucket + timedelta(hours=1)))

    assert (result.new_count, result.updated_count) == (1, 0)
    assert result.success
    state = store.load_sync_state()
    assert state.last_sync_time == bucket + timedelta(hours=1)
    assert state.synced_keys == set()


def test_moved_boundary_key_is_updated():
    bucket = datetime(2024, 1, 15, 10, tzinfo=UTC)
    x1 = issue("X-1", bucket + timedelta(minutes=15))
    remote = FakeJira([issue("X-1", bucket + timedelta(hours=2))])
    store = SqliteStore()
    store.save_entities([x1])
    store.save_sync_state(SyncState(last_sync_time=bucket + timedelta(minutes=30), synced_keys={"X-1"}))
    orchestrator = make_orchestrator(remote, store, granularity_hours=4)

    result = asyncio.run(orchestrator.sync_incremental(now=bucket + timedelta(hours=3)))

    assert (result.new_count, result.updated_count) == (0, 1)
    (stored,) = store.load_entities()
    assert stored.updated_at == bucket + timedelta(hours=2)


@given(
    st.lists(st.integers(min_value=1, max_value=24 * 60 - 1), min_size=0, max_size=12),
    st.integers(min_value=1, max_value=3),
)
@settings(max_examples=25, deadline=None)
def test_property_8_resync_without_changes_is_noop(offsets: list[int], concurrency: int):
    """Property 8: Re-sync without remote changes is a no-op.

    For any remote dataset, a second incremental sync with no new remote data
    reports zero new and zero updated entities.

    **Feature: jira-incremental-sync, Property 8: Re-sync without remote changes is a no-op**
    """
    log.info("test_property_8_resync_without_changes_is_noop", entities=len(offsets))
    remote = FakeJira(
        [issue(f"PROJ-{i}", NOW - timedelta(minutes=m), changelog_items=1) for i, m in enumerate(offsets)]
    )
    store = SqliteStore()
    orchestrator = make_orchestrator(remote, store, max_concurrent_windows=concurrency)

    first = asyncio.run(orchestrator.sync_incremental(now=NOW))
    second = asyncio.run(orchestrator.sync_incremental(now=NOW + timedelta(minutes=30)))

    assert first.new_count == len(offsets)
    assert first.history_count == len(offsets)
    assert (second.new_count, second.updated_count) == (0, 0)
    assert second.history_count == 0
    assert store.count_entities() == len(offsets)


def test_first_sync_covers_initial_lookback():
    remote = FakeJira(
        [issue("PROJ-1", NOW - timedelta(hours=30)), issue("PROJ-2", NOW - timedelta(hours=2))]
    )
    orchestrator = make_orchestrator(remote)

    result = asyncio.run(orchestrator.sync_incremental(now=NOW))

    assert result.new_count == 1
    assert result.windows_total == 25
    assert result.windows_succeeded == 25
    assert result.checkpoint_advanced
    assert result.last_sync_time == NOW


def test_scenario_d_three_transient_failures_then_success():
    """Backoff 1s, 2s, 4s then success: no failed window, data persisted."""
    remote = FakeJira([issue("PROJ-1", NOW - timedelta(minutes=5))])
    failures = iter([TransportError("reset")] * 3)
    remote.fail = lambda predicate: next(failures, None)
    sleep = RecordingSleep()
    store = SqliteStore()
    orchestrator = make_orchestrator(
        remote, store, sleep=sleep, initial_lookback_hours=1, max_concurrent_windows=1
    )

    result = asyncio.run(orchestrator.sync_incremental(now=NOW))

    assert sleep.delays == [1.0, 2.0, 4.0]
    assert result.failed_windows == []
    assert result.new_count == 1
    assert store.count_entities() == 1


def test_scenario_d_fourth_failure_fails_only_that_window():
    """A window exhausting its attempts is reported and the checkpoint stops before it."""
    start = datetime(2024, 1, 15, 9, tzinfo=UTC)
    store = SqliteStore()
    store.save_sync_state(SyncState(last_sync_time=start))
    remote = FakeJira(
        [
            issue("PROJ-1", start + timedelta(minutes=10)),
            issue("PROJ-2", start + timedelta(hours=1, minutes=10)),
            issue("PROJ-3", start + timedelta(hours=2, minutes=10)),
        ]
    )
    remote.fail = lambda predicate: (
        TransportError("timeout") if "updated >= '2024-01-15 10:00'" in predicate else None
    )
    sleep = RecordingSleep()
    orchestrator = make_orchestrator(remote, store, sleep=sleep)

    result = asyncio.run(orchestrator.sync_incremental(now=start + timedelta(hours=3)))

    (failed,) = result.failed_windows
    assert failed.window.start == start + timedelta(hours=1)
    assert failed.attempts == 4
    assert failed.error_type == "TransportError"
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert result.windows_succeeded == 2
    assert not result.success
    assert not result.is_hard_failure
    assert orchestrator.phase is SyncPhase.IDLE

    # Later windows are still persisted; the checkpoint stops before the failure.
    assert sorted(e.key for e in store.load_entities()) == ["PROJ-1", "PROJ-3"]
    assert store.load_sync_state().last_sync_time == start + timedelta(hours=1)

    remote.fail = lambda predicate: None
    retry = asyncio.run(orchestrator.sync_incremental(now=start + timedelta(hours=3)))

    assert retry.new_count == 1
    assert retry.success
    assert store.load_sync_state().last_sync_time == start + timedelta(hours=3)


def test_non_retryable_rejection_fails_immediately():
    remote = FakeJira([issue("PROJ-1", NOW - timedelta(minutes=5))])
    remote.fail = lambda predicate: RemoteRejection("bad jql", status_code=400)
    sleep = RecordingSleep()
    orchestrator = make_orchestrator(remote, sleep=sleep, initial_lookback_hours=1)

    result = asyncio.run(orchestrator.sync_incremental(now=NOW))

    assert sleep.delays == []
    assert [f.attempts for f in result.failed_windows] == [1, 1]
    assert result.is_hard_failure
    assert orchestrator.phase is SyncPhase.FAILED

    orchestrator.recover_from_error()
    assert orchestrator.phase is SyncPhase.IDLE


@given(st.lists(st.booleans(), min_size=1, max_size=6))
@settings(max_examples=25, deadline=None)
def test_property_9_checkpoint_never_regresses(outages: list[bool]):
    """Property 9: Checkpoint never regresses.

    For any sequence of healthy and failing cycles, last_sync_time never
    decreases, and every healthy cycle catches up to its ``now``.

    **Feature: jira-incremental-sync, Property 9: Checkpoint never regresses**
    """
    log.info("test_property_9_checkpoint_never_regresses", outages=outages)
    remote = FakeJira()
    store = SqliteStore()
    orchestrator = make_orchestrator(remote, store, initial_lookback_hours=2)
    checkpoints: list[datetime] = []

    for cycle, outage in enumerate(outages):
        now = NOW + timedelta(minutes=70 * cycle)
        remote.put(issue(f"PROJ-{cycle}", now - timedelta(minutes=1)))
        remote.fail = (lambda predicate: TransportError("down")) if outage else (lambda predicate: None)

        asyncio.run(orchestrator.sync_incremental(now=now))
        orchestrator.recover_from_error()

        state = store.load_sync_state()
        if state is not None:
            checkpoints.append(state.last_sync_time)
            if not outage:
                assert state.last_sync_time == now

    assert checkpoints == sorted(checkpoints)


def test_property_10_windows_applied_in_time_order():
    """Property 10: Windows are applied in time order.

    Even when later windows finish fetching first, entities reach the store
    in window order.

    **Feature: jira-incremental-sync, Property 10: Windows are applied in time order**
    """
    start = datetime(2024, 1, 15, 6, tzinfo=UTC)
    remote = FakeJira(
        [issue(f"PROJ-{h}", start + timedelta(hours=h, minutes=30)) for h in range(6)]
    )
    # Later windows answer faster.
    remote.delay_for = lambda predicate: 0.02 * (12 - int(_LOWER.search(predicate).group(1)[11:13]))
    store = SqliteStore()
    store.save_sync_state(SyncState(last_sync_time=start))
    orchestrator = make_orchestrator(remote, store, max_concurrent_windows=6)

    result = asyncio.run(orchestrator.sync_incremental(now=start + timedelta(hours=6)))

    assert result.windows_succeeded == 6
    assert [e.key for e in store.load_entities()] == [f"PROJ-{h}" for h in range(6)]


def test_concurrent_cycle_is_rejected():
    remote = FakeJira([issue("PROJ-1", NOW - timedelta(minutes=5))])
    orchestrator = make_orchestrator(remote, initial_lookback_hours=1)

    async def run_both():
        release = asyncio.Event()

        async def slow_fetch(predicate, pagination):
            await release.wait()
            return FetchPage()

        remote.fetch = slow_fetch
        running = asyncio.create_task(orchestrator.sync_incremental(now=NOW))
        await asyncio.sleep(0)
        assert orchestrator.is_syncing
        with pytest.raises(SyncInProgressError):
            await orchestrator.sync_full(now=NOW)
        release.set()
        return await running

    result = asyncio.run(run_both())
    assert result.success
    assert orchestrator.phase is SyncPhase.IDLE


def test_cancel_stops_between_windows():
    remote = FakeJira([issue("PROJ-1", NOW - timedelta(hours=3))])
    store = SqliteStore()
    orchestrator = make_orchestrator(remote, store, max_concurrent_windows=1)
    remote.on_fetch = lambda predicate: orchestrator.cancel()

    result = asyncio.run(orchestrator.sync_incremental(now=NOW))

    assert result.cancelled
    assert result.windows_succeeded == 0
    assert not result.checkpoint_advanced
    assert store.load_sync_state() is None
    assert orchestrator.phase is SyncPhase.IDLE


def test_full_sync_checkpoints_at_now():
    remote = FakeJira(
        [
            issue("PROJ-1", NOW - timedelta(days=400), changelog_items=2),
            issue("PROJ-2", NOW - timedelta(minutes=10)),
            issue("PROJ-3", NOW - timedelta(minutes=40)),
        ]
    )
    store = SqliteStore()
    orchestrator = make_orchestrator(remote, store)

    result = asyncio.run(orchestrator.sync_full(now=NOW))

    assert result.sync_type is SyncType.FULL
    assert result.new_count == 3
    assert result.history_count == 2
    assert result.windows_total == 1
    state = store.load_sync_state()
    assert state.last_sync_time == NOW
    assert state.synced_keys == {"PROJ-2"}

    follow_up = asyncio.run(orchestrator.sync_incremental(now=NOW + timedelta(minutes=20)))
    assert (follow_up.new_count, follow_up.updated_count) == (0, 0)
    assert "key NOT IN ('PROJ-2')" in remote.predicates[-1]


def test_full_sync_failure_keeps_previous_checkpoint():
    previous = SyncState(last_sync_time=NOW - timedelta(hours=5))
    store = SqliteStore()
    store.save_sync_state(previous)
    remote = FakeJira([issue("PROJ-1", NOW - timedelta(minutes=10))])
    remote.fail = lambda predicate: RemoteRejection("forbidden", status_code=403)
    orchestrator = make_orchestrator(remote, store)

    result = asyncio.run(orchestrator.sync_full(now=NOW))

    assert len(result.failed_windows) == 1
    assert store.load_sync_state().last_sync_time == previous.last_sync_time


class FailingCheckpointStore(SqliteStore):
    def save_sync_state(self, state: SyncState) -> None:
        raise PersistenceError("disk full")


def test_checkpoint_write_failure_fails_the_cycle():
    store = FailingCheckpointStore()
    remote = FakeJira([issue("PROJ-1", NOW - timedelta(minutes=5))])
    orchestrator = make_orchestrator(remote, store, initial_lookback_hours=1)

    result = asyncio.run(orchestrator.sync_incremental(now=NOW))

    assert result.errors == ["Failed to save sync state: disk full"]
    assert not result.checkpoint_advanced
    assert orchestrator.phase is SyncPhase.FAILED
    assert store.load_sync_state() is None


class FlakyWriteStore(SqliteStore):
    """Rejects one kind of write touching ``failing_keys`` while they are set."""

    def __init__(self, operation: str, failing_keys: set[str]):
        super().__init__()
        self.operation = operation
        self.failing_keys = failing_keys

    def _check(self, operation: str, keys: set[str]) -> None:
        if operation == self.operation and keys & self.failing_keys:
            raise PersistenceError("database is locked")

    def save_entities(self, entities: Iterable[EntityRecord]) -> int:
        entities = list(entities)
        self._check("save_entities", {entity.key for entity in entities})
        return super().save_entities(entities)

    def save_history(self, records: Iterable[HistoryRecord]) -> int:
        records = list(records)
        self._check("save_history", {record.entity_key for record in records})
        return super().save_history(records)


def stored_history(store: SqliteStore, key: str) -> list[str]:
    return [record.change_id for record in store.load_history(HistoryFilter(entity_keys=[key]))]


def test_failed_history_write_is_recovered_next_cycle():
    checkpoint = datetime(2024, 1, 15, 12, tzinfo=UTC)
    store = FlakyWriteStore("save_history", {"PROJ-1"})
    store.save_sync_state(SyncState(last_sync_time=checkpoint))
    remote = FakeJira([issue("PROJ-1", NOW - timedelta(minutes=5), changelog_items=2)])
    orchestrator = make_orchestrator(remote, store)

    first = asyncio.run(orchestrator.sync_incremental(now=NOW))

    (failed,) = first.failed_windows
    assert failed.error_type == "PersistenceError"
    assert first.is_hard_failure
    assert store.load_entities() == []
    assert store.load_sync_state().last_sync_time == checkpoint

    store.failing_keys = set()
    second = asyncio.run(orchestrator.sync_incremental(now=NOW))

    assert second.success
    assert second.new_count == 1
    assert second.history_count == 2
    assert stored_history(store, "PROJ-1") == ["PROJ-1-c0", "PROJ-1-c1"]


@pytest.mark.parametrize("operation", ["save_entities", "save_history"])
def test_persistence_failure_fails_only_that_window(operation: str):
    start = datetime(2024, 1, 15, 9, tzinfo=UTC)
    store = FlakyWriteStore(operation, {"PROJ-2"})
    store.save_sync_state(SyncState(last_sync_time=start))
    remote = FakeJira(
        [
            issue("PROJ-1", start + timedelta(minutes=10), changelog_items=2),
            issue("PROJ-2", start + timedelta(hours=1, minutes=10), changelog_items=2),
            issue("PROJ-3", start + timedelta(hours=2, minutes=10), changelog_items=2),
        ]
    )
    orchestrator = make_orchestrator(remote, store)

    result = asyncio.run(orchestrator.sync_incremental(now=start + timedelta(hours=3)))

    (failed,) = result.failed_windows
    assert failed.window.start == start + timedelta(hours=1)
    assert failed.error_type == "PersistenceError"
    assert result.windows_succeeded == 2
    assert not result.success
    assert not result.is_hard_failure
    assert sorted(e.key for e in store.load_entities()) == ["PROJ-1", "PROJ-3"]
    assert stored_history(store, "PROJ-1") == ["PROJ-1-c0", "PROJ-1-c1"]
    assert stored_history(store, "PROJ-3") == ["PROJ-3-c0", "PROJ-3-c1"]
    assert store.load_sync_state().last_sync_time == start + timedelta(hours=1)

    store.failing_keys = set()
    retry = asyncio.run(orchestrator.sync_incremental(now=start + timedelta(hours=3)))

    assert retry.success
    assert retry.new_count == 1
    assert sorted(e.key for e in store.load_entities()) == ["PROJ-1", "PROJ-2", "PROJ-3"]
    assert stored_history(store, "PROJ-2") == ["PROJ-2-c0", "PROJ-2-c1"]
    assert store.load_sync_state().last_sync_time == start + timedelta(hours=3)


def test_checkpoint_in_the_future_is_reported_as_cycle_error():
    store = SqliteStore()
    store.save_sync_state(SyncState(last_sync_time=NOW + timedelta(hours=1)))
    orchestrator = make_orchestrator(FakeJira(), store)

    result = asyncio.run(orchestrator.sync_incremental(now=NOW))

    assert len(result.errors) == 1
    assert result.errors[0].startswith("Invalid sync range")
    assert orchestrator.phase is SyncPhase.FAILED


def test_history_retention_and_stats():
    remote = FakeJira([issue("PROJ-1", NOW - timedelta(minutes=5))])
    orchestrator = make_orchestrator(remote, max_history_count=2, initial_lookback_hours=1)

    for cycle in range(3):
        asyncio.run(orchestrator.sync_incremental(now=NOW + timedelta(hours=cycle)))

    assert len(orchestrator.sync_history) == 2
    assert orchestrator.latest_result is orchestrator.sync_history[-1]
    stats = orchestrator.get_stats()
    assert stats.total_syncs == 2
    assert stats.successful_syncs == 2
    assert stats.total_entities_synced == 0
    assert stats.last_successful_sync_time == orchestrator.latest_result.end_time


def test_should_sync_respects_interval():
    orchestrator = make_orchestrator(FakeJira(), interval_minutes=60, initial_lookback_hours=1)
    assert orchestrator.should_sync(now=NOW)

    asyncio.run(orchestrator.sync_incremental(now=NOW))
    finished = orchestrator.latest_result.end_time

    assert not orchestrator.should_sync(now=finished + timedelta(minutes=59))
    assert orchestrator.should_sync(now=finished + timedelta(minutes=60))


def test_run_scheduled_stops_after_max_cycles():
    orchestrator = make_orchestrator(FakeJira(), initial_lookback_hours=1)

    async def run() -> int:
        return await orchestrator.run_scheduled(asyncio.Event(), max_cycles=1)

    assert asyncio.run(run()) == 1
    assert len(orchestrator.sync_history) == 1


def test_retry_config_flows_into_orchestrator():
    remote = FakeJira([issue("PROJ-1", NOW - timedelta(minutes=5))])
    remote.fail = lambda predicate: TransportError("down")
    sleep = RecordingSleep()
    orchestrator = make_orchestrator(
        remote,
        sleep=sleep,
        initial_lookback_hours=1,
        retry=RetryConfig(max_attempts=2, base_delay=0.5),
    )

    result = asyncio.run(orchestrator.sync_incremental(now=NOW))

    assert [f.attempts for f in result.failed_windows] == [2, 2]
    assert sleep.delays == [0.5, 0.5]


def test_programming_errors_propagate():
    remote = FakeJira()
    remote.fail = lambda predicate: KeyError("fields")
    orchestrator = make_orchestrator(remote, initial_lookback_hours=1)

    with pytest.raises(KeyError):
        asyncio.run(orchestrator.sync_incremental(now=NOW))

    assert orchestrator.phase is SyncPhase.FAILED
    assert orchestrator.sync_history == []


def load_scheduled_sync_script():
    path = Path(__file__).parent.parent / "scripts" / "scheduled_sync.py"
    spec = importlib.util.spec_from_file_location("scheduled_sync", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.parametrize(
    ("succeeded", "failed", "errors", "status", "code"),
    [
        (3, 0, [], "SUCCESS", 0),
        (0, 0, [], "SUCCESS", 0),
        (2, 1, [], "PARTIAL", 0),
        (0, 3, [], "FAILED", 1),
        (3, 0, ["Failed to save sync state: disk full"], "FAILED", 1),
    ],
)
def test_scheduled_sync_reports_partial_success(
    succeeded: int, failed: int, errors: list[str], status: str, code: int, capsys: pytest.CaptureFixture
):
    script = load_scheduled_sync_script()
    window = TimeWindow(start=NOW - timedelta(hours=1), end=NOW)
    result = SyncResult(
        sync_type=SyncType.INCREMENTAL,
        start_time=NOW,
        windows_total=succeeded + failed,
        windows_succeeded=succeeded,
        failed_windows=[
            FailedWindow(window=window, cause="timeout", error_type="TransportError") for _ in range(failed)
        ],
        errors=errors,
    )

    script.print_summary(result)

    assert result.status == status
    assert script.exit_code(result) == code
    assert f"Status: {status}\n" in capsys.readouterr().out
