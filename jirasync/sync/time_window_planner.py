"""Splits a time range into hour-aligned windows and renders their JQL predicates."""

from datetime import datetime, timedelta
from typing import Iterable

import structlog

from jirasync.errors import InvalidRange
from jirasync.sync.models import PlannedWindow, TimeWindow, WindowPlan
from jirasync.utils.time import HOUR, UTC, ceil_hour, ensure_utc, floor_hour, format_jql_datetime

log = structlog.stdlib.get_logger()

# Lower bound of an unbounded full sync.
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

DEFAULT_MAX_EXCLUSION_KEYS = 200


class TimeWindowPlanner:
    """
    Plans the windows a sync cycle fetches.

    The remote only filters by time at hour granularity, so every predicate is
    widened to whole hours: ``updated >= floor_hour(start)`` and
    ``updated < ceil_hour(end)``. The widening re-fetches part of the hour the
    previous cycle stopped in; the keys already ingested from that hour are
    excluded from the one window that starts in it.

    Planning is a pure function of its arguments.
    """

    def __init__(
        self,
        granularity_hours: int = 1,
        base_query: str | None = None,
        max_exclusion_keys: int = DEFAULT_MAX_EXCLUSION_KEYS,
    ):
        """
        Initialize the planner.

        Args:
            granularity_hours: Default maximum window width in hours
            base_query: JQL AND-combined with every window predicate
                (e.g. ``project = PROJ``)
            max_exclusion_keys: Largest key set rendered into a NOT IN clause;
                larger sets are filtered client side instead
        """
        if granularity_hours <= 0:
            raise InvalidRange(f"granularity_hours must be positive, got {granularity_hours}")
        if max_exclusion_keys < 0:
            raise ValueError("max_exclusion_keys must not be negative")

        self.granularity_hours = granularity_hours
        self.base_query = base_query.strip() if base_query and base_query.strip() else None
        self.max_exclusion_keys = max_exclusion_keys

    def plan(
        self,
        start: datetime,
        end: datetime,
        granularity_hours: int | None = None,
        excluded_keys: Iterable[str] | None = None,
        exclusion_bucket: datetime | None = None,
    ) -> WindowPlan:
        """
        Split ``[start, end)`` into contiguous windows.

        Cut points lie on the hour grid anchored at ``floor_hour(start)``, every
        ``granularity_hours`` hours. The first window starts exactly at
        ``start`` and the last ends exactly at ``end``, so either may be
        narrower than the granularity.

        Args:
            start: Inclusive start of the range
            end: Exclusive end of the range
            granularity_hours: Window width override for this plan
            excluded_keys: Keys already ingested from ``exclusion_bucket``
            exclusion_bucket: Hour bucket the excluded keys belong to; defaults
                to ``floor_hour(start)``

        Returns:
            WindowPlan whose windows cover ``[start, end)`` exactly

        Raises:
            InvalidRange: If start is after end or the granularity is not positive
        """
        start = ensure_utc(start)
        end = ensure_utc(end)
        granularity = self.granularity_hours if granularity_hours is None else granularity_hours

        if granularity <= 0:
            raise InvalidRange(f"granularity_hours must be positive, got {granularity}")
        if start > end:
            raise InvalidRange(f"start {start.isoformat()} is after end {end.isoformat()}")

        keys = sorted(set(excluded_keys or ()))
        bucket = floor_hour(exclusion_bucket) if exclusion_bucket is not None else floor_hour(start)

        windows = [
            self._plan_window(window, keys, bucket)
            for window in self._split(start, end, timedelta(hours=granularity))
        ]

        log.debug(
            "windows_planned",
            start=start.isoformat(),
            end=end.isoformat(),
            granularity_hours=granularity,
            window_count=len(windows),
            excluded_key_count=len(keys),
        )

        return WindowPlan(start=start, end=end, granularity_hours=granularity, windows=windows)

    def plan_last_hours(self, hours: int, now: datetime) -> WindowPlan:
        """Plan ``[now - hours, now)``."""
        if hours <= 0:
            raise InvalidRange(f"hours must be positive, got {hours}")
        now = ensure_utc(now)
        return self.plan(now - timedelta(hours=hours), now)

    def plan_last_days(self, days: int, now: datetime) -> WindowPlan:
        """Plan ``[now - days, now)``."""
        if days <= 0:
            raise InvalidRange(f"days must be positive, got {days}")
        now = ensure_utc(now)
        return self.plan(now - timedelta(days=days), now)

    def plan_full(self, now: datetime, since: datetime | None = None) -> WindowPlan:
        """
        Plan a full sync.

        Without ``since`` the plan is one window from the epoch whose predicate
        has no lower time bound, paged through to exhaustion. With ``since`` it
        is an ordinary chunked plan over ``[since, now)``.
        """
        now = ensure_utc(now)
        if since is not None:
            return self.plan(since, now)

        window = TimeWindow(start=EPOCH, end=now)
        planned = PlannedWindow(
            window=window,
            predicate=self._render(None, ceil_hour(now), exclusion=None),
        )
        return WindowPlan(
            start=EPOCH, end=now, granularity_hours=self.granularity_hours, windows=[planned]
        )

    def _split(self, start: datetime, end: datetime, step: timedelta) -> list[TimeWindow]:
        windows = []
        cursor = start
        cut = floor_hour(start) + step
        while cursor < end:
            window_end = min(cut, end)
            windows.append(TimeWindow(start=cursor, end=window_end))
            cursor = window_end
            cut += step
        return windows

    def _plan_window(
        self, window: TimeWindow, keys: list[str], bucket: datetime
    ) -> PlannedWindow:
        lower = floor_hour(window.start)
        upper = ceil_hour(window.end)
        is_boundary = lower == bucket

        if not (is_boundary and keys):
            return PlannedWindow(
                window=window,
                predicate=self._render(lower, upper, exclusion=None),
                is_boundary=is_boundary,
            )

        if len(keys) > self.max_exclusion_keys:
            log.info(
                "exclusion_moved_client_side",
                window_start=window.start.isoformat(),
                key_count=len(keys),
                max_exclusion_keys=self.max_exclusion_keys,
            )
            return PlannedWindow(
                window=window,
                predicate=self._render(lower, upper, exclusion=None),
                is_boundary=True,
                post_filter_keys=keys,
            )

        return PlannedWindow(
            window=window,
            predicate=self._render(lower, upper, exclusion=self._exclusion_clause(keys, bucket, upper)),
            is_boundary=True,
            excluded_keys=keys,
        )

    def _exclusion_clause(self, keys: list[str], bucket: datetime, upper: datetime) -> str:
        key_list = ", ".join(_quote(key) for key in keys)
        bucket_end = bucket + HOUR
        if upper <= bucket_end:
            return f"key NOT IN ({key_list})"
        # Window reaches past the bucket; keys updated again later must still match.
        return f"NOT (key IN ({key_list}) AND updated < {_quote(format_jql_datetime(bucket_end))})"

    def _render(
        self, lower: datetime | None, upper: datetime, exclusion: str | None
    ) -> str:
        conditions = []
        if self.base_query:
            conditions.append(f"({self.base_query})")
        if lower is not None:
            conditions.append(f"updated >= {_quote(format_jql_datetime(lower))}")
        conditions.append(f"updated < {_quote(format_jql_datetime(upper))}")
        if exclusion:
            conditions.append(exclusion)
        return " AND ".join(conditions) + " ORDER BY updated ASC, key ASC"


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"
