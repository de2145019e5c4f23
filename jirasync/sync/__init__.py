"""Synchronization components for managing incremental updates."""

from jirasync.sync.change_detector import ChangeDetector
from jirasync.sync.checkpoint_tracker import CheckpointTracker
from jirasync.sync.models import (
    ChangeSet,
    FailedWindow,
    PlannedWindow,
    SyncPhase,
    SyncResult,
    SyncServiceStats,
    SyncType,
    TimeWindow,
    WindowPlan,
)
from jirasync.sync.orchestrator import SyncOrchestrator
from jirasync.sync.time_window_planner import TimeWindowPlanner

__all__ = [
    "ChangeDetector",
    "ChangeSet",
    "CheckpointTracker",
    "FailedWindow",
    "PlannedWindow",
    "SyncOrchestrator",
    "SyncPhase",
    "SyncResult",
    "SyncServiceStats",
    "SyncType",
    "TimeWindow",
    "TimeWindowPlanner",
    "WindowPlan",
]
