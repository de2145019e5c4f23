#!/usr/bin/env python3
"""
Scheduled synchronization script for jirasync.

This script runs one synchronization cycle against Jira:
- Plans hour-aligned windows since the last checkpoint
- Fetches, deduplicates and persists issues and their change history
- Logs synchronization statistics

Designed to be run on a schedule (e.g., via cron or Airflow), or with --daemon
to keep syncing every interval_minutes.

Usage:
    python scripts/scheduled_sync.py [--config CONFIG_PATH] [--full-sync] [--daemon] [--verbose]
"""

import argparse
import asyncio
import signal
import sys

import structlog

from jirasync.errors import JiraSyncError
from jirasync.providers import get_fetcher, get_store
from jirasync.sync.models import SyncResult
from jirasync.sync.orchestrator import SyncOrchestrator
from jirasync.utils.config_loader import ConfigLoader, ConfigurationError
from jirasync.utils.logging_config import configure_from_config

log = structlog.stdlib.get_logger()


async def perform_sync(orchestrator: SyncOrchestrator, full_sync: bool = False) -> SyncResult:
    """
    Run one synchronization cycle.

    Args:
        orchestrator: Configured orchestrator
        full_sync: If True, perform full sync instead of incremental

    Returns:
        SyncResult of the cycle
    """
    if full_sync:
        log.info("performing_full_sync")
        return await orchestrator.sync_full()

    log.info("performing_incremental_sync")
    return await orchestrator.sync_incremental()


async def run_daemon(orchestrator: SyncOrchestrator) -> int:
    """Sync every interval until SIGINT/SIGTERM; returns the number of cycles."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still interrupts.
            pass
    return await orchestrator.run_scheduled(stop_event)


def exit_code(result: SyncResult) -> int:
    """0 for a complete or partial sync, 1 when the cycle achieved nothing."""
    return 1 if result.is_hard_failure else 0


def print_summary(result: SyncResult) -> None:
    """Print a human readable summary of a sync result."""
    print("\n" + "=" * 60)
    print("SYNCHRONIZATION SUMMARY")
    print("=" * 60)

    print(f"Status: {result.status}")
    print(f"Sync Type: {result.sync_type.value}")
    print(f"New Issues: {result.new_count}")
    print(f"Updated Issues: {result.updated_count}")
    print(f"Skipped Issues: {result.skipped_count}")
    print(f"History Records: {result.history_count}")
    print(f"Windows: {result.windows_succeeded}/{result.windows_total}")
    if result.last_sync_time is not None:
        print(f"Checkpoint: {result.last_sync_time.isoformat()}")

    for failed in result.failed_windows:
        print(
            f"Failed Window: {failed.window.start.isoformat()} -> "
            f"{failed.window.end.isoformat()} ({failed.error_type}: {failed.cause})"
        )
    for error in result.errors:
        print(f"Error: {error}")

    print(f"Duration: {result.duration_seconds:.2f} seconds")
    print("=" * 60)


def main():
    """Main entry point for scheduled sync script."""
    parser = argparse.ArgumentParser(description="Scheduled synchronization for jirasync")
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--full-sync",
        action="store_true",
        help="Perform full sync instead of incremental",
    )
    parser.add_argument(
        "--daemon",
        action="store_true",
        help="Keep running incremental syncs every interval_minutes",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    try:
        config = ConfigLoader().load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    configure_from_config(config.logging, verbose=args.verbose)

    try:
        store = get_store(config.storage)
        fetcher = get_fetcher(config.jira)
    except (JiraSyncError, ValueError, RuntimeError) as e:
        log.error("sync_setup_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)

    orchestrator = SyncOrchestrator(fetcher=fetcher, store=store, config=config.sync)

    try:
        if args.daemon:
            cycles = asyncio.run(run_daemon(orchestrator))
            log.info("daemon_stopped", cycles=cycles)
            sys.exit(0)

        result = asyncio.run(perform_sync(orchestrator, full_sync=args.full_sync))
    finally:
        store.close()

    print_summary(result)

    # Failed windows are retried next cycle; only a cycle that achieved nothing exits non-zero
    sys.exit(exit_code(result))


if __name__ == "__main__":
    main()
