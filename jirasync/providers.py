"""Centralized provider module for storage backends and the remote fetcher.

This module provides factory functions for creating PersistenceStore and
EntityFetcher instances from configuration. Developers can modify these
functions to swap implementations without changing other code.

Default implementations:
- PersistenceStore: JsonStore (gzipped JSON documents in ./data)
- EntityFetcher: JiraFetcher (atlassian-python-api)
"""

import structlog

from jirasync.ingestion.base import EntityFetcher
from jirasync.ingestion.jira_client import JiraFetcher
from jirasync.models.config import JiraConfig, StorageConfig
from jirasync.storage.base import PersistenceStore
from jirasync.storage.json_store import JsonStore
from jirasync.storage.sqlite_store import MEMORY, SqliteStore

log = structlog.stdlib.get_logger()

DEFAULT_DATA_DIR = "./data"


def get_store(config: StorageConfig) -> PersistenceStore:
    """Get the configured storage backend.

    Recognized ``config.config`` keys:
    - json: ``data_dir`` (default ./data), ``compress`` (default True)
    - sqlite: ``path`` (default ``:memory:``)

    Args:
        config: Storage configuration

    Returns:
        PersistenceStore instance

    Raises:
        ValueError: If the backend type is unknown
        PersistenceError: If the backend cannot be opened
    """
    backend = config.type.strip().lower()
    options = config.config

    log.info("initializing_store", backend=backend)

    if backend == "json":
        store: PersistenceStore = JsonStore(
            data_dir=options.get("data_dir", DEFAULT_DATA_DIR),
            compress=bool(options.get("compress", True)),
        )
    elif backend == "sqlite":
        store = SqliteStore(path=options.get("path", MEMORY))
    else:
        error_msg = f"Unknown storage type '{config.type}'"
        log.error("get_store_failed", error=error_msg)
        raise ValueError(error_msg)

    log.info("store_initialized_successfully", backend=backend)
    return store


def get_fetcher(config: JiraConfig) -> EntityFetcher:
    """Get the configured remote fetcher.

    Developers: Modify this function to fetch from a different remote.

    Args:
        config: Jira connection settings

    Returns:
        EntityFetcher instance

    Raises:
        RuntimeError: If the client cannot be initialized
    """
    try:
        return JiraFetcher.from_config(config)
    except (ValueError, TypeError) as e:
        log.error(
            "get_fetcher_failed",
            base_url=str(config.base_url),
            error=str(e),
            error_type=type(e).__name__,
        )
        raise RuntimeError(f"Failed to initialize Jira fetcher: {e}") from e

