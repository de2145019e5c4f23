"""Storage backends implementing the persistence contract.

Backends are selected by configuration; see jirasync/providers.py.
"""

from jirasync.storage.base import PersistenceStore
from jirasync.storage.json_store import JsonStore
from jirasync.storage.sqlite_store import SqliteStore

__all__ = ["JsonStore", "PersistenceStore", "SqliteStore"]
