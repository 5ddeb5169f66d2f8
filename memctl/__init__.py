"""Resilient client for the memctl memory API.

This package provides:
- SyncClient: cached, deduplicated, offline-tolerant access to the API
- FreshnessCache / RequestDeduplicator: in-process read policy
- OfflineStore: durable (SQLite) or in-memory record cache for offline reads
- PendingWriteLedger: visibility for writes that never reached the server
"""

from memctl.cache import CachedValue, CacheEntry, FreshnessCache
from memctl.client import DeltaCounts, SyncClient
from memctl.config import ClientConfig
from memctl.dedup import RequestDeduplicator
from memctl.exceptions import (
    MemctlError,
    NetworkError,
    PersistenceError,
    ProtocolError,
)
from memctl.offline import (
    InMemoryOfflineStore,
    OfflineRegistry,
    OfflineStore,
    PendingWrite,
    PendingWriteLedger,
    SQLiteOfflineStore,
    open_offline_store,
)
from memctl.state import ConnectionState, Freshness

__all__ = [
    # Client
    "SyncClient",
    "ClientConfig",
    "DeltaCounts",
    "ConnectionState",
    "Freshness",
    # Read policy
    "FreshnessCache",
    "CacheEntry",
    "CachedValue",
    "RequestDeduplicator",
    # Offline
    "OfflineStore",
    "SQLiteOfflineStore",
    "InMemoryOfflineStore",
    "OfflineRegistry",
    "open_offline_store",
    "PendingWrite",
    "PendingWriteLedger",
    # Exceptions
    "MemctlError",
    "ProtocolError",
    "NetworkError",
    "PersistenceError",
]
