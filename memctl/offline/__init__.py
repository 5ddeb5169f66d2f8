"""Offline persistence for the memctl client.

- OfflineStore: scoped cache of memory records, durable or in-memory
- PendingWriteLedger: append-only record of unconfirmed writes
"""

from memctl.offline.pending import PendingWrite, PendingWriteLedger
from memctl.offline.store import (
    InMemoryOfflineStore,
    OfflineRegistry,
    OfflineStore,
    SQLiteOfflineStore,
    open_offline_store,
)

__all__ = [
    "OfflineStore",
    "SQLiteOfflineStore",
    "InMemoryOfflineStore",
    "OfflineRegistry",
    "open_offline_store",
    "PendingWrite",
    "PendingWriteLedger",
]
