"""Offline memory cache used when the API is unreachable.

Two strategies implement the same OfflineStore interface:

- SQLiteOfflineStore: durable, file-backed through SQLAlchemy and aiosqlite
- InMemoryOfflineStore: process-local, backed by an OfflineRegistry

open_offline_store() tries the durable strategy once and falls back to the
in-memory one if it cannot be opened. Either way the store fails open: storage
errors are logged and turned into empty results, never raised to callers.
"""

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional
from urllib.parse import parse_qs, unquote, urlsplit

from sqlalchemy import delete, event, func, or_, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from memctl.exceptions import PersistenceError
from memctl.offline.models import Base, CachedMemory, SyncMeta

logger = logging.getLogger(__name__)

STALE_THRESHOLD_SECONDS = 5 * 60
SEARCH_LIMIT = 50
LIST_LIMIT = 100

SINGLE_KEY_PATH = re.compile(r"^/memories/([^/]+)$")

Scope = tuple[str, str]


def now_ms() -> int:
    return int(time.time() * 1000)


def _encode_json_field(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _coerce_timestamp(value: Any, default: int) -> int:
    """Convert an updatedAt value (unix ms, ISO string or datetime) to unix ms."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return default
        return int(parsed.timestamp() * 1000)
    return default


def normalize_record(record: dict, org: str, project: str, default_ts: int) -> Optional[dict]:
    """Flatten an API memory into the offline record shape.

    Returns:
        Record dict, or None if the memory has no key
    """
    key = str(record.get("key") or "")
    if not key:
        return None

    try:
        priority = int(record.get("priority") or 0)
    except (TypeError, ValueError):
        priority = 0

    return {
        "key": key,
        "content": str(record.get("content") or ""),
        "metadata": _encode_json_field(record.get("metadata")),
        "tags": _encode_json_field(record.get("tags")),
        "priority": priority,
        "project": project,
        "org": org,
        "updated_at": _coerce_timestamp(
            record.get("updatedAt", record.get("updated_at")), default_ts
        ),
    }


class OfflineRegistry:
    """Process-local record maps for stores without durable storage.

    Owned by a SyncClient (or shared explicitly between clients), keyed by
    (org, project) so different scopes never see each other's records.
    """

    def __init__(self):
        self._records: dict[Scope, dict[str, dict]] = {}
        self._last_sync: dict[Scope, int] = {}

    def records(self, scope: Scope) -> dict[str, dict]:
        return self._records.setdefault(scope, {})

    def has_scope(self, scope: Scope) -> bool:
        return bool(self._records.get(scope))

    def last_sync_at(self, scope: Scope) -> int:
        return self._last_sync.get(scope, 0)

    def set_last_sync_at(self, scope: Scope, timestamp: int) -> None:
        self._last_sync[scope] = timestamp

    def drop(self, scope: Scope) -> None:
        self._records.pop(scope, None)
        self._last_sync.pop(scope, None)

    def clear(self) -> None:
        self._records.clear()
        self._last_sync.clear()

    def __len__(self) -> int:
        return len(self._records)


class OfflineStore(ABC):
    """Scoped offline cache of memory records."""

    mode = "none"

    def __init__(
        self,
        org: str,
        project: str,
        stale_after: float = STALE_THRESHOLD_SECONDS,
    ):
        self.org = org
        self.project = project
        self.stale_after = stale_after
        self._last_sync_at = 0

    @property
    def scope(self) -> Scope:
        return (self.org, self.project)

    @property
    def last_sync_at(self) -> int:
        """Unix ms of the last applied batch, 0 if never synced."""
        return self._last_sync_at

    # Strategy hooks. Implementations may raise; the public methods below
    # translate any failure into an empty result.

    @abstractmethod
    async def _upsert(self, rows: list[dict]) -> None: ...

    @abstractmethod
    async def _delete(self, keys: list[str]) -> None: ...

    @abstractmethod
    async def _save_checkpoint(self, timestamp: int) -> None: ...

    @abstractmethod
    async def _get(self, key: str) -> Optional[dict]: ...

    @abstractmethod
    async def _search(self, query: str) -> list[dict]: ...

    @abstractmethod
    async def _list(self) -> list[dict]: ...

    @abstractmethod
    async def _count(self) -> int: ...

    async def close(self) -> None:
        """Release storage resources."""

    def _log_failure(self, operation: str, error: Exception) -> None:
        logger.info(
            f"Offline cache {operation} failed for {self.org}/{self.project}: {error}"
        )

    async def sync(self, records: Iterable[dict], advance_checkpoint: bool = True) -> bool:
        """Upsert memories wholesale under this store's scope.

        Args:
            records: Memory dicts as returned by the API
            advance_checkpoint: Move last_sync_at to now once the batch commits

        Returns:
            True if the batch was applied (or was empty)
        """
        timestamp = now_ms()
        rows = [
            row
            for row in (
                normalize_record(record, self.org, self.project, timestamp)
                for record in records
                if isinstance(record, dict)
            )
            if row is not None
        ]
        if not rows:
            return True

        try:
            await self._upsert(rows)
        except Exception as e:
            self._log_failure("sync", e)
            return False

        logger.debug(f"Cached {len(rows)} memories for {self.org}/{self.project}")
        if advance_checkpoint:
            return await self.mark_synced(timestamp)
        return True

    async def mark_synced(self, timestamp: int) -> bool:
        """Advance the checkpoint; never moves it backwards."""
        new_value = max(self._last_sync_at, int(timestamp))
        if new_value == self._last_sync_at:
            return True
        try:
            await self._save_checkpoint(new_value)
        except Exception as e:
            self._log_failure("checkpoint", e)
            return False
        self._last_sync_at = new_value
        return True

    async def remove_keys(self, keys: Iterable[str]) -> bool:
        keys = [str(key) for key in keys]
        if not keys:
            return True
        try:
            await self._delete(keys)
        except Exception as e:
            self._log_failure("delete", e)
            return False
        logger.debug(f"Removed {len(keys)} memories for {self.org}/{self.project}")
        return True

    async def get(self, key: str) -> Optional[dict]:
        try:
            return await self._get(key)
        except Exception as e:
            self._log_failure("get", e)
            return None

    async def search(self, query: str) -> list[dict]:
        """Case-insensitive substring match over key or content."""
        try:
            return await self._search(query)
        except Exception as e:
            self._log_failure("search", e)
            return []

    async def list_records(self) -> list[dict]:
        """Most recently updated records first."""
        try:
            return await self._list()
        except Exception as e:
            self._log_failure("list", e)
            return []

    async def count(self) -> int:
        try:
            return await self._count()
        except Exception as e:
            self._log_failure("count", e)
            return 0

    async def get_by_path(self, path: str) -> Optional[dict]:
        """Answer an API GET path from the offline cache.

        Returns the same shape the API would: ``{"memory": ...}`` for a single
        key and ``{"memories": [...]}`` for list or search paths.

        Returns:
            Response dict, or None if the cache cannot answer
        """
        parts = urlsplit(path)
        route = parts.path.rstrip("/") or "/"
        if not route.startswith("/memories"):
            return None

        if await self.count() == 0:
            return None

        match = SINGLE_KEY_PATH.match(route)
        if match:
            memory = await self.get(unquote(match.group(1)))
            return {"memory": memory} if memory else None

        if route != "/memories":
            return None

        query = parse_qs(parts.query).get("q")
        if query and query[0]:
            return {"memories": await self.search(query[0])}
        return {"memories": await self.list_records()}

    def is_stale(self) -> bool:
        """Advisory only, never blocks reads."""
        return now_ms() - self._last_sync_at > self.stale_after * 1000


class InMemoryOfflineStore(OfflineStore):
    """Offline store kept in an OfflineRegistry for the life of the process."""

    mode = "memory"

    def __init__(
        self,
        org: str,
        project: str,
        registry: OfflineRegistry,
        stale_after: float = STALE_THRESHOLD_SECONDS,
    ):
        super().__init__(org, project, stale_after)
        self.registry = registry
        self._last_sync_at = registry.last_sync_at(self.scope)

    @property
    def _records(self) -> dict[str, dict]:
        return self.registry.records(self.scope)

    async def _upsert(self, rows: list[dict]) -> None:
        records = self._records
        for row in rows:
            records[row["key"]] = row

    async def _delete(self, keys: list[str]) -> None:
        records = self._records
        for key in keys:
            records.pop(key, None)

    async def _save_checkpoint(self, timestamp: int) -> None:
        self.registry.set_last_sync_at(self.scope, timestamp)

    async def _get(self, key: str) -> Optional[dict]:
        record = self._records.get(key)
        return dict(record) if record else None

    async def _search(self, query: str) -> list[dict]:
        needle = query.lower()
        matches = [
            record
            for record in self._records.values()
            if needle in record["key"].lower() or needle in record["content"].lower()
        ]
        matches.sort(key=lambda r: r["priority"], reverse=True)
        return [dict(r) for r in matches[:SEARCH_LIMIT]]

    async def _list(self) -> list[dict]:
        ordered = sorted(
            self._records.values(), key=lambda r: r["updated_at"], reverse=True
        )
        return [dict(r) for r in ordered[:LIST_LIMIT]]

    async def _count(self) -> int:
        return len(self._records)


def _enable_wal(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


class SQLiteOfflineStore(OfflineStore):
    """Durable offline store in a SQLite file shared by all scopes."""

    mode = "sqlite"

    def __init__(
        self,
        org: str,
        project: str,
        database_path: Path,
        stale_after: float = STALE_THRESHOLD_SECONDS,
    ):
        super().__init__(org, project, stale_after)
        self.database_path = Path(database_path)
        self.engine = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def open(self) -> None:
        """Create the engine and schema and load the checkpoint.

        Raises:
            PersistenceError: The database cannot be opened
        """
        try:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_async_engine(f"sqlite+aiosqlite:///{self.database_path}")
            event.listen(self.engine.sync_engine, "connect", _enable_wal)
            self.session_factory = async_sessionmaker(
                bind=self.engine, class_=AsyncSession, expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            async with self.session_factory() as session:
                meta = await session.get(SyncMeta, (self.org, self.project))
                self._last_sync_at = meta.last_sync_at if meta else 0
        except Exception as e:
            await self.close()
            raise PersistenceError(f"Cannot open offline cache {self.database_path}: {e}") from e

        logger.debug(f"Opened offline cache at {self.database_path}")

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None

    def _session(self) -> AsyncSession:
        if self.session_factory is None:
            raise PersistenceError("Offline cache is not open")
        return self.session_factory()

    def _scoped(self, stmt):
        return stmt.where(
            CachedMemory.org == self.org, CachedMemory.project == self.project
        )

    async def _upsert(self, rows: list[dict]) -> None:
        table = CachedMemory.__table__
        stmt = sqlite_insert(table)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.org, table.c.project, table.c.key],
            set_={
                name: stmt.excluded[name]
                for name in ("content", "metadata", "tags", "priority", "updated_at")
            },
        )
        async with self._session() as session, session.begin():
            await session.execute(stmt, rows)

    async def _delete(self, keys: list[str]) -> None:
        async with self._session() as session, session.begin():
            await session.execute(
                self._scoped(delete(CachedMemory)).where(CachedMemory.key.in_(keys))
            )

    async def _save_checkpoint(self, timestamp: int) -> None:
        table = SyncMeta.__table__
        stmt = sqlite_insert(table).values(
            org=self.org, project=self.project, last_sync_at=timestamp
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.org, table.c.project],
            set_={"last_sync_at": stmt.excluded.last_sync_at},
        )
        async with self._session() as session, session.begin():
            await session.execute(stmt)

    async def _get(self, key: str) -> Optional[dict]:
        async with self._session() as session:
            memory = await session.get(CachedMemory, (self.org, self.project, key))
            return memory.to_dict() if memory else None

    async def _search(self, query: str) -> list[dict]:
        stmt = (
            self._scoped(select(CachedMemory))
            .where(
                or_(
                    CachedMemory.key.icontains(query, autoescape=True),
                    CachedMemory.content.icontains(query, autoescape=True),
                )
            )
            .order_by(CachedMemory.priority.desc())
            .limit(SEARCH_LIMIT)
        )
        async with self._session() as session:
            result = await session.scalars(stmt)
            return [memory.to_dict() for memory in result]

    async def _list(self) -> list[dict]:
        stmt = (
            self._scoped(select(CachedMemory))
            .order_by(CachedMemory.updated_at.desc())
            .limit(LIST_LIMIT)
        )
        async with self._session() as session:
            result = await session.scalars(stmt)
            return [memory.to_dict() for memory in result]

    async def _count(self) -> int:
        stmt = self._scoped(select(func.count()).select_from(CachedMemory))
        async with self._session() as session:
            return await session.scalar(stmt) or 0


async def open_offline_store(
    org: str,
    project: str,
    database_path: Optional[Path],
    registry: OfflineRegistry,
    stale_after: float = STALE_THRESHOLD_SECONDS,
) -> OfflineStore:
    """Pick the storage strategy for a scope.

    The durable store is tried once; if it cannot be opened (aiosqlite not
    installed, unwritable directory, corrupt file) the in-memory store is used
    for the lifetime of the returned object.

    Args:
        org: Organization slug
        project: Project slug
        database_path: SQLite file, or None to skip durable storage
        registry: Backing maps for the in-memory strategy
        stale_after: Seconds after which is_stale() reports True

    Returns:
        An OfflineStore
    """
    if database_path is not None:
        store = SQLiteOfflineStore(org, project, database_path, stale_after)
        try:
            await store.open()
            return store
        except PersistenceError as e:
            logger.info(f"{e}; using in-memory offline cache")

    return InMemoryOfflineStore(org, project, registry, stale_after)
