"""Resilient HTTP client for the memctl API.

Reads go through a freshness cache with stale-while-revalidate, ETag
revalidation and request deduplication, and fall back to the offline store
when the network is unreachable. Writes always go to the server and invalidate
cached memory reads on success.
"""

import asyncio
import logging
import time
from typing import Any, Callable, NamedTuple, Optional
from urllib.parse import quote, urlencode

import httpx

from memctl.cache import FreshnessCache, cache_key
from memctl.config import ClientConfig
from memctl.dedup import RequestDeduplicator
from memctl.exceptions import NetworkError
from memctl.offline.pending import PendingWrite, PendingWriteLedger
from memctl.offline.store import (
    OfflineRegistry,
    OfflineStore,
    now_ms,
    open_offline_store,
)
from memctl.responses import decode_body, raise_for_status
from memctl.state import ConnectionState, Freshness

logger = logging.getLogger(__name__)

MEMORIES_PREFIX = "/memories"
MEMORIES_CACHE_PREFIX = cache_key("GET", MEMORIES_PREFIX)
IF_MATCH_METHODS = ("PATCH", "DELETE")

RequestHook = Callable[[str, str, Any], None]


class DeltaCounts(NamedTuple):
    created: int
    updated: int
    deleted: int


def _compact(body: dict) -> dict:
    """Drop unset fields so the server keeps its current values."""
    return {k: v for k, v in body.items() if v is not None}


def _memory_path(key: str) -> str:
    return f"{MEMORIES_PREFIX}/{quote(key, safe='')}"


class SyncClient:
    """Client for the memctl memory API with offline support."""

    def __init__(
        self,
        config: ClientConfig,
        registry: Optional[OfflineRegistry] = None,
        offline_store: Optional[OfflineStore] = None,
        ledger: Optional[PendingWriteLedger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_request: Optional[RequestHook] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize client.

        Args:
            config: Client settings
            registry: Backing maps for in-memory offline storage; a private
                one is created (and cleared on close) if not given
            offline_store: Pre-opened offline store; opened lazily otherwise
            ledger: Pending write ledger (default: under config.cache_dir)
            transport: httpx transport override (tests, proxies)
            on_request: Called with (method, path, body) before each request
            clock: Monotonic time source for the freshness cache
        """
        self.config = config
        self.base_url = config.base_url
        self.org = config.org
        self.project = config.project
        self.on_request = on_request

        self.cache = FreshnessCache(config.fresh_window, config.stale_window, clock)
        self.dedup = RequestDeduplicator()
        self.state = ConnectionState()

        self._owns_registry = registry is None
        self.registry = registry if registry is not None else OfflineRegistry()
        self.offline_store = offline_store
        self._store_lock = asyncio.Lock()
        self.ledger = ledger or PendingWriteLedger(config.pending_writes_path)

        self._background: set[asyncio.Task] = set()

        self.client = httpx.AsyncClient(
            timeout=config.request_timeout,
            headers={
                "Authorization": f"Bearer {config.token}",
                "X-Org-Slug": config.org,
                "X-Project-Slug": config.project,
            },
            transport=transport,
        )

    # Lifecycle

    async def open(self) -> "SyncClient":
        await self._store()
        return self

    async def aclose(self) -> None:
        """Cancel background work and release network and storage resources."""
        for task in list(self._background):
            task.cancel()
        self.dedup.cancel_all()
        await self.client.aclose()
        if self.offline_store is not None:
            await self.offline_store.close()
        if self._owns_registry:
            self.registry.clear()

    async def __aenter__(self) -> "SyncClient":
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def _store(self) -> OfflineStore:
        if self.offline_store is None:
            async with self._store_lock:
                if self.offline_store is None:
                    database_path = (
                        self.config.database_path if self.config.durable_cache else None
                    )
                    self.offline_store = await open_offline_store(
                        self.org,
                        self.project,
                        database_path,
                        self.registry,
                        stale_after=self.config.offline_stale_after,
                    )
        return self.offline_store

    # Connection state

    def connection_status(self) -> dict:
        return {"online": self.state.online}

    @property
    def last_freshness(self) -> Freshness:
        return self.state.last_freshness

    @property
    def local_cache_sync_at(self) -> int:
        if self.offline_store is None:
            return 0
        return self.offline_store.last_sync_at

    async def ping(self) -> bool:
        """Probe the health endpoint.

        Returns:
            True if the API answered with a 2xx status
        """
        try:
            response = await self.client.get(
                f"{self.base_url}/health", timeout=self.config.probe_timeout
            )
        except httpx.TransportError as e:
            logger.debug(f"Health check failed: {e}")
            self.state.mark_offline()
            return False

        self.state.online = response.is_success
        return response.is_success

    # Request layer

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        use_cache: bool = True,
        allow_offline: bool = True,
    ) -> Any:
        """Issue an API request with cache and offline policy applied.

        Args:
            method: HTTP method
            path: API path including any query string (e.g. "/memories?q=x")
            body: JSON body for mutations
            use_cache: For GET, consult the freshness cache first
            allow_offline: For GET, answer from the offline store on network failure

        Returns:
            Decoded response body

        Raises:
            ProtocolError: Server returned a non-2xx status
            NetworkError: Network failed and no offline answer exists
        """
        method = method.upper()
        if method != "GET":
            return await self._mutate(method, path, body)

        key = cache_key(method, path)
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None and not cached.stale:
                self.state.last_freshness = Freshness.FRESH
                return cached.data
            if cached is not None:
                self.state.last_freshness = Freshness.STALE
                self._revalidate(key, path)
                return cached.data

        data, freshness = await self.dedup.run(
            key, lambda: self._fetch(key, path, allow_offline)
        )
        self.state.last_freshness = freshness
        return data

    def _revalidate(self, key: str, path: str) -> None:
        """Refresh a stale entry in the background.

        The caller never waits on this; the only effect is a possible cache
        replacement. The caller's freshness classification is left as is.
        Failures are consumed in _background_done.
        """
        if self.dedup.in_flight(key):
            return
        logger.debug(f"Revalidating stale entry {key}")
        task = self.dedup.start(key, lambda: self._fetch(key, path, True))
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug(f"Background revalidation failed: {error}")

    async def _send(
        self, method: str, path: str, body: Any, headers: dict[str, str]
    ) -> httpx.Response:
        if self.on_request is not None:
            self.on_request(method, path, body)

        kwargs = {}
        if body is not None:
            kwargs["json"] = body
        return await self.client.request(
            method, f"{self.base_url}{path}", headers=headers, **kwargs
        )

    async def _fetch(
        self, key: str, path: str, allow_offline: bool, conditional: bool = True
    ) -> tuple[Any, Freshness]:
        """Fetch ``path`` from the network, falling back to the offline store.

        Returns:
            Decoded body and how it was obtained
        """
        headers = {}
        etag = self.cache.get_etag(key) if conditional else None
        if etag:
            headers["If-None-Match"] = etag

        generation = self.cache.generation
        try:
            response = await self._send("GET", path, None, headers)
        except httpx.TransportError as e:
            return await self._offline_fallback(path, e, allow_offline)

        self.state.mark_online()

        if response.status_code == 304:
            if self.cache.touch(key):
                return self.cache.peek(key).data, Freshness.CACHED
            if conditional:
                # Entry was dropped while the request was in flight
                return await self._fetch(key, path, allow_offline, conditional=False)

        raise_for_status(response)
        data = decode_body(response)

        if self.cache.generation == generation:
            self.cache.set(key, data, response.headers.get("etag"))
        else:
            logger.debug(f"Not caching {key}: invalidated while in flight")

        if path.startswith(MEMORIES_PREFIX):
            await self._sync_to_offline(data)
        return data, Freshness.FRESH

    async def _offline_fallback(
        self, path: str, error: httpx.TransportError, allow_offline: bool
    ) -> tuple[Any, Freshness]:
        if self.state.online:
            logger.warning(f"memctl API unreachable: {error}")
        self.state.mark_offline()

        if allow_offline:
            store = await self._store()
            offline = await store.get_by_path(path)
            if offline is not None:
                logger.debug(f"Served GET {path} from offline cache")
                return offline, Freshness.OFFLINE

        raise NetworkError("GET", path, str(error)) from error

    async def _sync_to_offline(self, data: Any) -> None:
        if not isinstance(data, dict):
            return
        memories = data.get("memories")
        memory = data.get("memory")
        store = await self._store()
        if isinstance(memories, list):
            await store.sync(memories)
        elif isinstance(memory, dict):
            await store.sync([memory])

    async def _mutate(self, method: str, path: str, body: Any) -> Any:
        headers = {}
        if method in IF_MATCH_METHODS:
            etag = self.cache.get_etag(cache_key("GET", path))
            if etag:
                headers["If-Match"] = etag

        try:
            response = await self._send(method, path, body, headers)
        except httpx.TransportError as e:
            self.state.mark_offline()
            if self.config.queue_failed_writes:
                await self.ledger.queue_write(PendingWrite(method, path, body))
            raise NetworkError(method, path, str(e)) from e

        self.state.mark_online()
        raise_for_status(response)
        data = decode_body(response)
        self.cache.invalidate_prefix(MEMORIES_CACHE_PREFIX)
        return data

    # Incremental sync

    async def get_delta(self, since: int) -> dict:
        """Memories created, updated and deleted since ``since`` (unix ms)."""
        return await self.request(
            "GET",
            f"{MEMORIES_PREFIX}/delta?{urlencode({'since': since})}",
            use_cache=False,
            allow_offline=False,
        )

    async def incremental_sync(self) -> DeltaCounts:
        """Pull changes since the last checkpoint into the offline store.

        The checkpoint only moves once both the upserts and the deletes have
        been applied.

        Returns:
            Counts of created, updated and deleted memories in the delta
        """
        store = await self._store()
        delta = await self.get_delta(store.last_sync_at) or {}

        created = list(delta.get("created") or [])
        updated = list(delta.get("updated") or [])
        deleted = [str(key) for key in delta.get("deleted") or []]

        upserted = await store.sync(created + updated, advance_checkpoint=False)
        removed = await store.remove_keys(deleted)

        if not (upserted and removed):
            logger.warning("Incremental sync was not fully applied; checkpoint unchanged")
        elif created or updated or deleted:
            await store.mark_synced(delta.get("now") or now_ms())

        counts = DeltaCounts(len(created), len(updated), len(deleted))
        logger.debug(f"Incremental sync for {self.org}/{self.project}: {counts}")
        return counts

    # Pending writes

    async def queue_write(self, method: str, path: str, body: Any = None) -> bool:
        return await self.ledger.queue_write(PendingWrite(method.upper(), path, body))

    async def get_pending_writes(self) -> list[PendingWrite]:
        return await self.ledger.get_pending_writes()

    async def clear_pending_writes(self) -> None:
        await self.ledger.clear_pending_writes()

    async def diagnostics(self) -> dict:
        """Snapshot of connectivity and offline cache state."""
        store = await self._store()
        pending = await self.ledger.get_pending_writes()
        return {
            "online": self.state.online,
            "last_freshness": self.state.last_freshness.value,
            "offline_store": store.mode,
            "cached_memories": await store.count(),
            "last_sync_at": store.last_sync_at,
            "offline_cache_stale": store.is_stale(),
            "pending_writes": len(pending),
        }

    # Memory operations

    async def store_memory(
        self,
        key: str,
        content: str,
        metadata: Optional[dict] = None,
        *,
        scope: Optional[str] = None,
        priority: Optional[int] = None,
        tags: Optional[list[str]] = None,
        expires_at: Optional[int] = None,
    ) -> Any:
        return await self.request(
            "POST",
            MEMORIES_PREFIX,
            _compact(
                {
                    "key": key,
                    "content": content,
                    "metadata": metadata,
                    "scope": scope,
                    "priority": priority,
                    "tags": tags,
                    "expiresAt": expires_at,
                }
            ),
        )

    async def get_memory(self, key: str) -> Any:
        return await self.request("GET", _memory_path(key))

    async def search_memories(
        self,
        query: str,
        limit: int = 20,
        *,
        tags: Optional[str] = None,
        sort: Optional[str] = None,
        include_archived: bool = False,
        intent: Optional[str] = None,
    ) -> Any:
        params = {"q": query, "limit": limit}
        if tags:
            params["tags"] = tags
        if sort:
            params["sort"] = sort
        if include_archived:
            params["include_archived"] = "true"
        if intent:
            params["intent"] = intent
        return await self.request("GET", f"{MEMORIES_PREFIX}?{urlencode(params)}")

    async def list_memories(
        self,
        limit: int = 100,
        offset: int = 0,
        *,
        sort: Optional[str] = None,
        include_archived: bool = False,
        tags: Optional[str] = None,
        after: Optional[str] = None,
    ) -> Any:
        params = {"limit": limit}
        if after:
            params["after"] = after
        else:
            params["offset"] = offset
        if sort:
            params["sort"] = sort
        if include_archived:
            params["include_archived"] = "true"
        if tags:
            params["tags"] = tags
        return await self.request("GET", f"{MEMORIES_PREFIX}?{urlencode(params)}")

    async def update_memory(
        self,
        key: str,
        content: Optional[str] = None,
        metadata: Optional[dict] = None,
        *,
        priority: Optional[int] = None,
        tags: Optional[list[str]] = None,
        expires_at: Optional[int] = None,
    ) -> Any:
        return await self.request(
            "PATCH",
            _memory_path(key),
            _compact(
                {
                    "content": content,
                    "metadata": metadata,
                    "priority": priority,
                    "tags": tags,
                    "expiresAt": expires_at,
                }
            ),
        )

    async def delete_memory(self, key: str) -> Any:
        return await self.request("DELETE", _memory_path(key))

    async def bulk_get_memories(self, keys: list[str]) -> Any:
        return await self.request("POST", f"{MEMORIES_PREFIX}/bulk", {"keys": keys})

    async def batch(self, operations: list[dict]) -> Any:
        return await self.request("POST", "/batch", {"operations": operations})

    async def get_memory_capacity(self) -> Any:
        return await self.request("GET", f"{MEMORIES_PREFIX}/capacity")

    async def get_memory_versions(self, key: str, limit: int = 50) -> Any:
        params = urlencode({"key": key, "limit": limit})
        return await self.request("GET", f"{MEMORIES_PREFIX}/versions?{params}")

    async def restore_memory_version(self, key: str, version: int) -> Any:
        return await self.request(
            "POST", f"{MEMORIES_PREFIX}/versions", {"key": key, "version": version}
        )

    async def archive_memory(self, key: str, archive: bool = True) -> Any:
        return await self.request(
            "POST", f"{MEMORIES_PREFIX}/archive", {"key": key, "archive": archive}
        )

    async def check_freshness(self) -> Any:
        return await self.request("GET", f"{MEMORIES_PREFIX}/freshness")

    async def get_changes(self, since: int, limit: int = 100) -> Any:
        params = urlencode({"since": since, "limit": limit})
        return await self.request("GET", f"{MEMORIES_PREFIX}/changes?{params}")
