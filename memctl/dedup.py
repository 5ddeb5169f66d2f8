"""Request deduplication for concurrent identical reads."""

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class RequestDeduplicator:
    """Share one in-flight task between all callers of the same key.

    A key is registered only while its task is pending and is removed once the
    task settles, whether it succeeded or failed.
    """

    def __init__(self):
        self._inflight: dict[str, asyncio.Task] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    def start(self, key: str, factory: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """Return the pending task for ``key``, creating it if needed."""
        task = self._inflight.get(key)
        if task is not None:
            logger.debug(f"Joining in-flight request {key}")
            return task

        task = asyncio.ensure_future(factory())
        self._inflight[key] = task
        task.add_done_callback(lambda t, k=key: self._settle(k, t))
        return task

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Await the shared result for ``key``.

        The shared task is shielded so one caller being cancelled does not
        cancel the request for everyone else.
        """
        return await asyncio.shield(self.start(key, factory))

    def _settle(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Failures reach awaiting callers through their own handles
        if not task.cancelled():
            task.exception()

    def cancel_all(self) -> None:
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()

    def __len__(self) -> int:
        return len(self._inflight)
