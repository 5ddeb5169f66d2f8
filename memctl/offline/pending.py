"""Pending write ledger.

Write operations that could not be confirmed by the server are appended to a
JSON array file so they stay visible (e.g. to diagnostics). The ledger is
append-only and cleared in bulk; nothing replays it automatically.

Stored as: <cache_dir>/pending-writes.json
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from memctl.exceptions import PersistenceError

logger = logging.getLogger(__name__)


@dataclass
class PendingWrite:
    """A mutation that did not reach the server."""

    method: str
    path: str
    body: Optional[Any] = None


class PendingWriteLedger:
    """Disk-backed list of pending write operations."""

    def __init__(self, path: Path):
        """Initialize ledger.

        Args:
            path: JSON file holding the pending operations
        """
        self.path = Path(path)

    def _read(self) -> list[dict]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read pending writes: {e}") from e
        if not isinstance(data, list):
            raise PersistenceError("Pending writes file is not a JSON array")
        return data

    def _write(self, operations: list[dict]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(operations, f, indent=2)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write pending writes: {e}") from e

    def _append(self, operation: dict) -> None:
        try:
            operations = self._read()
        except PersistenceError as e:
            logger.warning(f"{e}; starting a new pending writes file")
            operations = []
        operations.append(operation)
        self._write(operations)

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def queue_write(self, operation: PendingWrite | dict) -> bool:
        """Append an operation.

        Returns:
            True if the ledger was updated
        """
        if isinstance(operation, PendingWrite):
            operation = asdict(operation)
        try:
            await self._run(self._append, operation)
        except PersistenceError as e:
            logger.info(str(e))
            return False
        logger.debug(f"Queued pending write {operation['method']} {operation['path']}")
        return True

    async def get_pending_writes(self) -> list[PendingWrite]:
        """All queued operations, oldest first; empty if unreadable."""
        try:
            entries = await self._run(self._read)
        except PersistenceError as e:
            logger.info(str(e))
            return []

        operations = []
        for entry in entries:
            try:
                operations.append(
                    PendingWrite(
                        method=entry["method"],
                        path=entry["path"],
                        body=entry.get("body"),
                    )
                )
            except (KeyError, TypeError, AttributeError):
                logger.warning(f"Skipping invalid pending write: {entry!r}")
        return operations

    async def clear_pending_writes(self) -> None:
        if not self.path.exists():
            return
        try:
            await self._run(self._write, [])
        except PersistenceError as e:
            logger.info(str(e))
