"""Tests for the pending write ledger."""

import json

import pytest

from memctl.offline.pending import PendingWrite, PendingWriteLedger


@pytest.fixture
def ledger_path(tmp_path):
    return tmp_path / "cache" / "pending-writes.json"


@pytest.fixture
def ledger(ledger_path):
    return PendingWriteLedger(ledger_path)


class TestPendingWriteLedger:
    """Tests for PendingWriteLedger."""

    @pytest.mark.asyncio
    async def test_empty_when_missing(self, ledger):
        assert await ledger.get_pending_writes() == []

    @pytest.mark.asyncio
    async def test_queue_creates_directory_and_appends(self, ledger, ledger_path):
        assert await ledger.queue_write(PendingWrite("POST", "/memories", {"key": "a"}))
        assert await ledger.queue_write({"method": "DELETE", "path": "/memories/b"})

        assert ledger_path.exists()
        assert json.loads(ledger_path.read_text()) == [
            {"method": "POST", "path": "/memories", "body": {"key": "a"}},
            {"method": "DELETE", "path": "/memories/b"},
        ]
        assert await ledger.get_pending_writes() == [
            PendingWrite("POST", "/memories", {"key": "a"}),
            PendingWrite("DELETE", "/memories/b", None),
        ]

    @pytest.mark.asyncio
    async def test_clear(self, ledger, ledger_path):
        await ledger.queue_write(PendingWrite("PATCH", "/memories/a", {"content": "x"}))

        await ledger.clear_pending_writes()

        assert json.loads(ledger_path.read_text()) == []
        assert await ledger.get_pending_writes() == []

    @pytest.mark.asyncio
    async def test_clear_without_file_does_nothing(self, ledger, ledger_path):
        await ledger.clear_pending_writes()

        assert not ledger_path.exists()

    @pytest.mark.asyncio
    async def test_corrupted_file_reads_empty(self, ledger, ledger_path):
        ledger_path.parent.mkdir(parents=True)
        ledger_path.write_text("{not json")

        assert await ledger.get_pending_writes() == []

    @pytest.mark.asyncio
    async def test_corrupted_file_is_replaced_on_queue(self, ledger, ledger_path):
        ledger_path.parent.mkdir(parents=True)
        ledger_path.write_text('{"not": "a list"}')

        assert await ledger.queue_write(PendingWrite("POST", "/memories"))

        assert await ledger.get_pending_writes() == [PendingWrite("POST", "/memories")]

    @pytest.mark.asyncio
    async def test_invalid_entries_skipped(self, ledger, ledger_path):
        ledger_path.parent.mkdir(parents=True)
        ledger_path.write_text(json.dumps([{"path": "/no-method"}, {"method": "POST", "path": "/ok"}]))

        assert await ledger.get_pending_writes() == [PendingWrite("POST", "/ok")]

    @pytest.mark.asyncio
    async def test_unwritable_location_fails_open(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        ledger = PendingWriteLedger(blocker / "pending-writes.json")

        assert await ledger.queue_write(PendingWrite("POST", "/memories")) is False
        assert await ledger.get_pending_writes() == []
