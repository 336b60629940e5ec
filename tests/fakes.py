"""
In-memory stand-ins for the external collaborators: change stream, entity
lookup, key-value storage and delivery sink.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from school_notify.errors import LookupFailed, PersistenceWriteError, SubscriptionError
from school_notify.models import ChangeEvent, Operation, RowFilter

_CLOSED = object()


def change(
    table: str,
    operation: Operation | str,
    row: dict[str, Any] | None = None,
    before: dict[str, Any] | None = None,
    at: datetime | None = None,
) -> ChangeEvent:
    """Shorthand for building a ChangeEvent in tests."""
    operation = Operation(operation)
    committed_at = at or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    if operation is Operation.DELETE:
        return ChangeEvent(table, operation, committed_at, before=before or row, after=None)
    return ChangeEvent(table, operation, committed_at, before=before, after=row)


class FakeFeed:
    def __init__(self, stream: FakeChangeStream, table: str, row_filter: RowFilter | None, ack: bool):
        self.table = table
        self.row_filter = row_filter
        self.closed = False
        self._stream = stream
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        if ack:
            self._ready.set_result(None)

    async def ready(self) -> None:
        await asyncio.shield(self._ready)

    def deliver(self, event: ChangeEvent) -> bool:
        if self.closed:
            return False
        if self.row_filter is not None and not self.row_filter.matches(event.row):
            return False
        self._queue.put_nowait(event)
        return True

    def fail(self, message: str = "channel error") -> None:
        exc = SubscriptionError(message)
        if not self._ready.done():
            self._ready.set_exception(exc)
            self._ready.exception()
        self._queue.put_nowait(exc)

    async def __aiter__(self):
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._stream.closed_feeds.append(self)
        self._queue.put_nowait(_CLOSED)


class FakeChangeStream:
    """
    Change stream backed by in-process queues.

    publish() fans an event out to every open feed for its table whose row
    filter matches, like the backend does for overlapping subscriptions.
    """

    def __init__(self) -> None:
        self.feeds: list[FakeFeed] = []
        self.closed_feeds: list[FakeFeed] = []
        self.open_calls: list[tuple[str, RowFilter | None]] = []
        self.fail_open: dict[str, int] = {}
        self.never_ack: set[str] = set()

    async def open(self, table: str, row_filter: RowFilter | None = None) -> FakeFeed:
        self.open_calls.append((table, row_filter))
        remaining = self.fail_open.get(table, 0)
        if remaining:
            self.fail_open[table] = remaining - 1
            raise SubscriptionError(f"cannot open {table}")
        feed = FakeFeed(self, table, row_filter, ack=table not in self.never_ack)
        self.feeds.append(feed)
        return feed

    def open_feeds(self, table: str | None = None) -> list[FakeFeed]:
        return [f for f in self.feeds if not f.closed and (table is None or f.table == table)]

    def publish(self, event: ChangeEvent) -> int:
        return sum(1 for feed in self.open_feeds(event.table) if feed.deliver(event))


class FakeLookup:
    """Entity lookup over dict tables, with call tracking and failure injection."""

    def __init__(self, tables: dict[str, dict[str, dict[str, Any]]] | None = None):
        self.tables: dict[str, dict[str, dict[str, Any]]] = tables or {}
        self.calls: list[tuple[str, str]] = []
        self.recent_calls: list[tuple[str, RowFilter | None]] = []
        self.failing: set[str] = set()
        self.gate: asyncio.Event | None = None

    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        self.calls.append((table, key))
        if self.gate is not None:
            await self.gate.wait()
        if table in self.failing:
            raise LookupFailed(table, key, "connection refused")
        return self.tables.get(table, {}).get(str(key))

    async def list_children(self, parent_id: str) -> list[dict[str, Any]]:
        students = self.tables.get("users", {}).values()
        return [s for s in students if s.get("parent_id") == parent_id]

    async def recent(
        self, table: str, row_filter: RowFilter | None, order_by: str, limit: int
    ) -> list[dict[str, Any]]:
        self.recent_calls.append((table, row_filter))
        if table in self.failing:
            raise LookupFailed(table, "recent", "connection refused")
        rows = [r for r in self.tables.get(table, {}).values() if row_filter is None or row_filter.matches(r)]
        rows.sort(key=lambda r: str(r.get(order_by) or ""), reverse=True)
        return rows[:limit]


class MemoryKV:
    """
    Key-value backend in a dict. Set `failing` to make writes raise; put an
    Event in `gates` to hold writes to that key until it is set.
    """

    def __init__(self, data: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(data or {})
        self.failing = False
        self.writes = 0
        self.gates: dict[str, asyncio.Event] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        gate = self.gates.get(key)
        if gate is not None:
            await gate.wait()
        if self.failing:
            raise PersistenceWriteError(f"disk full writing {key}")
        self.writes += 1
        self.data[key] = value


class RecordingSink:
    def __init__(self, fail: bool = False):
        self.presented: list[tuple[str, str, dict[str, Any]]] = []
        self.fail = fail

    async def present(self, title: str, message: str, metadata: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("device unreachable")
        self.presented.append((title, message, metadata))


async def settle(rounds: int = 50) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
