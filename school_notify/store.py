"""
The notification store: the one writer of the persisted notification list.

Records are kept newest first by their own timestamp (not arrival order),
the unread count is always derived from the records, and every mutation is
written to the key-value backend before listeners are told about it.

If a write fails the mutation still applies in memory and the store is
marked dirty; the next successful write (any mutation, or flush()) stores
the full list again, so nothing is lost across a restart once storage
recovers.

Each signed-in principal has its own list. load(namespace) switches to it.
"""

from __future__ import annotations

import asyncio
import json
from typing import Callable, Iterable

import structlog

from .errors import PersistenceWriteError
from .metrics import MetricsCollector
from .models import NotificationRecord
from .state import KeyValueBackend, namespaced

log = structlog.get_logger()

STORAGE_KEY = "unified_notifications"

Listener = Callable[[], None]
Guard = Callable[[], bool]


def _ordered(records: Iterable[NotificationRecord]) -> list[NotificationRecord]:
    return sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)


class NotificationStore:
    """Durable, ordered notifications with read state."""

    def __init__(
        self,
        backend: KeyValueBackend,
        key: str = STORAGE_KEY,
        max_records: int | None = None,
        metrics: MetricsCollector | None = None,
    ):
        if max_records is not None and max_records < 1:
            raise ValueError("max_records must be positive")
        self._backend = backend
        self._base_key = key
        self._key = key
        self._max_records = max_records
        self._metrics = metrics
        self._records: list[NotificationRecord] = []
        self._ids: set[str] = set()
        self._listeners: list[Listener] = []
        self._lock = asyncio.Lock()
        self._dirty = False
        self._closed = False

    # --- Reads ---

    def list(self) -> list[NotificationRecord]:
        """All notifications, newest first."""
        return list(self._records)

    def unread_count(self) -> int:
        return sum(1 for r in self._records if not r.read)

    def get(self, record_id: str) -> NotificationRecord | None:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._ids

    def __len__(self) -> int:
        return len(self._records)

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def key(self) -> str:
        return self._key

    # --- Lifecycle ---

    async def load(self, namespace: str | None = None) -> None:
        """
        Restore exactly the list persisted for `namespace`.

        A stored value that cannot be decoded is logged and treated as an
        empty list; the next write replaces it.
        """
        async with self._lock:
            if self._dirty:
                log.warning("store.unsaved_dropped", key=self._key, records=len(self._records))
            self._key = namespaced(self._base_key, namespace)
            records = await self._read()
            self._dirty = False
            self._set(_ordered(records))
        log.info("store.loaded", key=self._key, records=len(records), unread=self.unread_count())
        self._notify()

    async def flush(self) -> bool:
        """Write the current list if an earlier write failed."""
        async with self._lock:
            if self._dirty:
                await self._write(self._records)
            return not self._dirty

    def close(self) -> None:
        """Stop accepting mutations; later calls are silently ignored."""
        self._closed = True

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- Mutations ---

    async def append(self, record: NotificationRecord, accept: Guard | None = None) -> bool:
        """
        Add a record. Appending an id that is already present is a no-op.

        `accept` is checked once the store lock is held; returning False
        drops the record without writing anything.
        """
        async with self._lock:
            if self._closed:
                log.debug("store.discarded_after_close", id=record.id)
                return False
            if accept is not None and not accept():
                log.debug("store.append_rejected", id=record.id)
                return False
            if record.id in self._ids:
                return False
            await self._commit(self._retain([*self._records, record]))
            stored = record.id in self._ids
        if stored and self._metrics:
            self._metrics.inc("notifications_stored_total", table=record.metadata.get("source_table"))
        return stored

    async def merge(self, records: Iterable[NotificationRecord], accept: Guard | None = None) -> int:
        """
        Add a batch of records in one write. A record whose id is already
        stored replaces it but keeps the stored read flag.

        Returns how many records were new.
        """
        async with self._lock:
            if self._closed or (accept is not None and not accept()):
                return 0
            current = {r.id: r for r in self._records}
            for record in records:
                existing = current.get(record.id)
                if existing is not None and existing.read != record.read:
                    record = record.model_copy(update={"read": existing.read})
                current[record.id] = record
            merged = self._retain(current.values())
            if merged == self._records:
                return 0
            before = set(self._ids)
            await self._commit(merged)
            added = len(self._ids - before)
        log.info("store.merged", added=added, records=len(merged))
        return added

    async def mark_read(self, record_id: str) -> bool:
        async with self._lock:
            if self._closed or record_id not in self._ids:
                return False
            records = [r.as_read() if r.id == record_id else r for r in self._records]
            if records == self._records:
                return False
            await self._commit(records)
        return True

    async def mark_all_read(self) -> int:
        """Mark every record read. Returns how many changed."""
        async with self._lock:
            if self._closed:
                return 0
            changed = self.unread_count()
            if changed == 0:
                return 0
            await self._commit([r.as_read() for r in self._records])
        return changed

    async def clear(self) -> int:
        """Remove every record. Returns how many were removed."""
        async with self._lock:
            if self._closed or not self._records:
                return 0
            removed = len(self._records)
            await self._commit([])
        log.info("store.cleared", key=self._key, removed=removed)
        return removed

    # --- Internals ---

    def _retain(self, records: Iterable[NotificationRecord]) -> list[NotificationRecord]:
        ordered = _ordered(records)
        if self._max_records is not None and len(ordered) > self._max_records:
            log.info("store.evicted", count=len(ordered) - self._max_records)
            ordered = ordered[: self._max_records]
        return ordered

    async def _read(self) -> list[NotificationRecord]:
        raw = await self._backend.get(self._key)
        if not raw:
            return []
        try:
            return [NotificationRecord.model_validate(item) for item in json.loads(raw)]
        except (ValueError, TypeError) as exc:
            log.error("store.load_failed", key=self._key, error=str(exc))
            return []

    async def _commit(self, records: list[NotificationRecord]) -> None:
        await self._write(records)
        self._set(records)
        self._notify()

    async def _write(self, records: list[NotificationRecord]) -> None:
        payload = json.dumps([r.model_dump(mode="json") for r in records])
        try:
            await self._backend.set(self._key, payload)
            if self._dirty:
                log.info("store.persist_recovered", records=len(records))
            self._dirty = False
        except PersistenceWriteError as exc:
            self._dirty = True
            log.error("store.persist_failed", error=str(exc), records=len(records))
            if self._metrics:
                self._metrics.inc("persistence_failures_total")

    def _set(self, records: list[NotificationRecord]) -> None:
        self._records = records
        self._ids = {r.id for r in records}
        if self._metrics:
            self._metrics.set_gauge("notifications_unread", self.unread_count())

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                log.exception("store.listener_error")
