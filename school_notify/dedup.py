"""
Cross-subscription deduplication.

A fact can reach the pipeline more than once: through two subscriptions
whose scopes overlap during a scope change, or as a redelivery from the
change stream itself. Records carry deterministic ids, so remembering which
ids were already admitted is enough to suppress the repeats.

Admitted ids are persisted next to the notification list so a restart does
not present history as new.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Callable

import structlog

from .errors import PersistenceWriteError
from .metrics import MetricsCollector
from .models import NotificationRecord
from .state import KeyValueBackend, namespaced

log = structlog.get_logger()

DEDUP_KEY = "admitted_notification_ids"


class Deduplicator:
    """
    Admits each notification id once.

    With a window, ids admitted longer than `window_seconds` ago are
    forgotten; without one they are kept for the lifetime of the storage.

    admit() claims and persists in one step. The pipeline instead claims,
    stores the record, and only then commits, so an id is never durable
    before the record it stands for.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        window_seconds: float | None = None,
        key: str = DEDUP_KEY,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._window = window_seconds
        self._base_key = key
        self._key = key
        self._metrics = metrics
        self._clock = clock
        self._admitted: dict[str, float] = {}
        self._write_lock = asyncio.Lock()
        self._dirty = False
        self._closed = False

    @property
    def dirty(self) -> bool:
        return self._dirty

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._admitted

    def __len__(self) -> int:
        return len(self._admitted)

    async def load(self, namespace: str | None = None) -> None:
        """Replace the admitted ids with those persisted for `namespace`."""
        if self._dirty:
            log.warning("dedup.unsaved_dropped", key=self._key, admitted=len(self._admitted))
        self._key = namespaced(self._base_key, namespace)
        self._admitted = await self._read()
        self._dirty = False
        self._prune(self._clock())
        log.info("dedup.loaded", key=self._key, admitted=len(self._admitted))

    def claim(self, record_id: str) -> bool:
        """
        Take an id without persisting it. True the first time, False for
        every repeat. Never suspends, so interleaved tasks cannot both win.
        """
        if self._closed:
            log.debug("dedup.discarded_after_close", id=record_id)
            return False
        now = self._clock()
        self._prune(now)
        if record_id in self._admitted:
            log.debug("dedup.duplicate", id=record_id)
            if self._metrics:
                self._metrics.inc("duplicates_suppressed_total")
            return False
        self._admitted[record_id] = now
        return True

    def release(self, record_id: str) -> None:
        """Give back a claim whose record was never stored."""
        self._admitted.pop(record_id, None)

    def defer(self) -> None:
        """Keep new claims in memory only; flush() writes them later."""
        self._dirty = True

    async def commit(self) -> None:
        """Persist every claim taken so far."""
        if not self._closed:
            await self._persist()

    async def admit(self, record: NotificationRecord) -> bool:
        """True the first time an id is seen, False for every repeat."""
        if not self.claim(record.id):
            return False
        await self._persist()
        return True

    async def flush(self) -> bool:
        """Retry a failed or deferred write. Returns True when storage is up to date."""
        if self._dirty:
            await self._persist()
        return not self._dirty

    def close(self) -> None:
        self._closed = True

    async def _read(self) -> dict[str, float]:
        raw = await self._backend.get(self._key)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            return {str(k): float(v) for k, v in data.items()}
        except (ValueError, TypeError) as exc:
            log.error("dedup.load_failed", key=self._key, error=str(exc))
            return {}

    def _prune(self, now: float) -> None:
        if self._window is None:
            return
        cutoff = now - self._window
        expired = [rid for rid, at in self._admitted.items() if at < cutoff]
        for rid in expired:
            del self._admitted[rid]

    async def _persist(self) -> None:
        async with self._write_lock:
            try:
                await self._backend.set(self._key, json.dumps(self._admitted))
                self._dirty = False
            except PersistenceWriteError as exc:
                self._dirty = True
                log.error("dedup.persist_failed", error=str(exc))
                if self._metrics:
                    self._metrics.inc("persistence_failures_total")
