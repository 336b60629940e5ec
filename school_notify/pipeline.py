"""
Event processing pipeline.

Takes change events forwarded by the subscription manager and runs each one
through enrich → compose → dedup → store → deliver as its own task.

Results are tied to the principal that was signed in when the event arrived.
If the principal changes before the record is written, the result is
discarded; if it changes after, the record is not delivered.
"""

from __future__ import annotations

import asyncio
from typing import Iterable

import structlog

from .composer import NotificationComposer
from .dedup import Deduplicator
from .delivery import DeliverySink
from .enricher import EventEnricher
from .errors import ComposeError, EnrichmentFailure
from .metrics import MetricsCollector
from .models import ChangeEvent, NotificationRecord
from .store import NotificationStore
from .subscriptions import SubscriptionSpec

log = structlog.get_logger()


class NotificationPipeline:
    """
    Wires the processing stages together.

    Responsibilities:
    - Drop events from subscriptions of a principal that is no longer current
    - Drop events that fail enrichment (logged, never raised)
    - Admit each record id once across all subscriptions
    - Store admitted records, then hand them to the delivery sink
    """

    def __init__(
        self,
        enricher: EventEnricher,
        composer: NotificationComposer,
        dedup: Deduplicator,
        store: NotificationStore,
        sink: DeliverySink | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._enricher = enricher
        self._composer = composer
        self._dedup = dedup
        self._store = store
        self._sink = sink
        self._metrics = metrics
        self._principal: str | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def principal(self) -> str | None:
        return self._principal

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def set_principal(self, principal: str | None) -> None:
        if principal != self._principal:
            log.info("pipeline.principal_changed", old=self._principal, new=principal)
        self._principal = principal

    def submit(self, spec: SubscriptionSpec, event: ChangeEvent) -> None:
        """Schedule one event. Used as the subscription manager's sink."""
        task = asyncio.create_task(self._guarded(spec.principal, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight events to finish."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            log.warning("pipeline.drain_timeout", pending=len(pending))

    async def process(self, principal: str, event: ChangeEvent) -> NotificationRecord | None:
        """
        Run one event through every stage. Returns the stored record, if any.

        The id is claimed before the record is written and committed after,
        so an admitted id is never persisted ahead of its record. A record
        stored just before the principal changed stays in that principal's
        list but is not delivered.
        """
        if principal != self._principal:
            log.debug("pipeline.stale_principal", table=event.table, principal=principal)
            return None

        try:
            fact = await self._enricher.enrich(event)
        except EnrichmentFailure as exc:
            log.warning(
                "pipeline.enrichment_failed",
                table=event.table,
                operation=event.operation.value,
                reason=exc.reason,
            )
            if self._metrics:
                self._metrics.inc("enrichment_failures_total", table=event.table)
            return None

        if principal != self._principal:
            log.debug("pipeline.discarded_after_scope_change", table=event.table)
            return None

        try:
            record = self._composer.compose(fact, event.operation)
        except ComposeError:
            log.exception("pipeline.compose_failed", table=event.table, operation=event.operation.value)
            return None

        if not self._dedup.claim(record.id):
            return None
        stored = await self._store.append(record, accept=lambda: principal == self._principal)
        if not stored and record.id not in self._store:
            self._dedup.release(record.id)
            log.debug("pipeline.not_stored", id=record.id, current=principal == self._principal)
            return None
        await self._commit_admissions()
        if not stored:
            return None

        log.info("pipeline.stored", id=record.id, category=record.category.value)
        if principal != self._principal:
            log.debug("pipeline.delivery_skipped_after_scope_change", id=record.id)
            return record
        await self._deliver(record)
        return record

    async def backfill(self, principal: str, events: Iterable[ChangeEvent]) -> int:
        """
        Merge already existing rows into the store without delivering them.

        Read flags of records already stored are kept. An id that was
        admitted earlier but is no longer stored (the user cleared it) is
        not brought back. Returns how many records were new.
        """
        records: dict[str, NotificationRecord] = {}
        for event in events:
            if principal != self._principal:
                break
            try:
                record = self._composer.compose(await self._enricher.enrich(event), event.operation)
            except EnrichmentFailure as exc:
                log.info("pipeline.backfill_skipped", table=event.table, reason=exc.reason)
                continue
            except ComposeError:
                log.exception("pipeline.compose_failed", table=event.table, operation=event.operation.value)
                continue
            if record.id in self._dedup and record.id not in self._store:
                continue
            records[record.id] = record

        if principal != self._principal:
            log.debug("pipeline.backfill_discarded", principal=principal)
            return 0

        added = await self._store.merge(records.values(), accept=lambda: principal == self._principal)
        claimed = [rid for rid in records if rid in self._store and rid not in self._dedup]
        for rid in claimed:
            self._dedup.claim(rid)
        if claimed:
            await self._commit_admissions()
        log.info("pipeline.backfilled", principal=principal, fetched=len(records), added=added)
        return added

    async def _guarded(self, principal: str, event: ChangeEvent) -> None:
        try:
            await self.process(principal, event)
        except Exception:
            log.exception("pipeline.unhandled_error", table=event.table)

    async def _commit_admissions(self) -> None:
        # Ids follow the records they cover; while the list is unsaved they wait.
        if self._store.dirty:
            self._dedup.defer()
        else:
            await self._dedup.commit()

    async def _deliver(self, record: NotificationRecord) -> None:
        if self._sink is None:
            return
        try:
            await self._sink.present(record.title, record.message, record.metadata)
        except Exception as exc:
            log.warning("pipeline.delivery_failed", id=record.id, error=str(exc))
            if self._metrics:
                self._metrics.inc("delivery_failures_total", table=record.metadata.get("source_table"))
