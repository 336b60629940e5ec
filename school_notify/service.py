"""
Main notification service.

Coordinates all components: change subscriptions, the processing pipeline,
the notification store, delivery and the health server. Handles lifecycle:
startup, sign-in / sign-out scope changes, shutdown and signal handling.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Callable, Iterable

import structlog

from .change_stream import ChangeStream
from .composer import NotificationComposer
from .config import NotifyConfig
from .dedup import Deduplicator
from .delivery import DeliverySink, ExpoPushSink, build_sink
from .enricher import EventEnricher
from .errors import LookupFailed
from .health import HealthServer
from .lookup import EntityLookup, PostgrestLookup
from .metrics import MetricsCollector
from .models import ChangeEvent, NotificationRecord, Operation, Role, SubscriptionScope
from .pipeline import NotificationPipeline
from .realtime import RealtimeChangeStream, parse_timestamp
from .state import KeyValueBackend, SQLiteKeyValueStore
from .store import NotificationStore
from .subscriptions import ReconcileResult, RetryPolicy, SubscriptionManager, plan_subscriptions

log = structlog.get_logger()

SHUTDOWN_TIMEOUT = 15.0
DRAIN_TIMEOUT = 5.0
HEALTH_INTERVAL = 30.0

# Column each watched table is ordered by when fetching history.
HISTORY_TIME_COLUMNS = {
    "scores": "created_at",
    "attendance": "noted_at",
    "announcements": "created_at",
}


def history_events(table: str, rows: Iterable[dict[str, Any]], time_column: str) -> list[ChangeEvent]:
    """Existing rows as inserts committed at their own timestamp."""
    events = []
    for row in rows:
        stamp = row.get(time_column) or row.get("created_at")
        try:
            committed_at = parse_timestamp(str(stamp))
        except ValueError:
            log.debug("service.history_row_skipped", table=table, id=row.get("id"))
            continue
        events.append(ChangeEvent(table, Operation.INSERT, committed_at, after=row))
    return events


class NotificationService:
    """
    One signed-in user's notification process.

    Collaborators default to the configured backend (Realtime, PostgREST,
    SQLite) and can be injected for tests or embedding.
    """

    def __init__(
        self,
        config: NotifyConfig,
        stream: ChangeStream | None = None,
        lookup: EntityLookup | None = None,
        backend: KeyValueBackend | None = None,
        sink: DeliverySink | None = None,
    ):
        self._config = config
        self._metrics = MetricsCollector()

        api_key = config.backend.api_key or ""
        if (stream is None or lookup is None) and not api_key:
            log.warning("service.missing_api_key", env=config.backend.api_key_env)

        self._stream = stream or RealtimeChangeStream(
            url=config.backend.url,
            api_key=api_key,
            access_token=config.backend.access_token,
            schema=config.backend.schema_name,
            heartbeat_interval=config.backend.heartbeat_interval_seconds,
            verify_tls=config.backend.verify_tls,
        )
        self._lookup = lookup or PostgrestLookup(
            url=config.backend.url,
            api_key=api_key,
            access_token=config.backend.access_token,
            students_table=config.backend.students_table,
            verify_tls=config.backend.verify_tls,
            request_timeout=config.backend.request_timeout_seconds,
            metrics=self._metrics,
        )
        self._backend = backend or SQLiteKeyValueStore(config.state.db_path)
        self._sink = sink if sink is not None else build_sink(config.delivery)

        self._store = NotificationStore(
            self._backend,
            key=config.store.storage_key,
            max_records=config.store.max_records,
            metrics=self._metrics,
        )
        self._dedup = Deduplicator(
            self._backend,
            window_seconds=config.store.dedup_window_seconds,
            metrics=self._metrics,
        )
        self._pipeline = NotificationPipeline(
            enricher=EventEnricher(
                self._lookup,
                students_table=config.backend.students_table,
                lessons_table=config.backend.lessons_table,
                subjects_table=config.backend.subjects_table,
            ),
            composer=NotificationComposer(),
            dedup=self._dedup,
            store=self._store,
            sink=self._sink,
            metrics=self._metrics,
        )
        subs = config.subscriptions
        self._subscriptions = SubscriptionManager(
            stream=self._stream,
            sink=self._pipeline.submit,
            role_tables=subs.role_tables,
            policy=RetryPolicy(
                max_retries=subs.max_retries,
                base_seconds=subs.retry_base_seconds,
                max_seconds=subs.retry_max_seconds,
                ready_timeout=subs.ready_timeout_seconds,
            ),
            metrics=self._metrics,
        )
        self._health = HealthServer(
            host=config.metrics.host,
            port=config.metrics.port,
            metrics=self._metrics,
        )
        self._namespace: str | None = None
        self._storage_lock = asyncio.Lock()
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def subscriptions(self) -> SubscriptionManager:
        return self._subscriptions

    @property
    def pipeline(self) -> NotificationPipeline:
        return self._pipeline

    @property
    def live_updates_available(self) -> bool:
        return self._subscriptions.live_updates_available

    async def start(self) -> None:
        """Open storage and lookups, restore persisted state, start the health server."""
        log.info("service.starting")

        if isinstance(self._backend, SQLiteKeyValueStore):
            await self._backend.open()
        if isinstance(self._lookup, PostgrestLookup):
            await self._lookup.open()
        if isinstance(self._sink, ExpoPushSink):
            await self._sink.open()

        await self._store.load()
        await self._dedup.load()

        if self._config.metrics.enabled:
            try:
                await self._health.start()
                log.info(
                    "service.health_started",
                    host=self._config.metrics.host,
                    port=self._config.metrics.port,
                )
            except OSError as exc:
                log.warning("service.health_start_failed", error=str(exc))

        self._running = True
        log.info("service.started", notifications=len(self._store), unread=self._store.unread_count())

    async def stop(self) -> None:
        """Graceful shutdown: close feeds, drain in-flight events, flush storage."""
        if not self._running:
            return
        self._running = False
        log.info("service.stopping")

        # 1. No new events
        self._pipeline.set_principal(None)
        await self._subscriptions.close()
        log.info("service.subscriptions_closed")

        # 2. Let in-flight events settle, then retry any failed writes
        await self._pipeline.drain(timeout=DRAIN_TIMEOUT)
        await self._flush_storage()
        self._store.close()
        self._dedup.close()

        # 3. Close connections
        await self._health.stop()
        if isinstance(self._sink, ExpoPushSink):
            await self._sink.close()
        if isinstance(self._lookup, PostgrestLookup):
            await self._lookup.close()
        if isinstance(self._backend, SQLiteKeyValueStore):
            await self._backend.close()

        log.info("service.stopped")

    # --- Scope ---

    async def scope_for_user(self, role: Role | str, user_id: str) -> SubscriptionScope:
        """Build a scope, resolving a parent's children through the lookup."""
        if isinstance(role, str):
            role = Role.parse(role)
        children: list[str] = []
        if role is Role.PARENT:
            try:
                rows = await self._lookup.list_children(user_id)
            except LookupFailed as exc:
                log.error("service.children_lookup_failed", user=user_id, error=str(exc))
                rows = []
            children = [str(row["id"]) for row in rows if row.get("id") is not None]
            log.info("service.children_resolved", user=user_id, children=len(children))
        return SubscriptionScope.for_user(role, user_id, children)

    async def set_scope(self, scope: SubscriptionScope | None) -> ReconcileResult:
        """
        Switch to a new scope (None = signed out).

        A different principal gets their own stored list and admitted ids.
        Feeds are brought up before history is fetched, so rows committed in
        between arrive through one path or the other.
        """
        self._pipeline.set_principal(scope.principal if scope else None)
        await self._switch_storage()
        result = await self._subscriptions.reconcile(scope)
        if scope is not None and self._subscriptions.scope == scope:
            await self._backfill(scope)
        self._update_health()
        return result

    async def sign_in(self, role: Role | str, user_id: str) -> ReconcileResult:
        return await self.set_scope(await self.scope_for_user(role, user_id))

    async def sign_out(self) -> ReconcileResult:
        return await self.set_scope(None)

    # --- UI-facing API ---

    def list(self) -> list[NotificationRecord]:
        return self._store.list()

    def unread_count(self) -> int:
        return self._store.unread_count()

    async def mark_as_read(self, record_id: str) -> bool:
        return await self._store.mark_read(record_id)

    async def mark_all_as_read(self) -> int:
        return await self._store.mark_all_read()

    async def clear_all(self) -> int:
        return await self._store.clear()

    async def refresh(self) -> int:
        """Merge recent existing rows for the current scope. Returns how many were new."""
        scope = self._subscriptions.scope
        if scope is None:
            return 0
        return await self._backfill(scope)

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        return self._store.subscribe(listener)

    # --- Process ---

    async def run_forever(self, role: Role | str | None = None, user_id: str | None = None) -> None:
        """Run until shutdown signal."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        await self.start()
        try:
            if role is not None and user_id is not None:
                result = await self.sign_in(role, user_id)
                if result.all_failed:
                    log.error("service.live_updates_unavailable")

            # Periodic health status update
            while not self._shutdown_event.is_set():
                self._update_health()
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=HEALTH_INTERVAL)
                except asyncio.TimeoutError:
                    pass
        finally:
            await asyncio.wait_for(self.stop(), timeout=SHUTDOWN_TIMEOUT)

    def health_status(self) -> dict[str, Any]:
        scope = self._subscriptions.scope
        return {
            "principal": scope.principal if scope else None,
            "live_updates_available": self._subscriptions.live_updates_available,
            "subscriptions": [
                {
                    "table": status.key.table,
                    "scope": status.key.scope_signature,
                    "state": status.state.value,
                    "attempts": status.attempts,
                    "last_error": status.last_error,
                }
                for status in self._subscriptions.statuses()
            ],
            "notifications": len(self._store),
            "unread": self._store.unread_count(),
            "storage_dirty": self._store.dirty or self._dedup.dirty,
        }

    def _update_health(self) -> None:
        self._health.update_status(self.health_status())

    # --- Storage ---

    async def _flush_storage(self) -> bool:
        # Admitted ids are only written once the records they cover are.
        if not await self._store.flush():
            log.error("service.store_flush_failed")
            return False
        if not await self._dedup.flush():
            log.error("service.dedup_flush_failed")
            return False
        return True

    async def _switch_storage(self) -> None:
        async with self._storage_lock:
            principal = self._pipeline.principal
            if principal == self._namespace:
                return
            await self._flush_storage()
            await self._store.load(principal)
            await self._dedup.load(principal)
            self._namespace = principal
            log.info("service.storage_switched", principal=principal, notifications=len(self._store))

    async def _backfill(self, scope: SubscriptionScope) -> int:
        limit = self._config.store.history_limit
        if limit == 0:
            return 0
        events: list[ChangeEvent] = []
        for spec in plan_subscriptions(scope, self._config.subscriptions.role_tables).values():
            column = HISTORY_TIME_COLUMNS.get(spec.table)
            if column is None:
                continue
            try:
                rows = await self._lookup.recent(spec.table, spec.row_filter, column, limit)
            except LookupFailed as exc:
                log.warning("service.history_fetch_failed", table=spec.table, error=str(exc))
                continue
            events.extend(history_events(spec.table, rows, column))
        return await self._pipeline.backfill(scope.principal, events)
