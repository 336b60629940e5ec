"""
Subscription management for the signed-in user's change feeds.

Derives the feeds a scope needs (table + row filter), keeps exactly one
subscription per (table, scope signature), and moves each through its
lifecycle:

    Idle → Subscribing → Active → Closed
                 ↑   ↓       ↓
                 └─ Error ←──┘      (bounded retries with backoff)

Error is observable and sticky once retries are exhausted; a failed
subscription never silently disappears. The next reconcile that still wants
it starts a fresh one. Closed is terminal.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import structlog

from .change_stream import ChangeFeed, ChangeStream
from .errors import SubscriptionError
from .metrics import MetricsCollector
from .models import ChangeEvent, Role, RowFilter, SubscriptionScope

log = structlog.get_logger()

STUDENT_ROW_TABLES = frozenset({"scores", "attendance"})
ANNOUNCEMENT_AUDIENCES = {
    Role.PARENT: ("ALL", "Parents", "Parent"),
    Role.STUDENT: ("ALL", "Students", "Student"),
}


class SubscriptionState(str, Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    ERROR = "error"
    CLOSED = "closed"


_TRANSITIONS: dict[SubscriptionState, frozenset[SubscriptionState]] = {
    SubscriptionState.IDLE: frozenset({SubscriptionState.SUBSCRIBING, SubscriptionState.CLOSED}),
    SubscriptionState.SUBSCRIBING: frozenset(
        {SubscriptionState.ACTIVE, SubscriptionState.ERROR, SubscriptionState.CLOSED}
    ),
    SubscriptionState.ACTIVE: frozenset({SubscriptionState.ERROR, SubscriptionState.CLOSED}),
    SubscriptionState.ERROR: frozenset({SubscriptionState.SUBSCRIBING, SubscriptionState.CLOSED}),
    SubscriptionState.CLOSED: frozenset(),
}


@dataclass(frozen=True, order=True)
class SubscriptionKey:
    table: str
    scope_signature: str


@dataclass(frozen=True)
class SubscriptionSpec:
    """What to subscribe to, and on whose behalf."""
    key: SubscriptionKey
    row_filter: RowFilter | None
    principal: str

    @property
    def table(self) -> str:
        return self.key.table


@dataclass(frozen=True)
class SubscriptionStatus:
    """Read-only view of a subscription for diagnostics."""
    key: SubscriptionKey
    state: SubscriptionState
    attempts: int
    last_error: str | None


@dataclass(frozen=True)
class ReconcileResult:
    desired: frozenset[SubscriptionKey]
    active: frozenset[SubscriptionKey]
    failed: frozenset[SubscriptionKey]
    superseded: bool = False

    @property
    def all_failed(self) -> bool:
        """True when the scope needs feeds and none of them came up."""
        return bool(self.desired) and not self.active and not self.superseded


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 5
    base_seconds: float = 1.0
    max_seconds: float = 60.0
    multiplier: float = 2.0
    ready_timeout: float = 10.0


EventSink = Callable[[SubscriptionSpec, ChangeEvent], None]


def _filter_for(scope: SubscriptionScope, table: str) -> tuple[bool, RowFilter | None]:
    """(needed, row filter) for one table under a scope."""
    if table in STUDENT_ROW_TABLES:
        if scope.role is Role.PARENT:
            if not scope.child_ids:
                return False, None
            return True, RowFilter.any_of("student_id", scope.child_ids)
        if scope.role is Role.STUDENT:
            return True, RowFilter.equals("student_id", scope.user_id)
        return True, None
    if table == "announcements" and scope.role in ANNOUNCEMENT_AUDIENCES:
        return True, RowFilter.any_of("targetAudience", ANNOUNCEMENT_AUDIENCES[scope.role])
    return True, None


def plan_subscriptions(
    scope: SubscriptionScope | None,
    role_tables: dict[Role, list[str]],
) -> dict[SubscriptionKey, SubscriptionSpec]:
    """The feeds a scope requires, keyed by (table, scope signature)."""
    if scope is None:
        return {}
    specs: dict[SubscriptionKey, SubscriptionSpec] = {}
    for table in role_tables.get(scope.role, []):
        needed, row_filter = _filter_for(scope, table)
        if not needed:
            continue
        condition = row_filter.to_postgrest() if row_filter else "*"
        key = SubscriptionKey(table, f"{scope.principal}|{condition}")
        specs[key] = SubscriptionSpec(key=key, row_filter=row_filter, principal=scope.principal)
    return specs


class _Subscription:
    """One change feed and its retry loop. Only the manager holds these."""

    def __init__(
        self,
        spec: SubscriptionSpec,
        stream: ChangeStream,
        sink: EventSink,
        policy: RetryPolicy,
        metrics: MetricsCollector | None,
        on_state_change: Callable[[], None],
    ):
        self.spec = spec
        self.state = SubscriptionState.IDLE
        self.attempts = 0
        self.last_error: str | None = None
        self._stream = stream
        self._sink = sink
        self._policy = policy
        self._metrics = metrics
        self._on_state_change = on_state_change
        self._feed: ChangeFeed | None = None
        self._task: asyncio.Task | None = None
        self._settled = asyncio.Event()

    def status(self) -> SubscriptionStatus:
        return SubscriptionStatus(self.spec.key, self.state, self.attempts, self.last_error)

    @property
    def exhausted(self) -> bool:
        """In Error with its retry loop finished; only a new reconcile restarts it."""
        return (
            self.state is SubscriptionState.ERROR
            and self._task is not None
            and self._task.done()
        )

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"subscription:{self.spec.table}")

    async def wait_settled(self) -> None:
        """Wait for the first Active, Error or Closed state."""
        await self._settled.wait()

    async def close(self) -> None:
        if self.state is SubscriptionState.CLOSED:
            return
        self._transition(SubscriptionState.CLOSED)
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._release_feed()

    def _transition(self, new: SubscriptionState) -> bool:
        if self.state is SubscriptionState.CLOSED:
            return False
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal subscription transition {self.state.value} -> {new.value}")
        log.info(
            "subscriptions.state",
            table=self.spec.table,
            scope=self.spec.key.scope_signature,
            old=self.state.value,
            new=new.value,
        )
        self.state = new
        if new is not SubscriptionState.SUBSCRIBING:
            self._settled.set()
        self._on_state_change()
        return True

    async def _run(self) -> None:
        backoff = self._policy.base_seconds

        while self.state is not SubscriptionState.CLOSED:
            if not self._transition(SubscriptionState.SUBSCRIBING):
                return
            self.attempts += 1
            try:
                self._feed = await self._stream.open(self.spec.table, self.spec.row_filter)
                await asyncio.wait_for(self._feed.ready(), timeout=self._policy.ready_timeout)
                if not self._transition(SubscriptionState.ACTIVE):
                    return
                self.attempts = 0
                self.last_error = None
                backoff = self._policy.base_seconds

                async for event in self._feed:
                    if self.state is not SubscriptionState.ACTIVE:
                        break
                    self._forward(event)

                if self.state is SubscriptionState.CLOSED:
                    return
                raise SubscriptionError("change feed ended unexpectedly")
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                error = f"no acknowledgement within {self._policy.ready_timeout}s"
            except SubscriptionError as exc:
                error = str(exc)
            except Exception as exc:
                log.exception("subscriptions.feed_crashed", table=self.spec.table)
                error = repr(exc)

            await self._release_feed()
            if self.state is SubscriptionState.CLOSED:
                return
            self.last_error = error
            self._transition(SubscriptionState.ERROR)
            if self._metrics:
                self._metrics.inc("subscription_errors_total", table=self.spec.table)

            if self.attempts >= self._policy.max_retries:
                log.error(
                    "subscriptions.gave_up",
                    table=self.spec.table,
                    attempts=self.attempts,
                    error=error,
                )
                return

            log.warning(
                "subscriptions.retrying",
                table=self.spec.table,
                attempt=self.attempts,
                backoff=backoff,
                error=error,
            )
            await asyncio.sleep(backoff)
            backoff = min(backoff * self._policy.multiplier, self._policy.max_seconds)

    def _forward(self, event: ChangeEvent) -> None:
        if self._metrics:
            self._metrics.inc("events_received_total", table=event.table)
        try:
            self._sink(self.spec, event)
        except Exception:
            log.exception("subscriptions.sink_error", table=self.spec.table)

    async def _release_feed(self) -> None:
        feed, self._feed = self._feed, None
        if feed is None:
            return
        try:
            await feed.close()
        except Exception as exc:
            log.warning("subscriptions.feed_close_failed", table=self.spec.table, error=str(exc))


class SubscriptionManager:
    """
    Owns every change subscription for the current scope.

    reconcile() may be called concurrently; each call records its desired
    state immediately and the most recent call wins. When the signed-in
    user changes, old feeds are closed before new ones open. When only the
    scope of the same user changes (a parent's children), replacements are
    brought up first and the old feeds closed afterwards, so there is no
    window without coverage; the deduplicator absorbs the overlap.
    """

    def __init__(
        self,
        stream: ChangeStream,
        sink: EventSink,
        role_tables: dict[Role, list[str]],
        policy: RetryPolicy | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._stream = stream
        self._sink = sink
        self._role_tables = role_tables
        self._policy = policy or RetryPolicy()
        self._metrics = metrics
        self._subs: dict[SubscriptionKey, _Subscription] = {}
        self._desired: dict[SubscriptionKey, SubscriptionSpec] = {}
        self._scope: SubscriptionScope | None = None
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def scope(self) -> SubscriptionScope | None:
        return self._scope

    @property
    def live_updates_available(self) -> bool:
        """False only when the scope needs feeds and none is active."""
        if not self._desired:
            return True
        return any(
            sub.state is SubscriptionState.ACTIVE
            for key, sub in self._subs.items()
            if key in self._desired
        )

    def statuses(self) -> list[SubscriptionStatus]:
        return [self._subs[key].status() for key in sorted(self._subs)]

    def state_of(self, key: SubscriptionKey) -> SubscriptionState | None:
        sub = self._subs.get(key)
        return sub.state if sub else None

    async def reconcile(self, scope: SubscriptionScope | None) -> ReconcileResult:
        """Bring the open subscriptions in line with `scope` (None = signed out)."""
        self._generation += 1
        generation = self._generation
        desired = plan_subscriptions(scope, self._role_tables)
        self._scope = scope
        self._desired = desired
        principal = scope.principal if scope else None

        async with self._lock:
            if generation != self._generation:
                log.debug("subscriptions.reconcile_superseded", generation=generation)
                return self._result(desired, superseded=True)

            exhausted = [key for key in desired if key in self._subs and self._subs[key].exhausted]
            if exhausted:
                log.info("subscriptions.restarting", tables=[key.table for key in exhausted])
                await self._close_keys(exhausted)

            stale = [key for key in self._subs if key not in desired]
            missing = [spec for key, spec in desired.items() if key not in self._subs]
            log.info(
                "subscriptions.reconcile",
                principal=principal,
                desired=len(desired),
                opening=len(missing),
                closing=len(stale),
            )

            if any(self._subs[key].spec.principal != principal for key in stale):
                await self._close_keys(stale)
                stale = []

            started = [self._start(spec) for spec in missing]
            await self._wait_settled(started)

            if generation != self._generation:
                return self._result(desired, superseded=True)
            await self._close_keys(stale)
            result = self._result(desired)

        if result.all_failed:
            log.error("subscriptions.live_updates_unavailable", principal=principal)
        return result

    async def close(self) -> None:
        """Close every subscription."""
        await self.reconcile(None)

    def _start(self, spec: SubscriptionSpec) -> _Subscription:
        sub = _Subscription(
            spec, self._stream, self._sink, self._policy, self._metrics, self._update_gauges
        )
        self._subs[spec.key] = sub
        sub.start()
        return sub

    async def _close_keys(self, keys: list[SubscriptionKey]) -> None:
        subs = [self._subs.pop(key) for key in keys if key in self._subs]
        if subs:
            await asyncio.gather(*(sub.close() for sub in subs))
        self._update_gauges()

    async def _wait_settled(self, subs: list[_Subscription]) -> None:
        if not subs:
            return
        waiters = [asyncio.create_task(sub.wait_settled()) for sub in subs]
        _, pending = await asyncio.wait(waiters, timeout=self._policy.ready_timeout + 1.0)
        for waiter in pending:
            waiter.cancel()

    def _result(
        self, desired: dict[SubscriptionKey, SubscriptionSpec], superseded: bool = False
    ) -> ReconcileResult:
        active = frozenset(
            key for key in desired
            if key in self._subs and self._subs[key].state is SubscriptionState.ACTIVE
        )
        failed = frozenset(
            key for key in desired
            if key in self._subs and self._subs[key].state is SubscriptionState.ERROR
        )
        return ReconcileResult(frozenset(desired), active, failed, superseded)

    def _update_gauges(self) -> None:
        if self._metrics:
            self._metrics.set_gauge(
                "subscriptions_active",
                sum(1 for sub in self._subs.values() if sub.state is SubscriptionState.ACTIVE),
            )
