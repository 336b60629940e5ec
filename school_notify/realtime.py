"""
Supabase Realtime change feeds.

One websocket per feed, speaking the Phoenix channel protocol:
- phx_join with a postgres_changes config for one table and row filter
- phx_reply "ok" to the join is the subscription acknowledgement
- heartbeat on the "phoenix" topic; a missed reply fails the feed
- postgres_changes frames are decoded into ChangeEvent
- phx_error / phx_close / error replies fail the feed with SubscriptionError

Reconnection is not handled here; the subscription manager owns retries.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import aiohttp
import structlog

from .errors import SubscriptionError
from .models import ChangeEvent, Operation, RowFilter

log = structlog.get_logger()

PROTOCOL_VSN = "1.0.0"
_CLOSED = object()
_topic_seq = itertools.count(1)


def parse_timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def parse_change(data: dict[str, Any]) -> ChangeEvent:
    """
    Decode the `data` object of a postgres_changes frame.

    Raises KeyError/ValueError on malformed frames.
    """
    operation = Operation(data.get("type") or data["eventType"])
    after = data.get("record") or None
    before = data.get("old_record") or None
    if operation is Operation.INSERT:
        before = None
    elif operation is Operation.DELETE:
        after = None
    return ChangeEvent(
        table=data["table"],
        operation=operation,
        committed_at=parse_timestamp(data["commit_timestamp"]),
        before=before,
        after=after,
    )


def websocket_url(base_url: str, api_key: str) -> str:
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/realtime/v1/websocket?apikey={api_key}&vsn={PROTOCOL_VSN}"


class RealtimeChangeStream:
    """Opens Supabase Realtime feeds for postgres_changes."""

    def __init__(
        self,
        url: str,
        api_key: str,
        access_token: str | None = None,
        schema: str = "public",
        heartbeat_interval: float = 30.0,
        verify_tls: bool = True,
    ):
        self._ws_url = websocket_url(url, api_key)
        self._access_token = access_token or api_key
        self._schema = schema
        self._heartbeat_interval = heartbeat_interval
        self._verify_tls = verify_tls

    async def open(self, table: str, row_filter: RowFilter | None = None) -> RealtimeFeed:
        change: dict[str, Any] = {"event": "*", "schema": self._schema, "table": table}
        if row_filter is not None:
            change["filter"] = row_filter.to_postgrest()
        join_payload = {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [change],
                "private": False,
            },
            "access_token": self._access_token,
        }
        feed = RealtimeFeed(
            ws_url=self._ws_url,
            topic=f"realtime:notify-{table}-{next(_topic_seq)}",
            join_payload=join_payload,
            row_filter=row_filter,
            heartbeat_interval=self._heartbeat_interval,
            verify_tls=self._verify_tls,
        )
        await feed.connect()
        return feed


class RealtimeFeed:
    """A single joined Realtime channel."""

    def __init__(
        self,
        ws_url: str,
        topic: str,
        join_payload: dict[str, Any],
        row_filter: RowFilter | None = None,
        heartbeat_interval: float = 30.0,
        verify_tls: bool = True,
    ):
        self._ws_url = ws_url
        self._topic = topic
        self._join_payload = join_payload
        self._row_filter = row_filter
        self._heartbeat_interval = heartbeat_interval
        self._verify_tls = verify_tls

        self._refs = itertools.count(1)
        self._join_ref: str | None = None
        self._pending_heartbeat: str | None = None
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._acked: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._closing = False
        self._failed = False

    @property
    def topic(self) -> str:
        return self._topic

    async def connect(self) -> None:
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self._ws_url, ssl=self._verify_tls)
            self._join_ref = await self._send(self._topic, "phx_join", self._join_payload)
        except (aiohttp.ClientError, OSError) as exc:
            await self._session.close()
            self._session = None
            raise SubscriptionError(f"realtime connect failed: {exc}") from exc
        except asyncio.CancelledError:
            await self._session.close()
            self._session = None
            raise

        self._tasks = [
            asyncio.create_task(self._read_loop()),
            asyncio.create_task(self._heartbeat_loop()),
        ]
        log.debug("realtime.join_sent", topic=self._topic)

    async def ready(self) -> None:
        await asyncio.shield(self._acked)

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self._ws is not None and not self._ws.closed and not self._failed:
            try:
                await self._send(self._topic, "phx_leave", {})
            except (aiohttp.ClientError, ConnectionError, RuntimeError):
                pass
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._ws is not None:
            await self._ws.close()
        if self._session is not None:
            await self._session.close()
        if not self._acked.done():
            self._acked.cancel()
        self._queue.put_nowait(_CLOSED)
        log.debug("realtime.closed", topic=self._topic)

    async def _send(self, topic: str, event: str, payload: dict[str, Any]) -> str:
        assert self._ws is not None
        ref = str(next(self._refs))
        await self._ws.send_str(
            json.dumps({"topic": topic, "event": event, "payload": payload, "ref": ref})
        )
        return ref

    def _fail(self, exc: SubscriptionError) -> None:
        if self._closing or self._failed:
            return
        self._failed = True
        log.warning("realtime.feed_failed", topic=self._topic, error=str(exc))
        if not self._acked.done():
            self._acked.set_exception(exc)
            # Retrieved here so an unawaited ready() does not warn.
            self._acked.exception()
        self._queue.put_nowait(exc)

    async def _read_loop(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except json.JSONDecodeError:
                        log.warning("realtime.parse_error", topic=self._topic, data=msg.data[:200])
                        continue
                    self._handle_frame(frame)
                elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                    break
        except (aiohttp.ClientError, ConnectionError) as exc:
            self._fail(SubscriptionError(f"realtime socket error: {exc}"))
            return
        self._fail(SubscriptionError("realtime socket closed by server"))

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if self._pending_heartbeat is not None:
                self._fail(SubscriptionError("realtime heartbeat timeout"))
                return
            try:
                self._pending_heartbeat = await self._send("phoenix", "heartbeat", {})
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
                self._fail(SubscriptionError(f"realtime heartbeat failed: {exc}"))
                return

    def _handle_frame(self, frame: dict[str, Any]) -> None:
        event = frame.get("event")
        payload = frame.get("payload") or {}
        ref = frame.get("ref")

        if frame.get("topic") == "phoenix":
            if event == "phx_reply" and ref == self._pending_heartbeat:
                self._pending_heartbeat = None
            return

        if event == "phx_reply" and ref == self._join_ref:
            if payload.get("status") == "ok":
                if not self._acked.done():
                    self._acked.set_result(None)
                    log.info("realtime.joined", topic=self._topic)
            else:
                self._fail(SubscriptionError(f"join rejected: {payload.get('response')}"))
        elif event == "postgres_changes":
            self._handle_change(payload.get("data") or {})
        elif event == "system" and payload.get("status") == "error":
            self._fail(SubscriptionError(f"realtime system error: {payload.get('message')}"))
        elif event in ("phx_error", "phx_close"):
            self._fail(SubscriptionError(f"channel {event}"))

    def _handle_change(self, data: dict[str, Any]) -> None:
        try:
            change = parse_change(data)
        except (KeyError, ValueError) as exc:
            log.warning("realtime.change_parse_error", topic=self._topic, error=str(exc))
            return
        if self._row_filter is not None and not self._row_filter.matches(change.row):
            log.debug("realtime.filtered", topic=self._topic, table=change.table)
            return
        self._queue.put_nowait(change)
