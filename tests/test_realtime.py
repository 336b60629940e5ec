"""
Tests for the Supabase Realtime adapter against an in-process Phoenix
websocket server.
"""

import asyncio
import json

import pytest
from aiohttp import test_utils, web

from school_notify.errors import SubscriptionError
from school_notify.models import Operation, RowFilter
from school_notify.realtime import RealtimeChangeStream, parse_change, websocket_url

SCORE_CHANGE = {
    "schema": "public",
    "table": "scores",
    "commit_timestamp": "2024-05-01T09:00:00.123Z",
    "type": "INSERT",
    "record": {"id": 41, "student_id": "S1", "lesson_id": "L1", "score": 8},
    "old_record": {},
}


def test_parse_insert():
    event = parse_change(SCORE_CHANGE)
    assert event.table == "scores"
    assert event.operation is Operation.INSERT
    assert event.after["score"] == 8
    assert event.before is None
    assert event.committed_at.tzinfo is not None
    assert event.committed_at.microsecond == 123000


def test_parse_delete_keeps_only_before():
    event = parse_change(
        {
            "table": "attendance",
            "commit_timestamp": "2024-05-01T09:00:00Z",
            "eventType": "DELETE",
            "record": {},
            "old_record": {"id": 9},
        }
    )
    assert event.operation is Operation.DELETE
    assert event.after is None
    assert event.row == {"id": 9}


def test_parse_malformed():
    with pytest.raises(ValueError):
        parse_change({**SCORE_CHANGE, "type": "TRUNCATE"})
    with pytest.raises(KeyError):
        parse_change({"type": "INSERT", "record": {}})


def test_websocket_url():
    assert (
        websocket_url("https://abc.supabase.co/", "anon")
        == "wss://abc.supabase.co/realtime/v1/websocket?apikey=anon&vsn=1.0.0"
    )
    assert websocket_url("http://localhost:54321", "k").startswith("ws://localhost:54321/realtime/v1/")


@pytest.fixture
async def phoenix():
    state = {
        "frames": [],
        "changes": [],
        "join_status": "ok",
        "reply_heartbeat": True,
        "close_after_join": False,
    }

    async def handler(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        async for msg in ws:
            frame = json.loads(msg.data)
            state["frames"].append(frame)
            reply = {"topic": frame["topic"], "event": "phx_reply", "ref": frame["ref"]}
            if frame["event"] == "phx_join":
                await ws.send_json({**reply, "payload": {"status": state["join_status"], "response": {}}})
                for data in state["changes"]:
                    await ws.send_json(
                        {"topic": frame["topic"], "event": "postgres_changes", "payload": {"data": data}, "ref": None}
                    )
                if state["close_after_join"]:
                    await ws.close()
            elif frame["event"] == "heartbeat" and state["reply_heartbeat"]:
                await ws.send_json({**reply, "payload": {"status": "ok", "response": {}}})
        return ws

    app = web.Application()
    app.router.add_get("/realtime/v1/websocket", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    yield state, f"http://{server.host}:{server.port}"
    await server.close()


async def next_event(feed, timeout=2.0):
    iterator = feed.__aiter__()
    return await asyncio.wait_for(iterator.__anext__(), timeout)


async def test_join_and_receive(phoenix):
    state, url = phoenix
    state["changes"] = [SCORE_CHANGE]
    stream = RealtimeChangeStream(url, "anon", access_token="user-jwt")

    feed = await stream.open("scores", RowFilter.any_of("student_id", ["S1", "S2"]))
    await asyncio.wait_for(feed.ready(), 2.0)
    event = await next_event(feed)
    await feed.close()

    assert event.after["id"] == 41
    join = state["frames"][0]
    assert join["event"] == "phx_join"
    change = join["payload"]["config"]["postgres_changes"][0]
    assert change == {"event": "*", "schema": "public", "table": "scores", "filter": "student_id=in.(S1,S2)"}
    assert join["payload"]["access_token"] == "user-jwt"


async def test_client_side_filter_drops_other_rows(phoenix):
    state, url = phoenix
    other = {**SCORE_CHANGE, "record": {**SCORE_CHANGE["record"], "id": 42, "student_id": "S9"}}
    state["changes"] = [other, SCORE_CHANGE]
    feed = await RealtimeChangeStream(url, "anon").open("scores", RowFilter.equals("student_id", "S1"))
    await asyncio.wait_for(feed.ready(), 2.0)
    event = await next_event(feed)
    await feed.close()
    assert event.after["id"] == 41


async def test_rejected_join(phoenix):
    state, url = phoenix
    state["join_status"] = "error"
    feed = await RealtimeChangeStream(url, "anon").open("scores")
    with pytest.raises(SubscriptionError, match="join rejected"):
        await asyncio.wait_for(feed.ready(), 2.0)
    await feed.close()


async def test_server_close_fails_feed(phoenix):
    state, url = phoenix
    state["close_after_join"] = True
    feed = await RealtimeChangeStream(url, "anon").open("announcements")
    await asyncio.wait_for(feed.ready(), 2.0)
    with pytest.raises(SubscriptionError):
        await next_event(feed)
    await feed.close()


async def test_heartbeats_keep_feed_alive(phoenix):
    state, url = phoenix
    feed = await RealtimeChangeStream(url, "anon", heartbeat_interval=0.05).open("scores")
    await asyncio.wait_for(feed.ready(), 2.0)
    await asyncio.sleep(0.3)
    await feed.close()
    heartbeats = [f for f in state["frames"] if f["event"] == "heartbeat"]
    assert len(heartbeats) >= 2
    assert all(f["topic"] == "phoenix" for f in heartbeats)
    assert "phx_leave" in [f["event"] for f in state["frames"]]


async def test_missed_heartbeat_fails_feed(phoenix):
    state, url = phoenix
    state["reply_heartbeat"] = False
    feed = await RealtimeChangeStream(url, "anon", heartbeat_interval=0.05).open("scores")
    await asyncio.wait_for(feed.ready(), 2.0)
    with pytest.raises(SubscriptionError, match="heartbeat"):
        await next_event(feed)
    await feed.close()


async def test_connect_failure_is_subscription_error():
    stream = RealtimeChangeStream("http://127.0.0.1:1", "anon")
    with pytest.raises(SubscriptionError, match="connect failed"):
        await stream.open("scores")
