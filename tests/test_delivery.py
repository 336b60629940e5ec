"""Tests for delivery sinks."""

import json

import httpx
import pytest

from school_notify.config import DeliveryConfig
from school_notify.delivery import ExpoPushSink, LogSink, build_sink


async def test_expo_sink_sends_one_message_per_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"data": [{"status": "ok", "id": "t1"}, {"status": "ok", "id": "t2"}]})

    sink = ExpoPushSink(
        "https://exp.host/--/api/v2/push/send",
        ["ExponentPushToken[a]", "ExponentPushToken[b]"],
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    await sink.present("New Score for Alice", "Alice received a score of 8", {"source_table": "scores"})

    messages = seen[0]
    assert [m["to"] for m in messages] == ["ExponentPushToken[a]", "ExponentPushToken[b]"]
    assert messages[0]["title"] == "New Score for Alice"
    assert messages[0]["body"] == "Alice received a score of 8"
    assert messages[0]["data"] == {"source_table": "scores"}


async def test_expo_sink_without_tokens_sends_nothing():
    def handler(request):
        raise AssertionError("no request expected")

    sink = ExpoPushSink("https://exp.host/--/api/v2/push/send", [],
                        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    await sink.present("t", "m", {})


async def test_expo_sink_raises_on_http_error():
    sink = ExpoPushSink(
        "https://exp.host/--/api/v2/push/send",
        ["ExponentPushToken[a]"],
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await sink.present("t", "m", {})


def test_build_sink():
    assert isinstance(build_sink(DeliveryConfig()), LogSink)
    assert build_sink(DeliveryConfig(kind="none")) is None
    assert isinstance(build_sink(DeliveryConfig(kind="expo", expo_tokens=["x"])), ExpoPushSink)


async def test_log_sink_accepts_any_metadata():
    await LogSink().present("t", "m", {})
