"""Tests for PostgREST lookups, using httpx's mock transport."""

import httpx
import pytest

from school_notify import lookup as lookup_module
from school_notify.errors import LookupFailed
from school_notify.lookup import PostgrestLookup
from school_notify.metrics import MetricsCollector
from school_notify.models import RowFilter


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(lookup_module, "RETRY_BASE_SECONDS", 0)


def make_lookup(handler, metrics=None, access_token="user-jwt"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PostgrestLookup(
        "https://abc.supabase.co/",
        api_key="anon",
        access_token=access_token,
        metrics=metrics,
        client=client,
    )


async def test_get_by_primary_key():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "L1", "lessonname": "Fractions", "subjectid": "SUB1"}])

    metrics = MetricsCollector()
    row = await make_lookup(handler, metrics).get("lessons", "L1")

    assert row == {"id": "L1", "lessonname": "Fractions", "subjectid": "SUB1"}
    request = seen[0]
    assert request.url.path == "/rest/v1/lessons"
    assert request.url.params["id"] == "eq.L1"
    assert request.url.params["limit"] == "1"
    assert request.headers["apikey"] == "anon"
    assert request.headers["Authorization"] == "Bearer user-jwt"
    assert metrics.get("lookups_total", table="lessons") == 1


async def test_missing_row_is_none():
    row = await make_lookup(lambda request: httpx.Response(200, json=[])).get("subjects", "404")
    assert row is None


async def test_anon_key_used_without_access_token():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    await make_lookup(handler, access_token=None).get("subjects", "1")
    assert seen[0].headers["Authorization"] == "Bearer anon"


async def test_server_errors_are_retried():
    responses = iter([httpx.Response(503), httpx.Response(429, headers={"Retry-After": "0"}),
                      httpx.Response(200, json=[{"id": "SUB1", "subjectname": "Math"}])])
    row = await make_lookup(lambda request: next(responses)).get("subjects", "SUB1")
    assert row["subjectname"] == "Math"


async def test_client_error_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json={"message": "JWT expired"})

    metrics = MetricsCollector()
    with pytest.raises(LookupFailed, match="HTTP 401"):
        await make_lookup(handler, metrics).get("users", "S1")
    assert len(calls) == 1
    assert metrics.get("lookup_errors_total", table="users") == 1


async def test_transport_errors_exhaust_retries():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(LookupFailed) as exc_info:
        await make_lookup(handler).get("lessons", "L1")
    assert len(calls) == lookup_module.MAX_RETRIES
    assert exc_info.value.table == "lessons"
    assert exc_info.value.key == "L1"


async def test_list_children():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[{"id": "S1", "firstName": "Alice", "lastName": ""}])

    children = await make_lookup(handler).list_children("P1")
    assert [c["id"] for c in children] == ["S1"]
    params = seen[0].url.params
    assert seen[0].url.path == "/rest/v1/users"
    assert params["parent_id"] == "eq.P1"
    assert params["role"] == "eq.Student"


async def test_recent_rows_use_subscription_filter():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[{"id": 41, "student_id": "S1"}])

    rows = await make_lookup(handler).recent(
        "scores", RowFilter.any_of("student_id", ["S2", "S1"]), "created_at", 50
    )
    assert rows == [{"id": 41, "student_id": "S1"}]
    params = seen[0].url.params
    assert seen[0].url.path == "/rest/v1/scores"
    assert params["student_id"] == "in.(S1,S2)"
    assert params["order"] == "created_at.desc"
    assert params["limit"] == "50"


async def test_recent_rows_unfiltered():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    assert await make_lookup(handler).recent("announcements", None, "created_at", 10) == []
    assert set(seen[0].url.params) == {"select", "order", "limit"}
