"""
Related-entity lookups against the backend's REST interface (PostgREST).

Handles:
- Point lookups by primary key (lessons, subjects, students)
- Listing a parent's children to build their subscription scope
- Recent rows per watched table, for the history merged in at sign-in
- Retry with backoff on 5xx, 429 and connection errors; 4xx is not retried
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import httpx
import structlog

from .errors import LookupFailed
from .metrics import MetricsCollector
from .models import RowFilter

log = structlog.get_logger()

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_SECONDS = 0.5


class EntityLookup(Protocol):
    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        """Return the row with primary key `key`, or None if it does not exist."""
        ...

    async def list_children(self, parent_id: str) -> list[dict[str, Any]]: ...

    async def recent(
        self, table: str, row_filter: RowFilter | None, order_by: str, limit: int
    ) -> list[dict[str, Any]]: ...


class PostgrestLookup:
    """
    Reads single rows through PostgREST.

    Transport failures raise LookupFailed after retries; a missing row is
    reported as None, not as an error.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        access_token: str | None = None,
        students_table: str = "users",
        verify_tls: bool = True,
        request_timeout: int = 30,
        metrics: MetricsCollector | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._rest_url = f"{url.rstrip('/')}/rest/v1"
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {access_token or api_key}",
            "Accept": "application/json",
        }
        self._students_table = students_table
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._metrics = metrics
        self._client = client
        self._owns_client = client is None

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._request_timeout),
                verify=self._verify_tls,
            )

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        rows = await self._select(table, {"id": f"eq.{key}", "select": "*", "limit": "1"}, key)
        if self._metrics:
            self._metrics.inc("lookups_total", table=table)
        return rows[0] if rows else None

    async def list_children(self, parent_id: str) -> list[dict[str, Any]]:
        """Students whose parent_id is the given user."""
        return await self._select(
            self._students_table,
            {
                "parent_id": f"eq.{parent_id}",
                "role": "eq.Student",
                "select": "id,firstName,lastName",
            },
            parent_id,
        )

    async def recent(
        self, table: str, row_filter: RowFilter | None, order_by: str, limit: int
    ) -> list[dict[str, Any]]:
        """The newest `limit` rows of a table matching a subscription's row filter."""
        params = {"select": "*", "order": f"{order_by}.desc", "limit": str(limit)}
        if row_filter is not None:
            column, condition = row_filter.query_param()
            params[column] = condition
        rows = await self._select(table, params, "recent")
        if self._metrics:
            self._metrics.inc("history_fetches_total", table=table)
        return rows

    async def _select(self, table: str, params: dict[str, str], key: str) -> list[dict[str, Any]]:
        assert self._client
        url = f"{self._rest_url}/{table}"

        last_error = "no attempt made"
        for attempt in range(MAX_RETRIES):
            try:
                resp = await self._client.get(url, params=params, headers=self._headers)

                if resp.status_code == 429:
                    retry_after = float(resp.headers.get("Retry-After", RETRY_BASE_SECONDS * (attempt + 1)))
                    log.warning("lookup.rate_limited", table=table, retry_after=retry_after)
                    await asyncio.sleep(retry_after)
                    last_error = "rate limited"
                    continue

                resp.raise_for_status()
                body = resp.json()
                if not isinstance(body, list):
                    raise LookupFailed(table, key, "unexpected response shape")
                return body

            except httpx.HTTPStatusError as exc:
                if 400 <= exc.response.status_code < 500:
                    log.error("lookup.client_error", table=table, status=exc.response.status_code)
                    if self._metrics:
                        self._metrics.inc("lookup_errors_total", table=table)
                    raise LookupFailed(table, key, f"HTTP {exc.response.status_code}") from exc
                last_error = f"HTTP {exc.response.status_code}"
            except (httpx.TransportError, ValueError) as exc:
                last_error = str(exc) or type(exc).__name__

            backoff = RETRY_BASE_SECONDS * (2 ** attempt)
            log.warning(
                "lookup.retry",
                table=table,
                attempt=attempt + 1,
                backoff=backoff,
                error=last_error,
            )
            await asyncio.sleep(backoff)

        if self._metrics:
            self._metrics.inc("lookup_errors_total", table=table)
        raise LookupFailed(table, key, last_error)
