"""
Delivery sinks: where a stored notification is presented.

Delivery is best effort. A sink may raise; the pipeline logs it and moves
on, the notification is already stored.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog

from .config import DeliveryConfig

log = structlog.get_logger()


class DeliverySink(Protocol):
    async def present(self, title: str, message: str, metadata: dict[str, Any]) -> None: ...


class LogSink:
    """Writes each notification to the log."""

    async def present(self, title: str, message: str, metadata: dict[str, Any]) -> None:
        log.info(
            "delivery.notification",
            title=title,
            message=message,
            source_table=metadata.get("source_table"),
            action=metadata.get("action"),
        )


class ExpoPushSink:
    """
    Sends device notifications through the Expo push API.

    One request per notification, one message per registered push token.
    """

    def __init__(
        self,
        url: str,
        tokens: list[str],
        request_timeout: int = 30,
        client: httpx.AsyncClient | None = None,
    ):
        self._url = url
        self._tokens = list(tokens)
        self._request_timeout = request_timeout
        self._client = client
        self._owns_client = client is None

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._request_timeout))

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def present(self, title: str, message: str, metadata: dict[str, Any]) -> None:
        if not self._tokens:
            return
        assert self._client
        payload = [
            {
                "to": token,
                "title": title,
                "body": message,
                "data": metadata,
                "sound": "default",
            }
            for token in self._tokens
        ]
        resp = await self._client.post(
            self._url,
            json=payload,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
        )
        resp.raise_for_status()
        tickets = resp.json().get("data", [])
        errors = [t for t in tickets if isinstance(t, dict) and t.get("status") == "error"]
        if errors:
            log.warning("delivery.expo_ticket_errors", count=len(errors), first=errors[0].get("message"))


def build_sink(config: DeliveryConfig) -> LogSink | ExpoPushSink | None:
    """Create the sink selected by config; None disables delivery."""
    if config.kind == "none":
        return None
    if config.kind == "expo":
        if not config.expo_tokens:
            log.warning("delivery.expo_without_tokens")
        return ExpoPushSink(config.expo_url, config.expo_tokens)
    return LogSink()
