"""
Health and metrics HTTP server.

Exposes:
- GET /health: JSON status of the subscriptions and the notification store
- GET /metrics: Prometheus-compatible metrics
"""

from __future__ import annotations

from typing import Any

from aiohttp import web

from .metrics import MetricsCollector


class HealthServer:
    """Lightweight HTTP server for health checks and metrics."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 9090,
        metrics: MetricsCollector | None = None,
    ):
        self._host = host
        self._port = port
        self._metrics = metrics or MetricsCollector()
        self._status: dict[str, Any] = {}
        self._runner: web.AppRunner | None = None

    def update_status(self, status: dict[str, Any]) -> None:
        self._status = dict(status)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/metrics", self._metrics_handler)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        live = self._status.get("live_updates_available", True)
        dirty = self._status.get("storage_dirty", False)
        body = {"status": "healthy" if live and not dirty else "degraded", **self._status}
        return web.json_response(body)

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        return web.Response(
            text=self._metrics.to_prometheus(),
            content_type="text/plain",
        )
