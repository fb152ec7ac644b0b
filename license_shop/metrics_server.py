"""Prometheus metrics and health endpoint for license-shop.

Serves ``/metrics`` (Prometheus text format) and ``/health`` (JSON) with
``aiohttp.web``.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from .main import ShopApp


class ShopMetricsServer:
    """Shop-specific Prometheus metrics endpoint."""

    def __init__(self, app: ShopApp, port: int = 28290, logger: logging.Logger | None = None) -> None:
        self._app = app
        self._port = port
        self._logger = logger or logging.getLogger("shop.metrics")
        self._runner: web.AppRunner | None = None
        self._started = time.monotonic()

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/health", self._handle_health)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self._port)
        await site.start()
        self._logger.info("Metrics server started on port %d", self._port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        lines = [f"shop_uptime_seconds {time.monotonic() - self._started:.0f}"]
        try:
            lines.extend(await self._collect_custom_metrics())
        except Exception:
            self._logger.exception("Failed to collect metrics")
            return web.Response(status=500, text="metrics collection failed\n")
        return web.Response(text="\n".join(lines) + "\n", content_type="text/plain")

    async def _handle_health(self, request: web.Request) -> web.Response:
        try:
            details = await self._get_health_details()
        except Exception as e:
            self._logger.warning("Health check failed: %s", e)
            return web.json_response({"status": "unhealthy", "error": str(e)}, status=503)
        return web.json_response({"status": "healthy", **details})

    async def _collect_custom_metrics(self) -> list[str]:
        """Collect shop-specific Prometheus metrics."""
        app = self._app
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append(f"shop_events_received_total {app.router.events_received}")
        lines.append(f"shop_events_throttled_total {app.router.events_throttled}")
        lines.append(f"shop_events_processed_total {app.engine.events_processed}")
        lines.append(f"shop_orders_created_total {app.orders.orders_created}")
        lines.append(f"shop_licenses_created_total {app.licenses.licenses_created}")
        for outcome, count in app.approvals.resolved.items():
            lines.append(f'shop_staff_actions_total{{outcome="{outcome}"}} {count}')
        lines.append(f"shop_sweep_runs_total {app.sweep.runs}")
        lines.append(f"shop_reminders_sent_total {app.sweep.reminders_sent}")
        lines.append(f"shop_licenses_expired_total {app.sweep.licenses_expired}")
        lines.append(f"shop_broadcasts_completed_total {app.broadcast.completed}")

        # ── Gauges ───────────────────────────────────────────
        lines.append(f"shop_users {await app.db.get_user_count()}")
        lines.append(f"shop_coins_outstanding {await app.db.get_total_coins()}")
        lines.append(f"shop_broadcast_jobs_active {app.broadcast.active_jobs}")
        for table in ("orders", "licenses"):
            for status, count in sorted((await app.db.get_status_counts(table)).items()):
                lines.append(f'shop_{table}{{status="{status}"}} {count}')

        return lines

    async def _get_health_details(self) -> dict:
        """Return health details for the /health endpoint."""
        return {
            "database": "connected" if self._app.db else "disconnected",
            "users": await self._app.db.get_user_count(),
            "broadcast_jobs": self._app.broadcast.active_jobs,
        }
