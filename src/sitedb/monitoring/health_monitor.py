"""
sitedb Health Monitor
HTTP endpoints over the database client's observability surface.
"""
import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional
from aiohttp import web
import psutil
from ..models import HealthStatus

logger = logging.getLogger(__name__)


def format_uptime(uptime_seconds: float) -> str:
    """Format uptime as human-readable string."""
    days = int(uptime_seconds // 86400)
    hours = int((uptime_seconds % 86400) // 3600)
    minutes = int((uptime_seconds % 3600) // 60)
    seconds = int(uptime_seconds % 60)

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if seconds > 0 or not parts:
        parts.append(f"{seconds}s")

    return " ".join(parts)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


class HealthMonitor:
    """Serves /health, /metrics, /errors and /alerts for one DatabaseClient."""

    def __init__(
        self,
        client,
        port: int = 8080,
        host: str = "localhost",
        alert_manager=None,
        check_interval: float = 60,
    ):
        self.client = client
        self.port = port
        self.host = host
        self.alert_manager = alert_manager
        self.check_interval = check_interval
        self.start_time = datetime.now()
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self.monitoring_task: Optional[asyncio.Task] = None
        self.process = psutil.Process(os.getpid())

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/health', self.health_check_handler)
        app.router.add_get('/metrics', self.metrics_handler)
        app.router.add_get('/errors', self.errors_handler)
        app.router.add_get('/alerts', self.alerts_handler)
        return app

    async def start(self):
        """Start the HTTP server and the periodic health check."""
        self.app = self.create_app()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        logger.info(f"Health monitor listening on http://{self.host}:{self.port}")

        self.monitoring_task = asyncio.create_task(self._monitor_loop())

    async def cleanup(self):
        """Cleanup resources."""
        if self.monitoring_task:
            self.monitoring_task.cancel()
            try:
                await self.monitoring_task
            except asyncio.CancelledError:
                pass

        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()

    async def _monitor_loop(self):
        """Periodic health monitoring loop."""
        while True:
            await asyncio.sleep(self.check_interval)
            try:
                await self.check_health()
            except Exception as e:
                logger.error(f"Error in monitoring loop: {e}")

    async def check_health(self):
        """Build a report and forward problems to the alert manager."""
        loop = asyncio.get_running_loop()
        report = await loop.run_in_executor(None, self.client.get_health_report)
        if report.overall_health != HealthStatus.HEALTHY:
            logger.warning(f"Database health is {report.overall_health.value}: {'; '.join(report.issues)}")
            if self.alert_manager:
                await self.alert_manager.alert_health_report(report)
        await self.client.dispatch_alerts()
        return report

    def system_metrics(self) -> Dict[str, Any]:
        uptime = (datetime.now() - self.start_time).total_seconds()
        return {
            "uptime_seconds": uptime,
            "uptime_formatted": format_uptime(uptime),
            "memory_usage_mb": round(self.process.memory_info().rss / 1024 / 1024, 2),
            "cpu_percent": round(self.process.cpu_percent(interval=None), 2),
        }

    async def health_check_handler(self, request: web.Request) -> web.Response:
        """Health report; 503 when the verdict is critical."""
        loop = asyncio.get_running_loop()
        report = await loop.run_in_executor(None, self.client.get_health_report)
        status = 503 if report.overall_health == HealthStatus.CRITICAL else 200
        return web.json_response(report.to_dict(), status=status, dumps=_dumps)

    async def metrics_handler(self, request: web.Request) -> web.Response:
        """Return component state and process metrics as JSON."""
        payload = self.client.get_status()
        payload["process"] = self.system_metrics()
        return web.json_response(payload, dumps=_dumps)

    async def errors_handler(self, request: web.Request) -> web.Response:
        hours = int(request.query.get("hours", "24"))
        return web.json_response({
            "critical": [e.to_dict() for e in self.client.get_critical_errors()],
            "statistics": self.client.recovery.get_error_statistics(hours),
        }, dumps=_dumps)

    async def alerts_handler(self, request: web.Request) -> web.Response:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, self.client.check_alerts)
        return web.json_response({
            "severity": result["severity"],
            "alerts": [a.to_dict() for a in result["alerts"]],
        }, dumps=_dumps)
