"""
Monitoring service for dbstream.

This module provides:
- Health checks (database ping, registered async checks, system info)
- An aiohttp server exposing /health, /ready and /metrics
- Periodic system resource metrics via psutil
"""

import asyncio
import logging
import time
import platform
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Callable, Awaitable
from dataclasses import dataclass, field

import psutil
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST

from ..config.settings import MonitoringConfig
from ..database.session import DatabaseManager
from .metrics import PrometheusMetrics

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[Dict[str, Any]]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HealthStatus:
    """Health check status container."""
    status: str  # "healthy" or "unhealthy"
    timestamp: datetime = field(default_factory=_now)
    checks: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "checks": self.checks,
            "message": self.message,
        }


class HealthChecker:
    """Health check manager; results are cached for ``check_interval`` seconds."""

    def __init__(self, database: Optional[DatabaseManager] = None, check_interval: float = 30):
        self.database = database
        self.checks: List[HealthCheck] = []
        self._last_check_time: Optional[float] = None
        self._last_status: Optional[HealthStatus] = None
        self._check_interval = check_interval

    def add_check(self, check_func: HealthCheck) -> None:
        """Add an async health check returning a dict with a ``status`` key."""
        self.checks.append(check_func)

    async def run_health_checks(self) -> HealthStatus:
        """Run all health checks."""
        now = time.monotonic()
        if (self._last_check_time is not None and self._last_status is not None
                and now - self._last_check_time < self._check_interval):
            return self._last_status

        checks_results = {}
        overall_status = "healthy"

        if self.database is not None:
            db_health = await self.database.health_check()
            checks_results["database"] = db_health
            if db_health.get("status") != "healthy":
                overall_status = "unhealthy"

        for check_func in self.checks:
            check_name = getattr(check_func, '__name__', 'unknown_check')
            try:
                result = await check_func()
            except Exception as e:
                result = {"status": "unhealthy", "error": str(e)}
            checks_results[check_name] = result
            if result.get("status") != "healthy":
                overall_status = "unhealthy"

        checks_results["system"] = {
            "status": "healthy",
            "platform": platform.platform(),
            "python_version": platform.python_version(),
            "cpu_count": psutil.cpu_count(),
            "memory_total": psutil.virtual_memory().total,
        }

        status = HealthStatus(status=overall_status, checks=checks_results)
        self._last_check_time = now
        self._last_status = status
        return status


class MonitoringService:
    """HTTP endpoints for health, readiness and Prometheus metrics."""

    def __init__(
        self,
        config: MonitoringConfig,
        database: Optional[DatabaseManager] = None,
        metrics: Optional[PrometheusMetrics] = None,
    ):
        self.config = config
        self.metrics = metrics or PrometheusMetrics(namespace=config.metrics_namespace)
        self.health_checker = HealthChecker(database)
        self.start_time = time.time()

        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._monitoring_task: Optional[asyncio.Task] = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/health', self.health_check_handler)
        app.router.add_get('/ready', self.readiness_handler)
        app.router.add_get('/metrics', self.metrics_handler)
        return app

    async def start(self) -> None:
        """Start the monitoring service."""
        if not self.config.enabled:
            logger.info("Monitoring disabled in configuration")
            return

        self.app = self.create_app()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, '0.0.0.0', self.config.health_check_port)
        await self.site.start()
        logger.info(f"Health check server started on port {self.config.health_check_port}")

        if self.config.collect_system_metrics:
            self._monitoring_task = asyncio.create_task(self._background_monitoring())

    async def stop(self) -> None:
        """Stop the monitoring service."""
        if self._monitoring_task:
            self._monitoring_task.cancel()
            try:
                await self._monitoring_task
            except asyncio.CancelledError:
                pass
            self._monitoring_task = None

        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()

        logger.info("Monitoring service stopped")

    async def health_check_handler(self, request: web.Request) -> web.Response:
        """Health check endpoint handler."""
        health_status = await self.health_checker.run_health_checks()
        status_code = 200 if health_status.status == "healthy" else 503
        return web.json_response(health_status.to_dict(), status=status_code)

    async def readiness_handler(self, request: web.Request) -> web.Response:
        """Readiness is the same as health."""
        return await self.health_check_handler(request)

    async def metrics_handler(self, request: web.Request) -> web.Response:
        """Metrics endpoint handler."""
        if not self.config.prometheus_enabled:
            return web.Response(status=404, text="Metrics not enabled")

        if self.config.collect_system_metrics:
            self.collect_system_metrics()

        # CONTENT_TYPE_LATEST carries a charset, which aiohttp wants separately
        return web.Response(
            body=self.metrics.get_metrics_text().encode("utf-8"),
            headers={"Content-Type": CONTENT_TYPE_LATEST},
        )

    def collect_system_metrics(self) -> None:
        """Collect current system metrics."""
        self.metrics.gauge("system_cpu_usage_percent", psutil.cpu_percent(interval=None))
        self.metrics.gauge("system_memory_usage_bytes", psutil.virtual_memory().used)
        self.metrics.gauge("app_uptime_seconds", time.time() - self.start_time)

    async def _background_monitoring(self) -> None:
        while True:
            self.collect_system_metrics()
            await asyncio.sleep(60)
