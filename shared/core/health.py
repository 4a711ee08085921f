"""
Health probes for the service

    /health         liveness with service identity
    /health/live    bare liveness
    /health/ready   readiness; 503 when any component fails
    /metrics        process counters plus real-time channel stats

Readiness is the worst status across all component checks. Components are
registered from the collaborators the application hands in, so a service
running without a database simply has no datastore check.
"""

import logging
import os
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import psutil
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

Check = Callable[[], Dict[str, Any]]


class HealthStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


_SEVERITY = {HealthStatus.PASS: 0, HealthStatus.WARN: 1, HealthStatus.FAIL: 2}

# (fail below, warn below)
DISK_FREE_GB = (1.0, 5.0)
MEMORY_AVAILABLE_MB = (100.0, 500.0)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _grade(value: float, limits: Tuple[float, float]) -> HealthStatus:
    fail_below, warn_below = limits
    if value < fail_below:
        return HealthStatus.FAIL
    if value < warn_below:
        return HealthStatus.WARN
    return HealthStatus.PASS


def _component(component_type: str, state: HealthStatus, **fields: Any) -> Dict[str, Any]:
    return {"status": state, "componentType": component_type, **fields, "time": _now()}


class ServiceHealth:
    """
    Probe endpoints for one service.

    ``engine_provider`` returns the SQLAlchemy engine to ping, or None while
    the service has no database. It is called on every probe because the
    engine is only built once the application starts.
    ``realtime_stats`` returns the live channel counters.
    """

    def __init__(
        self,
        service_name: str,
        version: str = "1.0.0",
        engine_provider: Optional[Callable[[], Optional[Engine]]] = None,
        realtime_stats: Optional[Callable[[], Dict[str, int]]] = None,
    ):
        self.service_name = service_name
        self.version = version
        self.engine_provider = engine_provider
        self.realtime_stats = realtime_stats
        self.started = time.monotonic()
        self.checks_performed = 0

    @property
    def release_id(self) -> str:
        return os.getenv("RELEASE_ID", "unknown")

    def _checks(self) -> List[Tuple[str, Check]]:
        checks: List[Tuple[str, Check]] = []
        engine = self.engine_provider() if self.engine_provider else None
        if engine is not None:
            checks.append(("database:connectivity", lambda: self._check_database(engine)))
        if self.realtime_stats is not None:
            checks.append(("realtime:channels", self._check_realtime))
        checks.append(("storage:disk_space", self._check_disk_space))
        checks.append(("system:memory", self._check_memory))
        return checks

    def run_checks(self) -> Dict[str, Dict[str, Any]]:
        self.checks_performed += 1
        results = {}
        for name, check in self._checks():
            results[name] = check()
            if results[name]["status"] != HealthStatus.PASS:
                logger.warning(
                    f"Health check {name} reported {results[name]['status'].value}",
                    extra={"extra_fields": {"check": name, "output": results[name].get("output")}},
                )
        return results

    @staticmethod
    def calculate_overall_status(checks: Dict[str, Dict[str, Any]]) -> HealthStatus:
        """Worst individual status wins; no checks means PASS"""
        return max(
            (check.get("status", HealthStatus.PASS) for check in checks.values()),
            key=_SEVERITY.__getitem__,
            default=HealthStatus.PASS,
        )

    def _check_database(self, engine: Engine) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return _component("datastore", HealthStatus.FAIL, output=str(e))
        elapsed_ms = (time.perf_counter() - started) * 1000
        return _component(
            "datastore", HealthStatus.PASS,
            observedValue=round(elapsed_ms, 2), observedUnit="ms",
        )

    def _check_realtime(self) -> Dict[str, Any]:
        try:
            stats = self.realtime_stats()
        except Exception as e:
            return _component("component", HealthStatus.WARN, output=str(e))
        return _component(
            "component", HealthStatus.PASS,
            observedValue=stats.get("connections", 0), observedUnit="connections",
            rooms=stats.get("rooms", 0),
        )

    def _check_disk_space(self) -> Dict[str, Any]:
        try:
            free_gb = psutil.disk_usage("/").free / 1024 ** 3
        except OSError as e:
            return _component("system", HealthStatus.WARN, output=str(e))
        return _component(
            "system", _grade(free_gb, DISK_FREE_GB),
            observedValue=round(free_gb, 2), observedUnit="GB",
        )

    def _check_memory(self) -> Dict[str, Any]:
        available_mb = psutil.virtual_memory().available / 1024 ** 2
        return _component(
            "system", _grade(available_mb, MEMORY_AVAILABLE_MB),
            observedValue=round(available_mb, 2), observedUnit="MB",
        )

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health")
        async def health() -> Dict[str, Any]:
            return {
                "status": HealthStatus.PASS,
                "service": self.service_name,
                "version": self.version,
                "releaseId": self.release_id,
                "timestamp": _now(),
            }

        @router.get("/health/live")
        async def live() -> Dict[str, str]:
            return {"status": "alive"}

        @router.get("/health/ready")
        async def ready() -> JSONResponse:
            checks = self.run_checks()
            overall = self.calculate_overall_status(checks)
            code = status.HTTP_503_SERVICE_UNAVAILABLE if overall == HealthStatus.FAIL else status.HTTP_200_OK
            return JSONResponse(status_code=code, content={
                "status": overall.value,
                "serviceId": self.service_name,
                "version": self.version,
                "releaseId": self.release_id,
                "checks": {
                    name: {**check, "status": check["status"].value}
                    for name, check in checks.items()
                },
                "timestamp": _now(),
            })

        @router.get("/metrics")
        async def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            memory = process.memory_info()
            return {
                "service": self.service_name,
                "version": self.version,
                "uptime_seconds": round(time.monotonic() - self.started, 3),
                "checks_performed": self.checks_performed,
                "realtime": self.realtime_stats() if self.realtime_stats else {},
                "process": {
                    "memory_rss_bytes": memory.rss,
                    "cpu_percent": process.cpu_percent(),
                    "num_threads": process.num_threads(),
                },
                "timestamp": _now(),
            }

        return router
