"""
Health probes for the payments service.

/health and /health/live are dependency-free liveness probes. /health/ready
checks the order store and host resources. /health/startup checks that
migrations ran and that the gateway configuration is present.
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine
from typing import Dict, Any, Callable, Iterable, Optional
import os
import time
from datetime import datetime, timezone
from enum import Enum
import psutil
import logging

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("orders", "order_items", "payment_gateway_settings")

# (fail below, warn below)
DISK_FREE_GB = (1, 5)
MEMORY_AVAILABLE_MB = (100, 500)


class HealthStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def component(check_status: HealthStatus, component_type: str, **fields) -> Dict[str, Any]:
    return {"status": check_status, "componentType": component_type, **fields, "time": _now()}


def graded(value: float, limits: tuple, unit: str) -> Dict[str, Any]:
    fail_below, warn_below = limits
    if value < fail_below:
        check_status = HealthStatus.FAIL
    elif value < warn_below:
        check_status = HealthStatus.WARN
    else:
        check_status = HealthStatus.PASS
    return component(check_status, "system", observedValue=f"{value:.2f}", observedUnit=unit)


def overall_status(checks: Dict[str, Dict[str, Any]]) -> HealthStatus:
    statuses = {check.get("status", HealthStatus.PASS) for check in checks.values()}
    if HealthStatus.FAIL in statuses:
        return HealthStatus.FAIL
    if HealthStatus.WARN in statuses:
        return HealthStatus.WARN
    return HealthStatus.PASS


class ServiceHealth:
    """
    Builds the health router for one service.

    `engine_provider` is called on every probe so that tests can swap the
    engine after the router was created.
    """

    def __init__(
        self,
        service_name: str,
        version: str = "1.0.0",
        engine_provider: Optional[Callable[[], AsyncEngine]] = None,
        required_env: Iterable[str] = (),
        required_tables: Iterable[str] = REQUIRED_TABLES,
    ):
        self.service_name = service_name
        self.version = version
        self.engine_provider = engine_provider
        self.required_env = tuple(required_env)
        self.required_tables = tuple(required_tables)
        self.start_time = time.time()
        self.checks_performed = 0

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health", status_code=status.HTTP_200_OK)
        async def health_check() -> Dict[str, Any]:
            """Liveness probe used by load balancers."""
            return {
                "status": HealthStatus.PASS,
                "service": self.service_name,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "timestamp": _now(),
            }

        @router.get("/health/live", status_code=status.HTTP_200_OK)
        async def liveness() -> Dict[str, Any]:
            return {"status": "alive"}

        @router.get("/health/ready")
        async def readiness() -> JSONResponse:
            self.checks_performed += 1
            checks = {
                "database:connectivity": await self.check_database(),
                "storage:disk_space": self.check_disk_space(),
                "system:memory": self.check_memory(),
            }
            result = overall_status(checks)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE if result == HealthStatus.FAIL else status.HTTP_200_OK,
                content={
                    "status": result,
                    "serviceId": self.service_name,
                    "version": self.version,
                    "checks": checks,
                    "timestamp": _now(),
                },
            )

        @router.get("/health/startup")
        async def startup() -> JSONResponse:
            checks = {
                "database:schema": await self.check_schema(),
                "config:environment": self.check_environment(),
            }
            if overall_status(checks) == HealthStatus.FAIL:
                return JSONResponse(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    content={"status": "starting", "checks": checks},
                )
            return JSONResponse(content={"status": "started", "checks": checks})

        @router.get("/metrics")
        async def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            memory = process.memory_info()
            return {
                "service": self.service_name,
                "version": self.version,
                "uptime_seconds": round(time.time() - self.start_time, 3),
                "checks_performed": self.checks_performed,
                "timestamp": _now(),
                "system": {
                    "memory_rss_bytes": memory.rss,
                    "cpu_percent": process.cpu_percent(),
                    "num_threads": process.num_threads(),
                },
            }

        return router

    async def check_database(self) -> Dict[str, Any]:
        if self.engine_provider is None:
            return component(HealthStatus.WARN, "datastore", output="No engine configured")
        started = time.perf_counter()
        try:
            async with self.engine_provider().connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Order store health check failed: {e}")
            return component(HealthStatus.FAIL, "datastore", output=str(e))
        elapsed_ms = (time.perf_counter() - started) * 1000
        return component(HealthStatus.PASS, "datastore", observedValue=f"{elapsed_ms:.2f}", observedUnit="ms")

    async def check_schema(self) -> Dict[str, Any]:
        """Payment tables must exist before checkout traffic is accepted."""
        if self.engine_provider is None:
            return component(HealthStatus.WARN, "datastore", output="No engine configured")
        try:
            async with self.engine_provider().connect() as conn:
                tables = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
        except Exception as e:
            return component(HealthStatus.FAIL, "datastore", output=str(e))

        missing = [name for name in self.required_tables if name not in tables]
        if missing:
            return component(HealthStatus.FAIL, "datastore", output=f"Missing tables: {', '.join(missing)}")
        if "alembic_version" not in tables:
            return component(HealthStatus.WARN, "datastore", output="Schema created without migrations")
        return component(HealthStatus.PASS, "datastore")

    def check_disk_space(self) -> Dict[str, Any]:
        try:
            return graded(psutil.disk_usage('/').free / (1024 ** 3), DISK_FREE_GB, "GB")
        except OSError as e:
            return component(HealthStatus.WARN, "system", output=str(e))

    def check_memory(self) -> Dict[str, Any]:
        return graded(psutil.virtual_memory().available / (1024 ** 2), MEMORY_AVAILABLE_MB, "MB")

    def check_environment(self) -> Dict[str, Any]:
        missing = [var for var in self.required_env if not os.getenv(var)]
        if missing:
            # Gateway credentials may also live in the settings table.
            return component(
                HealthStatus.WARN, "configuration", output=f"Missing environment variables: {', '.join(missing)}"
            )
        return component(HealthStatus.PASS, "configuration")
