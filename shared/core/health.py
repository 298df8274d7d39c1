"""
Kubernetes-style health probes.

/health and /health/live answer without touching dependencies; /health/ready
checks the database and host memory; /metrics reports process figures from
psutil plus the gauges the service registers.
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text, inspect
from sqlalchemy.engine import Engine
from typing import Callable, Dict, Any, Optional
import os
import time
from datetime import datetime, timezone
from enum import Enum
import psutil
import logging

logger = logging.getLogger(__name__)

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

class HealthStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"

class ServiceHealth:
    """Health router bound to one service's engine.

    ``gauges`` are zero-argument callables whose values are published under
    ``gauges`` in /metrics (queue depth and the like).
    """

    def __init__(self, service_name: str, version: str, engine: Engine,
                 gauges: Optional[Dict[str, Callable[[], Any]]] = None):
        self.service_name = service_name
        self.version = version
        self.engine = engine
        self.gauges = gauges or {}
        self.start_time = time.time()
        self.checks_performed = 0

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health", status_code=status.HTTP_200_OK)
        def health_check() -> Dict[str, Any]:
            return {
                "status": HealthStatus.PASS,
                "service": self.service_name,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "timestamp": _now(),
            }

        @router.get("/health/live", status_code=status.HTTP_200_OK)
        def liveness() -> Dict[str, Any]:
            return {"status": "alive"}

        @router.get("/health/ready")
        def readiness() -> JSONResponse:
            checks = self.readiness_checks()
            overall = self.overall_status(checks)
            code = status.HTTP_200_OK if overall != HealthStatus.FAIL else status.HTTP_503_SERVICE_UNAVAILABLE
            return JSONResponse(status_code=code, content={
                "status": overall,
                "version": self.version,
                "serviceId": self.service_name,
                "checks": checks,
                "timestamp": _now(),
            })

        @router.get("/health/startup")
        def startup() -> JSONResponse:
            checks = {"database:schema": self._check_schema()}
            if self.overall_status(checks) != HealthStatus.PASS:
                return JSONResponse(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    content={"status": "starting", "checks": checks},
                )
            return JSONResponse(content={"status": "started", "checks": checks})

        @router.get("/metrics")
        def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            memory = process.memory_info()
            return {
                "service": self.service_name,
                "version": self.version,
                "uptime_seconds": time.time() - self.start_time,
                "checks_performed": self.checks_performed,
                "timestamp": _now(),
                "system": {
                    "memory_rss_bytes": memory.rss,
                    "cpu_percent": process.cpu_percent(),
                    "num_threads": process.num_threads(),
                },
                "gauges": {name: gauge() for name, gauge in self.gauges.items()},
            }

        return router

    def readiness_checks(self) -> Dict[str, Dict[str, Any]]:
        self.checks_performed += 1
        return {
            "database:connectivity": self._check_database(),
            "system:memory": self._check_memory(),
        }

    def _check_database(self) -> Dict[str, Any]:
        try:
            start_time = time.time()
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            return {
                "status": HealthStatus.PASS,
                "componentType": "datastore",
                "observedValue": f"{(time.time() - start_time) * 1000:.2f}",
                "observedUnit": "ms",
                "time": _now(),
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"status": HealthStatus.FAIL, "componentType": "datastore", "output": str(e), "time": _now()}

    def _check_schema(self) -> Dict[str, Any]:
        try:
            tables = set(inspect(self.engine).get_table_names())
        except Exception as e:
            return {"status": HealthStatus.FAIL, "componentType": "datastore", "output": str(e), "time": _now()}
        missing = {"orders", "order_status_history", "couriers", "notifications"} - tables
        if missing:
            return {
                "status": HealthStatus.FAIL,
                "componentType": "datastore",
                "output": f"Missing tables: {', '.join(sorted(missing))}",
                "time": _now(),
            }
        return {"status": HealthStatus.PASS, "componentType": "datastore", "time": _now()}

    def _check_memory(self) -> Dict[str, Any]:
        available_mb = psutil.virtual_memory().available / (1024 ** 2)
        if available_mb < 100:
            status_val = HealthStatus.FAIL
        elif available_mb < 500:
            status_val = HealthStatus.WARN
        else:
            status_val = HealthStatus.PASS
        return {
            "status": status_val,
            "componentType": "system",
            "observedValue": f"{available_mb:.2f}",
            "observedUnit": "MB",
            "time": _now(),
        }

    @staticmethod
    def overall_status(checks: Dict[str, Dict[str, Any]]) -> HealthStatus:
        statuses = [check.get("status", HealthStatus.PASS) for check in checks.values()]
        if HealthStatus.FAIL in statuses:
            return HealthStatus.FAIL
        if HealthStatus.WARN in statuses:
            return HealthStatus.WARN
        return HealthStatus.PASS
