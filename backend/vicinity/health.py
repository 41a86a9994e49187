"""Health check with dependency verification."""

from __future__ import annotations

import time
from typing import Any

from .circuit_breaker import get_circuit_breaker
from .errors import VicinityError
from .index import get_index
from .pipeline.jobs import JobQueue
from .pipeline.worker import PipelineMonitor
from .redis_client import is_redis_available
from .settings import settings

UPSTREAMS = ("embedding", "completion")


class HealthChecker:
    """Reports index, redis, upstream circuit and pipeline liveness state."""

    def __init__(self, queue: JobQueue | None = None, monitor: PipelineMonitor | None = None) -> None:
        self.queue = queue
        self.monitor = monitor

    async def check_all(self) -> dict[str, Any]:
        checks = {
            "index": self._check_index(),
            "redis": await self._check_redis(),
            "upstreams": self._check_upstreams(),
            "pipeline": await self._check_pipeline(),
        }
        # Open circuits degrade search quality but do not make the service unhealthy
        all_ok = all(
            check.get("status") in {"ok", "disabled", "degraded"} for check in checks.values()
        )
        return {
            "status": "healthy" if all_ok else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
        }

    def _check_index(self) -> dict[str, Any]:
        try:
            index = get_index()
        except VicinityError as exc:
            return {"status": "error", "error": str(exc)}
        return {"status": "ok", "venues": len(index), "dimension": index.dimension}

    async def _check_redis(self) -> dict[str, Any]:
        if not settings.REDIS_ENABLED or not settings.REDIS_URL:
            return {"status": "disabled"}
        if await is_redis_available():
            return {"status": "ok"}
        # The cache treats shared-tier errors as misses; search keeps working
        return {"status": "degraded", "error": "redis ping failed"}

    def _check_upstreams(self) -> dict[str, Any]:
        circuits = {name: get_circuit_breaker(name).state.value for name in UPSTREAMS}
        status = "ok" if all(state == "closed" for state in circuits.values()) else "degraded"
        return {"status": status, "circuits": circuits}

    async def _check_pipeline(self) -> dict[str, Any]:
        if self.queue is None or self.monitor is None:
            return {"status": "disabled"}
        try:
            pending = await self.queue.pending_count()
        except Exception as exc:
            return {"status": "error", "error": str(exc), "error_type": type(exc).__name__}
        snapshot = self.monitor.snapshot(pending)
        snapshot["status"] = "error" if snapshot["stalled"] else "ok"
        return snapshot


__all__ = ["HealthChecker"]
