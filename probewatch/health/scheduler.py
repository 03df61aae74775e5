"""Health check scheduler — one periodic job per enabled service.

Each job fires its check immediately, then once per interval. Checks run as
their own tasks so a slow probe never delays the cadence, and probes for
different services overlap freely. After every check the public snapshot
(``static/status.json``) is regenerated for the dashboard.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .executor import ProbeExecutor
from .models import UNKNOWN, CheckResult, CheckStatus, utc_now_iso
from .registry import ServiceDefinition
from .store import StatusStore, atomic_write_json

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 5
SNAPSHOT_PATH = Path(__file__).parent.parent.parent / "static" / "status.json"


def calculate_uptime(recent_checks: list[dict[str, Any]]) -> float:
    """Percentage of ``ok`` checks, one decimal; 0 with no history."""
    if not recent_checks:
        return 0
    ok = sum(1 for c in recent_checks if c.get("status") == CheckStatus.OK.value)
    return round(ok / len(recent_checks) * 1000) / 10


class HealthScheduler:
    """Owns the per-service job registry and drives check → record → snapshot."""

    def __init__(
        self,
        executor: ProbeExecutor,
        store: StatusStore,
        snapshot_path: Path | None = None,
        default_interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
        on_result: Callable[[str, CheckResult], Any] | None = None,
    ) -> None:
        self.executor = executor
        self.store = store
        self.snapshot_path = snapshot_path or SNAPSHOT_PATH
        self.default_interval_minutes = default_interval_minutes
        self.on_result = on_result
        self._jobs: dict[str, asyncio.Task[None]] = {}
        self._inflight: set[asyncio.Task[Any]] = set()

    @property
    def jobs(self) -> list[str]:
        return list(self._jobs)

    async def start(self) -> None:
        """Schedule every enabled service. No-op if already started."""
        if self._jobs:
            return

        config = await self.store.load_config()
        services = config.enabled_services
        if not services:
            logger.info("No enabled services configured — scheduler idle")

        for service in services:
            if service.id in self._jobs:
                logger.warning("Duplicate service id %s; scheduling it once", service.id)
                continue
            interval = self._interval_minutes(service)
            self._jobs[service.id] = asyncio.create_task(
                self._job_loop(service, interval * 60),
                name=f"probe-{service.id}",
            )
            logger.info("Scheduled service %s every %d minutes", service.id, interval)

        await self.generate_public_status()

    async def stop(self) -> None:
        """Cancel all jobs. Checks already running are left to finish."""
        jobs = list(self._jobs.items())
        self._jobs.clear()
        for service_id, task in jobs:
            task.cancel()
            logger.info("Stopped job for service %s", service_id)
        if jobs:
            await asyncio.gather(*(t for _, t in jobs), return_exceptions=True)

    async def wait_for_inflight(self) -> None:
        """Wait until every check spawned by the jobs has been recorded."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def run_check_for_service(self, service: ServiceDefinition) -> CheckResult:
        """One check → record → snapshot cycle. Never raises."""
        try:
            result = await self.executor.check(service)
            await self.store.record_check_result(service.id, result)
        except Exception as e:
            result = CheckResult(
                name=service.name or service.id,
                status=CheckStatus.ERROR,
                response_time=0,
                message=str(e) or type(e).__name__,
                expected_answer=service.expected_answer,
            )
            logger.error("Failed to check service %s: %s", service.id, e)
            try:
                await self.store.record_check_result(service.id, result)
            except Exception:
                logger.exception("Failed to record fallback result for %s", service.id)

        if self.on_result:
            try:
                self.on_result(service.id, result)
            except Exception:
                logger.exception("Result callback error")

        await self.generate_public_status()
        return result

    async def run_checks(self) -> list[CheckResult]:
        """Check every enabled service once, sequentially (manual refresh)."""
        config = await self.store.load_config()
        services = config.enabled_services
        if not services:
            logger.warning("No enabled services found in configuration")
            await self.generate_public_status()
            return []

        results = []
        for service in services:
            results.append(await self.run_check_for_service(service))
        return results

    async def generate_public_status(self) -> dict[str, Any] | None:
        """Rebuild the public snapshot from config + store. Never raises."""
        try:
            config = await self.store.load_config()
            summaries = await self.store.get_all_services_summary()
            by_id = {s.id: s for s in config.services}

            services = []
            for summary in summaries:
                service = by_id.get(summary["id"])
                if service is None:
                    continue
                services.append({
                    "displayName": service.display_name or summary["name"],
                    "status": summary["currentStatus"],
                    "lastCheck": summary["lastCheck"],
                    "uptime": calculate_uptime(summary["recentChecks"]),
                })

            healthy = sum(1 for s in services if s["status"] == CheckStatus.OK.value)
            unknown = sum(1 for s in services if s["status"] == UNKNOWN)
            snapshot = {
                "services": services,
                "overall": {
                    "healthy": healthy,
                    "unhealthy": len(services) - healthy - unknown,
                    "unknown": unknown,
                    "total": len(services),
                },
                "timestamp": utc_now_iso(),
            }

            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, atomic_write_json, self.snapshot_path, snapshot)
            logger.info("Generated public status: %d services", len(services))
            return snapshot
        except Exception as e:
            logger.warning("Failed to generate public status: %s", e)
            return None

    # -- internals -------------------------------------------------------------

    def _interval_minutes(self, service: ServiceDefinition) -> int:
        return service.check_interval or self.default_interval_minutes

    async def _job_loop(self, service: ServiceDefinition, interval_seconds: float) -> None:
        """Fire a check now, then every interval, without waiting on the checks."""
        self._spawn_check(service)
        while True:
            await asyncio.sleep(interval_seconds)
            self._spawn_check(service)

    def _spawn_check(self, service: ServiceDefinition) -> None:
        task = asyncio.create_task(self.run_check_for_service(service))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
