# app/monitor.py
"""
Out-of-process health monitor.

Polls the service's ``/health`` endpoint and logs memory alerts, and
periodically checks host memory. Run with ``python -m app.monitor``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx
import psutil

from app.core.config import get_settings
from app.core.logging_setup import configure_logging

logger = logging.getLogger("attention.monitor")

HIGH_MEMORY_MB = 1500
CRITICAL_MEMORY_MB = 2000
EMERGENCY_MEMORY_MB = 2500
MAX_CONSECUTIVE_FAILURES = 3
SYSTEM_MEMORY_INTERVAL_SECONDS = 120.0
SYSTEM_MEMORY_ALERT_RATIO = 0.9


class MemoryLevel(str, Enum):
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
    EMERGENCY = "EMERGENCY"


def classify_memory_level(used_mb: float) -> MemoryLevel:
    if used_mb > EMERGENCY_MEMORY_MB:
        return MemoryLevel.EMERGENCY
    if used_mb > CRITICAL_MEMORY_MB:
        return MemoryLevel.CRITICAL
    if used_mb > HIGH_MEMORY_MB:
        return MemoryLevel.HIGH
    return MemoryLevel.NORMAL


class HealthMonitor:
    """
    Polls ``{base_url}/health`` and tracks consecutive failures.

    A failure is a transport error, a timeout, a non-200 response or an
    unreadable body. After ``max_failures`` in a row an alert is logged;
    the counter resets on the next successful check.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        max_failures: int = MAX_CONSECUTIVE_FAILURES,
        client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._max_failures = max_failures
        self._client_factory = client_factory
        self.consecutive_failures = 0

    @property
    def health_url(self) -> str:
        return f"{self._base_url}/health"

    def _handle_failure(self, reason: str) -> None:
        self.consecutive_failures += 1
        logger.error(
            "Health check failed (%s). Consecutive failures: %d",
            reason,
            self.consecutive_failures,
        )
        if self.consecutive_failures >= self._max_failures:
            logger.error(
                "Maximum consecutive failures reached. Server may be down; "
                "consider restarting it manually."
            )

    def _report(self, health: Dict[str, Any]) -> MemoryLevel:
        memory = health.get("memory") or {}
        rss_mb = float(memory.get("rss_mb", 0.0))
        level = classify_memory_level(rss_mb)

        logger.info(
            "Server health: status=%s uptime=%ss rss=%sMB vms=%sMB meetings=%s backpressure=%s",
            health.get("status"),
            health.get("uptime_seconds"),
            rss_mb,
            memory.get("vms_mb"),
            health.get("tracked_meetings"),
            health.get("backpressure_active"),
        )

        if level is MemoryLevel.HIGH:
            logger.warning("HIGH MEMORY USAGE: %sMB", rss_mb)
        elif level is MemoryLevel.CRITICAL:
            logger.error("CRITICAL MEMORY USAGE: %sMB", rss_mb)
        elif level is MemoryLevel.EMERGENCY:
            logger.critical("EMERGENCY MEMORY USAGE: %sMB. Server may crash soon!", rss_mb)
        return level

    async def check_once(self) -> Optional[MemoryLevel]:
        """
        Run one health check. Returns the memory level, or None on failure.
        """
        try:
            async with self._client_factory(timeout=self._timeout_seconds) as client:
                response = await client.get(self.health_url)
        except httpx.TimeoutException:
            self._handle_failure("timeout")
            return None
        except httpx.HTTPError as exc:
            self._handle_failure(f"request error: {exc}")
            return None

        if response.status_code != 200:
            self._handle_failure(f"HTTP {response.status_code}")
            return None

        try:
            health = response.json()
        except ValueError:
            self._handle_failure("unreadable health payload")
            return None

        self.consecutive_failures = 0
        return self._report(health)

    async def run(self, interval_seconds: float, iterations: Optional[int] = None) -> None:
        """
        Check health every ``interval_seconds`` and host memory every
        ``SYSTEM_MEMORY_INTERVAL_SECONDS``. Runs forever unless
        ``iterations`` is given.
        """
        done = 0
        last_system_check: Optional[float] = None
        while iterations is None or done < iterations:
            await self.check_once()

            now = time.monotonic()
            if last_system_check is None or now - last_system_check >= SYSTEM_MEMORY_INTERVAL_SECONDS:
                check_system_memory()
                last_system_check = now

            done += 1
            if iterations is None or done < iterations:
                await asyncio.sleep(interval_seconds)


def check_system_memory() -> float:
    """
    Log host memory usage and return the used ratio.
    """
    memory = psutil.virtual_memory()
    used_mb = (memory.total - memory.available) / (1024 * 1024)
    total_mb = memory.total / (1024 * 1024)
    ratio = used_mb / total_mb if total_mb else 0.0

    logger.info("System memory: %dMB used / %dMB total (%.1f%%)", used_mb, total_mb, ratio * 100)
    if ratio > SYSTEM_MEMORY_ALERT_RATIO:
        logger.warning("System memory usage is very high!")
    return ratio


def main() -> None:  # pragma: no cover
    settings = get_settings()
    configure_logging(level=settings.LOG_LEVEL, log_dir=settings.LOG_DIR, prefix="monitor")

    monitor = HealthMonitor(settings.MONITOR_BASE_URL)
    logger.info(
        "Memory monitor started for %s (every %ss). Press Ctrl+C to stop.",
        monitor.health_url,
        settings.MONITOR_INTERVAL_SECONDS,
    )
    try:
        asyncio.run(monitor.run(settings.MONITOR_INTERVAL_SECONDS))
    except KeyboardInterrupt:
        logger.info("Memory monitor stopped.")


if __name__ == "__main__":  # pragma: no cover
    main()
