# app/services/backpressure.py
from __future__ import annotations

import logging

import psutil

logger = logging.getLogger("attention.backpressure")

_BYTES_PER_MB = 1024 * 1024


class MemorySampler:
    """
    Reports memory usage of the current process.

    The resident set size is used as the heap figure; it is what the
    operating system will eventually kill the process for.
    """

    def __init__(self) -> None:
        self._process = psutil.Process()

    def heap_used_mb(self) -> float:
        return self._process.memory_info().rss / _BYTES_PER_MB

    def memory_report(self) -> dict[str, float]:
        info = self._process.memory_info()
        return {
            "rss_mb": round(info.rss / _BYTES_PER_MB, 1),
            "vms_mb": round(info.vms / _BYTES_PER_MB, 1),
            "percent": round(self._process.memory_percent(), 1),
        }


class BackpressureGuard:
    """
    Gates ingestion on process memory.

    ``should_drop()`` is evaluated once per ingestion call, before anything
    touches storage. A dropped call is lost data; nothing is queued or retried.
    """

    def __init__(self, sampler: MemorySampler, limit_mb: float) -> None:
        self._sampler = sampler
        self._limit_mb = limit_mb

    @property
    def limit_mb(self) -> float:
        return self._limit_mb

    def should_drop(self) -> bool:
        heap_used_mb = self._sampler.heap_used_mb()
        if heap_used_mb > self._limit_mb:
            logger.warning(
                "Memory pressure detected: %dMB > %dMB. Skipping attention snapshot.",
                round(heap_used_mb),
                round(self._limit_mb),
            )
            return True
        return False
