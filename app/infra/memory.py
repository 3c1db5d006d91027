# app/infra/memory.py
"""
Process memory telemetry.

The rest of the pipeline treats pressure as one opaque input; the numeric
thresholds live in settings and are applied only in ``classify_pressure``.
"""
from __future__ import annotations

import enum
import gc
from dataclasses import dataclass
from typing import Protocol

import psutil
import structlog

from app.core.settings import Settings

logger = structlog.get_logger(__name__)

_MB = 1024 * 1024


class MemoryPressure(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


@dataclass(frozen=True)
class MemoryStats:
    rss_mb: float
    limit_mb: float
    available_mb: float
    pressure: MemoryPressure

    @property
    def available_bytes(self) -> int:
        return int(self.available_mb * _MB)

    @property
    def under_pressure(self) -> bool:
        return self.pressure in (MemoryPressure.high, MemoryPressure.critical)


class MemoryMonitor(Protocol):
    def get_stats(self) -> MemoryStats: ...

    def emergency_cleanup(self, reason: str) -> None: ...

    def is_under_pressure(self) -> bool: ...


def classify_pressure(used_mb: float, limit_mb: float, *, medium: float, high: float, critical: float) -> MemoryPressure:
    if limit_mb <= 0:
        return MemoryPressure.critical
    ratio = used_mb / limit_mb
    if ratio > critical:
        return MemoryPressure.critical
    if ratio > high:
        return MemoryPressure.high
    if ratio > medium:
        return MemoryPressure.medium
    return MemoryPressure.low


class ProcessMemoryMonitor:
    """RSS of the current process against a configured budget (psutil)."""

    def __init__(self, settings: Settings):
        self._limit_mb = float(settings.memory_limit_mb)
        self._thresholds = dict(
            medium=settings.memory_medium_ratio,
            high=settings.memory_high_ratio,
            critical=settings.memory_critical_ratio,
        )
        self._process = psutil.Process()

    def get_stats(self) -> MemoryStats:
        rss_mb = self._process.memory_info().rss / _MB
        return MemoryStats(
            rss_mb=rss_mb,
            limit_mb=self._limit_mb,
            available_mb=max(0.0, self._limit_mb - rss_mb),
            pressure=classify_pressure(rss_mb, self._limit_mb, **self._thresholds),
        )

    def is_under_pressure(self) -> bool:
        return self.get_stats().under_pressure

    def emergency_cleanup(self, reason: str) -> None:
        before = self._process.memory_info().rss / _MB
        collected = gc.collect()
        after = self._process.memory_info().rss / _MB
        logger.warning(
            "memory_emergency_cleanup",
            reason=reason,
            collected=collected,
            rss_before_mb=round(before, 1),
            rss_after_mb=round(after, 1),
        )
