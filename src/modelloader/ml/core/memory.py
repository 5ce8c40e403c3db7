"""
Memory pressure relief for cached models.

``MemoryGuard`` samples system and process memory with psutil before a model is
constructed. When usage crosses the configured thresholds, loaded models are
released (least recently used first) and the garbage collector is run, so the
next construction has room to allocate.
"""

import gc
import time
from typing import Any, NamedTuple

import psutil

from modelloader.concurrency.resource_cache import ResourceCache
from modelloader.config.environment import Environment
from modelloader.config.logging_config import get_logger
from modelloader.ml.core.disposable import release_resource

logger = get_logger(__name__)


class MemorySnapshot(NamedTuple):
    """Light-weight container for system/process memory telemetry.

    Attributes:
        percent: Percentage of system RAM currently in use.
        available_gb: Free system memory in gigabytes.
        total_gb: Total system memory in gigabytes.
        process_rss_gb: Current process Resident Set Size in gigabytes.
    """

    percent: float
    available_gb: float
    total_gb: float
    process_rss_gb: float


class MemoryGuard:
    """Releases cached models when the machine runs low on memory.

    Thresholds default to the values of :meth:`Environment.get_memory_thresholds`.
    """

    def __init__(
        self,
        max_percent: float | None = None,
        min_available_gb: float | None = None,
        cooldown_seconds: float | None = None,
    ):
        env_percent, env_available, env_cooldown = Environment.get_memory_thresholds()
        self.max_percent = env_percent if max_percent is None else max_percent
        self.min_available_gb = env_available if min_available_gb is None else min_available_gb
        self.cooldown_seconds = env_cooldown if cooldown_seconds is None else cooldown_seconds
        self._last_cleanup = 0.0

    @property
    def last_cleanup(self) -> float:
        """Monotonic time of the last cleanup, 0.0 if none happened."""
        return self._last_cleanup

    def capture_snapshot(self) -> MemorySnapshot | None:
        """Capture system + process memory usage for evaluating pressure.

        Returns:
            MemorySnapshot containing usage stats, or None when psutil fails.
        """
        try:
            vm = psutil.virtual_memory()
            mem = psutil.Process().memory_info()
        except (psutil.Error, OSError) as exc:
            logger.debug("Unable to capture memory stats: %s", exc)
            return None

        snapshot = MemorySnapshot(
            percent=float(vm.percent),
            available_gb=float(vm.available) / (1024**3),
            total_gb=float(vm.total) / (1024**3),
            process_rss_gb=float(mem.rss) / (1024**3),
        )
        logger.debug(
            "Memory snapshot captured: %.2f%% used, %.2f GB available, process RSS %.2f GB",
            snapshot.percent,
            snapshot.available_gb,
            snapshot.process_rss_gb,
        )
        return snapshot

    def needs_cleanup(self, snapshot: MemorySnapshot) -> bool:
        """Return True if the snapshot violates the thresholds."""
        return snapshot.percent >= self.max_percent or snapshot.available_gb <= self.min_available_gb

    def ensure_capacity(self, cache: ResourceCache[Any], *, reason: str, aggressive: bool = False) -> list[str]:
        """Check memory pressure and release loaded models if needed.

        Args:
            cache: Cache whose loaded models may be released.
            reason: Short description, included in the log when models are released.
            aggressive: Bypass thresholds and cooldown, release even without telemetry.

        Returns:
            Names of the released models.
        """
        snapshot = self.capture_snapshot()
        if snapshot is None:
            if not aggressive:
                return []
            logger.warning(
                "Memory cleanup requested (%s) but unable to capture memory stats. Releasing loaded models anyway.",
                reason,
            )
            return self.relieve_pressure(cache, reason=reason)

        if not aggressive and not self.needs_cleanup(snapshot):
            return []

        now = time.monotonic()
        elapsed = now - self._last_cleanup
        if not aggressive and self._last_cleanup > 0 and elapsed < self.cooldown_seconds:
            logger.debug(
                "Memory pressure detected but cleanup throttled for %.2fs (usage %.2f%%, %.2f GB free)",
                self.cooldown_seconds - elapsed,
                snapshot.percent,
                snapshot.available_gb,
            )
            return []

        logger.warning(
            (
                "Memory pressure detected (usage %.2f%%, %.2f GB free of %.2f GB total, "
                "process RSS %.2f GB). Releasing loaded models. Reason: %s"
            ),
            snapshot.percent,
            snapshot.available_gb,
            snapshot.total_gb,
            snapshot.process_rss_gb,
            reason,
        )
        return self.relieve_pressure(cache, reason=reason)

    def relieve_pressure(self, cache: ResourceCache[Any], *, reason: str) -> list[str]:
        """Release every loaded model, least recently used first, then collect garbage."""
        released = []
        for name in cache.loaded_by_age():
            entry = cache.get_entry(name)
            if entry is not None:
                release_resource(name, entry.resource)
            if cache.unload(name):
                released.append(name)
        gc.collect()
        self._last_cleanup = time.monotonic()
        if released:
            logger.info("Released %d model(s) (%s): %s", len(released), reason, ", ".join(released))
        return released
