"""
Periodic expiry sweeps for a ResourceCache.

The cache never schedules its own TTL sweep; applications that want one start
an ``ExpiryScheduler`` next to the cache and stop it on shutdown.

Example:
    scheduler = ExpiryScheduler(cache, interval_seconds=60)
    scheduler.start()
    ...
    await scheduler.stop()
"""

import asyncio
from contextlib import suppress
from typing import Any, Optional

from modelloader.concurrency.resource_cache import ResourceCache
from modelloader.config.logging_config import get_logger

log = get_logger(__name__)


class ExpiryScheduler:
    """Run ``cache.cleanup_expired()`` every ``interval_seconds``."""

    def __init__(self, cache: ResourceCache[Any], interval_seconds: float = 60.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._cache = cache
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task[None]] = None
        self._sweeps = 0

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def sweeps(self) -> int:
        """Number of completed sweeps."""
        return self._sweeps

    def start(self) -> None:
        """
        Start the periodic sweep on the running loop.

        Calling start on a running scheduler is a no-op.
        """
        if self.running:
            return

        async def cleanup_loop():
            while True:
                try:
                    await asyncio.sleep(self._interval)
                    self._cache.cleanup_expired()
                    self._sweeps += 1
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    log.error(f"Error in expiry sweep: {e}")

        self._task = asyncio.create_task(cleanup_loop(), name="resource-cache-expiry")
        log.info(f"Started resource cache expiry sweep every {self._interval}s")

    def cancel(self) -> None:
        """Cancel the sweep without waiting for it, for synchronous shutdown paths."""
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        self._task = None
        log.info("Cancelled resource cache expiry sweep")

    async def stop(self) -> None:
        """Cancel the sweep and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        log.info("Stopped resource cache expiry sweep")

    async def __aenter__(self) -> "ExpiryScheduler":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
