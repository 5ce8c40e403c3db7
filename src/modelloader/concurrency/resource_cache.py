"""
Async resource cache for expensive, lazily constructed objects.

This module provides ``ResourceCache``, a registry of named resources (usually
machine learning models) that are built on demand by caller supplied async
constructors. Each name owns one slot with a small state machine::

    IDLE -> LOADING -> LOADED
                    -> ERROR -> LOADING (retry through load())
    LOADED -> IDLE (unload, eviction, expiry)

Concurrent ``load`` calls for the same name share a single construction task,
loaded resources are kept until they are evicted as least recently used when
the cache is over capacity, or expire after a period without access.

Example:
    cache = ResourceCache(max_cache_size=2, cache_ttl_millis=60_000)

    cache.register("encoder", lambda: load_encoder("encoder.pt"))

    # Constructs the encoder once, even with many concurrent callers
    encoder = await cache.load("encoder")

    # Late registration: the constructor is stored on first use
    decoder = await cache.load("decoder", lambda: load_decoder("decoder.pt"))

    # Called periodically by the application
    cache.cleanup_expired()
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from modelloader.concurrency.background import spawn_detached
from modelloader.config.logging_config import get_logger

log = get_logger(__name__)

T = TypeVar("T")

Constructor = Callable[[], Awaitable[T]]


class ResourceStatus(str, Enum):
    """Loading status of a cache entry."""

    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


class ResourceCacheError(Exception):
    """Base class for errors raised by ResourceCache."""


class NotRegisteredError(ResourceCacheError, KeyError):
    """Raised when loading a name that was never registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Resource '{name}' is not registered.")

    def __str__(self) -> str:
        return str(self.args[0])


class ResourceConstructionError(ResourceCacheError):
    """Raised to every caller waiting on a constructor that failed.

    The constructor's exception is available as ``__cause__``.
    """

    def __init__(self, name: str, cause: BaseException):
        self.name = name
        super().__init__(f"Failed to load resource '{name}': {cause}")


@dataclass
class CacheStats:
    """Counters describing cache activity."""

    hits: int = 0
    misses: int = 0
    joins: int = 0
    constructions: int = 0
    failures: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0
    loaded: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses + self.joins
        return self.hits / total if total > 0 else 0.0


class CacheEntry(Generic[T]):
    """State of one named resource slot."""

    __slots__ = (
        "constructor",
        "in_flight",
        "last_accessed",
        "name",
        "resource",
        "status",
    )

    def __init__(self, name: str, constructor: Constructor[T], now: float):
        self.name = name
        self.constructor = constructor
        self.status = ResourceStatus.IDLE
        self.resource: T | None = None
        self.in_flight: asyncio.Task[T] | None = None
        self.last_accessed = now

    def __repr__(self) -> str:
        return f"CacheEntry(name={self.name!r}, status={self.status.value})"


def _consume_exception(task: asyncio.Task[Any]) -> None:
    # Waiters may all have gone away; keep asyncio from reporting the failure
    # as never retrieved. The failure itself is logged in _construct.
    if not task.cancelled():
        task.exception()


class ResourceCache(Generic[T]):
    """
    Named, lazily constructed resources with single-flight loading and LRU/TTL eviction.

    Features:
    - At most one construction per name at a time, shared by all callers
    - LRU eviction of loaded resources when a new one is admitted over capacity
    - TTL expiry through ``cleanup_expired()``, driven by an external scheduler
    - Failed constructions are remembered as ERROR and retried on the next load
    - Statistics (hits, misses, joins, constructions, evictions, ...)

    The cache never disposes resources itself. Callers holding handles to
    external memory (GPU buffers, file handles) release them before calling
    ``unload``.
    """

    def __init__(
        self,
        max_cache_size: int = 5,
        cache_ttl_millis: int = 30 * 60 * 1000,
        clock: Callable[[], float] | None = None,
    ):
        """
        Initialize the ResourceCache.

        Args:
            max_cache_size: Maximum number of loaded resources. Must be > 0.
            cache_ttl_millis: Idle time in milliseconds after which a loaded
                resource is unloaded by ``cleanup_expired``. Must be > 0.
            clock: Function returning the current time in seconds. Defaults to
                ``time.monotonic``.

        Raises:
            ValueError: If max_cache_size or cache_ttl_millis is not positive.
        """
        if max_cache_size <= 0:
            raise ValueError("max_cache_size must be positive")
        if cache_ttl_millis <= 0:
            raise ValueError("cache_ttl_millis must be positive")

        self._max_cache_size = max_cache_size
        self._cache_ttl_millis = cache_ttl_millis
        self._clock: Callable[[], float] = clock or time.monotonic
        self._entries: dict[str, CacheEntry[T]] = {}
        self._initialized = False
        self._hits = 0
        self._misses = 0
        self._joins = 0
        self._constructions = 0
        self._failures = 0
        self._evictions = 0
        self._expirations = 0

    @property
    def max_cache_size(self) -> int:
        return self._max_cache_size

    @property
    def cache_ttl_millis(self) -> int:
        return self._cache_ttl_millis

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def stats(self) -> CacheStats:
        """Return a snapshot of the cache counters."""
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            joins=self._joins,
            constructions=self._constructions,
            failures=self._failures,
            evictions=self._evictions,
            expirations=self._expirations,
            size=len(self._entries),
            loaded=sum(1 for e in self._entries.values() if e.status is ResourceStatus.LOADED),
        )

    async def initialize(self) -> None:
        """Mark the cache ready for use. Calling it again is a no-op."""
        if self._initialized:
            return
        self._initialized = True
        log.debug("Resource cache initialized")

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def names(self) -> list[str]:
        """Return the registered names in registration order."""
        return list(self._entries)

    def get_entry(self, name: str) -> CacheEntry[T] | None:
        """Return the entry for ``name`` for inspection, or None."""
        return self._entries.get(name)

    def register(self, name: str, constructor: Constructor[T]) -> bool:
        """
        Register a constructor under ``name`` without running it.

        Args:
            name: Unique resource name.
            constructor: Zero-argument async callable producing the resource.

        Returns:
            True if the name was added, False if it was already registered.
            A duplicate registration keeps the original constructor.
        """
        if name in self._entries:
            log.warning(f"Resource '{name}' is already registered.")
            return False

        self._entries[name] = CacheEntry(name, constructor, self._clock())
        log.debug(f"Registered resource '{name}'")
        return True

    def status(self, name: str) -> ResourceStatus:
        """Return the status of ``name``; unknown names report IDLE."""
        entry = self._entries.get(name)
        return entry.status if entry is not None else ResourceStatus.IDLE

    async def load(self, name: str, constructor: Constructor[T] | None = None) -> T:
        """
        Return the resource for ``name``, constructing it if needed.

        Args:
            name: Resource name.
            constructor: Optional constructor. Registers ``name`` when it is
                unknown; for a known name it is used instead of the stored one
                for this attempt only.

        Returns:
            The loaded resource. All callers joining the same construction
            receive the same instance.

        Raises:
            NotRegisteredError: If ``name`` is unknown and no constructor was given.
            ResourceConstructionError: If the constructor raised.
        """
        if name not in self._entries and constructor is not None:
            self.register(name, constructor)

        entry = self._entries.get(name)
        if entry is None:
            raise NotRegisteredError(name)

        entry.last_accessed = self._clock()

        if entry.status is ResourceStatus.LOADED:
            self._hits += 1
            log.debug(f"Cache hit for resource '{name}'")
            return entry.resource  # type: ignore[return-value]

        if entry.status is ResourceStatus.LOADING and entry.in_flight is not None:
            self._joins += 1
            log.debug(f"Joining in-flight construction of resource '{name}'")
            return await asyncio.shield(entry.in_flight)

        self._misses += 1
        task = self._start_construction(entry, constructor or entry.constructor)
        return await asyncio.shield(task)

    def preload(self, name: str) -> asyncio.Task[None] | None:
        """
        Start loading ``name`` in the background if it is registered and IDLE.

        Failures are logged and never raised. Without a running event loop
        nothing is started.

        Returns:
            The background task, or None when nothing was started.
        """
        entry = self._entries.get(name)
        if entry is None or entry.status is not ResourceStatus.IDLE:
            return None
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            log.warning(f"Cannot preload resource '{name}': no running event loop")
            return None
        return spawn_detached(self._preload(name), name=f"preload:{name}")

    def unload(self, name: str) -> bool:
        """
        Drop the loaded resource for ``name`` and return the entry to IDLE.

        Returns:
            True if a loaded resource was released, False otherwise.
        """
        entry = self._entries.get(name)
        if entry is None or entry.status is not ResourceStatus.LOADED:
            return False

        entry.resource = None
        entry.status = ResourceStatus.IDLE
        log.debug(f"Unloaded resource '{name}'")
        return True

    def cleanup_expired(self) -> list[str]:
        """
        Unload every loaded resource idle for longer than the TTL.

        Returns:
            Names of the resources that were unloaded.
        """
        now = self._clock()
        ttl = self._cache_ttl_millis / 1000.0
        expired = [
            entry.name
            for entry in self._entries.values()
            if entry.status is ResourceStatus.LOADED and now - entry.last_accessed > ttl
        ]

        for name in expired:
            self.unload(name)
            self._expirations += 1

        if expired:
            log.info(f"Expired {len(expired)} idle resource(s): {', '.join(expired)}")
        return expired

    def loaded_by_age(self) -> list[str]:
        """Return names of loaded resources, least recently accessed first."""
        loaded = [e for e in self._entries.values() if e.status is ResourceStatus.LOADED]
        loaded.sort(key=lambda e: (e.last_accessed, e.name))
        return [e.name for e in loaded]

    def dispose(self) -> None:
        """Unload everything, forget all registrations and reset initialization."""
        count = len(self._entries)
        for name in list(self._entries):
            self.unload(name)
        self._entries.clear()
        self._initialized = False
        if count > 0:
            log.info(f"Resource cache disposed: {count} registration(s) removed")

    def _start_construction(self, entry: CacheEntry[T], constructor: Constructor[T]) -> asyncio.Task[T]:
        # No await between the status change and storing the task: late
        # callers always find the task to join.
        entry.status = ResourceStatus.LOADING
        task = asyncio.get_running_loop().create_task(
            self._construct(entry, constructor), name=f"load:{entry.name}"
        )
        if not task.done():
            entry.in_flight = task
        task.add_done_callback(_consume_exception)
        return task

    async def _construct(self, entry: CacheEntry[T], constructor: Constructor[T]) -> T:
        log.info(f"Loading resource '{entry.name}'")
        started = time.perf_counter()
        try:
            resource = await constructor()
        except asyncio.CancelledError:
            entry.status = ResourceStatus.IDLE
            log.warning(f"Loading resource '{entry.name}' was cancelled")
            raise
        except Exception as exc:
            entry.status = ResourceStatus.ERROR
            entry.resource = None
            self._failures += 1
            log.error(f"Failed to load resource '{entry.name}': {exc}")
            raise ResourceConstructionError(entry.name, exc) from exc
        finally:
            entry.in_flight = None

        if self._entries.get(entry.name) is entry:
            self._evict_for(entry)
        else:
            log.debug(f"Resource '{entry.name}' finished loading after the cache was disposed")

        entry.resource = resource
        entry.status = ResourceStatus.LOADED
        self._constructions += 1
        log.info(f"Loaded resource '{entry.name}' in {time.perf_counter() - started:.2f}s")
        return resource

    def _evict_for(self, incoming: CacheEntry[T]) -> None:
        """Unload least recently used resources so ``incoming`` fits."""
        candidates = [
            e
            for e in self._entries.values()
            if e.status is ResourceStatus.LOADED and e is not incoming
        ]
        count = len(candidates) + 1
        if count <= self._max_cache_size:
            return

        candidates.sort(key=lambda e: (e.last_accessed, e.name))
        for victim in candidates:
            if count <= self._max_cache_size:
                break
            self.unload(victim.name)
            self._evictions += 1
            count -= 1
            log.info(f"Evicted least recently used resource '{victim.name}'")

    async def _preload(self, name: str) -> None:
        try:
            await self.load(name)
        except ResourceCacheError as exc:
            log.warning(f"Preloading resource '{name}' failed: {exc}")


__all__ = [
    "CacheEntry",
    "CacheStats",
    "Constructor",
    "NotRegisteredError",
    "ResourceCache",
    "ResourceCacheError",
    "ResourceConstructionError",
    "ResourceStatus",
]
