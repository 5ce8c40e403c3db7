"""
Registers models with a ResourceCache and loads them by name.

This module is the composition root of modelloader: it owns the process-wide
default cache (created lazily from :class:`Environment` settings) and the
model-level helpers used by the framework adapters. Every helper accepts an
explicit ``cache`` so tests and embedding applications can use their own
instance.
"""

from typing import Any, Optional

from modelloader.concurrency.cleanup import ExpiryScheduler
from modelloader.concurrency.resource_cache import (
    ResourceCache,
    ResourceCacheError,
    ResourceConstructionError,
    ResourceStatus,
)
from modelloader.config.environment import Environment
from modelloader.config.logging_config import get_logger
from modelloader.ml.core.disposable import release_resource
from modelloader.ml.core.errors import ModelLoadError
from modelloader.ml.core.memory import MemoryGuard
from modelloader.ml.core.model_config import ModelConfig

logger = get_logger(__name__)

_default_cache: Optional[ResourceCache[Any]] = None
_memory_guard: Optional[MemoryGuard] = None
_expiry_scheduler: Optional[ExpiryScheduler] = None


def get_default_cache() -> ResourceCache[Any]:
    """Return the shared cache, creating it from the environment on first use."""
    global _default_cache
    if _default_cache is None:
        _default_cache = ResourceCache(
            max_cache_size=Environment.get_cache_max_size(),
            cache_ttl_millis=Environment.get_cache_ttl_millis(),
        )
        logger.debug(
            f"Created default model cache (max size {_default_cache.max_cache_size}, "
            f"ttl {_default_cache.cache_ttl_millis}ms)"
        )
    return _default_cache


def reset_default_cache() -> None:
    """Dispose the shared cache; the next access builds a fresh one."""
    global _default_cache, _memory_guard, _expiry_scheduler
    if _expiry_scheduler is not None:
        _expiry_scheduler.cancel()
        _expiry_scheduler = None
    if _default_cache is not None:
        dispose_all(_default_cache)
    _default_cache = None
    _memory_guard = None


def get_memory_guard() -> MemoryGuard:
    global _memory_guard
    if _memory_guard is None:
        _memory_guard = MemoryGuard()
    return _memory_guard


def start_expiry_scheduler(interval_seconds: Optional[float] = None) -> ExpiryScheduler:
    """Sweep expired models out of the default cache periodically.

    Args:
        interval_seconds: Seconds between sweeps. Defaults to
            ``MODEL_CACHE_CLEANUP_INTERVAL``.

    Returns:
        The running scheduler. Calling this again while it runs returns the
        same scheduler.
    """
    global _expiry_scheduler
    if _expiry_scheduler is not None and _expiry_scheduler.running:
        return _expiry_scheduler
    if interval_seconds is None:
        interval_seconds = Environment.get_cleanup_interval_seconds()
    _expiry_scheduler = ExpiryScheduler(get_default_cache(), interval_seconds)
    _expiry_scheduler.start()
    return _expiry_scheduler


async def stop_expiry_scheduler() -> None:
    global _expiry_scheduler
    if _expiry_scheduler is not None:
        await _expiry_scheduler.stop()
        _expiry_scheduler = None


def register_model(config: ModelConfig, cache: Optional[ResourceCache[Any]] = None) -> bool:
    """Register ``config.load_fn`` under ``config.name``.

    Returns:
        False if a model with that name was already registered.

    Raises:
        ValueError: If the config has no load function.
    """
    if config.load_fn is None:
        raise ValueError(f"No valid load function found for model '{config.name}'")
    if cache is None:
        cache = get_default_cache()
    added = cache.register(config.name, config.load_fn)
    if added:
        logger.info(f"Registered {config.model_type} model '{config.name}'")
    return added


def get_model_status(name: str, cache: Optional[ResourceCache[Any]] = None) -> ResourceStatus:
    if cache is None:
        cache = get_default_cache()
    return cache.status(name)


async def load_model(
    name: str,
    config: Optional[ModelConfig] = None,
    cache: Optional[ResourceCache[Any]] = None,
    memory_guard: Optional[MemoryGuard] = None,
) -> Any:
    """Load a model, registering ``config`` first when given and unknown.

    Memory pressure is checked before a new construction starts.

    Raises:
        ValueError: If ``config`` has no load function or names another model.
        ModelLoadError: If the model is not registered or its loader failed.
    """
    if cache is None:
        cache = get_default_cache()
    if memory_guard is None:
        memory_guard = get_memory_guard()
    load_fn = None
    if config is not None:
        if config.name != name:
            raise ValueError(f"Config for model '{config.name}' cannot be used to load '{name}'")
        if config.load_fn is None:
            raise ValueError(f"No valid load function found for model '{config.name}'")
        load_fn = config.load_fn

    if cache.status(name) not in (ResourceStatus.LOADED, ResourceStatus.LOADING):
        memory_guard.ensure_capacity(cache, reason=f"Preparing to load model '{name}'")

    try:
        return await cache.load(name, load_fn)
    except ResourceConstructionError as exc:
        cause = exc.__cause__ or exc
        logger.error(f"Error loading model '{name}': {cause}")
        raise ModelLoadError(name, str(cause)) from cause
    except ResourceCacheError as exc:
        raise ModelLoadError(name, str(exc)) from exc


def preload_model(name: str, cache: Optional[ResourceCache[Any]] = None) -> bool:
    """Start loading ``name`` in the background. Returns True if a load was started."""
    if cache is None:
        cache = get_default_cache()
    return cache.preload(name) is not None


def unload_model(name: str, cache: Optional[ResourceCache[Any]] = None) -> bool:
    """Dispose the loaded model (if it is :class:`Disposable`) and unload it."""
    if cache is None:
        cache = get_default_cache()
    entry = cache.get_entry(name)
    if entry is None or entry.status is not ResourceStatus.LOADED:
        return False
    release_resource(name, entry.resource)
    return cache.unload(name)


def dispose_all(cache: Optional[ResourceCache[Any]] = None) -> None:
    """Dispose every loaded model, then tear the cache down."""
    if cache is None:
        cache = get_default_cache()
    for name in cache.loaded_by_age():
        unload_model(name, cache)
    cache.dispose()
