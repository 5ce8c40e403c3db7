from .background import pending_detached_tasks, spawn_detached
from .cleanup import ExpiryScheduler
from .resource_cache import (
    CacheEntry,
    CacheStats,
    Constructor,
    NotRegisteredError,
    ResourceCache,
    ResourceCacheError,
    ResourceConstructionError,
    ResourceStatus,
)

__all__ = [
    "CacheEntry",
    "CacheStats",
    "Constructor",
    "ExpiryScheduler",
    "NotRegisteredError",
    "ResourceCache",
    "ResourceCacheError",
    "ResourceConstructionError",
    "ResourceStatus",
    "pending_detached_tasks",
    "spawn_detached",
]
