from .disposable import Disposable, release_resource
from .errors import (
    BackendUnavailableError,
    ModelFileError,
    ModelLoadError,
    ModelLoaderError,
    UnsupportedModelFormatError,
)
from .memory import MemoryGuard, MemorySnapshot
from .model_config import ModelConfig, TorchModelConfig
from .model_registry import (
    dispose_all,
    get_default_cache,
    get_memory_guard,
    get_model_status,
    load_model,
    preload_model,
    register_model,
    reset_default_cache,
    start_expiry_scheduler,
    stop_expiry_scheduler,
    unload_model,
)

__all__ = [
    "BackendUnavailableError",
    "Disposable",
    "MemoryGuard",
    "MemorySnapshot",
    "ModelConfig",
    "ModelFileError",
    "ModelLoadError",
    "ModelLoaderError",
    "TorchModelConfig",
    "UnsupportedModelFormatError",
    "dispose_all",
    "get_default_cache",
    "get_memory_guard",
    "get_model_status",
    "load_model",
    "preload_model",
    "register_model",
    "release_resource",
    "reset_default_cache",
    "start_expiry_scheduler",
    "stop_expiry_scheduler",
    "unload_model",
]
