"""
PyTorch adapter.

Builds cache constructors for TorchScript archives and pickled ``nn.Module``
files, selects the compute device, optionally warms the model up, and turns
the usual loading failures into readable errors. torch is imported lazily so
the rest of modelloader works without it.

Example:
    register_torch_model(
        TorchModelConfig(
            name="classifier",
            model_url="models/classifier.pt",
            input_shape=[1, 3, 224, 224],
            warmup=True,
        )
    )
    model = await load_model("classifier")
    ...
    unload_torch_model("classifier")
"""

import asyncio
import gc
import hashlib
import pickle
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlparse

from modelloader.concurrency.resource_cache import ResourceCache
from modelloader.config.environment import Environment
from modelloader.config.logging_config import get_logger
from modelloader.ml.core.errors import (
    BackendUnavailableError,
    ModelFileError,
    UnsupportedModelFormatError,
)
from modelloader.ml.core.model_config import TorchModelConfig
from modelloader.ml.core.model_registry import register_model, unload_model

logger = get_logger(__name__)

_backend: Optional[str] = None


def _probe_device(device: Any) -> None:
    import torch

    torch.zeros(1, device=device)


async def ensure_torch_backend() -> str:
    """Select and verify the torch device, falling back to cpu.

    Returns:
        The device type ("mps", "cuda" or "cpu").

    Raises:
        BackendUnavailableError: If torch is missing or not even cpu works.
    """
    global _backend
    if _backend is not None:
        return _backend

    device = Environment.get_torch_device()
    if device is None:
        raise BackendUnavailableError("PyTorch is not installed. Install modelloader[torch].")

    import torch

    logger.info(f"Initializing torch backend on {device.type}...")
    try:
        await asyncio.to_thread(_probe_device, device)
        _backend = device.type
    except RuntimeError as e:
        if device.type == "cpu":
            raise BackendUnavailableError(f"Could not initialize torch cpu backend: {e}") from e
        logger.warning(f"Torch {device.type} backend failed to initialize, falling back to cpu: {e}")
        try:
            await asyncio.to_thread(_probe_device, torch.device("cpu"))
        except RuntimeError as err:
            raise BackendUnavailableError(
                "Could not initialize any torch backend. Check the torch installation."
            ) from err
        _backend = "cpu"

    logger.info(f"Using torch {_backend} backend")
    return _backend


def reset_torch_backend() -> None:
    """Forget the selected backend so the next load probes again."""
    global _backend
    _backend = None


def _download_target(model_url: str, hub_dir: str) -> Path:
    # One directory per URL: different URLs may share a file name
    digest = hashlib.sha256(model_url.encode("utf-8")).hexdigest()[:16]
    filename = Path(urlparse(model_url).path).name or "model"
    return Path(hub_dir) / "modelloader" / digest / filename


def _resolve_model_path(model_url: str) -> Path:
    parsed = urlparse(model_url)
    if parsed.scheme in ("http", "https"):
        import torch

        target = _download_target(model_url, torch.hub.get_dir())
        if not target.exists():
            target.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"Downloading model from {model_url}")
            torch.hub.download_url_to_file(model_url, str(target), progress=False)
        return target
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(model_url)


def _load_module(config: TorchModelConfig, device_type: str) -> Any:
    import torch

    device = torch.device(device_type)
    try:
        path = _resolve_model_path(config.model_url)
        if config.model_format == "torchscript":
            model = torch.jit.load(str(path), map_location=device)
        elif config.model_format == "pickle":
            model = torch.load(str(path), map_location=device, weights_only=False)
        else:
            raise UnsupportedModelFormatError(f"Unsupported model format: {config.model_format}")
    except (FileNotFoundError, IsADirectoryError) as e:
        raise ModelFileError(
            config.model_url,
            f"Model file not found at {config.model_url}. Check the path or URL.",
        ) from e
    except (pickle.UnpicklingError, EOFError) as e:
        raise ModelFileError(
            config.model_url,
            f"Invalid model format or corrupt model file at {config.model_url}. "
            "The file might not be a valid PyTorch model.",
        ) from e
    except RuntimeError as e:
        if "PytorchStreamReader" in str(e) or "zip archive" in str(e):
            raise ModelFileError(
                config.model_url,
                f"Invalid model format or corrupt model file at {config.model_url}. "
                f"The file might not be a valid {config.model_format} archive.",
            ) from e
        raise

    if isinstance(model, dict):
        raise ModelFileError(
            config.model_url,
            f"The file at {config.model_url} contains a state dict, not a model. "
            "Save the whole module or a TorchScript archive.",
        )

    if hasattr(model, "eval"):
        model.eval()
    return model


def _warmup(model: Any, input_shape: list[int], device_type: str) -> None:
    import torch

    with torch.no_grad():
        dummy = torch.zeros(input_shape, device=torch.device(device_type))
        model(dummy)
        del dummy


def make_torch_loader(config: TorchModelConfig):
    """Return the async constructor for ``config``."""

    async def load_fn():
        device_type = await ensure_torch_backend()
        logger.info(f"Loading model '{config.name}' from {config.model_url}")
        model = await asyncio.to_thread(_load_module, config, device_type)
        if config.warmup and config.input_shape:
            await asyncio.to_thread(_warmup, model, config.input_shape, device_type)
            logger.debug(f"Warmed up model '{config.name}' with input shape {config.input_shape}")
        return model

    return load_fn


def register_torch_model(config: TorchModelConfig, cache: Optional[ResourceCache[Any]] = None) -> bool:
    """Register a PyTorch model file with the cache."""
    if config.warmup and not config.input_shape:
        logger.warning(f"Model '{config.name}' requests warmup without input_shape; warmup skipped")
    full_config = config.model_copy(update={"load_fn": make_torch_loader(config)})
    return register_model(full_config, cache)


def clear_torch_memory() -> None:
    """Collect garbage and release cached accelerator memory."""
    gc.collect()
    try:
        import torch
    except ImportError:
        return

    if torch.cuda.is_available():
        torch.cuda.empty_cache()
    mps = getattr(torch, "mps", None)
    if mps is not None and torch.backends.mps.is_available():
        mps.empty_cache()


def unload_torch_model(name: str, cache: Optional[ResourceCache[Any]] = None) -> bool:
    """Unload a PyTorch model and free the memory it held."""
    unloaded = unload_model(name, cache)
    if unloaded:
        clear_torch_memory()
    return unloaded
