"""Utility functions for reading and writing configuration files."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

import yaml

from modelloader.config.configuration import register_setting

# Constants
SETTINGS_FILE = "settings.yaml"
MISSING_MESSAGE = "Missing required environment variable: {}"
NOT_GIVEN = object()

# Built-in settings are registered here so that adapters can extend the
# configuration system via :func:`register_setting`.

register_setting(
    package_name="modelloader",
    env_var="MODEL_CACHE_MAX_SIZE",
    group="Cache",
    description=(
        "Maximum number of models kept loaded at the same time. "
        "When a new model is admitted beyond this limit the least recently used one is unloaded."
    ),
    default="5",
)
register_setting(
    package_name="modelloader",
    env_var="MODEL_CACHE_TTL_MS",
    group="Cache",
    description=(
        "Time-to-live in milliseconds for loaded models. "
        "Models untouched for longer are unloaded by the periodic expiry sweep."
    ),
    default=str(30 * 60 * 1000),
)
register_setting(
    package_name="modelloader",
    env_var="MODEL_CACHE_CLEANUP_INTERVAL",
    group="Cache",
    description="Interval in seconds between two expiry sweeps of the default cache",
    default="60",
)
register_setting(
    package_name="modelloader",
    env_var="MODEL_CACHE_MAX_MEMORY_PERCENT",
    group="Memory",
    description="System memory usage (percent) above which loaded models are released",
    default="92.0",
)
register_setting(
    package_name="modelloader",
    env_var="MODEL_CACHE_MIN_AVAILABLE_GB",
    group="Memory",
    description="Free system memory (GB) below which loaded models are released",
    default="1.0",
)
register_setting(
    package_name="modelloader",
    env_var="MODEL_CACHE_MEMORY_COOLDOWN",
    group="Memory",
    description="Seconds to wait between two automatic memory pressure cleanups",
    default="30.0",
)
register_setting(
    package_name="modelloader",
    env_var="TORCH_DEVICE",
    group="Torch",
    description=(
        "Device used by the PyTorch adapter. "
        "If not specified, mps is preferred, then cuda, then cpu."
    ),
    enum=["cpu", "cuda", "mps"],
)


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def get_system_file_path(filename: str) -> Path:
    """Return the path to the configuration file for the current OS."""
    import platform

    os_name = platform.system()
    if os_name in {"Linux", "Darwin"}:
        return Path.home() / ".config" / "modelloader" / filename
    elif os_name == "Windows":
        appdata = os.getenv("APPDATA")
        if appdata is not None:
            return Path(appdata) / "modelloader" / filename
        return Path("data") / filename
    return Path("data") / filename


# ---------------------------------------------------------------------------
# Settings helpers
# ---------------------------------------------------------------------------


def load_settings(settings_file: Path | None = None) -> Dict[str, Any]:
    """Load settings from the YAML settings file."""
    settings_file = settings_file or get_system_file_path(SETTINGS_FILE)

    settings: Dict[str, Any] = {}
    if settings_file.exists():
        with open(settings_file, "r") as f:
            settings = yaml.safe_load(f) or {}

    return settings


def save_settings(settings: Dict[str, Any], settings_file: Path | None = None) -> None:
    """Save settings to the YAML settings file."""
    settings_file = settings_file or get_system_file_path(SETTINGS_FILE)

    os.makedirs(os.path.dirname(settings_file), exist_ok=True)

    with open(settings_file, "w") as f:
        yaml.dump(settings, f)


def get_value(
    key: str,
    settings: Dict[str, Any],
    default_env: Dict[str, Any],
    default: Any = NOT_GIVEN,
) -> Any:
    """Retrieve a configuration value from the environment, settings, or defaults."""
    value = os.environ.get(key)
    if value is None or str(value) == "":
        value = settings.get(key)

    if value is None:
        value = default_env.get(key)

    if value is None:
        value = default

    if value is not NOT_GIVEN:
        return value
    raise Exception(MISSING_MESSAGE.format(key))
