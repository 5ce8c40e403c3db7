"""
Environment Configuration Management Module

This module provides centralized configuration management for modelloader through
the Environment class. Configuration is read from several sources:

- Environment variables (optionally populated from .env files)
- Settings file (settings.yaml)
- Defaults registered in :mod:`modelloader.config.settings`

Environment variables take precedence over the settings file, which takes
precedence over the registered defaults.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

from modelloader.config.configuration import get_setting_defaults
from modelloader.config.settings import get_value, load_settings

DEFAULT_ENV = {
    "ENV": "development",
    "LOG_LEVEL": None,
    "DEBUG": None,
}


def load_dotenv_files():
    """Load environment variables from .env files based on current environment."""
    from dotenv import load_dotenv

    project_root = Path.cwd()
    env_name = os.environ.get("ENV", "development")

    # Later files do not override values already present in os.environ
    env_files = [
        project_root / ".env",
        project_root / f".env.{env_name}",
        project_root / f".env.{env_name}.local",
    ]

    for env_file in env_files:
        if env_file.exists():
            load_dotenv(env_file, override=False)


class Environment(object):
    """
    Central access point for modelloader configuration.

    All accessors are class methods; the settings file is read lazily on first
    access and cached until :meth:`reload` is called.
    """

    settings: Optional[Dict[str, Any]] = None

    @classmethod
    def load_settings(cls):
        load_dotenv_files()
        cls.settings = load_settings()

    @classmethod
    def reload(cls):
        """Drop cached settings so the next access re-reads them."""
        cls.settings = None

    @classmethod
    def get_settings(cls) -> Dict[str, Any]:
        if cls.settings is None:
            cls.load_settings()
        assert cls.settings is not None
        return cls.settings

    @classmethod
    def get(cls, key: str, default: Any = None):
        defaults = {**get_setting_defaults(), **DEFAULT_ENV}
        return get_value(key, cls.get_settings(), defaults, default)

    @classmethod
    def get_env(cls):
        """
        The environment is either "development", "test" or "production".
        """
        return cls.get("ENV")

    @classmethod
    def is_production(cls):
        """
        Is the environment production?
        """
        return cls.get_env() == "production"

    @classmethod
    def is_debug(cls) -> bool:
        """
        Is debug flag on?
        """
        value = cls.get("DEBUG")
        return value is not None and str(value).lower() not in ("0", "false", "no", "off", "")

    @classmethod
    def get_log_level(cls):
        """Return desired log level string.

        Priority:
        1) Explicit LOG_LEVEL env
        2) If DEBUG is truthy, return "DEBUG"
        3) MODELLOADER_LOG_LEVEL env (default "INFO")
        """
        level = os.getenv("LOG_LEVEL")
        if level:
            return str(level).upper()
        if cls.is_debug():
            return "DEBUG"
        return os.getenv("MODELLOADER_LOG_LEVEL", "INFO").upper()

    @classmethod
    def _get_int_setting(cls, key: str, default: int) -> int:
        raw = cls.get(key)
        if raw is None:
            return default
        try:
            value = int(raw)
        except (TypeError, ValueError):
            return default
        return value if value > 0 else default

    @classmethod
    def _get_float_setting(cls, key: str, default: float) -> float:
        raw = cls.get(key)
        if raw is None:
            return default
        try:
            return float(raw)
        except (TypeError, ValueError):
            return default

    @classmethod
    def get_cache_max_size(cls) -> int:
        """Number of models the default cache keeps loaded."""
        return cls._get_int_setting("MODEL_CACHE_MAX_SIZE", 5)

    @classmethod
    def get_cache_ttl_millis(cls) -> int:
        """Idle time after which a loaded model expires."""
        return cls._get_int_setting("MODEL_CACHE_TTL_MS", 30 * 60 * 1000)

    @classmethod
    def get_cleanup_interval_seconds(cls) -> float:
        interval = cls._get_float_setting("MODEL_CACHE_CLEANUP_INTERVAL", 60.0)
        return interval if interval > 0 else 60.0

    @classmethod
    def get_memory_thresholds(cls) -> tuple[float, float, float]:
        """Return (max_percent, min_available_gb, cooldown_seconds)."""
        max_percent = cls._get_float_setting("MODEL_CACHE_MAX_MEMORY_PERCENT", 92.0)
        min_available = cls._get_float_setting("MODEL_CACHE_MIN_AVAILABLE_GB", 1.0)
        cooldown = cls._get_float_setting("MODEL_CACHE_MEMORY_COOLDOWN", 30.0)
        return (
            min(max(max_percent, 10.0), 99.0),
            max(min_available, 0.0),
            max(cooldown, 0.0),
        )

    @classmethod
    def get_torch_device(cls):
        """
        Get the torch device.
        Returns None if torch is not installed.
        """
        try:
            import torch
        except ImportError:
            return None

        requested = cls.get("TORCH_DEVICE")
        if requested:
            return torch.device(requested)

        try:
            if torch.backends.mps.is_available():
                return torch.device("mps")
        except AttributeError:
            pass

        if torch.cuda.is_available():
            return torch.device("cuda")
        return torch.device("cpu")
