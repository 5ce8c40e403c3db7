from dataclasses import dataclass
from typing import List


@dataclass
class Setting:
    package_name: str
    env_var: str
    group: str
    description: str
    default: str | None = None
    enum: List[str] | None = None


_registry: List[Setting] = []


def register_setting(
    package_name: str,
    env_var: str,
    group: str,
    description: str,
    default: str | None = None,
    enum: List[str] | None = None,
) -> List[Setting]:
    """Register a new setting.

    Registering an env var that is already known replaces the previous entry,
    so adapters may refine the description of a built-in setting.

    Parameters
    ----------
    package_name: str
        Name of the package registering the setting.
    env_var: str
        The environment variable name.
    group: str
        Group the setting belongs to.
    description: str
        Human readable description of the setting.
    default: str | None
        Value used when neither the settings file nor the environment sets it.
    enum: List[str] | None
        List of possible values for the setting.

    Returns
    -------
    List[Setting]
        The list of all registered settings.
    """
    setting = Setting(
        package_name=package_name,
        env_var=env_var,
        group=group,
        description=description,
        default=default,
        enum=enum,
    )
    _registry[:] = [s for s in _registry if s.env_var != env_var]
    _registry.append(setting)
    return list(_registry)


def get_settings_registry() -> List[Setting]:
    """Return the list of all registered settings."""
    return list(_registry)


def get_setting_defaults() -> dict[str, str | None]:
    """Return the registered defaults keyed by env var."""
    return {s.env_var: s.default for s in _registry}
