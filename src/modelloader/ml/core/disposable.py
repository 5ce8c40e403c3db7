from typing import Any, Protocol, runtime_checkable

from modelloader.config.logging_config import get_logger

log = get_logger(__name__)


@runtime_checkable
class Disposable(Protocol):
    """A resource holding external memory that must be released explicitly."""

    def dispose(self) -> None: ...


def release_resource(name: str, resource: Any) -> bool:
    """Call ``dispose()`` on ``resource`` when it supports it.

    Errors raised by ``dispose`` are logged, the resource is considered released.

    Returns:
        True if ``dispose`` was called.
    """
    if not isinstance(resource, Disposable):
        return False
    try:
        resource.dispose()
    except Exception as e:
        log.error(f"Error disposing model '{name}': {e}")
    return True
