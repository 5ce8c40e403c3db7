import pytest

from modelloader.config.environment import Environment
from modelloader.ml.core.model_registry import reset_default_cache
from modelloader.ml.core.torch_adapter import reset_torch_backend


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def isolate_global_state(monkeypatch):
    """Give every test a fresh default cache, torch backend and settings."""
    for key in (
        "MODEL_CACHE_MAX_SIZE",
        "MODEL_CACHE_TTL_MS",
        "MODEL_CACHE_CLEANUP_INTERVAL",
        "MODEL_CACHE_MAX_MEMORY_PERCENT",
        "MODEL_CACHE_MIN_AVAILABLE_GB",
        "MODEL_CACHE_MEMORY_COOLDOWN",
        "TORCH_DEVICE",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(Environment, "settings", {})
    reset_default_cache()
    reset_torch_backend()
    yield
    reset_default_cache()
    reset_torch_backend()
