from __future__ import annotations

import pickle
import sys
from contextlib import nullcontext
from pathlib import Path
from types import SimpleNamespace

import pytest

from modelloader.concurrency.resource_cache import ResourceCache, ResourceStatus
from modelloader.ml.core.errors import BackendUnavailableError, ModelFileError, ModelLoadError
from modelloader.ml.core.memory import MemoryGuard
from modelloader.ml.core.model_config import TorchModelConfig
from modelloader.ml.core.model_registry import load_model
from modelloader.ml.core import torch_adapter
from modelloader.ml.core.torch_adapter import (
    clear_torch_memory,
    ensure_torch_backend,
    register_torch_model,
    unload_torch_model,
)


class FakeDevice:
    def __init__(self, type: str):
        self.type = type


class FakeModule:
    def __init__(self):
        self.training = True
        self.inputs = []

    def eval(self):
        self.training = False
        return self

    def __call__(self, x):
        self.inputs.append(x)
        return x


class FakeTorch:
    """Just enough of the torch API for the adapter."""

    def __init__(self):
        self.broken_devices: set[str] = set()
        self.cuda_available = False
        self.module = FakeModule()
        self.load_error: Exception | None = None
        self.pickled_object = None
        self.loaded_paths: list[str] = []
        self.empty_cache_calls = 0
        self.cuda = SimpleNamespace(
            is_available=lambda: self.cuda_available,
            empty_cache=self._empty_cache,
        )
        self.backends = SimpleNamespace(mps=SimpleNamespace(is_available=lambda: False))
        self.jit = SimpleNamespace(load=self._jit_load)
        self.no_grad = nullcontext
        self.hub_dir = ""
        self.downloads: list[str] = []
        self.hub = SimpleNamespace(get_dir=lambda: self.hub_dir, download_url_to_file=self._download)

    def device(self, type: str) -> FakeDevice:
        return FakeDevice(type)

    def zeros(self, shape, device=None):
        if device is not None and device.type in self.broken_devices:
            raise RuntimeError(f"{device.type} not available")
        return ("zeros", tuple(shape) if not isinstance(shape, int) else (shape,))

    def _download(self, url, dst, progress=True):
        self.downloads.append(url)
        Path(dst).write_bytes(b"model")

    def _empty_cache(self):
        self.empty_cache_calls += 1

    def _jit_load(self, path, map_location=None):
        self.loaded_paths.append(path)
        if self.load_error is not None:
            raise self.load_error
        return self.module

    def load(self, path, map_location=None, weights_only=True):
        self.loaded_paths.append(path)
        if self.load_error is not None:
            raise self.load_error
        return self.pickled_object if self.pickled_object is not None else self.module


@pytest.fixture
def fake_torch(monkeypatch) -> FakeTorch:
    fake = FakeTorch()
    monkeypatch.setitem(sys.modules, "torch", fake)
    return fake


@pytest.fixture
def relaxed_guard() -> MemoryGuard:
    return MemoryGuard(max_percent=101.0, min_available_gb=-1.0, cooldown_seconds=0.0)


class TestBackend:
    """Tests for torch device selection."""

    @pytest.mark.asyncio
    async def test_defaults_to_cpu(self, fake_torch):
        """Test cpu is chosen when no accelerator is available."""
        assert await ensure_torch_backend() == "cpu"

    @pytest.mark.asyncio
    async def test_prefers_cuda_when_available(self, fake_torch):
        """Test cuda is preferred when available."""
        fake_torch.cuda_available = True
        assert await ensure_torch_backend() == "cuda"

    @pytest.mark.asyncio
    async def test_backend_is_cached(self, fake_torch):
        """Test the backend is selected once."""
        assert await ensure_torch_backend() == "cpu"
        fake_torch.cuda_available = True
        assert await ensure_torch_backend() == "cpu"

    @pytest.mark.asyncio
    async def test_falls_back_to_cpu(self, fake_torch, monkeypatch):
        """Test a failing requested device falls back to cpu."""
        monkeypatch.setenv("TORCH_DEVICE", "cuda")
        fake_torch.broken_devices.add("cuda")

        assert await ensure_torch_backend() == "cpu"

    @pytest.mark.asyncio
    async def test_no_usable_backend(self, fake_torch):
        """Test an error is raised when not even cpu works."""
        fake_torch.broken_devices.add("cpu")

        with pytest.raises(BackendUnavailableError):
            await ensure_torch_backend()

    @pytest.mark.asyncio
    async def test_torch_missing(self, monkeypatch):
        """Test a clear error when torch is not installed."""
        monkeypatch.setitem(sys.modules, "torch", None)

        with pytest.raises(BackendUnavailableError, match="not installed"):
            await ensure_torch_backend()


class TestTorchModels:
    """Tests for loading torch models."""

    @pytest.mark.asyncio
    async def test_load_torchscript_model(self, fake_torch, relaxed_guard):
        """Test loading a TorchScript model in eval mode."""
        cache = ResourceCache()
        register_torch_model(TorchModelConfig(name="clf", model_url="models/clf.pt"), cache)

        model = await load_model("clf", cache=cache, memory_guard=relaxed_guard)

        assert model is fake_torch.module
        assert model.training is False
        assert fake_torch.loaded_paths == [str(Path("models/clf.pt"))]

    @pytest.mark.asyncio
    async def test_warmup_runs_one_forward_pass(self, fake_torch, relaxed_guard):
        """Test warmup runs one forward pass with zeros."""
        cache = ResourceCache()
        register_torch_model(
            TorchModelConfig(
                name="clf",
                model_url="file:///srv/models/clf.pt",
                input_shape=[1, 3],
                warmup=True,
            ),
            cache,
        )

        model = await load_model("clf", cache=cache, memory_guard=relaxed_guard)

        assert model.inputs == [("zeros", (1, 3))]
        assert fake_torch.loaded_paths == [str(Path("/srv/models/clf.pt"))]

    @pytest.mark.asyncio
    async def test_warmup_without_shape_is_skipped(self, fake_torch, relaxed_guard):
        """Test warmup is skipped without an input shape."""
        cache = ResourceCache()
        register_torch_model(TorchModelConfig(name="clf", model_url="clf.pt", warmup=True), cache)

        model = await load_model("clf", cache=cache, memory_guard=relaxed_guard)

        assert model.inputs == []

    @pytest.mark.asyncio
    async def test_missing_file(self, fake_torch, relaxed_guard):
        """Test a missing file is reported with its path."""
        cache = ResourceCache()
        fake_torch.load_error = FileNotFoundError("clf.pt")
        register_torch_model(TorchModelConfig(name="clf", model_url="clf.pt"), cache)

        with pytest.raises(ModelLoadError, match="Model file not found at clf.pt") as exc_info:
            await load_model("clf", cache=cache, memory_guard=relaxed_guard)

        assert isinstance(exc_info.value.__cause__, ModelFileError)
        assert cache.status("clf") is ResourceStatus.ERROR

    @pytest.mark.asyncio
    async def test_corrupt_pickle(self, fake_torch, relaxed_guard):
        """Test a corrupt pickle is reported as an invalid model."""
        cache = ResourceCache()
        fake_torch.load_error = pickle.UnpicklingError("invalid load key")
        register_torch_model(
            TorchModelConfig(name="clf", model_url="clf.pkl", model_format="pickle"), cache
        )

        with pytest.raises(ModelLoadError, match="corrupt model file"):
            await load_model("clf", cache=cache, memory_guard=relaxed_guard)

    @pytest.mark.asyncio
    async def test_corrupt_torchscript_archive(self, fake_torch, relaxed_guard):
        """Test a corrupt archive is reported as an invalid model."""
        cache = ResourceCache()
        fake_torch.load_error = RuntimeError("PytorchStreamReader failed reading zip archive")
        register_torch_model(TorchModelConfig(name="clf", model_url="clf.pt"), cache)

        with pytest.raises(ModelLoadError, match="valid torchscript archive"):
            await load_model("clf", cache=cache, memory_guard=relaxed_guard)

    @pytest.mark.asyncio
    async def test_other_runtime_errors_pass_through(self, fake_torch, relaxed_guard):
        """Test other runtime errors keep their message and cause."""
        cache = ResourceCache()
        cause = RuntimeError("CUDA out of memory")
        fake_torch.load_error = cause
        register_torch_model(TorchModelConfig(name="clf", model_url="clf.pt"), cache)

        with pytest.raises(ModelLoadError, match="CUDA out of memory") as exc_info:
            await load_model("clf", cache=cache, memory_guard=relaxed_guard)

        assert exc_info.value.__cause__ is cause

    @pytest.mark.asyncio
    async def test_state_dict_is_rejected(self, fake_torch, relaxed_guard):
        """Test a bare state dict is rejected."""
        cache = ResourceCache()
        fake_torch.pickled_object = {"weight": [0.1]}
        register_torch_model(
            TorchModelConfig(name="clf", model_url="clf.pkl", model_format="pickle"), cache
        )

        with pytest.raises(ModelLoadError, match="state dict"):
            await load_model("clf", cache=cache, memory_guard=relaxed_guard)

    @pytest.mark.asyncio
    async def test_unload_frees_accelerator_memory(self, fake_torch, relaxed_guard):
        """Test unloading empties the accelerator cache."""
        cache = ResourceCache()
        fake_torch.cuda_available = True
        register_torch_model(TorchModelConfig(name="clf", model_url="clf.pt"), cache)
        await load_model("clf", cache=cache, memory_guard=relaxed_guard)

        assert unload_torch_model("clf", cache) is True
        assert fake_torch.empty_cache_calls == 1
        assert cache.status("clf") is ResourceStatus.IDLE

        assert unload_torch_model("clf", cache) is False
        assert fake_torch.empty_cache_calls == 1


class TestConfig:
    """Tests for TorchModelConfig validation."""

    def test_rejects_non_positive_shape(self):
        """Test non-positive input dimensions are rejected."""
        with pytest.raises(ValueError):
            TorchModelConfig(name="clf", model_url="clf.pt", input_shape=[1, 0])

    def test_rejects_unknown_format(self):
        """Test an unknown model format is rejected."""
        with pytest.raises(ValueError):
            TorchModelConfig(name="clf", model_url="clf.pt", model_format="onnx")

    def test_clear_memory_without_torch(self, monkeypatch):
        """Test clearing memory works without torch."""
        monkeypatch.setitem(sys.modules, "torch", None)
        clear_torch_memory()


class TestModelPaths:
    """Tests for resolving model locations."""

    def test_resolve_plain_path(self):
        """Test a plain path is used as is."""
        assert torch_adapter._resolve_model_path("a/b.pt") == Path("a/b.pt")

    def test_resolve_file_url(self):
        """Test a file:// URL resolves to its unquoted local path."""
        assert torch_adapter._resolve_model_path("file:///srv/models/my%20model.pt") == Path(
            "/srv/models/my model.pt"
        )

    def test_download_once_per_url(self, fake_torch, tmp_path):
        """Test each URL is downloaded once and reused afterwards."""
        fake_torch.hub_dir = str(tmp_path)
        url = "https://example.com/v1/model.pt"

        first = torch_adapter._resolve_model_path(url)
        second = torch_adapter._resolve_model_path(url)

        assert first == second
        assert first.exists()
        assert first.name == "model.pt"
        assert fake_torch.downloads == [url]

    def test_same_file_name_from_different_urls(self, fake_torch, tmp_path):
        """Test URLs sharing a file name are stored and downloaded separately."""
        fake_torch.hub_dir = str(tmp_path)

        v1 = torch_adapter._resolve_model_path("https://example.com/v1/model.pt")
        v2 = torch_adapter._resolve_model_path("https://example.com/v2/model.pt")

        assert v1 != v2
        assert v1.name == v2.name == "model.pt"
        assert fake_torch.downloads == [
            "https://example.com/v1/model.pt",
            "https://example.com/v2/model.pt",
        ]

    @pytest.mark.asyncio
    async def test_load_model_from_url(self, fake_torch, tmp_path, relaxed_guard):
        """Test a model registered by URL is downloaded and loaded from the local copy."""
        fake_torch.hub_dir = str(tmp_path)
        cache = ResourceCache()
        url = "http://example.com/models/clf.pt"
        register_torch_model(TorchModelConfig(name="clf", model_url=url), cache)

        await load_model("clf", cache=cache, memory_guard=relaxed_guard)

        assert fake_torch.downloads == [url]
        assert fake_torch.loaded_paths == [str(torch_adapter._resolve_model_path(url))]
