"""Exceptions raised by the model loading adapters."""


class ModelLoaderError(Exception):
    """Base class for adapter errors."""


class ModelLoadError(ModelLoaderError):
    """A registered model could not be loaded.

    Raised by :func:`modelloader.ml.core.model_registry.load_model` with the
    underlying failure chained as ``__cause__``.
    """

    def __init__(self, name: str, message: str):
        self.name = name
        super().__init__(f"Failed to load model '{name}': {message}")


class UnsupportedModelFormatError(ModelLoaderError, ValueError):
    """The configured model format is not understood by the adapter."""


class ModelFileError(ModelLoaderError):
    """The model file is missing, unreadable or not a valid model."""

    def __init__(self, model_url: str, message: str):
        self.model_url = model_url
        super().__init__(message)


class BackendUnavailableError(ModelLoaderError, RuntimeError):
    """No compute backend could be initialized."""
