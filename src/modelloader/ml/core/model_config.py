"""Pydantic models describing how a model is registered and loaded."""

from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ModelType = Literal["torch", "onnx", "custom"]
TorchModelFormat = Literal["torchscript", "pickle"]


class ModelConfig(BaseModel):
    """Registration record for a model.

    Attributes:
        name: Unique cache key of the model.
        model_url: Location of the model file (local path, file:// or http(s):// URL).
        model_type: Framework the model belongs to.
        load_fn: Zero-argument async callable producing the model.
        init_options: Free-form options passed through to adapters.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, protected_namespaces=())

    name: str = Field(min_length=1)
    model_url: Optional[str] = None
    model_type: ModelType = "custom"
    load_fn: Optional[Callable[[], Awaitable[Any]]] = Field(default=None, exclude=True)
    init_options: dict[str, Any] = Field(default_factory=dict)


class TorchModelConfig(ModelConfig):
    """Configuration of a PyTorch model file.

    Attributes:
        model_format: ``torchscript`` archives are loaded with ``torch.jit.load``,
            ``pickle`` files with ``torch.load``.
        input_shape: Shape of the zeros tensor used for warm-up.
        warmup: Run one forward pass after loading. Requires ``input_shape``.
    """

    model_type: Literal["torch"] = "torch"
    model_url: str
    model_format: TorchModelFormat = "torchscript"
    input_shape: Optional[list[int]] = None
    warmup: bool = False

    @field_validator("input_shape")
    @classmethod
    def check_input_shape(cls, value: Optional[list[int]]) -> Optional[list[int]]:
        if value is not None and any(dim <= 0 for dim in value):
            raise ValueError("input_shape dimensions must be positive")
        return value
