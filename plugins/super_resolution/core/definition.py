"""Model descriptors consumed by the loader and the upscaler."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

Teardown = Callable[[], "Awaitable[None] | None"]


class ModelType(str, Enum):
    LAYERS = "layers"
    GRAPH = "graph"
    OTHER = "other"

    @classmethod
    def parse(cls, value: "ModelType | str") -> "ModelType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as exc:
            raise ValueError(f"Unknown model type '{value}'") from exc


@dataclass(frozen=True)
class ModelDefinition:
    """Immutable description of a loadable model.

    ``input_range`` and ``output_range`` describe the values the model
    consumes and produces; pixels are mapped from ``0..255`` into
    ``input_range`` before inference and back afterwards.
    """

    path: str
    scale: int
    model_type: ModelType = ModelType.LAYERS
    architecture: str | None = None
    meta: Mapping[str, Any] = field(default_factory=dict)
    teardown: Teardown | None = None
    patch_size: int | None = None
    padding: int = 0
    channels: int = 3
    input_range: tuple[float, float] = (0.0, 255.0)
    output_range: tuple[float, float] = (0.0, 255.0)

    def __post_init__(self) -> None:
        if not self.path:
            raise ValueError("Model definition requires a path")
        object.__setattr__(self, "model_type", ModelType.parse(self.model_type))
        if int(self.scale) != self.scale or self.scale < 1:
            raise ValueError("Model scale must be a positive integer")
        if self.patch_size is not None and self.patch_size < 1:
            raise ValueError("patch_size must be a positive integer")
        if self.padding < 0:
            raise ValueError("padding must not be negative")
        if self.channels < 1:
            raise ValueError("channels must be a positive integer")
        for label, bounds in (("input_range", self.input_range), ("output_range", self.output_range)):
            low, high = bounds
            if not low < high:
                raise ValueError(f"{label} must be an increasing (low, high) pair")

    @property
    def locator(self) -> str:
        """Normalized key identifying the loaded artefact."""

        return f"{self.model_type.value}:{normalize_locator(self.path)}"


def normalize_locator(path: str) -> str:
    value = str(path).strip()
    if "://" in value:
        return value
    return str(Path(value).expanduser().resolve())


__all__ = ["ModelType", "ModelDefinition", "Teardown", "normalize_locator"]
