"""Exception hierarchy for the super-resolution pipeline."""

from __future__ import annotations


class SuperResolutionError(RuntimeError):
    """Base error for super-resolution failures."""


class ModelLoadError(SuperResolutionError):
    """Raised when model weights cannot be loaded."""


class SuperResolutionUnavailableError(ModelLoadError):
    """Raised when torch dependencies are missing."""


class SuperResolutionInputError(SuperResolutionError, ValueError):
    """Raised when the input image or options are invalid."""


class EnvironmentCapabilityError(SuperResolutionError):
    """Raised when the runtime cannot handle a requested input or output form."""

    def __init__(self, capability: str, message: str):
        super().__init__(message)
        self.capability = capability


class InferenceError(SuperResolutionError):
    """Raised when a tile fails inside the model."""


class UpscaleCancelledError(SuperResolutionError):
    """Raised when an execution settles because ``abort()`` was called."""


class TeardownError(SuperResolutionError):
    """Raised when a model teardown hook fails during disposal."""


class WarmupError(SuperResolutionError):
    """Raised when a warmup pass cannot run."""


class UpscalerDisposedError(SuperResolutionError):
    """Raised when an upscaler or model handle is used after disposal."""


class TensorDisposedError(SuperResolutionError):
    """Raised when a tensor buffer is read after disposal."""


__all__ = [
    "SuperResolutionError",
    "ModelLoadError",
    "SuperResolutionUnavailableError",
    "SuperResolutionInputError",
    "EnvironmentCapabilityError",
    "InferenceError",
    "UpscaleCancelledError",
    "TeardownError",
    "WarmupError",
    "UpscalerDisposedError",
    "TensorDisposedError",
]
