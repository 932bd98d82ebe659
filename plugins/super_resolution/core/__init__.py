"""Super resolution core functionality."""

from .definition import ModelDefinition, ModelType
from .errors import (
    EnvironmentCapabilityError,
    InferenceError,
    ModelLoadError,
    SuperResolutionError,
    SuperResolutionInputError,
    SuperResolutionUnavailableError,
    TeardownError,
    TensorDisposedError,
    UpscaleCancelledError,
    UpscalerDisposedError,
    WarmupError,
)
from .execution import (
    CancellationToken,
    ExecuteOptions,
    ExecutionController,
    ExecutionState,
    ExecutionStatus,
    TileProgress,
)
from .inputs import (
    EnvironmentCapabilities,
    LocatorInput,
    PixelInput,
    TensorInput,
    classify_input,
    decode_image,
)
from .loaders import TorchModelLoader, import_error, is_available, select_device
from .model import ModelCache, ModelHandle, ModelLoader
from .outputs import EncodedImage, OutputKind, encode_output, normalize_output_format
from .service import UpscalerService
from .settings import ModelSpec, SuperResolutionSettings, load_settings
from .tensors import TensorHandle, TensorTracker
from .tiling import Tile, TilePlan, TileStitcher, plan_tiles, stitch
from .upscaler import AbortRegistry, Upscaler
from .warmup import WarmupSize, normalize_warmup_sizes, warmup

__all__ = [
    "AbortRegistry",
    "CancellationToken",
    "EncodedImage",
    "EnvironmentCapabilities",
    "EnvironmentCapabilityError",
    "ExecuteOptions",
    "ExecutionController",
    "ExecutionState",
    "ExecutionStatus",
    "InferenceError",
    "LocatorInput",
    "ModelCache",
    "ModelDefinition",
    "ModelHandle",
    "ModelLoadError",
    "ModelLoader",
    "ModelSpec",
    "ModelType",
    "OutputKind",
    "PixelInput",
    "SuperResolutionError",
    "SuperResolutionInputError",
    "SuperResolutionSettings",
    "SuperResolutionUnavailableError",
    "TeardownError",
    "TensorDisposedError",
    "TensorHandle",
    "TensorInput",
    "TensorTracker",
    "Tile",
    "TilePlan",
    "TileProgress",
    "TileStitcher",
    "TorchModelLoader",
    "UpscaleCancelledError",
    "Upscaler",
    "UpscalerDisposedError",
    "UpscalerService",
    "WarmupError",
    "WarmupSize",
    "classify_input",
    "decode_image",
    "encode_output",
    "import_error",
    "is_available",
    "load_settings",
    "normalize_output_format",
    "normalize_warmup_sizes",
    "plan_tiles",
    "select_device",
    "stitch",
    "warmup",
]
