"""Input normalization and environment capability checks."""

from __future__ import annotations

import base64
import binascii
import urllib.request
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any, Union

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import EnvironmentCapabilityError, SuperResolutionInputError
from .outputs import OutputKind
from .tensors import TensorHandle, TensorTracker

URL_TIMEOUT_S = 30.0


@dataclass(frozen=True, eq=False)
class TensorInput:
    tensor: TensorHandle


@dataclass(frozen=True)
class LocatorInput:
    """A filesystem path, ``http(s)`` URL or ``data:`` URL."""

    locator: str


@dataclass(frozen=True, eq=False)
class PixelInput:
    pixels: Image.Image | np.ndarray


ImageInput = Union[TensorInput, LocatorInput, PixelInput]


@dataclass(frozen=True, eq=False)
class LoadedImage:
    """A 4-D NHWC float32 tensor owned by the current execution."""

    tensor: TensorHandle
    was_3d: bool

    @property
    def height(self) -> int:
        return self.tensor.shape[1]

    @property
    def width(self) -> int:
        return self.tensor.shape[2]


def classify_input(value: Any) -> ImageInput:
    """Tag a caller-supplied image with the variant that will normalize it."""

    if isinstance(value, (TensorInput, LocatorInput, PixelInput)):
        return value
    if isinstance(value, TensorHandle):
        return TensorInput(value)
    if isinstance(value, (str, Path)):
        return LocatorInput(str(value))
    if isinstance(value, (bytes, bytearray)):
        return PixelInput(decode_image(bytes(value)))
    if isinstance(value, (Image.Image, np.ndarray)):
        return PixelInput(value)
    raise SuperResolutionInputError(
        f"Unsupported input type {type(value).__name__}; expected a tensor, "
        "a path or URL string, a PIL image or a numpy array"
    )


def decode_image(data: bytes) -> Image.Image:
    try:
        image = Image.open(BytesIO(data))
        image.load()
        return ImageOps.exif_transpose(image)
    except (UnidentifiedImageError, OSError) as exc:
        raise SuperResolutionInputError(
            "Unsupported or corrupted image stream"
        ) from exc


def prepare_rgb(image: Image.Image) -> Image.Image:
    if image.mode in {"RGBA", "LA"}:
        background = Image.new("RGB", image.size, (255, 255, 255))
        alpha = image.split()[-1]
        background.paste(image.convert("RGBA"), mask=alpha)
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def _read_locator(locator: str) -> bytes:
    if locator.startswith("data:"):
        header, _, payload = locator.partition(",")
        if ";base64" not in header:
            raise SuperResolutionInputError("Only base64 data URLs are supported")
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SuperResolutionInputError("Invalid base64 data URL") from exc
    if locator.startswith(("http://", "https://")):
        try:
            with urllib.request.urlopen(locator, timeout=URL_TIMEOUT_S) as response:
                return response.read()
        except OSError as exc:
            raise SuperResolutionInputError(f"Failed to load image from {locator}") from exc
    path = Path(locator).expanduser()
    try:
        return path.read_bytes()
    except OSError as exc:
        raise SuperResolutionInputError(f"Failed to load image from {path}") from exc


def _batched(array: np.ndarray, tracker: TensorTracker) -> LoadedImage:
    single = tracker.wrap(array)
    try:
        return LoadedImage(tracker.expand_dims(single), True)
    finally:
        single.dispose()


def _from_tensor(image: TensorInput, tracker: TensorTracker) -> LoadedImage:
    array = image.tensor.array
    if array.ndim == 3:
        return _batched(array.astype(np.float32), tracker)
    if array.ndim == 4:
        return LoadedImage(tracker.wrap(array.astype(np.float32)), False)
    raise SuperResolutionInputError(
        f"Unsupported dimensions for incoming pixels: {array.ndim}. "
        "Only 3 or 4 rank tensors are supported."
    )


def _from_pixels(image: PixelInput, tracker: TensorTracker) -> LoadedImage:
    pixels = image.pixels
    if isinstance(pixels, Image.Image):
        array = np.asarray(prepare_rgb(pixels), dtype=np.float32)
    else:
        array = np.asarray(pixels, dtype=np.float32)
        if array.ndim == 2:
            array = np.repeat(array[:, :, np.newaxis], 3, axis=2)
        elif array.ndim == 4:
            return LoadedImage(tracker.wrap(array), False)
        elif array.ndim != 3:
            raise SuperResolutionInputError(
                f"Unsupported dimensions for incoming pixels: {array.ndim}"
            )
    return _batched(array, tracker)


def _from_locator(image: LocatorInput, tracker: TensorTracker) -> LoadedImage:
    decoded = decode_image(_read_locator(image.locator))
    return _from_pixels(PixelInput(decoded), tracker)


def load_image_tensor(image: ImageInput, tracker: TensorTracker) -> LoadedImage:
    if isinstance(image, TensorInput):
        return _from_tensor(image, tracker)
    if isinstance(image, LocatorInput):
        return _from_locator(image, tracker)
    return _from_pixels(image, tracker)


@dataclass(frozen=True)
class EnvironmentCapabilities:
    string_input: bool = True
    base64_output: bool = True

    @classmethod
    def detect(cls) -> "EnvironmentCapabilities":
        Image.init()
        return cls(string_input=True, base64_output="PNG" in Image.SAVE)


def check_environment(
    image: ImageInput,
    output: OutputKind,
    progress_output: OutputKind | None,
    capabilities: EnvironmentCapabilities,
) -> None:
    """Fail fast when the runtime cannot honour the requested forms."""

    if isinstance(image, LocatorInput) and not capabilities.string_input:
        raise EnvironmentCapabilityError(
            "string_input",
            "Environment does not support a string URL as an input format. "
            "Pass a tensor or pixel source, or enable string_input.",
        )
    if OutputKind.BASE64 in (output, progress_output) and not capabilities.base64_output:
        raise EnvironmentCapabilityError(
            "base64_output",
            "Environment does not support base64 as an output format. "
            "Request tensor output, or enable base64_output.",
        )


__all__ = [
    "EnvironmentCapabilities",
    "ImageInput",
    "LoadedImage",
    "LocatorInput",
    "PixelInput",
    "TensorInput",
    "check_environment",
    "classify_input",
    "decode_image",
    "load_image_tensor",
    "prepare_rgb",
]
