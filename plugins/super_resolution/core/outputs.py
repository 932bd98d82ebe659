"""Output encoding for upscaled tensors."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import Enum
from io import BytesIO
from typing import Any

import numpy as np
from PIL import Image

from .errors import SuperResolutionInputError
from .tensors import TensorHandle


class OutputKind(str, Enum):
    TENSOR = "tensor"
    BASE64 = "base64"
    BYTES = "bytes"

    @classmethod
    def parse(cls, value: "OutputKind | str") -> "OutputKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as exc:
            raise SuperResolutionInputError(
                "Output must be one of tensor, base64 or bytes"
            ) from exc


@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    width: int
    height: int
    output_format: str

    @property
    def mimetype(self) -> str:
        return "image/png" if self.output_format == "png" else "image/jpeg"


def normalize_output_format(value: str | None) -> str:
    normalized = (value or "png").lower()
    if normalized in {"jpg", "jpeg"}:
        return "jpg"
    if normalized == "png":
        return "png"
    raise SuperResolutionInputError("Output format must be png or jpg")


def tensor_to_image(handle: TensorHandle) -> Image.Image:
    array = handle.array
    if array.ndim == 4:
        if array.shape[0] != 1:
            raise SuperResolutionInputError(
                "Only single-image batches can be encoded as images"
            )
        array = array[0]
    if array.ndim != 3:
        raise SuperResolutionInputError(
            f"Cannot encode a tensor of rank {array.ndim} as an image"
        )
    pixels = np.clip(np.rint(array), 0, 255).astype(np.uint8)
    channels = pixels.shape[2]
    if channels == 1:
        return Image.fromarray(pixels[:, :, 0])
    if channels in (3, 4):
        return Image.fromarray(pixels)
    raise SuperResolutionInputError(f"Cannot encode {channels} channels as an image")


def encode_image(handle: TensorHandle, output_format: str = "png") -> EncodedImage:
    fmt = normalize_output_format(output_format)
    image = tensor_to_image(handle)
    buffer = BytesIO()
    if fmt == "jpg":
        image.convert("RGB").save(buffer, format="JPEG", quality=95)
    else:
        image.save(buffer, format="PNG")
    return EncodedImage(
        data=buffer.getvalue(),
        width=image.width,
        height=image.height,
        output_format=fmt,
    )


def encode_output(
    handle: TensorHandle, kind: OutputKind | str, output_format: str = "png"
) -> Any:
    """Convert ``handle`` into the requested representation.

    ``tensor`` hands the handle itself to the caller. The image forms copy
    the pixels out and leave ``handle`` for the caller to dispose.
    """

    kind = OutputKind.parse(kind)
    if kind is OutputKind.TENSOR:
        return handle
    encoded = encode_image(handle, output_format)
    if kind is OutputKind.BYTES:
        return encoded
    payload = base64.b64encode(encoded.data).decode("ascii")
    return f"data:{encoded.mimetype};base64,{payload}"


__all__ = [
    "EncodedImage",
    "OutputKind",
    "encode_image",
    "encode_output",
    "normalize_output_format",
    "tensor_to_image",
]
