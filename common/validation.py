"""Validation primitives for plugin APIs."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, TypeVar

import pydantic
from pydantic import BaseModel
from werkzeug.datastructures import FileStorage

from .io import stream_size


class ValidationError(ValueError):
    """Raised when validation fails."""

    def __init__(self, message: str, *, details: Any | None = None):
        super().__init__(message)
        self.details = details


class SchemaModel(BaseModel):
    """Strict base model for request/response validation."""

    model_config = pydantic.ConfigDict(extra="forbid", str_strip_whitespace=True)


TModel = TypeVar("TModel", bound=SchemaModel)


def parse_model(model: type[TModel], payload: Mapping[str, Any] | None) -> TModel:
    payload = payload or {}
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            "Invalid request payload",
            details=exc.errors(include_url=False, include_context=False),
        ) from exc


def enforce_size(file: FileStorage, max_bytes: int) -> int:
    """Return the upload size, raising when it exceeds ``max_bytes``."""

    size = stream_size(file.stream)
    if size > max_bytes:
        raise ValidationError(
            f"File exceeds {max_bytes // (1024 * 1024)} MB limit",
            details={"size": size, "limit": max_bytes},
        )
    return size


_SIGNATURES: dict[str, tuple[bytes, ...]] = {
    "image/png": (b"\x89PNG\r\n\x1a\n",),
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/tiff": (b"II*\x00", b"MM\x00*"),
    "image/bmp": (b"BM",),
}


def _matches_signature(sample: bytes, allowed: set[str]) -> bool:
    for mime in allowed:
        if mime == "image/webp":
            if sample[:4] == b"RIFF" and sample[8:12] == b"WEBP":
                return True
            continue
        signatures = _SIGNATURES.get(mime, ())
        if any(sample.startswith(signature) for signature in signatures):
            return True
    return False


def validate_mime(files: Iterable[FileStorage], allowed: set[str]) -> None:
    for file in files:
        stream = file.stream
        try:
            current = stream.tell()
        except (AttributeError, OSError):
            current = None

        try:
            stream.seek(0)
        except (AttributeError, OSError):
            pass

        sample = stream.read(1024)

        try:
            stream.seek(current or 0)
        except (AttributeError, OSError):
            pass

        if not _matches_signature(sample or b"", allowed):
            raise ValidationError("Unsupported or invalid file signature")


__all__ = [
    "ValidationError",
    "SchemaModel",
    "parse_model",
    "enforce_size",
    "validate_mime",
]
