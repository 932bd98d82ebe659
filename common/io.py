"""Common IO helpers for plugins."""

from __future__ import annotations

from io import BytesIO
from typing import IO


def buffer_from_bytes(data: bytes) -> BytesIO:
    buffer = BytesIO()
    buffer.write(data)
    buffer.seek(0)
    return buffer


def stream_size(stream: IO[bytes]) -> int:
    """Return the byte length of a seekable stream without moving its cursor."""

    try:
        current = stream.tell()
    except (AttributeError, OSError):
        current = None
    try:
        stream.seek(0, 2)
        size = stream.tell()
    finally:
        try:
            stream.seek(current or 0)
        except (AttributeError, OSError):
            pass
    return size


def read_stream(stream: IO[bytes]) -> bytes:
    """Read a stream from the start, whatever its current position."""

    try:
        stream.seek(0)
    except (AttributeError, OSError):
        pass
    return stream.read()


__all__ = ["buffer_from_bytes", "stream_size", "read_stream"]
