"""Explicitly disposed numpy tensor handles."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .errors import TensorDisposedError


class TensorHandle:
    """Opaque reference to a numeric buffer with idempotent disposal."""

    __slots__ = ("_array", "_tracker")

    def __init__(self, array: np.ndarray, tracker: "TensorTracker | None" = None):
        self._array: np.ndarray | None = np.asarray(array)
        self._tracker = tracker

    @property
    def array(self) -> np.ndarray:
        if self._array is None:
            raise TensorDisposedError("Tensor has already been disposed")
        return self._array

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.array.shape)

    @property
    def ndim(self) -> int:
        return self.array.ndim

    @property
    def dtype(self) -> np.dtype:
        return self.array.dtype

    @property
    def is_disposed(self) -> bool:
        return self._array is None

    def dispose(self) -> None:
        if self._array is None:
            return
        self._array = None
        if self._tracker is not None:
            self._tracker._released(self)

    def __repr__(self) -> str:
        if self._array is None:
            return "TensorHandle(<disposed>)"
        return f"TensorHandle(shape={self._array.shape}, dtype={self._array.dtype})"


@dataclass(frozen=True)
class TensorStats:
    live: int
    allocated: int
    disposed: int


class TensorTracker:
    """Tensor runtime used by the pipeline.

    Every handle created through the tracker is counted until disposed, so
    callers can assert that a settled execution left nothing behind.
    """

    def __init__(self) -> None:
        self._live: dict[int, TensorHandle] = {}
        self._allocated = 0
        self._disposed = 0

    def wrap(self, array: np.ndarray) -> TensorHandle:
        handle = TensorHandle(array, self)
        self._live[id(handle)] = handle
        self._allocated += 1
        return handle

    def zeros(self, shape: Sequence[int], dtype=np.float32) -> TensorHandle:
        return self.wrap(np.zeros(tuple(shape), dtype=dtype))

    def crop(
        self, handle: TensorHandle, top: int, bottom: int, left: int, right: int
    ) -> TensorHandle:
        """Copy the ``[top:bottom, left:right]`` window of an NHWC tensor."""

        array = handle.array
        return self.wrap(np.ascontiguousarray(array[:, top:bottom, left:right, :]))

    def expand_dims(self, handle: TensorHandle) -> TensorHandle:
        """Add a leading batch axis; HWC becomes NHWC."""

        return self.wrap(handle.array[np.newaxis, ...])

    def squeeze(self, handle: TensorHandle) -> TensorHandle:
        if handle.ndim != 4 or handle.shape[0] != 1:
            raise ValueError(f"Cannot squeeze batch axis of shape {handle.shape}")
        return self.wrap(handle.array[0])

    def _released(self, handle: TensorHandle) -> None:
        key = id(handle)
        if self._live.get(key) is handle:
            del self._live[key]
            self._disposed += 1

    def stats(self) -> TensorStats:
        return TensorStats(
            live=len(self._live),
            allocated=self._allocated,
            disposed=self._disposed,
        )


__all__ = ["TensorHandle", "TensorStats", "TensorTracker"]
