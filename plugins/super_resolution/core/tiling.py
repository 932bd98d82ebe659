"""Tile planning and stitching for patch-wise inference."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from .errors import InferenceError, SuperResolutionInputError
from .tensors import TensorHandle, TensorTracker


@dataclass(frozen=True)
class Tile:
    """One region of the source image.

    ``origin_x``/``origin_y``/``width``/``height`` describe the core region
    written to the output; the ``pad_*`` values extend it on each side with
    real neighbouring pixels that are fed to the model and cropped away
    afterwards.
    """

    origin_x: int
    origin_y: int
    width: int
    height: int
    pad_left: int = 0
    pad_top: int = 0
    pad_right: int = 0
    pad_bottom: int = 0
    row: int = 0
    col: int = 0

    @property
    def left(self) -> int:
        return self.origin_x - self.pad_left

    @property
    def top(self) -> int:
        return self.origin_y - self.pad_top

    @property
    def right(self) -> int:
        return self.origin_x + self.width + self.pad_right

    @property
    def bottom(self) -> int:
        return self.origin_y + self.height + self.pad_bottom

    @property
    def input_width(self) -> int:
        return self.right - self.left

    @property
    def input_height(self) -> int:
        return self.bottom - self.top


@dataclass(frozen=True)
class TilePlan:
    image_width: int
    image_height: int
    patch_size: int | None
    padding: int
    rows: int
    cols: int
    tiles: tuple[Tile, ...]

    def __len__(self) -> int:
        return len(self.tiles)

    def __iter__(self):
        return iter(self.tiles)

    @property
    def is_tiled(self) -> bool:
        return len(self.tiles) > 1


def _whole_image(width: int, height: int) -> TilePlan:
    tile = Tile(origin_x=0, origin_y=0, width=width, height=height)
    return TilePlan(
        image_width=width,
        image_height=height,
        patch_size=None,
        padding=0,
        rows=1,
        cols=1,
        tiles=(tile,),
    )


def plan_tiles(
    width: int, height: int, patch_size: int | None = None, padding: int = 0
) -> TilePlan:
    """Cover a ``width`` x ``height`` image with ``patch_size`` tiles.

    Core regions step across the image in strides of ``patch_size`` and are
    clipped on the last row and column. Padding is clamped at the image
    border, so no synthetic pixels are ever requested.
    """

    if width < 1 or height < 1:
        raise SuperResolutionInputError("Image must be at least 1x1 pixels")
    padding = int(padding or 0)
    if padding < 0:
        raise SuperResolutionInputError("padding must not be negative")
    if patch_size is None:
        return _whole_image(width, height)
    patch_size = int(patch_size)
    if patch_size < 1:
        raise SuperResolutionInputError("patch_size must be a positive integer")
    if patch_size >= width and patch_size >= height:
        return _whole_image(width, height)

    rows = math.ceil(height / patch_size)
    cols = math.ceil(width / patch_size)
    tiles: list[Tile] = []
    for r in range(rows):
        y = r * patch_size
        tile_h = min(patch_size, height - y)
        for c in range(cols):
            x = c * patch_size
            tile_w = min(patch_size, width - x)
            tiles.append(
                Tile(
                    origin_x=x,
                    origin_y=y,
                    width=tile_w,
                    height=tile_h,
                    pad_left=min(padding, x),
                    pad_top=min(padding, y),
                    pad_right=min(padding, width - (x + tile_w)),
                    pad_bottom=min(padding, height - (y + tile_h)),
                    row=r,
                    col=c,
                )
            )
    return TilePlan(
        image_width=width,
        image_height=height,
        patch_size=patch_size,
        padding=padding,
        rows=rows,
        cols=cols,
        tiles=tuple(tiles),
    )


class TileStitcher:
    """Writes the scaled core of each tile output into one output buffer."""

    def __init__(self, plan: TilePlan, scale: int, tracker: TensorTracker):
        self.plan = plan
        self.scale = int(scale)
        self.tracker = tracker
        self._buffer: TensorHandle | None = None
        self._written: set[int] = set()

    def _ensure_buffer(self, output: TensorHandle) -> TensorHandle:
        if self._buffer is None:
            batch, _, _, channels = output.shape
            self._buffer = self.tracker.zeros(
                (
                    batch,
                    self.plan.image_height * self.scale,
                    self.plan.image_width * self.scale,
                    channels,
                ),
                dtype=output.dtype,
            )
        return self._buffer

    def add(self, index: int, output: TensorHandle) -> None:
        """Copy tile ``index``'s core into the buffer and dispose ``output``."""

        try:
            tile = self.plan.tiles[index]
            s = self.scale
            expected = (tile.input_height * s, tile.input_width * s)
            if output.ndim != 4 or output.shape[1:3] != expected:
                raise InferenceError(
                    f"Tile {index} output shape {output.shape} does not match "
                    f"expected spatial size {expected} at scale {s}"
                )
            buffer = self._ensure_buffer(output)
            if output.shape[0] != buffer.shape[0] or output.shape[3] != buffer.shape[3]:
                raise InferenceError(
                    f"Tile {index} output shape {output.shape} is inconsistent "
                    f"with earlier tiles {buffer.shape}"
                )
            top = tile.pad_top * s
            left = tile.pad_left * s
            core = output.array[:, top : top + tile.height * s, left : left + tile.width * s, :]
            y = tile.origin_y * s
            x = tile.origin_x * s
            buffer.array[:, y : y + tile.height * s, x : x + tile.width * s, :] = core
            self._written.add(index)
        finally:
            output.dispose()

    def core_of(self, index: int) -> TensorHandle:
        """Copy of the already stitched, scaled core of tile ``index``."""

        if self._buffer is None or index not in self._written:
            raise InferenceError(f"Tile {index} has not been stitched yet")
        tile = self.plan.tiles[index]
        s = self.scale
        return self.tracker.crop(
            self._buffer,
            tile.origin_y * s,
            (tile.origin_y + tile.height) * s,
            tile.origin_x * s,
            (tile.origin_x + tile.width) * s,
        )

    def finish(self) -> TensorHandle:
        missing = len(self.plan.tiles) - len(self._written)
        if self._buffer is None or missing:
            raise InferenceError(f"Cannot stitch output, {missing} tile(s) missing")
        buffer, self._buffer = self._buffer, None
        return buffer

    def dispose(self) -> None:
        if self._buffer is not None:
            self._buffer.dispose()
            self._buffer = None


def stitch(
    tile_outputs: Sequence[TensorHandle],
    plan: TilePlan,
    scale: int,
    tracker: TensorTracker,
) -> TensorHandle:
    """Reassemble per-tile outputs (in plan order) into one output tensor.

    Every tile output is disposed, whether or not stitching succeeds.
    """

    stitcher = TileStitcher(plan, scale, tracker)
    outputs = list(tile_outputs)
    try:
        if len(outputs) != len(plan.tiles):
            raise InferenceError(
                f"Expected {len(plan.tiles)} tile outputs, received {len(outputs)}"
            )
        for index, output in enumerate(outputs):
            stitcher.add(index, output)
        return stitcher.finish()
    except Exception:
        stitcher.dispose()
        raise
    finally:
        for output in outputs:
            output.dispose()


__all__ = ["Tile", "TilePlan", "TileStitcher", "plan_tiles", "stitch"]
