"""Per-call execution: ingest, tile, infer, stitch and encode."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import numpy as np

from common.logging import get_logger

from .definition import ModelDefinition
from .errors import SuperResolutionInputError, UpscaleCancelledError
from .inputs import (
    EnvironmentCapabilities,
    LoadedImage,
    check_environment,
    classify_input,
    load_image_tensor,
)
from .model import ModelHandle
from .outputs import OutputKind, encode_output, normalize_output_format
from .tensors import TensorHandle, TensorTracker
from .tiling import TilePlan, TileStitcher, plan_tiles

logger = get_logger("sr_server.super_resolution.execution")

PIXEL_RANGE = (0.0, 255.0)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    TILING = "tiling"
    INFERRING = "inferring"
    STITCHING = "stitching"
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def settled(self) -> bool:
        return self in {ExecutionStatus.SUCCESS, ExecutionStatus.CANCELLED, ExecutionStatus.FAILED}


class CancellationToken:
    """Flag flipped by ``abort()`` and polled between tiles."""

    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


@dataclass(frozen=True)
class TileProgress:
    index: int
    total: int
    row: int
    col: int
    slice: Any = None


ProgressCallback = Callable[[float, TileProgress], Any]


@dataclass(frozen=True)
class ExecuteOptions:
    patch_size: int | None = None
    padding: int | None = None
    output: OutputKind = OutputKind.BASE64
    output_format: str = "png"
    progress: ProgressCallback | None = None
    progress_output: OutputKind | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "output", OutputKind.parse(self.output))
        if self.progress_output is not None:
            object.__setattr__(self, "progress_output", OutputKind.parse(self.progress_output))
        object.__setattr__(self, "output_format", normalize_output_format(self.output_format))
        if self.patch_size is not None and int(self.patch_size) < 1:
            raise SuperResolutionInputError("patch_size must be a positive integer")
        if self.padding is not None and int(self.padding) < 0:
            raise SuperResolutionInputError("padding must not be negative")


@dataclass(eq=False)
class ExecutionState:
    token: CancellationToken = field(default_factory=CancellationToken)
    status: ExecutionStatus = ExecutionStatus.PENDING
    plan: TilePlan | None = None
    tiles_done: int = 0
    error: BaseException | None = None
    settled: asyncio.Event = field(default_factory=asyncio.Event)


def rescale(array: np.ndarray, source: tuple[float, float], target: tuple[float, float]) -> np.ndarray:
    if tuple(source) == tuple(target):
        return array
    src_low, src_high = source
    dst_low, dst_high = target
    factor = (dst_high - dst_low) / (src_high - src_low)
    return ((array - src_low) * factor + dst_low).astype(np.float32)


class ExecutionController:
    """Drives one ``execute`` call to settlement.

    The cancellation token is only consulted before each tile is submitted,
    so an in-progress inference always runs to completion.
    """

    def __init__(
        self,
        model: Awaitable[ModelHandle],
        image: Any,
        options: ExecuteOptions,
        *,
        tracker: TensorTracker,
        capabilities: EnvironmentCapabilities,
        state: ExecutionState | None = None,
    ):
        self._model = model
        self._image = image
        self.options = options
        self.tracker = tracker
        self.capabilities = capabilities
        self.state = state or ExecutionState()

    def _check_cancelled(self) -> None:
        if self.state.token.cancelled:
            raise UpscaleCancelledError("Upscale was aborted")

    def _finalize(
        self, handle: TensorHandle, definition: ModelDefinition, was_3d: bool
    ) -> TensorHandle:
        array = rescale(handle.array, definition.output_range, PIXEL_RANGE)
        array = np.clip(array, *PIXEL_RANGE).astype(np.float32, copy=False)
        finished = self.tracker.wrap(np.ascontiguousarray(array))
        if not was_3d:
            return finished
        try:
            return self.tracker.squeeze(finished)
        finally:
            finished.dispose()

    async def _report(
        self,
        index: int,
        plan: TilePlan,
        stitcher: TileStitcher,
        definition: ModelDefinition,
        loaded: LoadedImage,
    ) -> None:
        callback = self.options.progress
        if callback is None:
            return
        tile = plan.tiles[index]
        slice_value = None
        if self.options.progress_output is not None:
            core = stitcher.core_of(index)
            try:
                finished = self._finalize(core, definition, loaded.was_3d)
            finally:
                core.dispose()
            if self.options.progress_output is OutputKind.TENSOR:
                slice_value = finished
            else:
                try:
                    slice_value = encode_output(
                        finished, self.options.progress_output, self.options.output_format
                    )
                finally:
                    finished.dispose()
        info = TileProgress(
            index=index, total=len(plan), row=tile.row, col=tile.col, slice=slice_value
        )
        try:
            result = callback((index + 1) / len(plan), info)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Progress callback raised; continuing")

    async def run(self) -> Any:
        state = self.state
        options = self.options
        owned: list[TensorHandle] = []
        stitcher: TileStitcher | None = None
        result: TensorHandle | None = None
        keep_result = False
        try:
            image = classify_input(self._image)
            check_environment(image, options.output, options.progress_output, self.capabilities)
            # the load is shared; cancelling this call must not cancel it
            handle = await asyncio.shield(self._model)
            definition = handle.definition

            state.status = ExecutionStatus.TILING
            loaded = load_image_tensor(image, self.tracker)
            owned.append(loaded.tensor)
            patch_size = options.patch_size if options.patch_size is not None else definition.patch_size
            padding = options.padding if options.padding is not None else definition.padding
            plan = plan_tiles(loaded.width, loaded.height, patch_size, padding)
            state.plan = plan

            prepared = loaded.tensor
            scaled = rescale(prepared.array, PIXEL_RANGE, definition.input_range)
            if scaled is not prepared.array:
                prepared = self.tracker.wrap(scaled)
                owned.append(prepared)

            stitcher = TileStitcher(plan, handle.scale, self.tracker)
            for index, tile in enumerate(plan.tiles):
                self._check_cancelled()
                state.status = ExecutionStatus.INFERRING
                tile_input = self.tracker.crop(prepared, tile.top, tile.bottom, tile.left, tile.right)
                try:
                    raw = await handle.predict(tile_input.array)
                finally:
                    tile_input.dispose()
                stitcher.add(index, self.tracker.wrap(raw))
                state.tiles_done = index + 1
                logger.debug("Tile %d/%d complete", index + 1, len(plan))
                await self._report(index, plan, stitcher, definition, loaded)

            state.status = ExecutionStatus.STITCHING
            stitched = stitcher.finish()
            owned.append(stitched)
            result = self._finalize(stitched, definition, loaded.was_3d)
            output = encode_output(result, options.output, options.output_format)
            keep_result = options.output is OutputKind.TENSOR
            state.status = ExecutionStatus.SUCCESS
            return output
        except (UpscaleCancelledError, asyncio.CancelledError) as exc:
            state.status = ExecutionStatus.CANCELLED
            state.error = exc
            logger.info("Upscale cancelled after %d tile(s)", state.tiles_done)
            raise
        except BaseException as exc:
            state.status = ExecutionStatus.FAILED
            state.error = exc
            raise
        finally:
            for tensor in owned:
                tensor.dispose()
            if stitcher is not None:
                stitcher.dispose()
            if result is not None and not keep_result:
                result.dispose()
            state.settled.set()


__all__ = [
    "CancellationToken",
    "ExecuteOptions",
    "ExecutionController",
    "ExecutionState",
    "ExecutionStatus",
    "ProgressCallback",
    "TileProgress",
    "rescale",
]
