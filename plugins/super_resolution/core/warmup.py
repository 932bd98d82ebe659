"""Synthetic warmup passes that force lazy model initialization."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Iterable, Mapping, Union

from common.logging import get_logger

from .errors import SuperResolutionError, SuperResolutionInputError, WarmupError
from .model import ModelHandle
from .tensors import TensorTracker

logger = get_logger("sr_server.super_resolution.warmup")


@dataclass(frozen=True)
class WarmupSize:
    patch_size: int
    padding: int = 0

    def __post_init__(self) -> None:
        if self.patch_size < 1:
            raise SuperResolutionInputError("Warmup patch_size must be a positive integer")
        if self.padding < 0:
            raise SuperResolutionInputError("Warmup padding must not be negative")

    @property
    def edge(self) -> int:
        return self.patch_size + 2 * self.padding


WarmupSpec = Union[int, "tuple[int, int]", Mapping[str, Any], WarmupSize, Iterable[Any]]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def normalize_warmup_sizes(spec: WarmupSpec | None) -> list[WarmupSize]:
    """Flatten warmup sizes into ``WarmupSize`` records.

    * ``n`` -> ``WarmupSize(n, 0)``
    * ``(a, b)`` -> ``WarmupSize(a, 0)``; only the first edge is used.
    * ``{"patch_size": n, "padding": p}`` -> ``WarmupSize(n, p)``
    * lists (and tuples of any other length) are sequences of the above.
    """

    if spec is None:
        return []
    if isinstance(spec, WarmupSize):
        return [spec]
    if _is_int(spec):
        return [WarmupSize(patch_size=spec)]
    if isinstance(spec, Mapping):
        try:
            return [
                WarmupSize(
                    patch_size=int(spec["patch_size"]),
                    padding=int(spec.get("padding", 0) or 0),
                )
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise SuperResolutionInputError(f"Invalid warmup size {spec!r}") from exc
    if isinstance(spec, tuple) and len(spec) == 2 and all(_is_int(v) for v in spec):
        first, second = spec
        if first != second:
            logger.warning(
                "Warmup pair %r: only the first value (%d) is used as the patch size",
                spec,
                first,
            )
        return [WarmupSize(patch_size=first)]
    if isinstance(spec, (list, tuple)):
        sizes: list[WarmupSize] = []
        for item in spec:
            sizes.extend(normalize_warmup_sizes(item))
        return sizes
    raise SuperResolutionInputError(f"Invalid warmup size {spec!r}")


async def warmup(
    model: ModelHandle | Awaitable[ModelHandle],
    sizes: WarmupSpec | None,
    *,
    tracker: TensorTracker,
    token: Any = None,
) -> int:
    """Run one zero-filled inference per warmup size; returns the pass count.

    ``token`` is any object with a ``cancelled`` attribute; it is checked
    before each pass.
    """

    normalized = normalize_warmup_sizes(sizes)
    handle = await asyncio.shield(model) if inspect.isawaitable(model) else model
    channels = handle.definition.channels
    completed = 0
    for size in normalized:
        if token is not None and token.cancelled:
            logger.info("Warmup aborted after %d pass(es)", completed)
            break
        dummy = tracker.zeros((1, size.edge, size.edge, channels))
        try:
            output = await handle.predict(dummy.array)
        except SuperResolutionError as exc:
            raise WarmupError(
                f"Warmup at {size.patch_size}px (padding {size.padding}) failed: {exc}"
            ) from exc
        finally:
            dummy.dispose()
        tracker.wrap(output).dispose()
        completed += 1
        logger.debug("Warmup pass %dx%d complete", size.edge, size.edge)
    return completed


__all__ = ["WarmupSize", "WarmupSpec", "normalize_warmup_sizes", "warmup"]
