"""Upscaler facade: model lifecycle, in-flight executions and disposal."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterator

from common.logging import get_logger

from .definition import ModelDefinition
from .errors import UpscalerDisposedError
from .execution import (
    CancellationToken,
    ExecuteOptions,
    ExecutionController,
    ExecutionState,
    ProgressCallback,
)
from .inputs import EnvironmentCapabilities
from .model import ModelCache, ModelHandle, ModelLoader
from .outputs import OutputKind
from .tensors import TensorStats, TensorTracker
from .warmup import WarmupSpec, normalize_warmup_sizes, warmup as run_warmup

logger = get_logger("sr_server.super_resolution.upscaler")


class AbortRegistry:
    """Live executions of one upscaler.

    Only ever added to, flipped or removed from on the event loop thread;
    ``abort_all`` walks a snapshot so concurrent settlement cannot skip an
    entry.
    """

    def __init__(self) -> None:
        self._states: set[ExecutionState] = set()

    def add(self, state: ExecutionState) -> None:
        self._states.add(state)

    def discard(self, state: ExecutionState) -> None:
        self._states.discard(state)

    def abort_all(self) -> int:
        states = list(self._states)
        for state in states:
            state.token.cancel()
        return len(states)

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[ExecutionState]:
        return iter(list(self._states))


class Upscaler:
    """Runs a loaded super-resolution model over images.

    Construct inside a running event loop: loading starts immediately as a
    background task and ``ready`` resolves to the model handle (or raises the
    load failure). Configured warmup sizes run once loading completes;
    warmup failures go to ``on_warmup_error`` or the log.
    """

    def __init__(
        self,
        definition: ModelDefinition,
        *,
        loader: ModelLoader,
        cache: ModelCache | None = None,
        warmup_sizes: WarmupSpec | None = None,
        capabilities: EnvironmentCapabilities | None = None,
        on_warmup_error: Callable[[BaseException], Any] | None = None,
    ):
        if not isinstance(definition, ModelDefinition):
            raise TypeError("definition must be a ModelDefinition")
        normalize_warmup_sizes(warmup_sizes)
        loop = asyncio.get_running_loop()

        self.definition = definition
        self.capabilities = capabilities or EnvironmentCapabilities.detect()
        self.tracker = TensorTracker()
        self._loader = loader
        self._cache = cache
        self._on_warmup_error = on_warmup_error
        self._registry = AbortRegistry()
        self._warmups: dict[asyncio.Task, CancellationToken] = {}
        self._disposal: asyncio.Task | None = None
        self._disposed = False

        self._ready: asyncio.Task = loop.create_task(
            ModelHandle.load(definition, loader, cache=cache)
        )
        self._ready.add_done_callback(self._on_loaded)
        if warmup_sizes:
            self._start_warmup(warmup_sizes, background=True)

    def _on_loaded(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Model load failed for %s: %s", self.definition.path, exc)
        else:
            logger.info("Model ready: %s (x%d)", self.definition.path, self.definition.scale)

    @property
    def ready(self) -> asyncio.Task:
        return self._ready

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def in_flight(self) -> int:
        return len(self._registry)

    def memory(self) -> TensorStats:
        return self.tracker.stats()

    def _ensure_live(self) -> None:
        if self._disposed:
            raise UpscalerDisposedError("Upscaler has been disposed")

    async def get_model(self) -> ModelHandle:
        self._ensure_live()
        return await asyncio.shield(self._ready)

    def _start_warmup(self, sizes: WarmupSpec, *, background: bool) -> asyncio.Task:
        token = CancellationToken()
        task = asyncio.get_running_loop().create_task(
            run_warmup(self._ready, sizes, tracker=self.tracker, token=token)
        )
        self._warmups[task] = token
        task.add_done_callback(self._warmup_settled if background else self._forget_warmup)
        return task

    def _forget_warmup(self, task: asyncio.Task) -> None:
        self._warmups.pop(task, None)

    def _warmup_settled(self, task: asyncio.Task) -> None:
        self._forget_warmup(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if self._ready.done() and not self._ready.cancelled() and self._ready.exception() is exc:
            # already reported by the load callback
            return
        if self._on_warmup_error is None:
            logger.error("Warmup failed for %s: %s", self.definition.path, exc)
            return
        try:
            self._on_warmup_error(exc)
        except Exception:
            logger.exception("Warmup error handler raised")

    async def warmup(self, sizes: WarmupSpec) -> int:
        """Run warmup passes now and return how many completed."""

        self._ensure_live()
        normalize_warmup_sizes(sizes)
        return await self._start_warmup(sizes, background=False)

    async def execute(
        self,
        image: Any,
        *,
        patch_size: int | None = None,
        padding: int | None = None,
        output: OutputKind | str = OutputKind.BASE64,
        output_format: str = "png",
        progress: ProgressCallback | None = None,
        progress_output: OutputKind | str | None = None,
    ) -> Any:
        """Upscale ``image`` and return it in the ``output`` representation.

        Raises ``UpscaleCancelledError`` when ``abort()`` is called while
        the call is between tiles, and the load failure when the model could
        not be loaded.
        """

        self._ensure_live()
        options = ExecuteOptions(
            patch_size=patch_size,
            padding=padding,
            output=output,
            output_format=output_format,
            progress=progress,
            progress_output=progress_output,
        )
        state = ExecutionState()
        controller = ExecutionController(
            self._ready,
            image,
            options,
            tracker=self.tracker,
            capabilities=self.capabilities,
            state=state,
        )
        self._registry.add(state)
        try:
            return await controller.run()
        finally:
            self._registry.discard(state)

    def abort(self) -> None:
        """Cancel every execution and warmup currently in flight."""

        count = self._registry.abort_all()
        for token in list(self._warmups.values()):
            token.cancel()
        if count:
            logger.info("Aborted %d in-flight execution(s)", count)

    async def dispose(self) -> None:
        """Abort, wait for in-flight work to settle, then release the model."""

        if self._disposal is None:
            self._disposal = asyncio.ensure_future(self._dispose())
        await asyncio.shield(self._disposal)

    async def _dispose(self) -> None:
        self._disposed = True
        self.abort()
        waiting = [state.settled.wait() for state in self._registry]
        waiting.extend(self._warmups)
        if waiting:
            await asyncio.gather(*waiting, return_exceptions=True)

        if self._ready.cancelled():
            return
        try:
            handle = await self._ready
        except Exception:
            logger.info("Disposing upscaler whose model never loaded")
            return
        await handle.dispose()

    async def __aenter__(self) -> "Upscaler":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()


__all__ = ["AbortRegistry", "Upscaler"]
