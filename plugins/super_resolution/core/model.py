"""Model handle lifecycle: loading, shared caching, inference and disposal."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Protocol

import numpy as np

from common.logging import get_logger

from .definition import ModelDefinition
from .errors import (
    InferenceError,
    ModelLoadError,
    SuperResolutionError,
    TeardownError,
    UpscalerDisposedError,
)

logger = get_logger("sr_server.super_resolution.model")


class InferenceModel(Protocol):
    def predict(self, batch: np.ndarray) -> Any:
        """Return the upscaled NHWC batch, or an awaitable resolving to it."""


class ModelLoader(Protocol):
    async def load(self, definition: ModelDefinition) -> InferenceModel:
        ...


async def _release_model(model: Any) -> None:
    dispose = getattr(model, "dispose", None)
    if dispose is None:
        return
    result = dispose()
    if inspect.isawaitable(result):
        await result


@dataclass
class _CacheEntry:
    model: Any
    refs: int = 0


class ModelCache:
    """Loaded models shared between handles, keyed by normalized locator.

    Entries are reference counted: the underlying model is released when
    the last handle lets go. ``invalidate`` forgets an entry so that the
    next ``acquire`` loads a fresh copy; handles still holding the old model
    keep it until they release. Invalidated entries are retired, keyed by
    model identity, and keep counting references until the last release.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _CacheEntry] = {}
        self._pending: dict[str, asyncio.Future] = {}
        self._retired: dict[int, _CacheEntry] = {}

    def __contains__(self, locator: str) -> bool:
        return locator in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def acquire(self, definition: ModelDefinition, loader: ModelLoader) -> Any:
        key = definition.locator
        entry = self._entries.get(key)
        if entry is not None:
            entry.refs += 1
            return entry.model

        pending = self._pending.get(key)
        if pending is None:
            pending = asyncio.ensure_future(loader.load(definition))
            self._pending[key] = pending
            try:
                model = await pending
            finally:
                self._pending.pop(key, None)
            self._entries[key] = _CacheEntry(model=model)
        else:
            model = await asyncio.shield(pending)

        entry = self._entries.get(key)
        if entry is None or entry.model is not model:
            entry = self._retired.get(id(model))
        if entry is None or entry.model is not model:
            # released before this caller resumed; it owns a private copy
            return model
        entry.refs += 1
        return model

    async def release(self, locator: str, model: Any) -> None:
        entry = self._entries.get(locator)
        if entry is not None and entry.model is model:
            entry.refs -= 1
            if entry.refs <= 0:
                del self._entries[locator]
                await _release_model(model)
            return

        retired = self._retired.get(id(model))
        if retired is None or retired.model is not model:
            await _release_model(model)
            return
        retired.refs -= 1
        if retired.refs <= 0:
            del self._retired[id(model)]
            await _release_model(model)

    def invalidate(self, locator: str) -> bool:
        entry = self._entries.pop(locator, None)
        if entry is None:
            return False
        if entry.refs <= 0:
            # nobody holds it, release right away
            asyncio.ensure_future(_release_model(entry.model))
        else:
            self._retired[id(entry.model)] = entry
        logger.info("Invalidated cached model %s", locator)
        return True

    async def clear(self) -> None:
        entries = [*self._entries.values(), *self._retired.values()]
        self._entries.clear()
        self._retired.clear()
        for entry in entries:
            await _release_model(entry.model)


class ModelHandle:
    """Loaded model plus its definition, owned by exactly one upscaler."""

    def __init__(
        self,
        definition: ModelDefinition,
        model: Any,
        *,
        cache: ModelCache | None = None,
    ):
        self.definition = definition
        self._model = model
        self._cache = cache
        self._disposed = False

    @classmethod
    async def load(
        cls,
        definition: ModelDefinition,
        loader: ModelLoader,
        *,
        cache: ModelCache | None = None,
    ) -> "ModelHandle":
        logger.info("Loading %s model from %s", definition.model_type.value, definition.path)
        try:
            if cache is not None:
                model = await cache.acquire(definition, loader)
            else:
                model = await loader.load(definition)
        except ModelLoadError:
            raise
        except Exception as exc:
            raise ModelLoadError(f"Failed to load model from {definition.path}: {exc}") from exc
        if model is None or not callable(getattr(model, "predict", None)):
            raise ModelLoadError(f"Loader returned no inference-capable model for {definition.path}")
        return cls(definition, model, cache=cache)

    @property
    def scale(self) -> int:
        return self.definition.scale

    @property
    def model(self) -> Any:
        if self._disposed:
            raise UpscalerDisposedError("Model handle has been disposed")
        return self._model

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def predict(self, batch: np.ndarray) -> np.ndarray:
        model = self.model
        try:
            result = model.predict(batch)
            if inspect.isawaitable(result):
                result = await result
        except SuperResolutionError:
            raise
        except Exception as exc:
            raise InferenceError(f"Model inference failed: {exc}") from exc
        # suspension point between inference calls
        await asyncio.sleep(0)
        if result is None:
            raise InferenceError("Model returned no output")
        return np.asarray(result)

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        model, self._model = self._model, None
        release_error: Exception | None = None
        try:
            if self._cache is not None:
                await self._cache.release(self.definition.locator, model)
            else:
                await _release_model(model)
        except Exception as exc:
            logger.exception("Failed to release model %s", self.definition.path)
            release_error = exc
        else:
            logger.info("Released model %s", self.definition.path)

        teardown = self.definition.teardown
        if teardown is not None:
            try:
                result = teardown()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.exception("Model teardown failed for %s", self.definition.path)
                raise TeardownError(f"Model teardown failed: {exc}") from exc
        if release_error is not None:
            raise release_error


__all__ = ["InferenceModel", "ModelLoader", "ModelCache", "ModelHandle"]
