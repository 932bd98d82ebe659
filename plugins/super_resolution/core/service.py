"""Upscalers per configured model, hosted on one background event loop."""

from __future__ import annotations

import asyncio
from typing import Any

from common.logging import get_logger
from common.tasks import BackgroundLoop

from .errors import SuperResolutionInputError, TeardownError
from .inputs import EnvironmentCapabilities
from .loaders import TorchModelLoader
from .model import ModelCache, ModelLoader
from .outputs import EncodedImage, OutputKind
from .settings import SuperResolutionSettings
from .upscaler import Upscaler
from .warmup import WarmupSpec

logger = get_logger("sr_server.super_resolution.service")


class UpscalerService:
    """Owns one :class:`Upscaler` per model name.

    Request threads call the blocking methods; all upscaler work happens on
    the service's :class:`BackgroundLoop`.
    """

    def __init__(
        self,
        settings: SuperResolutionSettings,
        *,
        loader: ModelLoader | None = None,
        runner: BackgroundLoop | None = None,
    ):
        self.settings = settings
        self._loader = loader or TorchModelLoader(settings.device)
        self._runner = runner or BackgroundLoop("super-resolution")
        self._cache = ModelCache()
        self._upscalers: dict[str, Upscaler] = {}
        self._closed = False

    @property
    def capabilities(self) -> EnvironmentCapabilities:
        return EnvironmentCapabilities(
            string_input=self.settings.string_input,
            base64_output=self.settings.base64_output,
        )

    def _upscaler(self, name: str) -> Upscaler:
        # runs on the loop thread
        upscaler = self._live(name)
        if upscaler is not None:
            return upscaler
        spec = self.settings.models.get(name)
        if spec is None:
            raise SuperResolutionInputError(f"Unknown model '{name}'")
        upscaler = Upscaler(
            spec.to_definition(),
            loader=self._loader,
            cache=self._cache,
            warmup_sizes=spec.warmup_sizes,
            capabilities=self.capabilities,
        )
        self._upscalers[name] = upscaler
        return upscaler

    def upscale(
        self,
        name: str,
        image: Any,
        *,
        patch_size: int | None = None,
        padding: int | None = None,
        output_format: str = "png",
        timeout: float | None = None,
    ) -> EncodedImage:
        """Upscale ``image`` with model ``name``.

        On timeout only this call is cancelled; other executions of the same
        model keep running. ``TimeoutError`` is raised.
        """

        async def _execute() -> EncodedImage:
            upscaler = self._upscaler(name)
            return await upscaler.execute(
                image,
                patch_size=patch_size,
                padding=padding,
                output=OutputKind.BYTES,
                output_format=output_format,
            )

        timeout = timeout if timeout is not None else self.settings.timeout_s
        try:
            return self._runner.run(_execute(), timeout=timeout)
        except TimeoutError:
            logger.warning("Upscale with %s timed out after %.1fs; cancelled", name, timeout)
            raise

    def _live(self, name: str) -> Upscaler | None:
        upscaler = self._upscalers.get(name)
        if upscaler is None or upscaler.disposed:
            return None
        return upscaler

    def abort(self, name: str | None = None) -> int:
        """Abort in-flight work and return how many executions were running.

        The abort is scheduled on the loop rather than awaited, so callers do
        not wait for a running inference to yield.
        """

        if name is None:
            targets = list(self._upscalers.values())
        else:
            upscaler = self._upscalers.get(name)
            targets = [upscaler] if upscaler is not None else []
        count = 0
        for upscaler in targets:
            count += upscaler.in_flight
            self._runner.call_soon(upscaler.abort)
        return count

    def warmup(self, name: str, sizes: WarmupSpec, *, timeout: float | None = None) -> int:
        async def _warmup() -> int:
            return await self._upscaler(name).warmup(sizes)

        return self._runner.run(_warmup(), timeout=timeout or self.settings.timeout_s)

    def status(self, name: str) -> dict[str, Any]:
        # read from the request thread; never blocks behind a running tile
        upscaler = self._live(name)
        if upscaler is None:
            return {"model_loaded": False, "in_flight": 0}
        ready = upscaler.ready
        loaded = ready.done() and not ready.cancelled() and ready.exception() is None
        return {"model_loaded": loaded, "in_flight": upscaler.in_flight}

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        async def _dispose_all() -> None:
            upscalers = list(self._upscalers.values())
            self._upscalers.clear()
            results = await asyncio.gather(
                *(upscaler.dispose() for upscaler in upscalers), return_exceptions=True
            )
            for result in results:
                if isinstance(result, TeardownError):
                    logger.warning("Teardown failed during shutdown: %s", result)
                elif isinstance(result, Exception):
                    logger.error("Dispose failed during shutdown: %s", result)
            await self._cache.clear()

        if self._runner.running:
            self._runner.run(_dispose_all(), timeout=self.settings.timeout_s)
        self._runner.stop()


__all__ = ["UpscalerService"]
