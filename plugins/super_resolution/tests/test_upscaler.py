import asyncio

import numpy as np
import pytest

from plugins.super_resolution.core import (
    ExecutionStatus,
    ModelCache,
    ModelLoadError,
    TensorHandle,
    UpscaleCancelledError,
    Upscaler,
    UpscalerDisposedError,
)


def _expected(pixels: np.ndarray, scale: int) -> np.ndarray:
    return np.repeat(np.repeat(pixels, scale, axis=0), scale, axis=1)


def test_execute_tiled_output_matches_untiled(loader, definition_factory, rgb_pixels):
    async def main():
        upscaler = Upscaler(definition_factory(), loader=loader)
        whole = await upscaler.execute(rgb_pixels, output="tensor")
        tiled = await upscaler.execute(rgb_pixels, patch_size=3, padding=1, output="tensor")
        try:
            assert whole.shape == (10, 14, 3)
            np.testing.assert_allclose(tiled.array, whole.array)
            np.testing.assert_allclose(whole.array, _expected(rgb_pixels, 2))
        finally:
            whole.dispose()
            tiled.dispose()
        assert len(loader.model.calls) == 1 + 6
        assert upscaler.memory().live == 0
        await upscaler.dispose()

    asyncio.run(main())


def test_four_by_four_with_patch_two_runs_four_tiles(loader, definition_factory):
    async def main():
        upscaler = Upscaler(definition_factory(), loader=loader)
        pixels = np.full((4, 4, 3), 128, dtype=np.float32)
        encoded = await upscaler.execute(pixels, patch_size=2, output="bytes")
        assert (encoded.width, encoded.height) == (8, 8)
        assert loader.model.calls == [(1, 2, 2, 3)] * 4
        await upscaler.dispose()

    asyncio.run(main())


def test_default_output_is_base64_data_url(loader, definition_factory, rgb_pixels):
    async def main():
        upscaler = Upscaler(definition_factory(), loader=loader)
        result = await upscaler.execute(rgb_pixels)
        assert result.startswith("data:image/png;base64,")
        await upscaler.dispose()

    asyncio.run(main())


def test_rank_of_tensor_input_is_preserved(loader, definition_factory, rgb_pixels):
    async def main():
        upscaler = Upscaler(definition_factory(), loader=loader)
        batch = upscaler.tracker.wrap(rgb_pixels[np.newaxis])
        single = upscaler.tracker.wrap(rgb_pixels)
        out4 = await upscaler.execute(batch, output="tensor")
        out3 = await upscaler.execute(single, output="tensor")
        assert out4.shape == (1, 10, 14, 3)
        assert out3.shape == (10, 14, 3)
        # caller tensors are left alone
        assert not batch.is_disposed and not single.is_disposed
        for handle in (batch, single, out3, out4):
            handle.dispose()
        await upscaler.dispose()

    asyncio.run(main())


def test_value_ranges_are_mapped_around_inference(loader, definition_factory, rgb_pixels):
    async def main():
        definition = definition_factory(input_range=(0.0, 1.0), output_range=(0.0, 1.0))
        upscaler = Upscaler(definition, loader=loader)
        result = await upscaler.execute(rgb_pixels, output="tensor")
        np.testing.assert_allclose(result.array, _expected(rgb_pixels, 2), atol=1e-3)
        result.dispose()
        await upscaler.dispose()

    asyncio.run(main())


def test_progress_reports_each_tile_with_slices(loader, definition_factory):
    async def main():
        upscaler = Upscaler(definition_factory(), loader=loader)
        seen = []

        async def on_progress(fraction, info):
            seen.append((fraction, info.index, info.total, info.slice))

        pixels = np.zeros((4, 4, 3), dtype=np.float32)
        result = await upscaler.execute(
            pixels,
            patch_size=2,
            output="tensor",
            progress=on_progress,
            progress_output="tensor",
        )
        assert [item[0] for item in seen] == [0.25, 0.5, 0.75, 1.0]
        assert [item[1] for item in seen] == [0, 1, 2, 3]
        assert all(item[2] == 4 for item in seen)
        for *_, piece in seen:
            assert isinstance(piece, TensorHandle)
            assert piece.shape == (4, 4, 3)
            piece.dispose()
        result.dispose()
        assert upscaler.memory().live == 0
        await upscaler.dispose()

    asyncio.run(main())


def test_failing_progress_callback_does_not_stop_execution(loader, definition_factory):
    async def main():
        upscaler = Upscaler(definition_factory(), loader=loader)

        def on_progress(fraction, info):
            raise RuntimeError("listener broke")

        pixels = np.zeros((4, 4, 3), dtype=np.float32)
        encoded = await upscaler.execute(pixels, patch_size=2, output="bytes", progress=on_progress)
        assert encoded.width == 8
        await upscaler.dispose()

    asyncio.run(main())


def test_abort_after_first_tile_stops_submission(loader, definition_factory):
    async def main():
        upscaler = Upscaler(definition_factory(), loader=loader)

        def on_progress(fraction, info):
            upscaler.abort()
            upscaler.abort()

        pixels = np.zeros((4, 4, 3), dtype=np.float32)
        with pytest.raises(UpscaleCancelledError):
            await upscaler.execute(pixels, patch_size=2, progress=on_progress)
        assert len(loader.model.calls) == 1
        assert upscaler.in_flight == 0
        assert upscaler.memory().live == 0
        await upscaler.dispose()

    asyncio.run(main())


def test_abort_cancels_every_in_flight_execution(loader, definition_factory):
    async def main():
        upscaler = Upscaler(definition_factory(), loader=loader)
        await upscaler.ready
        pixels = np.zeros((4, 4, 3), dtype=np.float32)
        aborted = []

        def on_progress(fraction, info):
            if not aborted:
                aborted.append(upscaler.in_flight)
                upscaler.abort()

        results = await asyncio.gather(
            upscaler.execute(pixels, patch_size=2, progress=on_progress),
            upscaler.execute(pixels, patch_size=2),
            upscaler.execute(pixels, patch_size=2),
            return_exceptions=True,
        )
        assert aborted == [3]
        assert all(isinstance(result, UpscaleCancelledError) for result in results)
        assert len(loader.model.calls) <= 3
        assert upscaler.in_flight == 0
        await upscaler.dispose()

    asyncio.run(main())


def test_abort_after_settlement_is_a_no_op(loader, definition_factory, rgb_pixels):
    async def main():
        upscaler = Upscaler(definition_factory(), loader=loader)
        first = await upscaler.execute(rgb_pixels, output="bytes")
        upscaler.abort()
        second = await upscaler.execute(rgb_pixels, output="bytes")
        assert first.data == second.data
        await upscaler.dispose()

    asyncio.run(main())


def test_inference_failure_settles_as_failed(loader_factory, definition_factory, rgb_pixels):
    async def main():
        loader = loader_factory(predict_error=RuntimeError("out of memory"))
        upscaler = Upscaler(definition_factory(), loader=loader)
        with pytest.raises(Exception, match="out of memory"):
            await upscaler.execute(rgb_pixels, patch_size=3)
        assert upscaler.in_flight == 0
        assert upscaler.memory().live == 0
        await upscaler.dispose()

    asyncio.run(main())


def test_load_failure_surfaces_through_ready_and_execute(loader_factory, definition_factory, rgb_pixels):
    async def main():
        loader = loader_factory(error=FileNotFoundError("no weights"))
        upscaler = Upscaler(definition_factory(), loader=loader)
        with pytest.raises(ModelLoadError, match="no weights"):
            await upscaler.ready
        with pytest.raises(ModelLoadError):
            await upscaler.execute(rgb_pixels)
        await upscaler.dispose()

    asyncio.run(main())


def test_dispose_runs_sync_teardown_once(loader, definition_factory):
    calls = []

    async def main():
        definition = definition_factory(teardown=lambda: calls.append("teardown"))
        upscaler = Upscaler(definition, loader=loader)
        await upscaler.ready
        await upscaler.dispose()
        await upscaler.dispose()
        assert upscaler.disposed
        assert loader.model.disposed == 1
        with pytest.raises(UpscalerDisposedError):
            await upscaler.execute(np.zeros((2, 2, 3), dtype=np.float32))

    asyncio.run(main())
    assert calls == ["teardown"]


def test_dispose_awaits_async_teardown(loader, definition_factory):
    calls = []

    async def teardown():
        await asyncio.sleep(0)
        calls.append("teardown")

    async def main():
        upscaler = Upscaler(definition_factory(teardown=teardown), loader=loader)
        await asyncio.gather(upscaler.dispose(), upscaler.dispose())

    asyncio.run(main())
    assert calls == ["teardown"]


def test_dispose_waits_for_in_flight_execution(loader, definition_factory):
    async def main():
        upscaler = Upscaler(definition_factory(), loader=loader)
        disposal = []

        def on_progress(fraction, info):
            if not disposal:
                disposal.append(asyncio.ensure_future(upscaler.dispose()))

        pixels = np.zeros((4, 4, 3), dtype=np.float32)
        with pytest.raises(UpscaleCancelledError):
            await upscaler.execute(pixels, patch_size=2, progress=on_progress)
        await disposal[0]
        assert loader.model.disposed == 1
        assert upscaler.memory().live == 0

    asyncio.run(main())


def test_shared_cache_loads_once_and_releases_with_last_handle(loader, definition_factory):
    async def main():
        cache = ModelCache()
        first = Upscaler(definition_factory(), loader=loader, cache=cache)
        second = Upscaler(definition_factory(), loader=loader, cache=cache)
        await asyncio.gather(first.ready, second.ready)
        assert loader.loads == 1
        assert len(cache) == 1

        await first.dispose()
        assert loader.model.disposed == 0
        await second.dispose()
        assert loader.model.disposed == 1
        assert len(cache) == 0

    asyncio.run(main())


def test_execution_state_records_plan_and_status(loader, definition_factory):
    from plugins.super_resolution.core import (
        EnvironmentCapabilities,
        ExecuteOptions,
        ExecutionController,
        ExecutionState,
        ModelHandle,
        TensorTracker,
    )

    async def main():
        tracker = TensorTracker()
        model = ModelHandle.load(definition_factory(), loader)
        state = ExecutionState()
        controller = ExecutionController(
            model,
            np.zeros((4, 6, 3), dtype=np.float32),
            ExecuteOptions(patch_size=2, output="bytes"),
            tracker=tracker,
            capabilities=EnvironmentCapabilities(),
            state=state,
        )
        await controller.run()
        assert state.status is ExecutionStatus.SUCCESS
        assert state.settled.is_set()
        assert (state.plan.rows, state.plan.cols) == (2, 3)
        assert state.tiles_done == 6
        assert tracker.stats().live == 0

    asyncio.run(main())
