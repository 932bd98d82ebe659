import threading

import numpy as np
import pytest

from plugins.super_resolution.core import (
    EncodedImage,
    SuperResolutionInputError,
    UpscaleCancelledError,
    UpscalerService,
    load_settings,
)


def _settings(tmp_path, **overrides):
    raw = {
        "device": "cpu",
        "default_model": "x2",
        "models": {"x2": {"scale": 2, "weights_path": str(tmp_path / "x2.pth")}},
    }
    raw.update(overrides)
    return load_settings(raw, root=tmp_path)


def test_upscale_returns_encoded_bytes(tmp_path, loader, png_bytes):
    service = UpscalerService(_settings(tmp_path), loader=loader)
    try:
        result = service.upscale("x2", png_bytes, patch_size=4, padding=1)
        assert (result.width, result.height) == (20, 20)
        assert result.data.startswith(b"\x89PNG")
        assert len(loader.model.calls) == 9
        assert service.status("x2") == {"model_loaded": True, "in_flight": 0}
    finally:
        service.close()
    assert loader.model.disposed == 1


def test_unknown_model_is_an_input_error(tmp_path, loader):
    service = UpscalerService(_settings(tmp_path), loader=loader)
    try:
        with pytest.raises(SuperResolutionInputError):
            service.upscale("x8", np.zeros((2, 2, 3)))
    finally:
        service.close()


def test_abort_when_idle_reports_nothing(tmp_path, loader):
    service = UpscalerService(_settings(tmp_path), loader=loader)
    try:
        assert service.abort() == 0
        assert service.abort("x2") == 0
        assert service.status("x2")["model_loaded"] is False
    finally:
        service.close()


def test_timeout_cancels_the_execution(tmp_path, loader_factory):
    loader = loader_factory(delay=0.05)
    service = UpscalerService(_settings(tmp_path), loader=loader)
    try:
        with pytest.raises(TimeoutError):
            service.upscale("x2", np.zeros((8, 8, 3)), patch_size=2, timeout=0.02)
    finally:
        service.close()
    # 16 tiles requested; cancellation stops submission long before that
    assert len(loader.model.calls) < 16


def test_timeout_leaves_concurrent_requests_running(tmp_path, loader_factory):
    loader = loader_factory(delay=0.01)
    service = UpscalerService(_settings(tmp_path), loader=loader)
    outcome = []

    def patient():
        try:
            outcome.append(
                service.upscale("x2", np.zeros((8, 8, 3)), patch_size=2, timeout=30)
            )
        except Exception as exc:  # noqa: BLE001 - asserted below
            outcome.append(exc)

    try:
        worker = threading.Thread(target=patient)
        worker.start()
        with pytest.raises(TimeoutError):
            service.upscale("x2", np.zeros((8, 8, 3)), patch_size=2, timeout=0.03)
        worker.join(30)
    finally:
        service.close()
    assert len(outcome) == 1
    assert isinstance(outcome[0], EncodedImage)
    assert (outcome[0].width, outcome[0].height) == (16, 16)


def test_status_and_abort_do_not_wait_for_a_running_tile(tmp_path, loader):
    entered = threading.Event()
    gate = threading.Event()
    service = UpscalerService(_settings(tmp_path), loader=loader)
    outcome = []

    def blocking_predict(batch):
        entered.set()
        gate.wait(10)
        return np.repeat(np.repeat(batch, 2, axis=1), 2, axis=2)

    def run():
        try:
            outcome.append(
                service.upscale("x2", np.zeros((2, 2, 3)), patch_size=1, padding=0)
            )
        except Exception as exc:  # noqa: BLE001 - asserted below
            outcome.append(exc)

    try:
        service.upscale("x2", np.zeros((2, 2, 3)))
        loader.model.predict = blocking_predict
        worker = threading.Thread(target=run)
        worker.start()
        assert entered.wait(10)
        # the loop thread is stuck inside predict
        assert service.status("x2") == {"model_loaded": True, "in_flight": 1}
        assert service.abort("x2") == 1
        gate.set()
        worker.join(10)
    finally:
        gate.set()
        service.close()
    assert len(outcome) == 1
    assert isinstance(outcome[0], UpscaleCancelledError)


def test_warmup_runs_on_the_service_loop(tmp_path, loader):
    service = UpscalerService(_settings(tmp_path), loader=loader)
    try:
        assert service.warmup("x2", [8, {"patch_size": 4, "padding": 2}]) == 2
        assert loader.model.calls == [(1, 8, 8, 3), (1, 8, 8, 3)]
    finally:
        service.close()
