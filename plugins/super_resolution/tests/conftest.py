import asyncio
from io import BytesIO
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from plugins.super_resolution.core import ModelDefinition


class NearestModel:
    """Nearest-neighbour upscaler standing in for a real network."""

    def __init__(self, scale: int, *, delay: float | None = None, error: Exception | None = None):
        self.scale = scale
        self.delay = delay
        self.error = error
        self.calls: list[tuple[int, ...]] = []
        self.disposed = 0

    def predict(self, batch):
        self.calls.append(tuple(batch.shape))
        if self.error is not None:
            raise self.error
        output = np.repeat(np.repeat(batch, self.scale, axis=1), self.scale, axis=2)
        if self.delay is None:
            return output
        return self._later(output)

    async def _later(self, output):
        await asyncio.sleep(self.delay)
        return output

    def dispose(self):
        self.disposed += 1


class FakeLoader:
    def __init__(
        self,
        *,
        error: Exception | None = None,
        delay: float | None = None,
        predict_error: Exception | None = None,
    ):
        self.error = error
        self.delay = delay
        self.predict_error = predict_error
        self.loads = 0
        self.models: list[NearestModel] = []

    async def load(self, definition):
        self.loads += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        model = NearestModel(definition.scale, delay=self.delay, error=self.predict_error)
        self.models.append(model)
        return model

    @property
    def model(self) -> NearestModel:
        return self.models[-1]


@pytest.fixture
def loader() -> FakeLoader:
    return FakeLoader()


@pytest.fixture
def loader_factory():
    return FakeLoader


@pytest.fixture
def definition_factory(tmp_path: Path):
    def _make(**overrides) -> ModelDefinition:
        values = {"path": str(tmp_path / "model.pth"), "scale": 2}
        values.update(overrides)
        return ModelDefinition(**values)

    return _make


@pytest.fixture
def rgb_pixels() -> np.ndarray:
    rng = np.random.default_rng(7)
    return rng.integers(0, 256, size=(5, 7, 3)).astype(np.float32)


@pytest.fixture
def png_bytes() -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (10, 10), color=(40, 120, 200)).save(buffer, format="PNG")
    return buffer.getvalue()
