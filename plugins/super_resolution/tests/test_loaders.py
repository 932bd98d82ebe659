import asyncio

import numpy as np
import pytest

from plugins.super_resolution.core import ModelDefinition, ModelLoadError, TorchModelLoader

torch = pytest.importorskip("torch")


def test_loads_pickled_module_and_predicts_nhwc(tmp_path):
    path = tmp_path / "upsample.pt"
    torch.save(torch.nn.Upsample(scale_factor=2, mode="nearest"), path)
    definition = ModelDefinition(path=str(path), scale=2, model_type="layers")

    async def main():
        model = await TorchModelLoader("cpu").load(definition)
        batch = np.random.default_rng(0).random((1, 3, 5, 3), dtype=np.float32)
        output = model.predict(batch)
        assert output.shape == (1, 6, 10, 3)
        np.testing.assert_allclose(output[0, ::2, ::2, :], batch[0])
        model.dispose()
        model.dispose()

    asyncio.run(main())


def test_missing_weights_raise_model_load_error(tmp_path):
    definition = ModelDefinition(path=str(tmp_path / "missing.pth"), scale=4)

    async def main():
        with pytest.raises(ModelLoadError, match="Missing weights"):
            await TorchModelLoader("cpu").load(definition)

    asyncio.run(main())


def test_other_model_type_is_not_loadable(tmp_path):
    path = tmp_path / "model.bin"
    path.write_bytes(b"\x00")
    definition = ModelDefinition(path=str(path), scale=2, model_type="other")

    async def main():
        with pytest.raises(ModelLoadError, match="Unsupported model type"):
            await TorchModelLoader("cpu").load(definition)

    asyncio.run(main())
