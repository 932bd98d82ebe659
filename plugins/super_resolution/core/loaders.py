"""Torch-backed model loading."""

from __future__ import annotations

import gc
from pathlib import Path
from typing import Any

import numpy as np

from common.logging import get_logger

from .definition import ModelDefinition, ModelType
from .errors import ModelLoadError, SuperResolutionUnavailableError

TORCH_AVAILABLE = False
IMPORT_ERROR: str | None = None

try:  # Optional dependency (heavy)
    import torch

    TORCH_AVAILABLE = True
except Exception as exc:  # pragma: no cover - exercised in integration
    IMPORT_ERROR = repr(exc)

logger = get_logger("sr_server.super_resolution.loaders")


def is_available() -> bool:
    return TORCH_AVAILABLE


def import_error() -> str | None:
    return IMPORT_ERROR


def select_device(preference: str) -> str:
    normalized = (preference or "auto").lower()
    if normalized not in {"auto", "cpu", "cuda"}:
        normalized = "auto"
    if normalized == "cpu":
        return "cpu"
    if not TORCH_AVAILABLE:
        return "cpu"
    return "cuda" if torch.cuda.is_available() else "cpu"


class TorchModel:
    """Adapts a torch module to the NHWC numpy ``predict`` contract."""

    def __init__(self, module: Any, device: str):
        self.module = module
        self.device = device

    def predict(self, batch: np.ndarray) -> np.ndarray:
        if self.module is None:
            raise RuntimeError("Model has been released")
        tensor = torch.from_numpy(np.ascontiguousarray(batch, dtype=np.float32))
        tensor = tensor.permute(0, 3, 1, 2).to(self.device)
        with torch.inference_mode():
            output = self.module(tensor)
            if isinstance(output, (list, tuple)):
                output = output[0]
        result = output.permute(0, 2, 3, 1).float().cpu().numpy()
        del tensor, output
        return result

    def dispose(self) -> None:
        if self.module is None:
            return
        self.module = None
        gc.collect()
        if self.device != "cpu" and TORCH_AVAILABLE:
            torch.cuda.empty_cache()


def _build_rrdbnet(state: dict, definition: ModelDefinition):
    try:
        from basicsr.archs.rrdbnet_arch import RRDBNet
    except Exception as exc:
        raise SuperResolutionUnavailableError(
            "RRDBNet weights need basicsr. Install the torch extra."
        ) from exc

    meta = definition.meta
    model = RRDBNet(
        num_in_ch=definition.channels,
        num_out_ch=definition.channels,
        num_feat=int(meta.get("num_feat", 64)),
        num_block=int(meta.get("num_block", 23)),
        num_grow_ch=int(meta.get("num_grow_ch", 32)),
        scale=definition.scale,
    )
    for key in ("params_ema", "params"):
        if key in state:
            state = state[key]
            break
    model.load_state_dict(state, strict=True)
    return model


class TorchModelLoader:
    """Loads ``layers`` (pickled modules or RRDBNet state dicts) and ``graph``
    (TorchScript) models from local weight files."""

    def __init__(self, device: str = "auto"):
        self.device = select_device(device)

    async def load(self, definition: ModelDefinition) -> TorchModel:
        if not TORCH_AVAILABLE:
            raise SuperResolutionUnavailableError(
                "Torch is unavailable. Install the torch extra."
            )
        path = Path(definition.path).expanduser()
        if not path.exists():
            raise ModelLoadError(f"Missing weights file: {path}")

        if definition.model_type is ModelType.GRAPH:
            module = torch.jit.load(str(path), map_location=self.device)
        elif definition.model_type is ModelType.LAYERS:
            obj = torch.load(path, map_location=self.device, weights_only=False)
            if isinstance(obj, torch.nn.Module):
                module = obj
            elif isinstance(obj, dict):
                arch = (definition.architecture or "rrdbnet").lower()
                if arch != "rrdbnet":
                    raise ModelLoadError(f"Unsupported architecture '{arch}'")
                module = _build_rrdbnet(obj, definition)
            else:
                raise ModelLoadError("Unsupported model serialization format")
        else:
            raise ModelLoadError(
                f"Unsupported model type '{definition.model_type.value}'"
            )

        module.eval()
        module.to(self.device)
        logger.info("Loaded %s on %s", path.name, self.device)
        return TorchModel(module, self.device)


__all__ = [
    "TORCH_AVAILABLE",
    "TorchModel",
    "TorchModelLoader",
    "import_error",
    "is_available",
    "select_device",
]
