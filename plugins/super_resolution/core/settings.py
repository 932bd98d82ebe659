"""Configuration helpers for super-resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from common.model_store import resolve_model_path, resolve_models_root

from .definition import ModelDefinition, ModelType


@dataclass(frozen=True)
class ModelSpec:
    name: str
    weights_path: Path
    scale: int
    model_type: str = "layers"
    architecture: str | None = "rrdbnet"
    patch_size: int | None = None
    padding: int = 0
    warmup_sizes: Any = None
    input_range: tuple[float, float] = (0.0, 1.0)
    output_range: tuple[float, float] = (0.0, 1.0)
    num_block: int = 23
    num_feat: int = 64
    num_grow_ch: int = 32

    def to_definition(self) -> ModelDefinition:
        return ModelDefinition(
            path=str(self.weights_path),
            scale=self.scale,
            model_type=ModelType.parse(self.model_type),
            architecture=self.architecture,
            meta={
                "name": self.name,
                "num_block": self.num_block,
                "num_feat": self.num_feat,
                "num_grow_ch": self.num_grow_ch,
            },
            patch_size=self.patch_size,
            padding=self.padding,
            input_range=self.input_range,
            output_range=self.output_range,
        )


@dataclass(frozen=True)
class SuperResolutionSettings:
    enabled: bool
    device: str
    max_upload_mb: int
    default_model: str
    weights_dir: Path
    models: dict[str, ModelSpec]
    timeout_s: float = 120.0
    string_input: bool = True
    base64_output: bool = True
    allowed_scales: tuple[int, ...] = field(default=(2, 4))


def _resolve_path(root: Path, value: str) -> Path:
    path = Path(value).expanduser()
    if path.is_absolute():
        return path
    return (root / path).resolve()


def _as_int(value: object, default: int) -> int:
    try:
        return int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _as_optional_int(value: object) -> int | None:
    if value in (None, "", 0, "0"):
        return None
    try:
        return int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _as_range(value: object, default: tuple[float, float]) -> tuple[float, float]:
    if isinstance(value, (list, tuple)) and len(value) == 2:
        try:
            return (float(value[0]), float(value[1]))
        except (TypeError, ValueError):
            return default
    return default


def _model_defaults(weights_dir: Path, patch_size: int | None, padding: int) -> dict[str, ModelSpec]:
    return {
        "RealESRGAN_x4plus": ModelSpec(
            name="RealESRGAN_x4plus",
            weights_path=weights_dir / "RealESRGAN_x4plus.pth",
            scale=4,
            patch_size=patch_size,
            padding=padding,
        ),
        "RealESRGAN_x2plus": ModelSpec(
            name="RealESRGAN_x2plus",
            weights_path=weights_dir / "RealESRGAN_x2plus.pth",
            scale=2,
            patch_size=patch_size,
            padding=padding,
        ),
    }


def _parse_model(
    name: str,
    data: Mapping[str, Any],
    *,
    root: Path,
    weights_dir: Path,
    patch_size: int | None,
    padding: int,
) -> ModelSpec:
    weights_path = data.get("weights_path")
    if weights_path:
        resolved = _resolve_path(root, str(weights_path))
    else:
        resolved = resolve_model_path(weights_dir, f"{name}.pth")
    model_patch = data.get("patch_size", patch_size)
    return ModelSpec(
        name=name,
        weights_path=resolved,
        scale=max(1, _as_int(data.get("scale", 4), 4)),
        model_type=str(data.get("model_type", "layers")),
        architecture=data.get("architecture", "rrdbnet"),
        patch_size=_as_optional_int(model_patch),
        padding=max(0, _as_int(data.get("padding", padding), padding)),
        warmup_sizes=data.get("warmup_sizes"),
        input_range=_as_range(data.get("input_range"), (0.0, 1.0)),
        output_range=_as_range(data.get("output_range"), (0.0, 1.0)),
        num_block=_as_int(data.get("num_block", 23), 23),
        num_feat=_as_int(data.get("num_feat", 64), 64),
        num_grow_ch=_as_int(data.get("num_grow_ch", 32), 32),
    )


def load_settings(
    raw: Mapping[str, object] | None,
    *,
    root: Path,
    app_config: Mapping[str, object] | None = None,
) -> SuperResolutionSettings:
    raw = raw or {}
    enabled = bool(raw.get("enabled", True))
    device = str(raw.get("device", "auto"))
    max_upload_mb = raw.get("max_upload_mb")
    if max_upload_mb is None:
        upload = raw.get("upload")
        if isinstance(upload, Mapping):
            max_upload_mb = upload.get("max_mb", 20)
        else:
            max_upload_mb = 20
    max_upload_mb = max(1, _as_int(max_upload_mb, 20))
    if raw.get("weights_dir"):
        weights_dir = _resolve_path(root, str(raw["weights_dir"]))
    else:
        weights_dir = resolve_models_root(app_config or {}, raw, base_dir=root) / "super_resolution"
    patch_size = _as_optional_int(raw.get("patch_size"))
    padding = max(0, _as_int(raw.get("padding", 0), 0))
    try:
        timeout_s = max(1.0, float(raw.get("timeout_s", 120.0)))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        timeout_s = 120.0

    models_raw = raw.get("models")
    models: dict[str, ModelSpec] = {}
    if isinstance(models_raw, Mapping):
        for name, data in models_raw.items():
            if not isinstance(data, Mapping):
                continue
            models[str(name)] = _parse_model(
                str(name),
                data,
                root=root,
                weights_dir=weights_dir,
                patch_size=patch_size,
                padding=padding,
            )

    if not models:
        models = _model_defaults(weights_dir, patch_size, padding)

    default_model = str(raw.get("default_model") or next(iter(models.keys())))
    if default_model not in models:
        default_model = next(iter(models.keys()))

    capabilities = raw.get("capabilities")
    capabilities = capabilities if isinstance(capabilities, Mapping) else {}

    return SuperResolutionSettings(
        enabled=enabled,
        device=device,
        max_upload_mb=max_upload_mb,
        default_model=default_model,
        weights_dir=weights_dir,
        models=models,
        timeout_s=timeout_s,
        string_input=bool(capabilities.get("string_input", True)),
        base64_output=bool(capabilities.get("base64_output", True)),
        allowed_scales=tuple(sorted({spec.scale for spec in models.values()})),
    )


__all__ = ["ModelSpec", "SuperResolutionSettings", "load_settings"]
