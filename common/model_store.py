"""Helpers for locating model weights on disk."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

DEFAULT_ENV = "SR_SERVER_MODEL_STORE"
DEFAULT_ROOT = "model_store"


def resolve_models_root(
    app_config: Mapping[str, object],
    plugin_settings: Mapping[str, object] | None,
    *,
    base_dir: Path,
) -> Path:
    """Pick the model store directory.

    Precedence: the environment variable (named by the plugin's
    ``models_root_env`` or the app's ``MODEL_STORE.env``), then the plugin's
    ``models_root``, then ``MODEL_STORE.root``. Relative roots hang off
    ``base_dir``.
    """

    model_store = app_config.get("MODEL_STORE") if isinstance(app_config, Mapping) else None
    model_store = model_store if isinstance(model_store, Mapping) else {}
    plugin_settings = plugin_settings or {}

    env_var = plugin_settings.get("models_root_env") or model_store.get("env") or DEFAULT_ENV
    root = (
        os.getenv(str(env_var))
        or plugin_settings.get("models_root")
        or model_store.get("root")
        or DEFAULT_ROOT
    )

    root_path = Path(str(root)).expanduser()
    if not root_path.is_absolute():
        root_path = base_dir / root_path
    return root_path


def resolve_model_path(root: Path, model_file: str) -> Path:
    path = Path(model_file).expanduser()
    if path.is_absolute():
        return path
    return root / path


def weights_present(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0


__all__ = ["DEFAULT_ENV", "resolve_models_root", "resolve_model_path", "weights_present"]
