#!/usr/bin/env python3
"""Fetch or copy Real-ESRGAN weights into the configured model store."""

from __future__ import annotations

import argparse
import shutil
import sys
import urllib.request
from pathlib import Path
from typing import Mapping

import yaml

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from common.logging import get_logger  # noqa: E402
from plugins.super_resolution.core.settings import load_settings  # noqa: E402

DEFAULT_URLS = {
    "RealESRGAN_x4plus": "https://github.com/xinntao/Real-ESRGAN/releases/download/v0.1.0/RealESRGAN_x4plus.pth",
    "RealESRGAN_x2plus": "https://github.com/xinntao/Real-ESRGAN/releases/download/v0.2.1/RealESRGAN_x2plus.pth",
}

logger = get_logger("sr_server.scripts.weights")


def _load_config(path: Path) -> Mapping[str, object]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _model_map(config: Mapping[str, object]) -> dict[str, Path]:
    plugins = config.get("plugins", {}) or {}
    raw = plugins.get("super_resolution", {}) if isinstance(plugins, Mapping) else {}
    model_store = config.get("model_store") or {}
    settings = load_settings(raw, root=ROOT, app_config={"MODEL_STORE": model_store})
    return {name: spec.weights_path for name, spec in settings.models.items()}


def _prepare_target(target: Path, *, force: bool) -> None:
    if target.exists() and not force:
        raise FileExistsError(f"{target} already exists (use --force to overwrite)")
    target.parent.mkdir(parents=True, exist_ok=True)


def _copy_weights(source: Path, target: Path, *, force: bool) -> None:
    _prepare_target(target, force=force)
    shutil.copy2(source, target)
    logger.info("Copied %s -> %s", source, target)


def _download_weights(url: str, target: Path, *, force: bool) -> None:
    _prepare_target(target, force=force)
    tmp_path = target.with_suffix(target.suffix + ".download")
    try:
        urllib.request.urlretrieve(url, tmp_path)
        tmp_path.replace(target)
    finally:
        tmp_path.unlink(missing_ok=True)
    logger.info("Downloaded %s -> %s", url, target)


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--config", type=Path, default=ROOT / "config.yml", help="Path to config.yml")
    parser.add_argument("--source", type=Path, help="Local file or directory holding weight files.")
    parser.add_argument("--download", action="store_true", help="Download the published weights.")
    parser.add_argument("--model", help="Limit to one configured model.")
    parser.add_argument("--url", help="Override the download URL for --model.")
    parser.add_argument("--force", action="store_true", help="Overwrite existing weights.")
    args = parser.parse_args()

    model_map = _model_map(_load_config(args.config))
    if args.model:
        if args.model not in model_map:
            raise SystemExit(f"Unknown model '{args.model}' in config.")
        model_map = {args.model: model_map[args.model]}

    if not args.source and not args.download:
        raise SystemExit("Provide --source or --download to populate weights.")

    if args.source:
        source = args.source
        if source.is_file():
            if len(model_map) != 1:
                raise SystemExit("Use --model when copying from a single file source.")
            _copy_weights(source, next(iter(model_map.values())), force=args.force)
        elif source.is_dir():
            for name, target in model_map.items():
                candidate = source / target.name
                if not candidate.exists():
                    raise SystemExit(f"Missing {candidate} for model {name}")
                _copy_weights(candidate, target, force=args.force)
        else:
            raise SystemExit(f"Source path not found: {source}")

    if args.download:
        for name, target in model_map.items():
            url = args.url if args.url and len(model_map) == 1 else DEFAULT_URLS.get(name)
            if not url:
                raise SystemExit(f"No default URL available for model {name}")
            _download_weights(url, target, force=args.force)

    return 0


if __name__ == "__main__":
    sys.exit(main())
