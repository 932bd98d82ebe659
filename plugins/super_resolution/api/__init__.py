"""Super resolution API blueprint."""

from __future__ import annotations

import atexit
import threading
from pathlib import Path
from typing import Any

from flask import Blueprint, Response, current_app, request, send_file

from common.errors import (
    AppError,
    ConflictAppError,
    InternalAppError,
    NotFoundAppError,
    TimeoutAppError,
    UnavailableAppError,
    ValidationAppError,
)
from common.forms import get_optional_int
from common.io import buffer_from_bytes, read_stream
from common.logging import get_logger
from common.model_store import weights_present
from common.responses import fail, fail_from, ok
from common.validation import (
    SchemaModel,
    ValidationError,
    enforce_size,
    parse_model,
    validate_mime,
)

from ..core import (
    EncodedImage,
    EnvironmentCapabilityError,
    InferenceError,
    ModelLoadError,
    SuperResolutionInputError,
    SuperResolutionSettings,
    SuperResolutionUnavailableError,
    UpscaleCancelledError,
    UpscalerDisposedError,
    UpscalerService,
    WarmupError,
    is_available,
    load_settings,
    normalize_output_format,
    select_device,
)

logger = get_logger("sr_server.super_resolution.api")

api_bp = Blueprint(
    "super_resolution_api", __name__, url_prefix="/api/v1/super_resolution"
)

EXTENSION_KEY = "super_resolution"
ALLOWED_MIMES = {"image/png", "image/jpeg", "image/webp", "image/tiff", "image/bmp"}

_service_lock = threading.Lock()


class AbortRequest(SchemaModel):
    model: str | None = None


class WarmupRequest(SchemaModel):
    model: str | None = None
    sizes: int | dict[str, int] | list[int | dict[str, int]]


def _repo_root() -> Path:
    return Path(current_app.root_path).resolve().parent


def _settings() -> SuperResolutionSettings:
    raw = current_app.config.get("PLUGIN_SETTINGS", {}).get("super_resolution", {})
    return load_settings(raw, root=_repo_root(), app_config=current_app.config)


def _service() -> UpscalerService:
    """Return the app's upscaler service, creating it on first use."""

    service = current_app.extensions.get(EXTENSION_KEY)
    if service is not None:
        return service
    with _service_lock:
        service = current_app.extensions.get(EXTENSION_KEY)
        if service is None:
            service = UpscalerService(
                _settings(), loader=current_app.config.get("SUPER_RESOLUTION_LOADER")
            )
            current_app.extensions[EXTENSION_KEY] = service
            atexit.register(service.close)
    return service


def _model_name(settings: SuperResolutionSettings, requested: str | None) -> str:
    if not requested:
        return settings.default_model
    if requested not in settings.models:
        raise ValidationError("Unknown model selection", details={"model": requested})
    return requested


def _to_app_error(exc: Exception) -> AppError | None:
    if isinstance(exc, ValidationError):
        return ValidationAppError(
            message=str(exc),
            code="super_resolution.invalid_parameters",
            details={"errors": exc.details} if exc.details is not None else None,
        )
    if isinstance(exc, UpscaleCancelledError):
        return ConflictAppError(message=str(exc), code="super_resolution.cancelled")
    if isinstance(exc, TimeoutError):
        return TimeoutAppError(message=str(exc), code="super_resolution.timeout")
    if isinstance(exc, SuperResolutionUnavailableError):
        return UnavailableAppError(message=str(exc), code="super_resolution.unavailable")
    if isinstance(exc, UpscalerDisposedError):
        return UnavailableAppError(message=str(exc), code="super_resolution.shutting_down")
    if isinstance(exc, ModelLoadError):
        return InternalAppError(message=str(exc), code="super_resolution.missing_weights")
    if isinstance(exc, EnvironmentCapabilityError):
        return ValidationAppError(
            message=str(exc),
            code="super_resolution.unsupported",
            details={"capability": exc.capability},
        )
    if isinstance(exc, SuperResolutionInputError):
        return ValidationAppError(message=str(exc), code="super_resolution.invalid_input")
    if isinstance(exc, (InferenceError, WarmupError)):
        return InternalAppError(message=str(exc), code="super_resolution.inference_failed")
    return None


def _error_response(exc: Exception) -> Response:
    error = _to_app_error(exc)
    if error is None:
        return fail_from(exc, fallback_code="super_resolution.failed")
    logger.warning("Request failed with %s: %s", error.code, error.message)
    return fail(error)


@api_bp.get("/health")
def health() -> Response:
    settings = _settings()
    service = current_app.extensions.get(EXTENSION_KEY)
    status: dict[str, Any] = {"model_loaded": False, "in_flight": 0}
    default_spec = settings.models[settings.default_model]
    if service is not None:
        status = service.status(settings.default_model)
    payload = {
        "status": "ok",
        "available": is_available(),
        "model_name": settings.default_model,
        "weights_present": weights_present(default_spec.weights_path),
        "models": sorted(settings.models),
        "device": select_device(settings.device),
        **status,
    }
    return ok(payload)


@api_bp.post("/predict")
def predict() -> Response:
    settings = _settings()
    if not settings.enabled:
        return fail(
            NotFoundAppError(
                message="Super-resolution is disabled in config.yml",
                code="super_resolution.disabled",
            )
        )

    file = request.files.get("image")
    if not file:
        return fail(
            ValidationAppError(
                message="Image file is required",
                code="super_resolution.missing_image",
            )
        )

    try:
        enforce_size(file, max(1, settings.max_upload_mb) * 1024 * 1024)
    except ValidationError as exc:
        return fail(
            ValidationAppError(message=str(exc), code="super_resolution.too_large"),
            status=413,
        )

    try:
        validate_mime([file], ALLOWED_MIMES)
        model_name = _model_name(settings, request.form.get("model"))
        patch_size = get_optional_int(request.form, "patch_size", minimum=1)
        padding = get_optional_int(request.form, "padding", minimum=0)
        output_format = normalize_output_format(request.form.get("output_format"))
        result: EncodedImage = _service().upscale(
            model_name,
            read_stream(file.stream),
            patch_size=patch_size,
            padding=padding,
            output_format=output_format,
        )
    except Exception as exc:  # noqa: BLE001 - mapped to an error envelope
        return _error_response(exc)

    response = send_file(
        buffer_from_bytes(result.data),
        mimetype=result.mimetype,
        as_attachment=True,
        download_name=f"upscaled.{result.output_format}",
        max_age=0,
    )
    response.headers["X-Image-Width"] = str(result.width)
    response.headers["X-Image-Height"] = str(result.height)
    return response


@api_bp.post("/abort")
def abort() -> Response:
    try:
        payload = parse_model(AbortRequest, request.get_json(silent=True))
        settings = _settings()
        name = _model_name(settings, payload.model) if payload.model else None
    except ValidationError as exc:
        return _error_response(exc)

    service = current_app.extensions.get(EXTENSION_KEY)
    aborted = service.abort(name) if service is not None else 0
    return ok({"aborted": aborted, "model": name})


@api_bp.post("/warmup")
def warmup() -> Response:
    try:
        payload = parse_model(WarmupRequest, request.get_json(silent=True))
        settings = _settings()
        model_name = _model_name(settings, payload.model)
        warmed = _service().warmup(model_name, payload.sizes)
    except Exception as exc:  # noqa: BLE001 - mapped to an error envelope
        return _error_response(exc)
    return ok({"model": model_name, "warmed": warmed})


blueprints = [api_bp]


__all__ = ["blueprints", "health", "predict", "abort", "warmup"]
