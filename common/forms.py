"""Form value parsing helpers shared across plugins."""

from __future__ import annotations

from typing import Any, Mapping

from .validation import ValidationError


FormDataLike = Mapping[str, Any] | Any


def _lookup(data: FormDataLike, key: str) -> Any:
    if data is None:
        return None
    getter = getattr(data, "get", None)
    if callable(getter):
        return getter(key)
    return data[key] if isinstance(data, Mapping) and key in data else None


def get_int(
    data: FormDataLike,
    key: str,
    default: int,
    *,
    field_name: str | None = None,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    """Extract an integer from *data* with validation.

    Missing or blank values fall back to ``default``; fractional input is
    rounded. ``minimum`` and ``maximum`` bounds are optional and inclusive.
    """

    field_label = field_name or key
    raw = _lookup(data, key)
    if raw is None or (isinstance(raw, str) and raw.strip() == ""):
        value = default
    else:
        try:
            value = int(round(float(raw)))
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValidationError(f"Invalid value for {field_label}") from exc

    if minimum is not None and value < minimum:
        raise ValidationError(f"{field_label} must be ≥ {minimum}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{field_label} must be ≤ {maximum}")

    return value


def get_optional_int(
    data: FormDataLike,
    key: str,
    *,
    field_name: str | None = None,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    """Like :func:`get_int` but blank or missing values yield ``None``."""

    raw = _lookup(data, key)
    if raw is None or (isinstance(raw, str) and raw.strip() == ""):
        return None
    return get_int(
        data, key, 0, field_name=field_name, minimum=minimum, maximum=maximum
    )


__all__ = ["get_int", "get_optional_int"]
