"""Time unit helpers for rescaling reported simulation time."""

from __future__ import annotations

import math

from .errors import ConfigurationError


def _normalize(unit: str) -> str:
    return (unit or "").strip().lower()


_TIME_FACTORS_HOURS = {
    "second": 1.0 / 3600.0,
    "seconds": 1.0 / 3600.0,
    "sec": 1.0 / 3600.0,
    "s": 1.0 / 3600.0,
    "minute": 1.0 / 60.0,
    "minutes": 1.0 / 60.0,
    "min": 1.0 / 60.0,
    "hour": 1.0,
    "hours": 1.0,
    "hr": 1.0,
    "h": 1.0,
    "day": 24.0,
    "days": 24.0,
    "d": 24.0,
    "week": 168.0,
    "weeks": 168.0,
    "wk": 168.0,
}


def hours_per(unit: str) -> float:
    norm = _normalize(unit)
    factor = _TIME_FACTORS_HOURS.get(norm)
    if factor is None:
        raise ConfigurationError(f"Unknown time unit '{unit}'")
    return factor


def time_scale_factor(model_unit: str, output_unit: str) -> float:
    """Factor that converts a time in ``model_unit`` into ``output_unit``.

    ``time_scale_factor("hour", "day") == 1/24`` which is the usual
    ``tscale`` for an hourly model reported in days.
    """
    return hours_per(model_unit) / hours_per(output_unit)


def validate_tscale(value: object) -> float:
    if isinstance(value, bool):
        raise ConfigurationError("tscale must be a positive number, not a boolean")
    try:
        factor = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"tscale must be a positive number, got {value!r}") from exc
    if not math.isfinite(factor) or factor <= 0.0:
        raise ConfigurationError(f"tscale must be positive and finite, got {value!r}")
    return factor


__all__ = ["hours_per", "time_scale_factor", "validate_tscale"]
