"""Immutable output and run configuration."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Tuple

from .design import DesignAssignment
from .entities import ID_COLUMN, TIME_COLUMN
from .errors import ConfigurationError
from .model import Model
from .units import validate_tscale

FAILURE_ROW_POLICIES = ("omit", "na")


def _names(values: Iterable[str], label: str) -> Tuple[str, ...]:
    ordered: List[str] = []
    for value in values:
        if not isinstance(value, str) or not value.strip():
            raise ConfigurationError(f"{label} names must be non-empty strings, got {value!r}")
        for token in value.split(","):
            token = token.strip()
            if token and token not in ordered:
                ordered.append(token)
    return tuple(ordered)


@dataclass(frozen=True)
class SimConfig:
    """What a run reports: selected outputs, carried items, time scale, filters.

    ``request`` holds compartments selected by ``req``; ``outvars`` holds the
    compartments and captures selected by ``Req`` and, when non-empty, is
    exclusive.  ``tscale`` is replaced, not multiplied, by later calls.
    """

    request: Tuple[str, ...] = ()
    outvars: Tuple[str, ...] = ()
    carry_out: Tuple[str, ...] = ()
    tscale: float = 1.0
    obsonly: bool = False
    obsaug: bool = False
    design: Optional[DesignAssignment] = None

    def with_request(self, model: Model, *names: str) -> "SimConfig":
        selected = _names(names, "req")
        unknown = [name for name in selected if name not in model.compartments]
        if unknown:
            raise ConfigurationError(f"req() accepts compartments only; unknown or not compartments: {unknown}")
        return self._checked(model, replace(self, request=selected))

    def with_outvars(self, model: Model, *names: str) -> "SimConfig":
        selected = _names(names, "Req")
        known = set(model.compartments) | set(model.captures)
        unknown = [name for name in selected if name not in known]
        if unknown:
            raise ConfigurationError(f"Req() names are not compartments or captures: {unknown}")
        return self._checked(model, replace(self, outvars=selected))

    def with_carry_out(self, model: Model, *names: str) -> "SimConfig":
        return self._checked(model, replace(self, carry_out=_names(names, "carry_out")))

    def with_tscale(self, value: object = 1.0) -> "SimConfig":
        return replace(self, tscale=validate_tscale(value))

    def with_obsonly(self, value: bool = True) -> "SimConfig":
        return replace(self, obsonly=bool(value))

    def with_obsaug(self, value: bool = True) -> "SimConfig":
        return replace(self, obsaug=bool(value))

    def with_design(self, assignment: Optional[DesignAssignment]) -> "SimConfig":
        return replace(self, design=assignment)

    def _checked(self, model: Model, config: "SimConfig") -> "SimConfig":
        outputs = select_outputs(model, config)
        clashes = [name for name in config.carry_out if name in outputs or name in (ID_COLUMN, TIME_COLUMN)]
        if clashes:
            raise ConfigurationError(f"carry_out items collide with output columns: {clashes}")
        return config


def select_outputs(model: Model, config: SimConfig) -> Tuple[str, ...]:
    """Output items in column order for ``model`` under ``config``."""
    if config.outvars:
        return config.outvars
    if config.request:
        return config.request + tuple(model.captures)
    return tuple(model.compartments) + tuple(model.captures)


@dataclass(frozen=True)
class RunOptions:
    """How a run executes: parallelism, deadline, strictness, failed rows."""

    workers: int = 1
    timeout_s: Optional[float] = None
    strict: bool = False
    failure_rows: str = "omit"

    def __post_init__(self) -> None:
        if int(self.workers) < 1:
            raise ConfigurationError(f"workers must be at least 1, got {self.workers}")
        if self.timeout_s is not None and (not math.isfinite(self.timeout_s) or self.timeout_s <= 0.0):
            raise ConfigurationError(f"timeout_s must be positive, got {self.timeout_s}")
        if self.failure_rows not in FAILURE_ROW_POLICIES:
            raise ConfigurationError(
                f"failure_rows must be one of {FAILURE_ROW_POLICIES}, got {self.failure_rows!r}"
            )


__all__ = ["FAILURE_ROW_POLICIES", "RunOptions", "SimConfig", "select_outputs"]
