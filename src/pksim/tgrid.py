"""Observation time grids (designs) and screening of design candidates."""

from __future__ import annotations

import math
import numbers
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import ConfigurationError

_TIME_TOL = 1e-9
_TIME_DIGITS = 10


def _clean_times(values: Iterable[float]) -> np.ndarray:
    times = np.asarray(list(values), dtype=float)
    if times.size == 0:
        return times
    if not np.all(np.isfinite(times)):
        raise ConfigurationError("design times must be finite")
    if np.any(times < -_TIME_TOL):
        raise ConfigurationError(f"design times must be non-negative, got min {times.min():g}")
    times = np.clip(np.round(times, _TIME_DIGITS), 0.0, None)
    return np.unique(times)


@dataclass(frozen=True)
class TGrid:
    """Regular grid ``start..end`` by ``delta`` plus ``add`` extra times.

    ``offset`` and ``scale`` transform the final times as ``t * scale +
    offset``.
    """

    start: float = 0.0
    end: float = 24.0
    delta: float = 1.0
    add: Tuple[float, ...] = ()
    offset: float = 0.0
    scale: float = 1.0
    label: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "add", tuple(float(value) for value in self.add))
        if self.end < self.start:
            raise ConfigurationError(f"tgrid end ({self.end:g}) is before start ({self.start:g})")
        if self.delta <= 0.0 and self.end > self.start:
            raise ConfigurationError(f"tgrid delta must be positive, got {self.delta:g}")
        if self.scale <= 0.0 or not math.isfinite(self.scale):
            raise ConfigurationError(f"tgrid scale must be positive, got {self.scale:g}")

    def times(self) -> np.ndarray:
        if self.end > self.start:
            count = int(math.floor((self.end - self.start) / self.delta + _TIME_TOL))
            regular = self.start + self.delta * np.arange(count + 1, dtype=float)
        else:
            regular = np.array([self.start], dtype=float)
        base = np.concatenate((regular, np.asarray(self.add, dtype=float)))
        return _clean_times(base * self.scale + self.offset)

    def __add__(self, other: "DesignLike") -> "TGrids":
        return TGrids.of(self, other)

    def __len__(self) -> int:
        return int(self.times().size)


@dataclass(frozen=True)
class TGrids:
    """Ordered collection of grids; its times are the sorted union."""

    grids: Tuple[Union[TGrid, Tuple[float, ...]], ...] = field(default_factory=tuple)
    label: Optional[str] = None

    @classmethod
    def of(cls, *items: "DesignLike", label: Optional[str] = None) -> "TGrids":
        flat: List[Union[TGrid, Tuple[float, ...]]] = []
        for item in items:
            if isinstance(item, TGrids):
                flat.extend(item.grids)
            elif isinstance(item, TGrid):
                flat.append(item)
            elif is_numeric_times(item):
                flat.append(tuple(float(value) for value in item))  # type: ignore[union-attr]
            else:
                raise ConfigurationError(f"cannot combine {type(item).__name__} into a tgrids design")
        return cls(grids=tuple(flat), label=label)

    def times(self) -> np.ndarray:
        pieces = [grid.times() if isinstance(grid, TGrid) else np.asarray(grid, dtype=float) for grid in self.grids]
        if not pieces:
            return np.array([], dtype=float)
        return _clean_times(np.concatenate(pieces))

    def __add__(self, other: "DesignLike") -> "TGrids":
        return TGrids.of(self, other)


DesignLike = Union[TGrid, TGrids, Sequence[float], np.ndarray]


def is_numeric_times(value: object) -> bool:
    if isinstance(value, (str, bytes)) or isinstance(value, (TGrid, TGrids)):
        return False
    if isinstance(value, np.ndarray):
        return value.ndim == 1 and value.size > 0 and np.issubdtype(value.dtype, np.number) and value.dtype != bool
    if not isinstance(value, (list, tuple)) or not value:
        return False
    return all(isinstance(item, numbers.Real) and not isinstance(item, bool) for item in value)


def is_design(value: object) -> bool:
    return isinstance(value, (TGrid, TGrids)) or is_numeric_times(value)


def design_times(value: DesignLike) -> np.ndarray:
    if isinstance(value, (TGrid, TGrids)):
        return value.times()
    if is_numeric_times(value):
        return _clean_times(np.asarray(value, dtype=float))
    raise ConfigurationError(f"{type(value).__name__} is not a tgrid, tgrids or numeric time vector")


@dataclass(frozen=True)
class DesignScreen:
    """Result of screening candidate designs: what was kept and what was not."""

    accepted: Tuple[DesignLike, ...]
    rejected: Tuple[Tuple[int, object], ...]

    @property
    def rejected_positions(self) -> Tuple[int, ...]:
        return tuple(position for position, _ in self.rejected)


def screen_designs(candidates: Sequence[object]) -> DesignScreen:
    """Keep tgrid, tgrids and numeric vectors; drop everything else."""
    accepted: List[DesignLike] = []
    rejected: List[Tuple[int, object]] = []
    for position, candidate in enumerate(candidates):
        if is_design(candidate):
            accepted.append(candidate)  # type: ignore[arg-type]
        else:
            rejected.append((position, candidate))
    return DesignScreen(accepted=tuple(accepted), rejected=tuple(rejected))


__all__ = [
    "DesignLike",
    "DesignScreen",
    "TGrid",
    "TGrids",
    "design_times",
    "is_design",
    "is_numeric_times",
    "screen_designs",
]
