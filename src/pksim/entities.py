"""Core dataclasses shared across the simulation runtime."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
import sympy as sp


SEMANTICS_VERSION = "1.0"
MISSING = float("nan")
ID_COLUMN = "ID"
TIME_COLUMN = "time"
RECORD_FIELDS = ("evid", "amt", "cmt", "rate", "ii", "addl", "ss")

EVID_OBSERVATION = 0
EVID_DOSE = 1
EVID_OTHER = 2
EVID_RESET = 3
EVID_RESET_DOSE = 4
EVID_REPLACE = 8
VALID_EVIDS = (EVID_DOSE, EVID_OTHER, EVID_RESET, EVID_RESET_DOSE, EVID_REPLACE)

ROW_OBSERVATION = "obs"
ROW_EVENT = "event"
ROW_AUGMENTED = "aug"

CompartmentRef = Union[int, str]


@dataclass(frozen=True)
class CompiledExpression:
    tokens: Tuple[str, ...]
    func: object
    sympy_expr: Optional[sp.Expr] = None

    def evaluate(self, context: Mapping[str, float]) -> float:
        result = self.evaluate_raw(context)
        return float(result)

    def evaluate_raw(self, context: Mapping[str, float]):
        if not self.tokens:
            return self.func()
        values = [context[token] for token in self.tokens]
        return self.func(*values)


@dataclass(frozen=True)
class EventRecord:
    """A scheduled state perturbation plus its pass-through fields."""

    time: float
    amt: float = 0.0
    cmt: CompartmentRef = 1
    evid: int = EVID_DOSE
    rate: float = 0.0
    ii: float = 0.0
    addl: int = 0
    ss: int = 0
    extras: Mapping[str, object] = field(default_factory=dict)

    def field_value(self, name: str) -> object:
        if name in RECORD_FIELDS:
            return getattr(self, name)
        return self.extras[name]

    def has_field(self, name: str) -> bool:
        return name in RECORD_FIELDS or name in self.extras

    @property
    def is_infusion(self) -> bool:
        return self.evid in (EVID_DOSE, EVID_RESET_DOSE) and self.rate > 0.0 and self.amt > 0.0

    @property
    def infusion_duration(self) -> float:
        return self.amt / self.rate if self.is_infusion else 0.0


@dataclass(frozen=True)
class ObservationRecord:
    time: float
    extras: Mapping[str, object] = field(default_factory=dict)

    def field_value(self, name: str) -> object:
        if name in RECORD_FIELDS:
            return 0
        return self.extras[name]

    def has_field(self, name: str) -> bool:
        return name in RECORD_FIELDS or name in self.extras


@dataclass(frozen=True, order=True)
class TimelineEntry:
    """One point on an individual's merged timeline.

    ``rank`` orders entries sharing a time: 0 for events, 1 for infusion ends,
    2 for observations.  ``seq`` preserves input order within a rank.
    """

    time: float
    rank: int
    seq: int
    kind: str = field(compare=False)
    record: Union[EventRecord, ObservationRecord, None] = field(default=None, compare=False)
    implicit: bool = field(default=False, compare=False)
    infusion_id: Optional[int] = field(default=None, compare=False)
    compartment: Optional[int] = field(default=None, compare=False)


@dataclass(frozen=True)
class IndividualDiagnostic:
    """Per-individual outcome attached to every simulation result."""

    individual: object
    ok: bool = True
    message: str = ""
    failed_at: Optional[float] = None
    timed_out: bool = False
    rows: int = 0


@dataclass(frozen=True)
class ResultTable:
    """Ordered, read-only output table across all individuals."""

    columns: Tuple[str, ...]
    data: Dict[str, np.ndarray]
    kinds: np.ndarray
    semantics_version: str = SEMANTICS_VERSION
    provenance: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for values in self.data.values():
            values.setflags(write=False)
        self.kinds.setflags(write=False)

    def __len__(self) -> int:
        return int(self.kinds.size)

    def column(self, name: str) -> np.ndarray:
        return self.data[name]

    @property
    def output_columns(self) -> Tuple[str, ...]:
        return self.columns[2:]

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame({column: self.data[column] for column in self.columns})
        frame.attrs["semantics_version"] = self.semantics_version
        if self.provenance:
            frame.attrs["provenance"] = dict(self.provenance)
        return frame

    def save_csv(
        self,
        path: Path,
        *,
        include_header_manifest: bool = True,
        **to_csv_kwargs,
    ) -> None:
        frame = self.to_frame()
        path.parent.mkdir(parents=True, exist_ok=True)
        frame.to_csv(path, index=False, **to_csv_kwargs)
        if include_header_manifest:
            manifest_path = path.with_suffix(path.suffix + ".header.txt")
            manifest_path.write_text("\n".join(self.columns), encoding="utf8")


@dataclass(frozen=True)
class SimulationResult:
    table: ResultTable
    diagnostics: Tuple[IndividualDiagnostic, ...]
    warnings: Tuple[str, ...] = ()

    @property
    def failed(self) -> Tuple[IndividualDiagnostic, ...]:
        return tuple(diag for diag in self.diagnostics if not diag.ok)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_frame(self) -> pd.DataFrame:
        return self.table.to_frame()
