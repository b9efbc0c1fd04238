"""Turn integrated timelines into output rows and the final result table."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .config import SimConfig, select_outputs
from .data import IndividualRecords
from .entities import (
    ID_COLUMN,
    MISSING,
    ROW_AUGMENTED,
    ROW_EVENT,
    ROW_OBSERVATION,
    TIME_COLUMN,
    ObservationRecord,
    ResultTable,
    TimelineEntry,
)
from .model import Model
from .segment_integrator import IntegrationTrace
from .timeline import KIND_EVENT, KIND_OBSERVATION, RANK_OBSERVATION, event_times

logger = logging.getLogger(__name__)

_AUGMENTED_RANK = RANK_OBSERVATION + 1
_AUGMENTED_RECORD = ObservationRecord(time=0.0)


@dataclass
class AssembledRows:
    """Column-wise rows for one individual."""

    columns: Dict[str, List[object]]
    kinds: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.kinds)


@dataclass(frozen=True)
class _Candidate:
    key: Tuple[float, int, int]
    kind: str
    index: int
    time: float
    record: object


def _candidates(
    timeline: Sequence[TimelineEntry],
    obsaug: bool,
    obsonly: bool,
    markers_at_samples: bool = True,
) -> List[_Candidate]:
    rows: List[_Candidate] = []
    observed_times = {entry.time for entry in timeline if entry.kind == KIND_OBSERVATION}
    reported_times = set(observed_times)
    last_index_at: Dict[float, int] = {}
    for index, entry in enumerate(timeline):
        last_index_at[entry.time] = index
        if entry.kind == KIND_OBSERVATION:
            rows.append(_Candidate((entry.time, entry.rank, entry.seq), ROW_OBSERVATION, index, entry.time, entry.record))
        elif entry.kind == KIND_EVENT:
            if obsonly or entry.implicit or (not markers_at_samples and entry.time in observed_times):
                continue
            reported_times.add(entry.time)
            rows.append(_Candidate((entry.time, entry.rank, entry.seq), ROW_EVENT, index, entry.time, entry.record))
    if obsaug:
        # one row per event time no kept row reports yet
        for time_value in event_times(timeline):
            if time_value in reported_times:
                continue
            index = last_index_at[time_value]
            rows.append(
                _Candidate((time_value, _AUGMENTED_RANK, index), ROW_AUGMENTED, index, time_value, _AUGMENTED_RECORD)
            )
    rows.sort(key=lambda candidate: candidate.key)
    return rows


class OutputAssembler:
    """Builds rows: selection, carry_out, tscale, then obsaug and obsonly.

    ``obsaug`` rows are observation-type rows, so ``obsonly`` keeps them and
    only drops event-marker rows. An ``aug`` row is added only where no kept
    observation or marker row already reports that event time.
    """

    def __init__(self, model: Model, config: SimConfig, *, failure_rows: str = "omit") -> None:
        self.model = model
        self.config = config
        self.failure_rows = failure_rows
        self.outputs = select_outputs(model, config)
        self.columns: Tuple[str, ...] = (ID_COLUMN, TIME_COLUMN) + self.outputs + tuple(config.carry_out)
        self._compartment_index = {name: idx for idx, name in enumerate(model.compartments)}
        self.needs_captures = any(name in model.captures for name in self.outputs)

    def _carry_value(
        self,
        name: str,
        record: object,
        time_value: float,
        records: Optional[IndividualRecords],
        idata_row: Optional[Mapping[str, object]],
    ) -> object:
        if record is not None and record.has_field(name):  # type: ignore[attr-defined]
            return record.field_value(name)  # type: ignore[attr-defined]
        if records is not None and records.rows and name in records.rows[0][1]:
            value = records.value_at(name, time_value)
            return MISSING if value is None else value
        if idata_row is not None and name in idata_row:
            return idata_row[name]
        return MISSING

    def assemble(
        self,
        ident: object,
        timeline: Sequence[TimelineEntry],
        trace: IntegrationTrace,
        *,
        records: Optional[IndividualRecords] = None,
        idata_row: Optional[Mapping[str, object]] = None,
        markers_at_samples: bool = True,
    ) -> AssembledRows:
        """Rows for one individual in time order.

        With ``markers_at_samples`` false an event-marker row is skipped when
        an observation at the same time already reports the post-event state;
        design-sampled runs use this, data-set runs keep one row per record.
        """
        rows = AssembledRows(columns={column: [] for column in self.columns})
        candidates = _candidates(timeline, self.config.obsaug, self.config.obsonly, markers_at_samples)

        dropped = 0
        for candidate in candidates:
            state = trace.states[candidate.index]
            if state is None and self.failure_rows == "omit":
                dropped += 1
                continue
            values: Dict[str, object] = {ID_COLUMN: ident, TIME_COLUMN: candidate.time * self.config.tscale}
            if state is None:
                for name in self.outputs:
                    values[name] = MISSING
            else:
                captured: Mapping[str, float] = trace.captured[candidate.index] or {}
                for name in self.outputs:
                    if name in self._compartment_index:
                        values[name] = float(state[self._compartment_index[name]])
                    else:
                        values[name] = captured[name]
            for name in self.config.carry_out:
                values[name] = self._carry_value(name, candidate.record, candidate.time, records, idata_row)
            for column in self.columns:
                rows.columns[column].append(values[column])
            rows.kinds.append(candidate.kind)
        if dropped:
            logger.debug("ID %s: omitted %d rows after integration failure", ident, dropped)
        return rows


def _column_array(values: List[object]) -> np.ndarray:
    try:
        array = np.asarray(values)
    except ValueError:
        return np.asarray(values, dtype=object)
    if array.dtype.kind in "biuf":
        return array
    return np.asarray(values, dtype=object)


def build_result_table(
    columns: Sequence[str],
    parts: Sequence[AssembledRows],
    *,
    provenance: Optional[Mapping[str, str]] = None,
) -> ResultTable:
    """Concatenate per-individual rows in the given individual order."""
    data: Dict[str, np.ndarray] = {}
    for column in columns:
        merged: List[object] = []
        for part in parts:
            merged.extend(part.columns[column])
        data[column] = _column_array(merged)
    kinds: List[str] = []
    for part in parts:
        kinds.extend(part.kinds)
    return ResultTable(
        columns=tuple(columns),
        data=data,
        kinds=np.asarray(kinds, dtype=object),
        provenance=dict(provenance or {}),
    )


__all__ = ["AssembledRows", "OutputAssembler", "build_result_table"]
