"""Normalisation of input data sets and individual-level (idata) tables."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .design import scalar
from .entities import (
    EVID_OBSERVATION,
    ID_COLUMN,
    RECORD_FIELDS,
    TIME_COLUMN,
    EventRecord,
    ObservationRecord,
)
from .errors import DataError
from .events import validate_event

_CANONICAL = (ID_COLUMN, TIME_COLUMN) + RECORD_FIELDS
_DEFAULTS = {"amt": 0.0, "cmt": 1, "rate": 0.0, "ii": 0.0, "addl": 0, "ss": 0}


def _canonicalise_columns(frame: pd.DataFrame, names: Sequence[str], label: str) -> pd.DataFrame:
    renames: Dict[str, str] = {}
    for canonical in names:
        matches = [column for column in frame.columns if str(column).lower() == canonical.lower()]
        if len(matches) > 1:
            raise DataError(f"{label} has ambiguous columns for '{canonical}': {matches}")
        if matches and matches[0] != canonical:
            renames[matches[0]] = canonical
    return frame.rename(columns=renames)


def _cmt_value(raw: object) -> object:
    value = scalar(raw)
    if isinstance(value, float):
        if math.isnan(value):
            return 1
        if value.is_integer():
            return int(value)
    return value


@dataclass(frozen=True)
class IndividualRecords:
    """One individual's slice of the data set, in input order."""

    events: Tuple[EventRecord, ...]
    observations: Tuple[ObservationRecord, ...]
    rows: Tuple[Tuple[float, Mapping[str, object]], ...]

    def value_at(self, name: str, time: float) -> object:
        """Value of ``name`` in the data record in effect at ``time``.

        The last record at or before ``time`` wins; times before the first
        record take the first record's value.
        """
        current = self.rows[0][1].get(name) if self.rows else None
        for row_time, values in self.rows:
            if row_time > time:
                break
            current = values.get(name)
        return current


@dataclass(frozen=True)
class DataSet:
    frame: pd.DataFrame
    extra_columns: Tuple[str, ...]
    ids: Tuple[object, ...]
    _records: Mapping[object, IndividualRecords]

    def records_for(self, ident: object) -> IndividualRecords:
        try:
            return self._records[scalar(ident)]
        except KeyError as exc:
            raise DataError(f"ID {ident!r} is not in the data set") from exc

    @property
    def columns(self) -> Tuple[str, ...]:
        return tuple(str(column) for column in self.frame.columns)


def normalize_data_set(frame: pd.DataFrame) -> DataSet:
    """Validate a dosing/observation data set and split it by individual."""

    if not isinstance(frame, pd.DataFrame):
        raise DataError(f"data set must be a pandas DataFrame, got {type(frame).__name__}")
    if frame.empty:
        raise DataError("data set does not contain any rows")
    data = _canonicalise_columns(frame.copy(), _CANONICAL, "data set")
    missing = [column for column in (ID_COLUMN, TIME_COLUMN) if column not in data.columns]
    if missing:
        raise DataError(f"data set is missing required columns: {missing}")
    if data[ID_COLUMN].isna().any():
        raise DataError("data set has missing ID values")

    times = pd.to_numeric(data[TIME_COLUMN], errors="coerce")
    if times.isna().any() or (times < 0).any():
        raise DataError("data set time values must be numeric and non-negative")
    data[TIME_COLUMN] = times.astype(float)

    for column, default in _DEFAULTS.items():
        if column not in data.columns:
            data[column] = default
        elif column != "cmt":
            data[column] = pd.to_numeric(data[column], errors="coerce").fillna(default)
    if "evid" not in data.columns:
        data["evid"] = np.where(data["amt"] > 0.0, 1, EVID_OBSERVATION)
    elif data["evid"].isna().any():
        raise DataError("data set has missing evid values")
    data["evid"] = data["evid"].astype(int)

    decreasing = data.groupby(ID_COLUMN, sort=False)[TIME_COLUMN].diff() < 0
    if decreasing.any():
        bad = data.loc[decreasing, ID_COLUMN].unique().tolist()
        raise DataError(f"data set time is not sorted within ID {bad}")

    extra_columns = tuple(str(column) for column in data.columns if column not in _CANONICAL)
    ids = tuple(scalar(value) for value in pd.unique(data[ID_COLUMN]))

    records: Dict[object, IndividualRecords] = {}
    for ident, block in data.groupby(ID_COLUMN, sort=False):
        events: List[EventRecord] = []
        observations: List[ObservationRecord] = []
        rows: List[Tuple[float, Mapping[str, object]]] = []
        for row in block.to_dict(orient="records"):
            extras = {name: scalar(row[name]) for name in extra_columns}
            time_value = float(row[TIME_COLUMN])
            rows.append((time_value, extras))
            if int(row["evid"]) == EVID_OBSERVATION:
                observations.append(ObservationRecord(time=time_value, extras=extras))
                continue
            record = EventRecord(
                time=time_value,
                amt=float(row["amt"]),
                cmt=_cmt_value(row["cmt"]),
                evid=int(row["evid"]),
                rate=float(row["rate"]),
                ii=float(row["ii"]),
                addl=int(row["addl"]),
                ss=int(row["ss"]),
                extras=extras,
            )
            events.append(validate_event(record, DataError))
        records[scalar(ident)] = IndividualRecords(
            events=tuple(events),
            observations=tuple(observations),
            rows=tuple(rows),
        )
    return DataSet(frame=data, extra_columns=extra_columns, ids=ids, _records=records)


@dataclass(frozen=True)
class IData:
    """Individual-level table: one row per ``ID``."""

    frame: pd.DataFrame
    ids: Tuple[object, ...]
    _rows: Mapping[object, Mapping[str, object]]

    @property
    def columns(self) -> Tuple[str, ...]:
        return tuple(str(column) for column in self.frame.columns)

    def has_column(self, name: str) -> bool:
        return name in self.frame.columns

    def row_for(self, ident: object) -> Optional[Mapping[str, object]]:
        return self._rows.get(scalar(ident))


def normalize_idata(frame: pd.DataFrame) -> IData:
    if not isinstance(frame, pd.DataFrame):
        raise DataError(f"idata must be a pandas DataFrame, got {type(frame).__name__}")
    if frame.empty:
        raise DataError("idata does not contain any rows")
    data = _canonicalise_columns(frame.copy(), (ID_COLUMN,), "idata")
    if ID_COLUMN not in data.columns:
        raise DataError("idata is missing the ID column")
    if data[ID_COLUMN].isna().any():
        raise DataError("idata has missing ID values")
    duplicated = data[ID_COLUMN].duplicated()
    if duplicated.any():
        raise DataError(f"idata has duplicate IDs: {data.loc[duplicated, ID_COLUMN].tolist()}")
    rows: Dict[object, Mapping[str, object]] = {}
    for row in data.to_dict(orient="records"):
        rows[scalar(row[ID_COLUMN])] = {str(key): scalar(value) for key, value in row.items()}
    ids = tuple(scalar(value) for value in data[ID_COLUMN].tolist())
    return IData(frame=data, ids=ids, _rows=rows)


__all__ = ["DataSet", "IData", "IndividualRecords", "normalize_data_set", "normalize_idata"]
