"""Dosing/event records and the ``ev`` builder."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterator, List, Tuple, Type

import pandas as pd

from .entities import (
    EVID_DOSE,
    EVID_RESET_DOSE,
    RECORD_FIELDS,
    VALID_EVIDS,
    CompartmentRef,
    EventRecord,
)
from .errors import ConfigurationError, SimError


def validate_event(record: EventRecord, error: Type[SimError] = ConfigurationError) -> EventRecord:
    """Check one record; ``error`` lets data-set loading raise ``DataError``."""
    if not math.isfinite(record.time) or record.time < 0.0:
        raise error(f"event time must be finite and non-negative, got {record.time!r}")
    if record.evid not in VALID_EVIDS:
        raise error(f"unsupported evid {record.evid!r}; expected one of {VALID_EVIDS}")
    if not math.isfinite(record.amt):
        raise error("event amt must be finite")
    if record.rate < 0.0:
        raise error(f"modeled infusion rates ({record.rate:g}) are not supported")
    if record.addl < 0:
        raise error(f"addl must be non-negative, got {record.addl}")
    if record.addl > 0 and record.ii <= 0.0:
        raise error("addl requires a positive ii")
    if record.ss not in (0, 1):
        raise error(f"ss must be 0 or 1, got {record.ss}")
    if record.ss == 1 and (record.ii <= 0.0 or record.evid not in (EVID_DOSE, EVID_RESET_DOSE)):
        raise error("steady-state records must be doses with a positive ii")
    clash = set(record.extras).intersection(RECORD_FIELDS)
    if clash:
        raise error(f"extras shadow record fields: {sorted(clash)}")
    return record


@dataclass(frozen=True)
class EventSequence:
    """Time-ordered collection of event records applied to each individual."""

    records: Tuple[EventRecord, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        ordered = sorted(self.records, key=lambda record: record.time)
        object.__setattr__(self, "records", tuple(ordered))

    def __add__(self, other: "EventSequence") -> "EventSequence":
        if not isinstance(other, EventSequence):
            return NotImplemented
        return EventSequence(self.records + other.records)

    def __iter__(self) -> Iterator[EventRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    @property
    def extra_names(self) -> Tuple[str, ...]:
        names: List[str] = []
        for record in self.records:
            for name in record.extras:
                if name not in names:
                    names.append(name)
        return tuple(names)

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for record in self.records:
            row = {"time": record.time}
            row.update({name: getattr(record, name) for name in RECORD_FIELDS})
            row.update(record.extras)
            rows.append(row)
        return pd.DataFrame(rows, columns=["time", *RECORD_FIELDS, *self.extra_names])


def ev(
    time: float = 0.0,
    amt: float = 0.0,
    cmt: CompartmentRef = 1,
    *,
    evid: int = EVID_DOSE,
    rate: float = 0.0,
    ii: float = 0.0,
    addl: int = 0,
    ss: int = 0,
    **extras: object,
) -> EventSequence:
    """Build a single-record event sequence; combine sequences with ``+``.

    Keyword arguments beyond the record fields are pass-through items that
    ``carry_out`` can copy into output rows.
    """

    record = EventRecord(
        time=float(time),
        amt=float(amt),
        cmt=cmt,
        evid=int(evid),
        rate=float(rate),
        ii=float(ii),
        addl=int(addl),
        ss=int(ss),
        extras=dict(extras),
    )
    return EventSequence((validate_event(record),))


__all__ = ["EventSequence", "ev", "validate_event"]
