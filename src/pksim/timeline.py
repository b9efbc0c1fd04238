"""Merge dosing/event records with observation times into one timeline."""

from __future__ import annotations

import itertools
from dataclasses import replace
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .entities import (
    EVID_DOSE,
    EVID_REPLACE,
    EVID_RESET_DOSE,
    CompartmentRef,
    EventRecord,
    ObservationRecord,
    TimelineEntry,
)

RANK_EVENT = 0
RANK_INFUSION_END = 1
RANK_OBSERVATION = 2

KIND_EVENT = "event"
KIND_INFUSION_END = "infusion_end"
KIND_OBSERVATION = "obs"


def expand_additional_doses(record: EventRecord) -> List[EventRecord]:
    """Materialise ``addl`` repeats spaced by ``ii`` after the record."""
    if record.addl <= 0:
        return []
    return [
        replace(record, time=record.time + occurrence * record.ii, addl=0, ss=0)
        for occurrence in range(1, record.addl + 1)
    ]


def build_timeline(
    events: Sequence[EventRecord],
    observations: Iterable[ObservationRecord],
    *,
    resolve_cmt: Callable[[CompartmentRef], int],
) -> Tuple[TimelineEntry, ...]:
    """Return entries ordered by time; events precede observations at a tie.

    Entries created from ``addl`` expansion and infusion ends are marked
    ``implicit`` and never become event-marker rows.
    """

    seq = itertools.count()
    infusion_ids = itertools.count()
    entries: List[TimelineEntry] = []

    def push_dose(record: EventRecord, implicit: bool) -> None:
        compartment: Optional[int] = None
        if record.evid in (EVID_DOSE, EVID_RESET_DOSE, EVID_REPLACE):
            compartment = resolve_cmt(record.cmt)
        infusion_id = next(infusion_ids) if record.is_infusion else None
        entries.append(
            TimelineEntry(
                time=record.time,
                rank=RANK_EVENT,
                seq=next(seq),
                kind=KIND_EVENT,
                record=record,
                implicit=implicit,
                infusion_id=infusion_id,
                compartment=compartment,
            )
        )
        if infusion_id is not None:
            entries.append(
                TimelineEntry(
                    time=record.time + record.infusion_duration,
                    rank=RANK_INFUSION_END,
                    seq=next(seq),
                    kind=KIND_INFUSION_END,
                    record=record,
                    implicit=True,
                    infusion_id=infusion_id,
                    compartment=compartment,
                )
            )

    for record in sorted(events, key=lambda item: item.time):
        push_dose(record, implicit=False)
        for repeat in expand_additional_doses(record):
            push_dose(repeat, implicit=True)

    for observation in observations:
        entries.append(
            TimelineEntry(
                time=observation.time,
                rank=RANK_OBSERVATION,
                seq=next(seq),
                kind=KIND_OBSERVATION,
                record=observation,
            )
        )
    entries.sort()
    return tuple(entries)


def observations_from_times(times: np.ndarray) -> Tuple[ObservationRecord, ...]:
    return tuple(ObservationRecord(time=float(value)) for value in times)


def event_times(timeline: Sequence[TimelineEntry]) -> Tuple[float, ...]:
    """Distinct times of dose/event entries, explicit or implicit."""
    times = {entry.time for entry in timeline if entry.kind == KIND_EVENT}
    return tuple(sorted(times))


__all__ = [
    "KIND_EVENT",
    "KIND_INFUSION_END",
    "KIND_OBSERVATION",
    "RANK_EVENT",
    "RANK_INFUSION_END",
    "RANK_OBSERVATION",
    "build_timeline",
    "event_times",
    "expand_additional_doses",
    "observations_from_times",
]
