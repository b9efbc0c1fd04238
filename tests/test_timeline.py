from __future__ import annotations

import numpy as np

from src.pksim.events import ev
from src.pksim.library import pk1cmt
from src.pksim.timeline import (
    KIND_EVENT,
    KIND_INFUSION_END,
    KIND_OBSERVATION,
    build_timeline,
    event_times,
    observations_from_times,
)


def _timeline(events, times):
    model = pk1cmt()
    return build_timeline(
        events.records,
        observations_from_times(np.asarray(times, dtype=float)),
        resolve_cmt=model.resolve_compartment,
    )


def test_events_precede_observations_at_same_time() -> None:
    timeline = _timeline(ev(time=6, amt=100), [0, 6, 12])
    kinds = [(entry.time, entry.kind) for entry in timeline]
    assert kinds == [
        (0.0, KIND_OBSERVATION),
        (6.0, KIND_EVENT),
        (6.0, KIND_OBSERVATION),
        (12.0, KIND_OBSERVATION),
    ]


def test_addl_doses_are_implicit_entries() -> None:
    timeline = _timeline(ev(amt=100, ii=12, addl=2), [])
    doses = [entry for entry in timeline if entry.kind == KIND_EVENT]
    assert [entry.time for entry in doses] == [0.0, 12.0, 24.0]
    assert [entry.implicit for entry in doses] == [False, True, True]
    assert event_times(timeline) == (0.0, 12.0, 24.0)


def test_infusion_end_sorts_before_observation_at_same_time() -> None:
    timeline = _timeline(ev(amt=100, rate=25, cmt="CENT"), [4.0])
    assert [entry.kind for entry in timeline] == [KIND_EVENT, KIND_INFUSION_END, KIND_OBSERVATION]
    start, end, _ = timeline
    assert end.time == 4.0
    assert end.implicit
    assert start.infusion_id == end.infusion_id
    assert start.compartment == 1


def test_simultaneous_events_keep_input_order() -> None:
    timeline = _timeline(ev(amt=10) + ev(amt=20, cmt=2), [])
    assert [entry.record.amt for entry in timeline] == [10.0, 20.0]
