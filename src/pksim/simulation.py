"""Run entry point: per-individual integration and result assembly."""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from .assembler import AssembledRows, OutputAssembler, build_result_table
from .config import RunOptions, SimConfig
from .data import DataSet, IData, IndividualRecords, normalize_data_set, normalize_idata
from .entities import (
    RECORD_FIELDS,
    SEMANTICS_VERSION,
    EventRecord,
    IndividualDiagnostic,
    ObservationRecord,
    SimulationResult,
    TimelineEntry,
)
from .errors import ConfigurationError, DataError, IntegrationError, RunCancelled
from .events import EventSequence
from .model import Model
from .segment_integrator import SolverConfig, integrate_timeline
from .tgrid import DesignLike, TGrid, design_times
from .timeline import build_timeline, observations_from_times

logger = logging.getLogger(__name__)

DEFAULT_GRID = TGrid(0.0, 24.0, 1.0)
INIT_SUFFIX = "_0"


class _RunGuard:
    """Shared cancellation flag plus an optional wall-clock deadline."""

    def __init__(self, timeout_s: Optional[float]) -> None:
        self._event = threading.Event()
        self.deadline = time.monotonic() + timeout_s if timeout_s is not None else None
        self.reason = "run timeout expired"

    def cancel(self, reason: Optional[str] = None) -> None:
        if reason and not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self._event.set()
            return True
        return False

    def check(self) -> None:
        if self.cancelled:
            raise RunCancelled(self.reason)


@dataclass(frozen=True)
class _IndividualJob:
    index: int
    ident: object
    timeline: Tuple[TimelineEntry, ...]
    params: Mapping[str, float]
    init: Mapping[str, float]
    covariates: Tuple[Tuple[float, Mapping[str, float]], ...]
    records: Optional[IndividualRecords]
    idata_row: Optional[Mapping[str, object]]
    markers_at_samples: bool = True


@dataclass(frozen=True)
class _IndividualOutcome:
    rows: Optional[AssembledRows]
    diagnostic: IndividualDiagnostic
    error: Optional[IntegrationError] = None


def _log_solver_banner(model: Model, solver: SolverConfig, count: int, emit: bool) -> None:
    if not emit:
        return
    meta = {
        "model": model.name,
        "solver": solver.as_dict(),
        "time_unit": model.time_unit,
        "individuals": count,
    }
    logger.info("solver_config %s", json.dumps(meta, sort_keys=True))


def _numeric(value: object, name: str, ident: object) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise DataError(f"ID {ident!r}: parameter column '{name}' is not numeric ({value!r})") from exc
    if math.isnan(number):
        return None
    return number


def _individuals(data_set: Optional[DataSet], idata: Optional[IData]) -> Tuple[object, ...]:
    if data_set is not None:
        return data_set.ids
    if idata is not None:
        return idata.ids
    return (1,)


def _check_carry_out(
    config: SimConfig,
    data_set: Optional[DataSet],
    idata: Optional[IData],
    events: Optional[EventSequence],
) -> None:
    known = set(RECORD_FIELDS)
    if data_set is not None:
        known.update(data_set.extra_columns)
    if idata is not None:
        known.update(idata.columns)
    if events is not None:
        known.update(events.extra_names)
    unknown = [name for name in config.carry_out if name not in known]
    if unknown:
        raise DataError(f"carry_out items not found in the data set, idata or event records: {unknown}")


def _observations_for(
    ident: object,
    records: Optional[IndividualRecords],
    config: SimConfig,
    grid: DesignLike,
    idata_row: Optional[Mapping[str, object]],
) -> Tuple[ObservationRecord, ...]:
    if records is not None and records.observations:
        return records.observations
    assignment = config.design
    if assignment is None:
        return observations_from_times(design_times(grid))
    if assignment.descol is None:
        return observations_from_times(assignment.times_for())
    if idata_row is None:
        raise DataError(f"ID {ident!r} has no idata row for design column '{assignment.descol}'")
    return observations_from_times(assignment.times_for(idata_row.get(assignment.descol)))


def _prepare_jobs(
    model: Model,
    config: SimConfig,
    data_set: Optional[DataSet],
    idata: Optional[IData],
    events: Optional[EventSequence],
    grid: DesignLike,
) -> List[_IndividualJob]:
    parameter_names = set(model.parameters)
    init_columns = {f"{cmt}{INIT_SUFFIX}": cmt for cmt in model.compartments}
    jobs: List[_IndividualJob] = []
    for index, ident in enumerate(_individuals(data_set, idata)):
        records = data_set.records_for(ident) if data_set is not None else None
        idata_row = idata.row_for(ident) if idata is not None else None

        params: Dict[str, float] = dict(model.parameters)
        init: Dict[str, float] = {}
        if idata_row is not None:
            for name, value in idata_row.items():
                if name in parameter_names:
                    number = _numeric(value, name, ident)
                    if number is not None:
                        params[name] = number
                elif name in init_columns:
                    number = _numeric(value, name, ident)
                    if number is not None:
                        init[init_columns[name]] = number

        covariates: List[Tuple[float, Mapping[str, float]]] = []
        if records is not None:
            for row_time, values in records.rows:
                update: Dict[str, float] = {}
                for name, value in values.items():
                    if name in parameter_names:
                        number = _numeric(value, name, ident)
                        if number is not None:
                            update[name] = number
                covariates.append((row_time, update))

        event_records: Sequence[EventRecord]
        if records is not None:
            event_records = records.events
        elif events is not None:
            event_records = events.records
        else:
            event_records = ()

        observations = _observations_for(ident, records, config, grid, idata_row)
        timeline = build_timeline(event_records, observations, resolve_cmt=model.resolve_compartment)
        jobs.append(
            _IndividualJob(
                index=index,
                ident=ident,
                timeline=timeline,
                params=params,
                init=init,
                covariates=tuple(covariates),
                records=records,
                idata_row=idata_row,
                markers_at_samples=records is not None,
            )
        )
    return jobs


def _run_job(
    job: _IndividualJob,
    model: Model,
    assembler: OutputAssembler,
    solver: SolverConfig,
    guard: _RunGuard,
    strict: bool,
) -> _IndividualOutcome:
    trace = integrate_timeline(
        model,
        job.timeline,
        solver=solver,
        params=job.params,
        init=job.init,
        covariates=job.covariates,
        guard=guard.check,
        captures=assembler.needs_captures,
    )
    if trace.error is not None and strict and not trace.cancelled:
        guard.cancel(f"strict mode: ID {job.ident!r} failed")
    rows = assembler.assemble(
        job.ident,
        job.timeline,
        trace,
        records=job.records,
        idata_row=job.idata_row,
        markers_at_samples=job.markers_at_samples,
    )
    if trace.error is None:
        diagnostic = IndividualDiagnostic(individual=job.ident, rows=len(rows))
    else:
        diagnostic = IndividualDiagnostic(
            individual=job.ident,
            ok=False,
            message=str(trace.error),
            failed_at=trace.error.time,
            timed_out=trace.cancelled,
            rows=len(rows),
        )
    return _IndividualOutcome(rows=rows, diagnostic=diagnostic, error=trace.error)


def _not_started(job: _IndividualJob, guard: _RunGuard) -> _IndividualOutcome:
    return _IndividualOutcome(
        rows=None,
        diagnostic=IndividualDiagnostic(individual=job.ident, ok=False, message=guard.reason, timed_out=True),
        error=RunCancelled(guard.reason),
    )


def _execute(
    jobs: Sequence[_IndividualJob],
    model: Model,
    assembler: OutputAssembler,
    solver: SolverConfig,
    options: RunOptions,
) -> List[_IndividualOutcome]:
    guard = _RunGuard(options.timeout_s)
    outcomes: List[Optional[_IndividualOutcome]] = [None] * len(jobs)

    if options.workers <= 1 or len(jobs) <= 1:
        for job in jobs:
            if guard.cancelled:
                outcomes[job.index] = _not_started(job, guard)
                continue
            outcomes[job.index] = _run_job(job, model, assembler, solver, guard, options.strict)
        return [outcome for outcome in outcomes if outcome is not None]

    with ThreadPoolExecutor(max_workers=int(options.workers)) as executor:
        futures = {
            executor.submit(_run_job, job, model, assembler, solver, guard, options.strict): job
            for job in jobs
        }
        _, pending = wait(futures, timeout=options.timeout_s)
        if pending:
            guard.cancel()
            logger.warning("run timeout: %d individuals still pending", len(pending))
            for future in pending:
                if future.cancel():
                    job = futures[future]
                    outcomes[job.index] = _not_started(job, guard)
            wait(pending)
        for future, job in futures.items():
            if outcomes[job.index] is None:
                outcomes[job.index] = future.result()
    return [outcome for outcome in outcomes if outcome is not None]


def run_simulation(
    model: Model,
    *,
    data: Union[pd.DataFrame, DataSet, None] = None,
    idata: Union[pd.DataFrame, IData, None] = None,
    events: Optional[EventSequence] = None,
    config: Optional[SimConfig] = None,
    options: Optional[RunOptions] = None,
    solver: Optional[SolverConfig] = None,
    grid: Optional[DesignLike] = None,
    run_label: Optional[str] = None,
    emit_diagnostics: bool = False,
) -> SimulationResult:
    """Simulate every individual and assemble one ordered result table.

    Individuals come from the data set (first-appearance order), else from
    ``idata`` rows, else a single ``ID`` 1.  Integration failures are reported
    per individual in ``diagnostics`` unless ``options.strict`` is set.
    """

    config = config or SimConfig()
    options = options or RunOptions()
    solver = solver or SolverConfig()
    solver.stepper()  # rejects unknown methods before any work starts
    data_set = data if isinstance(data, DataSet) or data is None else normalize_data_set(data)
    idata_table = idata if isinstance(idata, IData) or idata is None else normalize_idata(idata)
    if data_set is not None and events is not None:
        raise ConfigurationError("supply either a data set or event records, not both")
    assignment = config.design
    if assignment is not None and assignment.descol is not None:
        if idata_table is None:
            raise ConfigurationError(f"design column '{assignment.descol}' requires an idata table")
        if not idata_table.has_column(assignment.descol):
            raise ConfigurationError(f"column {assignment.descol} does not exist in idata.")
    _check_carry_out(config, data_set, idata_table, events)

    jobs = _prepare_jobs(model, config, data_set, idata_table, events, grid if grid is not None else DEFAULT_GRID)
    _log_solver_banner(model, solver, len(jobs), emit_diagnostics)
    assembler = OutputAssembler(model, config, failure_rows=options.failure_rows)
    outcomes = _execute(jobs, model, assembler, solver, options)

    if options.strict:
        failures = [outcome for outcome in outcomes if outcome.error is not None]
        if failures:
            primary = next((item for item in failures if not isinstance(item.error, RunCancelled)), failures[0])
            raise primary.error  # type: ignore[misc]

    warnings: List[str] = list(assignment.warnings) if assignment is not None else []
    for outcome in outcomes:
        diagnostic = outcome.diagnostic
        if diagnostic.ok:
            continue
        label = "timed out" if diagnostic.timed_out else "failed"
        message = f"ID {diagnostic.individual!r} {label}: {diagnostic.message}"
        logger.warning("individual %r %s: %s", diagnostic.individual, label, diagnostic.message)
        warnings.append(message)

    provenance = {
        "model": model.name,
        "solver_config": json.dumps(solver.as_dict(), sort_keys=True),
        "solver_hash": solver.identity(),
        "run_label": run_label or "",
        "semantics_version": SEMANTICS_VERSION,
    }
    table = build_result_table(
        assembler.columns,
        [outcome.rows for outcome in outcomes if outcome.rows is not None],
        provenance=provenance,
    )
    return SimulationResult(
        table=table,
        diagnostics=tuple(outcome.diagnostic for outcome in outcomes),
        warnings=tuple(warnings),
    )


__all__ = ["DEFAULT_GRID", "run_simulation"]
