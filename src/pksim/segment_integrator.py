"""Segmented integration across a merged dose/observation timeline."""

from __future__ import annotations

import hashlib
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .entities import (
    EVID_DOSE,
    EVID_OTHER,
    EVID_REPLACE,
    EVID_RESET,
    EVID_RESET_DOSE,
    EventRecord,
    TimelineEntry,
)
from .errors import IntegrationError, RunCancelled
from .model import Model
from .stiff_ode import Stepper, make_stepper
from .timeline import KIND_EVENT, KIND_INFUSION_END

logger = logging.getLogger(__name__)

CovariateRows = Sequence[Tuple[float, Mapping[str, float]]]


@dataclass(frozen=True)
class SolverConfig:
    """Configuration driving the per-individual stepper."""

    method: str = "BDF"
    rtol: float = 1e-8
    atol: float = 1e-8
    max_step: float = math.inf
    fixed_step: float = 0.1
    ss_rtol: float = 1e-8
    ss_max_cycles: int = 500

    def as_dict(self) -> Dict[str, object]:
        return {
            "method": self.method,
            "rtol": self.rtol,
            "atol": self.atol,
            "max_step": self.max_step if math.isfinite(self.max_step) else None,
            "fixed_step": self.fixed_step,
            "ss_rtol": self.ss_rtol,
            "ss_max_cycles": self.ss_max_cycles,
        }

    def identity(self) -> str:
        payload = json.dumps(self.as_dict(), sort_keys=True)
        return hashlib.sha256(payload.encode("utf8")).hexdigest()

    def stepper(self) -> Stepper:
        return make_stepper(self)


@dataclass
class IntegrationTrace:
    """States after each timeline entry; ``None`` past a failure."""

    states: List[Optional[np.ndarray]]
    params: List[Optional[Mapping[str, float]]]
    captured: List[Optional[Mapping[str, float]]] = field(default_factory=list)
    error: Optional[IntegrationError] = None
    failed_index: Optional[int] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def _rate_vector(size: int, infusions: Mapping[int, Tuple[int, float]]) -> Optional[np.ndarray]:
    if not infusions:
        return None
    rates = np.zeros(size, dtype=float)
    for compartment, rate in infusions.values():
        rates[compartment] += rate
    return rates


def _make_rhs(
    model: Model,
    params: Mapping[str, float],
    rates: Optional[np.ndarray],
) -> Callable[[float, np.ndarray], np.ndarray]:
    def rhs(t: float, y: np.ndarray) -> np.ndarray:
        derivative = model.derivatives(t, y, params)
        if rates is not None:
            derivative = derivative + rates
        return derivative

    return rhs


def _advance(
    stepper: Stepper,
    rhs: Callable[[float, np.ndarray], np.ndarray],
    t0: float,
    t1: float,
    state: np.ndarray,
) -> np.ndarray:
    try:
        return stepper.advance(rhs, t0, t1, state)
    except (ArithmeticError, ValueError) as exc:
        raise IntegrationError(f"right-hand side failed between t={t0:g} and t={t1:g}: {exc}", time=t0) from exc


def _capture(model: Model, t: float, state: np.ndarray, params: Mapping[str, float]) -> Mapping[str, float]:
    try:
        return model.captured(t, state, params)
    except (ArithmeticError, ValueError) as exc:
        raise IntegrationError(f"captures failed at t={t:g}: {exc}", time=t) from exc


def _apply_covariates(
    covariates: CovariateRows,
    index: int,
    t_now: float,
    params: Dict[str, float],
) -> Tuple[Dict[str, float], int]:
    updated = False
    while index < len(covariates) and covariates[index][0] <= t_now:
        if covariates[index][1]:
            params = {**params, **covariates[index][1]}
            updated = True
        index += 1
    if updated:
        logger.debug("parameters updated at t=%g", t_now)
    return params, index


def steady_state(
    model: Model,
    record: EventRecord,
    compartment: int,
    params: Mapping[str, float],
    start: np.ndarray,
    *,
    stepper: Stepper,
    solver: SolverConfig,
) -> np.ndarray:
    """Pre-dose state after repeating ``record`` every ``ii`` until it settles."""

    size = len(model.compartments)
    free_rhs = _make_rhs(model, params, None)
    infusion_rhs = None
    duration = record.infusion_duration
    if record.is_infusion:
        if duration > record.ii:
            raise IntegrationError(
                f"steady-state infusion duration {duration:g} exceeds ii {record.ii:g}", time=record.time
            )
        rates = np.zeros(size, dtype=float)
        rates[compartment] = record.rate
        infusion_rhs = _make_rhs(model, params, rates)

    state = np.array(start, dtype=float, copy=True)
    for cycle in range(max(int(solver.ss_max_cycles), 1)):
        previous = state.copy()
        if infusion_rhs is not None:
            state = _advance(stepper, infusion_rhs, 0.0, duration, state)
            state = _advance(stepper, free_rhs, duration, record.ii, state)
        else:
            state[compartment] += record.amt
            state = _advance(stepper, free_rhs, 0.0, record.ii, state)
        scale = np.maximum(np.abs(previous), 1.0)
        if np.all(np.abs(state - previous) <= solver.ss_rtol * scale):
            logger.debug("steady state reached after %d cycles", cycle + 1)
            return state
    raise IntegrationError(
        f"steady state not reached after {solver.ss_max_cycles} dosing cycles", time=record.time
    )


def integrate_timeline(
    model: Model,
    timeline: Sequence[TimelineEntry],
    *,
    solver: SolverConfig,
    params: Mapping[str, float],
    init: Optional[Mapping[str, float]] = None,
    covariates: CovariateRows = (),
    guard: Optional[Callable[[], None]] = None,
    stepper: Optional[Stepper] = None,
    captures: bool = False,
) -> IntegrationTrace:
    """Integrate one individual across ``timeline`` applying each event atomically.

    Parameters in ``covariates`` rows update at the row time and hold until
    the next row; the first row also applies from the start of integration.
    With ``captures`` the model captures are evaluated on every stored state.
    Failures, including capture failures, are recorded on the returned trace
    rather than raised.
    """

    stepper = stepper or solver.stepper()
    size = len(model.compartments)
    initial = model.initial_state(init)
    state = initial.copy()
    current_params: Dict[str, float] = dict(params)
    if covariates:
        current_params.update(covariates[0][1])
    cov_index = 0
    infusions: Dict[int, Tuple[int, float]] = {}
    rates: Optional[np.ndarray] = None
    t_now = 0.0

    trace = IntegrationTrace(
        states=[None] * len(timeline),
        params=[None] * len(timeline),
        captured=[None] * len(timeline),
    )

    for index, entry in enumerate(timeline):
        try:
            if guard is not None:
                guard()
            while True:
                current_params, cov_index = _apply_covariates(covariates, cov_index, t_now, current_params)
                if entry.time <= t_now:
                    break
                # covariate row times are integration breakpoints
                t_next = entry.time
                if cov_index < len(covariates):
                    t_next = min(t_next, covariates[cov_index][0])
                rhs = _make_rhs(model, current_params, rates)
                state = _advance(stepper, rhs, t_now, t_next, state)
                t_now = t_next

            if entry.kind == KIND_INFUSION_END:
                if infusions.pop(entry.infusion_id, None) is not None:
                    rates = _rate_vector(size, infusions)
            elif entry.kind == KIND_EVENT:
                record = entry.record
                evid = record.evid
                if evid in (EVID_RESET, EVID_RESET_DOSE):
                    state = initial.copy()
                    infusions.clear()
                    rates = None
                if evid in (EVID_DOSE, EVID_RESET_DOSE):
                    if record.ss == 1:
                        state = steady_state(
                            model,
                            record,
                            entry.compartment,
                            current_params,
                            initial,
                            stepper=stepper,
                            solver=solver,
                        )
                    if entry.infusion_id is not None:
                        infusions[entry.infusion_id] = (entry.compartment, record.rate)
                        rates = _rate_vector(size, infusions)
                    else:
                        state[entry.compartment] += record.amt
                elif evid == EVID_REPLACE:
                    state[entry.compartment] = record.amt
                elif evid == EVID_OTHER:
                    pass
            if captures:
                trace.captured[index] = _capture(model, entry.time, state, current_params)
        except RunCancelled as exc:
            trace.error = exc
            trace.failed_index = index
            trace.cancelled = True
            return trace
        except IntegrationError as exc:
            trace.error = exc
            trace.failed_index = index
            return trace

        trace.states[index] = state.copy()
        trace.params[index] = current_params
    return trace


__all__ = [
    "IntegrationTrace",
    "SolverConfig",
    "integrate_timeline",
    "steady_state",
]
