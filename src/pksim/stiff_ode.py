"""Pluggable ODE steppers: adaptive ``solve_ivp`` and fixed-step schemes."""

from __future__ import annotations

import math
from dataclasses import replace
from typing import TYPE_CHECKING, Callable, Optional, Protocol, Tuple

import numpy as np
from scipy.integrate import solve_ivp

from .errors import ConfigurationError, IntegrationError

if TYPE_CHECKING:  # pragma: no cover
    from .segment_integrator import SolverConfig

StateVector = np.ndarray
RhsFn = Callable[[float, StateVector], StateVector]

ADAPTIVE_METHODS = ("BDF", "LSODA", "Radau", "RK45", "RK23", "DOP853")
FIXED_METHODS = ("RK4", "EULER")


def _looks_like_step_failure(message: str) -> bool:
    text = (message or "").lower()
    return ("step size" in text) or ("strictly increasing" in text)


def solve_stiff_ivp(
    rhs: RhsFn,
    span: Tuple[float, float],
    y0: StateVector,
    solver: "SolverConfig",
    *,
    first_step: Optional[float] = None,
    max_step: Optional[float] = None,
    allow_shrink: bool = True,
    max_attempts: int = 8,
):
    """Wrapper around solve_ivp that halves ``max_step`` on step-size failures."""

    t0 = float(span[0])
    t1 = float(span[1])
    state0 = np.asarray(y0, dtype=float)
    total_span = abs(t1 - t0)
    attempt_first = None if first_step is None or first_step <= 0.0 else float(first_step)

    attempt_max = max_step
    if attempt_max is None or attempt_max <= 0.0 or not math.isfinite(attempt_max):
        cap = float(solver.max_step or 0.0)
        if cap > 0.0 and math.isfinite(cap):
            attempt_max = cap
        else:
            attempt_max = np.inf
    min_cap = max(total_span * 1e-6, 1e-12)
    result = None
    for _ in range(max(int(max_attempts), 1)):
        result = solve_ivp(
            rhs,
            (t0, t1),
            state0,
            method=solver.method,
            rtol=solver.rtol,
            atol=solver.atol,
            max_step=attempt_max,
            first_step=attempt_first,
            dense_output=False,
        )
        if result.success or not allow_shrink:
            return result
        if not _looks_like_step_failure(result.message or ""):
            return result
        if not math.isfinite(attempt_max):
            attempt_max = total_span
        attempt_max = max(attempt_max * 0.5, min_cap)
        if attempt_first is not None:
            attempt_first = min(attempt_first, attempt_max)
    return result


class Stepper(Protocol):
    """Advances ``y`` from ``t0`` to ``t1`` under ``rhs``."""

    def advance(self, rhs: RhsFn, t0: float, t1: float, y0: StateVector) -> StateVector:
        ...


def _check_finite(values: StateVector, t_point: float) -> StateVector:
    if not np.all(np.isfinite(values)):
        raise IntegrationError(f"non-finite state at t={t_point:g}", time=t_point)
    return values


class AdaptiveStepper:
    def __init__(self, solver: "SolverConfig") -> None:
        self.solver = solver

    def advance(self, rhs: RhsFn, t0: float, t1: float, y0: StateVector) -> StateVector:
        state0 = np.array(y0, dtype=float, copy=True)
        if t1 <= t0 or state0.size == 0:
            return state0
        sol = solve_stiff_ivp(rhs, (t0, t1), state0, self.solver)
        if not sol.success or not sol.y.size:
            raise IntegrationError(f"integration failed between t={t0:g} and t={t1:g}: {sol.message}", time=t0)
        return _check_finite(np.asarray(sol.y[:, -1], dtype=float), t1)


class FixedStepStepper:
    """Classic RK4 or explicit Euler with at most ``step`` per sub-step."""

    def __init__(self, step: float, scheme: str = "RK4") -> None:
        if not step > 0.0 or not math.isfinite(step):
            raise ConfigurationError(f"fixed_step must be positive, got {step!r}")
        self.step = float(step)
        self.scheme = scheme.upper()

    def _rk4(self, rhs: RhsFn, t: float, y: StateVector, h: float) -> StateVector:
        k1 = rhs(t, y)
        k2 = rhs(t + 0.5 * h, y + 0.5 * h * k1)
        k3 = rhs(t + 0.5 * h, y + 0.5 * h * k2)
        k4 = rhs(t + h, y + h * k3)
        return y + (h / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4)

    def advance(self, rhs: RhsFn, t0: float, t1: float, y0: StateVector) -> StateVector:
        state = np.array(y0, dtype=float, copy=True)
        span = t1 - t0
        if span <= 0.0 or state.size == 0:
            return state
        count = max(int(math.ceil(span / self.step - 1e-12)), 1)
        h = span / count
        t = t0
        for _ in range(count):
            if self.scheme == "EULER":
                state = state + h * rhs(t, state)
            else:
                state = self._rk4(rhs, t, state, h)
            t += h
            _check_finite(state, t)
        return state


def make_stepper(solver: "SolverConfig") -> Stepper:
    method = solver.method.upper()
    if method in FIXED_METHODS:
        return FixedStepStepper(solver.fixed_step, scheme=method)
    for name in ADAPTIVE_METHODS:
        if name.upper() == method:
            return AdaptiveStepper(replace(solver, method=name))
    raise ConfigurationError(
        f"Unknown integration method '{solver.method}'; choose from {ADAPTIVE_METHODS + FIXED_METHODS}"
    )


__all__ = [
    "ADAPTIVE_METHODS",
    "FIXED_METHODS",
    "AdaptiveStepper",
    "FixedStepStepper",
    "Stepper",
    "make_stepper",
    "solve_stiff_ivp",
]
