"""Compiled ODE models consumed read-only by the simulation runtime."""

from __future__ import annotations

import copy
from typing import Callable, Dict, Iterable, Mapping, Optional, Protocol, Sequence, Tuple

import numpy as np
import sympy as sp

from .entities import CompartmentRef, CompiledExpression
from .errors import ConfigurationError, DataError

RhsFn = Callable[[float, np.ndarray, Mapping[str, float]], np.ndarray]
CaptureFn = Callable[[float, np.ndarray, Mapping[str, float]], Mapping[str, float]]

TIME_SYMBOL = "t"


class Model(Protocol):
    """Interface the integrator and assembler rely on."""

    name: str
    compartments: Tuple[str, ...]
    captures: Tuple[str, ...]
    parameters: Mapping[str, float]
    time_unit: str

    def initial_state(self, overrides: Optional[Mapping[str, float]] = None) -> np.ndarray:
        ...

    def derivatives(self, t: float, y: np.ndarray, params: Mapping[str, float]) -> np.ndarray:
        ...

    def captured(self, t: float, y: np.ndarray, params: Mapping[str, float]) -> Dict[str, float]:
        ...

    def resolve_compartment(self, ref: CompartmentRef) -> int:
        ...

    def with_parameters(self, **values: float) -> "Model":
        ...

    def with_init(self, **values: float) -> "Model":
        ...


class OdeModel:
    """Immutable ODE system: right-hand side, parameters, compartments, captures."""

    def __init__(
        self,
        *,
        name: str,
        compartments: Sequence[str],
        parameters: Mapping[str, float],
        rhs: RhsFn,
        init: Optional[Mapping[str, float]] = None,
        captures: Sequence[str] = (),
        capture: Optional[CaptureFn] = None,
        time_unit: str = "hour",
    ) -> None:
        self.name = name
        self.compartments = tuple(compartments)
        self.parameters = dict(parameters)
        self.rhs = rhs
        self.captures = tuple(captures)
        self.capture = capture
        self.time_unit = time_unit
        self.init = {cmt: 0.0 for cmt in self.compartments}
        if len(set(self.compartments)) != len(self.compartments):
            raise ConfigurationError(f"Model '{name}' declares duplicate compartments")
        overlap = set(self.compartments).intersection(self.captures)
        if overlap:
            raise ConfigurationError(f"Names used as both compartment and capture: {sorted(overlap)}")
        if self.captures and capture is None:
            raise ConfigurationError(f"Model '{name}' declares captures but no capture function")
        self._set_init(init or {})

    def _set_init(self, values: Mapping[str, float]) -> None:
        for cmt, value in values.items():
            if cmt not in self.init:
                raise ConfigurationError(f"'{cmt}' is not a compartment of model '{self.name}'")
            self.init[cmt] = float(value)

    def __repr__(self) -> str:
        return f"OdeModel(name={self.name!r}, compartments={self.compartments!r}, captures={self.captures!r})"

    # --- derived copies -----------------------------------------------------------------

    def with_parameters(self, **values: float) -> "OdeModel":
        unknown = sorted(set(values).difference(self.parameters))
        if unknown:
            raise ConfigurationError(f"Unknown parameters for model '{self.name}': {unknown}")
        clone = copy.copy(self)
        clone.parameters = {**self.parameters, **{key: float(val) for key, val in values.items()}}
        return clone

    def with_init(self, **values: float) -> "OdeModel":
        clone = copy.copy(self)
        clone.init = dict(self.init)
        clone._set_init(values)
        return clone

    # --- runtime interface ---------------------------------------------------------------

    def initial_state(self, overrides: Optional[Mapping[str, float]] = None) -> np.ndarray:
        values = dict(self.init)
        if overrides:
            values.update({key: float(val) for key, val in overrides.items() if key in values})
        return np.array([values[cmt] for cmt in self.compartments], dtype=float)

    def derivatives(self, t: float, y: np.ndarray, params: Mapping[str, float]) -> np.ndarray:
        values = np.asarray(self.rhs(t, y, params), dtype=float)
        if values.shape != (len(self.compartments),):
            raise ConfigurationError(
                f"Model '{self.name}' returned {values.shape} derivatives for {len(self.compartments)} compartments"
            )
        return values

    def captured(self, t: float, y: np.ndarray, params: Mapping[str, float]) -> Dict[str, float]:
        if self.capture is None:
            return {}
        raw = self.capture(t, y, params)
        return {name: float(raw[name]) for name in self.captures}

    def resolve_compartment(self, ref: CompartmentRef) -> int:
        """Return the zero-based index for a 1-based number or a compartment name."""
        if isinstance(ref, str):
            token = ref.strip()
            if token in self.compartments:
                return self.compartments.index(token)
            if not token.lstrip("-").isdigit():
                raise DataError(f"Unknown compartment '{ref}' for model '{self.name}'")
            ref = int(token)
        number = int(ref)
        if number < 1 or number > len(self.compartments):
            raise DataError(f"Compartment number {number} out of range for model '{self.name}'")
        return number - 1

    # --- construction from expressions ---------------------------------------------------

    @classmethod
    def from_expressions(
        cls,
        name: str,
        *,
        odes: Mapping[str, str],
        parameters: Mapping[str, float],
        init: Optional[Mapping[str, float]] = None,
        captures: Optional[Mapping[str, str]] = None,
        time_unit: str = "hour",
    ) -> "OdeModel":
        """Compile ``d(cmt)/dt`` and capture expressions with sympy.

        Captures are evaluated in declaration order before the derivatives, so
        an ODE may reference any capture and a capture may reference earlier
        ones.  ``t`` is the solver time.
        """

        compartments = tuple(odes.keys())
        capture_items = tuple((captures or {}).items())
        known = set(parameters) | set(compartments) | {TIME_SYMBOL}
        compiled_captures = []
        for capture_name, expression in capture_items:
            compiled_captures.append((capture_name, _compile_expression(expression, known, capture_name)))
            known.add(capture_name)
        compiled_odes = [_compile_expression(odes[cmt], known, cmt) for cmt in compartments]

        def context(t: float, y: np.ndarray, params: Mapping[str, float]) -> Dict[str, float]:
            ctx: Dict[str, float] = dict(params)
            ctx[TIME_SYMBOL] = float(t)
            for cmt, value in zip(compartments, y):
                ctx[cmt] = float(value)
            for capture_name, expr in compiled_captures:
                ctx[capture_name] = expr.evaluate(ctx)
            return ctx

        def rhs(t: float, y: np.ndarray, params: Mapping[str, float]) -> np.ndarray:
            ctx = context(t, y, params)
            return np.array([expr.evaluate(ctx) for expr in compiled_odes], dtype=float)

        def capture(t: float, y: np.ndarray, params: Mapping[str, float]) -> Dict[str, float]:
            ctx = context(t, y, params)
            return {capture_name: ctx[capture_name] for capture_name, _ in compiled_captures}

        return cls(
            name=name,
            compartments=compartments,
            parameters=parameters,
            rhs=rhs,
            init=init,
            captures=[capture_name for capture_name, _ in capture_items],
            capture=capture if capture_items else None,
            time_unit=time_unit,
        )


def _compile_expression(expression: str, known: Iterable[str], target: str) -> CompiledExpression:
    symbols = {token: sp.Symbol(token) for token in known}
    try:
        sym_expr = sp.sympify(str(expression).replace("^", "**"), locals=symbols)
    except (sp.SympifyError, SyntaxError, TypeError) as exc:
        raise ConfigurationError(f"Failed to compile expression for '{target}': {expression!r}") from exc
    free_symbols = sorted(sym_expr.free_symbols, key=lambda s: s.name)
    unknown = [sym.name for sym in free_symbols if sym.name not in symbols]
    if unknown:
        raise ConfigurationError(f"Expression for '{target}' references unknown names {unknown}")
    func = sp.lambdify(free_symbols, sym_expr, modules=["math"])
    return CompiledExpression(tokens=tuple(sym.name for sym in free_symbols), func=func, sympy_expr=sym_expr)


__all__ = ["Model", "OdeModel", "TIME_SYMBOL"]
