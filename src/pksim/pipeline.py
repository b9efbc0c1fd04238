"""Chainable setup: every call returns a new, validated configuration.

    out = (
        Setup(house())
        .Req("CP", "RESP")
        .ev(ev(amt=1000))
        .carry_out("amt")
        .simulate()
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Iterable, Mapping, Optional, Sequence, Union

import pandas as pd

from .config import RunOptions, SimConfig
from .data import DataSet, IData, normalize_data_set, normalize_idata
from .design import build_design_assignment
from .entities import SimulationResult
from .errors import ConfigurationError
from .events import EventSequence
from .model import Model
from .segment_integrator import SolverConfig
from .simulation import DEFAULT_GRID, run_simulation
from .tgrid import DesignLike, TGrid
from .units import time_scale_factor


@dataclass(frozen=True)
class Setup:
    model: Model
    config: SimConfig = field(default_factory=SimConfig)
    data: Optional[DataSet] = None
    idata: Optional[IData] = None
    events: Optional[EventSequence] = None
    grid: TGrid = DEFAULT_GRID
    solver: SolverConfig = field(default_factory=SolverConfig)
    options: RunOptions = field(default_factory=RunOptions)

    # --- output selection ------------------------------------------------------------

    def req(self, *names: str) -> "Setup":
        """Select compartments; all captured items are still returned."""
        return replace(self, config=self.config.with_request(self.model, *names))

    def Req(self, *names: str) -> "Setup":  # noqa: N802
        """Select compartments and captures; anything not listed is dropped."""
        return replace(self, config=self.config.with_outvars(self.model, *names))

    def carry_out(self, *names: str) -> "Setup":
        """Copy data set, idata or event items into the output rows."""
        return replace(self, config=self.config.with_carry_out(self.model, *names))

    def tscale(self, value: float = 1.0) -> "Setup":
        """Multiply reported times by ``value``; replaces any earlier scale."""
        return replace(self, config=self.config.with_tscale(value))

    def tscale_units(self, output_unit: str) -> "Setup":
        return self.tscale(time_scale_factor(self.model.time_unit, output_unit))

    def obsonly(self, value: bool = True) -> "Setup":
        return replace(self, config=self.config.with_obsonly(value))

    def obsaug(self, value: bool = True) -> "Setup":
        return replace(self, config=self.config.with_obsaug(value))

    # --- designs and inputs ----------------------------------------------------------

    def design(
        self,
        deslist: Union[DesignLike, Sequence[object], Mapping[object, object]] = (),
        descol: Optional[str] = None,
    ) -> "Setup":
        """Assign observation designs, optionally per ``descol`` group of idata.

        ``idata_set`` must come first when ``descol`` is used.
        """
        frame = self.idata.frame if self.idata is not None else None
        assignment = build_design_assignment(deslist, descol, idata=frame)
        return replace(self, config=self.config.with_design(assignment))

    def idata_set(self, frame: pd.DataFrame) -> "Setup":
        return replace(self, idata=normalize_idata(frame))

    def data_set(self, frame: pd.DataFrame) -> "Setup":
        if self.events is not None:
            raise ConfigurationError("event records are already attached; use a data set or events, not both")
        return replace(self, data=normalize_data_set(frame))

    def ev(self, events: EventSequence) -> "Setup":
        if self.data is not None:
            raise ConfigurationError("a data set is already attached; use a data set or events, not both")
        combined = events if self.events is None else self.events + events
        return replace(self, events=combined)

    def update(
        self,
        *,
        start: Optional[float] = None,
        end: Optional[float] = None,
        delta: Optional[float] = None,
        add: Optional[Iterable[float]] = None,
    ) -> "Setup":
        """Adjust the default observation grid used when no design is set."""
        changes = {
            key: value
            for key, value in (("start", start), ("end", end), ("delta", delta))
            if value is not None
        }
        if add is not None:
            changes["add"] = tuple(add)
        return replace(self, grid=replace(self.grid, **changes))

    # --- model and solver ------------------------------------------------------------

    def param(self, **values: float) -> "Setup":
        return replace(self, model=self.model.with_parameters(**values))

    def init(self, **values: float) -> "Setup":
        return replace(self, model=self.model.with_init(**values))

    def solver_options(self, **values: object) -> "Setup":
        return replace(self, solver=_replace_known(self.solver, values, "solver option"))

    def run_options(self, **values: object) -> "Setup":
        return replace(self, options=_replace_known(self.options, values, "run option"))

    # --- execution -------------------------------------------------------------------

    def simulate(self, *, run_label: Optional[str] = None, emit_diagnostics: bool = False) -> SimulationResult:
        return run_simulation(
            self.model,
            data=self.data,
            idata=self.idata,
            events=self.events,
            config=self.config,
            options=self.options,
            solver=self.solver,
            grid=self.grid,
            run_label=run_label,
            emit_diagnostics=emit_diagnostics,
        )


def _replace_known(instance, values: Mapping[str, object], label: str):
    allowed = {item.name for item in fields(instance)}
    unknown = sorted(set(values).difference(allowed))
    if unknown:
        raise ConfigurationError(f"unknown {label}s: {unknown}")
    return replace(instance, **values)


__all__ = ["Setup"]
