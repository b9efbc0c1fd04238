"""Public exports for the pksim ODE simulation runtime."""

from .config import RunOptions, SimConfig
from .data import normalize_data_set, normalize_idata
from .design import DesignAssignment, build_design_assignment
from .entities import SEMANTICS_VERSION, IndividualDiagnostic, ResultTable, SimulationResult
from .errors import ConfigurationError, DataError, IntegrationError, RunCancelled, SimError
from .events import EventSequence, ev
from .library import house, load_library_model, pk1cmt, pk2cmt
from .model import OdeModel
from .pipeline import Setup
from .segment_integrator import SolverConfig
from .simulation import run_simulation
from .tgrid import TGrid, TGrids

__all__ = [
    "SEMANTICS_VERSION",
    "ConfigurationError",
    "DataError",
    "DesignAssignment",
    "EventSequence",
    "IndividualDiagnostic",
    "IntegrationError",
    "OdeModel",
    "ResultTable",
    "RunCancelled",
    "RunOptions",
    "Setup",
    "SimConfig",
    "SimError",
    "SimulationResult",
    "SolverConfig",
    "TGrid",
    "TGrids",
    "build_design_assignment",
    "ev",
    "house",
    "load_library_model",
    "normalize_data_set",
    "normalize_idata",
    "pk1cmt",
    "pk2cmt",
    "run_simulation",
]
