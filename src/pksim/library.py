"""Small built-in model library used by the CLI, examples and tests."""

from __future__ import annotations

from typing import Callable, Dict, Mapping

import numpy as np

from .errors import ConfigurationError
from .model import OdeModel


def pk1cmt() -> OdeModel:
    """One-compartment PK with first-order absorption from ``EV1``."""

    def rhs(t: float, y: np.ndarray, params: Mapping[str, float]) -> np.ndarray:
        ev1, cent = y
        ka = params["KA"]
        kel = params["CL"] / params["V"]
        return np.array([-ka * ev1, ka * ev1 - kel * cent], dtype=float)

    def capture(t: float, y: np.ndarray, params: Mapping[str, float]) -> Dict[str, float]:
        return {"CP": float(y[1]) / params["V"]}

    return OdeModel(
        name="pk1cmt",
        compartments=("EV1", "CENT"),
        parameters={"CL": 1.0, "V": 20.0, "KA": 1.0},
        rhs=rhs,
        captures=("CP",),
        capture=capture,
    )


def pk2cmt() -> OdeModel:
    """Two-compartment PK with first-order absorption, built from expressions."""
    return OdeModel.from_expressions(
        "pk2cmt",
        odes={
            "EV1": "-KA*EV1",
            "CENT": "KA*EV1 - (CL/V2)*CENT - (Q/V2)*CENT + (Q/V3)*PERIPH",
            "PERIPH": "(Q/V2)*CENT - (Q/V3)*PERIPH",
        },
        parameters={"CL": 1.0, "V2": 20.0, "Q": 2.0, "V3": 10.0, "KA": 1.0},
        captures={"CP": "CENT/V2"},
    )


def house() -> OdeModel:
    """PK/PD model with an indirect response on ``RESP``."""
    cl = "CL*(WT/70)**WTCL*SEXCL**SEX"
    vc = "VC*(WT/70)**WTVC*SEXVC**SEX"
    return OdeModel.from_expressions(
        "house",
        odes={
            "GUT": "-KA*GUT",
            "CENT": f"KA*GUT - ({cl})/({vc})*CENT",
            "RESP": "KIN*(1 - CP/(IC50 + CP)) - KOUT*RESP",
        },
        parameters={
            "CL": 1.0,
            "VC": 20.0,
            "KA": 1.2,
            "WTCL": 0.75,
            "WTVC": 1.0,
            "SEXCL": 0.7,
            "SEXVC": 0.87,
            "KIN": 100.0,
            "KOUT": 2.0,
            "IC50": 10.0,
            "WT": 70.0,
            "SEX": 0.0,
        },
        init={"RESP": 50.0},
        captures={"CP": f"CENT/({vc})", "DV": "CP"},
    )


MODEL_LIBRARY: Dict[str, Callable[[], OdeModel]] = {
    "pk1cmt": pk1cmt,
    "pk2cmt": pk2cmt,
    "house": house,
}


def load_library_model(name: str) -> OdeModel:
    try:
        factory = MODEL_LIBRARY[name]
    except KeyError as exc:
        raise ConfigurationError(
            f"Unknown library model '{name}'; choose from {sorted(MODEL_LIBRARY)}"
        ) from exc
    return factory()


__all__ = ["MODEL_LIBRARY", "house", "load_library_model", "pk1cmt", "pk2cmt"]
