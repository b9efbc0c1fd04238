"""Command line interface for running a library model over a CSV data set.

The tool reads a dosing/observation data set (and optionally an
individual-level ``idata`` table), simulates every individual with one of
the built-in models and writes the ordered result table.

Typical usage::

    python -m scripts.simulate_cli --model pk1cmt --data artifacts/data.csv \
        --output artifacts/out.csv --req CENT --carry-out amt --obsonly

Without ``--data`` a single dose can be given with ``--dose-amt`` and the
observation grid with ``--end``/``--delta``.  ``PKSIM_WORKERS`` and
``PKSIM_TIMEOUT_S`` provide defaults for ``--workers`` and ``--timeout``.
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Iterable, Optional

import pandas as pd

from src.pksim import Setup, ev, load_library_model
from src.pksim.errors import SimError
from src.pksim.library import MODEL_LIBRARY

LOGGER = logging.getLogger("simulate_cli")

_DEFAULT_OUTPUT = Path("artifacts") / "SIM_OUT.csv"


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s:%(name)s:%(message)s",
    )


def _env_default(name: str, cast, fallback):
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return fallback
    try:
        return cast(raw)
    except ValueError:
        raise SystemExit(f"{name}={raw!r} is not a valid value") from None


def _parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Simulate a library model over a dosing data set")
    parser.add_argument("--model", choices=sorted(MODEL_LIBRARY), default="pk1cmt", help="Library model to run")
    parser.add_argument("--data", type=Path, default=None, help="Dosing/observation data set CSV")
    parser.add_argument("--idata", type=Path, default=None, help="Individual-level table CSV (one row per ID)")
    parser.add_argument(
        "--output",
        type=Path,
        default=_DEFAULT_OUTPUT,
        help=f"Destination CSV for the simulated table (default: {_DEFAULT_OUTPUT})",
    )
    parser.add_argument("--req", action="append", default=[], help="Compartments to report (captures are kept)")
    parser.add_argument("--Req", dest="outvars", action="append", default=[], help="Exclusive output selection")
    parser.add_argument("--carry-out", action="append", default=[], help="Items copied into output rows")
    parser.add_argument("--tscale", type=float, default=1.0, help="Multiplier applied to reported times")
    parser.add_argument("--obsonly", action="store_true", help="Drop event-marker rows")
    parser.add_argument("--obsaug", action="store_true", help="Add observation rows at dose/event times")
    parser.add_argument("--end", type=float, default=None, help="End of the default observation grid")
    parser.add_argument("--delta", type=float, default=None, help="Step of the default observation grid")
    parser.add_argument("--dose-amt", type=float, default=None, help="Single bolus at time 0 when --data is absent")
    parser.add_argument("--dose-cmt", default="1", help="Compartment for --dose-amt (number or name)")
    parser.add_argument("--method", default=None, help="Integration method (LSODA, BDF, RK45, RK4, ...)")
    parser.add_argument(
        "--workers",
        type=int,
        default=_env_default("PKSIM_WORKERS", int, 1),
        help="Parallel workers across individuals (default: $PKSIM_WORKERS or 1)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=_env_default("PKSIM_TIMEOUT_S", float, None),
        help="Wall-clock limit for the whole run in seconds (default: $PKSIM_TIMEOUT_S)",
    )
    parser.add_argument("--strict", action="store_true", help="Abort the run on the first failed individual")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate and simulate without writing the output CSV",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Emit debug logging and the solver configuration banner",
    )
    return parser.parse_args(argv)


def _read_frame(path: Path, label: str) -> pd.DataFrame:
    if not path.is_file():
        raise FileNotFoundError(f"{label} CSV {path} does not exist")
    frame = pd.read_csv(path)
    if frame.empty:
        raise ValueError(f"{label} CSV does not contain any rows")
    return frame


def _dose_cmt(raw: str) -> object:
    token = raw.strip()
    return int(token) if token.isdigit() else token


def build_setup(args: argparse.Namespace) -> Setup:
    setup = Setup(load_library_model(args.model))
    setup = setup.run_options(workers=args.workers, timeout_s=args.timeout, strict=args.strict)
    if args.method:
        setup = setup.solver_options(method=args.method)
    if args.idata is not None:
        setup = setup.idata_set(_read_frame(args.idata, "idata"))
    if args.data is not None:
        setup = setup.data_set(_read_frame(args.data, "data set"))
    elif args.dose_amt is not None:
        setup = setup.ev(ev(amt=args.dose_amt, cmt=_dose_cmt(args.dose_cmt)))
    if args.end is not None or args.delta is not None:
        setup = setup.update(end=args.end, delta=args.delta)
    if args.req:
        setup = setup.req(*args.req)
    if args.outvars:
        setup = setup.Req(*args.outvars)
    if args.carry_out:
        setup = setup.carry_out(*args.carry_out)
    return setup.tscale(args.tscale).obsonly(args.obsonly).obsaug(args.obsaug)


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)

    LOGGER.info("Starting simulation CLI")
    LOGGER.info("Model: %s", args.model)
    LOGGER.info("Output CSV: %s", args.output)

    try:
        setup = build_setup(args)
        result = setup.simulate(run_label=args.model, emit_diagnostics=args.verbose)
    except (SimError, OSError, ValueError) as exc:
        LOGGER.error("%s", exc)
        LOGGER.debug("Full exception", exc_info=True)
        return 1

    for message in result.warnings:
        LOGGER.warning("%s", message)
    if args.dry_run:
        LOGGER.info("Dry run requested; %d rows simulated, skipping write step", len(result.table))
        return 0 if result.ok else 2
    output: Optional[Path] = args.output
    result.table.save_csv(output)
    LOGGER.info("Wrote %d rows to %s", len(result.table), output)
    return 0 if result.ok else 2


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
