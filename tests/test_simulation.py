from __future__ import annotations

import math
import time

import numpy as np
import pandas as pd
import pytest

from src.pksim.config import RunOptions, SimConfig
from src.pksim.design import build_design_assignment
from src.pksim.entities import SEMANTICS_VERSION
from src.pksim.errors import ConfigurationError, DataError, IntegrationError
from src.pksim.events import ev
from src.pksim.library import pk1cmt
from src.pksim.model import OdeModel
from src.pksim.segment_integrator import SolverConfig
from src.pksim.simulation import run_simulation
from src.pksim.tgrid import TGrid

KEL = 1.0 / 20.0


def _config(model, *, grid=None, **flags) -> SimConfig:
    config = SimConfig()
    if grid is not None:
        config = config.with_design(build_design_assignment(grid))
    if flags.get("Req"):
        config = config.with_outvars(model, *flags["Req"])
    if flags.get("carry_out"):
        config = config.with_carry_out(model, *flags["carry_out"])
    return config.with_obsonly(flags.get("obsonly", False)).with_obsaug(flags.get("obsaug", False))


def _fragile_model() -> OdeModel:
    def rhs(t, y, params):
        if params["FAIL"] > 0.0 and t > 2.0:
            raise ValueError("domain error")
        return -params["K"] * y

    return OdeModel(
        name="fragile",
        compartments=("A",),
        parameters={"K": 0.1, "FAIL": 0.0},
        rhs=rhs,
        init={"A": 1.0},
    )


def _slow_model() -> OdeModel:
    def rhs(t, y, params):
        time.sleep(0.002)
        return -y

    return OdeModel(name="slow", compartments=("A",), parameters={}, rhs=rhs, init={"A": 1.0})


def test_single_dose_on_six_hour_grid_gives_five_cp_rows() -> None:
    model = pk1cmt()
    result = run_simulation(
        model,
        events=ev(amt=100),
        config=_config(model, grid=TGrid(0, 24, 6), Req=("CP",)),
    )
    frame = result.to_frame()
    assert list(frame.columns) == ["ID", "time", "CP"]
    assert frame["time"].tolist() == [0.0, 6.0, 12.0, 18.0, 24.0]
    assert frame["CP"].iloc[0] == pytest.approx(0.0)
    bateman = 100.0 / (1.0 - KEL) * (math.exp(-KEL * 6.0) - math.exp(-6.0)) / 20.0
    assert frame["CP"].iloc[1] == pytest.approx(bateman, rel=1e-5)
    assert result.ok


def test_default_grid_without_design_or_events() -> None:
    result = run_simulation(pk1cmt())
    frame = result.to_frame()
    assert list(frame.columns) == ["ID", "time", "EV1", "CENT", "CP"]
    assert frame["time"].tolist() == [float(t) for t in range(25)]
    assert (frame["ID"] == 1).all()


def test_event_marker_rows_and_obsonly() -> None:
    model = pk1cmt()
    events = ev(time=0.5, amt=100)
    full = run_simulation(model, events=events, config=_config(model, grid=TGrid(0, 2, 1)))
    assert full.to_frame()["time"].tolist() == [0.0, 0.5, 1.0, 2.0]
    assert list(full.table.kinds) == ["obs", "event", "obs", "obs"]
    assert full.to_frame()["EV1"].iloc[1] == pytest.approx(100.0)

    only = run_simulation(model, events=events, config=_config(model, grid=TGrid(0, 2, 1), obsonly=True))
    assert only.to_frame()["time"].tolist() == [0.0, 1.0, 2.0]
    assert "event" not in set(only.table.kinds)


def test_obsaug_adds_rows_at_unsampled_event_times() -> None:
    model = pk1cmt()
    events = ev(time=0.5, amt=100, ii=0.25, addl=1)
    result = run_simulation(model, events=events, config=_config(model, grid=TGrid(0, 2, 1), obsaug=True))
    frame = result.to_frame()
    assert list(result.table.kinds) == ["obs", "event", "aug", "obs", "obs"]
    assert frame["time"].tolist() == [0.0, 0.5, 0.75, 1.0, 2.0]
    assert frame["EV1"].iloc[1] == pytest.approx(100.0)
    assert frame["EV1"].iloc[2] == pytest.approx(100.0 * math.exp(-0.25) + 100.0, rel=1e-5)


def test_obsaug_then_obsonly_keeps_augmented_rows() -> None:
    model = pk1cmt()
    events = ev(time=0.5, amt=100)
    result = run_simulation(
        model,
        events=events,
        config=_config(model, grid=TGrid(0, 2, 1), obsaug=True, obsonly=True),
    )
    assert result.to_frame()["time"].tolist() == [0.0, 0.5, 1.0, 2.0]
    assert list(result.table.kinds) == ["obs", "aug", "obs", "obs"]


def test_tscale_multiplies_reported_time_and_last_call_wins() -> None:
    model = pk1cmt()
    config = _config(model, grid=TGrid(0, 24, 12)).with_tscale(2.0).with_tscale(1.0 / 24.0)
    frame = run_simulation(model, config=config).to_frame()
    assert frame["time"].tolist() == pytest.approx([0.0, 0.5, 1.0])
    unscaled = run_simulation(model, config=_config(model, grid=TGrid(0, 24, 12)).with_tscale(1)).to_frame()
    assert unscaled["time"].tolist() == [0.0, 12.0, 24.0]


def _data_set() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "ID": [1, 1, 1, 2, 2, 2],
            "time": [0.0, 1.0, 2.0, 0.0, 1.0, 2.0],
            "evid": [1, 0, 0, 1, 0, 0],
            "amt": [100.0, 0.0, 0.0, 50.0, 0.0, 0.0],
            "cmt": [2, 0, 0, 2, 0, 0],
            "DOSE": [100.0, 100.0, 100.0, 50.0, 50.0, 50.0],
        }
    )


def test_carry_out_round_trips_data_set_values() -> None:
    model = pk1cmt()
    result = run_simulation(
        model,
        data=_data_set(),
        config=_config(model, Req=("CENT",), carry_out=("DOSE", "amt", "evid")),
    )
    frame = result.to_frame()
    assert list(frame.columns) == ["ID", "time", "CENT", "DOSE", "amt", "evid"]
    assert frame["DOSE"].tolist() == _data_set()["DOSE"].tolist()
    assert frame["amt"].tolist() == [100.0, 0.0, 0.0, 50.0, 0.0, 0.0]
    assert frame["evid"].tolist() == [1, 0, 0, 1, 0, 0]
    assert frame["CENT"].iloc[1] == pytest.approx(100.0 * math.exp(-KEL), rel=1e-5)
    assert frame["CENT"].iloc[4] == pytest.approx(50.0 * math.exp(-KEL), rel=1e-5)


def test_data_set_observations_replace_the_design() -> None:
    model = pk1cmt()
    result = run_simulation(model, data=_data_set(), config=_config(model, grid=TGrid(0, 24, 1)))
    assert len(result.table) == 6


def test_data_set_parameter_columns_vary_over_time() -> None:
    frame = pd.DataFrame(
        {
            "ID": [1, 1, 1],
            "time": [0.0, 10.0, 20.0],
            "amt": [100.0, 0.0, 0.0],
            "cmt": [2, 2, 2],
            "CL": [1.0, 4.0, 4.0],
        }
    )
    model = pk1cmt()
    result = run_simulation(model, data=frame, config=_config(model, Req=("CENT",)))
    values = result.to_frame()["CENT"].tolist()
    assert values[1] == pytest.approx(100.0 * math.exp(-KEL * 10.0), rel=1e-5)
    assert values[2] == pytest.approx(values[1] * math.exp(-0.2 * 10.0), rel=1e-5)


def test_idata_overrides_parameters_and_initial_amounts() -> None:
    idata = pd.DataFrame({"ID": [1, 2], "CL": [1.0, 2.0], "CENT_0": [np.nan, 100.0], "GRP": ["a", "b"]})
    model = pk1cmt()
    result = run_simulation(
        model,
        idata=idata,
        config=_config(model, grid=TGrid(0, 10, 10), Req=("CENT",), carry_out=("GRP",)),
    )
    frame = result.to_frame()
    assert frame["ID"].tolist() == [1, 1, 2, 2]
    assert frame["CENT"].tolist()[:2] == [0.0, 0.0]
    assert frame["CENT"].iloc[3] == pytest.approx(100.0 * math.exp(-0.1 * 10.0), rel=1e-5)
    assert frame["GRP"].tolist() == ["a", "a", "b", "b"]


def test_design_column_assigns_grids_per_individual() -> None:
    idata = pd.DataFrame({"ID": [1, 2, 3], "ARM": [2, 1, 2]})
    model = pk1cmt()
    assignment = build_design_assignment([TGrid(0, 4, 2), TGrid(0, 4, 1)], "ARM", idata=idata)
    result = run_simulation(model, idata=idata, config=SimConfig().with_design(assignment))
    frame = result.to_frame()
    assert frame.groupby("ID", sort=False).size().tolist() == [5, 3, 5]


def test_multiple_designs_without_column_warn_in_result() -> None:
    model = pk1cmt()
    assignment = build_design_assignment([TGrid(0, 2, 1), TGrid(0, 8, 4)])
    result = run_simulation(model, config=SimConfig().with_design(assignment))
    assert result.to_frame()["time"].tolist() == [0.0, 1.0, 2.0]
    assert any("only the first design" in message for message in result.warnings)


def test_unknown_carry_out_item_is_a_data_error() -> None:
    model = pk1cmt()
    with pytest.raises(DataError):
        run_simulation(model, events=ev(amt=1), config=_config(model, carry_out=("NOPE",)))


def test_data_set_and_events_are_exclusive() -> None:
    with pytest.raises(ConfigurationError):
        run_simulation(pk1cmt(), data=_data_set(), events=ev(amt=1))


def test_unknown_solver_method_fails_before_running() -> None:
    with pytest.raises(ConfigurationError):
        run_simulation(pk1cmt(), solver=SolverConfig(method="gear"))


def test_result_table_is_read_only_and_carries_provenance(tmp_path) -> None:
    model = pk1cmt()
    result = run_simulation(model, config=_config(model, grid=TGrid(0, 2, 1), Req=("CP",)), run_label="demo")
    table = result.table
    with pytest.raises(ValueError):
        table.column("time")[0] = 5.0
    assert table.semantics_version == SEMANTICS_VERSION
    assert table.output_columns == ("CP",)
    assert table.provenance["solver_hash"] == SolverConfig().identity()
    assert table.provenance["run_label"] == "demo"

    target = tmp_path / "out" / "sim.csv"
    table.save_csv(target)
    assert pd.read_csv(target).shape == (3, 3)
    manifest = target.with_suffix(".csv.header.txt").read_text(encoding="utf8")
    assert manifest.splitlines() == ["ID", "time", "CP"]


def _failure_idata() -> pd.DataFrame:
    return pd.DataFrame({"ID": [1, 2, 3], "FAIL": [0.0, 1.0, 0.0]})


def test_failed_individual_rows_are_omitted_by_default() -> None:
    model = _fragile_model()
    result = run_simulation(model, idata=_failure_idata(), config=_config(model, grid=TGrid(0, 12, 6)))
    frame = result.to_frame()
    assert frame.groupby("ID", sort=False).size().tolist() == [3, 1, 3]
    assert [diag.individual for diag in result.failed] == [2]
    assert result.failed[0].failed_at == pytest.approx(0.0)
    assert any("ID 2 failed" in message for message in result.warnings)


def test_failed_individual_rows_can_be_nan_filled() -> None:
    model = _fragile_model()
    result = run_simulation(
        model,
        idata=_failure_idata(),
        config=_config(model, grid=TGrid(0, 12, 6)),
        options=RunOptions(failure_rows="na"),
    )
    frame = result.to_frame()
    assert len(frame) == 9
    values = frame.loc[frame["ID"] == 2, "A"].tolist()
    assert values[0] == pytest.approx(1.0)
    assert math.isnan(values[1]) and math.isnan(values[2])


@pytest.mark.parametrize("workers", [1, 3])
def test_capture_failure_is_reported_for_that_individual_only(workers: int) -> None:
    idata = pd.DataFrame({"ID": [1, 2, 3], "V": [20.0, 0.0, 20.0]})
    result = run_simulation(pk1cmt(), idata=idata, events=ev(amt=100), options=RunOptions(workers=workers))
    frame = result.to_frame()
    assert [diag.individual for diag in result.failed] == [2]
    assert result.failed[0].failed_at == pytest.approx(0.0)
    assert frame["ID"].drop_duplicates().tolist() == [1, 3]
    assert frame.groupby("ID", sort=False).size().tolist() == [25, 25]


def test_captures_are_only_evaluated_when_requested() -> None:
    def capture(t, y, params):
        raise ValueError("capture domain error")

    model = OdeModel(
        name="bad_capture",
        compartments=("A",),
        parameters={"K": 0.1},
        rhs=lambda t, y, params: -params["K"] * y,
        init={"A": 1.0},
        captures=("C",),
        capture=capture,
    )
    grid = TGrid(0, 2, 1)
    selected = run_simulation(model, config=_config(model, grid=grid, Req=("A",)))
    assert selected.ok
    assert len(selected.table) == 3
    everything = run_simulation(model, config=_config(model, grid=grid))
    assert [diag.individual for diag in everything.failed] == [1]
    assert "capture domain error" in everything.failed[0].message
    assert len(everything.table) == 0


def test_strict_mode_raises_the_first_failure() -> None:
    model = _fragile_model()
    with pytest.raises(IntegrationError, match="domain error"):
        run_simulation(
            model,
            idata=_failure_idata(),
            config=_config(model, grid=TGrid(0, 12, 6)),
            options=RunOptions(strict=True),
        )


@pytest.mark.slow
def test_parallel_run_matches_sequential_run() -> None:
    idata = pd.DataFrame({"ID": list(range(1, 7)), "CL": [0.5, 1.0, 1.5, 2.0, 2.5, 3.0]})
    model = pk1cmt()
    config = _config(model, grid=TGrid(0, 24, 2))
    serial = run_simulation(model, idata=idata, events=ev(amt=100), config=config)
    parallel = run_simulation(
        model,
        idata=idata,
        events=ev(amt=100),
        config=config,
        options=RunOptions(workers=4),
    )
    pd.testing.assert_frame_equal(serial.to_frame(), parallel.to_frame())
    assert parallel.to_frame()["ID"].drop_duplicates().tolist() == list(range(1, 7))


@pytest.mark.slow
@pytest.mark.parametrize("workers", [1, 3])
def test_timeout_reports_partial_results(workers: int) -> None:
    model = _slow_model()
    idata = pd.DataFrame({"ID": [1, 2, 3]})
    result = run_simulation(
        model,
        idata=idata,
        config=_config(model, grid=TGrid(0, 24, 1)),
        solver=SolverConfig(method="RK4", fixed_step=0.1),
        options=RunOptions(workers=workers, timeout_s=0.3),
    )
    assert not result.ok
    assert [diag.individual for diag in result.diagnostics] == [1, 2, 3]
    assert all(diag.timed_out for diag in result.diagnostics)
    assert len(result.table) < 75
    assert any("timed out" in message for message in result.warnings)
