from __future__ import annotations

import pandas as pd
import pytest

from src.pksim import Setup, TGrid, ev, house, pk1cmt
from src.pksim.errors import ConfigurationError


def test_chained_setup_matches_reference_scenario() -> None:
    result = Setup(pk1cmt()).ev(ev(amt=100)).design(TGrid(0, 24, 6)).Req("CP").simulate()
    frame = result.to_frame()
    assert list(frame.columns) == ["ID", "time", "CP"]
    assert frame["time"].tolist() == [0.0, 6.0, 12.0, 18.0, 24.0]


def test_each_step_returns_a_new_setup() -> None:
    base = Setup(pk1cmt())
    scaled = base.tscale(2)
    assert base.config.tscale == 1.0
    assert scaled.config.tscale == 2.0
    assert scaled is not base


def test_design_with_descol_requires_idata_first() -> None:
    with pytest.raises(ConfigurationError, match="idata"):
        Setup(pk1cmt()).design([TGrid(0, 4, 2), TGrid(0, 4, 1)], descol="ARM")


def test_design_without_valid_entries() -> None:
    with pytest.raises(ConfigurationError, match="No valid tgrid objects found."):
        Setup(pk1cmt()).design(["0, 6, 12"])


def test_idata_then_design_by_column() -> None:
    idata = pd.DataFrame({"ID": [1, 2], "ARM": ["lo", "hi"], "CL": [1.0, 2.0]})
    result = (
        Setup(pk1cmt())
        .idata_set(idata)
        .design({"lo": TGrid(0, 4, 4), "hi": [0.0, 1.0, 2.0]}, descol="ARM")
        .ev(ev(amt=100, cmt="CENT"))
        .carry_out("ARM")
        .obsonly()
        .simulate()
    )
    frame = result.to_frame()
    assert frame.groupby("ID", sort=False).size().tolist() == [2, 3]
    assert frame["ARM"].tolist() == ["lo", "lo", "hi", "hi", "hi"]


def test_data_set_and_events_cannot_be_mixed() -> None:
    data = pd.DataFrame({"ID": [1, 1], "time": [0.0, 1.0], "amt": [10.0, 0.0]})
    with pytest.raises(ConfigurationError):
        Setup(pk1cmt()).ev(ev(amt=1)).data_set(data)
    with pytest.raises(ConfigurationError):
        Setup(pk1cmt()).data_set(data).ev(ev(amt=1))


def test_update_param_and_init() -> None:
    setup = Setup(house()).update(end=4, delta=2).param(CL=2.0).init(CENT=10.0)
    result = setup.Req("CENT").simulate()
    frame = result.to_frame()
    assert frame["time"].tolist() == [0.0, 2.0, 4.0]
    assert frame["CENT"].iloc[0] == pytest.approx(10.0)
    assert setup.model.parameters["CL"] == 2.0
    with pytest.raises(ConfigurationError):
        setup.param(NOT_A_PARAM=1.0)


def test_solver_and_run_options_reject_unknown_fields() -> None:
    setup = Setup(pk1cmt()).solver_options(method="RK45", rtol=1e-6).run_options(workers=2)
    assert setup.solver.method == "RK45"
    assert setup.options.workers == 2
    with pytest.raises(ConfigurationError):
        setup.solver_options(order=5)
    with pytest.raises(ConfigurationError):
        setup.run_options(threads=2)


def test_tscale_units_converts_model_time() -> None:
    frame = Setup(pk1cmt()).update(end=48, delta=24).tscale_units("day").simulate().to_frame()
    assert frame["time"].tolist() == pytest.approx([0.0, 1.0, 2.0])


def test_house_model_pipeline_with_response() -> None:
    result = Setup(house()).ev(ev(amt=100, cmt="GUT")).Req("CP", "RESP").update(end=24, delta=12).simulate()
    frame = result.to_frame()
    assert list(frame.columns) == ["ID", "time", "CP", "RESP"]
    assert frame["RESP"].iloc[0] == pytest.approx(50.0)
    assert frame["RESP"].iloc[1] < 50.0
