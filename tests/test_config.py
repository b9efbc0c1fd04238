from __future__ import annotations

import pytest

from src.pksim.config import RunOptions, SimConfig, select_outputs
from src.pksim.errors import ConfigurationError
from src.pksim.library import house, pk1cmt


def test_req_keeps_all_captures() -> None:
    model = house()
    config = SimConfig().with_request(model, "RESP")
    assert select_outputs(model, config) == ("RESP", "CP", "DV")


def test_req_rejects_captured_names() -> None:
    with pytest.raises(ConfigurationError):
        SimConfig().with_request(pk1cmt(), "CP")


def test_Req_is_exclusive_and_ordered() -> None:
    model = house()
    config = SimConfig().with_request(model, "GUT").with_outvars(model, "DV, RESP")
    assert select_outputs(model, config) == ("DV", "RESP")


def test_Req_rejects_unknown_names() -> None:
    with pytest.raises(ConfigurationError):
        SimConfig().with_outvars(pk1cmt(), "AUC")


def test_default_outputs_are_compartments_then_captures() -> None:
    assert select_outputs(pk1cmt(), SimConfig()) == ("EV1", "CENT", "CP")


def test_carry_out_names_are_split_and_deduplicated() -> None:
    config = SimConfig().with_carry_out(pk1cmt(), "amt,evid", "amt", " WT ")
    assert config.carry_out == ("amt", "evid", "WT")


def test_carry_out_cannot_collide_with_outputs() -> None:
    model = pk1cmt()
    with pytest.raises(ConfigurationError):
        SimConfig().with_carry_out(model, "CP")
    with pytest.raises(ConfigurationError):
        SimConfig().with_carry_out(model, "time")
    # collides only once Req brings CENT back
    config = SimConfig().with_outvars(model, "CP").with_carry_out(model, "CENT")
    with pytest.raises(ConfigurationError):
        config.with_outvars(model, "CP", "CENT")


def test_config_updates_return_new_values() -> None:
    base = SimConfig()
    scaled = base.with_tscale(24).with_obsonly().with_obsaug()
    assert base.tscale == 1.0 and not base.obsonly and not base.obsaug
    assert scaled.tscale == 24.0 and scaled.obsonly and scaled.obsaug


def test_tscale_must_be_positive() -> None:
    with pytest.raises(ConfigurationError):
        SimConfig().with_tscale(0)


@pytest.mark.parametrize(
    "kwargs",
    [{"workers": 0}, {"timeout_s": 0.0}, {"timeout_s": float("inf")}, {"failure_rows": "drop"}],
)
def test_run_options_validation(kwargs) -> None:
    with pytest.raises(ConfigurationError):
        RunOptions(**kwargs)
