from pathlib import Path

import pytest
import yaml

from photogas_model import InvalidParameterError, PhotoGasSensorModel
from photogas_model.config import (
    build_model_from_yaml,
    build_params_from_mapping,
    build_stimulus_from_mapping,
    load_params_yaml,
    load_scenario_yaml,
)

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"


@pytest.fixture
def raw_params():
    with (EXAMPLES / "params_default.yaml").open("r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def test_default_params_file_builds_model():
    model = build_model_from_yaml(EXAMPLES / "params_default.yaml")
    assert isinstance(model, PhotoGasSensorModel)
    assert model.led.r_s == 10.0
    assert model.base.sensor_r0 == 1.0e5
    assert model.gas.edge_threshold == 0.1
    assert model.syn.drift_coef == 1.0e-3


def test_load_params_yaml_returns_model_kwargs():
    blocks = load_params_yaml(EXAMPLES / "params_default.yaml")
    assert set(blocks) == {"led", "irradiance", "base", "gas", "sensitivity", "synthesis"}


def test_edge_threshold_is_optional(raw_params):
    del raw_params["gas"]["edge_threshold"]
    blocks = build_params_from_mapping(raw_params)
    assert blocks["gas"].edge_threshold == 0.1


def test_missing_block_rejected(raw_params):
    del raw_params["sensitivity"]
    with pytest.raises(InvalidParameterError, match="sensitivity"):
        build_params_from_mapping(raw_params)


def test_missing_key_rejected(raw_params):
    del raw_params["led"]["c_p"]
    with pytest.raises(InvalidParameterError, match="led.c_p"):
        build_params_from_mapping(raw_params)


def test_unknown_key_rejected(raw_params):
    raw_params["irradiance"]["tau"] = 1.0
    with pytest.raises(InvalidParameterError, match="tau"):
        build_params_from_mapping(raw_params)


def test_non_numeric_value_rejected(raw_params):
    raw_params["base_resistance"]["alpha"] = "large"
    with pytest.raises(InvalidParameterError, match="alpha"):
        build_params_from_mapping(raw_params)


def test_domain_violation_surfaces_on_construction(tmp_path, raw_params):
    raw_params["irradiance"]["tp"] = -1.0
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump(raw_params), encoding="utf-8")
    with pytest.raises(InvalidParameterError, match="tp"):
        build_model_from_yaml(path)


def test_non_mapping_file_rejected(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(InvalidParameterError):
        load_params_yaml(path)


def test_led_step_scenario_file():
    (t0, tend), dt, stimulus = load_scenario_yaml(EXAMPLES / "scenario_led_step.yaml")
    assert (t0, tend, dt) == (0.0, 5.0, 1.0e-3)
    assert stimulus.led_voltage(0.5) == 0.0
    assert stimulus.led_voltage(2.0) == 2.0
    assert stimulus.gas_signal(3.0) == 0.0
    assert stimulus.terminal_voltage(3.0) == 1.0
    assert stimulus.temperature == 300.0


def test_scenario_defaults_and_plain_numbers():
    t_span, dt, stimulus = build_stimulus_from_mapping(
        {"t0": 0, "tend": 1, "dt": 0.1, "led_voltage": 1.5}
    )
    assert t_span == (0.0, 1.0)
    assert stimulus.led_voltage(0.3) == 1.5
    assert stimulus.gas_signal(0.3) == 0.0
    assert stimulus.terminal_voltage(0.3) == 1.0


@pytest.mark.parametrize(
    "cfg",
    [
        {"tend": 1, "dt": 0.1},
        {"t0": 0, "tend": 1, "dt": 0.1, "gas_signal": {"pwl": [1, 2, 3]}},
        {"t0": 0, "tend": 1, "dt": 0.1, "gas_signal": {"ramp": 1}},
    ],
)
def test_bad_scenarios_rejected(cfg):
    with pytest.raises(InvalidParameterError):
        build_stimulus_from_mapping(cfg)
