"""
config.py — YAML loaders for sensor parameters and transient scenarios

Parameter file layout (one mapping per block, keys are the dataclass field names):

    led:             {r_s: ..., r_p: ..., c_p: ..., i_s: ..., n: ...}
    irradiance:      {tp: ..., gain: ..., irr_0: ..., irr_m: ...}
    base_resistance: {sensor_r0: ..., alpha: ..., beta: ...}
    gas:             {gain_on: ..., gain_off: ..., r_t1t2: ..., r_onoff: ...,
                      t_irr_m: ..., t_irr_of: ..., edge_threshold: 0.1}
    sensitivity:     {irr_s: ..., irr_o: ..., std: ...}
    synthesis:       {sensor_r: ..., drift_coef: ...}

Scenario file layout:

    t0: 0.0
    tend: 5.0
    dt: 1.0e-3
    temperature: 300.0
    led_voltage:      {pwl: [[0.0, 0.0], [1.0, 0.0], [1.001, 2.0]]}
    gas_signal:       {value: 0.0}
    terminal_voltage: {value: 1.0}
"""

from __future__ import annotations

from dataclasses import MISSING, fields
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Tuple, Type, TypeVar, Union

import yaml

from .core import (
    T_NOMINAL,
    BaseResistanceParams,
    GasDynamicsParams,
    IrradianceParams,
    LedParams,
    PhotoGasSensorModel,
    SensitivityParams,
    SynthesisParams,
)
from .errors import InvalidParameterError
from .transient import PiecewiseLinear, Stimulus, constant

PathLike = Union[str, Path]
P = TypeVar("P")

BLOCKS: Dict[str, type] = {
    "led": LedParams,
    "irradiance": IrradianceParams,
    "base_resistance": BaseResistanceParams,
    "gas": GasDynamicsParams,
    "sensitivity": SensitivityParams,
    "synthesis": SynthesisParams,
}


def _read_yaml(path: PathLike) -> Dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    if not isinstance(cfg, dict):
        raise InvalidParameterError(f"{path}: expected a mapping at the top level")
    return cfg


def _build_block(block_name: str, cls: Type[P], raw: Any) -> P:
    if not isinstance(raw, Mapping):
        raise InvalidParameterError(f"'{block_name}' must be a mapping, got {type(raw).__name__}")

    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise InvalidParameterError(f"unknown keys in '{block_name}': {', '.join(unknown)}")

    kwargs = {}
    for name, f in known.items():
        if name not in raw:
            if f.default is MISSING:
                raise InvalidParameterError(f"missing key '{block_name}.{name}'")
            continue
        try:
            kwargs[name] = float(raw[name])
        except (TypeError, ValueError) as exc:
            raise InvalidParameterError(
                f"'{block_name}.{name}' is not a number: {raw[name]!r}"
            ) from exc
    return cls(**kwargs)


def build_params_from_mapping(cfg: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the six parameter blocks keyed by PhotoGasSensorModel argument name."""
    missing = [name for name in BLOCKS if name not in cfg]
    if missing:
        raise InvalidParameterError(f"missing parameter blocks: {', '.join(missing)}")

    blocks = {name: _build_block(name, cls, cfg[name]) for name, cls in BLOCKS.items()}
    return {
        "led": blocks["led"],
        "irradiance": blocks["irradiance"],
        "base": blocks["base_resistance"],
        "gas": blocks["gas"],
        "sensitivity": blocks["sensitivity"],
        "synthesis": blocks["synthesis"],
    }


def load_params_yaml(path: PathLike) -> Dict[str, Any]:
    return build_params_from_mapping(_read_yaml(path))


def build_model_from_yaml(path: PathLike) -> PhotoGasSensorModel:
    return PhotoGasSensorModel(**load_params_yaml(path))


# ---------------------------------------------------------------------------
#  Scenarios
# ---------------------------------------------------------------------------

def _build_waveform(name: str, raw: Any) -> Callable[[float], float]:
    if isinstance(raw, (int, float)):
        return constant(raw)
    if isinstance(raw, Mapping) and "value" in raw:
        return constant(float(raw["value"]))
    if isinstance(raw, Mapping) and "pwl" in raw:
        try:
            times, values = zip(*raw["pwl"])
        except (TypeError, ValueError) as exc:
            raise InvalidParameterError(f"'{name}.pwl' must be a list of [time, value] pairs") from exc
        return PiecewiseLinear(times, values)
    raise InvalidParameterError(f"'{name}' must be a number, {{value: x}} or {{pwl: [[t, v], ...]}}")


def build_stimulus_from_mapping(cfg: Mapping[str, Any]) -> Tuple[Tuple[float, float], float, Stimulus]:
    """Return ((t0, tend), dt, Stimulus) from a scenario mapping."""
    try:
        t_span = (float(cfg["t0"]), float(cfg["tend"]))
        dt = float(cfg["dt"])
    except KeyError as exc:
        raise InvalidParameterError(f"scenario is missing key {exc.args[0]!r}") from exc

    stimulus = Stimulus(
        led_voltage=_build_waveform("led_voltage", cfg.get("led_voltage", 0.0)),
        gas_signal=_build_waveform("gas_signal", cfg.get("gas_signal", 0.0)),
        terminal_voltage=_build_waveform("terminal_voltage", cfg.get("terminal_voltage", 1.0)),
        temperature=float(cfg.get("temperature", T_NOMINAL)),
    )
    return t_span, dt, stimulus


def load_scenario_yaml(path: PathLike) -> Tuple[Tuple[float, float], float, Stimulus]:
    return build_stimulus_from_mapping(_read_yaml(path))
