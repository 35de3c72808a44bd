"""
transient.py — reference fixed-step driver for PhotoGasSensorModel

Stands in for the external circuit solver when the sensor is simulated on its own:

  - Stimulus: LED drive voltage, gas signal and terminal voltage as callables of time,
    plus a constant ambient temperature.
  - simulate(): evaluate → commit once per accepted step. A NonFiniteResultError
    rejects the step and retries it with half the step size down to `min_step`.
  - compute_derived_outputs(): scalar summary of a run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .core import T_NOMINAL, PhotoGasSensorModel, SensorState, StateIndexLayout
from .errors import InvalidParameterError, NonFiniteResultError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
#  Waveforms / stimulus
# ---------------------------------------------------------------------------

class PiecewiseLinear:
    """
    SPICE PWL-like waveform: linear between (time, value) corners, constant outside.

        PiecewiseLinear([0.0, 1.0, 1.001], [0.0, 0.0, 2.0])   # 0 V → 2 V step at t = 1 s
    """

    def __init__(self, times: Sequence[float], values: Sequence[float]) -> None:
        t = np.asarray(times, dtype=float)
        v = np.asarray(values, dtype=float)
        if t.ndim != 1 or t.shape != v.shape or t.size == 0:
            raise InvalidParameterError("PWL times and values must be 1-D sequences of equal, non-zero length")
        if np.any(np.diff(t) < 0.0):
            raise InvalidParameterError("PWL times must be non-decreasing")
        if not (np.all(np.isfinite(t)) and np.all(np.isfinite(v))):
            raise InvalidParameterError("PWL corners must be finite")
        self.times = t
        self.values = v

    def __call__(self, t: float) -> float:
        return float(np.interp(t, self.times, self.values))

    def __repr__(self) -> str:
        return f"PiecewiseLinear(times={self.times.tolist()}, values={self.values.tolist()})"


def constant(value: float) -> Callable[[float], float]:
    value = float(value)

    def _const(t: float) -> float:
        return value

    return _const


@dataclass
class Stimulus:
    """External inputs of one sensor over a run."""

    led_voltage: Callable[[float], float]
    gas_signal: Callable[[float], float]
    terminal_voltage: Callable[[float], float] = field(default_factory=lambda: constant(1.0))
    temperature: float = T_NOMINAL


# ---------------------------------------------------------------------------
#  Result container
# ---------------------------------------------------------------------------

@dataclass
class TransientResult:
    """
    Time series of an accepted run.

      t       : (n,) accepted instants
      Y       : (n, n_states) continuous states, columns as in StateIndexLayout
      signals : name → (n,) derived quantity
    """

    t: np.ndarray
    Y: np.ndarray
    signals: Dict[str, np.ndarray]
    final_state: SensorState

    def __getitem__(self, name: str) -> np.ndarray:
        return self.signals[name]


_SIGNALS = (
    "terminal_current",
    "led_current",
    "irradiance",
    "irr_lp",
    "r_base",
    "sensitivity",
    "r_gas",
    "r_drift",
    "r_total",
    "gas_gain",
    "tp1",
    "gas_input",
)


def _record(state: SensorState, rows: Dict[str, List[float]]) -> None:
    out = state.outputs
    rows["terminal_current"].append(out.terminal_current)
    rows["led_current"].append(out.led_current)
    rows["irradiance"].append(out.irradiance)
    rows["irr_lp"].append(out.irr_lp)
    rows["r_base"].append(out.r_base)
    rows["sensitivity"].append(out.sensitivity)
    rows["r_gas"].append(out.r_gas)
    rows["r_drift"].append(out.r_drift)
    rows["r_total"].append(out.r_total)
    rows["gas_gain"].append(state.latch.gain)
    rows["tp1"].append(state.latch.tp1)
    rows["gas_input"].append(state.gas_input)


# ---------------------------------------------------------------------------
#  Simulation
# ---------------------------------------------------------------------------

def simulate(
    model: PhotoGasSensorModel,
    t_span: Tuple[float, float],
    stimulus: Stimulus,
    dt: float,
    *,
    min_step: Optional[float] = None,
) -> TransientResult:
    """
    Run `model` over [t0, t_end] with nominal step `dt`.

    The model is reset, evaluated once at t0 (this seeds the initial state) and then
    advanced step by step. A step whose evaluation raises NonFiniteResultError is
    retried with half the step; below `min_step` (default dt * 1e-6) the error is
    re-raised. The step grows back to `dt` after each accepted step.
    """
    t0, t_end = float(t_span[0]), float(t_span[1])
    if not t_end >= t0:
        raise ValueError(f"t_span must be increasing, got {t_span!r}")
    if not dt > 0.0:
        raise ValueError(f"dt must be > 0, got {dt!r}")
    min_step = float(min_step) if min_step is not None else dt * 1e-6

    def _evaluate(t: float):
        return model.evaluate(
            t,
            stimulus.led_voltage(t),
            stimulus.gas_signal(t),
            stimulus.terminal_voltage(t),
            stimulus.temperature,
        )

    model.reset()
    logger.info("transient run t=[%g, %g] dt=%g", t0, t_end, dt)

    first = _evaluate(t0)
    model.commit_step(first.state)

    ts: List[float] = [t0]
    ys: List[np.ndarray] = [first.state.y.copy()]
    rows: Dict[str, List[float]] = {name: [] for name in _SIGNALS}
    _record(first.state, rows)

    tol_time = 1e-12 * max(1.0, abs(t_end - t0))
    t_current = t0
    h = dt
    n_rejected = 0

    while t_end - t_current > tol_time:
        t_next = min(t_current + h, t_end)
        try:
            ev = _evaluate(t_next)
        except NonFiniteResultError as exc:
            h = 0.5 * (t_next - t_current)
            n_rejected += 1
            if h < min_step:
                logger.error("step at t=%g rejected below min_step=%g", t_current, min_step)
                raise
            logger.warning("step rejected at t=%g (%s); retrying with h=%g", t_next, exc, h)
            continue

        model.commit_step(ev.state)
        t_current = t_next
        ts.append(t_current)
        ys.append(ev.state.y.copy())
        _record(ev.state, rows)
        h = dt

    logger.info("transient done: %d accepted steps, %d rejected", len(ts) - 1, n_rejected)

    return TransientResult(
        t=np.asarray(ts, dtype=float),
        Y=np.vstack(ys),
        signals={name: np.asarray(values, dtype=float) for name, values in rows.items()},
        final_state=model.state,
    )


# ---------------------------------------------------------------------------
#  Derived outputs
# ---------------------------------------------------------------------------

def compute_derived_outputs(result: TransientResult) -> Dict[str, float]:
    """
    Scalar summary of a run:

      - r_total_final / r_total_min / r_total_max
      - response_ratio = r_total_initial / r_total_final
      - terminal_current_final
      - irr_lp_final
      - gas_con_final
    """
    r_total = result["r_total"]
    gas_con = result.Y[:, StateIndexLayout.idx_gas_con]

    def _ratio(num: float, den: float) -> float:
        if abs(den) < 1e-300:
            return 0.0
        return num / den

    return {
        "r_total_final": float(r_total[-1]),
        "r_total_min": float(np.min(r_total)),
        "r_total_max": float(np.max(r_total)),
        "response_ratio": float(_ratio(r_total[0], r_total[-1])),
        "terminal_current_final": float(result["terminal_current"][-1]),
        "irr_lp_final": float(result["irr_lp"][-1]),
        "gas_con_final": float(gas_con[-1]),
    }
