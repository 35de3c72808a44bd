"""
core.py — photo-activated metal-oxide gas sensor, behavioral core

The device is a two-terminal variable resistor. Its resistance is modulated by six
feed-forward stages that are evaluated together on every call:

  - Stage 1: LED electro-optical network (R_s in series, R_p || C_p || diode)
  - Stage 2: Irradiance (affine in LED current) + first-order inertia filter
  - Stage 3: Base resistance (power law in filtered irradiance)
  - Stage 4: Gas dynamics (edge-latched, irradiance-dependent two-pole filter)
  - Stage 5: Sensitivity (log-normal bell in filtered irradiance)
  - Stage 6: Resistance synthesis (base + gas + drift) and Ohmic terminal current

**Evaluation contract (matches how a circuit solver drives a device):**
  - evaluate() is pure. It integrates from the committed state to the trial time and
    returns a *proposed* SensorState; calling it many times at one instant with
    different trial voltages never changes anything.
  - commit_step() is the only mutator. The gas edge latch, the filter states and the
    drift clock advance only through it, once per accepted step.
  - log / power / division operands pass through guard floors. A guard hit is never
    silent: it is listed in Diagnostics.guards and logged when the step is committed.

The surrounding solver (time-step control, Newton iteration, topology) is external.
A reference fixed-step driver lives in transient.py.
"""

from __future__ import annotations

import logging
import math
import numbers
from dataclasses import dataclass, field, fields
from enum import Enum
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy import constants
from scipy.optimize import brentq
from scipy.signal import cont2discrete

from .errors import InvalidParameterError, NonFiniteResultError, NumericDomainError

logger = logging.getLogger(__name__)


# Ambient temperature used when the caller does not supply one [K]
T_NOMINAL = 300.0

# Guard floors / ceilings
IRR_FLOOR = 1e-12
GAS_FLOOR = 1e-15
EMAXS_FLOOR = 1e-12
RESP_FLOOR = 1e-12
R_BASE_FLOOR = 1e-6
R_GAS_CEILING = 1e18
R_TOTAL_FLOOR = 1e-6
TEMPERATURE_FLOOR = 1.0

# Diode exponent above which exp() is continued linearly (same trick as SPICE junctions)
MAX_EXP_ARG = 80.0

# Sensitivity prefactor
SENS_SCALE = 10.0


# ---------------------------------------------------------------------------
#  Numeric helpers
# ---------------------------------------------------------------------------

def thermal_voltage(temperature: float) -> float:
    """kT/q in volts for an absolute temperature in kelvin."""
    return constants.k * temperature / constants.e


def safe_exp(x: float) -> float:
    """exp(x), continued linearly (value and slope matched) above MAX_EXP_ARG."""
    if x <= MAX_EXP_ARG:
        return math.exp(x)
    return math.exp(MAX_EXP_ARG) * (1.0 + x - MAX_EXP_ARG)


def require_at_least(name: str, value: float, floor: float) -> float:
    """Return `value` unchanged, or raise NumericDomainError if it is below `floor`."""
    if not value >= floor:
        raise NumericDomainError(name, value, floor)
    return value


class _GuardLog:
    """Collects the names of guards that had to clamp during one evaluation."""

    def __init__(self) -> None:
        self.hits: List[str] = []

    def floor(self, name: str, value: float, floor: float) -> float:
        try:
            return require_at_least(name, value, floor)
        except NumericDomainError as exc:
            if math.isnan(value):
                # NaN is not a domain problem; the finite check reports it
                return value
            logger.debug("clamped: %s", exc)
            self.hits.append(name)
            return floor

    def ceiling(self, name: str, value: float, ceiling: float) -> float:
        if value > ceiling:
            logger.debug("clamped: %s=%r above ceiling %r", name, value, ceiling)
            self.hits.append(name)
            return ceiling
        return value


# ---------------------------------------------------------------------------
#  Stage 1: LED electro-optical parameters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LedParams:
    """
    LED drive network (Stage 1).

        V_led ──R_s──┬──────┬──────┬── node (v_led)
                     │      │      │
                    R_p    C_p   diode
                     │      │      │
        gnd ─────────┴──────┴──────┘

    The diode follows I = i_s * exp(v / (n * kT/q)).
    """

    r_s: float   # series resistance [Ohm]
    r_p: float   # parallel leakage resistance [Ohm]
    c_p: float   # parallel capacitance [F]
    i_s: float   # saturation current [A]
    n: float     # ideality factor


# ---------------------------------------------------------------------------
#  Stage 2: Irradiance
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IrradianceParams:
    """
    irr = irr_0 + irr_m * i_led, filtered by  tp * d(irr_lp)/dt + irr_lp = gain * irr.
    """

    tp: float      # inertia pole time constant [s]
    gain: float
    irr_0: float   # ambient floor
    irr_m: float   # slope vs. LED current [1/A]


# ---------------------------------------------------------------------------
#  Stage 3: Base resistance
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BaseResistanceParams:
    """r_base = sensor_r0 / (1 + alpha * irr_lp ** beta)"""

    sensor_r0: float   # reference resistance [Ohm]
    alpha: float
    beta: float


# ---------------------------------------------------------------------------
#  Stage 4: Gas dynamics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GasDynamicsParams:
    """
    Edge-latched two-pole adsorption / desorption filter.

    On a rising edge (d gasIn/dt > edge_threshold):
        gain = gain_on,  tp1 = t_irr_of * (1/irr) ** t_irr_m
    On a falling edge (d gasIn/dt < -edge_threshold):
        gain = gain_off, tp1 = r_onoff * t_irr_of * (1/irr) ** t_irr_m
    Otherwise gain and tp1 stay latched. tp2 = tp1 / r_t1t2 always.
    """

    gain_on: float
    gain_off: float
    r_t1t2: float    # tp1 / tp2
    r_onoff: float   # falling / rising primary pole ratio
    t_irr_m: float   # irradiance dependence exponent
    t_irr_of: float  # pole time constant at unit irradiance [s]
    edge_threshold: float = 0.1  # [gas units / s]


# ---------------------------------------------------------------------------
#  Stage 5: Sensitivity
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SensitivityParams:
    """
    Log-normal response in filtered irradiance:

        resp_EmaxS = irr_s * gas_con + irr_o
        resp_mean  = ln(resp_EmaxS) + std**2
        resp       = gas_con * 10 / (irr_lp * std * sqrt(2 pi))
                     * exp(-(ln(irr_lp) - resp_mean)**2 / (2 std**2))
    """

    irr_s: float
    irr_o: float
    std: float


# ---------------------------------------------------------------------------
#  Stage 6: Resistance synthesis
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SynthesisParams:
    """g_gas = gas_con ** sensor_r / (resp * r_base);  r_drift = drift_coef * elapsed"""

    sensor_r: float    # gas conductance exponent
    drift_coef: float  # [Ohm / s]


# ---------------------------------------------------------------------------
#  State layout
# ---------------------------------------------------------------------------

class StateIndexLayout:
    """
    Indices into the continuous state vector y(t).

      - v_led        LED internal node voltage (across R_p || C_p || diode)
      - irr_lp       filtered irradiance
      - gas_con      filtered gas concentration
      - ddt_gas_con  d(gas_con)/dt
    """

    idx_v_led = 0
    idx_irr_lp = 1
    idx_gas_con = 2
    idx_ddt_gas_con = 3
    n_states = 4
    names = ("v_led", "irr_lp", "gas_con", "ddt_gas_con")

    def unpack(self, y: np.ndarray) -> Tuple[float, float, float, float]:
        return (
            float(y[self.idx_v_led]),
            float(y[self.idx_irr_lp]),
            float(y[self.idx_gas_con]),
            float(y[self.idx_ddt_gas_con]),
        )

    def pack(self, v_led: float, irr_lp: float, gas_con: float, ddt_gas_con: float) -> np.ndarray:
        y = np.zeros(self.n_states, dtype=float)
        y[self.idx_v_led] = v_led
        y[self.idx_irr_lp] = irr_lp
        y[self.idx_gas_con] = gas_con
        y[self.idx_ddt_gas_con] = ddt_gas_con
        return y


# ---------------------------------------------------------------------------
#  Discrete gas state machine
# ---------------------------------------------------------------------------

class GasEdge(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    HELD = "held"


@dataclass(frozen=True)
class GasLatch:
    """Edge tag plus the gain and primary pole latched on the last detected edge."""

    edge: GasEdge
    gain: float
    tp1: float

    def tp2(self, r_t1t2: float) -> float:
        return self.tp1 / r_t1t2


# ---------------------------------------------------------------------------
#  Committed / proposed state and evaluation results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SensorOutputs:
    """Derived quantities of an accepted (or proposed) step."""

    led_current: float
    irradiance: float
    irr_lp: float
    r_base: float
    sensitivity: float
    r_gas: float
    r_drift: float
    r_total: float
    terminal_current: float


@dataclass(frozen=True, eq=False)
class SensorState:
    """
    Everything that persists between accepted steps.

      time        : instant this state belongs to
      y           : continuous states (see StateIndexLayout), read-only
      latch       : gas edge latch
      gas_input   : gas signal at `time` (for the backward-difference edge detector)
      start_time  : first instant of the run (drift reference)
      outputs     : derived quantities at `time`
      guards      : names of guards that clamped while producing this state
    """

    time: float
    y: np.ndarray
    latch: GasLatch
    gas_input: float
    start_time: float
    outputs: SensorOutputs
    guards: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        y = np.array(self.y, dtype=float)
        y.setflags(write=False)
        object.__setattr__(self, "y", y)

    def is_finite(self) -> bool:
        values = [self.time, self.gas_input, self.latch.gain, self.latch.tp1]
        values.extend(getattr(self.outputs, f.name) for f in fields(SensorOutputs))
        return bool(np.all(np.isfinite(self.y)) and np.all(np.isfinite(values)))


@dataclass(frozen=True)
class Diagnostics:
    """Per-evaluation intermediate quantities (stateless, for inspection / logging)."""

    dt: float
    temperature: float
    led_current: float
    irradiance: float
    irr_lp: float
    r_base: float
    gas_rate: float
    edge: GasEdge
    gas_gain: float
    tp1: float
    tp2: float
    resp_emaxs: float
    resp_mean: float
    sensitivity: float
    g_gas: float
    r_gas: float
    r_drift: float
    r_total: float
    guards: Tuple[str, ...] = ()

    def as_dict(self) -> Dict[str, object]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True, eq=False)
class Evaluation:
    """Result of PhotoGasSensorModel.evaluate()."""

    terminal_current: float
    state: SensorState
    diagnostics: Diagnostics
    derivative: np.ndarray = field(repr=False)


# ---------------------------------------------------------------------------
#  Gas filter discretization
# ---------------------------------------------------------------------------

def gas_filter_matrices(gain: float, tp1: float, tp2: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Continuous (A, B) for the two-pole gas filter with input u = [gasIn, d(gasIn)/dt]:

        H(s) = gain/2 * (2 + s(tp1+tp2)) / ((1 + s tp1)(1 + s tp2))

    i.e. the mean of two first-order exponentials, written in (value, derivative) form:

        d(gas_con)/dt     = ddt_gas_con
        d(ddt_gas_con)/dt = [gain/2 * (2 gasIn + (tp1+tp2) d(gasIn)/dt)
                             - (tp1+tp2) ddt_gas_con - gas_con] / (tp1 tp2)
    """
    s = tp1 + tp2
    p = tp1 * tp2
    A = np.array([[0.0, 1.0], [-1.0 / p, -s / p]])
    B = np.array([[0.0, 0.0], [gain / p, gain * s / (2.0 * p)]])
    return A, B


@lru_cache(maxsize=256)
def _discrete_gas_filter(gain: float, tp1: float, tp2: float, dt: float) -> Tuple[np.ndarray, np.ndarray]:
    A, B = gas_filter_matrices(gain, tp1, tp2)
    C = np.array([[1.0, 0.0]])
    D = np.zeros((1, 2))
    Ad, Bd, _, _, _ = cont2discrete((A, B, C, D), dt, method="zoh")
    Ad.setflags(write=False)
    Bd.setflags(write=False)
    return Ad, Bd


# ---------------------------------------------------------------------------
#  Core model
# ---------------------------------------------------------------------------

class PhotoGasSensorModel:
    """
    Photo-activated MOX gas sensor (one instance per device per simulation run).

    Blocks:

      - led          : LedParams              (Stage 1)
      - irradiance   : IrradianceParams       (Stage 2)
      - base         : BaseResistanceParams   (Stage 3)
      - gas          : GasDynamicsParams      (Stage 4)
      - sensitivity  : SensitivityParams      (Stage 5)
      - synthesis    : SynthesisParams        (Stage 6)

    Typical solver loop:

        ev = model.evaluate(t, v_led, gas, v_term, temperature)   # any number of trials
        model.commit_step(ev.state)                               # once per accepted step
    """

    def __init__(
        self,
        led: LedParams,
        irradiance: IrradianceParams,
        base: BaseResistanceParams,
        gas: GasDynamicsParams,
        sensitivity: SensitivityParams,
        synthesis: SynthesisParams,
    ) -> None:
        self.led = led
        self.irr = irradiance
        self.base = base
        self.gas = gas
        self.sens = sensitivity
        self.syn = synthesis

        self.layout = StateIndexLayout()
        self._validate()

        self.state: Optional[SensorState] = None
        self._reported_guards: set = set()

    # ------------------------------------------------------------------
    #  Parameter validation
    # ------------------------------------------------------------------

    def _validate(self) -> None:
        blocks = {
            "led": self.led,
            "irradiance": self.irr,
            "base_resistance": self.base,
            "gas": self.gas,
            "sensitivity": self.sens,
            "synthesis": self.syn,
        }
        for block_name, block in blocks.items():
            for f in fields(block):
                value = getattr(block, f.name)
                if isinstance(value, bool) or not isinstance(value, numbers.Real) or not math.isfinite(value):
                    raise InvalidParameterError(
                        f"{block_name}.{f.name} must be a finite number, got {value!r}"
                    )

        strictly_positive = {
            "led.r_s": self.led.r_s,
            "led.r_p": self.led.r_p,
            "led.c_p": self.led.c_p,
            "led.i_s": self.led.i_s,
            "led.n": self.led.n,
            "irradiance.tp": self.irr.tp,
            "base_resistance.sensor_r0": self.base.sensor_r0,
            "gas.r_t1t2": self.gas.r_t1t2,
            "gas.r_onoff": self.gas.r_onoff,
            "gas.t_irr_of": self.gas.t_irr_of,
            "gas.edge_threshold": self.gas.edge_threshold,
            "sensitivity.std": self.sens.std,
        }
        for name, value in strictly_positive.items():
            if value <= 0.0:
                raise InvalidParameterError(f"{name} must be > 0, got {value!r}")

        if self.syn.drift_coef < 0.0:
            raise InvalidParameterError(
                f"synthesis.drift_coef must be >= 0, got {self.syn.drift_coef!r}"
            )

    # ------------------------------------------------------------------
    #  Initial state
    # ------------------------------------------------------------------

    def initial_state(self, time: float, gas_input: float = 0.0) -> SensorState:
        """
        Run-start state: LED node at 0 V, irr_lp = 1, gas filter at rest, latch on the
        "increasing" gain with both poles at t_irr_of, outputs seeded with
        current = 0, irradiance = sensitivity = 1, r_base = r_total = sensor_r0.
        """
        r0 = self.base.sensor_r0
        y0 = self.layout.pack(v_led=0.0, irr_lp=1.0, gas_con=0.0, ddt_gas_con=0.0)
        latch = GasLatch(edge=GasEdge.HELD, gain=self.gas.gain_on, tp1=self.gas.t_irr_of)
        outputs = SensorOutputs(
            led_current=0.0,
            irradiance=1.0,
            irr_lp=1.0,
            r_base=r0,
            sensitivity=1.0,
            r_gas=0.0,
            r_drift=0.0,
            r_total=r0,
            terminal_current=0.0,
        )
        return SensorState(
            time=float(time),
            y=y0,
            latch=latch,
            gas_input=float(gas_input),
            start_time=float(time),
            outputs=outputs,
        )

    def reset(self) -> None:
        """Forget the committed state; the next evaluate() starts a new run."""
        self.state = None
        self._reported_guards.clear()

    # ------------------------------------------------------------------
    #  Stage 1 helpers
    # ------------------------------------------------------------------

    def diode_current(self, v_node: float, vt: float) -> float:
        return self.led.i_s * safe_exp(v_node / (self.led.n * vt))

    def led_residuals(
        self,
        led_voltage: float,
        i_total: float,
        v_node: float,
        i_diode: float,
        dv_node_dt: float,
        temperature: float = T_NOMINAL,
    ) -> np.ndarray:
        """
        Residuals of the three LED constraint equations (all zero when satisfied):

          [0] series drop   : V_led - i_total * R_s - v_node
          [1] node KCL      : i_total - v_node / R_p - C_p * dv_node/dt - i_diode
          [2] diode law     : i_diode - I_s * exp(v_node / (n kT/q))
        """
        vt = thermal_voltage(temperature)
        return np.array(
            [
                led_voltage - i_total * self.led.r_s - v_node,
                i_total - v_node / self.led.r_p - self.led.c_p * dv_node_dt - i_diode,
                i_diode - self.diode_current(v_node, vt),
            ]
        )

    def _solve_led_node(self, led_voltage: float, v_prev: float, dt: float, vt: float) -> float:
        """
        Backward-Euler step of the LED node:

            (V_led - v)/R_s - v/R_p - I_d(v) - C_p (v - v_prev)/dt = 0

        The left-hand side is strictly decreasing in v, so the root is bracketed and
        found with brentq. With dt <= 0 no time elapses and the capacitor holds v_prev.
        """
        if dt <= 0.0:
            return v_prev

        c_dt = self.led.c_p / dt

        def kcl(v: float) -> float:
            return (
                (led_voltage - v) / self.led.r_s
                - v / self.led.r_p
                - self.diode_current(v, vt)
                - c_dt * (v - v_prev)
            )

        hi = max(led_voltage, v_prev, 0.0)
        span = 1.0
        lo = min(led_voltage, v_prev, 0.0) - span
        while kcl(lo) <= 0.0:
            span *= 2.0
            lo -= span
            if span > 1e12:
                raise NonFiniteResultError(f"LED node equation not bracketed (V_led={led_voltage!r})")
        return float(brentq(kcl, lo, hi, xtol=1e-12))

    # ------------------------------------------------------------------
    #  Stage 2 / 3 helpers
    # ------------------------------------------------------------------

    def irradiance(self, led_current: float) -> float:
        return self.irr.irr_0 + self.irr.irr_m * led_current

    def _filter_irradiance(self, irr_lp_prev: float, irr: float, dt: float) -> float:
        """Exact step of tp * d(irr_lp)/dt + irr_lp = gain * irr for irr held over dt."""
        if dt <= 0.0:
            return irr_lp_prev
        a = math.exp(-dt / self.irr.tp)
        return a * irr_lp_prev + (1.0 - a) * self.irr.gain * irr

    def base_resistance(self, irr_lp: float, guards: Optional[_GuardLog] = None) -> float:
        guards = guards if guards is not None else _GuardLog()
        irr_pos = guards.floor("irr_lp", irr_lp, IRR_FLOOR)
        r_base = self.base.sensor_r0 / (1.0 + self.base.alpha * irr_pos ** self.base.beta)
        return guards.floor("r_base", r_base, R_BASE_FLOOR)

    # ------------------------------------------------------------------
    #  Stage 4 helpers
    # ------------------------------------------------------------------

    def detect_edge(self, gas_rate: float) -> GasEdge:
        if gas_rate > self.gas.edge_threshold:
            return GasEdge.RISING
        if gas_rate < -self.gas.edge_threshold:
            return GasEdge.FALLING
        return GasEdge.HELD

    def gas_pole(self, irr: float, edge: GasEdge, guards: Optional[_GuardLog] = None) -> float:
        """Primary pole tp1 for a rising or falling edge at instantaneous irradiance `irr`."""
        guards = guards if guards is not None else _GuardLog()
        irr_pos = guards.floor("irr", irr, IRR_FLOOR)
        tp1 = self.gas.t_irr_of * (1.0 / irr_pos) ** self.gas.t_irr_m
        if edge is GasEdge.FALLING:
            tp1 *= self.gas.r_onoff
        return tp1

    def next_latch(
        self,
        latch: GasLatch,
        gas_rate: float,
        irr: float,
        guards: Optional[_GuardLog] = None,
    ) -> GasLatch:
        """Edge state machine: re-latch gain / tp1 on an edge, hold them inside the band."""
        edge = self.detect_edge(gas_rate)
        if edge is GasEdge.RISING:
            return GasLatch(edge=edge, gain=self.gas.gain_on, tp1=self.gas_pole(irr, edge, guards))
        if edge is GasEdge.FALLING:
            return GasLatch(edge=edge, gain=self.gas.gain_off, tp1=self.gas_pole(irr, edge, guards))
        return GasLatch(edge=GasEdge.HELD, gain=latch.gain, tp1=latch.tp1)

    def _advance_gas(
        self,
        gas_con: float,
        ddt_gas_con: float,
        gas_signal: float,
        gas_rate: float,
        latch: GasLatch,
        dt: float,
    ) -> Tuple[float, float]:
        """Zero-order-hold step of the two-pole filter with u = [gas_signal, gas_rate]."""
        if dt <= 0.0:
            return gas_con, ddt_gas_con
        Ad, Bd = _discrete_gas_filter(latch.gain, latch.tp1, latch.tp2(self.gas.r_t1t2), dt)
        x = Ad @ np.array([gas_con, ddt_gas_con]) + Bd @ np.array([gas_signal, gas_rate])
        return float(x[0]), float(x[1])

    # ------------------------------------------------------------------
    #  Stage 5 / 6 helpers
    # ------------------------------------------------------------------

    def sensitivity(
        self,
        irr_lp: float,
        gas_con: float,
        guards: Optional[_GuardLog] = None,
    ) -> Tuple[float, float, float]:
        """Return (resp_EmaxS, resp_mean, resp)."""
        guards = guards if guards is not None else _GuardLog()
        std = self.sens.std
        gas_pos = guards.floor("gas_con", gas_con, GAS_FLOOR)
        irr_pos = guards.floor("irr_lp", irr_lp, IRR_FLOOR)

        emaxs = guards.floor("resp_emaxs", self.sens.irr_s * gas_pos + self.sens.irr_o, EMAXS_FLOOR)
        mean = math.log(emaxs) + std ** 2

        z = math.log(irr_pos) - mean
        # resp = gas_con * shape; only the shape is floored, r_gas / r_base stays
        # continuous as gas_con -> 0
        shape = SENS_SCALE / (irr_pos * std * math.sqrt(2.0 * math.pi)) * math.exp(
            -(z ** 2) / (2.0 * std ** 2)
        )
        shape = guards.floor("resp", shape, RESP_FLOOR)
        return emaxs, mean, gas_pos * shape

    def synthesize(
        self,
        r_base: float,
        resp: float,
        gas_con: float,
        elapsed: float,
        guards: Optional[_GuardLog] = None,
    ) -> Tuple[float, float, float, float]:
        """Return (g_gas, r_gas, r_drift, r_total)."""
        guards = guards if guards is not None else _GuardLog()
        gas_pos = guards.floor("gas_con", gas_con, GAS_FLOOR)

        g_gas = (1.0 / resp) * (1.0 / r_base) * gas_pos ** self.syn.sensor_r
        r_gas = guards.ceiling("r_gas", 1.0 / g_gas if g_gas > 0.0 else math.inf, R_GAS_CEILING)

        r_drift = self.syn.drift_coef * max(elapsed, 0.0)
        r_total = guards.floor("r_total", r_base + r_gas + r_drift, R_TOTAL_FLOOR)
        return g_gas, r_gas, r_drift, r_total

    # ------------------------------------------------------------------
    #  Continuous-time right-hand side / residual interface
    # ------------------------------------------------------------------

    def derivatives(
        self,
        t: float,
        y: np.ndarray,
        led_voltage: float,
        gas_signal: float,
        gas_rate: float,
        temperature: float,
        latch: GasLatch,
    ) -> np.ndarray:
        """dy/dt for the continuous states at fixed inputs and a fixed gas latch."""
        L = self.layout
        v_led, irr_lp, gas_con, ddt_gas_con = L.unpack(y)
        vt = thermal_voltage(temperature)

        i_led = self.diode_current(v_led, vt)
        irr = self.irradiance(i_led)

        dydt = np.zeros(L.n_states, dtype=float)
        dydt[L.idx_v_led] = (
            (led_voltage - v_led) / self.led.r_s - v_led / self.led.r_p - i_led
        ) / self.led.c_p
        dydt[L.idx_irr_lp] = (self.irr.gain * irr - irr_lp) / self.irr.tp

        A, B = gas_filter_matrices(latch.gain, latch.tp1, latch.tp2(self.gas.r_t1t2))
        dgas = A @ np.array([gas_con, ddt_gas_con]) + B @ np.array([gas_signal, gas_rate])
        dydt[L.idx_gas_con] = dgas[0]
        dydt[L.idx_ddt_gas_con] = dgas[1]
        return dydt

    def residuals(
        self,
        t: float,
        y: np.ndarray,
        ydot: np.ndarray,
        led_voltage: float,
        gas_signal: float,
        gas_rate: float,
        temperature: float,
        latch: GasLatch,
    ) -> np.ndarray:
        """Implicit form F(t, y, ydot) = ydot - f(t, y); zero on a consistent trajectory."""
        f = self.derivatives(t, y, led_voltage, gas_signal, gas_rate, temperature, latch)
        return np.asarray(ydot, dtype=float) - f

    # ------------------------------------------------------------------
    #  Evaluate / commit
    # ------------------------------------------------------------------

    def evaluate(
        self,
        time: float,
        led_voltage: float,
        gas_signal: float,
        terminal_voltage: float,
        temperature: float = T_NOMINAL,
        previous_state: Optional[SensorState] = None,
    ) -> Evaluation:
        """
        Advance from `previous_state` (default: the committed state, or a fresh initial
        state on the first call of a run) to `time` and return the terminal current, the
        proposed state and diagnostics. Nothing on the instance is modified.

        Raises NonFiniteResultError if the current or any state is NaN / infinite.
        """
        prev = previous_state if previous_state is not None else self.state
        if prev is None:
            prev = self.initial_state(time, gas_input=gas_signal)

        time = float(time)
        inputs = {
            "time": time,
            "led_voltage": led_voltage,
            "gas_signal": gas_signal,
            "terminal_voltage": terminal_voltage,
            "temperature": temperature,
        }
        for name, value in inputs.items():
            if not math.isfinite(value):
                raise NonFiniteResultError(f"input {name} is not finite: {value!r}")

        dt = time - prev.time
        if dt < 0.0:
            raise ValueError(f"time {time!r} precedes the previous state at {prev.time!r}")

        L = self.layout
        guards = _GuardLog()
        v_prev, irr_lp_prev, gas_con_prev, ddt_gas_con_prev = L.unpack(prev.y)

        temperature = guards.floor("temperature", float(temperature), TEMPERATURE_FLOOR)
        vt = thermal_voltage(temperature)

        # Stage 1: LED
        v_led = self._solve_led_node(float(led_voltage), v_prev, dt, vt)
        i_led = self.diode_current(v_led, vt)

        # Stage 2: irradiance + inertia
        irr = self.irradiance(i_led)
        irr_lp = self._filter_irradiance(irr_lp_prev, irr, dt)

        # Stage 3: base resistance
        r_base = self.base_resistance(irr_lp, guards)

        # Stage 4: gas edge latch + two-pole filter
        gas_rate = (gas_signal - prev.gas_input) / dt if dt > 0.0 else 0.0
        latch = self.next_latch(prev.latch, gas_rate, irr, guards)
        gas_con, ddt_gas_con = self._advance_gas(
            gas_con_prev, ddt_gas_con_prev, float(gas_signal), gas_rate, latch, dt
        )

        # Stage 5: sensitivity
        emaxs, mean, resp = self.sensitivity(irr_lp, gas_con, guards)

        # Stage 6: synthesis + Ohmic output
        g_gas, r_gas, r_drift, r_total = self.synthesize(
            r_base, resp, gas_con, time - prev.start_time, guards
        )
        current = terminal_voltage / r_total

        y = L.pack(v_led, irr_lp, gas_con, ddt_gas_con)
        hits = tuple(dict.fromkeys(guards.hits))
        state = SensorState(
            time=time,
            y=y,
            latch=latch,
            gas_input=float(gas_signal),
            start_time=prev.start_time,
            outputs=SensorOutputs(
                led_current=i_led,
                irradiance=irr,
                irr_lp=irr_lp,
                r_base=r_base,
                sensitivity=resp,
                r_gas=r_gas,
                r_drift=r_drift,
                r_total=r_total,
                terminal_current=current,
            ),
            guards=hits,
        )
        derivative = self.derivatives(time, y, led_voltage, gas_signal, gas_rate, temperature, latch)

        if not math.isfinite(current):
            raise NonFiniteResultError(f"terminal current is not finite at t={time!r}: {current!r}")
        if not state.is_finite() or not np.all(np.isfinite(derivative)):
            raise NonFiniteResultError(f"non-finite internal state at t={time!r}: y={y!r}")

        diagnostics = Diagnostics(
            dt=dt,
            temperature=temperature,
            led_current=i_led,
            irradiance=irr,
            irr_lp=irr_lp,
            r_base=r_base,
            gas_rate=gas_rate,
            edge=latch.edge,
            gas_gain=latch.gain,
            tp1=latch.tp1,
            tp2=latch.tp2(self.gas.r_t1t2),
            resp_emaxs=emaxs,
            resp_mean=mean,
            sensitivity=resp,
            g_gas=g_gas,
            r_gas=r_gas,
            r_drift=r_drift,
            r_total=r_total,
            guards=hits,
        )
        return Evaluation(
            terminal_current=current,
            state=state,
            diagnostics=diagnostics,
            derivative=derivative,
        )

    def commit_step(self, new_state: SensorState) -> None:
        """Accept a proposed state; called once per accepted integration step."""
        if not new_state.is_finite():
            raise NonFiniteResultError(f"refusing to commit non-finite state at t={new_state.time!r}")

        previous = self.state
        if previous is not None and new_state.time < previous.time:
            raise ValueError(
                f"cannot commit t={new_state.time!r} after committed t={previous.time!r}"
            )

        if new_state.latch.edge is not GasEdge.HELD and (
            previous is None or previous.latch.edge is not new_state.latch.edge
        ):
            logger.debug(
                "gas edge %s at t=%g: gain=%g tp1=%g",
                new_state.latch.edge.value,
                new_state.time,
                new_state.latch.gain,
                new_state.latch.tp1,
            )

        for name in new_state.guards:
            if name not in self._reported_guards:
                self._reported_guards.add(name)
                logger.warning(
                    "numeric guard '%s' clamped at t=%g (further occurrences not reported)",
                    name,
                    new_state.time,
                )

        self.state = new_state
