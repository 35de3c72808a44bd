"""
Photo-activated metal-oxide gas sensor — behavioral device core

This package exposes the main model classes from `core.py` for convenience.
"""

from .core import (
    LedParams,
    IrradianceParams,
    BaseResistanceParams,
    GasDynamicsParams,
    SensitivityParams,
    SynthesisParams,
    StateIndexLayout,
    GasEdge,
    GasLatch,
    SensorOutputs,
    SensorState,
    Diagnostics,
    Evaluation,
    PhotoGasSensorModel,
)
from .errors import (
    PhotoGasModelError,
    InvalidParameterError,
    NumericDomainError,
    NonFiniteResultError,
)
from .transient import PiecewiseLinear, Stimulus, TransientResult, simulate, compute_derived_outputs
