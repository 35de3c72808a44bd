"""
errors.py — exception taxonomy for the photo-activated gas sensor core.

  - InvalidParameterError : construction time, fatal (the device cannot be simulated)
  - NumericDomainError    : evaluation-time guard violation; always intercepted inside
                            the model and replaced by a clamped value
  - NonFiniteResultError  : current or state became non-finite; surfaced to the caller
                            so the driving solver can retry with a smaller step
"""


class PhotoGasModelError(Exception):
    """Base class for all errors raised by photogas_model."""


class InvalidParameterError(PhotoGasModelError, ValueError):
    """A parameter lies outside its physical domain."""


class NumericDomainError(PhotoGasModelError, ArithmeticError):
    """An operand of log / power / division is outside its valid domain."""

    def __init__(self, name: str, value: float, floor: float) -> None:
        super().__init__(f"{name}={value!r} below guard floor {floor!r}")
        self.name = name
        self.value = value
        self.floor = floor


class NonFiniteResultError(PhotoGasModelError, ArithmeticError):
    """The terminal current or an internal state is NaN or infinite."""
