# src/ode_engine/errors.py
"""Error types for ode_engine.

Every failure surfaced by the engine is terminal for the running integration:
nothing here is retried by the caller-facing API. The only internally retried
operation (adaptive step rejection) never leaves the stepper as an exception
unless its bounds are exhausted, in which case StepSizeUnderflowError is raised.

Each concrete error also derives from the closest builtin exception so callers
may catch either the engine type or ValueError/RuntimeError.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Machine-readable classification for ode_engine failures."""

    DIMENSION_MISMATCH = "dimension_mismatch"
    ZERO_INTEGRATION_INTERVAL = "zero_integration_interval"
    DERIVATIVE_EVALUATION = "derivative_evaluation"
    STEP_SIZE_UNDERFLOW = "step_size_underflow"
    EVENT_LOCALIZATION = "event_localization"
    CONTINUITY = "continuity"


class OdeEngineError(Exception):
    """Base exception for ode_engine failures."""

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        """
        Initialize an OdeEngineError.

        Args:
            message: Human-readable error message.
            code: Optional machine-readable error code classifying the error.
        """
        super().__init__(message)
        self.code: ErrorCode | None = code


class DimensionMismatchError(OdeEngineError, ValueError):
    """Raised when a state array does not match the problem dimension."""

    def __init__(self, *, name: str, expected: int, got: int) -> None:
        """
        Initialize a DimensionMismatchError.

        Args:
            name: Name of the offending array.
            expected: Expected length.
            got: Observed length.
        """
        super().__init__(
            f"{name} has dimension {got}, expected {expected}",
            code=ErrorCode.DIMENSION_MISMATCH,
        )
        self.expected = expected
        self.got = got


class ZeroIntegrationIntervalError(OdeEngineError, ValueError):
    """Raised when the integration interval is empty (t0 == t_target)."""

    def __init__(self, t0: float) -> None:
        """
        Initialize a ZeroIntegrationIntervalError.

        Args:
            t0: Start time, equal to the target time.
        """
        super().__init__(
            f"integration interval is empty (t0 == t_target == {t0!r})",
            code=ErrorCode.ZERO_INTEGRATION_INTERVAL,
        )


class DerivativeEvaluationError(OdeEngineError, RuntimeError):
    """Raised when the derivative system fails; never retried."""

    def __init__(self, message: str, *, t: float) -> None:
        """
        Initialize a DerivativeEvaluationError.

        Args:
            message: Description of the failure.
            t: Time at which the evaluation was requested.
        """
        super().__init__(
            f"derivative evaluation failed at t={t!r}: {message}",
            code=ErrorCode.DERIVATIVE_EVALUATION,
        )
        self.t = t


class StepSizeUnderflowError(OdeEngineError, RuntimeError):
    """Raised when adaptive stepping cannot meet tolerances within its bounds."""

    def __init__(self, message: str, *, t: float, step: float) -> None:
        """
        Initialize a StepSizeUnderflowError.

        Args:
            message: Description of the exhausted bound.
            t: Start time of the failing step.
            step: Last attempted step size.
        """
        super().__init__(
            f"{message} (t={t!r}, step={step!r})",
            code=ErrorCode.STEP_SIZE_UNDERFLOW,
        )
        self.t = t
        self.step = step


class EventLocalizationError(OdeEngineError, RuntimeError):
    """Raised when an event bracket cannot be refined to its threshold."""

    def __init__(self, message: str) -> None:
        """
        Initialize an EventLocalizationError.

        Args:
            message: Description of the failure.
        """
        super().__init__(message, code=ErrorCode.EVENT_LOCALIZATION)


class ContinuityError(OdeEngineError, ValueError):
    """Raised when continuous output steps are not contiguous."""

    def __init__(self, message: str) -> None:
        """
        Initialize a ContinuityError.

        Args:
            message: Description of the gap or direction mismatch.
        """
        super().__init__(message, code=ErrorCode.CONTINUITY)


def check_dimension(name: str, length: int, expected: int) -> None:
    """Raise a standardized DimensionMismatchError when lengths differ.

    Args:
        name: Name of the array being checked.
        length: Observed length.
        expected: Expected length.

    Raises:
        DimensionMismatchError: If length != expected.
    """
    if length != expected:
        raise DimensionMismatchError(name=name, expected=expected, got=length)
