# src/ode_engine/handlers.py
"""Step handler contracts and simple implementations.

A step handler is called once per accepted step with the step interpolator.
The interpolator passed in is the stepper's working instance: handlers that
keep it beyond the call must store ``interpolator.copy()``.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Protocol

import numpy as np
from numpy.typing import NDArray

if TYPE_CHECKING:
    from .interpolators import StepInterpolator

_STEP_ERROR_MSG = "normalized step must be finite and non-zero, got {h!r}"


class StepHandler(Protocol):
    """Consumer of accepted integration steps."""

    def requires_dense_output(self) -> bool:
        """Return True if interior queries of the interpolator are needed."""
        ...

    def reset(self) -> None:
        """Prepare for a new integration."""
        ...

    def handle_step(self, interpolator: StepInterpolator, is_last: bool) -> None:
        """Consume one accepted step."""
        ...


class FixedStepHandler(Protocol):
    """Consumer of regularly sampled states."""

    def handle_step(self, t: float, y: NDArray[np.floating], is_last: bool) -> None:
        """Consume the state at one sampling time."""
        ...


class DummyStepHandler:
    """Handler ignoring every step (the stepper default)."""

    def requires_dense_output(self) -> bool:
        """Return False: no interior queries are made."""
        return False

    def reset(self) -> None:
        """Nothing to reset."""

    def handle_step(self, interpolator: StepInterpolator, is_last: bool) -> None:
        """Ignore the step."""


class StepNormalizer:
    """Turn variable steps into samples at a fixed time interval.

    Samples are taken at t0, t0 + h, t0 + 2h, ... in the integration direction
    using the dense output of each step. The last sample not beyond the end of
    the integration is flagged as last.
    """

    def __init__(self, h: float, handler: FixedStepHandler) -> None:
        """
        Initialize a StepNormalizer.

        Args:
            h: Sampling interval (its sign is adjusted to the direction).
            handler: Consumer of the samples.

        Raises:
            ValueError: If h is zero or not finite.
        """
        h = abs(float(h))
        if h == 0.0 or not math.isfinite(h):
            raise ValueError(_STEP_ERROR_MSG.format(h=h))
        self._abs_h = h
        self.h = h
        self.handler = handler
        self.last_time = math.nan
        self.last_state: NDArray[np.float64] | None = None
        self.forward = True

    def requires_dense_output(self) -> bool:
        """Return True: samples fall inside steps."""
        return True

    def reset(self) -> None:
        """Forget the previous integration."""
        self.last_time = math.nan
        self.last_state = None
        self.forward = True
        self.h = self._abs_h

    def handle_step(self, interpolator: StepInterpolator, is_last: bool) -> None:
        """Emit every sample falling inside the step.

        Args:
            interpolator: Step dense output.
            is_last: Whether this is the last step of the integration.
        """
        if self.last_state is None:
            self.last_time = interpolator.previous_time
            interpolator.set_interpolated_time(self.last_time)
            self.last_state = interpolator.get_interpolated_state()
            self.forward = interpolator.current_time >= self.last_time
            self.h = self._abs_h if self.forward else -self._abs_h

        current_time = interpolator.current_time
        next_time = self.last_time + self.h
        while self._in_step(next_time, current_time):
            self.handler.handle_step(self.last_time, self.last_state, False)

            self.last_time = next_time
            interpolator.set_interpolated_time(self.last_time)
            self.last_state = interpolator.get_interpolated_state()

            next_time += self.h

        if is_last:
            self.handler.handle_step(self.last_time, self.last_state, True)

    def _in_step(self, t: float, current_time: float) -> bool:
        return t <= current_time if self.forward else t >= current_time
