# src/ode_engine/interpolators.py
"""Dense-output step interpolators.

An interpolator reconstructs the solution anywhere inside one completed step
from the endpoint states and the stage derivatives computed by the scheme,
without any additional derivative evaluation.

Two lifecycles share the same class:

- the *working* instance owned by a Stepper, whose buffers are reused across
  steps (``shift`` moves the current end to the previous start, ``store_step``
  records the new end), and
- *frozen* snapshots obtained with :meth:`StepInterpolator.copy`, which own
  independent buffers and are safe to retain after the stepper moves on.

Notation used by the concrete formulas:
    theta = (t - previous_time) / h
    one_minus_theta_h = current_time - t = (1 - theta) * h
"""

from __future__ import annotations

import copy
import math
from abc import ABC, abstractmethod
from typing import Any, ClassVar

import numpy as np
from numpy.typing import NDArray

_UNKNOWN_KIND_ERROR_MSG = "Unknown interpolator kind: {kind}"
_STAGES_SHAPE_ERROR_MSG = "stages shape {actual} does not match expected {expected}"
_STATE_SHAPE_ERROR_MSG = "state shape {actual} does not match expected {expected}"
_NOT_INITIALIZED_ERROR_MSG = "Interpolator has not been reinitialized with a state"

_INTERPOLATOR_REGISTRY: dict[str, type[StepInterpolator]] = {}


class StepInterpolator(ABC):
    """Base class for dense-output interpolators of one integration step."""

    kind: ClassVar[str] = ""
    n_stages: ClassVar[int] = 0

    def __init_subclass__(cls, **kwargs: Any) -> None:
        """Register concrete subclasses by kind for deserialization."""
        super().__init_subclass__(**kwargs)
        if cls.kind:
            _INTERPOLATOR_REGISTRY[cls.kind] = cls

    def __init__(self) -> None:
        """Create an empty interpolator; call reinitialize before use."""
        self.previous_time: float = math.nan
        self.current_time: float = math.nan
        self.interpolated_time: float = math.nan
        self.h: float = 0.0
        self.forward: bool = True

        self._previous_state: NDArray[np.float64] = np.zeros(0)
        self._current_state: NDArray[np.float64] = np.zeros(0)
        self._interpolated_state: NDArray[np.float64] = np.zeros(0)
        self._stages: NDArray[np.float64] = np.zeros((self.n_stages, 0))
        self._finalized = False

    # ------------------------------------------------------------------
    # Working-buffer lifecycle
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> int:
        """Return the state dimension."""
        return int(self._current_state.size)

    def reinitialize(self, y: NDArray[np.floating], *, forward: bool = True) -> None:
        """Allocate buffers for a new integration starting at state y.

        Args:
            y: Initial state.
            forward: Integration direction.
        """
        y_arr = np.asarray(y, dtype=np.float64).reshape(-1)
        n = y_arr.size
        self._previous_state = y_arr.copy()
        self._current_state = y_arr.copy()
        self._interpolated_state = y_arr.copy()
        self._stages = np.zeros((self.n_stages, n), dtype=np.float64)
        self.previous_time = math.nan
        self.current_time = math.nan
        self.interpolated_time = math.nan
        self.h = 0.0
        self.forward = bool(forward)
        self._finalized = False

    def store_time(self, t: float) -> None:
        """Record the current step end time and reset the query cursor there.

        Args:
            t: Step end time.
        """
        self.current_time = float(t)
        self.h = self.current_time - self.previous_time
        self.interpolated_time = self.current_time
        np.copyto(self._interpolated_state, self._current_state)
        self._finalized = False

    def shift(self) -> None:
        """Start a new step: the current end becomes the previous start."""
        self.previous_time = self.current_time
        np.copyto(self._previous_state, self._current_state)

    def store_step(
        self,
        t: float,
        y: NDArray[np.floating],
        stages: NDArray[np.floating] | None = None,
    ) -> None:
        """Record the end of a computed step.

        Args:
            t: Step end time.
            y: State at t.
            stages: Stage derivatives, shape (n_stages, dimension).

        Raises:
            ValueError: If array shapes do not match the interpolator buffers.
        """
        y_arr = np.asarray(y, dtype=np.float64)
        if y_arr.shape != self._current_state.shape:
            raise ValueError(
                _STATE_SHAPE_ERROR_MSG.format(
                    actual=y_arr.shape,
                    expected=self._current_state.shape,
                )
            )
        np.copyto(self._current_state, y_arr)
        if stages is not None and self.n_stages > 0:
            k = np.asarray(stages, dtype=np.float64)[: self.n_stages]
            if k.shape != self._stages.shape:
                raise ValueError(
                    _STAGES_SHAPE_ERROR_MSG.format(
                        actual=k.shape,
                        expected=self._stages.shape,
                    )
                )
            np.copyto(self._stages, k)
        self.store_time(t)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def previous_state(self) -> NDArray[np.float64]:
        """Return a copy of the state at previous_time."""
        return self._previous_state.copy()

    @property
    def current_state(self) -> NDArray[np.float64]:
        """Return a copy of the state at current_time."""
        return self._current_state.copy()

    def set_interpolated_time(self, t: float) -> None:
        """Move the query cursor to t and compute the state there.

        Times outside [previous_time, current_time] extrapolate the step
        polynomial; accuracy degrades with the distance to the step.

        Args:
            t: Query time.

        Raises:
            RuntimeError: If the interpolator holds no step data.
        """
        if math.isnan(self.current_time):
            raise RuntimeError(_NOT_INITIALIZED_ERROR_MSG)
        self.interpolated_time = float(t)

        if self.interpolated_time == self.current_time or self.h == 0.0:
            np.copyto(self._interpolated_state, self._current_state)
            return
        if self.interpolated_time == self.previous_time:
            np.copyto(self._interpolated_state, self._previous_state)
            return

        self.finalize()
        one_minus_theta_h = self.current_time - self.interpolated_time
        theta = (self.interpolated_time - self.previous_time) / self.h
        self._compute_interpolated_state(theta, one_minus_theta_h)

    def get_interpolated_state(self) -> NDArray[np.float64]:
        """Return a copy of the state at the last set interpolated time."""
        return self._interpolated_state.copy()

    def finalize(self) -> None:
        """Precompute step-level coefficients once per step."""
        if not self._finalized:
            self._finalize()
            self._finalized = True

    def _finalize(self) -> None:  # noqa: B027
        """Hook for schemes needing per-step precomputation."""

    @abstractmethod
    def _compute_interpolated_state(
        self,
        theta: float,
        one_minus_theta_h: float,
    ) -> None:
        """Write the interpolated state into self._interpolated_state."""

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def copy(self) -> StepInterpolator:
        """Return an independent snapshot that owns its buffers."""
        self.finalize()
        return copy.deepcopy(self)

    def state_dict(self) -> dict[str, Any]:
        """Return the step data needed to rebuild this interpolator."""
        return {
            "kind": self.kind,
            "previous_time": self.previous_time,
            "current_time": self.current_time,
            "interpolated_time": self.interpolated_time,
            "forward": self.forward,
            "previous_state": self._previous_state.copy(),
            "current_state": self._current_state.copy(),
            "stages": self._stages.copy(),
        }

    @classmethod
    def from_state_dict(cls, data: dict[str, Any]) -> StepInterpolator:
        """Rebuild an interpolator from :meth:`state_dict` output.

        Args:
            data: Mapping produced by state_dict.

        Returns:
            A frozen interpolator of the recorded kind.
        """
        interpolator = interpolator_class(str(data["kind"]))()
        interpolator._previous_state = np.array(data["previous_state"], dtype=np.float64)
        interpolator._current_state = np.array(data["current_state"], dtype=np.float64)
        interpolator._interpolated_state = interpolator._current_state.copy()
        stages = np.array(data["stages"], dtype=np.float64)
        interpolator._stages = stages.reshape(
            interpolator.n_stages,
            interpolator._current_state.size,
        )
        interpolator.forward = bool(data["forward"])
        interpolator.previous_time = float(data["previous_time"])
        interpolator.store_time(float(data["current_time"]))
        interpolator.set_interpolated_time(float(data["interpolated_time"]))
        return interpolator


def interpolator_class(kind: str) -> type[StepInterpolator]:
    """Look up a registered interpolator class.

    Args:
        kind: Registered kind string.

    Raises:
        ValueError: If the kind is unknown.

    Returns:
        Interpolator class.
    """
    try:
        return _INTERPOLATOR_REGISTRY[kind]
    except KeyError:
        raise ValueError(_UNKNOWN_KIND_ERROR_MSG.format(kind=kind)) from None


# =============================================================================
# Concrete interpolators
# =============================================================================


class LinearStepInterpolator(StepInterpolator):
    """Endpoint-only interpolation, used when no consumer needs dense output."""

    kind = "linear"
    n_stages = 0

    def _compute_interpolated_state(
        self,
        theta: float,  # noqa: ARG002
        one_minus_theta_h: float,
    ) -> None:
        ratio = one_minus_theta_h / self.h
        np.subtract(self._current_state, self._previous_state, out=self._interpolated_state)
        self._interpolated_state *= -ratio
        self._interpolated_state += self._current_state


class EulerStepInterpolator(StepInterpolator):
    """Linear dense output for the explicit Euler scheme.

    y(theta) = y1 - (1 - theta) h k1
    """

    kind = "euler"
    n_stages = 1

    def _compute_interpolated_state(
        self,
        theta: float,  # noqa: ARG002
        one_minus_theta_h: float,
    ) -> None:
        np.multiply(self._stages[0], -one_minus_theta_h, out=self._interpolated_state)
        self._interpolated_state += self._current_state


class MidpointStepInterpolator(StepInterpolator):
    """Quadratic dense output for the explicit midpoint scheme."""

    kind = "midpoint"
    n_stages = 2

    def _compute_interpolated_state(
        self,
        theta: float,
        one_minus_theta_h: float,
    ) -> None:
        coeff1 = one_minus_theta_h * theta
        coeff2 = one_minus_theta_h * (1.0 + theta)
        k = self._stages
        np.multiply(k[0], coeff1, out=self._interpolated_state)
        self._interpolated_state -= coeff2 * k[1]
        self._interpolated_state += self._current_state


class ClassicalRungeKuttaStepInterpolator(StepInterpolator):
    """Cubic dense output for the classical fourth-order Runge-Kutta scheme."""

    kind = "classical-rk"
    n_stages = 4

    def _compute_interpolated_state(
        self,
        theta: float,
        one_minus_theta_h: float,
    ) -> None:
        four_theta = 4.0 * theta
        s = one_minus_theta_h / 6.0
        coeff1 = s * ((-four_theta + 5.0) * theta - 1.0)
        coeff23 = s * ((four_theta - 2.0) * theta - 2.0)
        coeff4 = s * ((-four_theta - 1.0) * theta - 1.0)

        k = self._stages
        np.add(k[1], k[2], out=self._interpolated_state)
        self._interpolated_state *= coeff23
        self._interpolated_state += coeff1 * k[0]
        self._interpolated_state += coeff4 * k[3]
        self._interpolated_state += self._current_state


class DormandPrince54StepInterpolator(StepInterpolator):
    """Fourth-order continuous extension of the Dormand-Prince 5(4) pair.

    Uses Hairer's coefficients (d1, d3..d7) and the stage derivative of the
    step end (seventh, first-same-as-last stage).
    """

    kind = "dormand-prince-54"
    n_stages = 7

    D1 = -12715105075.0 / 11282082432.0
    D3 = 87487479700.0 / 32700410799.0
    D4 = -10690763975.0 / 1880347072.0
    D5 = 701980252875.0 / 199316789632.0
    D6 = -1453857185.0 / 822651844.0
    D7 = 69997945.0 / 29380423.0

    def __init__(self) -> None:
        """Create an empty interpolator with its continuous-extension buffers."""
        super().__init__()
        self._r = np.zeros((4, 0))

    def reinitialize(self, y: NDArray[np.floating], *, forward: bool = True) -> None:
        """Allocate buffers, including the continuous-extension coefficients.

        Args:
            y: Initial state.
            forward: Integration direction.
        """
        super().reinitialize(y, forward=forward)
        self._r = np.zeros((4, self._current_state.size), dtype=np.float64)

    def _finalize(self) -> None:
        if self._r.shape[1] != self._current_state.size:
            self._r = np.zeros((4, self._current_state.size), dtype=np.float64)
        k = self._stages
        h = self.h
        ydiff, bspl, r4, r5 = self._r

        np.subtract(self._current_state, self._previous_state, out=ydiff)
        np.multiply(k[0], h, out=bspl)
        bspl -= ydiff
        np.multiply(k[6], -h, out=r4)
        r4 += ydiff
        r4 -= bspl

        np.multiply(k[0], self.D1, out=r5)
        r5 += self.D3 * k[2]
        r5 += self.D4 * k[3]
        r5 += self.D5 * k[4]
        r5 += self.D6 * k[5]
        r5 += self.D7 * k[6]
        r5 *= h

    def _compute_interpolated_state(
        self,
        theta: float,
        one_minus_theta_h: float,  # noqa: ARG002
    ) -> None:
        theta1 = 1.0 - theta
        ydiff, bspl, r4, r5 = self._r
        out = self._interpolated_state
        np.multiply(r5, theta1, out=out)
        out += r4
        out *= theta
        out += bspl
        out *= theta1
        out += ydiff
        out *= theta
        out += self._previous_state
