"""Global pytest configuration and shared fixtures for ode_engine."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
import pytest
from scipy.optimize import brentq

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from ode_engine.interpolators import StepInterpolator

    FloatArray = NDArray[np.floating]


# -----------------------------------------------------------------------------
# Reference problems
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ExponentialDecayProblem:
    """y' = -y on [0, 4] with y(0) = (1, 0.1)."""

    t0: float = 0.0
    t_final: float = 4.0
    y0: FloatArray = field(default_factory=lambda: np.array([1.0, 0.1]))
    error_scale: FloatArray = field(default_factory=lambda: np.array([1.0, 1.0]))
    calls: int = 0

    @property
    def dimension(self) -> int:
        return 2

    def compute_derivatives(self, t: float, y: FloatArray) -> FloatArray:  # noqa: ARG002
        self.calls += 1
        return -y

    def theoretical_state(self, t: float) -> FloatArray:
        return self.y0 * math.exp(self.t0 - t)


@dataclass(slots=True)
class KeplerProblem:
    """Two-body problem with eccentricity e, unit semi-major axis, on [0, 20].

    The reference solution solves Kepler's equation E - e sin(E) = t.
    """

    e: float = 0.9
    t0: float = 0.0
    t_final: float = 20.0
    calls: int = 0

    @property
    def dimension(self) -> int:
        return 4

    @property
    def y0(self) -> FloatArray:
        e = self.e
        return np.array([1.0 - e, 0.0, 0.0, math.sqrt((1.0 + e) / (1.0 - e))])

    def compute_derivatives(self, t: float, y: FloatArray) -> FloatArray:  # noqa: ARG002
        self.calls += 1
        r2 = y[0] * y[0] + y[1] * y[1]
        inv_r3 = 1.0 / (r2 * math.sqrt(r2))
        return np.array([y[2], y[3], -y[0] * inv_r3, -y[1] * inv_r3])

    def theoretical_state(self, t: float) -> FloatArray:
        e = self.e
        anomaly = brentq(
            lambda ea: ea - e * math.sin(ea) - t,
            t - e - 1.0,
            t + e + 1.0,
            xtol=1e-15,
        )
        cos_e = math.cos(anomaly)
        sin_e = math.sin(anomaly)
        root = math.sqrt(1.0 - e * e)
        denom = 1.0 - e * cos_e
        return np.array(
            [
                cos_e - e,
                root * sin_e,
                -sin_e / denom,
                root * cos_e / denom,
            ]
        )


# -----------------------------------------------------------------------------
# Step handlers used across test modules
# -----------------------------------------------------------------------------


class ErrorTrackingHandler:
    """Step handler comparing dense output with a problem's exact solution.

    Every step is sampled at 21 evenly spaced times; ``max_error`` is the
    largest scaled component error seen, ``last_error`` the unscaled error at
    the end of the last step.
    """

    def __init__(self, problem: ExponentialDecayProblem) -> None:
        self.problem = problem
        self.max_error = 0.0
        self.last_error = 0.0
        self.last_time = math.nan

    def requires_dense_output(self) -> bool:
        return True

    def reset(self) -> None:
        self.max_error = 0.0
        self.last_error = 0.0
        self.last_time = math.nan

    def handle_step(self, interpolator: StepInterpolator, is_last: bool) -> None:
        pt = interpolator.previous_time
        ct = interpolator.current_time

        if is_last:
            y = interpolator.get_interpolated_state()
            exact = self.problem.theoretical_state(ct)
            self.last_error = max(self.last_error, float(np.max(np.abs(y - exact))))
            self.last_time = ct

        for k in range(21):
            t = pt + (k * (ct - pt)) / 20
            interpolator.set_interpolated_time(t)
            y = interpolator.get_interpolated_state()
            exact = self.problem.theoretical_state(interpolator.interpolated_time)
            error = self.problem.error_scale * np.abs(y - exact)
            self.max_error = max(self.max_error, float(np.max(error)))


class RecordingHandler:
    """Step handler keeping (previous_time, current_time, state, is_last)."""

    def __init__(self, *, dense: bool = False) -> None:
        self.dense = dense
        self.steps: list[tuple[float, float, FloatArray, bool]] = []
        self.resets = 0

    def requires_dense_output(self) -> bool:
        return self.dense

    def reset(self) -> None:
        self.resets += 1
        self.steps.clear()

    def handle_step(self, interpolator: StepInterpolator, is_last: bool) -> None:
        self.steps.append(
            (
                interpolator.previous_time,
                interpolator.current_time,
                interpolator.get_interpolated_state(),
                is_last,
            )
        )


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def decay_problem() -> ExponentialDecayProblem:
    """Fresh exponential decay problem."""
    return ExponentialDecayProblem()


@pytest.fixture
def kepler_problem() -> KeplerProblem:
    """Fresh Kepler problem with eccentricity 0.9."""
    return KeplerProblem(e=0.9)


@pytest.fixture
def make_decay_problem() -> Callable[[], ExponentialDecayProblem]:
    """Factory for fresh exponential decay problems (for loops over steps)."""
    return ExponentialDecayProblem


@pytest.fixture
def make_error_tracker() -> Callable[[ExponentialDecayProblem], ErrorTrackingHandler]:
    """Factory for error tracking step handlers."""
    return ErrorTrackingHandler


@pytest.fixture
def make_recorder() -> Callable[..., RecordingHandler]:
    """Factory for recording step handlers."""
    return RecordingHandler


@pytest.fixture
def rng() -> np.random.Generator:
    """Seeded random generator."""
    return np.random.default_rng(347588535632)
