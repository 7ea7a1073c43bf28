# tests/test_stepper.py
"""Accuracy, convergence and plumbing tests for ode_engine.stepper.Stepper.

Coverage in this file:
1) Fixed-step schemes on y' = -y: small/big step error bounds and observed
   order (slope of log(error) vs log(step)).
2) Classical RK on an eccentric Kepler orbit (known to be inaccurate).
3) Adaptive Dormand-Prince: tolerance-driven accuracy, agreement with scipy,
   FSAL evaluation accounting, backward integration.
4) Plumbing: landing exactly on the target, handler reset/is_last contract,
   interpolator selection, input validation, error wrapping.
"""

from __future__ import annotations

import math
from dataclasses import replace

import numpy as np
import pytest
from scipy.integrate import solve_ivp

from ode_engine.errors import (
    DerivativeEvaluationError,
    DimensionMismatchError,
    ErrorCode,
    StepSizeUnderflowError,
    ZeroIntegrationIntervalError,
)
from ode_engine.interpolators import DormandPrince54StepInterpolator, LinearStepInterpolator
from ode_engine.stepper import AdaptiveConfig, Stepper, StepperConfig

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _van_der_pol(t: float, y: np.ndarray) -> np.ndarray:  # noqa: ARG001
    return np.array([y[1], (1.0 - y[0] * y[0]) * y[1] - y[0]])


def _run_tracked(method, step, make_decay_problem, make_error_tracker):
    problem = make_decay_problem()
    handler = make_error_tracker(problem)
    stepper = Stepper.fixed_step(method, step)
    stepper.set_step_handler(handler)
    stepper.integrate(problem, problem.t0, problem.y0, problem.t_final)
    return handler


def _observed_order(method, exponents, make_decay_problem, make_error_tracker) -> float:
    log_steps = []
    log_errors = []
    for i in exponents:
        step = 4.0 * 2.0 ** (-(i + 1))
        handler = _run_tracked(method, step, make_decay_problem, make_error_tracker)
        log_steps.append(math.log(step))
        log_errors.append(math.log(handler.last_error))
    slope, _ = np.polyfit(log_steps, log_errors, 1)
    return float(slope)


class _TypeProbe:
    """Handler recording the interpolator class it receives."""

    def __init__(self, *, dense: bool) -> None:
        self.dense = dense
        self.kinds: set[type] = set()

    def requires_dense_output(self) -> bool:
        return self.dense

    def reset(self) -> None:
        self.kinds.clear()

    def handle_step(self, interpolator, is_last: bool) -> None:  # noqa: ARG002
        self.kinds.add(type(interpolator))


# -----------------------------------------------------------------------------
# Fixed-step accuracy
# -----------------------------------------------------------------------------


def test_classical_rk_small_step(make_decay_problem, make_error_tracker) -> None:
    handler = _run_tracked("classical-rk", 4.0 * 0.001, make_decay_problem, make_error_tracker)
    assert handler.last_error < 2.0e-13
    assert handler.max_error < 4.0e-12
    assert handler.last_time == 4.0


def test_classical_rk_big_step(make_decay_problem, make_error_tracker) -> None:
    handler = _run_tracked("classical-rk", 4.0 * 0.2, make_decay_problem, make_error_tracker)
    assert handler.last_error > 0.0004
    assert handler.max_error > 0.005


def test_midpoint_small_step(make_decay_problem, make_error_tracker) -> None:
    handler = _run_tracked("midpoint", 4.0 * 0.001, make_decay_problem, make_error_tracker)
    assert handler.last_error < 2.0e-7
    assert handler.max_error < 1.0e-6


def test_midpoint_big_step(make_decay_problem, make_error_tracker) -> None:
    handler = _run_tracked("midpoint", 4.0 * 0.2, make_decay_problem, make_error_tracker)
    assert handler.last_error > 0.01
    assert handler.max_error > 0.05


@pytest.mark.parametrize(
    ("method", "exponents", "low", "high"),
    [
        ("euler", range(3, 10), 0.7, 1.3),
        ("midpoint", range(10), 1.2, 2.8),
        ("classical-rk", range(10), 3.2, 4.8),
    ],
)
def test_observed_order(
    method: str,
    exponents: range,
    low: float,
    high: float,
    make_decay_problem,
    make_error_tracker,
) -> None:
    slope = _observed_order(method, exponents, make_decay_problem, make_error_tracker)
    assert low < slope < high


def test_classical_rk_error_decreases_with_step(make_decay_problem, make_error_tracker) -> None:
    previous = math.inf
    for i in range(4, 10):
        handler = _run_tracked(
            "classical-rk",
            4.0 * 2.0 ** (-i),
            make_decay_problem,
            make_error_tracker,
        )
        assert handler.max_error < previous
        previous = handler.max_error


def test_classical_rk_is_inaccurate_on_eccentric_kepler_orbit(kepler_problem) -> None:
    max_error = 0.0
    flags: list[bool] = []

    class KeplerHandler:
        def requires_dense_output(self) -> bool:
            return False

        def reset(self) -> None:
            pass

        def handle_step(self, interpolator, is_last: bool) -> None:
            nonlocal max_error
            y = interpolator.get_interpolated_state()
            exact = kepler_problem.theoretical_state(interpolator.current_time)
            dx = y[0] - exact[0]
            dy = y[1] - exact[1]
            max_error = max(max_error, dx * dx + dy * dy)
            flags.append(is_last)

    stepper = Stepper.fixed_step("classical-rk", 20.0 * 0.0003)
    stepper.set_step_handler(KeplerHandler())
    stepper.integrate(kepler_problem, 0.0, kepler_problem.y0, 20.0)

    # even with more than 1000 steps per period the orbit drifts
    assert max_error > 0.005
    assert flags[-1]
    assert not any(flags[:-1])


# -----------------------------------------------------------------------------
# Adaptive stepping
# -----------------------------------------------------------------------------


def test_dormand_prince_meets_tolerance(decay_problem) -> None:
    stepper = Stepper.adaptive(atol=1e-10, rtol=1e-10)
    y = stepper.integrate(decay_problem, 0.0, decay_problem.y0, 4.0)

    np.testing.assert_allclose(y, decay_problem.theoretical_state(4.0), rtol=0.0, atol=1e-8)
    assert stepper.stop_time == 4.0
    assert stepper.accepted_steps > 1


def test_dormand_prince_agrees_with_scipy_reference() -> None:
    y0 = np.array([2.0, 0.0])
    ref = solve_ivp(_van_der_pol, (0.0, 10.0), y0, method="DOP853", rtol=1e-12, atol=1e-12)

    stepper = Stepper.adaptive(atol=1e-10, rtol=1e-10)
    y = stepper.integrate(_van_der_pol, 0.0, y0, 10.0)

    np.testing.assert_allclose(y, ref.y[:, -1], rtol=0.0, atol=1e-6)


def test_looser_tolerance_takes_fewer_steps(make_decay_problem) -> None:
    counts = []
    for tol in (1e-4, 1e-8, 1e-12):
        problem = make_decay_problem()
        stepper = Stepper.adaptive(atol=tol, rtol=tol)
        stepper.integrate(problem, 0.0, problem.y0, 4.0)
        counts.append(stepper.accepted_steps)
    assert counts[0] < counts[1] < counts[2]


def test_dormand_prince_reuses_last_stage(kepler_problem) -> None:
    stepper = Stepper.adaptive(atol=1e-8, rtol=1e-8)
    stepper.integrate(kepler_problem, 0.0, kepler_problem.y0, 20.0)

    attempts = stepper.accepted_steps + stepper.rejected_steps
    # one start evaluation, one for the initial step estimate, six per attempt
    assert stepper.evaluations == 2 + 6 * attempts
    assert stepper.evaluations == kepler_problem.calls
    assert stepper.rejected_steps > 0


def test_dormand_prince_with_initial_step_skips_estimate(decay_problem) -> None:
    stepper = Stepper.adaptive(atol=1e-8, rtol=1e-8, dt_init=0.01)
    stepper.integrate(decay_problem, 0.0, decay_problem.y0, 4.0)
    attempts = stepper.accepted_steps + stepper.rejected_steps
    assert stepper.evaluations == 1 + 6 * attempts


@pytest.mark.parametrize("method", ["classical-rk", "dormand-prince-54"])
def test_backward_integration(method: str, decay_problem) -> None:
    if method == "classical-rk":
        stepper = Stepper.fixed_step(method, 0.01)
    else:
        stepper = Stepper.adaptive(method, atol=1e-10, rtol=1e-10)
    y4 = decay_problem.theoretical_state(4.0)

    y = stepper.integrate(decay_problem, 4.0, y4, 0.0)

    np.testing.assert_allclose(y, decay_problem.y0, rtol=1e-6)
    assert stepper.stop_time == 0.0


def test_step_size_underflow_when_dt_min_too_large(kepler_problem) -> None:
    stepper = Stepper.adaptive(dt_min=0.5, dt_max=1.0, atol=1e-12, rtol=1e-12)
    with pytest.raises(StepSizeUnderflowError) as excinfo:
        stepper.integrate(kepler_problem, 0.0, kepler_problem.y0, 20.0)
    assert excinfo.value.code == ErrorCode.STEP_SIZE_UNDERFLOW
    assert isinstance(excinfo.value, RuntimeError)


def test_max_steps_is_enforced(kepler_problem) -> None:
    cfg = StepperConfig(
        method="dormand-prince-54",
        adaptive_cfg=AdaptiveConfig(rtol=1e-10, atol=1e-10, max_steps=5),
    )
    with pytest.raises(StepSizeUnderflowError, match="max_steps"):
        Stepper(cfg).integrate(kepler_problem, 0.0, kepler_problem.y0, 20.0)


def test_rejection_budget_is_enforced() -> None:
    def blows_up(t: float, y: np.ndarray) -> np.ndarray:
        return -y if t <= 0.0 else np.full_like(y, np.nan)

    stepper = Stepper.adaptive(dt_init=0.1)
    with pytest.raises(StepSizeUnderflowError, match="too many rejected steps") as excinfo:
        stepper.integrate(blows_up, 0.0, [1.0], 1.0)

    assert excinfo.value.t == 0.0
    assert stepper.accepted_steps == 0
    assert stepper.rejected_steps == stepper.config.adaptive_cfg.max_reject + 1


# -----------------------------------------------------------------------------
# Plumbing
# -----------------------------------------------------------------------------


def test_last_step_lands_exactly_on_target(decay_problem, make_recorder) -> None:
    recorder = make_recorder()
    stepper = Stepper.fixed_step("classical-rk", 0.3)
    stepper.set_step_handler(recorder)
    stepper.integrate(decay_problem, 0.0, decay_problem.y0, 1.0)

    times = [step[1] for step in recorder.steps]
    assert times[-1] == 1.0
    assert len(times) == 4
    assert [step[3] for step in recorder.steps] == [False, False, False, True]
    # steps are contiguous
    for before, after in zip(recorder.steps, recorder.steps[1:], strict=False):
        assert after[0] == before[1]


def test_handler_reset_between_runs(decay_problem, make_recorder) -> None:
    recorder = make_recorder()
    stepper = Stepper.fixed_step("euler", 0.5)
    stepper.set_step_handler(recorder)
    stepper.integrate(decay_problem, 0.0, decay_problem.y0, 1.0)
    stepper.integrate(decay_problem, 0.0, decay_problem.y0, 2.0)

    assert recorder.resets == 2
    assert len(recorder.steps) == 4
    assert recorder.steps[-1][1] == 2.0


def test_handler_sees_step_end_state(decay_problem, make_recorder) -> None:
    recorder = make_recorder(dense=True)
    stepper = Stepper.fixed_step("midpoint", 0.25)
    stepper.set_step_handler(recorder)
    y = stepper.integrate(decay_problem, 0.0, decay_problem.y0, 1.0)
    np.testing.assert_array_equal(recorder.steps[-1][2], y)


def test_linear_interpolator_used_without_dense_consumers(decay_problem) -> None:
    probe = _TypeProbe(dense=False)
    stepper = Stepper.adaptive()
    stepper.set_step_handler(probe)
    stepper.integrate(decay_problem, 0.0, decay_problem.y0, 1.0)
    assert probe.kinds == {LinearStepInterpolator}

    dense_probe = _TypeProbe(dense=True)
    stepper.set_step_handler(dense_probe)
    stepper.integrate(decay_problem, 0.0, decay_problem.y0, 1.0)
    assert dense_probe.kinds == {DormandPrince54StepInterpolator}


def test_set_step_handler_none_restores_dummy(make_recorder) -> None:
    stepper = Stepper.fixed_step("euler", 0.1)
    recorder = make_recorder()
    stepper.set_step_handler(recorder)
    assert stepper.step_handler is recorder
    stepper.set_step_handler(None)
    assert not stepper.step_handler.requires_dense_output()


def test_plain_callable_system() -> None:
    stepper = Stepper.fixed_step("classical-rk", 0.01)
    y = stepper.integrate(lambda t, y: np.cos(t) * np.ones_like(y), 0.0, [0.0, 1.0], 1.0)
    np.testing.assert_allclose(y, [math.sin(1.0), 1.0 + math.sin(1.0)], atol=1e-9)
    assert stepper.evaluations == 4 * stepper.accepted_steps


def test_caller_state_is_not_modified(decay_problem) -> None:
    y0 = decay_problem.y0.copy()
    Stepper.fixed_step("euler", 0.1).integrate(decay_problem, 0.0, y0, 1.0)
    np.testing.assert_array_equal(y0, decay_problem.y0)


def test_dimension_mismatch_raises(decay_problem) -> None:
    with pytest.raises(DimensionMismatchError) as excinfo:
        Stepper.fixed_step("euler", 0.1).integrate(decay_problem, 0.0, np.zeros(3), 1.0)
    assert excinfo.value.expected == 2
    assert excinfo.value.got == 3
    assert isinstance(excinfo.value, ValueError)


def test_zero_integration_interval_raises(decay_problem) -> None:
    with pytest.raises(ZeroIntegrationIntervalError):
        Stepper.fixed_step("euler", 0.1).integrate(decay_problem, 1.0, decay_problem.y0, 1.0)
    assert decay_problem.calls == 0


def test_derivative_failure_is_wrapped() -> None:
    def rhs(t: float, y: np.ndarray) -> np.ndarray:
        if t > 0.5:
            msg = "model blew up"
            raise ArithmeticError(msg)
        return -y

    stepper = Stepper.fixed_step("classical-rk", 0.1)
    with pytest.raises(DerivativeEvaluationError, match="model blew up") as excinfo:
        stepper.integrate(rhs, 0.0, [1.0], 1.0)
    assert isinstance(excinfo.value.__cause__, ArithmeticError)
    assert excinfo.value.t > 0.5
    assert excinfo.value.code == ErrorCode.DERIVATIVE_EVALUATION


def test_derivative_shape_mismatch_is_reported() -> None:
    stepper = Stepper.fixed_step("euler", 0.1)
    with pytest.raises(DerivativeEvaluationError, match="rhs shape"):
        stepper.integrate(lambda t, y: np.zeros(3), 0.0, [1.0, 2.0], 1.0)  # noqa: ARG005


# -----------------------------------------------------------------------------
# Configuration validation
# -----------------------------------------------------------------------------


@pytest.mark.parametrize("method", ["euler", "midpoint", "classical-rk"])
def test_fixed_step_methods_require_step(method: str) -> None:
    with pytest.raises(ValueError, match="requires step"):
        Stepper(StepperConfig(method=method))


def test_unknown_method_raises() -> None:
    with pytest.raises(ValueError, match="Unknown method"):
        Stepper(StepperConfig(method="adams-bashforth", step=0.1))


def test_method_names_are_normalized() -> None:
    stepper = Stepper.fixed_step("  Classical-RK ", 0.1)
    assert stepper.plan.scheme.name == "classical-rk"


def test_adaptive_with_fixed_step_strict_raises() -> None:
    with pytest.raises(ValueError, match="initial step"):
        Stepper(StepperConfig(method="dormand-prince-54", step=0.1))


def test_adaptive_with_fixed_step_nonstrict_warns(decay_problem) -> None:
    cfg = StepperConfig(method="dormand-prince-54", step=0.1, strict=False)
    with pytest.warns(RuntimeWarning, match="initial step"):
        stepper = Stepper(cfg)
    assert stepper.plan.dt_init == 0.1

    stepper.integrate(decay_problem, 0.0, decay_problem.y0, 1.0)
    attempts = stepper.accepted_steps + stepper.rejected_steps
    assert stepper.evaluations == 1 + 6 * attempts


def test_invalid_dt_bounds_raise() -> None:
    with pytest.raises(ValueError, match="dt_min"):
        Stepper.adaptive(dt_min=1.0, dt_max=0.1)


def test_negative_tolerance_raises() -> None:
    base = StepperConfig(method="dormand-prince-54")
    with pytest.raises(ValueError, match="rtol and atol"):
        Stepper(replace(base, adaptive_cfg=AdaptiveConfig(rtol=-1.0)))


def test_vector_absolute_tolerance(decay_problem) -> None:
    stepper = Stepper.adaptive(atol=np.array([1e-10, 1e-12]), rtol=1e-10)
    y = stepper.integrate(decay_problem, 0.0, decay_problem.y0, 2.0)
    np.testing.assert_allclose(y, decay_problem.theoretical_state(2.0), rtol=1e-8)
