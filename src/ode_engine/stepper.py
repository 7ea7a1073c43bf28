# src/ode_engine/stepper.py
"""Single-step integrator driving explicit Runge-Kutta schemes.

The Stepper owns the time loop. For every step it:

1. asks its scheme (a "compute one step" strategy, see :mod:`ode_engine.schemes`)
   for the stage derivatives and candidate end state;
2. for embedded schemes, measures the local error and either accepts the step
   or shrinks it and retries from the same start state;
3. hands the candidate step's dense output to the event coordinator, which may
   request truncation at an event time (the step is then recomputed with the
   shorter size and checked again);
4. commits the step: fires events, calls the step handler with
   ``(interpolator, is_last)`` and applies any state reset.

Fixed-step schemes ("euler", "midpoint", "classical-rk") use a constant step
magnitude whose sign follows the direction of integration; the last step is
shortened to land exactly on the target time. The embedded scheme
("dormand-prince-54") adapts its step with the usual controller:

    fac = clamp(safety * err ** (-1 / order), fac_min, fac_max)
    |h_new| = clamp(|h| * fac, dt_min, dt_max)

Performance hygiene:
    - State and stage arrays are preallocated once per integration.
    - Inner loops use in-place NumPy ops and np.copyto.
    - One working interpolator is reused across steps; consumers that keep
      steps take copies.

A Stepper holds mutable buffers: do not share one instance between
concurrent integrations.
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

from .errors import (
    DerivativeEvaluationError,
    EventLocalizationError,
    StepSizeUnderflowError,
    ZeroIntegrationIntervalError,
    check_dimension,
)
from .events import DEFAULT_MAX_ITERATIONS, EventCoordinator
from .handlers import DummyStepHandler
from .interpolators import LinearStepInterpolator, StepInterpolator
from .schemes import RungeKuttaScheme, get_scheme
from .system import DerivativeSystem, RHSFunction, as_derivative_system

if TYPE_CHECKING:
    from .events import SwitchingFunction, SwitchState
    from .handlers import StepHandler

logger = logging.getLogger(__name__)


# =============================================================================
# Errors / messages
# =============================================================================

_RHS_SHAPE_ERROR_MSG = "rhs shape {actual} does not match expected {expected}"
_STEP_REQUIRED_ERROR_MSG = "Method '{method}' is fixed-step and requires step > 0"
_STEP_IGNORED_MSG = (
    "Method '{method}' is adaptive; the fixed step is used as initial step only"
)
_DT_BOUNDS_ERROR_MSG = "dt_min ({dt_min}) must be <= dt_max ({dt_max})"
_TOLERANCE_ERROR_MSG = "rtol and atol must be >= 0"
_CONTROLLER_ERROR_MSG = "safety, fac_min and fac_max must be > 0 with fac_min <= fac_max"
_TRUNCATIONS_ERROR_MSG = "max_truncations must be >= 1"
_TOO_MANY_REJECTS_MSG = "too many rejected steps"
_DT_UNDERFLOW_MSG = "step size fell below dt_min"
_NO_PROGRESS_MSG = "step size below time resolution"
_MAX_STEPS_MSG = "exceeded max_steps"
_TOO_MANY_TRUNCATIONS_MSG = (
    "step truncated {count} times at t={t!r} without settling on an event time"
)


# =============================================================================
# Configuration dataclasses
# =============================================================================


@dataclass(slots=True, frozen=True)
class DtControllerConfig:
    """Configuration for adaptive timestep control.

    Attributes:
        dt_min: Minimum allowed step magnitude.
        dt_max: Maximum allowed step magnitude.
        safety: Safety factor applied to step updates.
        fac_min: Minimum multiplicative change factor.
        fac_max: Maximum multiplicative change factor.
    """

    dt_min: float = 0.0
    dt_max: float = float("inf")
    safety: float = 0.9
    fac_min: float = 0.2
    fac_max: float = 10.0


@dataclass(slots=True, frozen=True)
class AdaptiveConfig:
    """Configuration for adaptive stepping.

    Attributes:
        rtol: Relative tolerance.
        atol: Absolute tolerance (scalar or array-like).
        dt_init: Optional initial step magnitude; if None, it is estimated.
        max_reject: Maximum number of rejected attempts per accepted step.
        max_steps: Maximum number of accepted steps per integration.
    """

    rtol: float = 1e-6
    atol: float | NDArray[np.floating] = 1e-9
    dt_init: float | None = None
    max_reject: int = 25
    max_steps: int = 1_000_000


@dataclass(slots=True, frozen=True)
class StepperConfig:
    """Configuration for a Stepper.

    Attributes:
        method: Scheme name (see :mod:`ode_engine.schemes`).
        step: Step magnitude for fixed-step methods.
        strict: If True, invalid configurations raise; otherwise warnings and
            adjustments may occur.
        dt_controller: Step controller parameters for adaptive methods.
        adaptive_cfg: Tolerances and limits for adaptive methods.
        max_truncations: Maximum successive event truncations of one step.
    """

    method: str = "classical-rk"
    step: float | None = None
    strict: bool = True
    dt_controller: DtControllerConfig = DtControllerConfig()
    adaptive_cfg: AdaptiveConfig = AdaptiveConfig()
    max_truncations: int = 16


@dataclass(slots=True, frozen=True)
class StepPlan:
    """Validated form of a StepperConfig used by the stepping loop.

    Attributes:
        scheme: Resolved scheme.
        step: Fixed step magnitude, or None for adaptive schemes.
        dt_init: Initial step magnitude for adaptive schemes, if given.
    """

    scheme: RungeKuttaScheme
    step: float | None
    dt_init: float | None


# =============================================================================
# Stepper
# =============================================================================


class Stepper:
    """Integrator for y' = f(t, y) with dense output and event handling."""

    def __init__(self, config: StepperConfig | None = None) -> None:
        """Initialize a Stepper.

        Args:
            config: Stepper configuration. If None, defaults are used (which
                require a step for the default fixed-step method).
        """
        self.config = config or StepperConfig()
        self.plan = self._resolve_plan(self.config)

        self._handler: StepHandler = DummyStepHandler()
        self._events = EventCoordinator()
        self._system: DerivativeSystem | None = None

        self.evaluations = 0
        self.accepted_steps = 0
        self.rejected_steps = 0
        self.stop_time = math.nan

        self._allocate(0)

    @classmethod
    def fixed_step(cls, method: str, step: float) -> Stepper:
        """Build a fixed-step stepper.

        Args:
            method: "euler", "midpoint" or "classical-rk".
            step: Step magnitude.

        Returns:
            Configured Stepper.
        """
        return cls(StepperConfig(method=method, step=step))

    @classmethod
    def adaptive(
        cls,
        method: str = "dormand-prince-54",
        *,
        dt_min: float = 0.0,
        dt_max: float = float("inf"),
        atol: float | NDArray[np.floating] = 1e-9,
        rtol: float = 1e-6,
        dt_init: float | None = None,
    ) -> Stepper:
        """Build an adaptive stepper.

        Args:
            method: Embedded scheme name.
            dt_min: Minimum step magnitude.
            dt_max: Maximum step magnitude.
            atol: Absolute tolerance.
            rtol: Relative tolerance.
            dt_init: Optional initial step magnitude.

        Returns:
            Configured Stepper.
        """
        return cls(
            StepperConfig(
                method=method,
                dt_controller=DtControllerConfig(dt_min=dt_min, dt_max=dt_max),
                adaptive_cfg=AdaptiveConfig(rtol=rtol, atol=atol, dt_init=dt_init),
            )
        )

    # ------------------------------------------------------------------
    # Plan resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_plan(cfg: StepperConfig) -> StepPlan:
        """Validate a configuration into an executable plan.

        Args:
            cfg: Stepper configuration.

        Raises:
            ValueError: If the configuration is invalid.

        Returns:
            Resolved plan.
        """
        scheme = get_scheme(cfg.method)
        ctrl = cfg.dt_controller
        adaptive_cfg = cfg.adaptive_cfg

        if int(cfg.max_truncations) < 1:
            raise ValueError(_TRUNCATIONS_ERROR_MSG)

        if not scheme.embedded:
            step = None if cfg.step is None else abs(float(cfg.step))
            if step is None or step == 0.0 or not math.isfinite(step):
                raise ValueError(_STEP_REQUIRED_ERROR_MSG.format(method=scheme.name))
            return StepPlan(scheme=scheme, step=step, dt_init=None)

        if ctrl.dt_min < 0.0 or ctrl.dt_min > ctrl.dt_max:
            raise ValueError(
                _DT_BOUNDS_ERROR_MSG.format(dt_min=ctrl.dt_min, dt_max=ctrl.dt_max)
            )
        if adaptive_cfg.rtol < 0.0 or np.any(np.asarray(adaptive_cfg.atol) < 0.0):
            raise ValueError(_TOLERANCE_ERROR_MSG)
        if not (0.0 < ctrl.safety and 0.0 < ctrl.fac_min <= ctrl.fac_max):
            raise ValueError(_CONTROLLER_ERROR_MSG)

        dt_init = adaptive_cfg.dt_init
        if cfg.step is not None:
            msg = _STEP_IGNORED_MSG.format(method=scheme.name)
            if cfg.strict:
                raise ValueError(msg)
            warnings.warn(msg, RuntimeWarning, stacklevel=3)
            dt_init = abs(float(cfg.step))
        if dt_init is not None and (not math.isfinite(dt_init) or dt_init <= 0.0):
            dt_init = None

        return StepPlan(scheme=scheme, step=None, dt_init=dt_init)

    # ------------------------------------------------------------------
    # Handler / switching function registration
    # ------------------------------------------------------------------

    @property
    def step_handler(self) -> StepHandler:
        """Return the current step handler."""
        return self._handler

    def set_step_handler(self, handler: StepHandler | None) -> None:
        """Set the handler called after each accepted step.

        Args:
            handler: Step handler, or None to restore the dummy handler.
        """
        self._handler = handler if handler is not None else DummyStepHandler()

    def add_switching_function(
        self,
        function: SwitchingFunction,
        max_check_interval: float,
        convergence: float,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> SwitchState:
        """Register a switching function.

        Args:
            function: Switching function.
            max_check_interval: Maximal time between two samples of g.
            convergence: Event time localization threshold.
            max_iterations: Cap on bracket refinement iterations.

        Returns:
            Tracking state of the registered function.
        """
        return self._events.add(
            function,
            max_check_interval,
            convergence,
            max_iterations=max_iterations,
        )

    @property
    def switching_functions(self) -> list[SwitchingFunction]:
        """Return the registered switching functions."""
        return self._events.switching_functions

    def clear_switching_functions(self) -> None:
        """Remove every registered switching function."""
        self._events.clear()

    # ------------------------------------------------------------------
    # Buffers / RHS evaluation
    # ------------------------------------------------------------------

    def _allocate(self, n: int) -> None:
        """Allocate working buffers for dimension n."""
        stages = self.plan.scheme.stages
        self._y: NDArray[np.float64] = np.zeros(n, dtype=np.float64)
        self._y_try: NDArray[np.float64] = np.zeros_like(self._y)
        self._y_tmp: NDArray[np.float64] = np.zeros_like(self._y)
        self._err: NDArray[np.float64] = np.zeros_like(self._y)
        self._scale: NDArray[np.float64] = np.zeros_like(self._y)
        self._ratio: NDArray[np.float64] = np.zeros_like(self._y)
        self._k: NDArray[np.float64] = np.zeros((stages, n), dtype=np.float64)

    def _rhs_into(
        self,
        out: NDArray[np.floating],
        t: float,
        y: NDArray[np.floating],
    ) -> None:
        """Evaluate the derivative system into out with shape enforcement.

        Args:
            out: Output buffer to write into.
            t: Time.
            y: State.

        Raises:
            DerivativeEvaluationError: If the system fails or returns an array
                of unexpected shape.
        """
        if self._system is None:
            raise RuntimeError("Internal error: no system bound")
        self.evaluations += 1
        try:
            f = self._system.compute_derivatives(float(t), y)
        except DerivativeEvaluationError:
            raise
        except Exception as exc:
            raise DerivativeEvaluationError(
                str(exc) or type(exc).__name__,
                t=float(t),
            ) from exc

        f_arr = np.asarray(f, dtype=np.float64)
        if f_arr.shape != out.shape:
            raise DerivativeEvaluationError(
                _RHS_SHAPE_ERROR_MSG.format(actual=f_arr.shape, expected=out.shape),
                t=float(t),
            )
        np.copyto(out, f_arr)

    # ------------------------------------------------------------------
    # Error norm + dt controller
    # ------------------------------------------------------------------

    def _error_norm(self, h: float) -> float:
        """
        Compute the RMS scaled norm of the embedded error estimate.

        Args:
            h: Signed step size.

        Returns:
            RMS scaled error norm (inf if not finite).
        """
        cfg = self.config.adaptive_cfg
        self.plan.scheme.error_into(self._k, h, self._err)

        np.abs(self._y_try, out=self._scale)
        np.abs(self._y, out=self._ratio)
        np.maximum(self._scale, self._ratio, out=self._scale)
        self._scale *= float(cfg.rtol)
        self._scale += np.asarray(cfg.atol, dtype=np.float64)

        np.divide(self._err, self._scale, out=self._ratio)
        v = float(np.sqrt(np.mean(self._ratio * self._ratio)))
        if not np.isfinite(v):
            return float("inf")
        return v

    def _propose_dt(self, h: float, err_norm: float) -> float:
        """
        Propose a new signed step from the error norm and scheme order.

        Args:
            h: Current signed step.
            err_norm: Current error norm.

        Returns:
            Proposed signed step, not clamped to the controller bounds.
        """
        ctrl = self.config.dt_controller
        if err_norm <= 0.0:
            fac = ctrl.fac_max
        elif math.isinf(err_norm):
            fac = ctrl.fac_min
        else:
            exp = 1.0 / float(self.plan.scheme.order)
            fac = ctrl.safety * (err_norm ** (-exp))
            fac = min(ctrl.fac_max, max(ctrl.fac_min, fac))
        return h * fac

    def _clamp_dt(self, h: float) -> float:
        """Clamp a signed step magnitude to [dt_min, dt_max]."""
        ctrl = self.config.dt_controller
        magnitude = min(ctrl.dt_max, max(ctrl.dt_min, abs(h)))
        return math.copysign(magnitude, h)

    def _initial_step(
        self,
        t0: float,
        y0: NDArray[np.float64],
        f0: NDArray[np.float64],
        *,
        forward: bool,
    ) -> float:
        """Estimate the first step of an adaptive integration.

        Takes one trial Euler step to estimate the second derivative, then
        sizes h so that h**order * max(|y'|, |y''|) / tol ~ 0.01.

        Args:
            t0: Start time.
            y0: Start state.
            f0: Derivative at the start.
            forward: Integration direction.

        Returns:
            Signed initial step.
        """
        sign = 1.0 if forward else -1.0
        if self.plan.dt_init is not None:
            return sign * self._clamp_dt(self.plan.dt_init)

        cfg = self.config.adaptive_cfg
        scale = np.abs(y0) * float(cfg.rtol) + np.asarray(cfg.atol, dtype=np.float64)
        y_on_scale2 = float(np.sum((y0 / scale) ** 2))
        ydot_on_scale2 = float(np.sum((f0 / scale) ** 2))
        if y_on_scale2 < 1.0e-10 or ydot_on_scale2 < 1.0e-10:
            h = 1.0e-6
        else:
            h = 0.01 * math.sqrt(y_on_scale2 / ydot_on_scale2)
        h *= sign

        y1 = y0 + h * f0
        f1 = np.empty_like(y0)
        self._rhs_into(f1, t0 + h, y1)
        yddot_on_scale = math.sqrt(float(np.sum(((f1 - f0) / scale) ** 2))) / abs(h)

        max_inv2 = max(math.sqrt(ydot_on_scale2), yddot_on_scale)
        if max_inv2 < 1.0e-15:
            h1 = max(1.0e-6, 0.001 * abs(h))
        else:
            h1 = (0.01 / max_inv2) ** (1.0 / self.plan.scheme.order)
        magnitude = min(100.0 * abs(h), h1)
        magnitude = max(magnitude, 1.0e-12 * abs(t0))
        return sign * self._clamp_dt(magnitude)

    # ------------------------------------------------------------------
    # Public integration loop
    # ------------------------------------------------------------------

    def integrate(
        self,
        system: DerivativeSystem | RHSFunction,
        t0: float,
        y0: NDArray[np.floating],
        t_target: float,
    ) -> NDArray[np.float64]:
        """Integrate y' = f(t, y) from (t0, y0) to t_target.

        Args:
            system: Derivative system, or a callable f(t, y).
            t0: Start time.
            y0: Start state.
            t_target: Target time (may be lower than t0).

        Raises:
            ZeroIntegrationIntervalError: If t0 == t_target.
            DimensionMismatchError: If y0 does not match the system dimension.

        Returns:
            State at the end of the integration (t_target, or the time of an
            event that stopped the integration; see :attr:`stop_time`).
        """
        y_start = np.array(y0, dtype=np.float64).reshape(-1)
        bound = as_derivative_system(system, y_start.size)
        check_dimension("y0", y_start.size, int(bound.dimension))

        t = float(t0)
        t_end = float(t_target)
        if t == t_end:
            raise ZeroIntegrationIntervalError(t)
        forward = t_end > t

        self._system = bound
        self._allocate(y_start.size)
        np.copyto(self._y, y_start)
        self.evaluations = 0
        self.accepted_steps = 0
        self.rejected_steps = 0
        self.stop_time = math.nan

        try:
            return self._run(t, t_end, forward=forward)
        finally:
            self._system = None

    def _select_interpolator(self) -> StepInterpolator:
        """Return the working interpolator for this integration."""
        if self._handler.requires_dense_output() or not self._events.is_empty():
            return self.plan.scheme.new_interpolator()
        return LinearStepInterpolator()

    def _run(self, t: float, t_end: float, *, forward: bool) -> NDArray[np.float64]:
        """Run the stepping loop; buffers and counters are already reset."""
        scheme = self.plan.scheme
        adaptive = scheme.embedded
        adaptive_cfg = self.config.adaptive_cfg
        events = self._events
        has_events = not events.is_empty()

        self._handler.reset()
        if has_events:
            events.initialize(t, self._y)

        interpolator = self._select_interpolator()
        interpolator.reinitialize(self._y, forward=forward)
        interpolator.store_time(t)

        if adaptive:
            self._rhs_into(self._k[0], t, self._y)
            first_stage_ready = True
            h = self._initial_step(t, self._y, self._k[0], forward=forward)
        else:
            first_stage_ready = False
            h = self.plan.step if forward else -self.plan.step

        last_step = False
        while not last_step:
            if adaptive and self.accepted_steps >= adaptive_cfg.max_steps:
                raise StepSizeUnderflowError(_MAX_STEPS_MSG, t=t, step=h)

            interpolator.shift()
            err_norm = 0.0
            rejects = 0
            truncations = 0
            while True:
                lands_on_target = (t + h >= t_end) if forward else (t + h <= t_end)
                if lands_on_target:
                    h = t_end - t
                t_next = t_end if lands_on_target else t + h
                if t_next == t:
                    raise StepSizeUnderflowError(_NO_PROGRESS_MSG, t=t, step=h)

                scheme.compute_step(
                    self._rhs_into,
                    t=t,
                    y=self._y,
                    h=h,
                    k=self._k,
                    y_out=self._y_try,
                    y_tmp=self._y_tmp,
                    first_stage_ready=first_stage_ready,
                )
                first_stage_ready = True

                if adaptive:
                    err_norm = self._error_norm(h)
                    if err_norm > 1.0:
                        rejects += 1
                        self.rejected_steps += 1
                        h = self._reject(t, h, err_norm, rejects)
                        continue

                interpolator.store_step(t_next, self._y_try, self._k)
                if has_events and events.evaluate_step(interpolator):
                    truncations += 1
                    if truncations > self.config.max_truncations:
                        raise EventLocalizationError(
                            _TOO_MANY_TRUNCATIONS_MSG.format(count=truncations, t=t)
                        )
                    h = events.event_time - t
                    logger.debug("step truncated at event time %.17g", t + h)
                    continue
                break

            # the step is accepted
            np.copyto(self._y, self._y_try)
            t = t_next
            self.accepted_steps += 1

            stop = False
            if has_events:
                events.step_accepted(t, self._y)
                stop = events.stop()
            last_step = stop or t == t_end

            interpolator.set_interpolated_time(t)
            self._handler.handle_step(interpolator, last_step)

            new_state = events.reset(t, self._y, stop=stop) if has_events else None
            if new_state is not None:
                np.copyto(self._y, new_state)
                interpolator.store_step(t, self._y)
                first_stage_ready = False
            elif scheme.fsal:
                np.copyto(self._k[0], self._k[-1])
            else:
                first_stage_ready = False

            if adaptive:
                h = self._clamp_dt(self._propose_dt(h, err_norm))
            else:
                h = self.plan.step if forward else -self.plan.step

        self.stop_time = t
        return self._y.copy()

    def _reject(self, t: float, h: float, err_norm: float, rejects: int) -> float:
        """Shrink a rejected step.

        Args:
            t: Step start time.
            h: Rejected signed step.
            err_norm: Error norm of the rejected step.
            rejects: Consecutive rejections of this step so far.

        Raises:
            StepSizeUnderflowError: If the retry budget is exhausted or the
                new step falls below dt_min.

        Returns:
            New signed step.
        """
        ctrl = self.config.dt_controller
        if rejects > self.config.adaptive_cfg.max_reject:
            raise StepSizeUnderflowError(_TOO_MANY_REJECTS_MSG, t=t, step=h)
        h_new = self._propose_dt(h, err_norm)
        if abs(h_new) < ctrl.dt_min:
            raise StepSizeUnderflowError(_DT_UNDERFLOW_MSG, t=t, step=h_new)
        h_new = math.copysign(min(abs(h_new), ctrl.dt_max), h_new)
        logger.debug(
            "step rejected at t=%.17g (err=%.3g), retrying with h=%.6g",
            t,
            err_norm,
            h_new,
        )
        return h_new
