# src/ode_engine/events.py
"""Discrete-event detection with switching functions.

A switching function g(t, y) marks an event whenever its sign changes along
the trajectory. The coordinator samples every registered function against the
dense output of a candidate step (no derivative evaluations), brackets sign
changes, and refines each bracket down to the function's convergence
threshold by alternating bisection and regula falsi.

Conventions:
    - g >= 0 counts as positive; a sign change is (g_a >= 0) != (g_b >= 0).
    - The event time is the later endpoint (in integration direction) of the
      converged bracket, i.e. the first localized time where g already has
      its new sign.
    - When several functions trigger in one step the earliest event wins;
      ties go to the function registered first.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol, TypeAlias

import numpy as np
from numpy.typing import NDArray

from .errors import EventLocalizationError, check_dimension

if TYPE_CHECKING:
    from .interpolators import StepInterpolator

logger = logging.getLogger(__name__)

_MAX_CHECK_ERROR_MSG = "max_check_interval must be > 0, got {value!r}"
_CONVERGENCE_ERROR_MSG = "convergence must be > 0, got {value!r}"
_MAX_ITER_ERROR_MSG = "max_iterations must be >= 1, got {value!r}"
_BARE_RESET_ERROR_MSG = (
    "on_event returned EventAction.RESET_STATE without a state; "
    "return ResetState(new_state) instead"
)
_DECISION_TYPE_ERROR_MSG = (
    "on_event must return EventAction.STOP, EventAction.CONTINUE or "
    "ResetState(state); got {kind}"
)
_RESOLUTION_ERROR_MSG = (
    "event bracket [{ta!r}, {tb!r}] cannot be refined below {convergence!r}: "
    "time resolution exhausted"
)
_NOT_CONVERGED_ERROR_MSG = (
    "event bracket [{ta!r}, {tb!r}] did not converge to {convergence!r} "
    "within {max_iterations} iterations"
)

DEFAULT_MAX_ITERATIONS = 200


class EventAction(Enum):
    """What the stepper does after an event."""

    STOP = "stop"
    CONTINUE = "continue"
    RESET_STATE = "reset_state"


@dataclass(slots=True, frozen=True)
class ResetState:
    """Event decision replacing the state at the event time.

    Attributes:
        state: Replacement state vector.
    """

    state: NDArray[np.floating]

    @property
    def action(self) -> EventAction:
        """Return EventAction.RESET_STATE."""
        return EventAction.RESET_STATE


EventDecision: TypeAlias = EventAction | ResetState


class SwitchingFunction(Protocol):
    """Scalar observable of the trajectory whose sign changes are events."""

    def value(self, t: float, y: NDArray[np.floating]) -> float:
        """Return g(t, y)."""
        ...

    def on_event(self, t: float, y: NDArray[np.floating]) -> EventDecision:
        """React to an event located at (t, y)."""
        ...


@dataclass(slots=True)
class FunctionSwitch:
    """Switching function built from plain callables.

    Attributes:
        g: Callable returning the switching value.
        handler: Callable deciding what happens at an event. Defaults to
            stopping the integration.
    """

    g: Callable[[float, NDArray[np.floating]], float]
    handler: Callable[[float, NDArray[np.floating]], EventDecision] | None = None

    def value(self, t: float, y: NDArray[np.floating]) -> float:
        """Evaluate g.

        Args:
            t: Time.
            y: State.

        Returns:
            Switching value.
        """
        return float(self.g(t, y))

    def on_event(self, t: float, y: NDArray[np.floating]) -> EventDecision:
        """Delegate to the handler, or stop.

        Args:
            t: Event time.
            y: State at the event.

        Returns:
            Event decision.
        """
        if self.handler is None:
            return EventAction.STOP
        return self.handler(t, y)


@dataclass(slots=True)
class SwitchState:
    """Registration and mutable tracking state of one switching function.

    Attributes:
        function: The switching function.
        max_check_interval: Maximal time between two samples of g.
        convergence: Bracket width below which an event time is accepted.
        max_iterations: Cap on bracket refinement iterations.
    """

    function: SwitchingFunction
    max_check_interval: float
    convergence: float
    max_iterations: int = DEFAULT_MAX_ITERATIONS

    t0: float = field(default=math.nan, init=False)
    g0: float = field(default=math.nan, init=False)
    g0_positive: bool = field(default=True, init=False)
    pending_event: bool = field(default=False, init=False)
    pending_event_time: float = field(default=math.nan, init=False)
    previous_event_time: float = field(default=math.nan, init=False)
    forward: bool = field(default=True, init=False)
    next_action: EventAction = field(default=EventAction.CONTINUE, init=False)
    _after_event_positive: bool = field(default=True, init=False)
    _reset_state: NDArray[np.float64] | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        """Validate registration parameters.

        Raises:
            ValueError: If an interval, threshold or cap is not positive.
        """
        self.max_check_interval = abs(float(self.max_check_interval))
        self.convergence = abs(float(self.convergence))
        if not self.max_check_interval > 0.0:
            raise ValueError(_MAX_CHECK_ERROR_MSG.format(value=self.max_check_interval))
        if not self.convergence > 0.0:
            raise ValueError(_CONVERGENCE_ERROR_MSG.format(value=self.convergence))
        if int(self.max_iterations) < 1:
            raise ValueError(_MAX_ITER_ERROR_MSG.format(value=self.max_iterations))

    @property
    def event_time(self) -> float:
        """Return the pending event time (NaN if none)."""
        return self.pending_event_time

    def reinitialize_begin(self, t0: float, y0: NDArray[np.floating]) -> None:
        """Sample g at the start of an integration and clear event history.

        Args:
            t0: Start time.
            y0: Start state.
        """
        self.t0 = float(t0)
        self.g0 = self._g(self.t0, y0)
        self.g0_positive = self.g0 >= 0.0
        self.pending_event = False
        self.pending_event_time = math.nan
        self.previous_event_time = math.nan
        self.next_action = EventAction.CONTINUE
        self._reset_state = None

    def evaluate_step(self, interpolator: StepInterpolator) -> bool:
        """Look for a sign change of g over the interpolator's step.

        Args:
            interpolator: Candidate step dense output.

        Returns:
            True if an event was located strictly before the step end and the
            step must be truncated.
        """
        self.forward = interpolator.forward
        t1 = interpolator.current_time
        dt = t1 - self.t0
        n = max(1, math.ceil(abs(dt) / self.max_check_interval))
        h = dt / n

        ta, ga, positive_a = self.t0, self.g0, self.g0_positive
        for i in range(n):
            tb = t1 if i == n - 1 else self.t0 + (i + 1) * h
            gb = self._g_at(interpolator, tb)

            if positive_a == (gb >= 0.0):
                ta, ga = tb, gb
                continue

            root = self._refine(interpolator, ta, ga, positive_a, tb, gb)
            if (
                math.isnan(self.previous_event_time)
                or abs(root - self.previous_event_time) > self.convergence
            ):
                self._after_event_positive = gb >= 0.0
                self.pending_event_time = root
                if self.pending_event and abs(t1 - root) <= self.convergence:
                    # step already ends at the event found by a longer attempt
                    return False
                self.pending_event = True
                return True

            # root is the event handled at the start of this step
            ta, ga, positive_a = tb, gb, gb >= 0.0

        self.pending_event = False
        self.pending_event_time = math.nan
        return False

    def step_accepted(self, t: float, y: NDArray[np.floating]) -> None:
        """Record the start of the next step and fire a pending event.

        Args:
            t: Accepted step end time.
            y: Accepted step end state.

        Raises:
            ValueError: If on_event returns a bare RESET_STATE.
            TypeError: If on_event returns an unsupported value.
        """
        self.t0 = float(t)
        self.g0 = self._g(self.t0, y)
        if not self.pending_event:
            self.g0_positive = self.g0 >= 0.0
            self.next_action = EventAction.CONTINUE
            return

        self.previous_event_time = self.t0
        self.g0_positive = self._after_event_positive
        decision = self.function.on_event(self.t0, np.array(y, dtype=np.float64))
        if isinstance(decision, ResetState):
            self._reset_state = np.array(decision.state, dtype=np.float64).reshape(-1)
            self.next_action = EventAction.RESET_STATE
        elif decision is EventAction.RESET_STATE:
            raise ValueError(_BARE_RESET_ERROR_MSG)
        elif isinstance(decision, EventAction):
            self.next_action = decision
        else:
            raise TypeError(
                _DECISION_TYPE_ERROR_MSG.format(kind=type(decision).__name__)
            )
        logger.info(
            "event at t=%.17g handled with %s",
            self.t0,
            self.next_action.value,
        )

    def stop(self) -> bool:
        """Return True if the event just fired requested a stop."""
        return self.pending_event and self.next_action is EventAction.STOP

    def reset(self) -> NDArray[np.float64] | None:
        """Clear the fired event and return its replacement state, if any."""
        if not self.pending_event:
            return None
        self.pending_event = False
        self.pending_event_time = math.nan
        new_state = self._reset_state
        self._reset_state = None
        if self.next_action is EventAction.RESET_STATE:
            return new_state
        return None

    def resample(self, t: float, y: NDArray[np.floating], *, keep_sign: bool) -> None:
        """Re-sample g after the state was replaced.

        Args:
            t: Current time.
            y: Replacement state.
            keep_sign: Keep the post-event reference sign instead of the
                sampled one (for the function that just fired).
        """
        self.t0 = float(t)
        self.g0 = self._g(self.t0, y)
        if not keep_sign:
            self.g0_positive = self.g0 >= 0.0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _g(self, t: float, y: NDArray[np.floating]) -> float:
        return float(self.function.value(t, np.array(y, dtype=np.float64)))

    def _g_at(self, interpolator: StepInterpolator, t: float) -> float:
        interpolator.set_interpolated_time(t)
        return float(self.function.value(t, interpolator.get_interpolated_state()))

    def _refine(
        self,
        interpolator: StepInterpolator,
        ta: float,
        ga: float,
        positive_a: bool,
        tb: float,
        gb: float,
    ) -> float:
        """Shrink the bracket [ta, tb] around the sign change of g.

        Even iterations bisect, odd iterations take the regula falsi point
        (bisecting instead when that point is not strictly inside).

        Raises:
            EventLocalizationError: If the bracket cannot be refined to the
                convergence threshold.

        Returns:
            The bracket end tb after convergence.
        """
        for iteration in range(self.max_iterations):
            if abs(tb - ta) <= self.convergence:
                return tb

            tm = 0.5 * (ta + tb)
            if iteration % 2 == 1 and gb != ga:
                ts = tb - gb * (tb - ta) / (gb - ga)
                if min(ta, tb) < ts < max(ta, tb):
                    tm = ts
            if tm in (ta, tb):
                raise EventLocalizationError(
                    _RESOLUTION_ERROR_MSG.format(
                        ta=ta,
                        tb=tb,
                        convergence=self.convergence,
                    )
                )

            gm = self._g_at(interpolator, tm)
            if (gm >= 0.0) == positive_a:
                ta, ga = tm, gm
            else:
                tb, gb = tm, gm

        if abs(tb - ta) <= self.convergence:
            return tb
        raise EventLocalizationError(
            _NOT_CONVERGED_ERROR_MSG.format(
                ta=ta,
                tb=tb,
                convergence=self.convergence,
                max_iterations=self.max_iterations,
            )
        )


class EventCoordinator:
    """Owns the registered switching functions of one stepper."""

    def __init__(self) -> None:
        """Create an empty coordinator."""
        self._states: list[SwitchState] = []
        self._first: SwitchState | None = None

    def add(
        self,
        function: SwitchingFunction,
        max_check_interval: float,
        convergence: float,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> SwitchState:
        """Register a switching function.

        Args:
            function: The switching function.
            max_check_interval: Maximal time between two samples of g.
            convergence: Event time localization threshold.
            max_iterations: Cap on bracket refinement iterations.

        Returns:
            The tracking state created for the function.
        """
        state = SwitchState(
            function=function,
            max_check_interval=max_check_interval,
            convergence=convergence,
            max_iterations=max_iterations,
        )
        self._states.append(state)
        return state

    def clear(self) -> None:
        """Remove every registered switching function."""
        self._states.clear()
        self._first = None

    @property
    def switching_functions(self) -> list[SwitchingFunction]:
        """Return the registered functions in registration order."""
        return [state.function for state in self._states]

    def is_empty(self) -> bool:
        """Return True if no switching function is registered."""
        return not self._states

    def initialize(self, t0: float, y0: NDArray[np.floating]) -> None:
        """Prepare every function for a new integration.

        Args:
            t0: Start time.
            y0: Start state.
        """
        self._first = None
        for state in self._states:
            state.reinitialize_begin(t0, y0)

    def evaluate_step(self, interpolator: StepInterpolator) -> bool:
        """Check a candidate step against every switching function.

        Args:
            interpolator: Candidate step dense output.

        Returns:
            True if the step must be truncated at :attr:`event_time`.
        """
        forward = interpolator.forward
        first: SwitchState | None = None
        for state in self._states:
            if not state.evaluate_step(interpolator):
                continue
            if first is None:
                first = state
            elif forward and state.event_time < first.event_time:
                first = state
            elif not forward and state.event_time > first.event_time:
                first = state
        self._first = first
        return first is not None

    @property
    def event_time(self) -> float:
        """Return the earliest pending event time (NaN if none)."""
        if self._first is None:
            return math.nan
        return self._first.event_time

    def step_accepted(self, t: float, y: NDArray[np.floating]) -> None:
        """Notify every function that a step ending at (t, y) was accepted.

        Args:
            t: Step end time.
            y: Step end state.
        """
        for state in self._states:
            state.step_accepted(t, y)

    def stop(self) -> bool:
        """Return True if an event requested the integration to stop."""
        return any(state.stop() for state in self._states)

    def reset(
        self,
        t: float,
        y: NDArray[np.floating],
        *,
        stop: bool = False,
    ) -> NDArray[np.float64] | None:
        """Apply RESET_STATE decisions and clear fired events.

        Args:
            t: Current time.
            y: Current state.
            stop: Whether an event fired at t requested a stop; replacement
                states are then discarded.

        Returns:
            The replacement state, or None when no event reset the state.
        """
        fired = [state.pending_event for state in self._states]
        new_state: NDArray[np.float64] | None = None
        for state in self._states:
            replacement = state.reset()
            if replacement is not None and not stop:
                check_dimension("reset state", replacement.size, np.size(y))
                new_state = replacement

        if new_state is not None:
            for state, keep_sign in zip(self._states, fired, strict=True):
                state.resample(t, new_state, keep_sign=keep_sign)
        return new_state
