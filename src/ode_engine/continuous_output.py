# src/ode_engine/continuous_output.py
"""Continuous output over a whole integration.

:class:`ContinuousOutputModel` is a step handler that keeps a frozen copy of
every step interpolator, so the solution can be queried at any time once the
integration is over (or while it runs), in any order.

Lookup strategy:
    - the interval used by the previous query is tried first (sequential
      queries cost O(1));
    - otherwise a binary search over the stored step end times is used.
Queries outside the recorded range are delegated to the first or last step
and extrapolate its polynomial.
"""

from __future__ import annotations

import bisect
import math
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

from .errors import ContinuityError, check_dimension

if TYPE_CHECKING:
    from .interpolators import StepInterpolator

_GAP_TOLERANCE = 1.0e-3

_EMPTY_ERROR_MSG = "continuous output model holds no step"
_DIRECTION_ERROR_MSG = "propagation direction mismatch (stored forward={stored}, got {got})"
_GAP_ERROR_MSG = "hole between time ranges: stored range ends at {end!r}, step starts at {start!r}"


class ContinuousOutputModel:
    """Step handler storing every step for random-time access."""

    def __init__(self) -> None:
        """Create an empty model."""
        self._steps: list[StepInterpolator] = []
        self._keys: list[float] = []
        self._index = 0
        self.forward = True
        self.initial_time = math.nan
        self.final_time = math.nan
        self.interpolated_time = math.nan

    # ------------------------------------------------------------------
    # StepHandler contract
    # ------------------------------------------------------------------

    def requires_dense_output(self) -> bool:
        """Return True: interior queries are the purpose of this model."""
        return True

    def reset(self) -> None:
        """Drop every stored step."""
        self._steps.clear()
        self._keys.clear()
        self._index = 0
        self.forward = True
        self.initial_time = math.nan
        self.final_time = math.nan
        self.interpolated_time = math.nan

    def handle_step(self, interpolator: StepInterpolator, is_last: bool) -> None:
        """Store a frozen copy of an accepted step.

        Args:
            interpolator: Working interpolator of the accepted step.
            is_last: Whether this is the last step (the query cursor is moved
                to the final time).
        """
        self._push(interpolator.copy())
        if is_last:
            self.set_interpolated_time(self.final_time)

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def append(self, other: ContinuousOutputModel) -> None:
        """Append the steps of another model recorded after this one.

        Args:
            other: Model whose range starts where this one ends.
        """
        for step in other:
            self._push(step.copy())

    def _push(self, step: StepInterpolator) -> None:
        """Append one frozen step after validating continuity.

        Raises:
            ContinuityError: On direction mismatch or a time gap.
        """
        if not self._steps:
            self.forward = step.forward
            self.initial_time = step.previous_time
        else:
            last = self._steps[-1]
            check_dimension("step state", step.dimension, last.dimension)
            if step.forward != self.forward:
                raise ContinuityError(
                    _DIRECTION_ERROR_MSG.format(stored=self.forward, got=step.forward)
                )
            gap = abs(step.previous_time - last.current_time)
            if gap > _GAP_TOLERANCE * abs(last.h):
                raise ContinuityError(
                    _GAP_ERROR_MSG.format(end=last.current_time, start=step.previous_time)
                )

        self._steps.append(step)
        self._keys.append(self._key(step.current_time))
        self.final_time = step.current_time

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        """Return the number of stored steps."""
        return len(self._steps)

    def __iter__(self) -> Iterator[StepInterpolator]:
        """Iterate over the stored steps in integration order."""
        return iter(self._steps)

    @property
    def dimension(self) -> int:
        """Return the state dimension (0 when empty)."""
        return self._steps[0].dimension if self._steps else 0

    def set_interpolated_time(self, t: float) -> None:
        """Move the query cursor to t.

        Args:
            t: Query time, anywhere (outside the range extrapolates).

        Raises:
            RuntimeError: If the model is empty.
        """
        if not self._steps:
            raise RuntimeError(_EMPTY_ERROR_MSG)
        self._index = self._locate(float(t))
        self._steps[self._index].set_interpolated_time(t)
        self.interpolated_time = float(t)

    def get_interpolated_state(self) -> NDArray[np.float64]:
        """Return the state at the last set interpolated time.

        Raises:
            RuntimeError: If the model is empty.

        Returns:
            Copy of the interpolated state.
        """
        if not self._steps:
            raise RuntimeError(_EMPTY_ERROR_MSG)
        return self._steps[self._index].get_interpolated_state()

    def sample(self, times: Iterable[float]) -> NDArray[np.float64]:
        """Return interpolated states at several times.

        Args:
            times: Query times, in any order.

        Returns:
            Array of shape (len(times), dimension).
        """
        rows = []
        for t in times:
            self.set_interpolated_time(t)
            rows.append(self.get_interpolated_state())
        return np.asarray(rows, dtype=np.float64).reshape(len(rows), self.dimension)

    def _key(self, t: float) -> float:
        return t if self.forward else -t

    def _contains(self, index: int, key: float) -> bool:
        step = self._steps[index]
        return self._key(step.previous_time) <= key <= self._keys[index]

    def _locate(self, t: float) -> int:
        """Return the index of the step containing t (or the nearest end)."""
        key = self._key(t)
        if self._contains(self._index, key):
            return self._index
        nxt = self._index + 1
        if nxt < len(self._steps) and self._contains(nxt, key):
            return nxt
        index = bisect.bisect_left(self._keys, key)
        return min(index, len(self._steps) - 1)
