# src/ode_engine/system.py
"""Derivative systems y' = f(t, y) consumed by the stepper.

A derivative system is anything exposing a fixed ``dimension`` and a
``compute_derivatives(t, y)`` method returning y'. Plain callables ``f(t, y)``
are accepted too and wrapped in :class:`FunctionSystem`.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, TypeAlias, runtime_checkable

import numpy as np
from numpy.typing import NDArray

RHSFunction: TypeAlias = Callable[[float, NDArray[np.floating]], NDArray[np.floating]]

_DIMENSION_ERROR_MSG = "dimension must be a positive integer, got {dimension!r}"
_NOT_A_SYSTEM_ERROR_MSG = (
    "system must provide compute_derivatives(t, y) and dimension, or be a callable "
    "f(t, y); got {kind}"
)


@runtime_checkable
class DerivativeSystem(Protocol):
    """First-order differential equations of fixed dimension."""

    @property
    def dimension(self) -> int:
        """Return the number of state components."""
        ...

    def compute_derivatives(
        self,
        t: float,
        y: NDArray[np.floating],
    ) -> NDArray[np.floating]:
        """Return y' at (t, y); must be a pure function of its inputs."""
        ...


@dataclass(slots=True, frozen=True)
class FunctionSystem:
    """Adapter turning a callable ``f(t, y)`` into a DerivativeSystem.

    Attributes:
        rhs: Callable returning the derivative array.
        dimension: Number of state components.
    """

    rhs: RHSFunction
    dimension: int

    def __post_init__(self) -> None:
        """Validate the dimension.

        Raises:
            ValueError: If dimension is not a positive integer.
        """
        if int(self.dimension) <= 0:
            raise ValueError(_DIMENSION_ERROR_MSG.format(dimension=self.dimension))

    def compute_derivatives(
        self,
        t: float,
        y: NDArray[np.floating],
    ) -> NDArray[np.floating]:
        """Evaluate the wrapped callable.

        Args:
            t: Time.
            y: State.

        Returns:
            Derivative array.
        """
        return self.rhs(t, y)


def as_derivative_system(
    system: DerivativeSystem | RHSFunction,
    dimension: int,
) -> DerivativeSystem:
    """Normalize a system argument to the DerivativeSystem protocol.

    Args:
        system: A DerivativeSystem, or a plain callable f(t, y).
        dimension: Dimension used when wrapping a plain callable.

    Raises:
        TypeError: If system is neither a DerivativeSystem nor callable.

    Returns:
        A DerivativeSystem instance.
    """
    if isinstance(system, DerivativeSystem):
        return system
    if callable(system):
        return FunctionSystem(rhs=system, dimension=int(dimension))
    raise TypeError(_NOT_A_SYSTEM_ERROR_MSG.format(kind=type(system).__name__))
