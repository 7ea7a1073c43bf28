# src/ode_engine/schemes.py
"""Explicit Runge-Kutta schemes as "compute one step" strategies.

Each scheme is a Butcher tableau plus the interpolator class providing its
dense output. The Stepper owns the control loop; a scheme only knows how to
fill the stage derivatives and the candidate end state of one step, and (for
embedded pairs) the local error vector.

Supported methods (keyword ``method=``):
    - "euler":             explicit Euler (order 1, 1 stage).
    - "midpoint":          explicit midpoint (order 2, 2 stages).
    - "classical-rk":      classical Runge-Kutta (order 4, 4 stages).
    - "dormand-prince-54": Dormand-Prince 5(4) embedded pair (order 5, 7 stages,
                           first-same-as-last).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal, TypeAlias

import numpy as np
from numpy.typing import NDArray

from .interpolators import (
    ClassicalRungeKuttaStepInterpolator,
    DormandPrince54StepInterpolator,
    EulerStepInterpolator,
    MidpointStepInterpolator,
    StepInterpolator,
)

_UNKNOWN_METHOD_ERROR_MSG = "Unknown method: {method}"
_TABLEAU_SHAPE_ERROR_MSG = "Butcher tableau is inconsistent: {detail}"
_NOT_EMBEDDED_ERROR_MSG = "Scheme '{name}' has no embedded error estimator"

MethodName = Literal["euler", "midpoint", "classical-rk", "dormand-prince-54"]

# Writes f(t, y) into out.
RHSInto: TypeAlias = Callable[
    [NDArray[np.floating], float, NDArray[np.floating]],
    None,
]


@dataclass(slots=True, frozen=True)
class ButcherTableau:
    """Coefficients of an explicit Runge-Kutta scheme.

    Attributes:
        c: Stage time fractions, c[0] == 0.
        a: Strictly lower-triangular stage weights; a[i] holds the weights of
            stages 0..i used to build stage i + 1.
        b: Solution weights.
        error: Error weights (b - b_hat) of an embedded pair, or None.
        fsal: Whether the last stage is evaluated at the step end state.
    """

    c: tuple[float, ...]
    a: tuple[tuple[float, ...], ...]
    b: tuple[float, ...]
    error: tuple[float, ...] | None = None
    fsal: bool = False

    def __post_init__(self) -> None:
        """Validate tableau dimensions.

        Raises:
            ValueError: If the coefficient arrays are inconsistent.
        """
        s = len(self.c)
        if len(self.b) != s or len(self.a) != s - 1:
            raise ValueError(
                _TABLEAU_SHAPE_ERROR_MSG.format(detail=f"{s} stages, b/a mismatch")
            )
        for i, row in enumerate(self.a):
            if len(row) != i + 1:
                raise ValueError(
                    _TABLEAU_SHAPE_ERROR_MSG.format(detail=f"row {i} has {len(row)}")
                )
        if self.error is not None and len(self.error) != s:
            raise ValueError(_TABLEAU_SHAPE_ERROR_MSG.format(detail="error weights"))

    @property
    def stages(self) -> int:
        """Return the number of stages."""
        return len(self.c)


@dataclass(slots=True, frozen=True)
class RungeKuttaScheme:
    """One explicit Runge-Kutta scheme.

    Attributes:
        name: Method name.
        order: Order of the propagated solution.
        tableau: Butcher tableau.
        interpolator: Interpolator class providing dense output.
    """

    name: str
    order: int
    tableau: ButcherTableau
    interpolator: type[StepInterpolator]

    @property
    def stages(self) -> int:
        """Return the number of stages."""
        return self.tableau.stages

    @property
    def embedded(self) -> bool:
        """Return True if the scheme provides a local error estimate."""
        return self.tableau.error is not None

    @property
    def fsal(self) -> bool:
        """Return True if the last stage can seed the next step."""
        return self.tableau.fsal

    def new_interpolator(self) -> StepInterpolator:
        """Return a fresh working interpolator for this scheme."""
        return self.interpolator()

    def compute_step(
        self,
        rhs_into: RHSInto,
        *,
        t: float,
        y: NDArray[np.floating],
        h: float,
        k: NDArray[np.floating],
        y_out: NDArray[np.floating],
        y_tmp: NDArray[np.floating],
        first_stage_ready: bool = False,
    ) -> None:
        """Fill the stage derivatives and the candidate end state.

        Args:
            rhs_into: Derivative evaluator writing f(t, y) into its first argument.
            t: Step start time.
            y: Step start state.
            h: Signed step size.
            k: Stage buffer of shape (stages, n), written in place.
            y_out: Candidate end state, written in place.
            y_tmp: Scratch state buffer.
            first_stage_ready: If True, k[0] already holds f(t, y).
        """
        tab = self.tableau
        if not first_stage_ready:
            rhs_into(k[0], t, y)

        for i in range(1, tab.stages):
            np.copyto(y_tmp, y)
            for j, a_ij in enumerate(tab.a[i - 1]):
                if a_ij != 0.0:
                    y_tmp += (h * a_ij) * k[j]
            rhs_into(k[i], t + tab.c[i] * h, y_tmp)

        np.copyto(y_out, y)
        for j, b_j in enumerate(tab.b):
            if b_j != 0.0:
                y_out += (h * b_j) * k[j]

    def error_into(
        self,
        k: NDArray[np.floating],
        h: float,
        out: NDArray[np.floating],
    ) -> None:
        """Write the local error vector h * sum(e_j k_j) into out.

        Args:
            k: Stage derivatives.
            h: Signed step size.
            out: Output buffer.

        Raises:
            RuntimeError: If the scheme is not an embedded pair.
        """
        if self.tableau.error is None:
            raise RuntimeError(_NOT_EMBEDDED_ERROR_MSG.format(name=self.name))
        out.fill(0.0)
        for j, e_j in enumerate(self.tableau.error):
            if e_j != 0.0:
                out += e_j * k[j]
        out *= h


# =============================================================================
# Tableaux
# =============================================================================

EULER = RungeKuttaScheme(
    name="euler",
    order=1,
    tableau=ButcherTableau(c=(0.0,), a=(), b=(1.0,)),
    interpolator=EulerStepInterpolator,
)

MIDPOINT = RungeKuttaScheme(
    name="midpoint",
    order=2,
    tableau=ButcherTableau(c=(0.0, 0.5), a=((0.5,),), b=(0.0, 1.0)),
    interpolator=MidpointStepInterpolator,
)

CLASSICAL_RK = RungeKuttaScheme(
    name="classical-rk",
    order=4,
    tableau=ButcherTableau(
        c=(0.0, 0.5, 0.5, 1.0),
        a=((0.5,), (0.0, 0.5), (0.0, 0.0, 1.0)),
        b=(1.0 / 6.0, 1.0 / 3.0, 1.0 / 3.0, 1.0 / 6.0),
    ),
    interpolator=ClassicalRungeKuttaStepInterpolator,
)

_DP54_B = (
    35.0 / 384.0,
    0.0,
    500.0 / 1113.0,
    125.0 / 192.0,
    -2187.0 / 6784.0,
    11.0 / 84.0,
    0.0,
)

DORMAND_PRINCE_54 = RungeKuttaScheme(
    name="dormand-prince-54",
    order=5,
    tableau=ButcherTableau(
        c=(0.0, 1.0 / 5.0, 3.0 / 10.0, 4.0 / 5.0, 8.0 / 9.0, 1.0, 1.0),
        a=(
            (1.0 / 5.0,),
            (3.0 / 40.0, 9.0 / 40.0),
            (44.0 / 45.0, -56.0 / 15.0, 32.0 / 9.0),
            (19372.0 / 6561.0, -25360.0 / 2187.0, 64448.0 / 6561.0, -212.0 / 729.0),
            (
                9017.0 / 3168.0,
                -355.0 / 33.0,
                46732.0 / 5247.0,
                49.0 / 176.0,
                -5103.0 / 18656.0,
            ),
            _DP54_B[:6],
        ),
        b=_DP54_B,
        error=(
            71.0 / 57600.0,
            0.0,
            -71.0 / 16695.0,
            71.0 / 1920.0,
            -17253.0 / 339200.0,
            22.0 / 525.0,
            -1.0 / 40.0,
        ),
        fsal=True,
    ),
    interpolator=DormandPrince54StepInterpolator,
)

SCHEMES: dict[str, RungeKuttaScheme] = {
    scheme.name: scheme for scheme in (EULER, MIDPOINT, CLASSICAL_RK, DORMAND_PRINCE_54)
}


def normalize_method(method: str) -> MethodName:
    """Normalize and validate a method string.

    Args:
        method: User-provided method string.

    Raises:
        ValueError: If method is unknown.

    Returns:
        Normalized method literal.
    """
    method_norm = str(method).strip().lower()
    if method_norm not in SCHEMES:
        raise ValueError(_UNKNOWN_METHOD_ERROR_MSG.format(method=method))
    return method_norm  # type: ignore[return-value]


def get_scheme(method: str) -> RungeKuttaScheme:
    """Return the registered scheme for a method name.

    Args:
        method: Method name (case-insensitive).

    Returns:
        The scheme.
    """
    return SCHEMES[normalize_method(method)]
