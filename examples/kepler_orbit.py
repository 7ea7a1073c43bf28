# ode_engine/examples/kepler_orbit.py
"""Eccentric Kepler orbit comparing fixed-step and adaptive integration.

This example demonstrates:

- classical Runge-Kutta with a fixed step, which loses accuracy near perihelion
  of a highly eccentric orbit,
- Dormand-Prince 5(4) with error control, which shortens its steps there,
- ContinuousOutputModel queries at arbitrary times, saved to and reloaded
  from HDF5.

Errors are measured against the closed-form solution of Kepler's equation.

This script saves plots and the dense output to disk (no interactive windows).
"""

from __future__ import annotations

import math
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
from scipy.optimize import brentq

from ode_engine import (
    ContinuousOutputModel,
    Stepper,
    load_continuous_output,
    save_continuous_output,
)

_OUTPUT_DIR = Path(__file__).resolve().parent / "output" / "kepler"


def kepler_rhs(t: float, y: np.ndarray) -> np.ndarray:  # noqa: ARG001
    """Two-body problem with unit gravitational parameter: y = (x, y, vx, vy)."""
    r2 = y[0] * y[0] + y[1] * y[1]
    inv_r3 = 1.0 / (r2 * math.sqrt(r2))
    return np.array([y[2], y[3], -y[0] * inv_r3, -y[1] * inv_r3])


def kepler_initial_state(e: float) -> np.ndarray:
    """Return the state at perihelion for eccentricity e."""
    return np.array([1.0 - e, 0.0, 0.0, math.sqrt((1.0 + e) / (1.0 - e))])


def kepler_position(t: float, e: float) -> np.ndarray:
    """Return the exact position at time t.

    Args:
        t: Time since perihelion.
        e: Eccentricity.

    Returns:
        Position (x, y).
    """
    anomaly = brentq(lambda u: u - e * math.sin(u) - t, t - e - 1.0, t + e + 1.0, xtol=1e-15)
    return np.array(
        [math.cos(anomaly) - e, math.sqrt(1.0 - e * e) * math.sin(anomaly)]
    )


def position_errors(model: ContinuousOutputModel, times: np.ndarray, e: float) -> np.ndarray:
    """Return the position error of a dense output model at each time."""
    states = model.sample(times)
    exact = np.array([kepler_position(float(t), e) for t in times])
    return np.linalg.norm(states[:, :2] - exact, axis=1)


def _dense_run(stepper: Stepper, y0: np.ndarray, t_final: float) -> ContinuousOutputModel:
    model = ContinuousOutputModel()
    stepper.set_step_handler(model)
    stepper.integrate(kepler_rhs, 0.0, y0, t_final)
    return model


def save_error_plot(
    times: np.ndarray,
    errors: dict[str, np.ndarray],
    *,
    out_path: Path,
) -> None:
    """Save position error histories on a log scale.

    Args:
        times: Query times.
        errors: Error history per label.
        out_path: Output path for the saved figure.
    """
    plt.figure(figsize=(8, 5))
    for label, err in errors.items():
        plt.semilogy(times, np.maximum(err, 1e-16), label=label)
    plt.grid(visible=True)
    plt.legend()
    plt.title("Kepler orbit, e = 0.9: dense output position error")
    plt.xlabel("Time")
    plt.ylabel("|position error|")
    plt.tight_layout()

    out_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(out_path, dpi=150)
    plt.close()


def main() -> None:
    """Integrate two orbits with each scheme and save error plots and dense output."""
    e = 0.9
    t_final = 4.0 * math.pi
    y0 = kepler_initial_state(e)
    times = np.linspace(0.0, t_final, 2001)

    fixed = Stepper.fixed_step("classical-rk", 0.006)
    fixed_model = _dense_run(fixed, y0, t_final)

    adaptive = Stepper.adaptive(atol=1e-10, rtol=1e-10)
    adaptive_model = _dense_run(adaptive, y0, t_final)

    errors = {
        f"classical-rk, {fixed.accepted_steps} steps": position_errors(fixed_model, times, e),
        f"dormand-prince-54, {adaptive.accepted_steps} steps": position_errors(
            adaptive_model, times, e
        ),
    }
    for label, err in errors.items():
        print(f"{label}: max position error {float(np.max(err)):.3e}")

    save_error_plot(times, errors, out_path=_OUTPUT_DIR / "position_error.png")

    dense_path = _OUTPUT_DIR / "dormand_prince_orbit.h5"
    save_continuous_output(adaptive_model, dense_path)
    reloaded = load_continuous_output(dense_path)
    same = np.array_equal(reloaded.sample(times), adaptive_model.sample(times))
    print(f"dense output saved to {dense_path} (reload identical: {same})")


if __name__ == "__main__":
    main()
