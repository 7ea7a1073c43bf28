# ode_engine/examples/bouncing_ball.py
"""Bouncing ball as a canonical event example using Stepper.integrate().

This example demonstrates switching functions:

- g(t, y) = height signals an impact when it changes sign.
- The event handler returns ResetState with the rebound velocity, so the
  integration restarts from the impact with a new state.
- The handler stops the run once the rebound speed falls below a threshold.

The trajectory is recorded with a StepNormalizer on a regular output grid and
the impact times are compared with their closed form.

This script saves plots to disk (no interactive windows).
"""

from __future__ import annotations

import math
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from ode_engine import EventAction, ResetState, Stepper, StepNormalizer

_OUTPUT_DIR = Path(__file__).resolve().parent / "output" / "bouncing_ball"

GRAVITY = 9.81


class TrajectoryRecorder:
    """Fixed-step handler storing sampled times and states."""

    def __init__(self) -> None:
        self.times: list[float] = []
        self.states: list[np.ndarray] = []

    def handle_step(self, t: float, y: np.ndarray, is_last: bool) -> None:  # noqa: ARG002
        self.times.append(t)
        self.states.append(np.array(y))


class Floor:
    """Switching function for impacts with an inelastic floor.

    Attributes:
        restitution: Ratio of rebound speed to impact speed.
        min_speed: Rebound speed below which the run stops.
        impacts: Recorded impact times.
    """

    def __init__(self, restitution: float, min_speed: float) -> None:
        self.restitution = restitution
        self.min_speed = min_speed
        self.impacts: list[float] = []

    def value(self, t: float, y: np.ndarray) -> float:  # noqa: ARG002
        return float(y[0])

    def on_event(self, t: float, y: np.ndarray) -> ResetState | EventAction:
        self.impacts.append(t)
        rebound = -self.restitution * y[1]
        if rebound < self.min_speed:
            return EventAction.STOP
        return ResetState(np.array([0.0, rebound]))


def ball_rhs(t: float, y: np.ndarray) -> np.ndarray:  # noqa: ARG001
    """Free fall: y = (height, velocity)."""
    return np.array([y[1], -GRAVITY])


def analytic_impacts(h0: float, restitution: float, n: int) -> np.ndarray:
    """Return the first n impact times of a ball dropped from rest.

    Args:
        h0: Initial height.
        restitution: Rebound speed ratio.
        n: Number of impacts.

    Returns:
        Impact times, shape (n,).
    """
    t_first = math.sqrt(2.0 * h0 / GRAVITY)
    v = GRAVITY * t_first
    times = [t_first]
    for _ in range(n - 1):
        v *= restitution
        times.append(times[-1] + 2.0 * v / GRAVITY)
    return np.asarray(times)


def save_trajectory_plot(
    recorder: TrajectoryRecorder,
    impacts: list[float],
    *,
    out_path: Path,
) -> None:
    """Save the height history with the located impacts marked.

    Args:
        recorder: Sampled trajectory.
        impacts: Located impact times.
        out_path: Output path for the saved figure.
    """
    time = np.asarray(recorder.times)
    height = np.asarray(recorder.states)[:, 0]

    plt.figure(figsize=(8, 5))
    plt.plot(time, height, label="height")
    for t in impacts:
        plt.axvline(t, color="grey", linewidth=0.5)
    plt.grid(visible=True)
    plt.legend()
    plt.title("Bouncing ball (Dormand-Prince 5(4), impacts as state resets)")
    plt.xlabel("Time")
    plt.ylabel("Height")
    plt.tight_layout()

    out_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(out_path, dpi=150)
    plt.close()


def main() -> None:
    """Drop a ball, bounce it until it nearly rests, and save the trajectory."""
    h0 = 2.0
    restitution = 0.8

    floor = Floor(restitution, min_speed=0.5)
    stepper = Stepper.adaptive(atol=1e-10, rtol=1e-10, dt_max=0.05)
    stepper.add_switching_function(floor, 0.02, 1e-12)

    recorder = TrajectoryRecorder()
    stepper.set_step_handler(StepNormalizer(0.01, recorder))
    stepper.integrate(ball_rhs, 0.0, [h0, 0.0], 20.0)

    expected = analytic_impacts(h0, restitution, len(floor.impacts))
    drift = float(np.max(np.abs(np.asarray(floor.impacts) - expected)))
    print(f"{len(floor.impacts)} impacts, max impact time error {drift:.3e}")
    print(f"stopped at t={stepper.stop_time:.6f} after {stepper.evaluations} evaluations")

    save_trajectory_plot(recorder, floor.impacts, out_path=_OUTPUT_DIR / "height.png")


if __name__ == "__main__":
    main()
