# ivp_engine/examples/bouncing_ball.py
"""Bouncing ball: root events with state resets.

This example demonstrates the event API:

- root_fn returns the ball height; event_direction=-1 only reacts to falling
  crossings, so a reset that lands exactly on the floor does not re-trigger.
- event_reset reverses and damps the velocity. The trajectory carries both
  sides of every jump as two samples at the same time.
- A second root (apex detection, no reset) is reported but leaves the state
  untouched.

This script saves plots to disk (no interactive windows).
"""

from __future__ import annotations

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from ivp_engine import Problem, RunConfig, ToleranceConfig, integrate

_OUTPUT_DIR = Path(__file__).resolve().parent / "output" / "bouncing_ball"

GRAVITY = 9.81


def fall(
    t: float,  # noqa: ARG001 (no explicit time dependence here)
    y: np.ndarray,
    params: dict[str, float],  # noqa: ARG001
) -> np.ndarray:
    """Free fall: y = (height, velocity)."""
    return np.array([y[1], -GRAVITY])


def roots(
    t: float,  # noqa: ARG001
    y: np.ndarray,
    params: dict[str, float],  # noqa: ARG001
) -> list[float]:
    """Root 0: height (floor contact). Root 1: velocity (apex)."""
    return [y[0], y[1]]


def bounce(t: float, y: np.ndarray, params: dict[str, float]) -> np.ndarray:  # noqa: ARG001
    """Reflect the velocity with a restitution coefficient; leave the apex alone."""
    if y[0] <= 0.0 and y[1] < 0.0:
        return np.array([0.0, -params["restitution"] * y[1]])
    return y.copy()


def save_plot(time: np.ndarray, states: np.ndarray, contacts: list[float], out_path: Path) -> None:
    """Save height and velocity trajectories with contact markers.

    Args:
        time: Sample times, shape (m,).
        states: Sample states, shape (m, 2).
        contacts: Floor-contact times.
        out_path: Output path for the saved figure.
    """
    fig, (ax_h, ax_v) = plt.subplots(2, 1, figsize=(8, 6), sharex=True)
    ax_h.plot(time, states[:, 0], label="height")
    ax_h.scatter(contacts, np.zeros(len(contacts)), color="k", s=12, label="contact")
    ax_h.set_ylabel("Height [m]")
    ax_h.grid(visible=True)
    ax_h.legend()

    ax_v.plot(time, states[:, 1], label="velocity")
    ax_v.set_xlabel("Time [s]")
    ax_v.set_ylabel("Velocity [m/s]")
    ax_v.grid(visible=True)

    fig.tight_layout()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=150)
    plt.close(fig)


def main() -> None:
    """Integrate a few bounces and compare contact times with the closed form.

    Files are written to: examples/output/bouncing_ball/
    """
    restitution = 0.8
    problem = Problem(
        y0=[1.0, 0.0],
        rhs=fall,
        params={"restitution": restitution},
        root_fn=roots,
        event_direction=[-1, -1],
        event_reset=bounce,
    )
    config = RunConfig(method="rk45", tolerances=ToleranceConfig(rtol=1e-9, atol=1e-12))

    result = integrate(problem, 3.0, config=config)
    result.raise_for_status()

    contacts = [e.time for e in result.events if e.index == 0]
    apexes = [e.time for e in result.events if e.index == 1]

    # Closed form: first contact at sqrt(2 h / g), then flights of 2 v_k / g.
    t_first = np.sqrt(2.0 / GRAVITY)
    v = GRAVITY * t_first
    expected = [t_first]
    while len(expected) < len(contacts):
        v *= restitution
        expected.append(expected[-1] + 2.0 * v / GRAVITY)

    print(f"{len(contacts)} contacts, {len(apexes)} apexes")  # noqa: T201
    for k, (got, ref) in enumerate(zip(contacts, expected, strict=True)):
        print(f"  contact {k}: t={got:.9f}  closed form={ref:.9f}  diff={got - ref:+.2e}")  # noqa: T201
    print(result.diagnostics.as_dict())  # noqa: T201

    save_plot(result.t, result.y, contacts, _OUTPUT_DIR / "bouncing_ball.png")


if __name__ == "__main__":
    main()
