# tests/ivp_engine/test_driver_plumbing.py
"""Driver plumbing: spans, reporting, budgets, failures and diagnostics."""

from __future__ import annotations

import threading

import numpy as np
import pytest

from ivp_engine import (
    ControllerConfig,
    IntegrationFailed,
    Integrator,
    InvalidConfiguration,
    Problem,
    RHSResult,
    RunConfig,
    StepSizeUnderflow,
    ToleranceConfig,
    integrate,
)


def _decay(t: float, y: np.ndarray, params: object) -> np.ndarray:  # noqa: ARG001
    return -y


def _problem() -> Problem:
    return Problem(y0=[1.0, 2.0], rhs=_decay)


# -----------------------------------------------------------------------------
# Input validation
# -----------------------------------------------------------------------------


@pytest.mark.parametrize("t_span", [0.0, -1.0, (1.0, 2.0), (0.0, 1.0, 2.0), np.inf])
def test_invalid_spans_raise(t_span: object) -> None:
    with pytest.raises(InvalidConfiguration, match="t_span"):
        integrate(_problem(), t_span)  # type: ignore[arg-type]


@pytest.mark.parametrize("times", [[0.5, 0.2], [-0.1, 0.5], [0.5, 1.5], [np.nan]])
def test_invalid_report_times_raise(times: list[float]) -> None:
    with pytest.raises(InvalidConfiguration, match="report_times"):
        integrate(_problem(), 1.0, report_times=times)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"y0": []},
        {"y0": [np.nan]},
        {"y0": [1.0], "rhs": _decay, "residual": lambda t, y, yp, p: yp},
        {"y0": [1.0], "rhs": None},
    ],
)
def test_invalid_problems_raise_before_any_work(kwargs: dict[str, object]) -> None:
    calls: list[float] = []
    base: dict[str, object] = {"rhs": lambda t, y, p: calls.append(t) or -y}
    base.update(kwargs)
    with pytest.raises(InvalidConfiguration):
        Integrator(Problem(**base))  # type: ignore[arg-type]
    assert calls == []


def test_wrong_derivative_shape_is_a_value_error() -> None:
    problem = Problem(y0=[1.0, 2.0], rhs=lambda t, y, p: np.zeros(3))
    with pytest.raises(ValueError, match="shape"):
        integrate(problem, 1.0)


# -----------------------------------------------------------------------------
# Reporting
# -----------------------------------------------------------------------------


def test_every_accepted_step_is_reported_by_default() -> None:
    result = integrate(_problem(), 1.0)

    assert result.t[0] == 0.0
    assert result.t[-1] == pytest.approx(1.0)
    assert np.all(np.diff(result.t) > 0.0)
    assert len(result.trajectory) == result.diagnostics.accepted_steps + 1
    assert result.y.shape == (len(result.t), 2)


def test_report_times_are_hit_exactly() -> None:
    times = [0.0, 0.1, 0.1, 0.55, 1.0]
    result = integrate(_problem(), 1.0, report_times=times)

    np.testing.assert_array_equal(result.t, times)
    np.testing.assert_allclose(result.y[:, 0], np.exp(-np.array(times)), rtol=1e-3)


def test_h_init_sets_the_first_step() -> None:
    result = integrate(_problem(), 1.0, config=RunConfig(h_init=0.01))
    assert result.t[1] == pytest.approx(0.01)


def test_h_max_bounds_every_step() -> None:
    cfg = RunConfig(controller=ControllerConfig(h_max=0.05))
    result = integrate(_problem(), 1.0, config=cfg)
    assert np.all(np.diff(result.t) <= 0.05 + 1e-15)


def test_auxiliary_outputs_are_recorded_at_reports() -> None:
    def rhs(t: float, y: np.ndarray, params: object) -> RHSResult:  # noqa: ARG001
        return RHSResult(-y, aux={"energy": float(y @ y), "rate": -y})

    problem = Problem(y0=[1.0, 2.0], rhs=rhs)
    times = np.linspace(0.0, 1.0, 6)

    result = integrate(problem, 1.0, report_times=times, config=RunConfig(record_aux=True))

    aux = result.trajectory.aux
    assert aux["energy"].shape == (6,)
    assert aux["rate"].shape == (6, 2)
    np.testing.assert_allclose(aux["energy"], np.sum(result.y**2, axis=1))
    np.testing.assert_allclose(aux["rate"], -result.y)


def test_dense_history_can_be_disabled() -> None:
    result = integrate(_problem(), 1.0, config=RunConfig(dense_history=False))
    assert result.history is None
    with pytest.raises(RuntimeError, match="dense_history"):
        result.sol(0.5)


def test_sol_outside_the_run_raises() -> None:
    result = integrate(_problem(), 1.0)
    with pytest.raises(LookupError):
        result.sol(1.5)


# -----------------------------------------------------------------------------
# Budgets and failures
# -----------------------------------------------------------------------------


def test_max_steps_failure_keeps_the_prefix() -> None:
    cfg = RunConfig(max_steps=5, controller=ControllerConfig(h_max=0.01))

    result = integrate(_problem(), 1.0, config=cfg)

    assert result.status == "failed"
    assert isinstance(result.error, IntegrationFailed)
    assert "max_steps=5" in result.message
    assert len(result.trajectory) == 6
    assert result.t[-1] == pytest.approx(0.05)
    with pytest.raises(IntegrationFailed):
        result.raise_for_status()


def test_blow_up_ends_with_step_size_underflow() -> None:
    problem = Problem(y0=[1.0], rhs=lambda t, y, p: y**2)
    cfg = RunConfig(
        tolerances=ToleranceConfig(rtol=1e-8, atol=1e-10),
        controller=ControllerConfig(h_min=1e-3),
    )

    result = integrate(problem, 2.0, config=cfg)

    assert result.status == "failed"
    assert isinstance(result.error, StepSizeUnderflow)
    assert result.t[-1] < 1.0
    # The valid prefix follows y = 1 / (1 - t).
    early = result.t < 0.9
    np.testing.assert_allclose(result.y[early, 0], 1.0 / (1.0 - result.t[early]), rtol=1e-5)


def test_repeated_newton_failures_give_up() -> None:
    def poisoned(t: float, y: np.ndarray, params: object) -> np.ndarray:  # noqa: ARG001
        return -y if t == 0.0 else np.full_like(y, np.nan)

    cfg = RunConfig(method="bdf", max_step_failures=3)

    result = integrate(Problem(y0=[1.0], rhs=poisoned), 1.0, config=cfg)

    assert result.status == "failed"
    assert isinstance(result.error, IntegrationFailed)
    assert "consecutive" in result.message
    assert result.diagnostics.failed_attempts == 4
    assert result.diagnostics.newton_failures == 4
    np.testing.assert_array_equal(result.t, [0.0])


# -----------------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------------


def test_cancel_event_before_start() -> None:
    flag = threading.Event()
    flag.set()

    result = integrate(_problem(), 1.0, cancel=flag)

    assert result.status == "cancelled"
    assert not result.success
    np.testing.assert_array_equal(result.t, [0.0])


def test_cancel_callable_stops_between_steps() -> None:
    polls: list[int] = []

    def cancel() -> bool:
        polls.append(1)
        return len(polls) > 3

    result = integrate(_problem(), 1.0, cancel=cancel, config=RunConfig(h_init=0.01))

    assert result.status == "cancelled"
    assert result.diagnostics.accepted_steps == 3
    assert "cancelled" in result.message


def test_cancel_rejects_other_types() -> None:
    with pytest.raises(TypeError, match="cancel"):
        integrate(_problem(), 1.0, cancel=42)


# -----------------------------------------------------------------------------
# Diagnostics and logging
# -----------------------------------------------------------------------------


def test_diagnostics_counters() -> None:
    result = integrate(_problem(), 5.0, config=RunConfig(method="radau"))
    diag = result.diagnostics.as_dict()

    assert set(diag) >= {
        "accepted_steps",
        "rejected_steps",
        "function_evaluations",
        "jacobian_evaluations",
        "lu_decompositions",
        "newton_iterations",
    }
    assert diag["accepted_steps"] > 0
    assert diag["function_evaluations"] > diag["accepted_steps"]
    assert diag["jacobian_evaluations"] >= 1
    assert diag["newton_iterations"] > 0


def test_runs_are_independent() -> None:
    integrator = Integrator(_problem(), RunConfig(method="bdf"))
    first = integrator.run(2.0)
    second = integrator.run(2.0)

    np.testing.assert_array_equal(first.t, second.t)
    np.testing.assert_array_equal(first.y, second.y)
    assert first.diagnostics == second.diagnostics


def test_run_logging(engine_logs: pytest.LogCaptureFixture) -> None:
    integrate(_problem(), 1.0, config=RunConfig(method="rk23"))
    assert "integration start: method=rk23" in engine_logs.text
    assert "integration success" in engine_logs.text


def test_failure_is_logged_as_warning(engine_logs: pytest.LogCaptureFixture) -> None:
    integrate(_problem(), 1.0, config=RunConfig(max_steps=1))
    warnings = [r for r in engine_logs.records if r.levelname == "WARNING"]
    assert warnings
    assert "integration failed" in warnings[0].getMessage()


def test_tolerances_are_validated_against_the_state() -> None:
    cfg = RunConfig(tolerances=ToleranceConfig(atol=(1e-6, 1e-6, 1e-6)))
    with pytest.raises(InvalidConfiguration, match="per-component atol"):
        integrate(_problem(), 1.0, config=cfg)
