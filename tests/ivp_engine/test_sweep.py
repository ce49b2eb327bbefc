# tests/ivp_engine/test_sweep.py
"""Parameter sweeps: ordering, independence and executor selection."""

from __future__ import annotations

import numpy as np
import pytest

from ivp_engine import InvalidConfiguration, Problem, RunConfig, ToleranceConfig, integrate
from ivp_engine.sweep import run_sweep

RATES = [0.5, 1.0, 2.0, 4.0]
CONFIG = RunConfig(tolerances=ToleranceConfig(rtol=1e-8, atol=1e-10))


def _growth(t: float, y: np.ndarray, params: dict[str, float]) -> np.ndarray:  # noqa: ARG001
    return params["r"] * y * (1.0 - y)


def _template() -> Problem:
    return Problem(y0=[0.1], rhs=_growth, params={"r": 0.0})


@pytest.mark.parametrize("executor", ["serial", "thread"])
def test_results_follow_input_order(executor: str) -> None:
    params = [{"r": r} for r in RATES]

    results = run_sweep(
        _template(), params, 3.0, report_times=[3.0], config=CONFIG, executor=executor  # type: ignore[arg-type]
    )

    assert len(results) == len(RATES)
    for r, result in zip(RATES, results, strict=True):
        exact = 1.0 / (1.0 + 9.0 * np.exp(-r * 3.0))
        assert result.success
        assert result.y[-1, 0] == pytest.approx(exact, abs=1e-6)


def test_sweep_matches_individual_runs() -> None:
    params = [{"r": r} for r in RATES]
    swept = run_sweep(_template(), params, 2.0, config=CONFIG, max_workers=2)

    for p, result in zip(params, swept, strict=True):
        single = integrate(_template().with_params(p), 2.0, config=CONFIG)
        np.testing.assert_array_equal(result.t, single.t)
        np.testing.assert_array_equal(result.y, single.y)
        assert result.diagnostics == single.diagnostics


def test_runs_do_not_share_state() -> None:
    params = [{"r": 1.0}, {"r": 1.0}]
    first, second = run_sweep(_template(), params, 1.0, config=CONFIG)

    assert first.history is not second.history
    assert first.diagnostics is not second.diagnostics
    np.testing.assert_array_equal(first.y, second.y)


@pytest.mark.slow
def test_process_executor() -> None:
    params = [{"r": r} for r in RATES[:2]]
    results = run_sweep(
        _template(), params, 1.0, report_times=[1.0], config=CONFIG, executor="process"
    )
    for r, result in zip(RATES[:2], results, strict=True):
        assert result.y[-1, 0] == pytest.approx(1.0 / (1.0 + 9.0 * np.exp(-r)), abs=1e-6)


def test_failed_runs_are_returned_not_raised(engine_logs: pytest.LogCaptureFixture) -> None:
    problem = Problem(y0=[1.0], rhs=lambda t, y, p: p["r"] * y**2, params={"r": 0.0})
    params = [{"r": 0.0}, {"r": 1.0}]
    cfg = RunConfig(max_steps=200)

    results = run_sweep(problem, params, 2.0, config=cfg, executor="serial")

    assert [r.status for r in results] == ["success", "failed"]
    assert "1 failed run(s) of 2" in engine_logs.text


@pytest.mark.parametrize(
    ("kwargs", "match"),
    [
        ({"executor": "gpu"}, "executor"),
        ({"max_workers": 0}, "max_workers"),
        ({"config": RunConfig(method="radau"), "max_workers": 2}, None),
    ],
)
def test_invalid_sweeps_raise_once(kwargs: dict[str, object], match: str | None) -> None:
    problem = _template()
    if match is None:
        # Radau needs the explicit form; the shared problem is checked up front.
        problem = Problem(y0=[1.0], yp0=[0.0], residual=lambda t, y, yp, p: yp + y)
    with pytest.raises(InvalidConfiguration, match=match):
        run_sweep(problem, [{"r": 1.0}], 1.0, **kwargs)  # type: ignore[arg-type]
