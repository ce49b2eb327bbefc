# tests/ivp_engine/test_errors_config.py
"""Tests for the error taxonomy and the validated configuration layer."""

from __future__ import annotations

import numpy as np
import pytest

from ivp_engine.config import EngineConfig
from ivp_engine.controller import ControllerConfig, ToleranceConfig
from ivp_engine.driver import RunConfig
from ivp_engine.errors import (
    ConvergenceFailure,
    HistoryUnavailable,
    IntegrationFailed,
    InvalidBoundaryCondition,
    InvalidConfiguration,
    IvpEngineError,
    SingularJacobian,
    StepRejected,
    StepSizeUnderflow,
    raise_history_before_start,
    raise_history_in_future,
    raise_invalid_configuration,
)
from ivp_engine.flux import FluxConfig
from ivp_engine.methods import BDF, ExplicitRK, Radau, resolve_method

# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    "exc_type",
    [
        StepRejected,
        ConvergenceFailure,
        SingularJacobian,
        StepSizeUnderflow,
        IntegrationFailed,
        HistoryUnavailable,
        InvalidConfiguration,
        InvalidBoundaryCondition,
    ],
)
def test_all_errors_share_the_engine_base(exc_type: type[Exception]) -> None:
    assert issubclass(exc_type, IvpEngineError)


def test_error_payloads() -> None:
    rejected = StepRejected(2.5, 0.01)
    assert rejected.error_norm == 2.5
    assert rejected.h_next == 0.01

    failure = ConvergenceFailure(6, 3.0)
    assert failure.iterations == 6
    assert "6 iteration" in str(failure)

    underflow = StepSizeUnderflow(1.0, 1e-20, 1e-15)
    assert underflow.time == 1.0
    assert underflow.h_min == 1e-15

    failed = IntegrationFailed("gave up", time=2.0)
    assert failed.time == 2.0


def test_invalid_configuration_is_a_value_error() -> None:
    with pytest.raises(ValueError, match=r"Field: atol\. Detail: negative"):
        raise_invalid_configuration(field="atol", detail="negative")


def test_history_helpers_carry_the_requested_time() -> None:
    with pytest.raises(HistoryUnavailable) as before:
        raise_history_before_start(t=-1.0, t0=0.0)
    assert before.value.time == -1.0

    with pytest.raises(LookupError, match="beyond the last accepted time"):
        raise_history_in_future(t=3.0, t_last=2.0)


# -----------------------------------------------------------------------------
# Native configuration records
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    "kwargs",
    [{"rtol": 0.0}, {"rtol": np.nan}, {"atol": -1.0}, {"atol": (1e-6, 0.0)}],
)
def test_tolerance_config_rejects_bad_values(kwargs: dict[str, object]) -> None:
    with pytest.raises(InvalidConfiguration):
        ToleranceConfig(**kwargs)  # type: ignore[arg-type]


def test_tolerance_config_warns_below_rounding_floor() -> None:
    with pytest.warns(RuntimeWarning, match="below 100\\*eps"):
        ToleranceConfig(rtol=1e-16)


def test_per_component_atol() -> None:
    tol = ToleranceConfig(atol=[1e-6, 1e-8])
    assert tol.atol == (1e-6, 1e-8)
    np.testing.assert_allclose(tol.atol_array(2), [1e-6, 1e-8])
    with pytest.raises(InvalidConfiguration, match="per-component atol"):
        tol.atol_array(3)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"h_min": 1.0, "h_max": 0.5},
        {"fac_min": 1.5},
        {"fac_max": 0.9},
        {"safety": 1.0},
        {"pi_beta": 0.5},
    ],
)
def test_controller_config_rejects_bad_values(kwargs: dict[str, float]) -> None:
    with pytest.raises(InvalidConfiguration):
        ControllerConfig(**kwargs)


@pytest.mark.parametrize(
    "kwargs",
    [{"max_steps": 0}, {"max_step_failures": 0}, {"max_newton_iter": 1.5}, {"h_init": -1.0}],
)
def test_run_config_rejects_bad_values(kwargs: dict[str, float]) -> None:
    with pytest.raises(InvalidConfiguration):
        RunConfig(**kwargs)  # type: ignore[arg-type]


# -----------------------------------------------------------------------------
# Method descriptors
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("rk45", ExplicitRK),
        ("dopri5", ExplicitRK),
        ("RK23", ExplicitRK),
        ("bdf", BDF),
        ("radau", Radau),
    ],
)
def test_resolve_method_aliases(name: str, expected: type) -> None:
    assert isinstance(resolve_method(name), expected)


def test_resolve_method_passes_descriptors_through() -> None:
    descriptor = BDF(max_order=3)
    assert resolve_method(descriptor) is descriptor
    assert resolve_method("bdf", bdf_max_order=2).max_order == 2  # type: ignore[union-attr]


def test_unknown_method_and_bad_orders_raise() -> None:
    with pytest.raises(InvalidConfiguration, match="Unknown method"):
        resolve_method("euler")
    with pytest.raises(InvalidConfiguration):
        BDF(max_order=6)
    with pytest.raises(InvalidConfiguration):
        BDF(max_order=3, fixed_order=4)
    with pytest.raises(InvalidConfiguration):
        Radau(stages=5)


def test_tableaux_are_consistent() -> None:
    for name in ("rk45", "rk23"):
        descriptor = resolve_method(name)
        assert isinstance(descriptor, ExplicitRK)
        tab = descriptor.tableau
        np.testing.assert_allclose(tab.a.sum(axis=1), tab.c, atol=1e-14)
        assert tab.b.sum() == pytest.approx(1.0)
        assert tab.e.sum() == pytest.approx(0.0, abs=1e-14)
        assert tab.e.size == tab.stages + 1


# -----------------------------------------------------------------------------
# EngineConfig (pydantic)
# -----------------------------------------------------------------------------


def test_engine_config_defaults_round_trip_to_run_config() -> None:
    cfg = EngineConfig()
    run = cfg.to_run_config()

    assert run.method == "rk45"
    assert run.tolerances == ToleranceConfig()
    assert run.controller == ControllerConfig()
    assert run.max_steps == 100_000
    assert cfg.to_flux_config() == FluxConfig(limiter="upwind")


def test_engine_config_from_mapping() -> None:
    cfg = EngineConfig.from_mapping(
        {
            "method": "bdf",
            "rtol": 1e-5,
            "atol": [1e-8, 1e-9],
            "h_max": 0.5,
            "pi_beta": 0.1,
            "bdf_max_order": 3,
            "advection_limiter": "superbee",
        }
    )
    run = cfg.to_run_config()

    assert run.method == "bdf"
    assert run.tolerances.atol == (1e-8, 1e-9)
    assert run.controller.h_max == 0.5
    assert run.controller.pi_beta == 0.1
    assert run.bdf_max_order == 3
    assert cfg.to_flux_config().limiter == "superbee"


@pytest.mark.parametrize(
    "mapping",
    [
        {"method": "euler"},
        {"rtol": -1.0},
        {"unknown_key": 1},
        {"h_min": 2.0, "h_max": 1.0},
        {"fac_min": 2.0},
        {"advection_limiter": "minmod"},
    ],
)
def test_engine_config_errors_become_invalid_configuration(mapping: dict[str, object]) -> None:
    with pytest.raises(InvalidConfiguration, match="invalid engine configuration"):
        EngineConfig.from_mapping(mapping)
