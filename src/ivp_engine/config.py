# ivp_engine/src/ivp_engine/config.py
"""Validated configuration schema for ivp_engine runs.

`EngineConfig` is the user-facing, flat description of a run (as it would
appear in a YAML/JSON file). It converts to the engine's native frozen
dataclasses via :meth:`EngineConfig.to_run_config` and
:meth:`EngineConfig.to_flux_config`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .controller import ControllerConfig, ToleranceConfig
from .driver import RunConfig
from .errors import InvalidConfiguration
from .flux import FluxConfig

if TYPE_CHECKING:
    from collections.abc import Mapping

MethodName = Literal["rk45", "rk23", "bdf", "radau"]
LimiterName = Literal["upwind", "muscl", "superbee"]

_STEP_BOUNDS_MSG = "h_min ({h_min}) must not exceed h_max ({h_max})"
_FACTORS_MSG = "fac_min ({fac_min}) must be < 1 < fac_max ({fac_max})"
_INVALID_CONFIG_MSG = "invalid engine configuration: {detail}"


class EngineConfig(BaseModel):
    """Configuration schema for one integration run."""

    model_config = ConfigDict(extra="forbid")

    method: MethodName = Field(default="rk45", description="Time integration method")

    # tolerances
    rtol: float = Field(default=1e-6, gt=0.0)
    atol: float | list[float] = Field(default=1e-9)

    # controller
    h_min: float = Field(default=0.0, ge=0.0)
    h_max: float = Field(default=float("inf"), gt=0.0)
    h_init: float | None = Field(default=None, gt=0.0)
    safety: float = Field(default=0.9, gt=0.0, lt=1.0)
    fac_min: float = Field(default=0.2, gt=0.0)
    fac_max: float = Field(default=5.0, gt=0.0)
    pi_beta: float = Field(default=0.0, ge=0.0, le=0.2)

    # solver budgets
    root_tol: float = Field(default=1e-10, gt=0.0)
    max_newton_iter: int = Field(default=6, ge=1)
    max_steps: int = Field(default=100_000, ge=1)
    max_step_failures: int = Field(default=10, ge=1)
    bdf_max_order: int = Field(default=5, ge=1, le=5)

    # outputs
    record_aux: bool = Field(default=False, description="Record auxiliary outputs")
    dense_history: bool = Field(default=True, description="Keep dense history")

    advection_limiter: LimiterName = Field(
        default="upwind", description="Limiter policy for advective fluxes"
    )

    @model_validator(mode="after")
    def _validate_bounds(self) -> EngineConfig:
        if self.h_min > self.h_max:
            raise ValueError(_STEP_BOUNDS_MSG.format(h_min=self.h_min, h_max=self.h_max))
        if not self.fac_min < 1.0 < self.fac_max:
            raise ValueError(
                _FACTORS_MSG.format(fac_min=self.fac_min, fac_max=self.fac_max)
            )
        return self

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> EngineConfig:
        """
        Build a configuration from a plain mapping.

        Args:
            mapping: Configuration values keyed by field name.

        Returns:
            Validated EngineConfig.

        Raises:
            InvalidConfiguration: If validation fails.
        """
        try:
            return cls.model_validate(dict(mapping))
        except ValidationError as exc:
            detail = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in exc.errors()
            )
            raise InvalidConfiguration(_INVALID_CONFIG_MSG.format(detail=detail)) from exc

    def to_run_config(self) -> RunConfig:
        """
        Convert to the engine's RunConfig.

        Returns:
            RunConfig reflecting this configuration.
        """
        atol = tuple(self.atol) if isinstance(self.atol, list) else self.atol
        return RunConfig(
            method=self.method,
            tolerances=ToleranceConfig(rtol=self.rtol, atol=atol),
            controller=ControllerConfig(
                h_min=self.h_min,
                h_max=self.h_max,
                safety=self.safety,
                fac_min=self.fac_min,
                fac_max=self.fac_max,
                pi_beta=self.pi_beta,
            ),
            h_init=self.h_init,
            max_steps=self.max_steps,
            max_step_failures=self.max_step_failures,
            root_tol=self.root_tol,
            max_newton_iter=self.max_newton_iter,
            bdf_max_order=self.bdf_max_order,
            record_aux=self.record_aux,
            dense_history=self.dense_history,
        )

    def to_flux_config(self) -> FluxConfig:
        """Flux discretization policy."""
        return FluxConfig(limiter=self.advection_limiter)
