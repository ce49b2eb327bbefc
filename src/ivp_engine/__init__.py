"""ivp_engine: adaptive ODE/DAE/DDE integration engine with events and fluxes."""

from __future__ import annotations

from .config import EngineConfig
from .controller import ControllerConfig, StepController, ToleranceConfig, error_norm
from .driver import (
    Diagnostics,
    IntegrationResult,
    Integrator,
    RunConfig,
    Trajectory,
    integrate,
)
from .errors import (
    ConvergenceFailure,
    HistoryUnavailable,
    IntegrationFailed,
    InvalidBoundaryCondition,
    InvalidConfiguration,
    IvpEngineError,
    SingularJacobian,
    StepRejected,
    StepSizeUnderflow,
)
from .events import Event, EventLocator, EventState
from .flux import (
    PERIODIC,
    BoundaryCondition,
    FluxConfig,
    compute_flux,
    compute_flux_2d,
    compute_flux_polar,
    flux_boundary,
    stencil_sparsity,
    value_boundary,
)
from .grid import Grid1D, Grid2D, PolarGrid, build_grid, build_grid_2d, build_polar_grid
from .history import HistoryBuffer
from .methods import BDF, ExplicitRK, Radau, resolve_method
from .problem import LaggedState, Problem, RHSResult
from .sweep import run_sweep

__all__ = [
    "BDF",
    "PERIODIC",
    "BoundaryCondition",
    "ControllerConfig",
    "ConvergenceFailure",
    "Diagnostics",
    "EngineConfig",
    "Event",
    "EventLocator",
    "EventState",
    "ExplicitRK",
    "FluxConfig",
    "Grid1D",
    "Grid2D",
    "HistoryBuffer",
    "HistoryUnavailable",
    "IntegrationFailed",
    "IntegrationResult",
    "Integrator",
    "InvalidBoundaryCondition",
    "InvalidConfiguration",
    "IvpEngineError",
    "LaggedState",
    "PolarGrid",
    "Problem",
    "RHSResult",
    "Radau",
    "RunConfig",
    "SingularJacobian",
    "StepController",
    "StepRejected",
    "StepSizeUnderflow",
    "ToleranceConfig",
    "Trajectory",
    "build_grid",
    "build_grid_2d",
    "build_polar_grid",
    "compute_flux",
    "compute_flux_2d",
    "compute_flux_polar",
    "error_norm",
    "flux_boundary",
    "integrate",
    "resolve_method",
    "run_sweep",
    "stencil_sparsity",
    "value_boundary",
]

__version__ = "0.1.0"
