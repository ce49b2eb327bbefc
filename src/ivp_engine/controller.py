# ivp_engine/src/ivp_engine/controller.py
"""Adaptive step-size control.

The controller turns a step's embedded error estimate into an accept/reject
decision and the next step size:

    E = rms( err_i / (atol_i + rtol * max(|y_old_i|, |y_new_i|)) )

    accept  iff  E <= 1
    h_next = h * clip(safety * E^(-1/(p+1)), fac_min, fac_max)

where p is the order of the embedded estimate. With ``pi_beta > 0`` the
proposal uses the PI form

    factor = safety * E^(-(1/(p+1) - 0.75*beta)) * E_prev^beta

Guarantees:
    - every accepted step satisfies E <= 1;
    - a rejected step is retried with a strictly smaller h;
    - the step right after a rejection does not grow;
    - a rejection at h_min, or h below 10*eps*|t|, raises StepSizeUnderflow.

Components with differential index k >= 2 have their error scaled by
h^(k-1) before the norm is taken.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Any

import numpy as np
import numpy.typing as npt

from .errors import StepSizeUnderflow, raise_invalid_configuration

logger = logging.getLogger(__name__)

FloatArray = npt.NDArray[np.floating[Any]]

EPS = float(np.finfo(np.float64).eps)

_TOL_ERROR = "tolerances must be positive and finite; got rtol={rtol}, atol={atol}"
_RTOL_FLOOR = 100 * EPS
_RTOL_FLOOR_WARN = "rtol={rtol:.1e} is below 100*eps; results are limited by rounding"
_H_BOUNDS_ERROR = "step bounds must satisfy 0 <= h_min <= h_max; got h_min={h_min}, h_max={h_max}"
_FAC_ERROR = (
    "controller factors must satisfy 0 < fac_min < 1 < fac_max and 0 < safety < 1; "
    "got fac_min={fac_min}, fac_max={fac_max}, safety={safety}"
)
_BETA_ERROR = "pi_beta must lie in [0, 0.2]; got {beta}"
_REJECT_SHRINK = 0.5
_PI_BETA_MAX = 0.2


# =============================================================================
# Configuration
# =============================================================================


@dataclass(slots=True, frozen=True)
class ToleranceConfig:
    """Error tolerances.

    Attributes:
        rtol: Relative tolerance.
        atol: Absolute tolerance, scalar or per-component sequence.
    """

    rtol: float = 1e-6
    atol: float | tuple[float, ...] = 1e-9

    def __post_init__(self) -> None:
        """Validate tolerance values.

        Raises:
            InvalidConfiguration: If a tolerance is non-positive or non-finite.
        """
        atol = np.atleast_1d(np.asarray(self.atol, dtype=np.float64))
        if (
            not np.isfinite(self.rtol)
            or self.rtol <= 0.0
            or atol.size == 0
            or not np.all(np.isfinite(atol))
            or np.any(atol <= 0.0)
        ):
            raise_invalid_configuration(
                field="tolerances", detail=_TOL_ERROR.format(rtol=self.rtol, atol=self.atol)
            )
        if self.rtol < _RTOL_FLOOR:
            warnings.warn(
                _RTOL_FLOOR_WARN.format(rtol=self.rtol), RuntimeWarning, stacklevel=2
            )
        if isinstance(self.atol, (list, np.ndarray)):
            object.__setattr__(self, "atol", tuple(float(a) for a in self.atol))

    def atol_array(self, n: int) -> FloatArray:
        """Absolute tolerance broadcast to n components.

        Raises:
            InvalidConfiguration: If a per-component atol does not have n entries.
        """
        atol = np.asarray(self.atol, dtype=np.float64)
        if atol.ndim == 1 and atol.size != n:
            raise_invalid_configuration(
                field="atol", detail=f"per-component atol has {atol.size} entries; state has {n}"
            )
        return np.broadcast_to(atol, (n,)).copy()


@dataclass(slots=True, frozen=True)
class ControllerConfig:
    """Step-size controller parameters.

    Attributes:
        h_min: Smallest admissible step size.
        h_max: Largest admissible step size.
        safety: Safety factor (< 1).
        fac_min: Smallest shrink factor per step.
        fac_max: Largest growth factor per step.
        pi_beta: PI-controller gain on the previous error (0 disables).
    """

    h_min: float = 0.0
    h_max: float = float("inf")
    safety: float = 0.9
    fac_min: float = 0.2
    fac_max: float = 5.0
    pi_beta: float = 0.0

    def __post_init__(self) -> None:
        """Validate parameter ranges.

        Raises:
            InvalidConfiguration: On inconsistent bounds or factors.
        """
        if not (0.0 <= self.h_min <= self.h_max) or np.isnan(self.h_max):
            raise_invalid_configuration(
                field="h_min/h_max",
                detail=_H_BOUNDS_ERROR.format(h_min=self.h_min, h_max=self.h_max),
            )
        if not (0.0 < self.fac_min < 1.0 < self.fac_max) or not (0.0 < self.safety < 1.0):
            raise_invalid_configuration(
                field="safety/fac_min/fac_max",
                detail=_FAC_ERROR.format(
                    fac_min=self.fac_min, fac_max=self.fac_max, safety=self.safety
                ),
            )
        if not 0.0 <= self.pi_beta <= _PI_BETA_MAX:
            raise_invalid_configuration(
                field="pi_beta", detail=_BETA_ERROR.format(beta=self.pi_beta)
            )


# =============================================================================
# Error norm
# =============================================================================


def error_norm(  # noqa: PLR0913
    error: FloatArray,
    y_old: FloatArray,
    y_new: FloatArray,
    atol: FloatArray | float,
    rtol: float,
    *,
    h: float = 1.0,
    index_vector: npt.NDArray[np.integer[Any]] | None = None,
) -> float:
    """Scaled RMS error norm.

    Args:
        error: Local error estimate.
        y_old: State at the start of the step.
        y_new: Candidate state at the end of the step.
        atol: Absolute tolerance (scalar or per component).
        rtol: Relative tolerance.
        h: Step size, used for index-vector scaling.
        index_vector: Optional differential index per component.

    Returns:
        E; non-finite errors map to inf.
    """
    err = np.asarray(error, dtype=np.float64)
    if index_vector is not None:
        powers = np.maximum(np.asarray(index_vector) - 1, 0)
        err = err * np.abs(h) ** powers
    if not np.all(np.isfinite(err)):
        return float("inf")
    scale = atol + rtol * np.maximum(np.abs(y_old), np.abs(y_new))
    if err.size == 0:
        return 0.0
    return float(np.sqrt(np.mean((err / scale) ** 2)))


def min_step(t: float, h_min: float) -> float:
    """Smallest step that can still make progress at time t."""
    return max(h_min, 10.0 * EPS * abs(t))


# =============================================================================
# Controller
# =============================================================================


@dataclass(slots=True, frozen=True)
class StepDecision:
    """Outcome of one controller evaluation.

    Attributes:
        accepted: Whether the step is accepted.
        h_next: Step size for the next attempt (retry or next step).
        error_norm: Scaled error norm E of the attempt.
    """

    accepted: bool
    h_next: float
    error_norm: float


class StepController:
    """Stateful accept/reject controller for one run."""

    def __init__(self, config: ControllerConfig) -> None:
        """Initialize with a validated configuration."""
        self.config = config
        self._prev_error: float | None = None
        self._rejected_last = False

    def reset(self) -> None:
        """Forget the error history (after an event reset)."""
        self._prev_error = None
        self._rejected_last = False

    def clamp(self, h: float, t: float) -> float:
        """Clamp a proposed step into [max(h_min, 10 eps |t|), h_max]."""
        cfg = self.config
        return float(min(max(h, min_step(t, cfg.h_min)), cfg.h_max))

    def check_underflow(self, t: float, h: float) -> None:
        """Raise StepSizeUnderflow if h cannot make progress at t.

        Raises:
            StepSizeUnderflow: If h < 10*eps*|t|.
        """
        floor = 10.0 * EPS * abs(t)
        if h < floor:
            raise StepSizeUnderflow(t, h, max(self.config.h_min, floor))

    def _factor(self, err: float, order: int, safety_scale: float) -> float:
        cfg = self.config
        if err == 0.0:
            return cfg.fac_max
        safety = cfg.safety * safety_scale
        exponent = 1.0 / (order + 1)
        if cfg.pi_beta > 0.0 and self._prev_error is not None:
            exponent -= 0.75 * cfg.pi_beta
            return float(
                safety * err ** (-exponent) * max(self._prev_error, 1e-4) ** cfg.pi_beta
            )
        return float(safety * err ** (-exponent))

    def evaluate(  # noqa: PLR0913
        self,
        t: float,
        h: float,
        err: float,
        error_order: int,
        *,
        override: float | None = None,
        h_limit: float | None = None,
        safety_scale: float = 1.0,
    ) -> StepDecision:
        """Decide on a step attempt.

        Args:
            t: Start time of the attempted step.
            h: Attempted step size.
            err: Scaled error norm E.
            error_order: Order p of the embedded estimate.
            override: Growth factor imposed by the stepper on acceptance
                (e.g. BDF order selection); still clamped.
            h_limit: Additional upper bound for the next step (e.g. min delay).
            safety_scale: Multiplier on the safety factor (Newton effort).

        Returns:
            StepDecision.

        Raises:
            StepSizeUnderflow: If a rejection happens at the minimum step.
        """
        cfg = self.config
        h_lo = min_step(t, cfg.h_min)
        h_hi = cfg.h_max if h_limit is None else min(cfg.h_max, h_limit)

        if err <= 1.0:
            factor = self._factor(err, error_order, safety_scale) if override is None else override
            fac_max = 1.0 if self._rejected_last else cfg.fac_max
            factor = min(fac_max, max(cfg.fac_min, factor))
            self._prev_error = err
            self._rejected_last = False
            h_next = min(max(h * factor, h_lo), h_hi)
            return StepDecision(accepted=True, h_next=float(h_next), error_norm=err)

        if h <= h_lo:
            raise StepSizeUnderflow(t, h, h_lo)

        factor = (
            self._factor(err, error_order, safety_scale) if np.isfinite(err) else cfg.fac_min
        )
        factor = min(_REJECT_SHRINK, max(cfg.fac_min, factor))
        self._rejected_last = True
        h_next = max(h * factor, h_lo)
        logger.debug("step rejected at t=%r: h=%.3e E=%.3e -> h=%.3e", t, h, err, h_next)
        return StepDecision(accepted=False, h_next=float(h_next), error_norm=err)

    def shrink_after_failure(self, t: float, h: float) -> float:
        """Halve h after a Newton/factorization failure.

        Raises:
            StepSizeUnderflow: If h is already at the minimum step.
        """
        h_lo = min_step(t, self.config.h_min)
        if h <= h_lo:
            raise StepSizeUnderflow(t, h, h_lo)
        self._rejected_last = True
        return max(0.5 * h, h_lo)
