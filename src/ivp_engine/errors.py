# ivp_engine/src/ivp_engine/errors.py
"""Error taxonomy for ivp_engine.

This module centralizes:
- explicit error classes with actionable messages, and
- small helpers that raise them with standardized wording.

Recoverability:
- StepRejected, ConvergenceFailure and SingularJacobian are recoverable; the
  integration driver contains them in its retry loop and never surfaces them.
- StepSizeUnderflow, IntegrationFailed and HistoryUnavailable are fatal; the
  driver stops and reports them together with the valid trajectory prefix.
- InvalidConfiguration and InvalidBoundaryCondition are raised before any
  integration work starts.
"""

from __future__ import annotations

from typing import Final

_UNDERFLOW_MSG: Final[str] = (
    "Step size {h:.3e} fell below the admissible minimum {h_min:.3e} at t={t!r}."
)
_CONVERGENCE_MSG: Final[str] = (
    "Newton iteration did not converge after {iterations} iteration(s); "
    "scaled residual norm {residual:.3e}."
)
_HISTORY_BEFORE_START_MSG: Final[str] = (
    "History requested at t={t!r}, before the run start {t0!r}, and no "
    "initial_history fallback was supplied."
)
_HISTORY_IN_FUTURE_MSG: Final[str] = (
    "History requested at t={t!r}, beyond the last accepted time {t_last!r}."
)


class IvpEngineError(Exception):
    """Base exception for all ivp_engine errors."""


class StepRejected(IvpEngineError):
    """Raised when the local error estimate exceeds tolerance (internal only)."""

    def __init__(self, error_norm: float, h_next: float) -> None:
        """Initialize StepRejected.

        Args:
            error_norm: Scaled error norm of the rejected attempt.
            h_next: Step size proposed for the retry.
        """
        super().__init__(f"step rejected (E={error_norm:.3e}); retry with h={h_next:.3e}")
        self.error_norm = error_norm
        self.h_next = h_next


class ConvergenceFailure(IvpEngineError, ArithmeticError):
    """Raised when the Newton iteration fails to converge within its bound."""

    def __init__(self, iterations: int, residual: float) -> None:
        """Initialize ConvergenceFailure.

        Args:
            iterations: Number of Newton iterations performed.
            residual: Final scaled residual norm.
        """
        super().__init__(
            _CONVERGENCE_MSG.format(iterations=iterations, residual=residual)
        )
        self.iterations = iterations
        self.residual = residual


class SingularJacobian(IvpEngineError, ArithmeticError):
    """Raised when an iteration matrix cannot be factorized."""


class StepSizeUnderflow(IvpEngineError, ArithmeticError):
    """Raised when the step size collapses below what can make progress."""

    def __init__(self, t: float, h: float, h_min: float) -> None:
        """Initialize StepSizeUnderflow.

        Args:
            t: Time at which the underflow occurred.
            h: Offending step size.
            h_min: Minimum admissible step size at t.
        """
        super().__init__(_UNDERFLOW_MSG.format(t=t, h=h, h_min=h_min))
        self.time = t
        self.h = h
        self.h_min = h_min


class IntegrationFailed(IvpEngineError, RuntimeError):
    """Raised when recoverable step failures exceed their retry budget."""

    def __init__(self, msg: str, *, time: float | None = None) -> None:
        """Initialize IntegrationFailed.

        Args:
            msg: Human-readable reason.
            time: Time at which the run was abandoned, if known.
        """
        super().__init__(msg)
        self.time = time


class HistoryUnavailable(IvpEngineError, LookupError):
    """Raised when a history lookup falls outside the recorded range."""

    def __init__(self, msg: str, *, time: float) -> None:
        """Initialize HistoryUnavailable.

        Args:
            msg: Human-readable reason.
            time: Requested lookup time.
        """
        super().__init__(msg)
        self.time = time


class InvalidConfiguration(IvpEngineError, ValueError):
    """Raised when a problem or run configuration is invalid."""


class InvalidBoundaryCondition(InvalidConfiguration):
    """Raised when a boundary does not specify exactly one of value or flux."""


def raise_history_before_start(*, t: float, t0: float) -> None:
    """Raise a standardized HistoryUnavailable for lookups before t0.

    Args:
        t: Requested time.
        t0: Run start time.

    Raises:
        HistoryUnavailable: Always.
    """
    raise HistoryUnavailable(_HISTORY_BEFORE_START_MSG.format(t=t, t0=t0), time=t)


def raise_history_in_future(*, t: float, t_last: float) -> None:
    """Raise a standardized HistoryUnavailable for lookups past accepted time.

    Args:
        t: Requested time.
        t_last: End of the last accepted segment.

    Raises:
        HistoryUnavailable: Always.
    """
    raise HistoryUnavailable(_HISTORY_IN_FUTURE_MSG.format(t=t, t_last=t_last), time=t)


def raise_invalid_configuration(
    *,
    field: str | None = None,
    detail: str | None = None,
) -> None:
    """Raise a standardized InvalidConfiguration.

    Args:
        field: Name of the offending configuration field.
        detail: Optional additional context.

    Raises:
        InvalidConfiguration: Always.
    """
    parts: list[str] = ["Invalid ivp_engine configuration."]
    if field:
        parts.append(f"Field: {field}.")
    if detail:
        parts.append(f"Detail: {detail}")
    raise InvalidConfiguration(" ".join(parts))


def raise_invalid_boundary(*, side: str, value: object, flux: object) -> None:
    """Raise a standardized InvalidBoundaryCondition.

    Args:
        side: Boundary label (for example, "left" or "r_max").
        value: Value specification that was given.
        flux: Flux specification that was given.

    Raises:
        InvalidBoundaryCondition: Always.
    """
    given = [name for name, spec in (("value", value), ("flux", flux)) if spec is not None]
    msg = (
        f"Boundary '{side}' must specify exactly one of value or flux; "
        f"got {given or 'neither'}."
    )
    raise InvalidBoundaryCondition(msg)
