# ivp_engine/src/ivp_engine/driver.py
"""Integration driver: the adaptive loop tying the engine together.

This module advances a :class:`ivp_engine.problem.Problem` over a time span:

    choose h -> stepper.attempt -> error norm -> controller accept/reject
             -> event check (truncate at the earliest crossing)
             -> history record -> report-time emission -> event reset

Report times are served by interpolating the dense segment that covers them;
the stepper never has to land on them. Scheduled event times, the end of the
span and the minimum delay do bound the step.

Error handling:
    - Configuration problems raise InvalidConfiguration before any work.
    - ConvergenceFailure / SingularJacobian shrink h and retry, up to
      `max_step_failures` consecutive failures (then IntegrationFailed).
    - Fatal errors (StepSizeUnderflow, IntegrationFailed, HistoryUnavailable)
      end the run; the result carries the error together with the valid
      trajectory prefix and diagnostics.

Cancellation is cooperative: the cancel flag is polled between steps only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Literal

import numpy as np
import numpy.typing as npt

from .controller import ControllerConfig, StepController, ToleranceConfig, error_norm
from .dense import ConstantSegment, DenseSegment
from .errors import (
    ConvergenceFailure,
    HistoryUnavailable,
    IntegrationFailed,
    IvpEngineError,
    SingularJacobian,
    StepSizeUnderflow,
    raise_invalid_configuration,
)
from .events import Event, EventLocator, EventState
from .history import HistoryBuffer
from .methods import MethodDescriptor, resolve_method
from .problem import Problem, ResidualModel, initial_history_at
from .steppers import StepperOptions, initial_step, make_stepper

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from .steppers import Stepper

logger = logging.getLogger(__name__)

FloatArray = npt.NDArray[np.floating[Any]]
RunStatus = Literal["success", "terminated", "cancelled", "failed"]

EPS = float(np.finfo(np.float64).eps)

_SPAN_ERROR = "t_span must be (t0, t_end) with t0 == problem.t0 < t_end; got {span}"
_REPORT_ERROR = "report_times must be non-decreasing and lie within [{t0}, {tf}]"
_MAX_STEPS_ERROR = "Exceeded max_steps={max_steps} step attempts"
_FAILURES_ERROR = (
    "{count} consecutive Newton/factorization failures at t={t!r}; last error: {error}"
)
_POSITIVE_INT_ERROR = "{name} must be a positive integer; got {value}"
_H_INIT_ERROR = "h_init must be positive and finite; got {value}"
_NO_HISTORY_ERROR = "dense history was not recorded for this run (dense_history=False)"


# =============================================================================
# Configuration / result records
# =============================================================================


@dataclass(slots=True, frozen=True)
class RunConfig:
    """Run-level configuration.

    Attributes:
        method: Method name ("rk45", "rk23", "bdf", "radau") or descriptor.
        tolerances: Error tolerances.
        controller: Step-size controller parameters.
        h_init: Initial step size; chosen automatically when None.
        max_steps: Budget of step attempts (accepted + rejected + failed).
        max_step_failures: Consecutive Newton/factorization failures tolerated.
        root_tol: Bracket width at which an event counts as located.
        max_newton_iter: Newton iteration bound for implicit methods.
        bdf_max_order: Maximum BDF order.
        record_aux: Record auxiliary callback outputs at report times.
        dense_history: Keep the dense-output history (enables ``sol``).
    """

    method: str | MethodDescriptor = "rk45"
    tolerances: ToleranceConfig = field(default_factory=ToleranceConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    h_init: float | None = None
    max_steps: int = 100_000
    max_step_failures: int = 10
    root_tol: float = 1e-10
    max_newton_iter: int = 6
    bdf_max_order: int = 5
    record_aux: bool = False
    dense_history: bool = True

    def __post_init__(self) -> None:
        """Validate scalar settings.

        Raises:
            InvalidConfiguration: On non-positive budgets or h_init.
        """
        for name in ("max_steps", "max_step_failures", "max_newton_iter"):
            value = getattr(self, name)
            if int(value) != value or value < 1:
                raise_invalid_configuration(
                    field=name, detail=_POSITIVE_INT_ERROR.format(name=name, value=value)
                )
        if self.h_init is not None and (not np.isfinite(self.h_init) or self.h_init <= 0.0):
            raise_invalid_configuration(
                field="h_init", detail=_H_INIT_ERROR.format(value=self.h_init)
            )


@dataclass(slots=True)
class Diagnostics:
    """Run counters."""

    accepted_steps: int = 0
    rejected_steps: int = 0
    failed_attempts: int = 0
    function_evaluations: int = 0
    jacobian_evaluations: int = 0
    lu_decompositions: int = 0
    newton_iterations: int = 0
    newton_failures: int = 0
    root_evaluations: int = 0
    events: int = 0

    def as_dict(self) -> dict[str, int]:
        """Counters as a plain dictionary."""
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


@dataclass(frozen=True, slots=True)
class Trajectory:
    """Ordered output samples.

    Attributes:
        t: Sample times, shape (m,). Equal adjacent times mark event jumps.
        y: Sample states, shape (m, n).
        aux: Auxiliary outputs per name, stacked over samples (record_aux).
    """

    t: FloatArray
    y: FloatArray
    aux: dict[str, FloatArray] = field(default_factory=dict)

    def __len__(self) -> int:
        """Number of samples."""
        return int(self.t.size)


@dataclass(frozen=True, slots=True)
class IntegrationResult:
    """Outcome of one integration run.

    Attributes:
        trajectory: Output samples (the valid prefix on failure).
        diagnostics: Run counters.
        status: "success", "terminated" (terminal event), "cancelled" or "failed".
        message: Human-readable summary.
        error: Fatal error for failed runs.
        events: Located events in time order.
        history: Dense history buffer (None when dense_history=False).
    """

    trajectory: Trajectory
    diagnostics: Diagnostics
    status: RunStatus
    message: str
    error: IvpEngineError | None = None
    events: tuple[Event, ...] = ()
    history: HistoryBuffer | None = None

    @property
    def success(self) -> bool:
        """Whether the run reached its end (or a terminal event)."""
        return self.status in {"success", "terminated"}

    @property
    def t(self) -> FloatArray:
        """Shortcut for trajectory.t."""
        return self.trajectory.t

    @property
    def y(self) -> FloatArray:
        """Shortcut for trajectory.y."""
        return self.trajectory.y

    def sol(self, t: float) -> FloatArray:
        """Dense solution at time t within the integrated range.

        Raises:
            RuntimeError: If the dense history was not recorded.
            HistoryUnavailable: If t lies outside the integrated range.
        """
        if self.history is None:
            raise RuntimeError(_NO_HISTORY_ERROR)
        return self.history.lookup_value(t)

    def raise_for_status(self) -> None:
        """Re-raise the fatal error of a failed run.

        Raises:
            IvpEngineError: The stored fatal error, if any.
        """
        if self.error is not None:
            raise self.error


# =============================================================================
# Integrator
# =============================================================================


def _cancel_check(cancel: Any) -> Callable[[], bool]:
    if cancel is None:
        return lambda: False
    if hasattr(cancel, "is_set"):
        return lambda: bool(cancel.is_set())
    if callable(cancel):
        return lambda: bool(cancel())
    msg = "cancel must be None, a threading.Event-like object or a callable"
    raise TypeError(msg)


class _Recorder:
    """Accumulates trajectory samples and auxiliary outputs."""

    def __init__(self, model: ResidualModel, *, record_aux: bool) -> None:
        self.model = model
        self.record_aux = record_aux
        self.t: list[float] = []
        self.y: list[FloatArray] = []
        self.aux: dict[str, list[Any]] = {}

    def add(self, t: float, y: FloatArray, yp: FloatArray | None = None) -> None:
        self.t.append(float(t))
        self.y.append(np.array(y, dtype=np.float64))
        if not self.record_aux:
            return
        if self.model.is_explicit:
            self.model.fun(t, y)
        else:
            self.model.residual(t, y, np.zeros_like(y) if yp is None else yp)
        for name, value in self.model.last_aux.items():
            self.aux.setdefault(name, []).append(np.asarray(value))

    def build(self, n: int) -> Trajectory:
        y = np.array(self.y, dtype=np.float64) if self.y else np.empty((0, n))
        aux = {name: np.array(values) for name, values in self.aux.items()}
        return Trajectory(t=np.array(self.t, dtype=np.float64), y=y, aux=aux)


class Integrator:
    """Resolved integration plan for one problem and configuration.

    Construction validates everything up front, so configuration errors
    surface before any step is attempted. Each call to :meth:`run` is an
    independent run with its own state, history and diagnostics.
    """

    def __init__(self, problem: Problem, config: RunConfig | None = None) -> None:
        """Validate the problem and resolve the method.

        Args:
            problem: Problem to integrate.
            config: Run configuration (defaults to RunConfig()).

        Raises:
            InvalidConfiguration: On invalid problem or configuration.
        """
        self.problem = problem
        self.config = config or RunConfig()
        problem.validate()
        self.descriptor = resolve_method(
            self.config.method, bdf_max_order=self.config.bdf_max_order
        )
        self.atol = self.config.tolerances.atol_array(problem.n)
        self.index_vector = (
            None
            if problem.index_vector is None
            else np.asarray(problem.index_vector, dtype=np.int64)
        )
        self.options = StepperOptions(
            atol=self.atol,
            rtol=self.config.tolerances.rtol,
            max_newton_iter=self.config.max_newton_iter,
            safety=self.config.controller.safety,
            fac_max=self.config.controller.fac_max,
            index_vector=self.index_vector,
        )
        # Method/problem compatibility is checked here, before any run.
        make_stepper(self.descriptor, ResidualModel(problem), self.options)
        EventLocator(problem, self.config.root_tol)

    def _span(self, t_span: float | Sequence[float]) -> tuple[float, float]:
        if np.ndim(t_span) == 0:
            t0, tf = self.problem.t0, float(t_span)  # type: ignore[arg-type]
        else:
            pair = tuple(float(v) for v in t_span)  # type: ignore[union-attr]
            if len(pair) != 2:  # noqa: PLR2004
                raise_invalid_configuration(field="t_span", detail=_SPAN_ERROR.format(span=t_span))
            t0, tf = pair
        if not (np.isfinite(t0) and np.isfinite(tf)) or t0 != self.problem.t0 or tf <= t0:
            raise_invalid_configuration(field="t_span", detail=_SPAN_ERROR.format(span=t_span))
        return t0, tf

    @staticmethod
    def _report_times(
        report_times: npt.ArrayLike | None, t0: float, tf: float
    ) -> FloatArray | None:
        if report_times is None:
            return None
        times = np.atleast_1d(np.asarray(report_times, dtype=np.float64))
        if (
            times.ndim != 1
            or not np.all(np.isfinite(times))
            or np.any(np.diff(times) < 0.0)
            or (times.size and (times[0] < t0 or times[-1] > tf))
        ):
            raise_invalid_configuration(
                field="report_times", detail=_REPORT_ERROR.format(t0=t0, tf=tf)
            )
        return times

    def run(  # noqa: C901, PLR0912, PLR0915
        self,
        t_span: float | Sequence[float],
        *,
        report_times: npt.ArrayLike | None = None,
        cancel: Any = None,
    ) -> IntegrationResult:
        """Integrate over t_span.

        Args:
            t_span: End time, or (t0, t_end) with t0 equal to problem.t0.
            report_times: Output times; every accepted step is reported when None.
            cancel: Optional threading.Event or zero-argument callable; polled
                between steps.

        Returns:
            IntegrationResult.

        Raises:
            InvalidConfiguration: For an invalid span or report times.
        """
        problem = self.problem
        cfg = self.config
        t0, tf = self._span(t_span)
        reports = self._report_times(report_times, t0, tf)
        is_cancelled = _cancel_check(cancel)

        def initial_slope() -> FloatArray:
            if problem.is_explicit:
                return model.derivative_at(t0, problem.y0)
            return np.array(problem.yp0, dtype=np.float64)

        history = HistoryBuffer(
            t0, problem.y0, initial_history_at(problem), initial_derivative=initial_slope
        )
        keep_history = cfg.dense_history or problem.has_delays
        delays = problem.delays

        def lag_provider(t: float) -> Any:
            return history.lagged(t, delays)

        model = ResidualModel(problem, lag_provider if problem.has_delays else None)
        stepper: Stepper = make_stepper(self.descriptor, model, self.options)
        controller = StepController(cfg.controller)
        locator = EventLocator(problem, cfg.root_tol)
        recorder = _Recorder(model, record_aux=cfg.record_aux)
        diag = Diagnostics()
        events: list[Event] = []

        h_limit = min(delays) if delays else float("inf")
        scheduled = sorted(ts for ts in problem.event_times if t0 < ts <= tf)
        sched_idx = 0

        t = t0
        y = problem.y0.copy()
        logger.info(
            "integration start: method=%s n=%d span=[%r, %r]",
            self.descriptor.name,
            problem.n,
            t0,
            tf,
        )

        status: RunStatus = "success"
        error: IvpEngineError | None = None
        message = "integration reached the end of the span"
        report_idx = 0

        def emit_reports(segment: DenseSegment, tiny: float) -> bool:
            """Record due reports; True if one landed on the segment end."""
            nonlocal report_idx
            at_end = False
            if reports is None:
                return at_end
            while report_idx < reports.size and reports[report_idx] <= segment.t_end + tiny:
                # Rounding can leave the last step a few ulps short of a report.
                tr = float(reports[report_idx])
                ts = min(tr, segment.t_end)
                recorder.add(tr, segment(ts), segment.derivative(ts) if cfg.record_aux else None)
                report_idx += 1
                at_end = tr >= segment.t_end - tiny
            return at_end

        def restart_step(h_prev: float) -> float:
            # No larger than a fresh start from the post-reset state would take.
            if tf - t <= 16.0 * EPS * max(abs(t), abs(tf), 1.0):
                return h_prev
            h_fresh = initial_step(
                model,
                t,
                y,
                tf - t,
                stepper.order,
                self.options,
                min(cfg.controller.h_max, h_limit),
            )
            return min(h_prev, h_fresh)

        def apply_reset(event: Event) -> Event:
            nonlocal y
            y_before = y.copy()
            if problem.event_reset is not None:
                y_after = np.asarray(
                    problem.event_reset(t, y_before, problem.params), dtype=np.float64
                ).reshape(y_before.shape)
                recorder.add(t, y_after)
                if keep_history:
                    history.record(ConstantSegment(t, t, y_after))
            else:
                y_after = y_before
            y = y_after.copy()
            diag.events += 1
            return replace(event, y_before=y_before, y_after=y_after.copy())

        try:
            if reports is None:
                recorder.add(t, y)
            else:
                while report_idx < reports.size and reports[report_idx] <= t0:
                    recorder.add(t0, y)
                    report_idx += 1
            stepper.reset(t, y)
            locator.start(t, y)

            h = (
                cfg.h_init
                if cfg.h_init is not None
                else initial_step(
                    model,
                    t0,
                    y,
                    tf - t0,
                    stepper.order,
                    self.options,
                    min(cfg.controller.h_max, h_limit),
                )
            )
            consecutive_failures = 0
            attempts = 0

            while True:
                tiny = 16.0 * EPS * max(abs(t), abs(tf), 1.0)
                if tf - t <= tiny:
                    break
                if is_cancelled():
                    status = "cancelled"
                    message = f"integration cancelled at t={t!r}"
                    break
                if attempts >= cfg.max_steps:
                    raise IntegrationFailed(
                        _MAX_STEPS_ERROR.format(max_steps=cfg.max_steps), time=t
                    )
                attempts += 1

                target = scheduled[sched_idx] if sched_idx < len(scheduled) else tf
                h = min(h, cfg.controller.h_max, h_limit)
                remaining = target - t
                if h >= remaining - tiny:
                    h = remaining
                controller.check_underflow(t, h)

                try:
                    attempt = stepper.attempt(t, y, h)
                except (ConvergenceFailure, SingularJacobian) as exc:
                    diag.failed_attempts += 1
                    consecutive_failures += 1
                    if consecutive_failures > cfg.max_step_failures:
                        raise IntegrationFailed(
                            _FAILURES_ERROR.format(
                                count=consecutive_failures, t=t, error=exc
                            ),
                            time=t,
                        ) from exc
                    h = controller.shrink_after_failure(t, h)
                    logger.debug("recovering from %s at t=%r; retry with h=%.3e", exc, t, h)
                    continue

                err = error_norm(
                    attempt.error,
                    y,
                    attempt.y_new,
                    self.atol,
                    self.options.rtol,
                    h=h,
                    index_vector=self.index_vector,
                )
                if err > 1.0 or not np.all(np.isfinite(attempt.y_new)):
                    stepper.reject(attempt)
                    diag.rejected_steps += 1
                    decision = controller.evaluate(
                        t,
                        h,
                        err if np.isfinite(err) else float("inf"),
                        attempt.error_order,
                        safety_scale=attempt.safety_scale,
                    )
                    h = decision.h_next
                    continue

                consecutive_failures = 0
                segment, override = stepper.accept(attempt)
                decision = controller.evaluate(
                    t,
                    h,
                    err,
                    attempt.error_order,
                    override=override,
                    h_limit=h_limit,
                    safety_scale=attempt.safety_scale,
                )
                diag.accepted_steps += 1

                check = locator.check(segment)
                located = check.event if check.state is EventState.EVENT_LOCATED else None
                if located is not None:
                    segment = segment.truncate(located.time)

                if keep_history:
                    history.record(segment)
                reported = emit_reports(segment, tiny)
                t = segment.t_end
                y = segment.y_end.copy()
                if reports is None or (located is not None and not reported):
                    recorder.add(t, y)
                h = decision.h_next

                if located is not None:
                    event = apply_reset(located)
                    events.append(event)
                    logger.debug("event %d at t=%r", event.index, t)
                    if event.terminal:
                        status = "terminated"
                        message = f"terminal event {event.index} at t={t!r}"
                        break
                    stepper.reset(t, y)
                    controller.reset()
                    locator.start(t, y)
                    h = restart_step(h)
                elif sched_idx < len(scheduled) and abs(scheduled[sched_idx] - t) <= tiny:
                    if reports is not None and not reported:
                        recorder.add(t, y)
                    event = apply_reset(
                        Event(time=t, index=sched_idx, value=0.0, kind="scheduled")
                    )
                    events.append(event)
                    sched_idx += 1
                    stepper.reset(t, y)
                    controller.reset()
                    locator.start(t, y)
                    h = restart_step(h)

        except (StepSizeUnderflow, IntegrationFailed, HistoryUnavailable) as exc:
            status = "failed"
            error = exc
            message = str(exc)
            logger.warning("integration failed at t=%r: %s", t, exc)

        newton = getattr(stepper, "newton", None)
        diag.function_evaluations = model.n_fev
        diag.jacobian_evaluations = model.n_jev
        diag.root_evaluations = locator.n_gev
        if newton is not None:
            diag.lu_decompositions = newton.n_lu
            diag.newton_iterations = newton.n_iterations
            diag.newton_failures = newton.n_failures

        logger.info(
            "integration %s at t=%r: %d accepted, %d rejected, %d fev",
            status,
            t,
            diag.accepted_steps,
            diag.rejected_steps,
            diag.function_evaluations,
        )
        return IntegrationResult(
            trajectory=recorder.build(problem.n),
            diagnostics=diag,
            status=status,
            message=message,
            error=error,
            events=tuple(events),
            history=history if keep_history else None,
        )


def integrate(
    problem: Problem,
    t_span: float | Sequence[float],
    *,
    report_times: npt.ArrayLike | None = None,
    config: RunConfig | None = None,
    cancel: Any = None,
) -> IntegrationResult:
    """Integrate a problem over t_span.

    Args:
        problem: Problem definition.
        t_span: End time, or (t0, t_end) with t0 equal to problem.t0.
        report_times: Output times; every accepted step is reported when None.
        config: Run configuration.
        cancel: Optional threading.Event or zero-argument callable.

    Returns:
        IntegrationResult.

    Raises:
        InvalidConfiguration: Before any work, for invalid inputs.
    """
    return Integrator(problem, config).run(t_span, report_times=report_times, cancel=cancel)
