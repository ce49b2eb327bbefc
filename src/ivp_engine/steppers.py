# ivp_engine/src/ivp_engine/steppers.py
"""Step Method Strategy: one stepper per method family.

Every stepper satisfies the :class:`Stepper` protocol:

    reset(t, y)              (re)start from a state (run start, event resets)
    attempt(t, y, h)         candidate step + embedded error estimate
    accept(attempt)          commit; returns (dense segment, growth override)
    reject(attempt)          discard (the stepper may adapt internal strategy)

Attempts never mutate the committed stepper state, so a rejected attempt is
simply dropped. Implicit steppers raise ConvergenceFailure / SingularJacobian
from `attempt`; the driver shrinks h and retries.

Families:
    - ExplicitRKStepper: embedded explicit Runge-Kutta (FSAL), error h*K^T e.
    - BDFStepper:        variable-order NDF/BDF on the residual model
                         (mass-matrix and fully implicit DAEs).
    - RadauStepper:      3-stage Radau IIA with the complex-eigenvalue
                         transformed simplified Newton iteration.

`make_stepper` is the single dispatch point from a MethodDescriptor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, cast

import numpy as np
import numpy.typing as npt

from .controller import error_norm
from .dense import (
    BDFSegment,
    DenseSegment,
    DormandPrinceSegment,
    HermiteSegment,
    RadauSegment,
)
from .errors import ConvergenceFailure, raise_invalid_configuration
from .methods import BDF, BDF_MAX_ORDER, ExplicitRK, MethodDescriptor, Radau
from .nonlinear import NewtonSolver, combine

if TYPE_CHECKING:
    from .problem import ResidualModel

logger = logging.getLogger(__name__)

FloatArray = npt.NDArray[np.floating[Any]]
IntArray = npt.NDArray[np.integer[Any]]

_EXPLICIT_MASS_ERROR = (
    "explicit Runge-Kutta methods require the explicit rhs form without a mass "
    "matrix; use 'bdf' or 'radau'"
)
_RADAU_FORM_ERROR = (
    "radau supports the explicit rhs form with a constant mass matrix only; use 'bdf'"
)
_UNKNOWN_DESCRIPTOR_ERROR = "unsupported method descriptor: {descriptor!r}"


# =============================================================================
# Protocol / shared records
# =============================================================================


@dataclass(slots=True, frozen=True)
class StepperOptions:
    """Options shared by all steppers.

    Attributes:
        atol: Per-component absolute tolerance.
        rtol: Relative tolerance.
        max_newton_iter: Newton iteration bound for implicit methods.
        safety: Controller safety factor (used by BDF order selection).
        fac_max: Largest growth factor (caps BDF order-selection factors).
        index_vector: Optional differential index per component.
    """

    atol: FloatArray
    rtol: float
    max_newton_iter: int = 6
    safety: float = 0.9
    fac_max: float = 5.0
    index_vector: IntArray | None = None


@dataclass(slots=True, frozen=True)
class StepAttempt:
    """Candidate step produced by a stepper.

    Attributes:
        t: Start time.
        h: Step size.
        y_new: Candidate state at t + h.
        error: Embedded local error estimate.
        error_order: Order p of the error estimate (controller exponent 1/(p+1)).
        n_fev: Right-hand-side evaluations spent on the attempt.
        newton_iters: Newton iterations spent (0 for explicit methods).
        safety_scale: Extra safety multiplier reflecting Newton effort.
        payload: Stepper-private data needed to commit the step.
    """

    t: float
    h: float
    y_new: FloatArray
    error: FloatArray
    error_order: int
    n_fev: int = 0
    newton_iters: int = 0
    safety_scale: float = 1.0
    payload: Any = None

    @property
    def t_new(self) -> float:
        """End time of the attempted step."""
        return self.t + self.h


class Stepper(Protocol):
    """Interface every method family implements."""

    @property
    def order(self) -> int:
        """Current order of the propagated solution."""
        ...

    def reset(self, t: float, y: FloatArray) -> None:
        """Restart from (t, y)."""
        ...

    def attempt(self, t: float, y: FloatArray, h: float) -> StepAttempt:
        """Produce a candidate step of size h from (t, y)."""
        ...

    def accept(self, attempt: StepAttempt) -> tuple[DenseSegment, float | None]:
        """Commit an attempt; returns its dense segment and an optional factor."""
        ...

    def reject(self, attempt: StepAttempt) -> None:
        """Discard an attempt."""
        ...


def _newton_safety(max_iter: int, n_iter: int) -> float:
    return (2 * max_iter + 1) / (2 * max_iter + n_iter)


# =============================================================================
# Explicit embedded Runge-Kutta
# =============================================================================


class ExplicitRKStepper:
    """Explicit embedded Runge-Kutta stepper with FSAL."""

    def __init__(
        self,
        descriptor: ExplicitRK,
        model: ResidualModel,
        options: StepperOptions,
    ) -> None:
        """Initialize the stepper.

        Args:
            descriptor: Explicit RK descriptor (tableau).
            model: Residual model providing f(t, y).
            options: Shared stepper options.
        """
        self.descriptor = descriptor
        self.tableau = descriptor.tableau
        self.model = model
        self.options = options
        self._f: FloatArray | None = None

    @property
    def order(self) -> int:
        """Order of the propagated solution."""
        return self.tableau.order

    @property
    def error_order(self) -> int:
        """Order of the embedded estimate."""
        return self.tableau.error_order

    @property
    def f(self) -> FloatArray:
        """Derivative at the committed state."""
        if self._f is None:
            msg = "stepper used before reset"
            raise RuntimeError(msg)
        return self._f

    def reset(self, t: float, y: FloatArray) -> None:
        """Restart from (t, y); evaluates the FSAL derivative."""
        self._f = self.model.fun(t, y)

    def attempt(self, t: float, y: FloatArray, h: float) -> StepAttempt:
        """Evaluate all stages and the embedded error estimate."""
        tab = self.tableau
        s = tab.stages
        stages = np.empty((s + 1, y.size), dtype=np.float64)
        stages[0] = self.f

        for i in range(1, s):
            dy = h * (tab.a[i, :i] @ stages[:i])
            stages[i] = self.model.fun(t + tab.c[i] * h, y + dy)

        y_new = y + h * (tab.b @ stages[:s])
        stages[s] = self.model.fun(t + h, y_new)
        error = h * (tab.e @ stages)

        return StepAttempt(
            t=t,
            h=h,
            y_new=y_new,
            error=error,
            error_order=tab.error_order,
            n_fev=s,
            payload=(y.copy(), stages),
        )

    def accept(self, attempt: StepAttempt) -> tuple[DenseSegment, float | None]:
        """Commit the step; the last stage becomes the next first stage."""
        y_old, stages = attempt.payload
        t_new = attempt.t_new
        segment: DenseSegment
        if self.tableau.dense == "dopri":
            segment = DormandPrinceSegment(attempt.t, t_new, y_old, attempt.y_new, stages)
        else:
            segment = HermiteSegment(
                attempt.t, t_new, y_old, attempt.y_new, stages[0], stages[-1]
            )
        self._f = stages[-1].copy()
        return segment, None

    def reject(self, attempt: StepAttempt) -> None:
        """Nothing to undo for explicit methods."""


# =============================================================================
# BDF (NDF variant, backward-difference form)
# =============================================================================

# Klopfenstein-Shampine NDF coefficients; order 5 is plain BDF.
_KAPPA = np.array([0.0, -0.1850, -1 / 9, -0.0823, -0.0415, 0.0])
_GAMMA = np.hstack((0.0, np.cumsum(1.0 / np.arange(1, BDF_MAX_ORDER + 1))))
_ALPHA = (1.0 - _KAPPA) * _GAMMA
_ERROR_CONST = _KAPPA * _GAMMA + 1.0 / np.arange(1, BDF_MAX_ORDER + 2)


def _compute_r(order: int, factor: float) -> FloatArray:
    idx = np.arange(1, order + 1)[:, None]
    jdx = np.arange(1, order + 1)
    mat = np.zeros((order + 1, order + 1))
    mat[1:, 1:] = (idx - 1 - factor * jdx) / idx
    mat[0] = 1.0
    return np.cumprod(mat, axis=0)


def _change_differences(d: FloatArray, order: int, factor: float) -> None:
    """Rescale the difference table in place for a step-size change."""
    r = _compute_r(order, factor)
    u = _compute_r(order, 1.0)
    ru = r.dot(u)
    d[: order + 1] = np.dot(ru.T, d[: order + 1])


class BDFStepper:
    """Variable-order BDF/NDF stepper on the residual model."""

    def __init__(
        self,
        descriptor: BDF,
        model: ResidualModel,
        options: StepperOptions,
    ) -> None:
        """Initialize the stepper.

        Args:
            descriptor: BDF descriptor (order bounds).
            model: Residual model.
            options: Shared stepper options.
        """
        self.descriptor = descriptor
        self.model = model
        self.options = options
        self.newton = NewtonSolver(
            model,
            atol=options.atol,
            rtol=options.rtol,
            max_iter=options.max_newton_iter,
        )
        n = model.n
        self._d = np.zeros((BDF_MAX_ORDER + 3, n), dtype=np.float64)
        self._order = descriptor.fixed_order or 1
        self._h: float | None = None
        self._yp0: FloatArray = np.zeros(n)
        self._n_equal_steps = 0

    @property
    def order(self) -> int:
        """Current BDF order."""
        return self._order

    def reset(self, t: float, y: FloatArray) -> None:
        """Restart at order 1 (or the fixed order) from (t, y)."""
        model = self.model
        prob = model.problem
        if prob.is_explicit:
            yp = model.derivative_at(t, y)
        elif self._h is None:
            yp = cast("FloatArray", prob.yp0).copy()
        else:
            yp_old = self._d[1] / self._h
            _, j_yp = model.jacobians(t, y, yp_old)
            dense = j_yp.toarray() if hasattr(j_yp, "toarray") else np.asarray(j_yp)
            yp = yp_old - np.linalg.lstsq(dense, model.residual(t, y, yp_old), rcond=None)[0]

        self._d[:] = 0.0
        self._d[0] = y
        self._yp0 = np.asarray(yp, dtype=np.float64)
        self._h = None
        self._order = self.descriptor.fixed_order or 1
        self._n_equal_steps = 0
        self.newton.update_jacobian(t, y, self._yp0)

    def _prepare(self, h: float) -> None:
        if self._h is None:
            self._d[1] = h * self._yp0
            self._h = h
        elif h != self._h:
            _change_differences(self._d, self._order, h / self._h)
            self._h = h
            self._n_equal_steps = 0

    def attempt(self, t: float, y: FloatArray, h: float) -> StepAttempt:  # noqa: ARG002
        """Solve the BDF corrector for one step of size h."""
        self._prepare(h)
        d_tab = self._d
        order = self._order
        t_new = t + h
        y_pred = d_tab[: order + 1].sum(axis=0)
        psi = d_tab[1 : order + 1].T.dot(_GAMMA[1 : order + 1]) / _ALPHA[order]
        c = h / _ALPHA[order]
        model = self.model
        fev_before = model.n_fev

        def residual(x: FloatArray) -> FloatArray:
            return c * model.residual(t_new, y_pred + x, (psi + x) / c)

        def state_of(x: FloatArray) -> FloatArray:
            return y_pred + x

        def run() -> Any:
            solve = self.newton.iteration_solver(c)
            return self.newton.solve(
                residual, np.zeros_like(y_pred), solve, state_of, algebraic_scale=c
            )

        try:
            result = run()
        except ConvergenceFailure:
            if self.newton.jac_current:
                raise
            logger.debug("BDF Newton failed with a stale Jacobian; refreshing at t=%r", t_new)
            self.newton.update_jacobian(t_new, y_pred, psi / c)
            result = run()

        d = result.x
        y_new = y_pred + d
        return StepAttempt(
            t=t,
            h=h,
            y_new=y_new,
            error=_ERROR_CONST[order] * d,
            error_order=order,
            n_fev=model.n_fev - fev_before,
            newton_iters=result.iterations,
            safety_scale=_newton_safety(self.newton.max_iter, result.iterations),
            payload=d,
        )

    def _norm(self, vec: FloatArray, y_old: FloatArray, y_new: FloatArray, h: float) -> float:
        return error_norm(
            vec,
            y_old,
            y_new,
            self.options.atol,
            self.options.rtol,
            h=h,
            index_vector=self.options.index_vector,
        )

    def accept(self, attempt: StepAttempt) -> tuple[DenseSegment, float | None]:
        """Update the difference table and pick the next order."""
        d_tab = self._d
        order = self._order
        d = cast("FloatArray", attempt.payload)
        y_old = d_tab[0].copy()

        d_tab[order + 2] = d - d_tab[order + 1]
        d_tab[order + 1] = d
        for i in reversed(range(order + 1)):
            d_tab[i] += d_tab[i + 1]

        segment = BDFSegment(
            attempt.t, attempt.t_new, y_old, attempt.y_new, attempt.h, d_tab[: order + 1].copy()
        )
        self.newton.mark_stale()
        if not self.model.problem.mass_is_constant:
            self.newton.clear_factorizations()
        self._n_equal_steps += 1

        if self._n_equal_steps < order + 1:
            return segment, 1.0

        h = attempt.h
        y_new = attempt.y_new
        current = self._norm(attempt.error, y_old, y_new, h)
        max_order = self.descriptor.max_order
        if self.descriptor.fixed_order is not None:
            candidates = np.array([np.inf, current, np.inf])
        else:
            err_m = (
                self._norm(_ERROR_CONST[order - 1] * d_tab[order], y_old, y_new, h)
                if order > 1
                else np.inf
            )
            err_p = (
                self._norm(_ERROR_CONST[order + 1] * d_tab[order + 2], y_old, y_new, h)
                if order < max_order
                else np.inf
            )
            candidates = np.array([err_m, current, err_p])

        with np.errstate(divide="ignore"):
            factors = candidates ** (-1.0 / np.arange(order, order + 3))

        delta = int(np.argmax(factors)) - 1
        self._order = order + delta
        safety = self.options.safety * attempt.safety_scale
        factor = float(min(self.options.fac_max, safety * np.max(factors)))
        if delta:
            logger.debug("BDF order %d -> %d at t=%r", order, self._order, attempt.t_new)
        return segment, factor

    def reject(self, attempt: StepAttempt) -> None:
        """The difference table is untouched by attempts; nothing to undo."""


# =============================================================================
# Radau IIA (3 stages, order 5)
# =============================================================================


def _radau_tables() -> tuple[npt.NDArray[Any], ...]:
    s6 = np.sqrt(6.0)
    nodes = np.array([(4.0 - s6) / 10.0, (4.0 + s6) / 10.0, 1.0])
    k = np.arange(3)
    cp = nodes[:, None] ** k[None, :]
    cq = nodes[:, None] ** (k[None, :] + 1) / (k[None, :] + 1)
    a = cq @ np.linalg.inv(cp)
    a_inv = np.linalg.inv(a)

    vals, vecs = np.linalg.eig(a_inv)
    real_idx = int(np.argmin(np.abs(vals.imag)))
    rest = [i for i in range(3) if i != real_idx]
    cplx_idx = rest[0] if vals[rest[0]].imag > 0 else rest[1]
    conj_idx = rest[1] if cplx_idx == rest[0] else rest[0]
    perm = [real_idx, cplx_idx, conj_idx]

    lam = vals[perm]
    t_mat = vecs[:, perm]
    ti_mat = np.linalg.inv(t_mat)
    err_weights = np.array([-13.0 - 7.0 * s6, -13.0 + 7.0 * s6, -1.0]) / 3.0
    return nodes, a_inv, err_weights, lam, t_mat, ti_mat


_RADAU_C, _RADAU_A_INV, _RADAU_E, _RADAU_LAMBDA, _RADAU_T, _RADAU_TI = _radau_tables()
_RADAU_MU_REAL = float(_RADAU_LAMBDA[0].real)
_RADAU_ERROR_ORDER = 3


class RadauStepper:
    """Radau IIA stepper for explicit-form problems with constant mass."""

    def __init__(
        self,
        descriptor: Radau,
        model: ResidualModel,
        options: StepperOptions,
    ) -> None:
        """Initialize the stepper.

        Args:
            descriptor: Radau descriptor.
            model: Residual model (explicit form, constant mass).
            options: Shared stepper options.
        """
        self.descriptor = descriptor
        self.model = model
        self.options = options
        self.newton = NewtonSolver(
            model,
            atol=np.tile(options.atol, 3),
            rtol=options.rtol,
            max_iter=options.max_newton_iter,
        )
        self._f: FloatArray | None = None
        self._last: RadauSegment | None = None
        self._refine = True

    @property
    def order(self) -> int:
        """Order of the propagated solution."""
        return 5

    def reset(self, t: float, y: FloatArray) -> None:
        """Restart from (t, y); refresh f and the Jacobian."""
        self._f = self.model.fun(t, y)
        self._last = None
        self._refine = True
        self.newton.update_jacobian(t, y, np.zeros_like(y), self._f)

    def _solvers(self, h: float) -> tuple[Any, Any]:
        jac_y, mass = self.newton.jacobian_pair()
        lam_r = _RADAU_LAMBDA[0].real / h
        lam_c = _RADAU_LAMBDA[1] / h
        solve_real = self.newton.cached_factorization(
            ("radau-real", h), lambda: combine(lam_r, mass, 1.0, jac_y)
        )
        solve_cplx = self.newton.cached_factorization(
            ("radau-complex", h), lambda: combine(lam_c, mass, 1.0, jac_y)
        )
        return solve_real, solve_cplx

    def attempt(self, t: float, y: FloatArray, h: float) -> StepAttempt:
        """Solve the collocation system and estimate the error."""
        if self._f is None:
            msg = "stepper used before reset"
            raise RuntimeError(msg)
        model = self.model
        n = y.size
        fev_before = model.n_fev
        t_stages = t + h * _RADAU_C
        _, mass = self.newton.jacobian_pair()

        z0 = (
            self._last.extrapolate_increments(_RADAU_C, h)
            if self._last is not None
            else np.zeros((3, n))
        )

        def residual(x: FloatArray) -> FloatArray:
            z = x.reshape(3, n)
            f_stages = np.array([model.fun(t_stages[i], y + z[i]) for i in range(3)])
            mz = np.asarray((mass @ z.T).T) if hasattr(mass, "toarray") else z @ np.asarray(mass).T
            return (_RADAU_A_INV @ mz - h * f_stages).ravel()

        def state_of(x: FloatArray) -> FloatArray:
            return (y + x.reshape(3, n)).ravel()

        def run() -> Any:
            solve_real, solve_cplx = self._solvers(h)

            def linear_solve(r: FloatArray) -> FloatArray:
                g = _RADAU_TI @ r.reshape(3, n)
                w = np.empty((3, n), dtype=np.complex128)
                w[0] = solve_real(np.real(g[0]) / h)
                w[1] = solve_cplx(g[1] / h)
                w[2] = np.conj(w[1])
                return np.real(_RADAU_T @ w).ravel()

            return self.newton.solve(
                residual, z0.ravel(), linear_solve, state_of, algebraic_scale=h
            )

        try:
            result = run()
        except ConvergenceFailure:
            if self.newton.jac_current:
                raise
            logger.debug("Radau Newton failed with a stale Jacobian; refreshing at t=%r", t)
            self.newton.update_jacobian(t, y, np.zeros_like(y), self._f)
            _, mass = self.newton.jacobian_pair()
            result = run()

        z = result.x.reshape(3, n)
        y_new = y + z[-1]

        solve_real, _ = self._solvers(h)
        ze = z.T.dot(_RADAU_E) / h
        m_ze = np.asarray(mass @ ze)
        error = np.real(solve_real(self._f + m_ze))
        if self._refine:
            error = np.real(solve_real(model.fun(t, y + error) + m_ze))

        return StepAttempt(
            t=t,
            h=h,
            y_new=y_new,
            error=error,
            error_order=_RADAU_ERROR_ORDER,
            n_fev=model.n_fev - fev_before,
            newton_iters=result.iterations,
            safety_scale=_newton_safety(self.newton.max_iter, result.iterations),
            payload=(y.copy(), z),
        )

    def accept(self, attempt: StepAttempt) -> tuple[DenseSegment, float | None]:
        """Commit the step and evaluate f at the new state."""
        y_old, z = attempt.payload
        segment = RadauSegment(attempt.t, attempt.t_new, y_old, attempt.y_new, _RADAU_C, z)
        self._last = segment
        self._f = self.model.fun(attempt.t_new, attempt.y_new)
        self._refine = False
        self.newton.mark_stale()
        return segment, None

    def reject(self, attempt: StepAttempt) -> None:
        """Refine the next error estimate after a rejection."""
        del attempt
        self._refine = True


# =============================================================================
# Dispatch / initial step
# =============================================================================


def make_stepper(
    descriptor: MethodDescriptor,
    model: ResidualModel,
    options: StepperOptions,
) -> Stepper:
    """Build the stepper for a method descriptor.

    Args:
        descriptor: Method descriptor.
        model: Residual model of the problem.
        options: Shared stepper options.

    Returns:
        Stepper instance.

    Raises:
        InvalidConfiguration: If the method cannot handle the problem form.
    """
    prob = model.problem
    if isinstance(descriptor, ExplicitRK):
        if not prob.is_explicit or prob.has_mass:
            raise_invalid_configuration(field="method", detail=_EXPLICIT_MASS_ERROR)
        return ExplicitRKStepper(descriptor, model, options)
    if isinstance(descriptor, BDF):
        return BDFStepper(descriptor, model, options)
    if isinstance(descriptor, Radau):
        if not prob.is_explicit or not prob.mass_is_constant:
            raise_invalid_configuration(field="method", detail=_RADAU_FORM_ERROR)
        return RadauStepper(descriptor, model, options)
    raise_invalid_configuration(
        field="method", detail=_UNKNOWN_DESCRIPTOR_ERROR.format(descriptor=descriptor)
    )
    raise AssertionError  # pragma: no cover


def _rms(x: FloatArray) -> float:
    return float(np.sqrt(np.mean(x * x))) if x.size else 0.0


def initial_step(  # noqa: PLR0913
    model: ResidualModel,
    t0: float,
    y0: FloatArray,
    span: float,
    order: int,
    options: StepperOptions,
    h_max: float,
) -> float:
    """Choose the first step size.

    For explicit problems without a mass matrix this uses Hairer's heuristic
    from the scaled norms of y0, f(t0, y0) and a trial Euler step. Otherwise it
    starts from 1e-4 of the integration span.

    Args:
        model: Residual model.
        t0: Start time.
        y0: Initial state.
        span: Length of the integration interval.
        order: Method order used by the heuristic.
        options: Stepper options (tolerances).
        h_max: Upper bound on the step.

    Returns:
        Positive initial step size.
    """
    prob = model.problem
    h_cap = min(h_max, span)
    if not prob.is_explicit or prob.has_mass:
        return float(min(1e-4 * span, h_cap))

    scale = options.atol + np.abs(y0) * options.rtol
    f0 = model.fun(t0, y0)
    d0 = _rms(y0 / scale)
    d1 = _rms(f0 / scale)
    h0 = 1e-6 if d0 < 1e-5 or d1 < 1e-5 else 0.01 * d0 / d1
    h0 = min(h0, h_cap)

    f1 = model.fun(t0 + h0, y0 + h0 * f0)
    d2 = _rms((f1 - f0) / scale) / h0
    if d1 <= 1e-15 and d2 <= 1e-15:
        h1 = max(1e-6, h0 * 1e-3)
    else:
        h1 = (0.01 / max(d1, d2)) ** (1.0 / (order + 1))
    return float(min(100 * h0, h1, h_cap))
