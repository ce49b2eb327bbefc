# ivp_engine/src/ivp_engine/problem.py
"""Problem definition: state, callbacks, mass matrix and residual model.

A :class:`Problem` bundles everything the engine needs to know about the system
being integrated:

    explicit form:  M(t, y) y' = f(t, y)          rhs(t, y, params)
    implicit form:  F(t, y, y') = 0               residual(t, y, yp, params)

Callbacks always receive the caller's parameter object explicitly; the engine
never captures mutable state on the caller's behalf. Right-hand sides may
return either a plain array or an :class:`RHSResult` carrying named auxiliary
outputs (for example the face fluxes computed by the flux layer).

The implicit steppers never talk to a Problem directly. They use a
:class:`ResidualModel`, which presents both forms through one interface:

    F(t, y, yp) = M(t, y) yp - f(t, y)     (explicit form)
    F(t, y, yp) = residual(t, y, yp)       (implicit form)

together with the Jacobian pair (dF/dy, dF/dyp).
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, TypeAlias, cast

import numpy as np
import numpy.typing as npt
from scipy.sparse import csr_matrix, issparse
from scipy.sparse import identity as sparse_identity

from .errors import raise_invalid_configuration
from .linalg import finite_difference_jacobian, group_columns

FloatArray = npt.NDArray[np.floating[Any]]
Matrix: TypeAlias = FloatArray | csr_matrix

RHSCallback = Callable[..., Any]
ResidualCallback = Callable[[float, FloatArray, FloatArray, Any], Any]
MassCallback = Callable[[float, FloatArray, Any], Any]
RootCallback = Callable[[float, FloatArray, Any], Sequence[float] | FloatArray]
ResetCallback = Callable[[float, FloatArray, Any], npt.ArrayLike]
HistoryCallback = Callable[[float], npt.ArrayLike]
LagProvider = Callable[[float], "LaggedState"]

_FORM_ERROR = "exactly one of rhs (explicit form) or residual (implicit form) is required"
_Y0_ERROR = "y0 must be a non-empty 1D array of finite values"
_YP0_ERROR = "residual form requires yp0 with the same shape as y0"
_DELAY_ERROR = "delays must be finite and strictly positive; got {delays}"
_DELAY_FORM_ERROR = "delays are only supported for the explicit rhs form"
_MASS_SHAPE_ERROR = "mass matrix shape {shape} does not match state size {n}"
_MASS_FORM_ERROR = "mass_matrix is only meaningful for the explicit rhs form"
_INDEX_SHAPE_ERROR = "index_vector must hold one non-negative integer per state component"
_INDEX_RANK_ERROR = (
    "index_vector marks {n_diff} differential equation(s) but the derivative "
    "coefficient matrix has rank {rank}"
)
_DIRECTION_ERROR = "event_direction entries must be -1, 0 or +1"
_EVENT_TIMES_ERROR = "event_times must be finite"
_RESET_ERROR = "event_times require an event_reset callback"
_HISTORY_SHAPE_ERROR = "initial_history must match the shape of y0"
_DERIV_SHAPE_ERROR = "callback returned shape {actual}; expected {expected}"


# =============================================================================
# Structured callback results
# =============================================================================


@dataclass(frozen=True, slots=True)
class RHSResult:
    """Structured right-hand-side (or residual) result.

    Attributes:
        derivative: Derivative vector (or residual vector for the implicit form).
        aux: Named auxiliary outputs, recorded at report times when requested.
    """

    derivative: FloatArray
    aux: Mapping[str, Any] = field(default_factory=dict)


def normalize_result(out: Any, n: int) -> tuple[FloatArray, Mapping[str, Any]]:
    """Split a callback result into (vector, aux) and validate its shape.

    Args:
        out: Plain array-like or RHSResult.
        n: Expected vector length.

    Returns:
        Tuple of the float64 vector and the (possibly empty) aux mapping.

    Raises:
        ValueError: If the vector does not have shape (n,).
    """
    if isinstance(out, RHSResult):
        vec, aux = out.derivative, out.aux
    else:
        vec, aux = out, {}
    arr = np.asarray(vec, dtype=np.float64)
    if arr.shape != (n,):
        raise ValueError(_DERIV_SHAPE_ERROR.format(actual=arr.shape, expected=(n,)))
    return arr, aux


@dataclass(frozen=True, slots=True)
class LaggedState:
    """Delayed state handed to delay right-hand sides.

    Attributes:
        values: y(t - tau_k) for each delay, shape (n_delays, n).
        derivatives: y'(t - tau_k) for each delay, shape (n_delays, n).
    """

    values: FloatArray
    derivatives: FloatArray


# =============================================================================
# Problem
# =============================================================================


@dataclass(frozen=True, slots=True)
class Problem:
    """Initial-value problem description.

    Attributes:
        y0: Initial state (copied to a 1D float64 array).
        t0: Initial time.
        rhs: Explicit right-hand side ``rhs(t, y, params)``, or
            ``rhs(t, y, params, lagged)`` when delays are configured.
        residual: Implicit residual ``residual(t, y, yp, params)``.
        yp0: Initial derivative guess; required for the residual form.
        params: Caller's immutable parameter object.
        mass_matrix: None (identity), constant dense/sparse matrix, or callable
            ``(t, y, params) -> matrix``.
        index_vector: Differential index per equation (1 differential,
            0 algebraic, k >= 2 higher-index algebraic).
        jacobian: Optional user Jacobian. Explicit form: ``(t, y, params) -> J``
            (df/dy). Implicit form: ``(t, y, yp, params) -> (J_y, J_yp)``.
        jac_sparsity: Optional Jacobian sparsity pattern for grouped
            finite differences.
        root_fn: Root functions ``(t, y, params) -> sequence``.
        event_reset: State reset ``(t, y, params) -> y_new``.
        event_direction: Per-root crossing direction (0 any, +1 rising,
            -1 falling); a scalar applies to every root.
        terminal_events: Root indices that stop the run once located.
        event_times: Scheduled reset times.
        delays: Constant positive delays.
        initial_history: Constant array or callable ``t -> y`` for t < t0.
    """

    y0: FloatArray
    t0: float = 0.0
    rhs: RHSCallback | None = None
    residual: ResidualCallback | None = None
    yp0: FloatArray | None = None
    params: Any = None
    mass_matrix: Any = None
    index_vector: npt.ArrayLike | None = None
    jacobian: Callable[..., Any] | None = None
    jac_sparsity: Any = None
    root_fn: RootCallback | None = None
    event_reset: ResetCallback | None = None
    event_direction: int | Sequence[int] = 0
    terminal_events: tuple[int, ...] = ()
    event_times: tuple[float, ...] = ()
    delays: tuple[float, ...] = ()
    initial_history: npt.ArrayLike | HistoryCallback | None = None

    def __post_init__(self) -> None:
        """Copy array inputs so the engine never aliases caller buffers."""
        object.__setattr__(self, "y0", np.array(self.y0, dtype=np.float64, ndmin=1))
        object.__setattr__(self, "t0", float(self.t0))
        if self.yp0 is not None:
            object.__setattr__(self, "yp0", np.array(self.yp0, dtype=np.float64, ndmin=1))
        object.__setattr__(self, "delays", tuple(float(d) for d in self.delays))
        object.__setattr__(self, "event_times", tuple(float(t) for t in self.event_times))
        object.__setattr__(self, "terminal_events", tuple(int(i) for i in self.terminal_events))

    @property
    def n(self) -> int:
        """State size."""
        return int(self.y0.size)

    @property
    def is_explicit(self) -> bool:
        """Whether the problem is given in explicit ``M y' = f`` form."""
        return self.rhs is not None

    @property
    def has_delays(self) -> bool:
        """Whether the right-hand side takes lagged states."""
        return bool(self.delays)

    @property
    def has_mass(self) -> bool:
        """Whether a non-identity mass matrix is configured."""
        return self.mass_matrix is not None

    @property
    def mass_is_constant(self) -> bool:
        """Whether the mass matrix (if any) is constant."""
        return not callable(self.mass_matrix)

    def mass_at(self, t: float, y: FloatArray) -> Matrix | None:
        """Evaluate the mass matrix, or None for the identity."""
        if self.mass_matrix is None:
            return None
        raw = (
            self.mass_matrix(t, y, self.params)
            if callable(self.mass_matrix)
            else self.mass_matrix
        )
        return _as_matrix(raw)

    def with_params(self, params: Any) -> Problem:
        """Return a copy bound to a different parameter object."""
        return replace(self, params=params)

    def validate(self) -> None:
        """Reject invalid configurations before any integration work.

        Raises:
            InvalidConfiguration: On any inconsistency.
        """
        validate_problem(self)


def _as_matrix(raw: Any) -> Matrix:
    if issparse(raw):
        return csr_matrix(raw, dtype=np.float64)
    return np.atleast_2d(np.asarray(raw, dtype=np.float64))


def _matrix_rank(mat: Matrix) -> int:
    dense = mat.toarray() if issparse(mat) else np.asarray(mat)
    return int(np.linalg.matrix_rank(dense))


def validate_problem(problem: Problem) -> None:  # noqa: C901, PLR0912
    """Validate a problem definition.

    Args:
        problem: Problem to check.

    Raises:
        InvalidConfiguration: On any inconsistency.
    """
    if (problem.rhs is None) == (problem.residual is None):
        raise_invalid_configuration(field="rhs/residual", detail=_FORM_ERROR)

    y0 = problem.y0
    if y0.ndim != 1 or y0.size == 0 or not np.all(np.isfinite(y0)):
        raise_invalid_configuration(field="y0", detail=_Y0_ERROR)
    if not np.isfinite(problem.t0):
        raise_invalid_configuration(field="t0", detail="t0 must be finite")
    n = problem.n

    if problem.residual is not None:
        yp0 = problem.yp0
        if yp0 is None or yp0.shape != y0.shape or not np.all(np.isfinite(yp0)):
            raise_invalid_configuration(field="yp0", detail=_YP0_ERROR)
        if problem.mass_matrix is not None:
            raise_invalid_configuration(field="mass_matrix", detail=_MASS_FORM_ERROR)

    if problem.delays:
        if any(not np.isfinite(d) or d <= 0.0 for d in problem.delays):
            raise_invalid_configuration(
                field="delays", detail=_DELAY_ERROR.format(delays=problem.delays)
            )
        if not problem.is_explicit:
            raise_invalid_configuration(field="delays", detail=_DELAY_FORM_ERROR)

    hist = problem.initial_history
    if hist is not None and not callable(hist):
        if np.shape(hist) != y0.shape:
            raise_invalid_configuration(field="initial_history", detail=_HISTORY_SHAPE_ERROR)

    mass = problem.mass_at(problem.t0, y0)
    if mass is not None and mass.shape != (n, n):
        raise_invalid_configuration(
            field="mass_matrix", detail=_MASS_SHAPE_ERROR.format(shape=mass.shape, n=n)
        )

    if problem.index_vector is not None:
        _validate_index_vector(problem, mass)

    direction = np.atleast_1d(np.asarray(problem.event_direction))
    if not np.all(np.isin(direction, (-1, 0, 1))):
        raise_invalid_configuration(field="event_direction", detail=_DIRECTION_ERROR)

    if problem.event_times:
        if not all(np.isfinite(t) for t in problem.event_times):
            raise_invalid_configuration(field="event_times", detail=_EVENT_TIMES_ERROR)
        if problem.event_reset is None:
            raise_invalid_configuration(field="event_times", detail=_RESET_ERROR)


def _validate_index_vector(problem: Problem, mass: Matrix | None) -> None:
    idx = np.asarray(problem.index_vector)
    n = problem.n
    if (
        idx.shape != (n,)
        or not np.all(np.equal(np.mod(idx, 1), 0))
        or np.any(idx < 0)
    ):
        raise_invalid_configuration(field="index_vector", detail=_INDEX_SHAPE_ERROR)

    if problem.is_explicit:
        rank = n if mass is None else _matrix_rank(mass)
    else:
        model = ResidualModel(problem)
        yp0 = cast("FloatArray", problem.yp0)
        _, j_yp = model.jacobians(problem.t0, problem.y0, yp0)
        rank = _matrix_rank(j_yp)

    n_diff = int(np.count_nonzero(idx == 1))
    if n_diff != rank:
        raise_invalid_configuration(
            field="index_vector", detail=_INDEX_RANK_ERROR.format(n_diff=n_diff, rank=rank)
        )


def initial_history_at(problem: Problem) -> Callable[[float], FloatArray] | None:
    """Normalize ``initial_history`` into a callable, or None."""
    hist = problem.initial_history
    if hist is None:
        return None
    if callable(hist):
        fn = cast("HistoryCallback", hist)
        return lambda t: np.asarray(fn(t), dtype=np.float64)
    const = np.array(hist, dtype=np.float64)
    return lambda _t: const.copy()


# =============================================================================
# Residual model (internal view for implicit methods)
# =============================================================================


class ResidualModel:
    """Uniform evaluation interface over explicit and implicit problem forms.

    Counts every user-callback evaluation so the driver can report
    function/Jacobian totals.
    """

    def __init__(self, problem: Problem, lag_provider: LagProvider | None = None) -> None:
        """Initialize the model.

        Args:
            problem: Validated problem.
            lag_provider: Callable returning the LaggedState for a time; required
                when the problem has delays.
        """
        self.problem = problem
        self.n = problem.n
        self.lag_provider = lag_provider
        self.n_fev = 0
        self.n_jev = 0
        self.last_aux: Mapping[str, Any] = {}
        self._groups: tuple[list[FloatArray], csr_matrix] | None = None
        if problem.jac_sparsity is not None:
            pattern = csr_matrix(problem.jac_sparsity)
            self._groups = (group_columns(pattern), pattern)

    @property
    def is_explicit(self) -> bool:
        """Whether the underlying problem is in explicit form."""
        return self.problem.is_explicit

    @property
    def sparse(self) -> bool:
        """Whether Jacobians are assembled as sparse matrices."""
        return self._groups is not None

    def fun(self, t: float, y: FloatArray) -> FloatArray:
        """Evaluate f(t, y) for the explicit form."""
        prob = self.problem
        rhs = cast("RHSCallback", prob.rhs)
        self.n_fev += 1
        if prob.has_delays:
            if self.lag_provider is None:
                msg = "delay problems need a lag provider"
                raise RuntimeError(msg)
            out = rhs(t, y, prob.params, self.lag_provider(t))
        else:
            out = rhs(t, y, prob.params)
        vec, aux = normalize_result(out, self.n)
        self.last_aux = aux
        return vec

    def mass(self, t: float, y: FloatArray) -> Matrix | None:
        """Mass matrix at (t, y), or None for the identity."""
        return self.problem.mass_at(t, y)

    def derivative_at(self, t: float, y: FloatArray) -> FloatArray:
        """Derivative implied by the explicit form (least squares for singular M)."""
        f = self.fun(t, y)
        mass = self.mass(t, y)
        if mass is None:
            return f
        dense = mass.toarray() if hasattr(mass, "toarray") else np.asarray(mass)
        return np.linalg.lstsq(dense, f, rcond=None)[0]

    def mass_dot(self, t: float, y: FloatArray, v: FloatArray) -> FloatArray:
        """Compute M(t, y) @ v."""
        mass = self.mass(t, y)
        if mass is None:
            return v
        return np.asarray(mass @ v, dtype=np.float64)

    def residual(self, t: float, y: FloatArray, yp: FloatArray) -> FloatArray:
        """Evaluate F(t, y, yp)."""
        prob = self.problem
        if prob.is_explicit:
            return self.mass_dot(t, y, yp) - self.fun(t, y)
        res = cast("ResidualCallback", prob.residual)
        self.n_fev += 1
        vec, aux = normalize_result(res(t, y, yp, prob.params), self.n)
        self.last_aux = aux
        return vec

    def fun_jacobian(self, t: float, y: FloatArray, f0: FloatArray | None = None) -> Matrix:
        """Jacobian df/dy of the explicit right-hand side."""
        prob = self.problem
        self.n_jev += 1
        if prob.jacobian is not None:
            return _as_matrix(prob.jacobian(t, y, prob.params))
        f_ref = self.fun(t, y) if f0 is None else f0
        return self._fd(lambda tt, yy: self.fun(tt, yy), t, y, f_ref)

    def jacobians(
        self,
        t: float,
        y: FloatArray,
        yp: FloatArray,
        f0: FloatArray | None = None,
    ) -> tuple[Matrix, Matrix]:
        """Jacobian pair (dF/dy, dF/dyp) at (t, y, yp).

        Args:
            t: Time.
            y: State.
            yp: State derivative.
            f0: Optional f(t, y) (explicit form) or F(t, y, yp) (implicit form)
                already evaluated at this point.

        Returns:
            Tuple (J_y, J_yp).
        """
        prob = self.problem
        if prob.is_explicit:
            j_f = self.fun_jacobian(t, y, f0)
            mass = self.mass(t, y)
            if mass is None:
                mass = sparse_identity(self.n, format="csr") if self.sparse else np.eye(self.n)
            if not prob.mass_is_constant:
                # d(M(y) yp)/dy contribution.
                mv = lambda tt, yy: self.mass_dot(tt, yy, yp)  # noqa: E731
                j_m = self._fd(mv, t, y, self.mass_dot(t, y, yp))
                return _combine(j_m, j_f, -1.0), mass
            return _negate(j_f), mass

        self.n_jev += 1
        if prob.jacobian is not None:
            j_y, j_yp = prob.jacobian(t, y, yp, prob.params)
            return _as_matrix(j_y), _as_matrix(j_yp)
        f_ref = self.residual(t, y, yp) if f0 is None else f0
        j_y = self._fd(lambda tt, yy: self.residual(tt, yy, yp), t, y, f_ref)
        j_yp = self._fd(lambda tt, pp: self.residual(tt, y, pp), t, yp, f_ref)
        return j_y, j_yp

    def _fd(
        self,
        fun: Callable[[float, FloatArray], FloatArray],
        t: float,
        x: FloatArray,
        f0: FloatArray,
    ) -> Matrix:
        if self._groups is None:
            return finite_difference_jacobian(fun, t, x, f0)
        groups, pattern = self._groups
        return finite_difference_jacobian(fun, t, x, f0, sparsity=pattern, groups=groups)


def _negate(mat: Matrix) -> Matrix:
    return cast("Matrix", -mat)


def _combine(a: Matrix, b: Matrix, b_scale: float) -> Matrix:
    if issparse(a) or issparse(b):
        return csr_matrix(csr_matrix(a) + b_scale * csr_matrix(b))
    return cast("FloatArray", np.asarray(a) + b_scale * np.asarray(b))
