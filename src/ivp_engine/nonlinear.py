# ivp_engine/src/ivp_engine/nonlinear.py
"""Modified Newton iteration for implicit stage equations.

The solver is deliberately generic: a stepper hands it

    residual(x) -> r          the stage residual G(x)
    linear_solve(r) -> dx     an approximate solve with G'(x) (frozen Jacobian)
    state_of(x) -> y          the state used to scale the convergence test

and gets back a converged iterate or an exception. Convergence is judged on the
current iterate before every update:

    max_i w_i |r_i| / max(atol_i, rtol * |y_i|) <= tol_scale

so the returned iterate always satisfies the residual bound. Steppers scale
their stage residuals by the step (h or h / alpha). Rows with no derivative
dependence (zero rows of dF/dyp, i.e. algebraic equations) get the weight
w_i = 1 / algebraic_scale, so their constraint is tested in its own units and
does not vanish as h shrinks. Failure modes:

- the residual contracts with rate >= 1 (diverging): ConvergenceFailure early;
- max_iter updates without convergence: ConvergenceFailure;
- factorization failure in the stepper's linear_solve: SingularJacobian.

The NewtonSolver also owns the Jacobian / iteration-matrix bookkeeping shared by
the implicit steppers: the Jacobian pair is kept across steps (marked stale once
the state moves on) and factorized iteration matrices are cached by their step
scaling until the Jacobian changes.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, NoReturn, TypeAlias

import numpy as np
import numpy.typing as npt
from scipy.sparse import csr_matrix, issparse

from .errors import ConvergenceFailure
from .linalg import factorize

if TYPE_CHECKING:
    from collections.abc import Callable

    from .problem import ResidualModel

logger = logging.getLogger(__name__)

FloatArray = npt.NDArray[np.floating[Any]]
Matrix: TypeAlias = npt.NDArray[Any] | csr_matrix
SolveFunction: TypeAlias = "Callable[[npt.NDArray[Any]], npt.NDArray[Any]]"

_MAX_ITER_ERROR = "max_iter must be a positive integer; got {value}"
_CACHE_LIMIT = 8


@dataclass(frozen=True, slots=True)
class NewtonResult:
    """Converged Newton iterate.

    Attributes:
        x: Converged iterate.
        iterations: Number of updates applied.
        residual_norm: Scaled residual norm at `x` (<= tol_scale).
        rate: Last observed contraction rate, or None if no update was needed.
    """

    x: FloatArray
    iterations: int
    residual_norm: float
    rate: float | None


def scaled_max_norm(
    residual: FloatArray,
    state: FloatArray,
    atol: FloatArray | float,
    rtol: float,
) -> float:
    """Scaled max norm used by the convergence test.

    Args:
        residual: Residual vector.
        state: State used for relative scaling (same shape as residual).
        atol: Absolute tolerance (scalar or broadcastable).
        rtol: Relative tolerance.

    Returns:
        max(|r| / max(atol, rtol * |y|)); inf if the residual is non-finite.
    """
    if not np.all(np.isfinite(residual)):
        return float("inf")
    scale = np.maximum(atol, rtol * np.abs(state))
    return float(np.max(np.abs(residual) / scale)) if residual.size else 0.0


def zero_rows(matrix: Matrix) -> npt.NDArray[np.bool_]:
    """Mask of rows without a single nonzero entry."""
    if issparse(matrix):
        counts = np.asarray(abs(matrix).sum(axis=1)).ravel()
        return counts == 0.0
    return ~np.any(np.asarray(matrix) != 0.0, axis=1)


class NewtonSolver:
    """Modified Newton solver with Jacobian reuse and factorization caching."""

    def __init__(
        self,
        model: ResidualModel,
        *,
        atol: FloatArray | float,
        rtol: float,
        max_iter: int = 6,
        tol_scale: float = 0.1,
    ) -> None:
        """Initialize the solver.

        Args:
            model: Residual model providing Jacobians.
            atol: Absolute tolerance (scalar or per-component).
            rtol: Relative tolerance.
            max_iter: Maximum number of Newton updates per solve.
            tol_scale: Fraction of the tolerance the residual must reach.

        Raises:
            ValueError: If max_iter is not a positive integer.
        """
        if int(max_iter) != max_iter or max_iter < 1:
            raise ValueError(_MAX_ITER_ERROR.format(value=max_iter))
        self.model = model
        self.atol = atol
        self.rtol = float(rtol)
        self.max_iter = int(max_iter)
        self.tol_scale = float(tol_scale)

        self.jac_y: Matrix | None = None
        self.jac_yp: Matrix | None = None
        self.jac_current = False
        self.algebraic = np.zeros(model.n, dtype=bool)
        self._lu_cache: dict[Hashable, SolveFunction] = {}

        self.n_lu = 0
        self.n_iterations = 0
        self.n_failures = 0

    # -------------------------------------------------------------------------
    # Jacobian bookkeeping
    # -------------------------------------------------------------------------

    def update_jacobian(
        self,
        t: float,
        y: FloatArray,
        yp: FloatArray,
        f0: FloatArray | None = None,
    ) -> None:
        """Evaluate a fresh Jacobian pair and drop cached factorizations."""
        self.jac_y, self.jac_yp = self.model.jacobians(t, y, yp, f0)
        self.algebraic = zero_rows(self.jac_yp)
        self.jac_current = True
        self._lu_cache.clear()

    def mark_stale(self) -> None:
        """Flag the Jacobian as evaluated at an earlier state."""
        self.jac_current = False

    def clear_factorizations(self) -> None:
        """Drop cached factorizations (e.g. after a state-dependent mass change)."""
        self._lu_cache.clear()

    def iteration_solver(self, c: float) -> SolveFunction:
        """Factorized solve with ``c * J_y + J_yp`` (cached by c).

        Args:
            c: Step scaling of the iteration matrix.

        Returns:
            Solve callable.

        Raises:
            SingularJacobian: If the iteration matrix is singular.
        """
        jac_y, jac_yp = self.jacobian_pair()
        return self.cached_factorization(
            ("iteration", float(c)), lambda: combine(c, jac_y, 1.0, jac_yp)
        )

    def jacobian_pair(self) -> tuple[Matrix, Matrix]:
        """Return the stored Jacobian pair (J_y, J_yp).

        Raises:
            RuntimeError: If no Jacobian has been evaluated yet.
        """
        if self.jac_y is None or self.jac_yp is None:
            msg = "update_jacobian must be called before requesting iteration matrices"
            raise RuntimeError(msg)
        return self.jac_y, self.jac_yp

    def cached_factorization(
        self,
        key: Hashable,
        build: Callable[[], Any],
    ) -> SolveFunction:
        """Return a cached factorization, building it on a miss.

        Args:
            key: Cache key (valid until the Jacobian changes).
            build: Zero-argument callable producing the matrix to factorize.

        Returns:
            Solve callable.

        Raises:
            SingularJacobian: If the matrix is singular.
        """
        cached = self._lu_cache.get(key)
        if cached is not None:
            return cached
        solve = self.factorize(build())
        if len(self._lu_cache) >= _CACHE_LIMIT:
            self._lu_cache.pop(next(iter(self._lu_cache)))
        self._lu_cache[key] = solve
        return solve

    def factorize(self, matrix: Matrix) -> SolveFunction:
        """Factorize a matrix, counting the decomposition."""
        self.n_lu += 1
        return factorize(matrix)

    # -------------------------------------------------------------------------
    # Iteration
    # -------------------------------------------------------------------------

    def solve(
        self,
        residual: Callable[[FloatArray], FloatArray],
        x0: FloatArray,
        linear_solve: Callable[[FloatArray], FloatArray],
        state_of: Callable[[FloatArray], FloatArray],
        *,
        algebraic_scale: float = 1.0,
    ) -> NewtonResult:
        """Run modified Newton from `x0`.

        Args:
            residual: Stage residual G(x).
            x0: Initial guess (not modified).
            linear_solve: Approximate solve with G'(x).
            state_of: Maps an iterate to the state used for tolerance scaling.
            algebraic_scale: Factor the stepper applied to the algebraic rows
                of G; those rows are divided by it before the test.

        Returns:
            NewtonResult with a converged iterate.

        Raises:
            ConvergenceFailure: On divergence or iteration budget exhaustion.
        """
        x = np.array(x0, dtype=np.float64)
        weights = self._weights(x.size, algebraic_scale)
        prev_norm: float | None = None
        rate: float | None = None

        for k in range(self.max_iter + 1):
            r = residual(x)
            test_r = r if weights is None else weights * r
            norm = scaled_max_norm(test_r, state_of(x), self.atol, self.rtol) / self.tol_scale
            if norm <= 1.0:
                self.n_iterations += k
                return NewtonResult(x=x, iterations=k, residual_norm=norm, rate=rate)

            if prev_norm is not None:
                rate = norm / prev_norm if prev_norm > 0.0 else float("inf")
                if not np.isfinite(norm) or rate >= 1.0:
                    self._fail(k, norm, "diverging")
            elif not np.isfinite(norm):
                self._fail(k, norm, "non-finite residual")

            if k == self.max_iter:
                break

            x = x - np.real(linear_solve(r))
            prev_norm = norm

        self._fail(self.max_iter, norm, "iteration budget exhausted")

    def _weights(self, size: int, algebraic_scale: float) -> FloatArray | None:
        mask = self.algebraic
        if algebraic_scale == 1.0 or not mask.any() or size % mask.size:
            return None
        # Stage vectors stack one block of the state per stage.
        mask = np.tile(mask, size // mask.size)
        return np.where(mask, 1.0 / algebraic_scale, 1.0)

    def _fail(self, iterations: int, norm: float, reason: str) -> NoReturn:
        self.n_iterations += iterations
        self.n_failures += 1
        logger.debug("Newton failure after %d iteration(s): %s", iterations, reason)
        raise ConvergenceFailure(iterations, norm * self.tol_scale)


def combine(a_scale: complex, a: Any, b_scale: complex, b: Any) -> Any:
    """Return ``a_scale * a + b_scale * b`` for dense or sparse operands.

    Sparse operands produce a CSR result; otherwise a dense ndarray.
    """
    if issparse(a) or issparse(b):
        return csr_matrix(a_scale * csr_matrix(a) + b_scale * csr_matrix(b))
    return a_scale * np.asarray(a) + b_scale * np.asarray(b)

