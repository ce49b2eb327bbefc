# ivp_engine/src/ivp_engine/linalg.py
"""Linear-algebra support for the implicit steppers.

This module provides:
- factorize: a reusable solve callable for dense (LAPACK LU) or sparse
  (SuperLU) iteration matrices, with singularity detection.
- finite_difference_jacobian: forward-difference Jacobians, optionally using
  column grouping for sparse patterns.
- group_columns: greedy structurally-orthogonal column grouping.

Design notes:
    * Public APIs operate on plain ndarrays or CSR/CSC matrices and never leak
      SciPy factorization objects; callers only see a ``solve(b) -> x``
      callable.
    * Factorization failures surface as SingularJacobian so the driver can
      shrink the step and retry.
"""

from __future__ import annotations

import warnings
from typing import TYPE_CHECKING, Any, TypeAlias, cast

import numpy as np
import numpy.typing as npt
from scipy.linalg import LinAlgWarning, lu_factor, lu_solve
from scipy.sparse import csc_matrix, csr_matrix, issparse
from scipy.sparse.linalg import splu

from .errors import SingularJacobian

if TYPE_CHECKING:
    from collections.abc import Callable

FloatArray = npt.NDArray[np.floating[Any]]
DenseMatrix: TypeAlias = npt.NDArray[Any]
Matrix: TypeAlias = DenseMatrix | csr_matrix | csc_matrix

EPS = float(np.finfo(np.float64).eps)

_SQUARE_ERROR = "iteration matrix must be square; got shape {shape}"
_SINGULAR_DENSE_MSG = "iteration matrix is singular (zero or non-finite pivot)"
_SINGULAR_SPARSE_MSG = "sparse iteration matrix is singular: {reason}"
_NON_FINITE_MSG = "iteration matrix contains non-finite entries"


# =============================================================================
# Factorization
# =============================================================================


def _check_square(shape: tuple[int, ...]) -> None:
    if len(shape) != 2 or shape[0] != shape[1]:
        raise ValueError(_SQUARE_ERROR.format(shape=shape))


def factorize(matrix: Matrix) -> Callable[[npt.NDArray[Any]], npt.NDArray[Any]]:
    """
    Factorize a square iteration matrix and return a reusable solver.

    Dense matrices use LAPACK LU (real or complex); sparse matrices use
    SuperLU on CSC storage.

    Args:
        matrix: Dense ndarray or SciPy sparse matrix.

    Returns:
        Callable solving ``matrix @ x = b`` for a 1D right-hand side b.

    Raises:
        SingularJacobian: If the matrix is exactly singular or the factors
            contain non-finite values.
    """
    if issparse(matrix):
        return _factorize_sparse(cast("csr_matrix", matrix))

    dense = np.asarray(matrix)
    _check_square(dense.shape)
    if not np.all(np.isfinite(dense)):
        raise SingularJacobian(_NON_FINITE_MSG)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", LinAlgWarning)
        lu, piv = lu_factor(dense, check_finite=False)

    diag = np.diagonal(lu)
    if np.any(diag == 0) or not np.all(np.isfinite(diag)):
        raise SingularJacobian(_SINGULAR_DENSE_MSG)

    def dense_solver(b: npt.NDArray[Any]) -> npt.NDArray[Any]:
        """
        Solve with the precomputed LU factors.

        Args:
            b: Right-hand side vector.

        Returns:
            Solution vector.
        """
        return cast("npt.NDArray[Any]", lu_solve((lu, piv), b, check_finite=False))

    return dense_solver


def _factorize_sparse(matrix: csr_matrix) -> Callable[[npt.NDArray[Any]], npt.NDArray[Any]]:
    _check_square(matrix.shape)
    csc = csc_matrix(matrix)
    if not np.all(np.isfinite(csc.data)):
        raise SingularJacobian(_NON_FINITE_MSG)
    try:
        lu = splu(csc)
    except RuntimeError as exc:
        raise SingularJacobian(_SINGULAR_SPARSE_MSG.format(reason=exc)) from exc

    def sparse_solver(b: npt.NDArray[Any]) -> npt.NDArray[Any]:
        return cast("npt.NDArray[Any]", lu.solve(np.asarray(b)))

    return sparse_solver


# =============================================================================
# Finite-difference Jacobians
# =============================================================================


def group_columns(sparsity: Any) -> list[FloatArray]:
    """
    Partition columns into structurally orthogonal groups.

    Two columns may share a group only if they have no nonzero row in common,
    so one perturbation per group recovers every column in it.

    Args:
        sparsity: Sparsity pattern (dense array or sparse matrix), shape (m, n).

    Returns:
        List of integer column-index arrays, one per group.
    """
    pattern = csc_matrix(sparsity)
    m, n = pattern.shape
    group_rows: list[npt.NDArray[np.bool_]] = []
    members: list[list[int]] = []

    for col in range(n):
        rows = pattern.indices[pattern.indptr[col] : pattern.indptr[col + 1]]
        for gid, used in enumerate(group_rows):
            if not np.any(used[rows]):
                used[rows] = True
                members[gid].append(col)
                break
        else:
            used = np.zeros(m, dtype=bool)
            used[rows] = True
            group_rows.append(used)
            members.append([col])

    return [np.asarray(cols, dtype=np.intp) for cols in members]


def _fd_steps(x: FloatArray) -> FloatArray:
    sign = np.where(x >= 0.0, 1.0, -1.0)
    h = np.sqrt(EPS) * sign * np.maximum(1.0, np.abs(x))
    # Representable step.
    return (x + h) - x


def finite_difference_jacobian(
    fun: Callable[[float, FloatArray], FloatArray],
    t: float,
    x: FloatArray,
    f0: FloatArray,
    *,
    sparsity: Any = None,
    groups: list[FloatArray] | None = None,
) -> DenseMatrix | csr_matrix:
    """
    Forward-difference Jacobian of ``fun(t, x)`` with respect to x.

    Args:
        fun: Vector function of (t, x).
        t: Time argument, held fixed.
        x: Point of evaluation, shape (n,).
        f0: fun(t, x), already evaluated.
        sparsity: Optional sparsity pattern; enables grouped differencing and a
            CSR result.
        groups: Precomputed column groups for `sparsity`.

    Returns:
        Dense (m, n) array, or CSR matrix when `sparsity` is given.
    """
    x = np.asarray(x, dtype=np.float64)
    steps = _fd_steps(x)

    if sparsity is None:
        jac = np.empty((f0.size, x.size), dtype=np.float64)
        for j in range(x.size):
            xp = x.copy()
            xp[j] += steps[j]
            jac[:, j] = (fun(t, xp) - f0) / steps[j]
        return jac

    pattern = csc_matrix(sparsity)
    if groups is None:
        groups = group_columns(pattern)

    rows_out: list[npt.NDArray[np.intp]] = []
    cols_out: list[npt.NDArray[np.intp]] = []
    vals_out: list[FloatArray] = []
    for cols in groups:
        xp = x.copy()
        xp[cols] += steps[cols]
        diff = fun(t, xp) - f0
        for col in cols:
            rows = pattern.indices[pattern.indptr[col] : pattern.indptr[col + 1]]
            rows_out.append(rows)
            cols_out.append(np.full(rows.size, col, dtype=np.intp))
            vals_out.append(diff[rows] / steps[col])

    if not rows_out:
        return csr_matrix(pattern.shape, dtype=np.float64)
    return csr_matrix(
        (np.concatenate(vals_out), (np.concatenate(rows_out), np.concatenate(cols_out))),
        shape=pattern.shape,
    )
