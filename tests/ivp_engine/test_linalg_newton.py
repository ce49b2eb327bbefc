# tests/ivp_engine/test_linalg_newton.py
"""Tests for factorization, finite-difference Jacobians and the Newton solver."""

from __future__ import annotations

import numpy as np
import pytest
from scipy.sparse import csr_matrix, diags

from ivp_engine.errors import ConvergenceFailure, SingularJacobian
from ivp_engine.linalg import factorize, finite_difference_jacobian, group_columns
from ivp_engine.nonlinear import NewtonSolver, combine, scaled_max_norm
from ivp_engine.problem import Problem, ResidualModel

# -----------------------------------------------------------------------------
# Factorization
# -----------------------------------------------------------------------------


def test_dense_and_sparse_factorizations_solve() -> None:
    mat = np.array([[4.0, 1.0, 0.0], [1.0, 3.0, 1.0], [0.0, 1.0, 2.0]])
    b = np.array([1.0, 2.0, 3.0])
    expected = np.linalg.solve(mat, b)

    np.testing.assert_allclose(factorize(mat)(b), expected)
    np.testing.assert_allclose(factorize(csr_matrix(mat))(b), expected)


def test_complex_factorization() -> None:
    mat = np.array([[2.0 + 1.0j, 0.0], [1.0, 3.0 - 2.0j]])
    b = np.array([1.0, 1.0j])
    np.testing.assert_allclose(mat @ factorize(mat)(b), b)


@pytest.mark.parametrize(
    "mat",
    [
        np.array([[1.0, 2.0], [2.0, 4.0]]),
        np.zeros((2, 2)),
        np.array([[1.0, np.nan], [0.0, 1.0]]),
        csr_matrix(np.array([[1.0, 0.0], [0.0, 0.0]])),
    ],
)
def test_singular_matrices_raise(mat: object) -> None:
    with pytest.raises(SingularJacobian):
        factorize(mat)  # type: ignore[arg-type]


def test_non_square_matrix_raises() -> None:
    with pytest.raises(ValueError, match="square"):
        factorize(np.ones((2, 3)))


# -----------------------------------------------------------------------------
# Finite differences
# -----------------------------------------------------------------------------


def _tridiagonal_fun(t: float, x: np.ndarray) -> np.ndarray:
    out = -2.0 * x**2
    out[1:] += x[:-1]
    out[:-1] += np.sin(x[1:])
    return out + t


def test_column_groups_are_structurally_orthogonal() -> None:
    pattern = diags([1.0, 1.0, 1.0], [-1, 0, 1], shape=(9, 9))
    groups = group_columns(pattern)

    assert len(groups) == 3
    assert sorted(np.concatenate(groups).tolist()) == list(range(9))


def test_grouped_jacobian_matches_dense() -> None:
    x = np.linspace(0.1, 1.0, 9)
    f0 = _tridiagonal_fun(0.0, x)
    pattern = diags([1.0, 1.0, 1.0], [-1, 0, 1], shape=(9, 9))

    dense = finite_difference_jacobian(_tridiagonal_fun, 0.0, x, f0)
    grouped = finite_difference_jacobian(_tridiagonal_fun, 0.0, x, f0, sparsity=pattern)

    assert isinstance(dense, np.ndarray)
    assert grouped.shape == (9, 9)
    np.testing.assert_allclose(grouped.toarray(), dense, atol=1e-6)  # type: ignore[union-attr]
    np.testing.assert_allclose(np.diag(dense), -4.0 * x, rtol=1e-5)


# -----------------------------------------------------------------------------
# Newton
# -----------------------------------------------------------------------------


def _model() -> ResidualModel:
    return ResidualModel(Problem(y0=[1.0, 2.0], rhs=lambda t, y, p: -y))


def test_scaled_max_norm() -> None:
    r = np.array([1e-6, -4e-6])
    y = np.array([1.0, 100.0])
    assert scaled_max_norm(r, y, 1e-6, 1e-6) == pytest.approx(1.0)
    assert scaled_max_norm(np.array([np.inf]), np.zeros(1), 1.0, 1.0) == np.inf


def test_newton_converges_on_a_linear_system() -> None:
    solver = NewtonSolver(_model(), atol=1e-10, rtol=1e-8)
    mat = np.array([[3.0, 1.0], [1.0, 2.0]])
    rhs = np.array([1.0, 0.0])
    solve = factorize(mat)

    result = solver.solve(lambda x: mat @ x - rhs, np.zeros(2), solve, lambda x: x)

    np.testing.assert_allclose(result.x, np.linalg.solve(mat, rhs), atol=1e-10)
    assert result.iterations == 1
    assert result.residual_norm <= 1.0


def test_newton_returns_immediately_when_already_converged() -> None:
    solver = NewtonSolver(_model(), atol=1e-6, rtol=1e-6)
    result = solver.solve(lambda x: x * 0.0, np.ones(2), lambda r: r, lambda x: x)
    assert result.iterations == 0
    assert result.rate is None


def test_newton_diverging_iteration_fails_early() -> None:
    solver = NewtonSolver(_model(), atol=1e-8, rtol=1e-8, max_iter=10)

    # Wrong-sign Jacobian: every update doubles the residual.
    with pytest.raises(ConvergenceFailure) as info:
        solver.solve(lambda x: x, np.ones(2), lambda r: -r, lambda x: x)

    assert info.value.iterations == 1
    assert solver.n_failures == 1


def test_newton_budget_exhaustion() -> None:
    solver = NewtonSolver(_model(), atol=1e-12, rtol=1e-12, max_iter=3)

    # A frozen Jacobian that is 10x too large contracts slowly (rate 0.9).
    with pytest.raises(ConvergenceFailure, match="did not converge"):
        solver.solve(lambda x: x, np.ones(2), lambda r: 0.1 * r, lambda x: x)


def test_newton_rejects_bad_iteration_bound() -> None:
    with pytest.raises(ValueError, match="max_iter"):
        NewtonSolver(_model(), atol=1e-6, rtol=1e-6, max_iter=0)


def test_iteration_matrices_are_cached_until_the_jacobian_changes() -> None:
    solver = NewtonSolver(_model(), atol=1e-6, rtol=1e-6)
    solver.update_jacobian(0.0, np.array([1.0, 2.0]), np.zeros(2))

    jac_y, jac_yp = solver.jacobian_pair()
    np.testing.assert_allclose(jac_y, np.eye(2), atol=1e-6)
    np.testing.assert_allclose(jac_yp, np.eye(2))

    solver.iteration_solver(0.1)
    solver.iteration_solver(0.1)
    assert solver.n_lu == 1
    solver.iteration_solver(0.2)
    assert solver.n_lu == 2

    solver.update_jacobian(0.0, np.array([1.0, 2.0]), np.zeros(2))
    solver.iteration_solver(0.1)
    assert solver.n_lu == 3


def test_algebraic_rows_are_tested_unscaled() -> None:
    model = ResidualModel(
        Problem(y0=[1.0, 1.0], rhs=lambda t, y, p: -y, mass_matrix=np.diag([1.0, 0.0]))
    )
    solver = NewtonSolver(model, atol=1e-6, rtol=1e-6)
    solver.update_jacobian(0.0, np.array([1.0, 1.0]), np.zeros(2))
    np.testing.assert_array_equal(solver.algebraic, [False, True])

    c = 1e-6
    target = np.array([1.0, 1.0])
    x0 = np.array([1.0, 1.0 - 1e-3])

    def residual(x: np.ndarray) -> np.ndarray:
        return c * (x - target)

    # Scaled by c, the constraint violation of 1e-3 looks converged.
    loose = solver.solve(residual, x0, lambda r: r / c, lambda x: x)
    assert loose.iterations == 0

    strict = solver.solve(residual, x0, lambda r: r / c, lambda x: x, algebraic_scale=c)
    assert strict.iterations == 1
    np.testing.assert_allclose(strict.x, target)


def test_jacobian_pair_requires_an_update() -> None:
    solver = NewtonSolver(_model(), atol=1e-6, rtol=1e-6)
    with pytest.raises(RuntimeError, match="update_jacobian"):
        solver.jacobian_pair()


def test_combine_dense_and_sparse() -> None:
    a = np.eye(2)
    b = np.ones((2, 2))
    np.testing.assert_allclose(combine(2.0, a, 1.0, b), [[3.0, 1.0], [1.0, 3.0]])
    sparse = combine(2.0, csr_matrix(a), 1.0, b)
    assert isinstance(sparse, csr_matrix)
    np.testing.assert_allclose(sparse.toarray(), [[3.0, 1.0], [1.0, 3.0]])
