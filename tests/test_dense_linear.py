"""
Unit tests for the dense SciPy linear solve used by the Newton step.

Tests:
1. Known solution and residual bookkeeping
2. Singular / non-finite systems raise SingularSystemError
3. Shape errors raise ValueError
4. Empty system returns an empty solution
"""

from __future__ import annotations

import numpy as np
import pytest

from solvers.condensed_types import CondensedPhaseError, SingularSystemError, SolveStatus
from solvers.dense_linear import solve_dense_system


def test_known_solution():
    A = np.array([[4.0, 1.0, 0.0], [1.0, 3.0, -1.0], [0.0, -1.0, 2.0]])
    x_true = np.array([1.0, -2.0, 0.5])
    b = A @ x_true
    A_before = A.copy()

    res = solve_dense_system(A, b)

    np.testing.assert_allclose(res.x, x_true, rtol=1e-12)
    assert res.converged
    assert res.method == "dense_lu"
    assert res.n_unknowns == 3
    assert res.residual_norm < 1e-12
    np.testing.assert_array_equal(A, A_before)


def test_singular_matrix_raises():
    A = np.array([[1.0, 2.0], [2.0, 4.0]])
    with pytest.raises(SingularSystemError) as excinfo:
        solve_dense_system(A, np.array([1.0, 1.0]))
    assert isinstance(excinfo.value, CondensedPhaseError)
    assert excinfo.value.status == SolveStatus.SINGULAR_SYSTEM


def test_duplicate_rows_raise():
    A = np.array([[-1.0, 1.0], [-1.0, 1.0]])
    with pytest.raises(SingularSystemError):
        solve_dense_system(A, np.array([0.0, 0.0]))


@pytest.mark.parametrize("bad", [np.nan, np.inf])
def test_non_finite_entries_raise(bad):
    A = np.eye(2)
    A[0, 1] = bad
    with pytest.raises(SingularSystemError, match="NaN/Inf"):
        solve_dense_system(A, np.ones(2))
    with pytest.raises(SingularSystemError, match="NaN/Inf"):
        solve_dense_system(np.eye(2), np.array([1.0, bad]))


def test_non_square_raises_value_error():
    with pytest.raises(ValueError, match="square"):
        solve_dense_system(np.ones((2, 3)), np.ones(2))


def test_rhs_shape_mismatch_raises_value_error():
    with pytest.raises(ValueError, match="does not match"):
        solve_dense_system(np.eye(3), np.ones(2))


def test_empty_system():
    res = solve_dense_system(np.zeros((0, 0)), np.zeros(0))
    assert res.x.shape == (0,)
    assert res.converged
    assert res.n_unknowns == 0


def test_ill_conditioned_system_still_solves():
    """Tiny condensate-column entries: rcond far below eps, but LU with pivoting is exact."""
    A = np.array([[-3.0e-18, 1.0], [3.0e-18, 1.0]])
    res = solve_dense_system(A, np.array([1.0, 1.0]))
    np.testing.assert_allclose(res.x, [0.0, 1.0], atol=1e-12)
    assert res.diag is not None and "ill_conditioned" in res.diag
