"""
Dense SciPy linear solver for the condensed-phase Newton step.

Design goals:
- Small dense systems (candidates + involved elements), LU with partial pivoting.
- Returns LinearSolveResult; strict shape checks; inputs never mutated.
- Exactly singular or non-finite systems raise SingularSystemError instead of
  returning garbage. Ill-conditioning alone is recorded in diag, not raised.
"""

from __future__ import annotations

import logging
import warnings

import numpy as np
import scipy.linalg as sla

from solvers.condensed_types import SingularSystemError
from solvers.linear_types import LinearSolveResult

logger = logging.getLogger(__name__)


def solve_dense_system(A, b) -> LinearSolveResult:
    """Solve A x = b with scipy.linalg.solve (dense LU)."""
    A = np.asarray(A, dtype=np.float64)
    if A.ndim != 2 or A.shape[0] != A.shape[1]:
        raise ValueError(f"A must be square, got shape {A.shape}")
    N = A.shape[0]

    b = np.asarray(b, dtype=np.float64)
    if b.shape != (N,):
        raise ValueError(f"b shape {b.shape} does not match A dimension {N}")

    if N == 0:
        return LinearSolveResult(
            x=np.zeros(0, dtype=np.float64),
            converged=True,
            residual_norm=0.0,
            rel_residual=0.0,
            method="empty",
            n_unknowns=0,
        )

    if not (np.all(np.isfinite(A)) and np.all(np.isfinite(b))):
        raise SingularSystemError("Linear system contains NaN/Inf entries.")

    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", sla.LinAlgWarning)
            x = sla.solve(A, b, check_finite=False)
    except np.linalg.LinAlgError as exc:
        msg = f"dense LU solve failed (N={N}): {exc}"
        logger.warning(msg)
        raise SingularSystemError(msg) from exc

    if not np.all(np.isfinite(x)):
        raise SingularSystemError(f"dense LU solve returned non-finite entries (N={N}).")

    ill = [str(w.message) for w in caught if issubclass(w.category, sla.LinAlgWarning)]
    if ill:
        logger.debug("solve_dense_system: %s", ill[0])

    r = b - A @ x
    res_norm = float(np.linalg.norm(r))
    b_norm = float(np.linalg.norm(b))
    rel = res_norm / (b_norm + 1e-300)

    logger.debug("solve_dense_system: N=%d residual=%.3e rel=%.3e", N, res_norm, rel)

    return LinearSolveResult(
        x=np.asarray(x, dtype=np.float64),
        converged=True,
        residual_norm=res_norm,
        rel_residual=rel,
        method="dense_lu",
        n_unknowns=N,
        message=ill[0] if ill else None,
        diag={"ill_conditioned": bool(ill)},
    )
