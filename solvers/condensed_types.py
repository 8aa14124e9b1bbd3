"""
Condensed-phase solve status, errors and result types.

Goal:
- Every outcome of one equilibrium solve is a distinct, recoverable status.
- Callers that prefer exceptions use CondensedPhaseSolveResult.raise_for_status().
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


class SolveStatus(str, Enum):
    CONVERGED = "converged"
    NO_CONVERGENCE = "no_convergence"
    SINGULAR_SYSTEM = "singular_system"
    NON_PHYSICAL_STATE = "non_physical_state"
    CANCELLED = "cancelled"


class CondensedPhaseError(RuntimeError):
    """Base class for condensed-phase solve failures."""

    status: SolveStatus = SolveStatus.NO_CONVERGENCE


class NoConvergenceError(CondensedPhaseError):
    """Iteration cap reached before the corrections fell below tolerance."""

    status = SolveStatus.NO_CONVERGENCE


class SingularSystemError(CondensedPhaseError):
    """Linear solve could not produce a finite, well-conditioned result."""

    status = SolveStatus.SINGULAR_SYSTEM


class NonPhysicalStateError(CondensedPhaseError):
    """A density, activity correction or activity became zero, negative or non-finite."""

    status = SolveStatus.NON_PHYSICAL_STATE


class SolveCancelledError(CondensedPhaseError):
    """Solve stopped at a cancellation point."""

    status = SolveStatus.CANCELLED


_ERRORS_BY_STATUS = {
    SolveStatus.NO_CONVERGENCE: NoConvergenceError,
    SolveStatus.SINGULAR_SYSTEM: SingularSystemError,
    SolveStatus.NON_PHYSICAL_STATE: NonPhysicalStateError,
    SolveStatus.CANCELLED: SolveCancelledError,
}


@dataclass(slots=True)
class IterationSnapshot:
    """State of one completed iteration, handed to an optional observer."""

    iteration: int
    jacobian: np.ndarray
    rhs: np.ndarray
    solution: np.ndarray
    condensates_jac: np.ndarray
    condensates_rem: np.ndarray
    cond_densities_old: np.ndarray
    cond_densities_new: np.ndarray
    activity_corr_old: np.ndarray
    activity_corr_new: np.ndarray
    elem_densities_old: np.ndarray
    elem_densities_new: np.ndarray
    log_activity: np.ndarray
    max_step: float


@dataclass(slots=True)
class CondensedPhaseDiagnostics:
    converged: bool
    n_iter: int
    max_step: float
    history_max_step: List[float] = field(default_factory=list)
    condensate_symbols: List[str] = field(default_factory=list)
    element_symbols: List[str] = field(default_factory=list)
    cond_densities: Optional[np.ndarray] = None
    activity_corr: Optional[np.ndarray] = None
    elem_densities: Optional[np.ndarray] = None
    log_activity: Optional[np.ndarray] = None
    conservation_residuals: Optional[np.ndarray] = None
    ill_conditioned_iters: List[int] = field(default_factory=list)
    ill_conditioned_at_convergence: bool = False
    degenerate_condensates: List[Tuple[str, str]] = field(default_factory=list)
    message: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CondensedPhaseSolveResult:
    status: SolveStatus
    n_iter: int
    diag: CondensedPhaseDiagnostics

    @property
    def converged(self) -> bool:
        return self.status == SolveStatus.CONVERGED

    def raise_for_status(self) -> None:
        if self.status == SolveStatus.CONVERGED:
            return
        exc_cls = _ERRORS_BY_STATUS[self.status]
        raise exc_cls(self.diag.message or f"condensed-phase solve ended with status {self.status.value}")
