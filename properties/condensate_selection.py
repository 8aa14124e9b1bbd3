"""
Candidate-condensate selection and Jacobian/removed partitioning.

Responsibilities:
- Pick the condensates considered in one equilibrium solve and the elements they involve.
- Split candidates into Newton unknowns (Jacobian set) and analytically eliminated
  condensates (removed set) from their activity-correction factors.
- Reject inconsistent partitions instead of silently tolerating them.
- Detect candidates whose saturation conditions coincide (singular split).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from core.types import FloatArray, IndexArray
from properties.species import Condensate, Element, ln_mass_action_constant


@dataclass(slots=True)
class ActiveSelection:
    """Candidate condensates (catalogue order) and involved elements (ascending index)."""

    condensate_indices: IndexArray
    element_indices: IndexArray

    @property
    def empty(self) -> bool:
        return self.condensate_indices.size == 0


def select_active_condensates(
    condensates: Sequence[Condensate],
    elements: Sequence[Element],
    log_activities: FloatArray,
    *,
    activation_log_activity: float = 0.0,
    include_present: bool = True,
) -> ActiveSelection:
    """
    Select candidate condensates for the current thermodynamic state.

    A condensate qualifies when all of its elements have positive abundance and it is
    either supersaturated (ln a > activation_log_activity) or, with include_present,
    already carries a positive number density from a previous solve.
    """
    log_activities = np.asarray(log_activities, dtype=np.float64)
    if log_activities.shape != (len(condensates),):
        raise ValueError(
            f"log_activities shape {log_activities.shape} does not match condensate count {len(condensates)}"
        )
    abundance = np.array([el.abundance for el in elements], dtype=np.float64)

    cond_idx = []
    involved = set()
    for i, cond in enumerate(condensates):
        idx = cond.element_indices
        if np.any(abundance[idx] <= 0.0):
            continue
        supersaturated = bool(log_activities[i] > activation_log_activity)
        present = include_present and cond.number_density > 0.0
        if not (supersaturated or present):
            continue
        cond_idx.append(i)
        involved.update(int(j) for j in idx)

    return ActiveSelection(
        condensate_indices=np.asarray(cond_idx, dtype=np.int64),
        element_indices=np.asarray(sorted(involved), dtype=np.int64),
    )


def partition_condensates(
    activity_corr: FloatArray,
    removal_threshold: Optional[float],
) -> Tuple[IndexArray, IndexArray]:
    """Return (jac, rem) positions; rem holds condensates with lambda > removal_threshold."""
    activity_corr = np.asarray(activity_corr, dtype=np.float64)
    all_idx = np.arange(activity_corr.size, dtype=np.int64)
    if removal_threshold is None:
        return all_idx, np.zeros(0, dtype=np.int64)
    removed = activity_corr > float(removal_threshold)
    return all_idx[~removed], all_idx[removed]


def validate_partition(jac, rem, n_condensates: int) -> None:
    """Each candidate must appear exactly once across the two sets."""
    jac = np.asarray(jac, dtype=np.int64)
    rem = np.asarray(rem, dtype=np.int64)
    both = np.concatenate([jac, rem])
    if both.size and (both.min() < 0 or both.max() >= n_condensates):
        raise ValueError(f"condensate partition index out of range [0, {n_condensates})")
    if np.unique(jac).size != jac.size or np.unique(rem).size != rem.size:
        raise ValueError("condensate partition contains duplicate indices")
    overlap = np.intersect1d(jac, rem)
    if overlap.size:
        raise ValueError(f"condensates {overlap.tolist()} are in both the Jacobian and removed sets")
    if both.size != n_condensates:
        missing = np.setdiff1d(np.arange(n_condensates), both)
        raise ValueError(f"condensates {missing.tolist()} are in neither the Jacobian nor removed set")


def find_degenerate_condensates(
    condensates: Sequence[Condensate],
    candidate_indices,
    temperature: float,
    *,
    rtol: float = 1.0e-10,
) -> List[Tuple[int, int]]:
    """
    Return catalogue index pairs (i, j) of candidates with nu_j = c nu_i and ln K_j = c ln K_i.

    Such a pair saturates simultaneously (ln a_j = c ln a_i), so the split of the
    condensed material between them is undetermined.
    """
    idx = [int(i) for i in np.asarray(candidate_indices, dtype=np.int64)]
    ln_k = {i: ln_mass_action_constant(condensates[i].mass_action_coeff, temperature) for i in idx}

    pairs = []
    for a, i in enumerate(idx):
        vi = condensates[i].stoichiometric_vector
        for j in idx[a + 1 :]:
            vj = condensates[j].stoichiometric_vector
            c = float(np.dot(vj, vi) / np.dot(vi, vi))
            if not np.allclose(vj, c * vi, rtol=rtol, atol=rtol * float(np.max(np.abs(vj)))):
                continue
            if np.isclose(ln_k[j], c * ln_k[i], rtol=rtol, atol=rtol * max(1.0, abs(ln_k[j]))):
                pairs.append((i, j))
    return pairs
