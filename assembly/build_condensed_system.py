"""
Assemble the linearized condensed-phase equilibrium system J * dx = b.

Unknowns (log-space corrections):
- dn_c for Jacobian-set condensates (first len(jac) entries)
- d_e for the elements involved in condensation (last m entries)

Equations:
- Jacobian condensate c:  ln a_c + lambda_c = 0 with lambda_c * n_c = tau, giving
      sum_e nu_ce d_e - lambda_c dn_c = -ln a_c - lambda_c (1 + ln tau - ln lambda_c - ln n_c)
- Involved element e (row scaled by its budget B_e):
      n_e + sum_i nu_ie n_i + sum_c nu_ce n_c = B_e
  Removed condensates enter through dn_c = (sum_f nu_cf d_f) / lambda_c + kappa_c.

This module is pure: inputs are never mutated and fresh arrays are returned on every call.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

from core.types import FloatArray
from properties.condensate_selection import validate_partition
from properties.species import Condensate, Element, Molecule, stoichiometry_matrix


@dataclass(slots=True)
class CondensedSystemView:
    """Index-restricted stoichiometry for one solve (candidates x involved elements)."""

    stoich: FloatArray  # (k, m)
    mol_stoich: FloatArray  # (Nm, m)
    budgets: FloatArray  # (m,)

    @property
    def n_condensates(self) -> int:
        return int(self.stoich.shape[0])

    @property
    def n_elements(self) -> int:
        return int(self.budgets.shape[0])


def build_condensed_view(
    condensates: Sequence[Condensate],
    element_indices,
    molecules: Sequence[Molecule],
    elements: Sequence[Element],
    total_element_density: float,
) -> CondensedSystemView:
    Ne = len(elements)
    idx = np.asarray(element_indices, dtype=np.int64)
    stoich = stoichiometry_matrix(condensates, Ne)[:, idx]
    mol_stoich = stoichiometry_matrix(molecules, Ne)[:, idx]
    budgets = np.array([elements[j].budget(total_element_density) for j in idx], dtype=np.float64)
    if np.any(~np.isfinite(budgets)) or np.any(budgets <= 0.0):
        raise ValueError(f"element budgets must be positive and finite, got {budgets}")
    return CondensedSystemView(stoich=stoich, mol_stoich=mol_stoich, budgets=budgets)


def _check_shapes(view: CondensedSystemView, **arrays: FloatArray) -> None:
    k, m = view.n_condensates, view.n_elements
    expected = {
        "log_activity": (k,),
        "activity_corr": (k,),
        "cond_densities": (k,),
        "elem_densities": (m,),
        "mol_densities": (view.mol_stoich.shape[0],),
    }
    for name, arr in arrays.items():
        if arr.shape != expected[name]:
            raise ValueError(f"{name} shape {arr.shape} does not match expected {expected[name]}")


def _removed_offsets(
    log_activity: FloatArray,
    activity_corr: FloatArray,
    cond_densities: FloatArray,
    ln_tau: float,
) -> FloatArray:
    """kappa_c: the part of a removed condensate's step that does not depend on d_e."""
    return (
        log_activity / activity_corr
        + 1.0
        + ln_tau
        - np.log(activity_corr)
        - np.log(cond_densities)
    )


def gas_element_totals(view: CondensedSystemView, elem_densities: FloatArray, mol_densities: FloatArray) -> FloatArray:
    """Gas-phase content of each involved element: n_e + sum_i nu_ie n_i."""
    return elem_densities + view.mol_stoich.T @ mol_densities


def assemble_jacobian(
    view: CondensedSystemView,
    activity_corr: FloatArray,
    cond_densities: FloatArray,
    condensates_jac,
    condensates_rem,
    elem_densities: FloatArray,
    mol_densities: FloatArray,
) -> FloatArray:
    activity_corr = np.asarray(activity_corr, dtype=np.float64)
    cond_densities = np.asarray(cond_densities, dtype=np.float64)
    elem_densities = np.asarray(elem_densities, dtype=np.float64)
    mol_densities = np.asarray(mol_densities, dtype=np.float64)
    _check_shapes(
        view,
        activity_corr=activity_corr,
        cond_densities=cond_densities,
        elem_densities=elem_densities,
        mol_densities=mol_densities,
    )
    jac = np.asarray(condensates_jac, dtype=np.int64)
    rem = np.asarray(condensates_rem, dtype=np.int64)
    validate_partition(jac, rem, view.n_condensates)

    nj = jac.size
    m = view.n_elements
    N = nj + m
    J = np.zeros((N, N), dtype=np.float64)

    S_jac = view.stoich[jac]
    J[:nj, :nj] = -np.diag(activity_corr[jac])
    J[:nj, nj:] = S_jac

    elem_block = np.diag(elem_densities) + view.mol_stoich.T @ (mol_densities[:, None] * view.mol_stoich)
    if rem.size:
        S_rem = view.stoich[rem]
        w = cond_densities[rem] / activity_corr[rem]
        elem_block = elem_block + S_rem.T @ (w[:, None] * S_rem)
    J[nj:, nj:] = elem_block
    J[nj:, :nj] = (S_jac * cond_densities[jac][:, None]).T

    J[nj:, :] /= view.budgets[:, None]
    return J


def assemble_right_hand_side(
    view: CondensedSystemView,
    condensates_jac,
    condensates_rem,
    log_activity: FloatArray,
    activity_corr: FloatArray,
    cond_densities: FloatArray,
    elem_densities: FloatArray,
    mol_densities: FloatArray,
    ln_tau: float,
) -> FloatArray:
    log_activity = np.asarray(log_activity, dtype=np.float64)
    activity_corr = np.asarray(activity_corr, dtype=np.float64)
    cond_densities = np.asarray(cond_densities, dtype=np.float64)
    elem_densities = np.asarray(elem_densities, dtype=np.float64)
    mol_densities = np.asarray(mol_densities, dtype=np.float64)
    _check_shapes(
        view,
        log_activity=log_activity,
        activity_corr=activity_corr,
        cond_densities=cond_densities,
        elem_densities=elem_densities,
        mol_densities=mol_densities,
    )
    jac = np.asarray(condensates_jac, dtype=np.int64)
    rem = np.asarray(condensates_rem, dtype=np.int64)
    validate_partition(jac, rem, view.n_condensates)

    lam = activity_corr[jac]
    rhs_cond = -log_activity[jac] - lam * (1.0 + ln_tau - np.log(lam) - np.log(cond_densities[jac]))

    rhs_elem = (
        view.budgets
        - gas_element_totals(view, elem_densities, mol_densities)
        - view.stoich.T @ cond_densities
    )
    if rem.size:
        kappa = _removed_offsets(log_activity[rem], activity_corr[rem], cond_densities[rem], ln_tau)
        rhs_elem = rhs_elem - view.stoich[rem].T @ (cond_densities[rem] * kappa)

    return np.concatenate([rhs_cond, rhs_elem / view.budgets])


def assemble_system(
    view: CondensedSystemView,
    condensates_jac,
    condensates_rem,
    log_activity: FloatArray,
    activity_corr: FloatArray,
    cond_densities: FloatArray,
    elem_densities: FloatArray,
    mol_densities: FloatArray,
    ln_tau: float,
) -> Tuple[FloatArray, FloatArray]:
    """Return (J, b) for the current (old) iterate."""
    J = assemble_jacobian(
        view, activity_corr, cond_densities, condensates_jac, condensates_rem, elem_densities, mol_densities
    )
    b = assemble_right_hand_side(
        view,
        condensates_jac,
        condensates_rem,
        log_activity,
        activity_corr,
        cond_densities,
        elem_densities,
        mol_densities,
        ln_tau,
    )
    return J, b


def element_conservation_residuals(
    view: CondensedSystemView,
    cond_densities: FloatArray,
    elem_densities: FloatArray,
    mol_densities: FloatArray,
) -> FloatArray:
    """Relative mass-balance error per involved element: (gas + condensed - B_e) / B_e."""
    total = gas_element_totals(view, elem_densities, mol_densities) + view.stoich.T @ cond_densities
    return (total - view.budgets) / view.budgets
