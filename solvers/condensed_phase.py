"""
Condensed-phase equilibrium iteration (element mass balance + condensate saturation).

Responsibilities:
- Select candidate condensates and the elements they involve.
- Drive the damped Newton iteration in log variables:
  partition -> assemble -> dense solve -> correct -> recompute activities/molecules.
- Stop on convergence, iteration cap, linear-solve failure, non-physical state or
  cancellation, and report a structured result.
- Write results back into the shared element/molecule/condensate records only after
  a converged solve (a failed solve leaves them untouched).

This module only coordinates; assembly, linear algebra and the update rule live elsewhere.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from assembly.build_condensed_system import (
    CondensedSystemView,
    assemble_system,
    build_condensed_view,
    element_conservation_residuals,
)
from core.types import CondensedPhaseOptions, FloatArray
from properties.condensate_selection import (
    ActiveSelection,
    find_degenerate_condensates,
    partition_condensates,
    select_active_condensates,
)
from properties.species import (
    Condensate,
    Element,
    Molecule,
    element_density_array,
    validate_catalogue,
)
from solvers.condensed_correction import CorrectionResult, apply_corrections
from solvers.condensed_types import (
    CondensedPhaseDiagnostics,
    CondensedPhaseSolveResult,
    IterationSnapshot,
    SingularSystemError,
    SolveStatus,
)
from solvers.dense_linear import solve_dense_system
from solvers.linear_types import LinearSolveResult

logger = logging.getLogger(__name__)

Observer = Callable[[IterationSnapshot], None]
LinearSolver = Callable[[np.ndarray, np.ndarray], LinearSolveResult]


def log_iteration_observer(snap: IterationSnapshot) -> None:
    """Dump the per-iteration system and state at DEBUG level."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug("iter %d jacobian=\n%s", snap.iteration, np.array2string(snap.jacobian, precision=6))
    logger.debug("iter %d rhs=%s", snap.iteration, np.array2string(snap.rhs, precision=6))
    logger.debug("iter %d solution=%s", snap.iteration, np.array2string(snap.solution, precision=6))
    for i in range(snap.cond_densities_new.size):
        logger.debug(
            "iter %d cond %d: n %.6e -> %.6e  lambda %.6e -> %.6e  ln a=%.6e",
            snap.iteration,
            i,
            snap.cond_densities_old[i],
            snap.cond_densities_new[i],
            snap.activity_corr_old[i],
            snap.activity_corr_new[i],
            snap.log_activity[i],
        )


def _check_positive_finite(name: str, value: float) -> float:
    v = float(value)
    if not (math.isfinite(v) and v > 0.0):
        raise ValueError(f"{name} must be positive and finite, got {value!r}")
    return v


def _non_physical_reason(corr: CorrectionResult) -> Optional[str]:
    for name, arr in (
        ("condensate number density", corr.cond_densities),
        ("activity correction", corr.activity_corr),
        ("element number density", corr.elem_densities),
    ):
        bad = ~np.isfinite(arr) | (arr <= 0.0)
        if np.any(bad):
            idx = int(np.flatnonzero(bad)[0])
            return f"{name}[{idx}] became {arr[idx]!r}"
    return None


class CondensedPhase:
    """
    Condensed-phase equilibrium solver bound to an element and condensate catalogue.

    The catalogues are shared with the surrounding chemistry engine; they are read at the
    start of `calculate` and written back only when the solve converges.
    """

    def __init__(
        self,
        elements: Sequence[Element],
        condensates: Sequence[Condensate],
        options: Optional[CondensedPhaseOptions] = None,
        *,
        selector: Callable[..., ActiveSelection] = select_active_condensates,
        linear_solver: LinearSolver = solve_dense_system,
    ) -> None:
        validate_catalogue(elements, (), condensates)
        self.elements = list(elements)
        self.condensates = list(condensates)
        self.options = options if options is not None else CondensedPhaseOptions()
        self.selector = selector
        self.linear_solver = linear_solver

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def solve(
        self,
        temperature: float,
        density: float,
        total_element_density: float,
        molecules: Sequence[Molecule],
        **kwargs,
    ) -> Tuple[SolveStatus, int]:
        res = self.calculate(temperature, density, total_element_density, molecules, **kwargs)
        return res.status, res.n_iter

    def calculate(
        self,
        temperature: float,
        density: float,
        total_element_density: float,
        molecules: Sequence[Molecule],
        *,
        observer: Optional[Observer] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> CondensedPhaseSolveResult:
        opts = self.options
        temperature = _check_positive_finite("temperature", temperature)
        density = _check_positive_finite("density", density)
        total_element_density = _check_positive_finite("total_element_density", total_element_density)
        molecules = list(molecules)
        validate_catalogue(self.elements, molecules, self.condensates)

        # Initializing
        elem_all = element_density_array(self.elements)
        log_act_all = np.array(
            [c.compute_log_activity(temperature, elem_all) for c in self.condensates], dtype=np.float64
        )
        selection = self.selector(
            self.condensates,
            self.elements,
            log_act_all,
            activation_log_activity=opts.activation_log_activity,
            include_present=opts.include_present,
        )
        extra = {"temperature": temperature, "gas_density": density, "total_element_density": total_element_density}

        if selection.empty:
            logger.debug("No candidate condensates at T=%.3f K; nothing to solve.", temperature)
            diag = CondensedPhaseDiagnostics(
                converged=True,
                n_iter=0,
                max_step=0.0,
                log_activity=log_act_all,
                message="no candidate condensates",
                extra=extra,
            )
            return CondensedPhaseSolveResult(status=SolveStatus.CONVERGED, n_iter=0, diag=diag)

        cond_idx = selection.condensate_indices
        elem_idx = selection.element_indices
        cond_act = [self.condensates[int(i)] for i in cond_idx]
        view = build_condensed_view(cond_act, elem_idx, molecules, self.elements, total_element_density)

        k = len(cond_act)
        cond_old = np.full(k, opts.tau, dtype=np.float64)
        corr_old = np.ones(k, dtype=np.float64)
        elem_old = elem_all[elem_idx].copy()
        log_act = log_act_all[cond_idx].copy()
        mol_dens = np.array([m.compute_number_density(elem_all, temperature) for m in molecules], dtype=np.float64)

        diag = CondensedPhaseDiagnostics(
            converged=False,
            n_iter=0,
            max_step=float("nan"),
            condensate_symbols=[c.symbol for c in cond_act],
            element_symbols=[self.elements[int(j)].symbol for j in elem_idx],
            extra=extra,
        )

        def _finish(status: SolveStatus, n_iter: int, message: Optional[str]) -> CondensedPhaseSolveResult:
            diag.converged = status == SolveStatus.CONVERGED
            diag.n_iter = n_iter
            diag.message = message
            diag.cond_densities = cond_old.copy()
            diag.activity_corr = corr_old.copy()
            diag.elem_densities = elem_old.copy()
            diag.log_activity = log_act.copy()
            with np.errstate(all="ignore"):
                diag.conservation_residuals = element_conservation_residuals(view, cond_old, elem_old, mol_dens)
            if status != SolveStatus.CONVERGED:
                logger.warning("Condensed-phase solve stopped: status=%s iter=%d: %s", status.value, n_iter, message)
            return CondensedPhaseSolveResult(status=status, n_iter=n_iter, diag=diag)

        degenerate = find_degenerate_condensates(
            self.condensates, cond_idx, temperature, rtol=opts.degeneracy_rtol
        )
        if degenerate:
            diag.degenerate_condensates = [
                (self.condensates[i].symbol, self.condensates[j].symbol) for i, j in degenerate
            ]
            return _finish(
                SolveStatus.SINGULAR_SYSTEM,
                0,
                f"candidates with coinciding saturation conditions: {diag.degenerate_condensates}",
            )

        start_bad = ~np.isfinite(elem_old) | (elem_old <= 0.0)
        if np.any(start_bad):
            j = int(elem_idx[np.flatnonzero(start_bad)[0]])
            return _finish(
                SolveStatus.NON_PHYSICAL_STATE,
                0,
                f"element {self.elements[j].symbol} starts with number density {elem_all[j]!r}",
            )
        if not (np.all(np.isfinite(log_act)) and np.all(np.isfinite(mol_dens))):
            return _finish(SolveStatus.NON_PHYSICAL_STATE, 0, "non-finite initial activity or molecule density")

        logger.debug(
            "Condensed phase: %d candidates %s over elements %s",
            k,
            diag.condensate_symbols,
            diag.element_symbols,
        )

        # Iterating
        for it in range(opts.max_iter):
            if should_cancel is not None and should_cancel():
                return _finish(SolveStatus.CANCELLED, it, "cancelled before iteration %d" % (it + 1))

            jac, rem = partition_condensates(corr_old, opts.removal_threshold)
            J, b = assemble_system(view, jac, rem, log_act, corr_old, cond_old, elem_old, mol_dens, opts.ln_tau)

            try:
                lin = self.linear_solver(J, b)
            except SingularSystemError as exc:
                return _finish(SolveStatus.SINGULAR_SYSTEM, it, str(exc))

            ill_conditioned = bool((lin.diag or {}).get("ill_conditioned", False))
            if ill_conditioned:
                diag.ill_conditioned_iters.append(it + 1)

            corr = apply_corrections(
                lin.x,
                view.stoich,
                jac,
                rem,
                log_act,
                corr_old,
                cond_old,
                elem_old,
                opts.ln_tau,
                opts.max_change,
            )

            reason = _non_physical_reason(corr)
            if reason is not None:
                return _finish(SolveStatus.NON_PHYSICAL_STATE, it + 1, reason)

            elem_all[elem_idx] = corr.elem_densities
            log_act_new = np.array(
                [c.compute_log_activity(temperature, elem_all) for c in cond_act], dtype=np.float64
            )
            mol_new = np.array(
                [m.compute_number_density(elem_all, temperature) for m in molecules], dtype=np.float64
            )
            if not (np.all(np.isfinite(log_act_new)) and np.all(np.isfinite(mol_new))):
                return _finish(
                    SolveStatus.NON_PHYSICAL_STATE, it + 1, "non-finite activity or molecule density after update"
                )

            max_step = corr.max_step
            diag.history_max_step.append(max_step)
            diag.max_step = max_step

            if observer is not None:
                observer(
                    IterationSnapshot(
                        iteration=it + 1,
                        jacobian=J,
                        rhs=b,
                        solution=lin.x,
                        condensates_jac=jac,
                        condensates_rem=rem,
                        cond_densities_old=cond_old,
                        cond_densities_new=corr.cond_densities,
                        activity_corr_old=corr_old,
                        activity_corr_new=corr.activity_corr,
                        elem_densities_old=elem_old,
                        elem_densities_new=corr.elem_densities,
                        log_activity=log_act_new,
                        max_step=max_step,
                    )
                )

            if opts.verbose and (it + 1) % opts.log_every == 0:
                logger.info(
                    "condensed phase iter %d: max_step=%.3e n_jac=%d n_rem=%d",
                    it + 1,
                    max_step,
                    jac.size,
                    rem.size,
                )
            else:
                logger.debug("condensed phase iter %d: max_step=%.3e", it + 1, max_step)

            cond_old = corr.cond_densities
            corr_old = corr.activity_corr
            elem_old = corr.elem_densities
            log_act = log_act_new
            mol_dens = mol_new

            if max_step < opts.conv_tol:
                if ill_conditioned:
                    diag.ill_conditioned_at_convergence = True
                    return _finish(
                        SolveStatus.SINGULAR_SYSTEM,
                        it + 1,
                        "converged iterate has an ill-conditioned linear system (rcond below machine epsilon)",
                    )
                result = _finish(SolveStatus.CONVERGED, it + 1, None)
                self._commit(temperature, selection, view, elem_all, cond_old, corr_old, molecules, mol_dens)
                logger.debug("Condensed phase converged after %d iterations.", it + 1)
                return result

        return _finish(
            SolveStatus.NO_CONVERGENCE,
            opts.max_iter,
            f"max_step={diag.max_step:.3e} above conv_tol={opts.conv_tol:.3e} after {opts.max_iter} iterations",
        )

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _commit(
        self,
        temperature: float,
        selection: ActiveSelection,
        view: CondensedSystemView,
        elem_all: FloatArray,
        cond_densities: FloatArray,
        activity_corr: FloatArray,
        molecules: List[Molecule],
        mol_densities: FloatArray,
    ) -> None:
        """Write a converged state back into the shared records."""
        floor = self.options.floor_density
        committed = np.where(cond_densities > floor, cond_densities, 0.0)

        for j in selection.element_indices:
            self.elements[int(j)].number_density = float(elem_all[int(j)])
        for mol, n in zip(molecules, mol_densities):
            mol.number_density = float(n)

        for cond in self.condensates:
            cond.calc_activity(temperature, self.elements)
            cond.number_density = 0.0
            cond.activity_correction = 1.0
        for pos, i in enumerate(selection.condensate_indices):
            cond = self.condensates[int(i)]
            cond.number_density = float(committed[pos])
            cond.activity_correction = float(activity_corr[pos])

        condensed = view.stoich.T @ committed
        for el in self.elements:
            el.degree_of_condensation = 0.0
        for pos, j in enumerate(selection.element_indices):
            self.elements[int(j)].degree_of_condensation = float(condensed[pos] / view.budgets[pos])
