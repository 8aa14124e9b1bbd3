"""
Map the raw Newton step onto bounded, exponentially reparametrized updates.

Responsibilities:
- Reconstruct the steps of removed condensates from the element corrections.
- Clamp every log-space step to [-max_change, max_change].
- Update condensate densities, activity corrections and element densities
  multiplicatively so they stay strictly positive.

Pure: the old arrays are never mutated; the caller promotes new -> old.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from core.types import FloatArray


@dataclass(slots=True)
class CorrectionResult:
    cond_densities: FloatArray
    activity_corr: FloatArray
    elem_densities: FloatArray
    delta_cond: FloatArray  # clamped
    delta_lambda: FloatArray
    delta_elem: FloatArray  # clamped

    @property
    def max_step(self) -> float:
        steps = [np.abs(self.delta_cond), np.abs(self.delta_lambda), np.abs(self.delta_elem)]
        return float(max((float(s.max()) for s in steps if s.size), default=0.0))


def clamp_steps(delta: FloatArray, max_change: float) -> FloatArray:
    return np.clip(np.asarray(delta, dtype=np.float64), -max_change, max_change)


def removed_condensate_steps(
    result: FloatArray,
    stoich: FloatArray,
    condensates_rem,
    nb_cond_jac: int,
    log_activity: FloatArray,
    activity_corr_old: FloatArray,
    cond_densities_old: FloatArray,
    ln_tau: float,
) -> FloatArray:
    """
    dn_c = (sum_e nu_ce d_e) / lambda_c + ln a_c / lambda_c + ln tau - ln lambda_c - ln n_c + 1
    """
    rem = np.asarray(condensates_rem, dtype=np.int64)
    elem_steps = np.asarray(result, dtype=np.float64)[nb_cond_jac:]
    lam = activity_corr_old[rem]
    return (
        (stoich[rem] @ elem_steps) / lam
        + log_activity[rem] / lam
        + ln_tau
        - np.log(lam)
        - np.log(cond_densities_old[rem])
        + 1.0
    )


def apply_corrections(
    result: FloatArray,
    stoich: FloatArray,
    condensates_jac,
    condensates_rem,
    log_activity: FloatArray,
    activity_corr_old: FloatArray,
    cond_densities_old: FloatArray,
    elem_densities_old: FloatArray,
    ln_tau: float,
    max_change: float,
) -> CorrectionResult:
    result = np.asarray(result, dtype=np.float64)
    stoich = np.asarray(stoich, dtype=np.float64)
    log_activity = np.asarray(log_activity, dtype=np.float64)
    activity_corr_old = np.asarray(activity_corr_old, dtype=np.float64)
    cond_densities_old = np.asarray(cond_densities_old, dtype=np.float64)
    elem_densities_old = np.asarray(elem_densities_old, dtype=np.float64)

    jac = np.asarray(condensates_jac, dtype=np.int64)
    rem = np.asarray(condensates_rem, dtype=np.int64)
    nj = jac.size
    m = elem_densities_old.size
    if result.shape != (nj + m,):
        raise ValueError(f"solution shape {result.shape} does not match {nj} condensates + {m} elements")

    delta_n = np.zeros(cond_densities_old.size, dtype=np.float64)
    delta_n[jac] = result[:nj]
    if rem.size:
        delta_n[rem] = removed_condensate_steps(
            result, stoich, rem, nj, log_activity, activity_corr_old, cond_densities_old, ln_tau
        )

    delta_n = clamp_steps(delta_n, max_change)
    cond_new = cond_densities_old * np.exp(delta_n)

    delta_lambda = ln_tau - np.log(activity_corr_old) - np.log(cond_densities_old) - delta_n
    corr_new = activity_corr_old * np.exp(delta_lambda)

    delta_e = clamp_steps(result[nj:], max_change)
    elem_new = elem_densities_old * np.exp(delta_e)

    return CorrectionResult(
        cond_densities=cond_new,
        activity_corr=corr_new,
        elem_densities=elem_new,
        delta_cond=delta_n,
        delta_lambda=delta_lambda,
        delta_elem=delta_e,
    )
