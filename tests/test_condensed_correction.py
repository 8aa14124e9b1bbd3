"""
Unit tests for the bounded exponential correction update.

Tests:
1. Steps are clamped to +/- max_change (raw 50 -> 10, density x e^10)
2. Zero step leaves the state unchanged
3. New densities and activity corrections stay positive; lambda * n = tau
4. Removed-condensate steps follow the analytic elimination; the tau constant is pinned
5. Old arrays are never mutated; bad solution shape raises
"""

from __future__ import annotations

import math

import numpy as np
import pytest

from core.types import CondensedPhaseOptions
from solvers.condensed_correction import (
    apply_corrections,
    clamp_steps,
    removed_condensate_steps,
)

TAU = 1.0e-25
LN_TAU = math.log(TAU)


def _idx(*values):
    return np.array(values, dtype=np.int64)


def _single(result, *, cond=TAU, corr=1.0, elem=1.0e10, log_activity=0.0, max_change=10.0):
    return apply_corrections(
        np.asarray(result, dtype=np.float64),
        np.array([[1.0]]),
        _idx(0),
        _idx(),
        np.array([log_activity]),
        np.array([corr]),
        np.array([cond]),
        np.array([elem]),
        LN_TAU,
        max_change,
    )


# ============================================================================
# Test 1: Clamping
# ============================================================================


def test_clamp_steps():
    np.testing.assert_array_equal(clamp_steps(np.array([-50.0, -3.0, 0.0, 9.99, 50.0]), 10.0), [-10.0, -3.0, 0.0, 9.99, 10.0])


def test_element_step_clamped_to_max_change():
    out = _single([0.0, 50.0])
    assert out.delta_elem[0] == 10.0
    assert out.elem_densities[0] == pytest.approx(1.0e10 * math.exp(10.0), rel=1e-14)
    assert out.max_step == pytest.approx(10.0)


def test_condensate_step_clamped_to_max_change():
    out = _single([-50.0, 0.0], cond=1.0e5, corr=TAU / 1.0e5)
    assert out.delta_cond[0] == -10.0
    assert out.cond_densities[0] == pytest.approx(1.0e5 * math.exp(-10.0), rel=1e-14)


# ============================================================================
# Test 2: Zero step
# ============================================================================


def test_zero_step_at_equilibrium_is_identity():
    out = _single([0.0, 0.0])
    assert out.cond_densities[0] == pytest.approx(TAU, rel=1e-14)
    assert out.activity_corr[0] == pytest.approx(1.0, rel=1e-12)
    assert out.elem_densities[0] == 1.0e10
    assert out.max_step < 1e-12


# ============================================================================
# Test 3: Positivity and complementarity
# ============================================================================


@pytest.mark.parametrize("dn, de", [(-10.0, 10.0), (3.0, -7.5), (1e-8, 0.0), (25.0, -25.0)])
def test_update_keeps_positive_state(dn, de):
    out = _single([dn, de], cond=3.0e4, corr=0.2)
    assert out.cond_densities[0] > 0.0
    assert out.activity_corr[0] > 0.0
    assert out.elem_densities[0] > 0.0
    assert out.activity_corr[0] * out.cond_densities[0] == pytest.approx(TAU, rel=1e-10)


# ============================================================================
# Test 4: Removed condensates
# ============================================================================


def test_removed_condensate_step_formula():
    stoich = np.array([[1.0, 0.0], [1.0, 2.0]])
    result = np.array([0.3, -0.1, 0.05])  # one Jacobian condensate, two elements
    log_activity = np.array([0.0, -1.5])
    corr = np.array([1.0, 4.0])
    cond = np.array([1.0e3, 2.0e-20])

    dn = removed_condensate_steps(result, stoich, _idx(1), 1, log_activity, corr, cond, LN_TAU)

    expected = (-0.1 + 2.0 * 0.05) / 4.0 + (-1.5) / 4.0 + LN_TAU - math.log(4.0) - math.log(2.0e-20) + 1.0
    np.testing.assert_allclose(dn, [expected], rtol=1e-12)


@pytest.mark.parametrize(
    "tau_log_base, expected",
    [
        ("e", -12.967367006650066),
        ("10", 19.59726031820108),
    ],
)
def test_removed_condensate_step_tau_constant(tau_log_base, expected):
    """ln a = -1.5, lambda = 4, n = 2e-20, zero element corrections."""
    opts = CondensedPhaseOptions(tau_log_base=tau_log_base)
    dn = removed_condensate_steps(
        np.array([0.3, 0.0, 0.0]),
        np.array([[1.0, 0.0], [1.0, 2.0]]),
        _idx(1),
        1,
        np.array([0.0, -1.5]),
        np.array([1.0, 4.0]),
        np.array([1.0e3, 2.0e-20]),
        opts.ln_tau,
    )
    np.testing.assert_allclose(dn, [expected], rtol=1e-12)


def test_apply_corrections_mixes_jacobian_and_removed():
    stoich = np.array([[1.0, 0.0], [1.0, 2.0]])
    result = np.array([0.3, -0.1, 0.05])
    log_activity = np.array([0.0, -1.5])
    corr = np.array([1.0, 4.0])
    cond = np.array([1.0e3, 2.0e-20])
    elem = np.array([1.0e6, 2.0e6])

    out = apply_corrections(result, stoich, _idx(0), _idx(1), log_activity, corr, cond, elem, LN_TAU, 10.0)

    dn_rem = removed_condensate_steps(result, stoich, _idx(1), 1, log_activity, corr, cond, LN_TAU)
    assert out.delta_cond[0] == pytest.approx(0.3)
    assert out.delta_cond[1] == pytest.approx(float(np.clip(dn_rem[0], -10.0, 10.0)))
    np.testing.assert_allclose(out.elem_densities, elem * np.exp([-0.1, 0.05]), rtol=1e-14)


# ============================================================================
# Test 5: Purity and shape checks
# ============================================================================


def test_old_arrays_not_mutated():
    corr = np.array([0.7])
    cond = np.array([5.0])
    elem = np.array([3.0e9])
    la = np.array([0.1])
    result = np.array([2.0, -4.0])
    snap = [a.copy() for a in (corr, cond, elem, la, result)]

    apply_corrections(result, np.array([[1.0]]), _idx(0), _idx(), la, corr, cond, elem, LN_TAU, 10.0)

    for before, after in zip(snap, (corr, cond, elem, la, result)):
        np.testing.assert_array_equal(before, after)


def test_solution_shape_mismatch_raises():
    with pytest.raises(ValueError, match="solution shape"):
        _single([0.0, 0.0, 0.0])
