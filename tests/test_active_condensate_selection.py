"""
Unit tests for candidate-condensate selection and Jacobian/removed partitioning.

Tests:
1. Supersaturated condensates are selected, undersaturated ones are not
2. include_present keeps condensates that already carry a density
3. Condensates with a zero-abundance element are never selected
4. Involved elements are the sorted union over candidates
5. partition_condensates threshold semantics
6. validate_partition rejects inconsistent partitions
7. Candidates with proportional stoichiometry and ln K are flagged as degenerate
"""

from __future__ import annotations

import numpy as np
import pytest

from properties.condensate_selection import (
    find_degenerate_condensates,
    partition_condensates,
    select_active_condensates,
    validate_partition,
)
from properties.species import Condensate, Element


def _elements(abundances=(0.5, 0.3, 0.2)):
    return [
        Element(symbol=sym, index=i, abundance=a, number_density=1.0e10)
        for i, (sym, a) in enumerate(zip(("A", "B", "C"), abundances))
    ]


def _cond(symbol, vec, number_density=0.0):
    return Condensate(
        symbol=symbol,
        stoichiometric_vector=vec,
        mass_action_coeff=np.zeros(5),
        number_density=number_density,
    )


# ============================================================================
# Test 1-4: select_active_condensates
# ============================================================================


def test_supersaturated_selected_undersaturated_skipped():
    conds = [_cond("A(s)", [1, 0, 0]), _cond("B(s)", [0, 1, 0])]
    sel = select_active_condensates(conds, _elements(), np.array([0.5, -0.5]))
    assert sel.condensate_indices.tolist() == [0]
    assert sel.element_indices.tolist() == [0]
    assert not sel.empty


def test_activation_threshold_is_strict():
    conds = [_cond("A(s)", [1, 0, 0])]
    sel = select_active_condensates(conds, _elements(), np.array([0.0]))
    assert sel.empty
    sel = select_active_condensates(conds, _elements(), np.array([0.0]), activation_log_activity=-1.0)
    assert sel.condensate_indices.tolist() == [0]


def test_include_present_keeps_existing_condensate():
    conds = [_cond("A(s)", [1, 0, 0], number_density=1.0e5)]
    la = np.array([-3.0])

    sel = select_active_condensates(conds, _elements(), la)
    assert sel.condensate_indices.tolist() == [0]

    sel = select_active_condensates(conds, _elements(), la, include_present=False)
    assert sel.empty


def test_zero_abundance_element_excludes_condensate():
    conds = [_cond("AC(s)", [1, 0, 1])]
    sel = select_active_condensates(conds, _elements(abundances=(0.5, 0.5, 0.0)), np.array([5.0]))
    assert sel.empty
    assert sel.element_indices.size == 0


def test_involved_elements_sorted_union():
    conds = [_cond("C(s)", [0, 0, 1]), _cond("AB(s)", [1, 1, 0]), _cond("B(s)", [0, 1, 0])]
    sel = select_active_condensates(conds, _elements(), np.array([1.0, 2.0, 3.0]))
    assert sel.condensate_indices.tolist() == [0, 1, 2]
    assert sel.element_indices.tolist() == [0, 1, 2]


def test_log_activity_shape_mismatch_raises():
    conds = [_cond("A(s)", [1, 0, 0])]
    with pytest.raises(ValueError, match="condensate count"):
        select_active_condensates(conds, _elements(), np.array([1.0, 2.0]))


# ============================================================================
# Test 5: partition_condensates
# ============================================================================


def test_partition_by_activity_correction():
    jac, rem = partition_condensates(np.array([0.5, 2.0, 1.0, 1.0e30]), 1.0)
    assert jac.tolist() == [0, 2]
    assert rem.tolist() == [1, 3]


def test_partition_none_keeps_everything_in_jacobian():
    jac, rem = partition_condensates(np.array([0.5, 2.0, 1.0e30]), None)
    assert jac.tolist() == [0, 1, 2]
    assert rem.size == 0


# ============================================================================
# Test 6: validate_partition
# ============================================================================


def test_validate_partition_accepts_complete_split():
    validate_partition(np.array([0, 2]), np.array([1]), 3)
    validate_partition(np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64), 0)


@pytest.mark.parametrize(
    "jac, rem, match",
    [
        ([0, 1], [1], "both"),
        ([0], [], "neither"),
        ([0, 0], [1], "duplicate"),
        ([0, 3], [1], "out of range"),
    ],
)
def test_validate_partition_rejects(jac, rem, match):
    with pytest.raises(ValueError, match=match):
        validate_partition(np.array(jac, dtype=np.int64), np.array(rem, dtype=np.int64), 2)


# ============================================================================
# Test 7: find_degenerate_condensates
# ============================================================================


def _fit_cond(symbol, vec, a2, a0=0.0):
    return Condensate(symbol=symbol, stoichiometric_vector=vec, mass_action_coeff=[a0, 0.0, a2, 0.0, 0.0])


def test_identical_candidates_are_degenerate():
    conds = [_fit_cond("AB(s)", [1, 1, 0], 3.0, a0=2.0e4), _fit_cond("AB(s)'", [1, 1, 0], 3.0, a0=2.0e4)]
    assert find_degenerate_condensates(conds, np.array([0, 1]), 1500.0) == [(0, 1)]


def test_proportional_candidates_are_degenerate():
    conds = [
        _fit_cond("A(s)", [1, 0, 0], -4.0),
        _fit_cond("B(s)", [0, 1, 0], -4.0),
        _fit_cond("A2(s)", [2, 0, 0], -8.0),
    ]
    assert find_degenerate_condensates(conds, np.array([0, 1, 2]), 1000.0) == [(0, 2)]


def test_same_stoichiometry_different_constant_is_not_degenerate():
    conds = [_fit_cond("A(s)", [1, 0, 0], -4.0), _fit_cond("A(l)", [1, 0, 0], -3.5)]
    assert find_degenerate_condensates(conds, np.array([0, 1]), 1000.0) == []


def test_only_candidates_are_compared():
    conds = [_fit_cond("A(s)", [1, 0, 0], -4.0), _fit_cond("A(s)'", [1, 0, 0], -4.0)]
    assert find_degenerate_condensates(conds, np.array([1]), 1000.0) == []
