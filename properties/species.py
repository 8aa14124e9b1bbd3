"""
Element / molecule / condensate records used by the condensed-phase solver.

Responsibilities:
- Hold the index-addressed species catalogues (element i lives at position i).
- Evaluate mass-action constants from the 5-coefficient temperature fit.
- Provide pure evaluators (molecule number density, condensate log-activity) that
  read element densities from an array, plus in-place `calc_*` conveniences that
  read/write the records themselves.

Units are cgs: number densities [cm^-3], pressure [dyn/cm^2].
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Mapping, Sequence

import numpy as np

from core.types import FloatArray

K_BOLTZMANN = 1.380649e-16  # erg/K
P_REF = 1.0e6  # dyn/cm^2 (1 bar)
N_MASS_ACTION_COEFF = 5


def ln_mass_action_constant(coeffs: Sequence[float], temperature: float) -> float:
    """
    ln K_p(T) = a0/T + a1 ln T + a2 + a3 T + a4 T^2 (pressure units of P_REF).
    """
    a0, a1, a2, a3, a4 = (float(c) for c in coeffs)
    T = float(temperature)
    if not (math.isfinite(T) and T > 0.0):
        raise ValueError(f"temperature must be positive and finite, got {temperature!r}")
    return a0 / T + a1 * math.log(T) + a2 + a3 * T + a4 * T * T


def _as_stoichiometric_vector(raw, owner: str) -> FloatArray:
    vec = np.asarray(raw, dtype=np.float64)
    if vec.ndim != 1:
        raise ValueError(f"{owner}: stoichiometric vector must be 1D, got shape {vec.shape}")
    if not np.all(np.isfinite(vec)) or np.any(vec < 0.0):
        raise ValueError(f"{owner}: stoichiometric coefficients must be finite and non-negative")
    if not np.any(vec > 0.0):
        raise ValueError(f"{owner}: stoichiometric vector has no nonzero coefficient")
    return vec


def _as_coeffs(raw, owner: str) -> FloatArray:
    coeffs = np.asarray(raw, dtype=np.float64)
    if coeffs.shape != (N_MASS_ACTION_COEFF,):
        raise ValueError(
            f"{owner}: mass_action_coeff must have {N_MASS_ACTION_COEFF} entries, got shape {coeffs.shape}"
        )
    if not np.all(np.isfinite(coeffs)):
        raise ValueError(f"{owner}: mass_action_coeff contains NaN/Inf")
    return coeffs


def _log_densities(element_densities: FloatArray, idx: np.ndarray) -> FloatArray:
    n = np.asarray(element_densities, dtype=np.float64)[idx]
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.log(n)


@dataclass(slots=True)
class Element:
    """A conserved atomic species."""

    symbol: str
    index: int
    abundance: float
    number_density: float = 0.0
    degree_of_condensation: float = 0.0

    def __post_init__(self) -> None:
        if self.index < 0:
            raise ValueError(f"element {self.symbol}: index must be non-negative, got {self.index}")
        if not (math.isfinite(self.abundance) and self.abundance >= 0.0):
            raise ValueError(f"element {self.symbol}: abundance must be finite and >= 0")

    def budget(self, total_element_density: float) -> float:
        return self.abundance * float(total_element_density)


@dataclass(slots=True)
class Molecule:
    """Gas-phase species built from elements (law of mass action)."""

    symbol: str
    stoichiometric_vector: FloatArray
    mass_action_coeff: FloatArray
    number_density: float = 0.0

    def __post_init__(self) -> None:
        self.stoichiometric_vector = _as_stoichiometric_vector(
            self.stoichiometric_vector, f"molecule {self.symbol}"
        )
        self.mass_action_coeff = _as_coeffs(self.mass_action_coeff, f"molecule {self.symbol}")

    @property
    def element_indices(self) -> np.ndarray:
        return np.flatnonzero(self.stoichiometric_vector)

    @property
    def sigma(self) -> float:
        return float(np.sum(self.stoichiometric_vector)) - 1.0

    def ln_number_density_constant(self, temperature: float) -> float:
        """ln K_n: K_p converted to number-density units."""
        ln_kp = ln_mass_action_constant(self.mass_action_coeff, temperature)
        return ln_kp + self.sigma * math.log(K_BOLTZMANN * float(temperature) / P_REF)

    def compute_number_density(self, element_densities: FloatArray, temperature: float) -> float:
        idx = self.element_indices
        ln_n = self.ln_number_density_constant(temperature) + float(
            np.dot(self.stoichiometric_vector[idx], _log_densities(element_densities, idx))
        )
        return float(np.exp(ln_n))

    def calc_number_density(self, elements: Sequence[Element], temperature: float) -> None:
        self.number_density = self.compute_number_density(element_density_array(elements), temperature)


@dataclass(slots=True)
class Condensate:
    """Condensed-phase species; ln(activity) = 0 at saturation."""

    symbol: str
    stoichiometric_vector: FloatArray
    mass_action_coeff: FloatArray
    phase: str = "s"
    log_activity: float = -math.inf
    number_density: float = 0.0
    activity_correction: float = 1.0

    def __post_init__(self) -> None:
        self.stoichiometric_vector = _as_stoichiometric_vector(
            self.stoichiometric_vector, f"condensate {self.symbol}"
        )
        self.mass_action_coeff = _as_coeffs(self.mass_action_coeff, f"condensate {self.symbol}")
        if self.phase not in ("s", "l"):
            raise ValueError(f"condensate {self.symbol}: phase must be 's' or 'l', got {self.phase!r}")

    @property
    def element_indices(self) -> np.ndarray:
        return np.flatnonzero(self.stoichiometric_vector)

    def compute_log_activity(self, temperature: float, element_densities: FloatArray) -> float:
        """
        ln a = ln K(T) + sum_j nu_j ln(n_j k T / P_REF).

        A zero element density yields -inf rather than raising.
        """
        idx = self.element_indices
        ln_kt = math.log(K_BOLTZMANN * float(temperature) / P_REF)
        ln_p = _log_densities(element_densities, idx) + ln_kt
        return ln_mass_action_constant(self.mass_action_coeff, temperature) + float(
            np.dot(self.stoichiometric_vector[idx], ln_p)
        )

    def calc_activity(self, temperature: float, elements: Sequence[Element]) -> None:
        self.log_activity = self.compute_log_activity(temperature, element_density_array(elements))


def element_density_array(elements: Sequence[Element]) -> FloatArray:
    """Element number densities ordered by element index."""
    out = np.zeros(len(elements), dtype=np.float64)
    for el in elements:
        out[el.index] = float(el.number_density)
    return out


def stoichiometry_matrix(species: Sequence[Molecule] | Sequence[Condensate], n_elements: int) -> FloatArray:
    """Rows are species, columns are element indices."""
    A = np.zeros((len(species), int(n_elements)), dtype=np.float64)
    for i, s in enumerate(species):
        if s.stoichiometric_vector.shape != (n_elements,):
            raise ValueError(
                f"{s.symbol}: stoichiometric vector shape {s.stoichiometric_vector.shape} "
                f"does not match element count {n_elements}"
            )
        A[i, :] = s.stoichiometric_vector
    return A


def validate_catalogue(
    elements: Sequence[Element],
    molecules: Sequence[Molecule] = (),
    condensates: Sequence[Condensate] = (),
) -> None:
    """Check index addressing and stoichiometric vector lengths."""
    Ne = len(elements)
    for pos, el in enumerate(elements):
        if el.index != pos:
            raise ValueError(f"element {el.symbol}: index {el.index} does not match catalogue position {pos}")
    for s in list(molecules) + list(condensates):
        if s.stoichiometric_vector.shape != (Ne,):
            raise ValueError(
                f"{s.symbol}: stoichiometric vector shape {s.stoichiometric_vector.shape} "
                f"does not match element count {Ne}"
            )


def composition_to_vector(composition: Mapping[str, float], symbols: List[str], owner: str) -> FloatArray:
    """Map {element symbol: count} onto an index-addressed stoichiometric vector."""
    name_to_index = {s: i for i, s in enumerate(symbols)}
    vec = np.zeros(len(symbols), dtype=np.float64)
    for sym, count in composition.items():
        if sym not in name_to_index:
            raise ValueError(f"{owner}: element {sym!r} not found in element list {symbols}")
        vec[name_to_index[sym]] = float(count)
    return vec


@dataclass(slots=True)
class SpeciesCatalogue:
    """Bundle of the three index-addressed catalogues."""

    elements: List[Element] = field(default_factory=list)
    molecules: List[Molecule] = field(default_factory=list)
    condensates: List[Condensate] = field(default_factory=list)

    def __post_init__(self) -> None:
        validate_catalogue(self.elements, self.molecules, self.condensates)

    def update_molecule_densities(self, temperature: float) -> None:
        for m in self.molecules:
            m.calc_number_density(self.elements, temperature)
