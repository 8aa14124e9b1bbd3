"""
Strongly typed containers for case configuration and condensed-phase solver options.

Global shape and sign conventions (law of the land):
- Ne: number of elements in the catalogue; element i lives at position i
- Nm: number of molecules; Nc: number of condensates in the catalogue
- stoichiometric vectors always have shape (Ne,), indexed by element index
- k: number of candidate condensates; m: number of elements involved in condensation
- unknown vector of the linearized system: [Jacobian-set condensates..., involved elements...]
- all densities are number densities [cm^-3]; temperature [K]
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import numpy as np
from numpy.typing import NDArray

FloatArray = NDArray[np.float64]
IndexArray = NDArray[np.int64]

TAU_LOG_BASES = {"e", "10"}


@dataclass(slots=True)
class CondensedPhaseOptions:
    """Numerical controls of the condensed-phase iteration.

    Attributes
    ----------
    tau : float
        Floor pseudo-density of absent condensates; lambda * n_c = tau.
    max_change : float
        Bound on every log-space correction per iteration.
    max_iter : int
        Iteration cap.
    conv_tol : float
        Converged when all applied corrections are below this magnitude.
    removal_threshold : float or None
        Condensates with activity correction above this value are eliminated
        from the linear system. None keeps every candidate as an unknown.
    activation_log_activity : float
        Candidate selection threshold on ln(activity).
    include_present : bool
        Keep condensates with a positive recorded density as candidates.
    tau_log_base : {"e", "10"}
        Logarithm applied to tau in the linearization. "e" keeps
        lambda * n_c = tau exact after every update; "10" uses the decimal
        constant log10(tau), which acts as a floor of exp(log10(tau)).
    degeneracy_rtol : float
        Relative tolerance for detecting candidates whose saturation
        conditions coincide (proportional stoichiometry and ln K).
    """

    tau: float = 1.0e-25
    max_change: float = 10.0
    max_iter: int = 1000
    conv_tol: float = 1.0e-10
    removal_threshold: Optional[float] = 1.0
    activation_log_activity: float = 0.0
    include_present: bool = True
    tau_log_base: str = "e"
    degeneracy_rtol: float = 1.0e-10

    verbose: bool = False
    log_every: int = 10

    def __post_init__(self) -> None:
        if not (math.isfinite(self.tau) and 0.0 < self.tau < 1.0):
            raise ValueError(f"tau must be a finite value in (0, 1), got {self.tau!r}")
        if not (math.isfinite(self.max_change) and self.max_change > 0.0):
            raise ValueError(f"max_change must be positive and finite, got {self.max_change!r}")
        if int(self.max_iter) < 1:
            raise ValueError(f"max_iter must be >= 1, got {self.max_iter!r}")
        if not (math.isfinite(self.conv_tol) and self.conv_tol > 0.0):
            raise ValueError(f"conv_tol must be positive and finite, got {self.conv_tol!r}")
        if self.removal_threshold is not None and not (self.removal_threshold > 0.0):
            raise ValueError(
                f"removal_threshold must be positive or None, got {self.removal_threshold!r}"
            )
        if self.tau_log_base not in TAU_LOG_BASES:
            raise ValueError(f"tau_log_base must be one of {sorted(TAU_LOG_BASES)}, got {self.tau_log_base!r}")
        if not (math.isfinite(self.degeneracy_rtol) and self.degeneracy_rtol >= 0.0):
            raise ValueError(f"degeneracy_rtol must be finite and >= 0, got {self.degeneracy_rtol!r}")
        if int(self.log_every) < 1:
            raise ValueError(f"log_every must be >= 1, got {self.log_every!r}")

    @property
    def ln_tau(self) -> float:
        """Constant entering the linearization in place of ln(tau)."""
        if self.tau_log_base == "10":
            return math.log10(self.tau)
        return math.log(self.tau)

    @property
    def floor_density(self) -> float:
        """Densities at or below this value are committed as absent."""
        return math.exp(self.ln_tau)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, where: str = "solver") -> "CondensedPhaseOptions":
        allowed = {f.name for f in fields(cls)}
        unknown = set(d.keys()) - allowed
        if unknown:
            raise ValueError(f"{where}: unsupported keys {sorted(unknown)}, allowed={sorted(allowed)}")

        kwargs: Dict[str, Any] = {}
        for key in ("tau", "max_change", "conv_tol", "activation_log_activity", "degeneracy_rtol"):
            if d.get(key, None) is not None:
                try:
                    kwargs[key] = float(d[key])
                except Exception as exc:
                    raise ValueError(f"{where}.{key}: invalid value {d[key]!r}") from exc
        for key in ("max_iter", "log_every"):
            if d.get(key, None) is not None:
                try:
                    kwargs[key] = int(d[key])
                except Exception as exc:
                    raise ValueError(f"{where}.{key}: invalid value {d[key]!r}") from exc
        for key in ("include_present", "verbose"):
            if key in d and d[key] is not None:
                kwargs[key] = bool(d[key])
        if "removal_threshold" in d:
            raw = d["removal_threshold"]
            kwargs["removal_threshold"] = None if raw is None else float(raw)
        if d.get("tau_log_base", None) is not None:
            kwargs["tau_log_base"] = str(d["tau_log_base"]).strip()
        return cls(**kwargs)


@dataclass(slots=True)
class CaseMeta:
    """Metadata for the case block."""

    id: str
    title: str = ""
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("case.id must be provided.")


@dataclass(slots=True)
class CaseConditions:
    """Thermodynamic point of a single equilibrium solve."""

    temperature: float
    density: float
    total_element_density: float

    def __post_init__(self) -> None:
        for name in ("temperature", "density", "total_element_density"):
            v = float(getattr(self, name))
            if not (math.isfinite(v) and v > 0.0):
                raise ValueError(f"conditions.{name} must be positive and finite, got {v!r}")
            setattr(self, name, v)


@dataclass(slots=True)
class CaseSpecies:
    """Raw species blocks (YAML-aligned); records are built by the driver."""

    elements: List[Mapping[str, Any]] = field(default_factory=list)
    molecules: List[Mapping[str, Any]] = field(default_factory=list)
    condensates: List[Mapping[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.elements:
            raise ValueError("species.elements must list at least one element.")


@dataclass(slots=True)
class CaseOutput:
    """Output controls."""

    output_root: Path = Path("out")
    write_json: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.output_root, Path):
            raise TypeError("output_root must be pathlib.Path (loader must convert str -> Path).")


@dataclass(slots=True)
class CaseConfig:
    """Top-level case configuration container."""

    case: CaseMeta
    conditions: CaseConditions
    species: CaseSpecies
    solver: CondensedPhaseOptions = field(default_factory=CondensedPhaseOptions)
    output: CaseOutput = field(default_factory=CaseOutput)
