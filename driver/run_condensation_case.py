"""
Driver to run a single condensed-phase equilibrium case from YAML.

Responsibilities:
- Load CaseConfig from YAML.
- Build the element / molecule / condensate catalogues and the initial gas state.
- Run CondensedPhase.calculate once.
- Log a summary and write result.json into the run directory.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import traceback
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import numpy as np
import yaml

from core.logging_utils import get_log_level_from_env, setup_logging
from core.types import (
    CaseConditions,
    CaseConfig,
    CaseMeta,
    CaseOutput,
    CaseSpecies,
    CondensedPhaseOptions,
)
from properties.species import (
    Condensate,
    Element,
    Molecule,
    SpeciesCatalogue,
    composition_to_vector,
)
from solvers.condensed_phase import CondensedPhase, log_iteration_observer
from solvers.condensed_types import CondensedPhaseSolveResult

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NOT_CONVERGED = 2
EXIT_UNHANDLED = 99

_TOP_LEVEL_KEYS = {"case", "conditions", "species", "solver", "output"}


def _resolve_path(base: Path, value: str | Path) -> Path:
    """Resolve a possibly relative path against base."""
    path = Path(value)
    return path if path.is_absolute() else (base / path).resolve()


def _read_yaml_text(cfg_file: Path) -> str:
    try:
        return cfg_file.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError:
        return cfg_file.read_text()


def _load_case_config(cfg_path: str | Path) -> CaseConfig:
    """Load YAML file into CaseConfig with nested dataclasses."""
    cfg_file = Path(cfg_path).expanduser().resolve()
    raw = yaml.safe_load(_read_yaml_text(cfg_file)) or {}
    if not isinstance(raw, Mapping):
        raise ValueError(f"{cfg_file}: top-level YAML must be a mapping")
    unknown = set(raw.keys()) - _TOP_LEVEL_KEYS
    if unknown:
        raise ValueError(f"Unsupported top-level keys in {cfg_file.name}: {sorted(unknown)}")
    base = cfg_file.parent

    case_cfg = CaseMeta(**raw["case"])
    cond_cfg = CaseConditions(**raw["conditions"])

    species_raw = raw.get("species", {}) or {}
    species_cfg = CaseSpecies(
        elements=list(species_raw.get("elements", []) or []),
        molecules=list(species_raw.get("molecules", []) or []),
        condensates=list(species_raw.get("condensates", []) or []),
    )

    solver_cfg = CondensedPhaseOptions.from_dict(raw.get("solver", {}) or {})

    out_raw = raw.get("output", {}) or {}
    output_cfg = CaseOutput(
        output_root=_resolve_path(base, out_raw.get("output_root", "out")),
        write_json=bool(out_raw.get("write_json", True)),
    )

    return CaseConfig(
        case=case_cfg,
        conditions=cond_cfg,
        species=species_cfg,
        solver=solver_cfg,
        output=output_cfg,
    )


def build_species_catalogue(cfg: CaseConfig) -> SpeciesCatalogue:
    """Build index-addressed records; elements default to fully atomic gas."""
    n_tot = cfg.conditions.total_element_density
    symbols = [str(e["symbol"]) for e in cfg.species.elements]
    if len(set(symbols)) != len(symbols):
        raise ValueError(f"Duplicate element symbols: {symbols}")

    elements = []
    for i, e in enumerate(cfg.species.elements):
        abundance = float(e["abundance"])
        n0 = e.get("number_density", None)
        elements.append(
            Element(
                symbol=symbols[i],
                index=i,
                abundance=abundance,
                number_density=float(n0) if n0 is not None else abundance * n_tot,
            )
        )

    molecules = [
        Molecule(
            symbol=str(m["symbol"]),
            stoichiometric_vector=composition_to_vector(m["composition"], symbols, f"molecule {m['symbol']}"),
            mass_action_coeff=np.asarray(m["mass_action_coeff"], dtype=np.float64),
        )
        for m in cfg.species.molecules
    ]
    condensates = [
        Condensate(
            symbol=str(c["symbol"]),
            stoichiometric_vector=composition_to_vector(c["composition"], symbols, f"condensate {c['symbol']}"),
            mass_action_coeff=np.asarray(c["mass_action_coeff"], dtype=np.float64),
            phase=str(c.get("phase", "s")),
        )
        for c in cfg.species.condensates
    ]
    return SpeciesCatalogue(elements=elements, molecules=molecules, condensates=condensates)


def _finite_or_none(value: float) -> Optional[float]:
    v = float(value)
    return v if np.isfinite(v) else None


def _result_payload(cfg: CaseConfig, catalogue: SpeciesCatalogue, res: CondensedPhaseSolveResult) -> dict:
    def _list(a: Optional[np.ndarray]) -> Optional[list]:
        return None if a is None else [_finite_or_none(v) for v in a]

    return {
        "case": cfg.case.id,
        "status": res.status.value,
        "n_iter": int(res.n_iter),
        "max_step": _finite_or_none(res.diag.max_step),
        "message": res.diag.message,
        "conditions": {
            "temperature": cfg.conditions.temperature,
            "density": cfg.conditions.density,
            "total_element_density": cfg.conditions.total_element_density,
        },
        "elements": [
            {
                "symbol": e.symbol,
                "number_density": float(e.number_density),
                "degree_of_condensation": float(e.degree_of_condensation),
            }
            for e in catalogue.elements
        ],
        "molecules": [{"symbol": m.symbol, "number_density": _finite_or_none(m.number_density)} for m in catalogue.molecules],
        "condensates": [
            {
                "symbol": c.symbol,
                "number_density": float(c.number_density),
                "log_activity": _finite_or_none(c.log_activity),
                "activity_correction": float(c.activity_correction),
            }
            for c in catalogue.condensates
        ],
        "active_condensates": list(res.diag.condensate_symbols),
        "active_elements": list(res.diag.element_symbols),
        "conservation_residuals": _list(res.diag.conservation_residuals),
        "ill_conditioned_iters": list(res.diag.ill_conditioned_iters),
        "ill_conditioned_at_convergence": bool(res.diag.ill_conditioned_at_convergence),
        "degenerate_condensates": [list(p) for p in res.diag.degenerate_condensates],
    }


def _write_result_json(cfg: CaseConfig, payload: Mapping[str, Any]) -> Path:
    run_dir = cfg.output.output_root / cfg.case.id
    run_dir.mkdir(parents=True, exist_ok=True)
    path = run_dir / "result.json"
    path.write_text(json.dumps(payload, indent=2, allow_nan=False), encoding="utf-8")
    return path


def _log_summary(catalogue: SpeciesCatalogue, res: CondensedPhaseSolveResult) -> None:
    logger.info(
        "status=%s n_iter=%d max_step=%.3e",
        res.status.value,
        res.n_iter,
        res.diag.max_step,
    )
    for c in catalogue.condensates:
        logger.info(
            "  %-12s n=%.6e ln(a)=%.6e lambda=%.3e",
            c.symbol,
            c.number_density,
            c.log_activity,
            c.activity_correction,
        )
    for e in catalogue.elements:
        if e.degree_of_condensation > 0.0:
            logger.info("  %-4s degree_of_condensation=%.6e", e.symbol, e.degree_of_condensation)


def run_case(
    cfg_path: str | Path,
    *,
    max_iter: Optional[int] = None,
    dry_run: bool = False,
) -> int:
    """Run one case; returns a process exit code."""
    setup_logging(level=get_log_level_from_env())
    try:
        cfg = _load_case_config(cfg_path)
        if max_iter is not None:
            cfg.solver = dataclasses.replace(cfg.solver, max_iter=int(max_iter))
        catalogue = build_species_catalogue(cfg)
        catalogue.update_molecule_densities(cfg.conditions.temperature)

        logger.info(
            "Case %s: T=%.3f K, %d elements, %d molecules, %d condensates",
            cfg.case.id,
            cfg.conditions.temperature,
            len(catalogue.elements),
            len(catalogue.molecules),
            len(catalogue.condensates),
        )
        if dry_run:
            logger.info("Dry run requested: config and species built; skipping solve.")
            return EXIT_OK

        solver = CondensedPhase(catalogue.elements, catalogue.condensates, cfg.solver)
        observer = log_iteration_observer if logger.isEnabledFor(logging.DEBUG) else None
        res = solver.calculate(
            cfg.conditions.temperature,
            cfg.conditions.density,
            cfg.conditions.total_element_density,
            catalogue.molecules,
            observer=observer,
        )
        _log_summary(catalogue, res)

        if cfg.output.write_json:
            path = _write_result_json(cfg, _result_payload(cfg, catalogue, res))
            logger.info("Wrote %s", path)

        if not res.converged:
            logger.error("Condensed-phase solve did not converge: %s", res.diag.message)
            return EXIT_NOT_CONVERGED
        return EXIT_OK
    except Exception:
        logger.error("Unhandled exception:\n%s", traceback.format_exc())
        return EXIT_UNHANDLED


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a condensed-phase equilibrium case.")
    parser.add_argument("case_yaml", help="Path to case YAML file.")
    parser.add_argument(
        "--max_iter",
        type=int,
        default=None,
        help="Override solver.max_iter (default: use YAML).",
    )
    parser.add_argument(
        "--dry_run",
        action="store_true",
        help="Load config and build species only; skip the solve.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    return run_case(args.case_yaml, max_iter=args.max_iter, dry_run=args.dry_run)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
