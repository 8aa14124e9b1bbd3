"""
Shared linear solver result types.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np


@dataclass(slots=True)
class LinearSolveResult:
    x: np.ndarray
    converged: bool
    residual_norm: float
    rel_residual: float
    method: str
    n_unknowns: int = 0
    message: Optional[str] = None
    diag: Optional[Dict[str, Any]] = None
