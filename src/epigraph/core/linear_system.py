# Copyright (c) 2025.
# This file is part of epigraph, released under the MIT License.
"""
Linearized (Gauss–Newton) system produced by `FactorGraph.linearize`.

At a linearization point x̄ the whitened residual of the whole graph is

    r(x̄ ⊕ δ) ≈ b + A δ

where A is the sparse stacked Jacobian with respect to the local
coordinates of every variable and b is the stacked whitened residual. The
state index maps each variable key to its (offset, dim) block of δ.

A LinearSystem is ephemeral: the optimizer builds a fresh one at each
linearization point and drops it after solving.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np
import scipy.sparse

from epigraph.core.types import NodeId

StateIndex = Dict[NodeId, Tuple[int, int]]


@dataclass(frozen=True)
class LinearSystem:
    A: scipy.sparse.csr_matrix
    b: np.ndarray
    index: StateIndex

    @property
    def dim(self) -> int:
        return self.A.shape[1]

    @property
    def rows(self) -> int:
        return self.A.shape[0]

    def hessian(self) -> scipy.sparse.csc_matrix:
        """Gauss–Newton information matrix AᵀA."""
        return (self.A.T @ self.A).tocsc()

    def gradient(self) -> np.ndarray:
        """Gradient of ½‖b + Aδ‖² at δ = 0, i.e. Aᵀb."""
        return self.A.T @ self.b

    def error(self) -> float:
        return 0.5 * float(self.b @ self.b)

    def model_error(self, delta: np.ndarray) -> float:
        """Value of the linear model ½‖b + Aδ‖²."""
        r = self.b + self.A @ delta
        return 0.5 * float(r @ r)

    def split(self, delta: np.ndarray) -> Dict[NodeId, np.ndarray]:
        return {key: delta[start:start + dim] for key, (start, dim) in self.index.items()}

    def unconstrained_keys(self) -> List[NodeId]:
        """Keys with at least one tangent direction no factor touches."""
        csc = self.A.tocsc()
        col_sq = np.asarray(csc.multiply(csc).sum(axis=0)).ravel()
        return [
            key
            for key, (start, dim) in self.index.items()
            if np.any(col_sq[start:start + dim] == 0.0)
        ]
