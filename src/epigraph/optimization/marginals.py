# Copyright (c) 2025.
# This file is part of epigraph, released under the MIT License.
"""
Marginal covariances of a factor graph at a linearization point.

Under the Gaussian approximation around `values`, the posterior over the
tangent-space perturbation δ has information matrix H = AᵀA (A being the
whitened Jacobian). The marginal covariance of a variable is the matching
d×d diagonal block of H⁻¹, expressed in that variable's local coordinates
(for SE(3) poses: [translation, rotation], right perturbation).

H is factorized once; each query solves against the identity columns of
the requested blocks only, so H⁻¹ is never formed.
"""

from __future__ import annotations

from typing import Dict, Sequence, Tuple

import numpy as np
from loguru import logger

from epigraph.core.errors import SingularInformationMatrix, UnderconstrainedSystem, UnknownKey
from epigraph.core.factor_graph import FactorGraph
from epigraph.core.types import NodeId
from epigraph.core.values import Values
from epigraph.optimization.linear_solver import LinearSolver


class Marginals:
    """
    Marginal covariance queries on `graph` linearized at `values`.

    Raises SingularInformationMatrix when the information matrix is
    singular or rank-deficient (an unanchored graph, or an essential-matrix
    chain with unobservable scale).
    """

    def __init__(
        self,
        graph: FactorGraph,
        values: Values,
        method: str = "sparse",
        rank_tol: float = 1e-9,
    ) -> None:
        self.values = values.copy()
        system = graph.linearize(self.values)
        self.index = system.index
        solver = LinearSolver(method=method, rank_policy="raise", rank_tol=rank_tol)
        missing = system.unconstrained_keys()
        try:
            if missing:
                raise UnderconstrainedSystem(
                    f"variables {missing} are not constrained by any factor",
                    keys=missing,
                    deficiency=len(missing),
                )
            self._factor = solver.factorize(system.hessian())
        except UnderconstrainedSystem as exc:
            raise SingularInformationMatrix(
                f"cannot compute marginals: {exc}",
                keys=exc.keys or missing,
                deficiency=exc.deficiency,
            ) from exc
        logger.debug(
            "Factorized {}x{} information matrix for {} variables",
            system.dim, system.dim, len(self.index),
        )

    def _block(self, key) -> Tuple[int, int]:
        try:
            return self.index[NodeId(int(key))]
        except KeyError:
            raise UnknownKey(key, context="not part of the marginalized graph") from None

    def joint_marginal_covariance(self, keys: Sequence[int]) -> np.ndarray:
        """
        Joint covariance of several variables, with blocks in the order of
        `keys`.
        """
        blocks = [self._block(k) for k in keys]
        cols = np.concatenate([np.arange(start, start + dim) for start, dim in blocks])
        rhs = np.zeros((self._factor.dim, cols.size))
        rhs[cols, np.arange(cols.size)] = 1.0
        cov = self._factor.solve(rhs)[cols, :]
        return 0.5 * (cov + cov.T)

    def marginal_covariance(self, key: int) -> np.ndarray:
        return self.joint_marginal_covariance([key])

    def marginal_information(self, key: int) -> np.ndarray:
        """Information (inverse covariance) of a single variable's marginal."""
        return np.linalg.inv(self.marginal_covariance(key))

    def covariances(self) -> Dict[NodeId, np.ndarray]:
        return {key: self.marginal_covariance(key) for key in self.index}


def marginal_covariance(graph: FactorGraph, values: Values, key: int, method: str = "sparse") -> np.ndarray:
    """Marginal covariance of one variable; see `Marginals`."""
    return Marginals(graph, values, method=method).marginal_covariance(key)
