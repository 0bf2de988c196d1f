# Copyright (c) 2025.
# This file is part of epigraph, released under the MIT License.
"""
Sparse and dense solvers for linearized factor graphs.

Given a `LinearSystem` (A, b) the solver computes the damped
Gauss–Newton / Levenberg–Marquardt step

    (AᵀA + λ·D) Δ = −Aᵀb,      D = clip(diag(AᵀA), min_diag, max_diag)

(or D = I without diagonal damping).

Methods
-------
"sparse"
    Symmetric sparse LU (SuperLU through `scipy.sparse.linalg.splu`) with
    a fill-reducing ordering on AᵀA + Aᵀ and diagonal pivoting, which for a
    positive semi-definite matrix behaves as an LDLᵀ factorization.

"dense"
    Dense Cholesky (`scipy.linalg.cho_factor`), for small problems.

Rank deficiency
---------------
Both factorizations run on the Jacobi-scaled matrix S H S (S = diag(H)^-½),
whose pivots are at most 1. A pivot smaller than `rank_tol` counts as an
unobservable direction. Depending on `rank_policy` the solver then raises
`UnderconstrainedSystem` ("raise") or falls back to the minimum-norm
least-squares step computed by LSQR directly on A ("min_norm").
"""

from __future__ import annotations

import numpy as np
import scipy.linalg
import scipy.sparse
import scipy.sparse.linalg
from loguru import logger

from epigraph.core.errors import UnderconstrainedSystem
from epigraph.core.linear_system import LinearSystem

LINEAR_SOLVERS = ("sparse", "dense")
RANK_POLICIES = ("raise", "min_norm")


class Factorization:
    """Factorization of a symmetric positive-definite matrix H."""

    def __init__(self, scale: np.ndarray, solve_scaled, pivots: np.ndarray) -> None:
        self._scale = scale
        self._solve_scaled = solve_scaled
        self.pivots = pivots

    @property
    def dim(self) -> int:
        return self._scale.shape[0]

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        """Solve H x = rhs for a vector or a matrix of right-hand sides."""
        rhs = np.asarray(rhs, dtype=np.float64)
        if rhs.ndim == 1:
            return self._scale * self._solve_scaled(self._scale * rhs)
        return self._scale[:, None] * self._solve_scaled(self._scale[:, None] * rhs)


class LinearSolver:
    def __init__(
        self,
        method: str = "sparse",
        rank_policy: str = "raise",
        rank_tol: float = 1e-9,
        min_diagonal: float = 1e-6,
        max_diagonal: float = 1e32,
    ) -> None:
        if method not in LINEAR_SOLVERS:
            raise ValueError(f"unknown linear solver '{method}', expected one of {LINEAR_SOLVERS}")
        if rank_policy not in RANK_POLICIES:
            raise ValueError(f"unknown rank policy '{rank_policy}', expected one of {RANK_POLICIES}")
        self.method = method
        self.rank_policy = rank_policy
        self.rank_tol = rank_tol
        self.min_diagonal = min_diagonal
        self.max_diagonal = max_diagonal

    # --- factorization ---

    def _pivots_sparse(self, Hs: scipy.sparse.csc_matrix):
        lu = scipy.sparse.linalg.splu(
            Hs,
            permc_spec="MMD_AT_PLUS_A",
            diag_pivot_thresh=0.0,
            options={"SymmetricMode": True},
        )
        return lu.solve, np.abs(lu.U.diagonal())

    def _pivots_dense(self, Hs: np.ndarray):
        c, lower = scipy.linalg.cho_factor(Hs, lower=False, check_finite=True)

        def solve(rhs):
            return scipy.linalg.cho_solve((c, lower), rhs)

        return solve, np.diagonal(c) ** 2

    def _scaled_pivots(self, Hs):
        if self.method == "sparse":
            return self._pivots_sparse(scipy.sparse.csc_matrix(Hs))
        return self._pivots_dense(Hs.toarray() if scipy.sparse.issparse(Hs) else np.asarray(Hs))

    def factorize(self, H) -> Factorization:
        """
        Factorize the symmetric matrix H.

        Raises UnderconstrainedSystem when H is singular or numerically
        rank-deficient (relative to `rank_tol`), with the number of
        unobservable directions in `deficiency`.
        """
        H = scipy.sparse.csc_matrix(H)
        n = H.shape[0]
        diag = H.diagonal()
        zero = np.flatnonzero(diag <= 0.0)
        if zero.size:
            raise UnderconstrainedSystem(
                f"{zero.size} of {n} tangent directions have no information",
                deficiency=int(zero.size),
            )
        scale = 1.0 / np.sqrt(diag)
        S = scipy.sparse.diags(scale)
        Hs = (S @ H @ S).tocsc()

        try:
            solve_scaled, pivots = self._scaled_pivots(Hs)
        except (RuntimeError, np.linalg.LinAlgError):
            # Exactly singular: count the null directions on a slightly ridged copy.
            ridge = 1e-2 * self.rank_tol
            try:
                _, pivots = self._scaled_pivots(Hs + ridge * scipy.sparse.identity(n, format="csc"))
                deficiency = max(1, int(np.sum(pivots < self.rank_tol)))
            except (RuntimeError, np.linalg.LinAlgError):
                deficiency = -1
            raise UnderconstrainedSystem(
                "information matrix is singular", deficiency=deficiency
            ) from None

        deficiency = int(np.sum(pivots < self.rank_tol * max(1.0, float(pivots.max(initial=0.0)))))
        if deficiency:
            raise UnderconstrainedSystem(
                f"information matrix is rank deficient by {deficiency} (pivot tolerance {self.rank_tol:g})",
                deficiency=deficiency,
            )
        return Factorization(scale, solve_scaled, pivots)

    def rank_deficiency(self, system: LinearSystem) -> int:
        """Number of unobservable directions of the undamped system (-1 if unknown)."""
        missing = system.unconstrained_keys()
        try:
            self.factorize(system.hessian())
        except UnderconstrainedSystem as exc:
            if exc.deficiency < 0 and missing:
                return len(missing)
            return exc.deficiency
        return 0

    # --- damped solve ---

    def damping(self, H, diagonal_damping: bool = True) -> np.ndarray:
        if not diagonal_damping:
            return np.ones(H.shape[0])
        return np.clip(H.diagonal(), self.min_diagonal, self.max_diagonal)

    def solve(self, system: LinearSystem, lam: float = 0.0, diagonal_damping: bool = True) -> np.ndarray:
        """
        Step Δ minimizing ½‖b + AΔ‖² + ½λ Δᵀ D Δ.

        Raises UnderconstrainedSystem (rank_policy="raise") when a variable
        is untouched by every factor or the damped system is still singular.
        """
        missing = system.unconstrained_keys()
        if missing and self.rank_policy == "raise":
            raise UnderconstrainedSystem(
                f"variables {missing} are not constrained by any factor", keys=missing
            )

        H = system.hessian()
        g = system.gradient()
        D = self.damping(H, diagonal_damping)
        if lam > 0.0:
            H = H + lam * scipy.sparse.diags(D)
        try:
            return self.factorize(H).solve(-g)
        except UnderconstrainedSystem:
            if self.rank_policy == "raise":
                raise
            logger.debug("Singular damped system (lambda={:g}); using minimum-norm step", lam)
            return self.min_norm_step(system, lam, D)

    def min_norm_step(self, system: LinearSystem, lam: float, D: np.ndarray) -> np.ndarray:
        """
        Minimum-norm solution of min ½‖b + AΔ‖² + ½λ ΔᵀDΔ via LSQR on the
        column-scaled Jacobian A D^-½.
        """
        col_scale = 1.0 / np.sqrt(D)
        A_scaled = system.A @ scipy.sparse.diags(col_scale)
        result = scipy.sparse.linalg.lsqr(
            A_scaled,
            -system.b,
            damp=float(np.sqrt(max(lam, 0.0))),
            atol=1e-14,
            btol=1e-14,
            iter_lim=max(10 * system.dim, 100),
        )
        return col_scale * result[0]

