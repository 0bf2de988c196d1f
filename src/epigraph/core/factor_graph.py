# Copyright (c) 2025.
# This file is part of epigraph, released under the MIT License.
"""
Factor graph engine for epigraph.

This module implements the central structure of the system: an ordered
collection of factors over keyed variables, able to evaluate the total
objective and to linearize itself into a sparse least-squares system.

The FactorGraph stores:
    - Factors (constraints between variables), keyed by FactorId
    - Registered residual functions (by factor type)

Variables are *not* stored in the graph. They live in a `Values` store and
are referenced by key only, so the same graph can be evaluated at many
linearization points (and optimized concurrently from different initial
estimates).

Key Features
------------
• Batched, JIT-compiled linearization
    Factors that share a type, a manifold signature and parameter shapes
    are evaluated together in a single `jax.jit(jax.vmap(...))` call.
    Each factor writes only its own block of rows.

• Automatic Jacobians on manifolds
    Jacobians are taken with `jax.jacfwd` of the whitened residual with
    respect to a right perturbation δ of every connected variable,
    evaluated at δ = 0. Residual functions never provide derivatives.

• Sparse assembly
    The stacked Jacobian is assembled as a `scipy.sparse.csr_matrix`; no
    dense n×n work is performed while linearizing.

Primary Methods
---------------
add_factor(factor)
    Append a factor; referenced keys need not exist yet.

validate(values)
    Fail fast with UnknownKey when a factor references a missing variable.

total_error(values)
    Σ ½‖whitened residual‖² (robust losses where a robust noise model is
    used). This is the objective minimized by the optimizers.

linearize(values)
    Returns a `LinearSystem` (A, b, index) at `values`.
"""

from __future__ import annotations

import functools
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np
import scipy.sparse
from loguru import logger

from epigraph.core.errors import NonFiniteLinearization, UnknownKey
from epigraph.core.linear_system import LinearSystem, StateIndex
from epigraph.core.types import Factor, FactorId, NodeId
from epigraph.core.values import Values
from epigraph.slam import manifold as mf
from epigraph.slam.measurements import DEFAULT_RESIDUALS, ResidualFn


@functools.lru_cache(maxsize=None)
def _batched_error(residual_fn: ResidualFn, manifolds: Tuple[str, ...]):
    def whitened(xs, params, sqrt_info):
        return sqrt_info @ residual_fn(xs, params, manifolds)

    return jax.jit(jax.vmap(whitened))


@functools.lru_cache(maxsize=None)
def _batched_linearizer(residual_fn: ResidualFn, manifolds: Tuple[str, ...]):
    def single(xs, params, sqrt_info):
        def perturbed(deltas):
            ys = tuple(mf.retract(m, x, d) for m, x, d in zip(manifolds, xs, deltas))
            return sqrt_info @ residual_fn(ys, params, manifolds)

        zeros = tuple(
            jnp.zeros((mf.tangent_dim(m, x),), dtype=x.dtype) for m, x in zip(manifolds, xs)
        )
        r = sqrt_info @ residual_fn(xs, params, manifolds)
        return r, jax.jacfwd(perturbed)(zeros)

    return jax.jit(jax.vmap(single))


@functools.lru_cache(maxsize=None)
def _residual_dim(residual_fn: ResidualFn, manifolds: Tuple[str, ...], x_shapes, param_shapes) -> int:
    xs = tuple(jax.ShapeDtypeStruct(s, jnp.float64) for s in x_shapes)
    params = {k: jax.ShapeDtypeStruct(s, jnp.float64) for k, s in param_shapes}
    out = jax.eval_shape(lambda xs, p: residual_fn(xs, p, manifolds), xs, params)
    return int(np.prod(out.shape))


def _param_shapes(params) -> Tuple:
    return tuple(sorted((k, tuple(jnp.shape(v))) for k, v in params.items()))


def _check_finite(fids, r: np.ndarray, Js) -> None:
    """Raise NonFiniteLinearization naming every factor with a NaN or inf row."""
    bad = ~np.isfinite(r).reshape(len(fids), -1).all(axis=1)
    for J in Js:
        bad |= ~np.isfinite(J).reshape(len(fids), -1).all(axis=1)
    if bad.any():
        raise NonFiniteLinearization([fid for fid, b in zip(fids, bad) if b])


@dataclass
class _Group:
    """Factors evaluated together in one vectorized call."""
    residual_fn: ResidualFn
    manifolds: Tuple[str, ...]
    fids: List[FactorId]


@dataclass
class FactorGraph:
    """
    Nonlinear factor graph.

    - factors: mapping from FactorId -> Factor, in insertion order
    - residual_fns: mapping factor.type -> residual function
    """
    factors: Dict[FactorId, Factor] = field(default_factory=dict)
    residual_fns: Dict[str, ResidualFn] = field(default_factory=lambda: dict(DEFAULT_RESIDUALS))

    def add_factor(self, factor: Factor) -> FactorId:
        fid = FactorId(len(self.factors))
        self.factors[fid] = factor
        return fid

    def register_residual(self, factor_type: str, fn: ResidualFn) -> None:
        self.residual_fns[factor_type] = fn

    def __len__(self) -> int:
        return len(self.factors)

    def keys(self) -> List[NodeId]:
        """Sorted ids of every variable referenced by a factor."""
        return sorted({k for f in self.factors.values() for k in f.var_ids})

    def dim(self) -> int:
        """Total residual dimension."""
        return sum(f.dimension() for f in self.factors.values())

    # --- Validation / ordering ---

    def validate(self, values: Values) -> None:
        for fid, factor in self.factors.items():
            if factor.type not in self.residual_fns:
                raise ValueError(f"No residual fn registered for factor type '{factor.type}'")
            for key in factor.var_ids:
                if key not in values:
                    raise UnknownKey(key, context=f"referenced by factor {fid} ('{factor.type}')")

    def build_state_index(self, values: Values) -> StateIndex:
        """
        Returns a mapping: NodeId -> (start_index, dim) over the tangent
        space, for the variables referenced by this graph, in key order.
        """
        index: StateIndex = {}
        offset = 0
        for key in self.keys():
            dim = values.dim(key)
            index[key] = (offset, dim)
            offset += dim
        return index

    # --- Batching ---

    def _groups(self, values: Values) -> List[_Group]:
        self.validate(values)
        groups: Dict[Tuple, _Group] = {}
        for fid, f in self.factors.items():
            manifolds = tuple(values.manifold(k) for k in f.var_ids)
            x_shapes = tuple(tuple(values.at(k).shape) for k in f.var_ids)
            signature = (f.type, manifolds, x_shapes, _param_shapes(f.params), f.dimension())
            if signature not in groups:
                residual_fn = self.residual_fns[f.type]
                rdim = _residual_dim(residual_fn, manifolds, x_shapes, _param_shapes(f.params))
                if rdim != f.dimension():
                    raise ValueError(
                        f"factor {fid} ('{f.type}') produces a {rdim}-dimensional residual "
                        f"but its noise model has dimension {f.dimension()}"
                    )
                groups[signature] = _Group(residual_fn, manifolds, [])
            groups[signature].fids.append(fid)
        return list(groups.values())

    def _stack(self, group: _Group, values: Values):
        factors = [self.factors[fid] for fid in group.fids]
        xs = tuple(
            jnp.stack([values.at(f.var_ids[i]) for f in factors])
            for i in range(len(group.manifolds))
        )
        params = jax.tree_util.tree_map(
            lambda *leaves: jnp.stack([jnp.asarray(leaf, dtype=jnp.float64) for leaf in leaves]),
            *[f.params for f in factors],
        )
        sqrt_info = jnp.stack([jnp.asarray(f.noise.sqrt_information) for f in factors])
        return factors, xs, params, sqrt_info

    # --- Objective ---

    def factor_errors(self, values: Values) -> Dict[FactorId, float]:
        """Per-factor objective contribution ½‖r‖² (or robust ρ)."""
        errors: Dict[FactorId, float] = {}
        for group in self._groups(values):
            factors, xs, params, sqrt_info = self._stack(group, values)
            r = np.asarray(_batched_error(group.residual_fn, group.manifolds)(xs, params, sqrt_info))
            for k, (fid, f) in enumerate(zip(group.fids, factors)):
                errors[fid] = f.noise.loss(r[k])
        return errors

    def total_error(self, values: Values) -> float:
        return float(sum(self.factor_errors(values).values()))

    def evaluate(self, fid: FactorId, values: Values):
        """
        Whitened residual and per-variable Jacobians of a single factor.

        Returns (r, [J_1, ..., J_n]) with J_i of shape (dim, tangent dim of
        variable i). Robust re-weighting is not applied.
        """
        f = self.factors[fid]
        single = FactorGraph(factors={FactorId(0): f}, residual_fns=self.residual_fns)
        (group,) = single._groups(values)
        _, xs, params, sqrt_info = single._stack(group, values)
        r, Js = _batched_linearizer(group.residual_fn, group.manifolds)(xs, params, sqrt_info)
        return np.asarray(r[0]), [np.asarray(J[0]) for J in Js]

    # --- Linearization ---

    def linearize(self, values: Values, index: Optional[StateIndex] = None) -> LinearSystem:
        """
        Linearize every factor at `values` and assemble the sparse system.
        """
        groups = self._groups(values)
        if index is None:
            index = self.build_state_index(values)

        row_offset: Dict[FactorId, int] = {}
        m = 0
        for fid, f in self.factors.items():
            row_offset[fid] = m
            m += f.dimension()
        n = sum(dim for _, dim in index.values())

        b = np.zeros(m, dtype=np.float64)
        rows, cols, data = [], [], []
        for group in groups:
            factors, xs, params, sqrt_info = self._stack(group, values)
            r, Js = _batched_linearizer(group.residual_fn, group.manifolds)(xs, params, sqrt_info)
            r = np.array(r)
            Js = [np.array(J) for J in Js]
            _check_finite(group.fids, r, Js)

            # Iteratively re-weighted least squares for robust models
            for k, f in enumerate(factors):
                if f.noise.is_robust:
                    sqrt_w = np.sqrt(f.noise.weight(r[k]))
                    r[k] *= sqrt_w
                    for J in Js:
                        J[k] *= sqrt_w

            K, k_dim = r.shape
            row0 = np.array([row_offset[fid] for fid in group.fids])
            for k in range(K):
                b[row0[k]:row0[k] + k_dim] = r[k]
            for i, J in enumerate(Js):
                d = J.shape[2]
                col0 = np.array([index[f.var_ids[i]][0] for f in factors])
                r_idx = row0[:, None, None] + np.arange(k_dim)[None, :, None]
                c_idx = col0[:, None, None] + np.arange(d)[None, None, :]
                rows.append(np.broadcast_to(r_idx, J.shape).ravel())
                cols.append(np.broadcast_to(c_idx, J.shape).ravel())
                data.append(J.ravel())

        if data:
            A = scipy.sparse.coo_matrix(
                (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
                shape=(m, n),
            ).tocsr()
        else:
            A = scipy.sparse.csr_matrix((m, n), dtype=np.float64)
        A.eliminate_zeros()

        logger.debug(
            "Linearized {} factors in {} groups into a {}x{} system with {} nonzeros",
            len(self.factors),
            len(groups),
            m,
            n,
            A.nnz,
        )
        return LinearSystem(A=A, b=b, index=index)
