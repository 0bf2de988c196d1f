# Copyright (c) 2025.
# This file is part of epigraph, released under the MIT License.
"""
Residual models (measurement factors) for epigraph.

This module defines the *measurement-level* building blocks used by the
factor graph:

    • Each residual function here implements an unwhitened error
          e(x₁, …, xₙ; params) ∈ ℝᵏ
      compatible with JAX differentiation, JIT compilation and `vmap`.

    • Factor types in the graph ("prior", "between", "essential_matrix")
      are mapped to these residual functions through `DEFAULT_RESIDUALS`,
      which every `FactorGraph` starts from. Custom types are added with
      `FactorGraph.register_residual`.

Residual signature
------------------
    def my_residual(xs, params, manifolds) -> jnp.ndarray

    xs:        tuple of variable values, in the factor's `var_ids` order
    params:    dict of measurement arrays stored on the factor
    manifolds: tuple of static manifold names ("se3", "so3", "euclidean"),
               one per variable, so a residual can specialize per manifold

The engine whitens the error with the factor's noise model and
differentiates it with respect to the local coordinates of every variable;
residual functions never deal with weights or Jacobians themselves.

Factor families
---------------
1. Priors
    • `prior_residual`:  e = target ⊖ x   (Log(M⁻¹ X) on SE(3)/SO(3),
      x − m on vectors). Anchors the gauge of a graph.

2. Relative motion
    • `between_residual`:  e = Log(Z⁻¹ · (T_a⁻¹ T_b)) on SE(3), its SO(3)
      analogue, or (x_b − x_a) − z on vectors. Odometry, loop closures.

3. Two-view geometry
    • `essential_matrix_residual`: 5-dimensional error between the
      essential matrix induced by T_a⁻¹ T_b and a measured one: 3
      rotation components and 2 components for the unit translation
      direction. The baseline length is not constrained.
"""

from __future__ import annotations

from typing import Callable, Dict, Sequence, Tuple

import jax.numpy as jnp

from epigraph.core.math3d import (
    se3_between,
    se3_log,
    so3_log,
    unit3_basis,
    unit3_local,
    unit3_normalize,
)
from epigraph.core.types import EssentialMatrix, Factor, NodeId
from epigraph.slam import manifold as mf

ResidualFn = Callable[
    [Tuple[jnp.ndarray, ...], Dict[str, jnp.ndarray], Tuple[str, ...]], jnp.ndarray
]


def _same_manifold(manifolds: Sequence[str], factor_type: str) -> str:
    if len(set(manifolds)) != 1:
        raise ValueError(f"'{factor_type}' factor connects variables on different manifolds: {manifolds}")
    return manifolds[0]


def prior_residual(xs, params, manifolds) -> jnp.ndarray:
    """
    Prior on a single variable:
        residual = target ⊖ x
    Works for every manifold.
    """
    (x,) = xs
    (m,) = manifolds
    return mf.local_coordinates(m, params["target"], x)


def between_residual(xs, params, manifolds) -> jnp.ndarray:
    """
    Relative constraint between two variables a and b.

        se3:        Log(Z⁻¹ · T_a⁻¹ T_b)
        so3:        Log(Zᵀ · R_aᵀ R_b)
        euclidean:  (x_b − x_a) − z
    """
    a, b = xs
    m = _same_manifold(manifolds, "between")
    meas = params["measurement"]
    if m == "se3":
        return se3_log(se3_between(meas, se3_between(a, b)))
    if m == "so3":
        return so3_log(meas.T @ (a.T @ b))
    return (b - a) - meas


def essential_matrix_residual(xs, params, manifolds) -> jnp.ndarray:
    """
    Essential-matrix constraint between two SE(3) poses.

    The predicted relative pose T_ab = T_a⁻¹ T_b is reduced to
    (R_ab, t_ab / |t_ab|) and compared with the measured rotation and
    direction:

        r[0:3] = Log(R_measᵀ R_ab)
        r[3:5] = local coordinates of the predicted direction in the
                 tangent plane of the measured one
    """
    if tuple(manifolds) != ("se3", "se3"):
        raise ValueError(f"'essential_matrix' factor requires two se3 poses, got {manifolds}")
    Ta, Tb = xs
    T_ab = se3_between(Ta, Tb)
    rot_err = so3_log(params["rotation"].T @ T_ab[:3, :3])
    direction = unit3_normalize(T_ab[:3, 3])
    dir_err = unit3_local(params["direction"], params["basis"], direction)
    return jnp.concatenate([rot_err, dir_err])


DEFAULT_RESIDUALS: Dict[str, ResidualFn] = {
    "prior": prior_residual,
    "between": between_residual,
    "essential_matrix": essential_matrix_residual,
}


# --- Factor builders ---

def _check_noise_dim(noise, expected: int, factor_type: str) -> None:
    if noise.dim != expected:
        raise ValueError(
            f"'{factor_type}' factor needs a {expected}-dimensional noise model, got {noise.dim}"
        )


def prior_factor(key: int, target, noise) -> Factor:
    """Prior factor pinning variable `key` to `target`."""
    target = jnp.asarray(target, dtype=jnp.float64)
    manifold = mf.get_manifold_for_var_type(mf.infer_var_type(target))
    _check_noise_dim(noise, mf.tangent_dim(manifold, target), "prior")
    return Factor(
        type="prior",
        var_ids=(NodeId(int(key)),),
        params={"target": target},
        noise=noise,
    )


def between_factor(key_a: int, key_b: int, measurement, noise) -> Factor:
    """Relative-pose (odometry) factor: b measured in the frame of a."""
    measurement = jnp.asarray(measurement, dtype=jnp.float64)
    manifold = mf.get_manifold_for_var_type(mf.infer_var_type(measurement))
    _check_noise_dim(noise, mf.tangent_dim(manifold, measurement), "between")
    return Factor(
        type="between",
        var_ids=(NodeId(int(key_a)), NodeId(int(key_b))),
        params={"measurement": measurement},
        noise=noise,
    )


def essential_matrix_constraint(key_a: int, key_b: int, measured: EssentialMatrix, noise) -> Factor:
    """
    Binary pose constraint induced by an essential matrix measurement.

    `measured` describes frame b relative to frame a, as produced by
    `EssentialMatrix.from_pose(T_a⁻¹ T_b)` or a two-view estimator.
    """
    _check_noise_dim(noise, 5, "essential_matrix")
    return Factor(
        type="essential_matrix",
        var_ids=(NodeId(int(key_a)), NodeId(int(key_b))),
        params={
            "rotation": measured.rotation,
            "direction": measured.direction,
            "basis": unit3_basis(measured.direction),
        },
        noise=noise,
    )
