# Copyright (c) 2025.
# This file is part of epigraph, released under the MIT License.
"""
Manifold models for SE(3), SO(3) and Euclidean variables.

This module centralizes the *geometric* update rules needed by the
optimizer and by factor linearization:

    • Retraction  x ⊕ δ   (apply a tangent perturbation)
    • Local coordinates  a ⊖ b   (tangent vector taking a to b)
    • Tangent dimensions
    • Metadata that maps variable types to their manifold model
      (e.g. "pose_se3" → "se3", "point3" → "euclidean")

Conventions
-----------
Perturbations are applied on the right, in the body frame:

    se3:        T ⊕ ξ = T · Exp(ξ),      ξ = [v, ω] ∈ R⁶
    so3:        R ⊕ ω = R · Exp(ω)
    euclidean:  x ⊕ δ = x + δ

and local coordinates are the inverse operation, e.g. Log(A⁻¹ B) for SE(3).
Jacobians and marginal covariances are therefore expressed in the tangent
space at each variable's current value.

All functions are pure and JAX-traceable; the manifold name is a static
Python string, so a jitted caller specializes on it once.
"""

from __future__ import annotations

from typing import Dict

import jax.numpy as jnp

from epigraph.core.math3d import se3_between, se3_exp, se3_log, so3_exp, so3_log

TYPE_TO_MANIFOLD: Dict[str, str] = {
    "pose_se3": "se3",
    "rot_so3": "so3",
    "vector": "euclidean",
    "point3": "euclidean",
    "place1d": "euclidean",
}

MANIFOLD_DIMS: Dict[str, int] = {"se3": 6, "so3": 3}


def get_manifold_for_var_type(var_type: str) -> str:
    return TYPE_TO_MANIFOLD.get(var_type, "euclidean")


def infer_var_type(value: jnp.ndarray) -> str:
    """Guess a variable type from the shape of its value."""
    shape = jnp.shape(value)
    if shape == (4, 4):
        return "pose_se3"
    if shape == (3, 3):
        return "rot_so3"
    if len(shape) == 1:
        return "vector"
    raise ValueError(f"cannot infer a variable type for a value of shape {shape}")


def check_value(manifold: str, value: jnp.ndarray) -> None:
    """Raise ValueError when `value` has the wrong shape for `manifold`."""
    shape = jnp.shape(value)
    if manifold == "se3" and shape != (4, 4):
        raise ValueError(f"se3 values must be 4x4 matrices, got shape {shape}")
    if manifold == "so3" and shape != (3, 3):
        raise ValueError(f"so3 values must be 3x3 matrices, got shape {shape}")
    if manifold == "euclidean" and len(shape) != 1:
        raise ValueError(f"euclidean values must be 1-D vectors, got shape {shape}")


def tangent_dim(manifold: str, value: jnp.ndarray) -> int:
    if manifold in MANIFOLD_DIMS:
        return MANIFOLD_DIMS[manifold]
    return int(jnp.shape(value)[0])


def retract(manifold: str, x: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """Apply the tangent perturbation `delta` to `x`."""
    if manifold == "se3":
        return x @ se3_exp(delta)
    if manifold == "so3":
        return x @ so3_exp(delta)
    return x + delta


def local_coordinates(manifold: str, a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """Tangent vector δ at `a` such that retract(a, δ) == b."""
    if manifold == "se3":
        return se3_log(se3_between(a, b))
    if manifold == "so3":
        return so3_log(a.T @ b)
    return b - a
