# Copyright (c) 2025.
# This file is part of epigraph, released under the MIT License.
"""
Core typed data structures for epigraph.

This module defines the lightweight container classes used throughout the
factor graph engine. These types store only structural information and
measurements; all numerical work is performed by JAX-compiled functions in
`core.factor_graph` and by the solvers in `optimization`.

Classes
-------
Factor
    Represents a constraint between one or more variables. A factor contains:
    - type: String key selecting a residual model (e.g. "prior", "between",
            "essential_matrix")
    - var_ids: Ordered tuple of variable ids used by the residual
    - params: Dictionary of measurement arrays passed into the residual
    - noise: Noise model whitening the residual

EssentialMatrix
    Two-view relative geometry up to scale: a relative rotation plus a unit
    translation direction.

Notes
-----
Factors are frozen: once added to a graph they are read-only. Variables are
not objects of their own; they live as keyed arrays in `core.values.Values`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, NewType, Tuple

import jax.numpy as jnp
import numpy as np

from .math3d import (
    essential_matrix,
    se3_rotation,
    se3_translation,
    unit3_normalize,
)

NodeId = NewType("NodeId", int)
FactorId = NewType("FactorId", int)


@dataclass(frozen=True, eq=False)
class Factor:
    """Tagged constraint connecting variables."""
    type: str
    var_ids: Tuple[NodeId, ...]
    params: Dict[str, Any]
    noise: Any = field(repr=False)

    def dimension(self) -> int:
        """Length of the whitened residual vector."""
        return self.noise.dim


@dataclass(frozen=True, eq=False)
class EssentialMatrix:
    """
    Essential matrix stored as (aRb, unit direction of aTb).

    Only 5 degrees of freedom are meaningful: 3 for the rotation and 2 for
    the direction, the baseline length being unobservable from two views.
    """
    rotation: jnp.ndarray
    direction: jnp.ndarray

    def __post_init__(self) -> None:
        R = jnp.asarray(self.rotation, dtype=jnp.float64)
        d = jnp.asarray(self.direction, dtype=jnp.float64).reshape(3)
        if R.shape != (3, 3):
            raise ValueError(f"rotation must be 3x3, got {R.shape}")
        if float(jnp.linalg.norm(d)) == 0.0:
            raise ValueError("direction must be non-zero")
        object.__setattr__(self, "rotation", R)
        object.__setattr__(self, "direction", unit3_normalize(d))

    @classmethod
    def from_pose(cls, T_ab: jnp.ndarray) -> "EssentialMatrix":
        """Essential matrix induced by the relative pose of frame b in frame a."""
        T_ab = jnp.asarray(T_ab)
        return cls(rotation=se3_rotation(T_ab), direction=se3_translation(T_ab))

    def matrix(self) -> jnp.ndarray:
        """3×3 matrix E = [t]ₓ R."""
        return essential_matrix(self.rotation, self.direction)

    def epipolar_error(self, point_a, point_b) -> float:
        """
        Algebraic epipolar error aᵀ E b for normalized image points.

        Points may be given as 2D (x, y) or homogeneous 3-vectors.
        """
        a = np.asarray(point_a, dtype=np.float64).reshape(-1)
        b = np.asarray(point_b, dtype=np.float64).reshape(-1)
        if a.shape[0] == 2:
            a = np.append(a, 1.0)
        if b.shape[0] == 2:
            b = np.append(b, 1.0)
        return float(a @ np.asarray(self.matrix()) @ b)
