"""
SO(3), SE(3) and unit-sphere operations for epigraph.

This module implements the Lie-group mathematics needed by the factor
residuals and by the manifold retractions:

    • SO(3) exponential & logarithm maps
    • SE(3) exponential & logarithm maps on 4×4 homogeneous matrices
    • Composition, inversion and relative poses
    • Unit-sphere (S²) tangent bases and local coordinates, used by
      essential-matrix constraints

All functions are written in JAX and support:
    - JIT compilation
    - Forward / reverse mode differentiation
    - `vmap` batching

Every small-angle branch is selected with `jnp.where` on *safe* inputs, so
that the branch which is not taken never produces NaN. This matters because
the engine differentiates residuals exactly at the identity (a converged
prior or a noiseless odometry edge), where a naive `arccos` or
`sin(θ)/θ` has an undefined derivative.

Key Functions
-------------
so3_exp(w)
    Maps a 3-vector (axis-angle) to a 3×3 rotation matrix.

so3_log(R)
    Maps a rotation matrix back to its axis-angle representation,
    including rotations close to π.

se3_exp(xi)
    Maps a 6-vector twist ξ = (v, ω) to a 4×4 SE(3) transform matrix.

se3_log(T)
    Inverse of se3_exp; extracts a twist from an SE3 matrix.

se3_inverse(T), se3_between(A, B)
    Group operations: T⁻¹ and A⁻¹ ∘ B.

unit3_basis(p), unit3_local(p, basis, q)
    Tangent plane basis of a unit vector and the 2D local coordinates of
    another unit vector in that plane.

Utilities
---------
hat(ω)
    Converts a 3-vector to its skew-symmetric matrix.

vee(Ω)
    Converts a 3×3 skew matrix back into a 3-vector.
"""

from __future__ import annotations

from typing import Tuple

import jax.numpy as jnp

_SMALL_ANGLE_SQ = 1e-10
_NEAR_PI_COS = -0.99


def _safe_norm(v: jnp.ndarray, eps_sq: float = 1e-24) -> jnp.ndarray:
    """Euclidean norm whose derivative at zero is 0 instead of NaN."""
    n2 = jnp.sum(v * v)
    tiny = n2 < eps_sq
    n = jnp.sqrt(jnp.where(tiny, 1.0, n2))
    return jnp.where(tiny, 0.0, n)


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    zero = jnp.zeros_like(x)
    return jnp.stack(
        [
            jnp.stack([zero, -z, y]),
            jnp.stack([z, zero, -x]),
            jnp.stack([-y, x, zero]),
        ]
    )


def vee(M: jnp.ndarray) -> jnp.ndarray:
    """
    vee: so(3) -> R^3, inverse of hat.
    Antisymmetrizes M first, so vee(hat(w)) == w.
    """
    return jnp.stack([
        M[2, 1] - M[1, 2],
        M[0, 2] - M[2, 0],
        M[1, 0] - M[0, 1],
    ]) / 2.0


def _rodrigues_coeffs(theta_sq: jnp.ndarray):
    """
    Coefficients A = sin θ/θ, B = (1 − cos θ)/θ², C = (θ − sin θ)/θ³
    with Taylor expansions below the small-angle threshold.
    """
    small = theta_sq < _SMALL_ANGLE_SQ
    safe_sq = jnp.where(small, 1.0, theta_sq)
    theta = jnp.sqrt(safe_sq)
    s = jnp.sin(theta)
    c = jnp.cos(theta)
    A = jnp.where(small, 1.0 - theta_sq / 6.0, s / theta)
    B = jnp.where(small, 0.5 - theta_sq / 24.0, (1.0 - c) / safe_sq)
    C = jnp.where(small, 1.0 / 6.0 - theta_sq / 120.0, (theta - s) / (safe_sq * theta))
    return A, B, C


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from so(3) (rotation vector) to SO(3).

    Rodrigues' formula R = I + A·W + B·W² with W = hat(w).
    """
    w = jnp.asarray(w)
    A, B, _ = _rodrigues_coeffs(jnp.dot(w, w))
    W = hat(w)
    return jnp.eye(3, dtype=W.dtype) + A * W + B * (W @ W)


def so3_left_jacobian(w: jnp.ndarray) -> jnp.ndarray:
    """Left Jacobian of SO(3), V = I + B·W + C·W², used by se3_exp."""
    w = jnp.asarray(w)
    _, B, C = _rodrigues_coeffs(jnp.dot(w, w))
    W = hat(w)
    return jnp.eye(3, dtype=W.dtype) + B * W + C * (W @ W)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Numerically stable logarithm map for SO(3).

    Handles:
      - small angles via a Taylor expansion of θ / sin θ
      - angles close to π, where sin θ carries no directional
        information, by reading the axis off the symmetric part of R
      - trace slightly outside [-1, 3] via clamping

    Returns w in R^3 such that Exp(w) ~ R, with |w| <= π.
    """
    R = jnp.asarray(R)
    s = vee(R)  # sin(θ) · axis
    cos_theta = jnp.clip((jnp.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    sin_theta = _safe_norm(s)
    theta = jnp.arctan2(sin_theta, cos_theta)

    small = theta * theta < _SMALL_ANGLE_SQ
    safe_sin = jnp.where(sin_theta < 1e-12, 1.0, sin_theta)
    factor = jnp.where(small, 1.0 + theta * theta / 6.0, theta / safe_sin)
    w_general = factor * s

    # Near π: sym(R) = cos θ·I + (1 − cos θ)·k kᵀ
    near_pi = cos_theta < _NEAR_PI_COS
    denom = jnp.where(near_pi, 1.0 - cos_theta, 1.0)
    kkT = ((R + R.T) / 2.0 - cos_theta * jnp.eye(3, dtype=R.dtype)) / denom
    diag = jnp.diagonal(kkT)
    i = jnp.argmax(diag)
    k = kkT[:, i] / jnp.sqrt(jnp.maximum(diag[i], 1e-12))
    k = jnp.where(jnp.dot(k, s) < 0.0, -k, k)
    w_pi = theta * k

    return jnp.where(near_pi, w_pi, w_general)


def se3_from_rt(R: jnp.ndarray, t: jnp.ndarray) -> jnp.ndarray:
    """Build a 4×4 homogeneous transform from rotation R and translation t."""
    R = jnp.asarray(R)
    t = jnp.asarray(t, dtype=R.dtype)
    top = jnp.concatenate([R, t.reshape(3, 1)], axis=1)
    bottom = jnp.array([[0.0, 0.0, 0.0, 1.0]], dtype=R.dtype)
    return jnp.concatenate([top, bottom], axis=0)


def se3_rotation(T: jnp.ndarray) -> jnp.ndarray:
    return T[:3, :3]


def se3_translation(T: jnp.ndarray) -> jnp.ndarray:
    return T[:3, 3]


def se3_identity() -> jnp.ndarray:
    """
    Convenience: return the identity SE(3) pose as a 4×4 matrix.
    """
    return jnp.eye(4)


def se3_exp(xi: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from se(3) -> SE(3).

    xi = [v_x, v_y, v_z, w_x, w_y, w_z]
      - v: translational part of the twist
      - w: rotation vector in R^3 (axis-angle)

    Returns 4×4 homogeneous SE(3) matrix

        T = [ R, V v ]
            [ 0, 1   ]

    where V is the SO(3) left Jacobian.
    """
    xi = jnp.asarray(xi)
    v = xi[:3]
    w = xi[3:]
    R = so3_exp(w)
    t = so3_left_jacobian(w) @ v
    return se3_from_rt(R, t)


def se3_log(T: jnp.ndarray) -> jnp.ndarray:
    """
    Logarithm map SE(3) -> se(3), inverse of se3_exp.

    Returns xi = [v, w] with v = V⁻¹ t, where
        V⁻¹ = I − ½ W + D W²,   D = (1 − θ sin θ / (2 (1 − cos θ))) / θ².
    """
    T = jnp.asarray(T)
    R = T[:3, :3]
    t = T[:3, 3]
    w = so3_log(R)

    theta_sq = jnp.dot(w, w)
    small = theta_sq < _SMALL_ANGLE_SQ
    safe_sq = jnp.where(small, 1.0, theta_sq)
    theta = jnp.sqrt(safe_sq)
    D = jnp.where(
        small,
        1.0 / 12.0 + theta_sq / 720.0,
        (1.0 - theta * jnp.sin(theta) / (2.0 * (1.0 - jnp.cos(theta)))) / safe_sq,
    )
    W = hat(w)
    V_inv = jnp.eye(3, dtype=T.dtype) - 0.5 * W + D * (W @ W)
    v = V_inv @ t
    return jnp.concatenate([v, w])


def se3_inverse(T: jnp.ndarray) -> jnp.ndarray:
    """Inverse of a rigid transform: [Rᵀ, −Rᵀ t]."""
    R = T[:3, :3]
    t = T[:3, 3]
    return se3_from_rt(R.T, -R.T @ t)


def se3_between(A: jnp.ndarray, B: jnp.ndarray) -> jnp.ndarray:
    """Relative transform A⁻¹ ∘ B, i.e. B expressed in the frame of A."""
    return se3_inverse(A) @ B


def pose_vec_to_rt(v: jnp.ndarray) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """
    Split a 6D pose vector into translation and rotation-vector (axis-angle).
    v: [tx, ty, tz, wx, wy, wz]
    """
    v = jnp.asarray(v)
    t = v[0:3]
    w = v[3:6]
    return t, w


def pose_vec_to_matrix(v: jnp.ndarray) -> jnp.ndarray:
    """
    Convert a [tx, ty, tz, wx, wy, wz] pose vector to a 4×4 transform.

    Unlike se3_exp, the translation here is the actual translation of the
    pose, not the translational part of a twist.
    """
    t, w = pose_vec_to_rt(v)
    return se3_from_rt(so3_exp(w), t)


def matrix_to_pose_vec(T: jnp.ndarray) -> jnp.ndarray:
    """Inverse of pose_vec_to_matrix."""
    return jnp.concatenate([T[:3, 3], so3_log(T[:3, :3])])


# --- Unit sphere (directions) ---

def unit3_normalize(p: jnp.ndarray) -> jnp.ndarray:
    p = jnp.asarray(p)
    n = _safe_norm(p)
    return p / jnp.where(n > 0.0, n, 1.0)


def unit3_basis(p: jnp.ndarray) -> jnp.ndarray:
    """
    Orthonormal 3×2 basis [b1, b2] of the tangent plane at unit vector p.

    b1 is built from the coordinate axis least aligned with p, so the basis
    is well conditioned for every direction.
    """
    p = unit3_normalize(p)
    axis = jnp.eye(3, dtype=p.dtype)[jnp.argmin(jnp.abs(p))]
    b1 = unit3_normalize(jnp.cross(p, axis))
    b2 = jnp.cross(p, b1)
    return jnp.stack([b1, b2], axis=1)


def unit3_local(p: jnp.ndarray, basis: jnp.ndarray, q: jnp.ndarray) -> jnp.ndarray:
    """
    Local coordinates of unit vector q in the tangent plane at p.

    The 2-vector points from p towards q and its norm is the angle
    between them. `basis` must be unit3_basis(p). A zero q (coincident
    poses) maps to the zero vector with finite derivatives.
    """
    x = basis.T @ q
    cos_angle = jnp.clip(jnp.dot(p, q), -1.0, 1.0)
    sin_angle = _safe_norm(x)
    # arctan2 has no derivative at (0, 0)
    degenerate = sin_angle * sin_angle + cos_angle * cos_angle < 1e-24
    cos_angle = jnp.where(degenerate, 1.0, cos_angle)
    angle = jnp.arctan2(sin_angle, cos_angle)
    small = angle * angle < _SMALL_ANGLE_SQ
    safe_sin = jnp.where(sin_angle < 1e-12, 1.0, sin_angle)
    factor = jnp.where(small, 1.0 + angle * angle / 6.0, angle / safe_sin)
    return factor * x


def essential_matrix(R: jnp.ndarray, direction: jnp.ndarray) -> jnp.ndarray:
    """E = [t]ₓ R for a relative rotation R and unit translation direction t."""
    return hat(unit3_normalize(direction)) @ jnp.asarray(R)
