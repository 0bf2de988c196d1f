# Copyright (c) 2025.
# This file is part of epigraph, released under the MIT License.
"""
Noise models for factor residuals.

A noise model turns a raw geometric error e into a whitened residual
r = R e, where R is the upper-triangular square-root information matrix
(RᵀR = Σ⁻¹). The contribution of a factor to the objective is then ½‖r‖².

Models
------
Gaussian(covariance)
    Full covariance. Also constructible from an information matrix.

Diagonal(sigmas)
    Independent components with standard deviations `sigmas`.

Isotropic(dim, sigma), Unit(dim)
    Shared standard deviation; Unit is sigma = 1.

Robust(base, kernel)
    Wraps a Gaussian model with an M-estimator (`Huber`, `Cauchy`). The
    objective uses ρ(‖r‖) and linearization re-weights the whitened system
    by √w(‖r‖) (iteratively re-weighted least squares).

All constructors validate their input and raise `InvalidNoiseModel` for
zero, negative or non-finite variances and for covariances that are not
symmetric positive-definite.
"""

from __future__ import annotations

import numpy as np

from .errors import InvalidNoiseModel


class Gaussian:
    """Gaussian noise with a full covariance matrix."""

    is_robust = False

    def __init__(self, covariance) -> None:
        cov = np.array(covariance, dtype=np.float64, ndmin=2)
        if cov.ndim != 2 or cov.shape[0] != cov.shape[1] or cov.shape[0] == 0:
            raise InvalidNoiseModel(f"covariance must be a non-empty square matrix, got shape {cov.shape}")
        if not np.all(np.isfinite(cov)):
            raise InvalidNoiseModel("covariance contains non-finite entries")
        if not np.allclose(cov, cov.T, rtol=1e-9, atol=1e-12):
            raise InvalidNoiseModel("covariance must be symmetric")
        try:
            np.linalg.cholesky(cov)
        except np.linalg.LinAlgError as exc:
            raise InvalidNoiseModel("covariance must be positive-definite") from exc
        info = np.linalg.inv(cov)
        info = 0.5 * (info + info.T)
        self._set(np.linalg.cholesky(info).T, cov)

    def _set(self, sqrt_information: np.ndarray, covariance: np.ndarray) -> None:
        self._R = sqrt_information
        self._R.setflags(write=False)
        self._cov = covariance
        self._cov.setflags(write=False)

    @classmethod
    def from_information(cls, information) -> "Gaussian":
        info = np.atleast_2d(np.asarray(information, dtype=np.float64))
        if info.ndim != 2 or info.shape[0] != info.shape[1] or not np.all(np.isfinite(info)):
            raise InvalidNoiseModel("information must be a finite square matrix")
        try:
            np.linalg.cholesky(info)
        except np.linalg.LinAlgError as exc:
            raise InvalidNoiseModel("information must be positive-definite") from exc
        return cls(np.linalg.inv(info))

    @property
    def dim(self) -> int:
        return self._R.shape[0]

    @property
    def sqrt_information(self) -> np.ndarray:
        return self._R

    @property
    def information(self) -> np.ndarray:
        return self._R.T @ self._R

    @property
    def covariance(self) -> np.ndarray:
        return self._cov

    def whiten(self, e):
        return self._R @ np.asarray(e)

    def whiten_jacobian(self, J):
        return self._R @ np.asarray(J)

    def loss(self, r: np.ndarray) -> float:
        """Objective contribution of a whitened residual."""
        r = np.asarray(r)
        return 0.5 * float(r @ r)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(dim={self.dim})"


class Diagonal(Gaussian):
    """Independent components with per-component standard deviations."""

    def __init__(self, sigmas) -> None:
        s = np.atleast_1d(np.asarray(sigmas, dtype=np.float64))
        if s.ndim != 1 or s.shape[0] == 0:
            raise InvalidNoiseModel("sigmas must be a non-empty vector")
        if not np.all(np.isfinite(s)) or np.any(s <= 0.0):
            raise InvalidNoiseModel(f"sigmas must be finite and strictly positive, got {s}")
        self.sigmas = s
        self._set(np.diag(1.0 / s), np.diag(s * s))

    @classmethod
    def from_variances(cls, variances) -> "Diagonal":
        v = np.atleast_1d(np.asarray(variances, dtype=np.float64))
        if not np.all(np.isfinite(v)) or np.any(v <= 0.0):
            raise InvalidNoiseModel(f"variances must be finite and strictly positive, got {v}")
        return cls(np.sqrt(v))

    def whiten(self, e):
        return np.asarray(e) / self.sigmas

    def whiten_jacobian(self, J):
        return np.asarray(J) / self.sigmas[:, None]


class Isotropic(Diagonal):
    def __init__(self, dim: int, sigma: float) -> None:
        if int(dim) <= 0:
            raise InvalidNoiseModel(f"dimension must be positive, got {dim}")
        super().__init__(np.full(int(dim), sigma, dtype=np.float64))
        self.sigma = float(sigma)


class Unit(Isotropic):
    def __init__(self, dim: int) -> None:
        super().__init__(dim, 1.0)


# --- Robust kernels ---

class Huber:
    """Quadratic inside |x| <= k, linear outside."""

    def __init__(self, k: float = 1.345) -> None:
        if not k > 0.0:
            raise InvalidNoiseModel(f"Huber threshold must be positive, got {k}")
        self.k = float(k)

    def rho(self, x: float) -> float:
        x = abs(x)
        if x <= self.k:
            return 0.5 * x * x
        return self.k * x - 0.5 * self.k * self.k

    def weight(self, x: float) -> float:
        x = abs(x)
        return 1.0 if x <= self.k else self.k / x


class Cauchy:
    def __init__(self, k: float = 0.1) -> None:
        if not k > 0.0:
            raise InvalidNoiseModel(f"Cauchy scale must be positive, got {k}")
        self.k = float(k)

    def rho(self, x: float) -> float:
        k2 = self.k * self.k
        return 0.5 * k2 * np.log1p(x * x / k2)

    def weight(self, x: float) -> float:
        return 1.0 / (1.0 + x * x / (self.k * self.k))


class Robust:
    """M-estimator wrapper around a Gaussian model."""

    is_robust = True

    def __init__(self, base: Gaussian, kernel) -> None:
        if not isinstance(base, Gaussian):
            raise InvalidNoiseModel("robust models wrap a Gaussian base model")
        self.base = base
        self.kernel = kernel

    @property
    def dim(self) -> int:
        return self.base.dim

    @property
    def sqrt_information(self) -> np.ndarray:
        return self.base.sqrt_information

    @property
    def covariance(self) -> np.ndarray:
        return self.base.covariance

    def whiten(self, e):
        return self.base.whiten(e)

    def whiten_jacobian(self, J):
        return self.base.whiten_jacobian(J)

    def loss(self, r: np.ndarray) -> float:
        return float(self.kernel.rho(float(np.linalg.norm(r))))

    def weight(self, r: np.ndarray) -> float:
        return float(self.kernel.weight(float(np.linalg.norm(r))))

    def __repr__(self) -> str:
        return f"Robust({self.base!r}, {type(self.kernel).__name__}(k={self.kernel.k}))"
