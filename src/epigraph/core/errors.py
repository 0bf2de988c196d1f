# Copyright (c) 2025.
# This file is part of epigraph, released under the MIT License.
"""
Exception types raised by the epigraph engine.

Construction-time mistakes (duplicate keys, unknown keys, bad noise models)
are caller bugs and are raised immediately. Numerical degeneracy
(rank-deficient systems) is expected in practice; the optimizer reports it
through its result object, while the marginals engine raises it.
"""

from __future__ import annotations

from typing import Iterable, Tuple

import numpy as np


class EpigraphError(Exception):
    """Base class for all engine errors."""


class DuplicateKey(EpigraphError, KeyError):
    def __init__(self, key) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"variable {self.key!r} already exists"


class UnknownKey(EpigraphError, KeyError):
    def __init__(self, key, context: str = "") -> None:
        super().__init__(key)
        self.key = key
        self.context = context

    def __str__(self) -> str:
        msg = f"variable {self.key!r} does not exist"
        if self.context:
            msg += f" ({self.context})"
        return msg


class InvalidNoiseModel(EpigraphError, ValueError):
    """Noise model with non-positive or non-finite variance, or a covariance
    that is not symmetric positive-definite."""


class UnderconstrainedSystem(EpigraphError, np.linalg.LinAlgError):
    """
    The linear system has unobservable directions.

    Attributes
    ----------
    keys:
        Variables known to be involved (may be empty when the deficiency is
        only detected numerically).
    deficiency:
        Number of unobservable tangent directions, or -1 when unknown.
    """

    def __init__(self, message: str, keys: Iterable = (), deficiency: int = -1) -> None:
        super().__init__(message)
        self.keys: Tuple = tuple(keys)
        self.deficiency = deficiency


class SingularInformationMatrix(UnderconstrainedSystem):
    """The information matrix at a solution cannot be inverted."""


class OptimizationFailed(EpigraphError):
    """Damping saturated without finding a step that decreases the error."""


class MaxIterationsReached(EpigraphError):
    """The iteration budget ran out before convergence."""


class NonFiniteLinearization(EpigraphError, FloatingPointError):
    """A residual or Jacobian evaluated to NaN or infinity."""

    def __init__(self, factor_ids: Iterable) -> None:
        self.factor_ids: Tuple = tuple(factor_ids)
        super().__init__(f"non-finite residual or Jacobian in factors {list(self.factor_ids)}")
