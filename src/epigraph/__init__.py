# Copyright (c) 2025.
# This file is part of epigraph, released under the MIT License.
"""
epigraph: nonlinear least-squares on factor graphs with JAX.

Variables live in a `Values` store, factors (priors, relative-pose
constraints, essential-matrix constraints) live in a `FactorGraph`, and
`optimize` runs Levenberg–Marquardt (or Gauss–Newton) on the manifold.
`Marginals` recovers per-variable covariances at a solution.
"""

import jax

jax.config.update("jax_enable_x64", True)

from epigraph.core.errors import (  # noqa: E402
    DuplicateKey,
    EpigraphError,
    InvalidNoiseModel,
    MaxIterationsReached,
    NonFiniteLinearization,
    OptimizationFailed,
    SingularInformationMatrix,
    UnderconstrainedSystem,
    UnknownKey,
)
from epigraph.core.factor_graph import FactorGraph  # noqa: E402
from epigraph.core.linear_system import LinearSystem  # noqa: E402
from epigraph.core.noise import (  # noqa: E402
    Cauchy,
    Diagonal,
    Gaussian,
    Huber,
    Isotropic,
    Robust,
    Unit,
)
from epigraph.core.types import EssentialMatrix, Factor, FactorId, NodeId  # noqa: E402
from epigraph.core.values import Values  # noqa: E402
from epigraph.optimization.linear_solver import LinearSolver  # noqa: E402
from epigraph.optimization.marginals import Marginals, marginal_covariance  # noqa: E402
from epigraph.optimization.solvers import (  # noqa: E402
    GNConfig,
    IterationRecord,
    LMConfig,
    OptimizationResult,
    OptimizerStatus,
    gauss_newton,
    levenberg_marquardt,
    optimize,
)
from epigraph.slam.measurements import (  # noqa: E402
    between_factor,
    essential_matrix_constraint,
    prior_factor,
)

__version__ = "0.1.0"

__all__ = [
    "Cauchy",
    "Diagonal",
    "DuplicateKey",
    "EpigraphError",
    "EssentialMatrix",
    "Factor",
    "FactorGraph",
    "FactorId",
    "GNConfig",
    "Gaussian",
    "Huber",
    "InvalidNoiseModel",
    "Isotropic",
    "IterationRecord",
    "LMConfig",
    "LinearSolver",
    "LinearSystem",
    "Marginals",
    "MaxIterationsReached",
    "NodeId",
    "NonFiniteLinearization",
    "OptimizationFailed",
    "OptimizationResult",
    "OptimizerStatus",
    "Robust",
    "SingularInformationMatrix",
    "UnderconstrainedSystem",
    "Unit",
    "UnknownKey",
    "Values",
    "between_factor",
    "essential_matrix_constraint",
    "gauss_newton",
    "levenberg_marquardt",
    "marginal_covariance",
    "optimize",
    "prior_factor",
]
