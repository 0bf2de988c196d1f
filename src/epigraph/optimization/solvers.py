# Copyright (c) 2025.
# This file is part of epigraph, released under the MIT License.
"""
Nonlinear optimization solvers for epigraph.

This module implements the iterative solvers that drive a `FactorGraph`
from an initial `Values` estimate to a maximum-a-posteriori solution:

    linearize → solve (damped) → retract → accept / reject → repeat

Key Concepts
------------
LMConfig
    Dataclass holding configuration for Levenberg–Marquardt:
    - max_iters: maximum number of accepted iterations
    - rel_error_tol / abs_error_tol / error_tol: convergence on the error
    - grad_tol / step_tol: convergence on gradient and step norms
    - initial_lambda, lambda_factor, lambda_lower_bound,
      lambda_upper_bound, max_retries: damping schedule
    - linear_solver, rank_policy, rank_tol, check_observability:
      linear algebra and degeneracy handling
    - deadline: optional wall-clock budget in seconds
    - verbose: log every iteration at INFO instead of DEBUG

GNConfig
    Gauss–Newton: the same convergence knobs without damping. A step that
    increases the error ends the run as FAILED.

levenberg_marquardt(graph, values, cfg), gauss_newton(graph, values, cfg)
    Run the optimizer and return an `OptimizationResult`.

optimize(graph, values, cfg=None)
    Dispatches on the config type; defaults to Levenberg–Marquardt.

State machine
-------------
    INITIALIZED → ITERATING → CONVERGED
                            → MAX_ITERATIONS_REACHED (soft failure)
                            → DEADLINE_REACHED       (soft failure)
                            → FAILED                 (λ saturated, the system
                                                      is underconstrained, or
                                                      a residual is not finite)

Every result carries the name of the criterion that ended the run in
`termination`.

The optimizer copies the caller's values and only ever replaces its working
estimate with a fully evaluated, accepted snapshot. The values returned are
always the last accepted estimate, whatever the terminal state.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

import numpy as np
from loguru import logger

from epigraph.core.errors import (
    MaxIterationsReached,
    NonFiniteLinearization,
    OptimizationFailed,
    UnderconstrainedSystem,
)
from epigraph.core.factor_graph import FactorGraph
from epigraph.core.linear_system import LinearSystem
from epigraph.core.values import Values
from epigraph.optimization.linear_solver import LinearSolver


class OptimizerStatus(str, Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    FAILED = "failed"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    DEADLINE_REACHED = "deadline_reached"


@dataclass
class GNConfig:
    max_iters: int = 100
    rel_error_tol: float = 1e-5
    abs_error_tol: float = 1e-5
    error_tol: float = 0.0
    grad_tol: float = 1e-9
    step_tol: float = 1e-10
    linear_solver: str = "sparse"
    rank_policy: str = "raise"
    rank_tol: float = 1e-9
    check_observability: bool = True
    deadline: Optional[float] = None
    verbose: bool = False


@dataclass
class LMConfig(GNConfig):
    initial_lambda: float = 1e-5
    lambda_factor: float = 10.0
    lambda_lower_bound: float = 0.0
    lambda_upper_bound: float = 1e5
    max_retries: int = 10
    diagonal_damping: bool = True
    min_diagonal: float = 1e-6
    max_diagonal: float = 1e32


@dataclass(frozen=True)
class IterationRecord:
    iteration: int
    error: float
    lambda_: float
    step_norm: float
    accepted: bool


@dataclass
class OptimizationResult:
    """
    Outcome of a nonlinear optimization run.

    `termination` names the criterion that ended the run, e.g.
    "small_error", "gradient", "no_predicted_decrease" or "lambda_saturated".
    """
    values: Values
    status: OptimizerStatus
    iterations: int
    initial_error: float
    final_error: float
    lambda_: float = 0.0
    rank_deficiency: int = 0
    error: Optional[Exception] = None
    history: List[IterationRecord] = field(default_factory=list)
    termination: str = ""

    @property
    def converged(self) -> bool:
        return self.status == OptimizerStatus.CONVERGED

    def raise_for_status(self) -> None:
        """Raise the typed error behind a non-converged status."""
        if self.status == OptimizerStatus.CONVERGED:
            return
        if self.error is not None:
            raise self.error
        if self.status == OptimizerStatus.MAX_ITERATIONS_REACHED:
            raise MaxIterationsReached(f"no convergence after {self.iterations} iterations")
        if self.status == OptimizerStatus.DEADLINE_REACHED:
            raise MaxIterationsReached(f"deadline reached after {self.iterations} iterations")
        raise OptimizationFailed(f"optimizer stopped in state {self.status.value}")


def _converged(cfg: GNConfig, prev_error: float, error: float, step_norm: float) -> Optional[str]:
    """Name of the first convergence criterion met by an accepted step, if any."""
    if error <= cfg.error_tol:
        return "error"
    # no further decrease can exceed what is left
    if error <= cfg.abs_error_tol:
        return "small_error"
    abs_decrease = prev_error - error
    rel_decrease = abs_decrease / prev_error if prev_error > 0.0 else 0.0
    if rel_decrease <= cfg.rel_error_tol:
        return "relative_decrease"
    if abs_decrease <= cfg.abs_error_tol:
        return "absolute_decrease"
    if step_norm <= cfg.step_tol:
        return "step"
    return None


class NonlinearOptimizer:
    """
    Shared linearize / solve / retract loop.

    Subclasses define the damping schedule through `_initial_lambda`,
    `_accept` and `_reject`.
    """

    name = "nonlinear"
    rejection_reason = "error_increased"

    def __init__(self, graph: FactorGraph, initial_values: Values, cfg: GNConfig) -> None:
        self.graph = graph
        self.cfg = cfg
        self.status = OptimizerStatus.INITIALIZED
        self.solver = LinearSolver(
            method=cfg.linear_solver,
            rank_policy=cfg.rank_policy,
            rank_tol=cfg.rank_tol,
            min_diagonal=getattr(cfg, "min_diagonal", 1e-6),
            max_diagonal=getattr(cfg, "max_diagonal", 1e32),
        )
        # Fail fast on caller bugs, before any numerical work.
        graph.validate(initial_values)
        self.values = initial_values.copy()
        self.index = graph.build_state_index(self.values)
        self.error = graph.total_error(self.values)
        self.initial_error = self.error
        self.lam = self._initial_lambda()
        self.iterations = 0
        self.rank_deficiency = 0
        self.history: List[IterationRecord] = []

    # --- damping schedule ---

    def _initial_lambda(self) -> float:
        return 0.0

    def _accept(self) -> None:
        pass

    def _reject(self, retries: int) -> bool:
        """Update damping after a rejected step; False when out of options."""
        return False

    def _diagonal_damping(self) -> bool:
        return getattr(self.cfg, "diagonal_damping", True)

    # --- helpers ---

    def _log(self, message: str, *args) -> None:
        (logger.info if self.cfg.verbose else logger.debug)(message, *args)

    def _finish(
        self,
        status: OptimizerStatus,
        reason: str,
        error: Optional[Exception] = None,
    ) -> OptimizationResult:
        self.status = status
        if status == OptimizerStatus.CONVERGED:
            logger.info(
                "{} converged ({}) after {} iterations: error {:.6g} -> {:.6g}",
                self.name, reason, self.iterations, self.initial_error, self.error,
            )
        else:
            logger.warning(
                "{} stopped with status {} ({}) after {} iterations (error {:.6g}){}",
                self.name, status.value, reason, self.iterations, self.error,
                f": {error}" if error is not None else "",
            )
        return OptimizationResult(
            values=self.values,
            status=status,
            iterations=self.iterations,
            initial_error=self.initial_error,
            final_error=self.error,
            lambda_=self.lam,
            rank_deficiency=self.rank_deficiency,
            error=error,
            history=self.history,
            termination=reason,
        )

    def _check_observability(self, system: LinearSystem) -> Optional[OptimizationResult]:
        deficiency = self.solver.rank_deficiency(system)
        if deficiency == 0:
            return None
        self.rank_deficiency = deficiency
        missing = system.unconstrained_keys()
        if self.cfg.rank_policy == "raise":
            return self._finish(
                OptimizerStatus.FAILED,
                "unobservable",
                UnderconstrainedSystem(
                    f"graph has {deficiency if deficiency > 0 else 'an unknown number of'} "
                    "unobservable directions at the initial estimate",
                    keys=missing,
                    deficiency=deficiency,
                ),
            )
        logger.warning(
            "Graph has {} unobservable directions; continuing with minimum-norm steps", deficiency
        )
        return None

    # --- main loop ---

    def _linearize(self) -> LinearSystem:
        return self.graph.linearize(self.values, self.index)

    def optimize(self) -> OptimizationResult:
        cfg = self.cfg
        start = time.monotonic()
        system: Optional[LinearSystem] = None

        try:
            if cfg.check_observability and self.index:
                system = self._linearize()
                result = self._check_observability(system)
                if result is not None:
                    return result
        except NonFiniteLinearization as exc:
            return self._finish(OptimizerStatus.FAILED, "non_finite", exc)

        if self.error <= max(cfg.error_tol, cfg.abs_error_tol):
            return self._finish(OptimizerStatus.CONVERGED, "small_error")

        self.status = OptimizerStatus.ITERATING
        while True:
            if self.iterations >= cfg.max_iters:
                return self._finish(OptimizerStatus.MAX_ITERATIONS_REACHED, "max_iterations")
            if cfg.deadline is not None and time.monotonic() - start >= cfg.deadline:
                return self._finish(OptimizerStatus.DEADLINE_REACHED, "deadline")

            if system is None:
                try:
                    system = self._linearize()
                except NonFiniteLinearization as exc:
                    return self._finish(OptimizerStatus.FAILED, "non_finite", exc)
            gradient = system.gradient()
            if gradient.size == 0 or float(np.max(np.abs(gradient))) <= cfg.grad_tol:
                return self._finish(OptimizerStatus.CONVERGED, "gradient")

            retries = 0
            while True:
                try:
                    delta = self.solver.solve(system, self.lam, self._diagonal_damping())
                except UnderconstrainedSystem as exc:
                    return self._finish(OptimizerStatus.FAILED, "unobservable", exc)

                step_norm = float(np.linalg.norm(delta))
                candidate = self.values.retract_all(delta, self.index)
                new_error = self.graph.total_error(candidate)
                accepted = math.isfinite(new_error) and new_error < self.error
                self.history.append(
                    IterationRecord(self.iterations + 1, new_error, self.lam, step_norm, accepted)
                )
                self._log(
                    "{} iteration {} try {}: error {:.6g} -> {:.6g}, lambda {:.3g}, |step| {:.3g}, {}",
                    self.name, self.iterations + 1, retries, self.error, new_error,
                    self.lam, step_norm, "accepted" if accepted else "rejected",
                )
                if accepted:
                    break

                # The linear model predicts no decrease worth taking.
                if step_norm <= cfg.step_tol:
                    return self._finish(OptimizerStatus.CONVERGED, "step")
                predicted = system.error() - system.model_error(delta)
                if predicted <= cfg.abs_error_tol:
                    return self._finish(OptimizerStatus.CONVERGED, "no_predicted_decrease")

                retries += 1
                if not self._reject(retries):
                    return self._finish(
                        OptimizerStatus.FAILED,
                        self.rejection_reason,
                        OptimizationFailed(
                            f"no decrease in error after {retries} attempts "
                            f"(lambda {self.lam:.3g}, error {self.error:.6g})"
                        ),
                    )

            prev_error = self.error
            self.values = candidate
            self.error = new_error
            self.iterations += 1
            self._accept()
            system = None

            reason = _converged(cfg, prev_error, new_error, step_norm)
            if reason is not None:
                return self._finish(OptimizerStatus.CONVERGED, reason)


class GaussNewtonOptimizer(NonlinearOptimizer):
    name = "Gauss-Newton"


class LevenbergMarquardtOptimizer(NonlinearOptimizer):
    name = "Levenberg-Marquardt"
    rejection_reason = "lambda_saturated"

    def __init__(self, graph: FactorGraph, initial_values: Values, cfg: LMConfig) -> None:
        if not cfg.initial_lambda > 0.0:
            raise ValueError(f"initial_lambda must be positive, got {cfg.initial_lambda}")
        if not cfg.lambda_factor > 1.0:
            raise ValueError(f"lambda_factor must be greater than 1, got {cfg.lambda_factor}")
        super().__init__(graph, initial_values, cfg)

    def _initial_lambda(self) -> float:
        return self.cfg.initial_lambda

    def _accept(self) -> None:
        self.lam = max(self.lam / self.cfg.lambda_factor, self.cfg.lambda_lower_bound)

    def _reject(self, retries: int) -> bool:
        self.lam *= self.cfg.lambda_factor
        return retries <= self.cfg.max_retries and self.lam <= self.cfg.lambda_upper_bound


def levenberg_marquardt(graph: FactorGraph, initial_values: Values, cfg: Optional[LMConfig] = None) -> OptimizationResult:
    """
    Levenberg–Marquardt on a factor graph.

    Raises UnknownKey when a factor references a variable missing from
    `initial_values`; every numerical outcome is reported in the result.
    """
    return LevenbergMarquardtOptimizer(graph, initial_values, cfg or LMConfig()).optimize()


def gauss_newton(graph: FactorGraph, initial_values: Values, cfg: Optional[GNConfig] = None) -> OptimizationResult:
    return GaussNewtonOptimizer(graph, initial_values, cfg or GNConfig()).optimize()


def optimize(
    graph: FactorGraph,
    initial_values: Values,
    cfg: Union[LMConfig, GNConfig, None] = None,
) -> OptimizationResult:
    if cfg is None or isinstance(cfg, LMConfig):
        return levenberg_marquardt(graph, initial_values, cfg)
    return gauss_newton(graph, initial_values, cfg)
