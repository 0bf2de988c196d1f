from __future__ import annotations

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from epigraph import (
    EssentialMatrix,
    FactorGraph,
    GNConfig,
    Isotropic,
    LMConfig,
    Marginals,
    MaxIterationsReached,
    NonFiniteLinearization,
    OptimizationFailed,
    OptimizerStatus,
    SingularInformationMatrix,
    UnderconstrainedSystem,
    UnknownKey,
    Unit,
    Values,
    between_factor,
    essential_matrix_constraint,
    gauss_newton,
    levenberg_marquardt,
    optimize,
    prior_factor,
)
from epigraph.core.math3d import pose_vec_to_matrix, se3_between, se3_identity
from epigraph.core.types import Factor, NodeId


def _pose(tx, ty, tz, wx=0.0, wy=0.0, wz=0.0):
    return pose_vec_to_matrix(jnp.array([tx, ty, tz, wx, wy, wz]))


def _square_loop():
    """
    Four poses around a unit square, each odometry step a pure translation,
    plus a loop closure from pose 3 back to pose 0 and a prior on pose 0.
    """
    graph = FactorGraph()
    noise = Isotropic(6, 0.1)
    graph.add_factor(prior_factor(0, se3_identity(), Isotropic(6, 0.01)))
    steps = [(1.0, 0.0, 0.0), (0.0, 1.0, 0.0), (-1.0, 0.0, 0.0), (0.0, -1.0, 0.0)]
    for i, step in enumerate(steps):
        graph.add_factor(between_factor(i, (i + 1) % 4, _pose(*step), noise))

    initial = Values()
    initial.insert(0, _pose(0.1, -0.1, 0.05, 0.02, -0.01, 0.05))
    initial.insert(1, _pose(1.2, 0.1, -0.1, 0.0, 0.05, -0.1))
    initial.insert(2, _pose(0.9, 1.1, 0.1, -0.05, 0.0, 0.2))
    initial.insert(3, _pose(-0.1, 0.8, 0.0, 0.05, 0.05, -0.1))
    return graph, initial


def _chain_truth():
    return [
        _pose(0.0, 0.0, 0.0),
        _pose(1.0, 0.1, 0.0, 0.0, 0.0, 0.3),
        _pose(1.8, 0.7, 0.1, 0.05, -0.02, 0.6),
        _pose(2.3, 1.6, 0.1, 0.05, 0.0, 1.0),
    ]


def _noiseless_chain():
    truth = _chain_truth()
    graph = FactorGraph()
    graph.add_factor(prior_factor(0, truth[0], Isotropic(6, 0.05)))
    for i in range(len(truth) - 1):
        graph.add_factor(
            between_factor(i, i + 1, se3_between(truth[i], truth[i + 1]), Isotropic(6, 0.1))
        )
    return graph, truth


def _vector_prior(target=(3.0, -4.0)):
    graph = FactorGraph()
    graph.add_factor(prior_factor(0, jnp.array(target), Unit(2)))
    values = Values()
    values.insert(0, jnp.zeros(2))
    return graph, values


def test_single_prior_converges_in_one_iteration():
    """
    An SE(3) prior is solved by one Gauss-Newton step (up to the small
    initial damping) under the default configuration.
    """
    target = _pose(1.0, 2.0, 3.0, 0.1, 0.2, 0.3)
    graph = FactorGraph()
    graph.add_factor(prior_factor(0, target, Unit(6)))
    initial = Values()
    initial.insert(0, se3_identity())

    result = levenberg_marquardt(graph, initial)

    assert result.status == OptimizerStatus.CONVERGED
    assert result.iterations == 1
    assert result.termination == "small_error"
    assert result.final_error <= LMConfig().abs_error_tol
    assert jnp.allclose(result.values.at(0), target, atol=1e-3)
    result.raise_for_status()


def test_prior_near_half_turn():
    target = _pose(0.5, 0.0, -1.0, 0.0, 0.0, 3.14159)
    graph = FactorGraph()
    graph.add_factor(prior_factor(0, target, Unit(6)))
    initial = Values()
    initial.insert(0, se3_identity())

    result = optimize(graph, initial)

    assert result.converged
    assert result.final_error < 1e-5
    assert jnp.allclose(result.values.at(0), target, atol=1e-3)


def test_noiseless_chain_recovers_truth():
    graph, truth = _noiseless_chain()
    initial = Values()
    offsets = [0.05, -0.1, 0.08, -0.05]
    for i, T in enumerate(truth):
        d = offsets[i]
        initial.insert(i, T @ _pose(d, -d, d, d, 0.5 * d, -d))

    result = optimize(graph, initial)

    assert result.status == OptimizerStatus.CONVERGED
    assert result.final_error <= 1e-5
    assert result.final_error < result.initial_error
    for i, T in enumerate(truth):
        assert jnp.allclose(result.values.at(i), T, atol=2e-3)


def test_start_at_minimum_is_a_no_op():
    graph, truth = _noiseless_chain()
    initial = Values()
    for i, T in enumerate(truth):
        initial.insert(i, T)

    result = optimize(graph, initial)

    assert result.status == OptimizerStatus.CONVERGED
    assert result.iterations == 0
    for i, T in enumerate(truth):
        assert jnp.array_equal(result.values.at(i), initial.at(i))


def test_optimize_is_idempotent():
    graph, initial = _square_loop()
    first = optimize(graph, initial)
    second = optimize(graph, first.values)

    assert second.status == OptimizerStatus.CONVERGED
    assert second.iterations <= 1
    for key in first.values.keys():
        assert jnp.allclose(second.values.at(key), first.values.at(key), atol=2e-3)


def test_square_loop_closes():
    graph, initial = _square_loop()
    result = optimize(graph, initial)

    assert result.status == OptimizerStatus.CONVERGED
    assert graph.total_error(result.values) <= 1e-5
    expected = [(0.0, 0.0, 0.0), (1.0, 0.0, 0.0), (1.0, 1.0, 0.0), (0.0, 1.0, 0.0)]
    for key, t in enumerate(expected):
        T = result.values.at(key)
        assert jnp.allclose(T[:3, 3], jnp.array(t), atol=2e-3)
        assert jnp.allclose(T[:3, :3], jnp.eye(3), atol=2e-3)


def test_caller_values_not_mutated():
    graph, initial = _square_loop()
    snapshot = {key: initial.at(key) for key in initial.keys()}
    result = optimize(graph, initial)

    assert result.values is not initial
    for key, value in snapshot.items():
        assert jnp.array_equal(initial.at(key), value)


def test_history_records_iterations():
    graph, initial = _square_loop()
    result = optimize(graph, initial, LMConfig(verbose=True))

    accepted = [rec for rec in result.history if rec.accepted]
    assert len(accepted) == result.iterations
    errors = [result.initial_error] + [rec.error for rec in accepted]
    assert all(b < a for a, b in zip(errors, errors[1:]))


def _essential_chain():
    truth = [_pose(0.0, 0.0, 0.0), _pose(1.0, 0.0, 0.0, 0.0, 0.1, 0.0), _pose(2.0, 0.3, 0.0, 0.0, 0.2, 0.1)]
    graph = FactorGraph()
    for i in range(2):
        E = EssentialMatrix.from_pose(se3_between(truth[i], truth[i + 1]))
        graph.add_factor(essential_matrix_constraint(i, i + 1, E, Isotropic(5, 0.01)))
    initial = Values()
    for i, T in enumerate(truth):
        initial.insert(i, T @ _pose(0.02, -0.01, 0.03, 0.01, 0.0, -0.01))
    return graph, initial


def test_essential_only_chain_is_underconstrained():
    """
    Essential-matrix constraints fix neither the gauge nor the scale; the
    optimizer reports the unobservable directions instead of iterating.
    """
    graph, initial = _essential_chain()
    result = optimize(graph, initial)

    assert result.status == OptimizerStatus.FAILED
    assert isinstance(result.error, UnderconstrainedSystem)
    assert result.error.deficiency >= 1
    assert result.rank_deficiency >= 1
    assert result.iterations == 0
    for key in initial.keys():
        assert jnp.array_equal(result.values.at(key), initial.at(key))
    with pytest.raises(UnderconstrainedSystem):
        result.raise_for_status()


def test_essential_only_chain_min_norm():
    graph, initial = _essential_chain()
    result = optimize(graph, initial, LMConfig(rank_policy="min_norm"))

    assert result.rank_deficiency > 0
    assert result.status == OptimizerStatus.CONVERGED
    assert result.final_error <= result.initial_error


def _anchored_essential_chain(n_edges=3):
    truth = [
        _pose(0.0, 0.0, 0.0),
        _pose(1.0, 0.0, 0.0, 0.0, 0.1, 0.0),
        _pose(2.0, 0.3, 0.0, 0.0, 0.2, 0.1),
        _pose(2.5, 1.2, 0.2, 0.05, 0.2, 0.3),
    ][: n_edges + 1]
    graph = FactorGraph()
    graph.add_factor(prior_factor(0, truth[0], Isotropic(6, 0.01)))
    for i in range(n_edges):
        E = EssentialMatrix.from_pose(se3_between(truth[i], truth[i + 1]))
        graph.add_factor(essential_matrix_constraint(i, i + 1, E, Isotropic(5, 0.01)))
    initial = Values()
    for i, T in enumerate(truth):
        initial.insert(i, T @ _pose(0.02, -0.01, 0.03, 0.01, 0.0, -0.01))
    return graph, initial


def test_anchored_essential_chain_leaves_one_scale_per_edge():
    """A 6-DOF anchor fixes the gauge, but every edge keeps its own scale."""
    graph, initial = _anchored_essential_chain(3)
    result = optimize(graph, initial)

    assert result.status == OptimizerStatus.FAILED
    assert result.termination == "unobservable"
    assert isinstance(result.error, UnderconstrainedSystem)
    assert result.error.deficiency == 3
    assert result.rank_deficiency == 3
    with pytest.raises(SingularInformationMatrix):
        Marginals(graph, initial)


def test_coincident_poses_under_essential_constraint():
    truth = [_pose(0.0, 0.0, 0.0), _pose(1.0, 0.0, 0.0, 0.0, 0.1, 0.0)]
    graph = FactorGraph()
    graph.add_factor(prior_factor(0, truth[0], Isotropic(6, 0.01)))
    graph.add_factor(prior_factor(1, truth[1], Isotropic(6, 0.01)))
    E = EssentialMatrix.from_pose(se3_between(truth[0], truth[1]))
    fid = graph.add_factor(essential_matrix_constraint(0, 1, E, Isotropic(5, 0.1)))
    initial = Values()
    initial.insert(0, se3_identity())
    initial.insert(1, se3_identity())

    r, (J0, J1) = graph.evaluate(fid, initial)
    assert np.all(np.isfinite(r))
    assert np.all(np.isfinite(J0)) and np.all(np.isfinite(J1))

    result = optimize(graph, initial)
    assert result.status == OptimizerStatus.CONVERGED
    assert result.rank_deficiency == 0
    assert jnp.allclose(result.values.at(1), truth[1], atol=1e-3)


def _sqrt_residual(xs, params, manifolds):
    (x,) = xs
    return jnp.sqrt(x) - params["target"]


def test_non_finite_linearization_fails_cleanly():
    graph = FactorGraph()
    graph.register_residual("sqrt", _sqrt_residual)
    fid = graph.add_factor(
        Factor(type="sqrt", var_ids=(NodeId(0),), params={"target": jnp.ones(1)}, noise=Unit(1))
    )
    initial = Values()
    initial.insert(0, jnp.array([-1.0]))

    with pytest.raises(NonFiniteLinearization) as exc_info:
        graph.linearize(initial)
    assert exc_info.value.factor_ids == (fid,)

    result = optimize(graph, initial)
    assert result.status == OptimizerStatus.FAILED
    assert result.termination == "non_finite"
    assert isinstance(result.error, NonFiniteLinearization)
    assert not isinstance(result.error, UnderconstrainedSystem)
    assert jnp.array_equal(result.values.at(0), initial.at(0))


def _misleading_residual(xs, params, manifolds):
    # value x - target, but a Jacobian of -I: every step goes uphill
    (x,) = xs
    return 2.0 * jax.lax.stop_gradient(x) - x - params["target"]


def test_lambda_saturation_fails():
    graph = FactorGraph()
    graph.register_residual("misleading", _misleading_residual)
    graph.add_factor(
        Factor(type="misleading", var_ids=(NodeId(0),), params={"target": jnp.zeros(2)}, noise=Unit(2))
    )
    initial = Values()
    initial.insert(0, jnp.array([10.0, 10.0]))

    result = optimize(graph, initial, LMConfig(max_retries=3))

    assert result.status == OptimizerStatus.FAILED
    assert isinstance(result.error, OptimizationFailed)
    assert result.termination == "lambda_saturated"
    assert result.iterations == 0
    assert not any(rec.accepted for rec in result.history)
    assert len(result.history) == 4
    assert jnp.array_equal(result.values.at(0), initial.at(0))
    with pytest.raises(OptimizationFailed):
        result.raise_for_status()


def test_vanishing_predicted_decrease_is_reported():
    """
    When λ grows until the damped model predicts no meaningful decrease the
    run stops as converged, and the result says which criterion ended it.
    """
    graph = FactorGraph()
    graph.register_residual("misleading", _misleading_residual)
    graph.add_factor(
        Factor(type="misleading", var_ids=(NodeId(0),), params={"target": jnp.zeros(2)}, noise=Unit(2))
    )
    initial = Values()
    initial.insert(0, jnp.array([1.0, 1.0]))

    result = optimize(graph, initial, LMConfig(max_retries=20, lambda_upper_bound=1e9))

    assert result.status == OptimizerStatus.CONVERGED
    assert result.termination == "no_predicted_decrease"
    assert result.iterations == 0
    assert result.history[-1].lambda_ >= 1e6
    assert jnp.array_equal(result.values.at(0), initial.at(0))


def test_max_iterations_reached():
    graph, initial = _vector_prior()
    # a linear prior is solved in one step; only the damping remainder is left
    result = optimize(graph, initial, LMConfig(max_iters=1, abs_error_tol=0.0))

    assert result.status == OptimizerStatus.MAX_ITERATIONS_REACHED
    assert result.iterations == 1
    assert result.termination == "max_iterations"
    # last accepted estimate is returned
    assert result.final_error < result.initial_error
    assert jnp.allclose(result.values.at(0), jnp.array([3.0, -4.0]), atol=1e-3)
    with pytest.raises(MaxIterationsReached):
        result.raise_for_status()


def test_deadline_reached():
    graph, initial = _vector_prior()
    result = optimize(graph, initial, LMConfig(deadline=0.0))

    assert result.status == OptimizerStatus.DEADLINE_REACHED
    assert result.iterations == 0
    assert jnp.array_equal(result.values.at(0), initial.at(0))


def test_unknown_key_raises_before_iterating():
    graph, initial = _vector_prior()
    graph.add_factor(between_factor(0, 9, jnp.ones(2), Unit(2)))
    with pytest.raises(UnknownKey):
        optimize(graph, initial)


def test_invalid_config_rejected():
    graph, initial = _vector_prior()
    with pytest.raises(ValueError):
        optimize(graph, initial, LMConfig(initial_lambda=0.0))
    with pytest.raises(ValueError):
        optimize(graph, initial, LMConfig(linear_solver="cholmod"))


def test_dense_solver_matches_sparse():
    graph, initial = _square_loop()
    sparse = optimize(graph, initial, LMConfig(linear_solver="sparse"))
    dense = optimize(graph, initial, LMConfig(linear_solver="dense"))
    for key in initial.keys():
        assert jnp.allclose(sparse.values.at(key), dense.values.at(key), atol=1e-5)


def test_gauss_newton_square_loop():
    graph, initial = _square_loop()
    result = gauss_newton(graph, initial, GNConfig())

    assert result.status == OptimizerStatus.CONVERGED
    assert result.final_error <= 1e-5
    assert all(rec.lambda_ == 0.0 for rec in result.history)

    dispatched = optimize(graph, initial, GNConfig())
    assert dispatched.iterations == result.iterations


def test_multiple_graphs_share_nothing():
    """Independent runs on one graph from different starts agree on the optimum."""
    graph, initial = _square_loop()
    other = Values()
    for key in initial.keys():
        other.insert(key, initial.at(key) @ _pose(0.05, 0.05, 0.0, 0.0, 0.0, 0.05))

    a = optimize(graph, initial)
    b = optimize(graph, other)
    for key in initial.keys():
        assert np.allclose(np.asarray(a.values.at(key)), np.asarray(b.values.at(key)), atol=2e-3)
