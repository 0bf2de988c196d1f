from __future__ import annotations

import numpy as np
import pytest
import scipy.sparse

from epigraph import LinearSolver, LinearSystem, UnderconstrainedSystem


def _system(A, b, dims):
    index, offset = {}, 0
    for key, d in enumerate(dims):
        index[key] = (offset, d)
        offset += d
    return LinearSystem(A=scipy.sparse.csr_matrix(np.asarray(A, dtype=float)), b=np.asarray(b, dtype=float), index=index)


def test_undamped_step_matches_least_squares():
    rng = np.random.default_rng(0)
    A = rng.normal(size=(8, 4))
    b = rng.normal(size=8)
    system = _system(A, b, [2, 2])

    expected = np.linalg.lstsq(A, -b, rcond=None)[0]
    for method in ("sparse", "dense"):
        delta = LinearSolver(method=method).solve(system)
        assert np.allclose(delta, expected, atol=1e-10)


def test_damped_step():
    rng = np.random.default_rng(1)
    A = rng.normal(size=(6, 3))
    b = rng.normal(size=6)
    system = _system(A, b, [3])
    lam = 0.5
    H = A.T @ A

    delta = LinearSolver().solve(system, lam=lam)
    assert np.allclose((H + lam * np.diag(np.diag(H))) @ delta, -A.T @ b, atol=1e-10)

    delta = LinearSolver().solve(system, lam=lam, diagonal_damping=False)
    assert np.allclose((H + lam * np.eye(3)) @ delta, -A.T @ b, atol=1e-10)


def test_unconstrained_variable_named():
    A = [[1.0, 0.0], [0.0, 0.0]]
    system = _system(A, [1.0, 0.0], [1, 1])
    with pytest.raises(UnderconstrainedSystem) as exc_info:
        LinearSolver().solve(system, lam=1.0)
    assert exc_info.value.keys == (1,)


@pytest.mark.parametrize("method", ["sparse", "dense"])
def test_rank_deficiency_counted(method):
    """Two variables seen only through their sum: one direction is unobservable."""
    system = _system([[1.0, 1.0]], [1.0], [1, 1])
    solver = LinearSolver(method=method)
    assert solver.rank_deficiency(system) == 1

    with pytest.raises(UnderconstrainedSystem) as exc_info:
        solver.solve(system)
    assert exc_info.value.deficiency == 1


def test_full_rank_has_no_deficiency():
    system = _system(np.eye(3), np.ones(3), [3])
    assert LinearSolver().rank_deficiency(system) == 0


def test_min_norm_policy():
    system = _system([[1.0, 1.0]], [1.0], [1, 1])
    delta = LinearSolver(rank_policy="min_norm").solve(system)
    assert np.allclose(delta, [-0.5, -0.5], atol=1e-8)


def test_damping_regularizes_rank_deficiency():
    system = _system([[1.0, 1.0]], [1.0], [1, 1])
    delta = LinearSolver().solve(system, lam=1.0)
    assert np.all(np.isfinite(delta))
    assert system.model_error(delta) < system.error()


def test_factorization_solves_matrix_rhs():
    rng = np.random.default_rng(2)
    M = rng.normal(size=(5, 5))
    H = M @ M.T + 5.0 * np.eye(5)
    F = LinearSolver().factorize(scipy.sparse.csc_matrix(H))
    assert np.allclose(F.solve(np.eye(5)), np.linalg.inv(H), atol=1e-10)
    assert F.dim == 5


def test_unknown_options_rejected():
    with pytest.raises(ValueError):
        LinearSolver(method="qr")
    with pytest.raises(ValueError):
        LinearSolver(rank_policy="ignore")


def test_split_by_variable():
    system = _system(np.eye(5), np.zeros(5), [3, 2])
    blocks = system.split(np.arange(5.0))
    assert np.allclose(blocks[0], [0.0, 1.0, 2.0])
    assert np.allclose(blocks[1], [3.0, 4.0])
