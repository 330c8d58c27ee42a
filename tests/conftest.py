"""
Shared problem factories and dense oracles for the trust-region tests.
"""

import pytest
import numpy as np


@pytest.fixture
def linear_problem():
    """
    Factory of linear residual callbacks ``dy = J21 @ dx + J22 @ p - y``.

    Returns ``(fgg, p0, dx0)``; ``y_1d``/``x_1d`` select the squeezed
    shapes for NY == 1 / NX == 1.
    """
    def factory(MX, NX, NY, NP, seed=0, x_1d=False, y_1d=False):
        rng = np.random.RandomState(seed)
        J21 = rng.randn(MX, NY, NX)
        J22 = rng.randn(MX, NY, NP)
        y = rng.randn(MX, NY)

        y_shape = (MX,) if y_1d else (MX, NY)
        x_tail = () if x_1d else (NX,)

        def fgg(p, dx):
            dy = np.einsum('ijk,ik->ij', J21, dx.reshape(MX, NX)) + J22 @ p - y
            return (
                dy.reshape(y_shape),
                J22.reshape(y_shape + (NP,)),
                J21.reshape(y_shape + x_tail),
            )

        p0 = rng.randn(NP)
        dx0 = rng.randn(MX, NX) * 0.1
        if x_1d:
            dx0 = dx0[:, 0]
        return fgg, p0, dx0

    return factory


@pytest.fixture
def randomize_linearization():
    """
    Overwrite the committed linearization of a solver with random data.

    ``dependent`` makes the last parameter column a multiple of the first.
    """
    def randomize(solver, seed=0, dependent=False):
        rng = np.random.RandomState(seed)
        shape = solver.J11.shape
        solver.J11[...] = rng.uniform(0.5, 2.0, shape) * rng.choice([-1.0, 1.0], shape)
        solver.J21[...] = rng.randn(*solver.J21.shape)
        solver.J22[...] = rng.randn(*solver.J22.shape)
        if dependent:
            solver.J22[:, -1] = 2 * solver.J22[:, 0]
        solver.F0[...] = rng.randn(solver.M)
        solver.D[...] = rng.uniform(0.5, 2.0, solver.N)
        solver.rank = -1
        solver._prepared = None
        return solver

    return randomize


def newton_oracle(solver):
    """Minimum D-norm least squares solution of ``J @ dX = -F0`` via SVD."""
    J = solver.dense_jacobian()
    D = solver.D
    Y = np.linalg.lstsq(J / D, -solver.F0, rcond=None)[0]
    return Y / D


def regularized_oracle(solver, lam):
    """Least squares solution of ``[J; sqrt(lam)*diag(D)] @ dX = -[F0; 0]``."""
    J = solver.dense_jacobian()
    D = solver.D
    weights = np.where(D == 0, 1.0, np.sqrt(lam) * D)
    A = np.vstack([J, np.diag(weights)])
    b = np.concatenate([-solver.F0, np.zeros(solver.N)])
    return np.linalg.lstsq(A, b, rcond=None)[0]


@pytest.fixture
def oracles():
    """Dense reference solutions (newton, regularized)."""
    return newton_oracle, regularized_oracle
