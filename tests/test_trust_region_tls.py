"""
Test the structured TLS trust-region solver.

Covers the three regimes of the per-sample blocks: fewer responses than
perturbations (NY < NX), square blocks and more responses than
perturbations (NY > NX), where ``prepare()`` compresses the responses.
"""

import pytest
import numpy as np

from pyndla import TrustRegionSolverTLS, TrustRegionSolverODR, SingularSparseBlock


SOLVE_TOL = 1e-9

SHAPES = [
    # MX, NX, NY, NP
    (6, 3, 2, 3),
    (5, 2, 2, 4),
    (4, 2, 5, 3),     # tail rows compressed to NP rows
    (3, 1, 3, 8),     # tail rows kept, fewer than NP
    (2, 3, 1, 5),
    (7, 1, 1, 2),
]


class TestPrepare:
    """Test the compression of the response rows."""

    def test_identity_when_not_tall(self, linear_problem):
        fgg, p0, dx0 = linear_problem(4, 3, 2, 2)
        solver = TrustRegionSolverTLS(fgg, p0, dx0)
        J21, J22, F = solver.prepare()
        assert J21 is solver.J21
        assert J22 is solver.J22
        np.testing.assert_array_equal(F, solver.F0[4 * 3:])

    @pytest.mark.parametrize("MX, NX, NY, NP", [(4, 2, 5, 3), (3, 1, 3, 8)])
    def test_compression_preserves_normal_equations(self, linear_problem, MX, NX, NY, NP):
        """The prepared rows have the same Gram matrix and projected residual."""
        fgg, p0, dx0 = linear_problem(MX, NX, NY, NP)
        solver = TrustRegionSolverTLS(fgg, p0, dx0)
        J21, J22, F = solver.prepare()

        L = min(NX, NY)
        K = min(MX * NY, MX * NX + NP)
        assert J21.shape == (MX, L, NX)
        assert J22.shape == (K, NP)
        assert F.shape == (K,)

        # rebuild dense matrices of the response rows before and after
        def dense(J21, J22, rows):
            A = np.zeros((J22.shape[0], MX * NX + NP))
            for i in range(MX):
                A[rows * i:rows * (i + 1), NX * i:NX * (i + 1)] = J21[i]
            A[:, MX * NX:] = J22
            return A

        A = dense(solver.J21, solver.J22, NY)
        B = dense(J21, J22, L)
        b = solver.F0[MX * NX:]
        np.testing.assert_allclose(B.T @ B, A.T @ A, rtol=1e-10, atol=1e-10)
        np.testing.assert_allclose(B.T @ F, A.T @ b, rtol=1e-10, atol=1e-10)

    def test_cache_reset_on_commit(self, linear_problem):
        fgg, p0, dx0 = linear_problem(4, 2, 5, 3)
        solver = TrustRegionSolverTLS(fgg, p0, dx0)
        solver.compute_newton()
        assert solver._prepared is not None
        solver.report()
        solver.consider_move(np.zeros(solver.N))
        solver.make_considered_move()
        assert solver._prepared is None
        assert solver.rank == -1


class TestNewton:
    """Test Gauss-Newton steps against dense least squares."""

    @pytest.mark.parametrize("seed", range(3))
    @pytest.mark.parametrize("MX, NX, NY, NP", SHAPES)
    def test_matches_lstsq(self, linear_problem, randomize_linearization, oracles, seed, MX, NX, NY, NP):
        newton_oracle, _ = oracles
        fgg, p0, dx0 = linear_problem(MX, NX, NY, NP, seed=seed)
        solver = randomize_linearization(TrustRegionSolverTLS(fgg, p0, dx0), seed=seed)
        J = solver.dense_jacobian()

        solver.compute_newton()
        np.testing.assert_allclose(solver.newton_dX, newton_oracle(solver), rtol=SOLVE_TOL, atol=SOLVE_TOL)
        assert solver.rank == np.linalg.matrix_rank(J)

    @pytest.mark.parametrize("MX, NX, NY, NP", [(6, 2, 3, 4), (8, 3, 2, 3)])
    def test_rank_deficient(self, linear_problem, randomize_linearization, oracles, MX, NX, NY, NP):
        newton_oracle, _ = oracles
        fgg, p0, dx0 = linear_problem(MX, NX, NY, NP, seed=1)
        solver = randomize_linearization(TrustRegionSolverTLS(fgg, p0, dx0), seed=1, dependent=True)

        solver.compute_newton()
        assert solver.rank == solver.N - 1
        np.testing.assert_allclose(solver.newton_dX, newton_oracle(solver), rtol=SOLVE_TOL, atol=SOLVE_TOL)

    def test_agrees_with_odr(self, linear_problem, randomize_linearization):
        """For one response per sample both solvers give the same step."""
        fgg, p0, dx0 = linear_problem(7, 2, 1, 3, seed=4)
        odr = randomize_linearization(TrustRegionSolverODR(fgg, p0, dx0), seed=4)
        tls = randomize_linearization(TrustRegionSolverTLS(fgg, p0, dx0), seed=4)
        odr.compute_newton()
        tls.compute_newton()
        np.testing.assert_allclose(tls.newton_dX, odr.newton_dX, rtol=1e-10, atol=1e-12)
        for lam in (0.0, 0.3):
            np.testing.assert_allclose(
                tls.compute_newton_regularized(lam), odr.compute_newton_regularized(lam), rtol=1e-10
            )

    def test_linear_problem_solved_in_one_step(self, linear_problem):
        fgg, p0, dx0 = linear_problem(5, 2, 4, 3, seed=2)
        solver = TrustRegionSolverTLS(fgg, p0, dx0)
        solver.report()
        solver.compute_newton()
        predicted, actual = solver.consider_move(solver.newton_dX)
        assert predicted == pytest.approx(actual, rel=1e-10)
        solver.make_considered_move()
        rep = solver.report()
        np.testing.assert_allclose(rep.dloss_dp, 0.0, atol=1e-12)
        np.testing.assert_allclose(rep.dloss_ddx, 0.0, atol=1e-12)

    def test_singular_sparse_block(self, linear_problem, randomize_linearization):
        fgg, p0, dx0 = linear_problem(4, 2, 3, 2)
        solver = randomize_linearization(TrustRegionSolverTLS(fgg, p0, dx0))
        solver.J11[2, 1] = 0.0
        solver.J21[2, :, 1] = 0.0
        with pytest.raises(SingularSparseBlock):
            solver.compute_newton()


class TestNewtonRegularized:
    """Test Levenberg-Marquardt steps against the augmented dense problem."""

    @pytest.mark.parametrize("lam", [1e-4, 0.5, 20.0])
    @pytest.mark.parametrize("MX, NX, NY, NP", SHAPES)
    def test_matches_augmented_lstsq(self, linear_problem, randomize_linearization, oracles, lam, MX, NX, NY, NP):
        _, regularized_oracle = oracles
        fgg, p0, dx0 = linear_problem(MX, NX, NY, NP, seed=NP)
        solver = randomize_linearization(TrustRegionSolverTLS(fgg, p0, dx0), seed=MX)

        r, dr = solver.compute_newton_regularized(lam)
        X = solver.regularized_dX
        np.testing.assert_allclose(X, regularized_oracle(solver, lam), rtol=SOLVE_TOL, atol=SOLVE_TOL)
        assert r == pytest.approx(np.linalg.norm(solver.D * X), rel=1e-12)

    @pytest.mark.parametrize("lam", [1e-2, 1.0])
    @pytest.mark.parametrize("MX, NX, NY, NP", [(4, 2, 5, 3), (6, 3, 2, 3)])
    def test_derivative_vs_finite_differences(self, linear_problem, randomize_linearization, lam, MX, NX, NY, NP):
        fgg, p0, dx0 = linear_problem(MX, NX, NY, NP, seed=3)
        solver = randomize_linearization(TrustRegionSolverTLS(fgg, p0, dx0), seed=3)

        _, dr = solver.compute_newton_regularized(lam)
        h = lam * 1e-4
        r_plus, _ = solver.compute_newton_regularized(lam + h)
        r_minus, _ = solver.compute_newton_regularized(lam - h)
        assert dr == pytest.approx((r_plus - r_minus) / (2 * h), rel=1e-5)

    def test_zero_derivative_rank_deficient(self, linear_problem, randomize_linearization):
        """At λ = 0 a rank-deficient Jacobian still yields a finite negative derivative."""
        fgg, p0, dx0 = linear_problem(6, 2, 3, 4, seed=5)
        solver = randomize_linearization(TrustRegionSolverTLS(fgg, p0, dx0), seed=5, dependent=True)
        r, dr = solver.compute_newton_regularized(0.0)
        assert r == pytest.approx(solver.scaled_norm(solver.newton_dX))
        assert np.isfinite(dr) and dr < 0
