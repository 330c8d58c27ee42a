"""
Abstract base class for structured trust-region solvers.

Defines the interface an optimization driver uses and implements everything
that does not depend on how the sparse (J11, J21) block is factored.

The Jacobian of the orthogonal distance problem has the block structure::

        ┏              ╷     ┓
        ┃ J11 (diag)   ┊  0  ┃   MX*NX rows: residual dx of the perturbations
    J = ┃┄┄┄┄┄┄┄┄┄┄┄┄┄┄┼┄┄┄┄┄┃
        ┃ J21 (blocks) ┊ J22 ┃   MX*NY rows: residual dy of the model
        ┗              ╵     ┛
          MX*NX columns  NP columns

J21 is block diagonal with one (NY, NX) block per sample, J22 is dense. The
structured QR eliminates J21 against J11 sample by sample, leaving a dense
problem in the NP parameter columns which is factored by a rank-revealing QR.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Tuple

import numpy as np

from .._utils import check_vector, check_samples
from .._core.givens import givens_rotation, givens_rotations, apply_rows, apply_cols
from .._core.norm import stable_norm
from .._core.qr import rrqr_decompose_inplace, triu_solve, triu_transpose_solve
from ..errors import (
    ShapeMismatch,
    SingularSparseBlock,
    ReportStateError,
    OptimizationNoProgressError,
)


class ReportState(Enum):
    """Lifecycle of the report of a trust-region solver."""
    NA = "na"                    # report drained (or never filled)
    CONSIDERING = "considering"  # tentative evaluation pending
    READY = "ready"              # committed evaluation may be reported


@dataclass
class SolverReport:
    """Evaluation at the last committed point."""
    p: np.ndarray            # Parameters
    dx: np.ndarray           # Perturbations of the independent variable
    loss: float              # Mean squared residual (dx and dy)
    dloss_dp: np.ndarray     # Gradient of the loss w.r.t. p
    dloss_ddx: np.ndarray    # Gradient of the loss w.r.t. dx
    dy: np.ndarray           # Model residuals


def _check_fgg_output(result, MX, NX, NP, x_ndim, y_shape=None):
    """Validate the output of ``fgg`` and return copies as float64 arrays."""
    try:
        dy, dy_dp, dy_dx = result
    except (TypeError, ValueError):
        raise ShapeMismatch("fgg must return a triple (dy, dy_dp, dy_dx)") from None

    dy = np.array(dy, dtype=np.float64)
    dy_dp = np.array(dy_dp, dtype=np.float64)
    dy_dx = np.array(dy_dx, dtype=np.float64)

    if dy.ndim not in (1, 2):
        raise ShapeMismatch(f"dy.ndim must be 1 or 2, got {dy.ndim}")
    if dy.shape[0] != MX:
        raise ShapeMismatch(f"dy.shape[0] must be {MX} (number of samples), got {dy.shape[0]}")
    if y_shape is not None and dy.shape != y_shape:
        raise ShapeMismatch(f"dy.shape changed from {y_shape} to {dy.shape}")

    expected = dy.shape + (NP,)
    if dy_dp.shape != expected:
        raise ShapeMismatch(f"dy_dp.shape must be {expected}, got {dy_dp.shape}")

    expected = dy.shape + ((NX,) if x_ndim == 2 else ())
    if dy_dx.shape != expected:
        raise ShapeMismatch(f"dy_dx.shape must be {expected}, got {dy_dx.shape}")

    return dy, dy_dp, dy_dx


class TrustRegionSolverBase(ABC):
    """
    Trust-region subproblem solver for orthogonal distance regression.

    The solver holds the linearization at the committed point
    ``X0 = [dx.ravel(), p]`` and answers the questions a trust-region
    driver asks: what does a step cost (``consider_move``), which step does
    the Gauss-Newton model suggest (``compute_newton``) and which step
    results from Levenberg-Marquardt damping (``compute_newton_regularized``).

    Parameters
    ----------
    fgg : callable
        ``fgg(p, dx) -> (dy, dy_dp, dy_dx)``: model residuals of shape
        (MX,) or (MX, NY) and their derivatives w.r.t. ``p`` (trailing
        dimension NP) and ``dx`` (trailing dimension NX if ``dx`` is 2-D).
    p0 : array_like, shape (NP,)
        Initial parameters.
    dx0 : array_like, shape (MX,) or (MX, NX)
        Initial perturbations.

    Attributes
    ----------
    X0, F0, G0 : ndarray
        Committed point, residual (``[dx.ravel(), dy.ravel()]``) and the
        gradient of the half sum of squares ``J.T @ F0``.
    J11, J21, J22 : ndarray
        Committed Jacobian blocks, shapes (MX, NX), (MX, NY, NX) and
        (MX*NY, NP).
    D : ndarray, shape (N,)
        Column scaling. Grows monotonically with the column norms of J.
    loss : float
        Mean squared residual at ``X0``.
    rank : int
        Numerical rank of J after ``compute_newton()``, -1 before.
    """

    def __init__(self, fgg, p0, dx0):
        if not callable(fgg):
            raise TypeError("fgg must be callable")

        p0 = check_vector(p0, 'p0')
        dx0 = check_samples(dx0, 'dx0')
        if p0.size == 0:
            raise ShapeMismatch("p0 must not be empty")

        MX = dx0.shape[0]
        NX = 1 if dx0.ndim == 1 else dx0.shape[1]
        NP = p0.shape[0]

        dy, dy_dp, dy_dx = _check_fgg_output(fgg(p0.copy(), dx0.copy()), MX, NX, NP, dx0.ndim)
        self._check_residual_shape(dy.shape)
        NY = 1 if dy.ndim == 1 else dy.shape[1]

        self.fgg = fgg
        self.MX, self.NX, self.NY, self.NP = MX, NX, NY, NP
        self.L = min(NX, NY)
        self.M = MX * NX + MX * NY
        self.N = MX * NX + NP
        self.p_shape = p0.shape
        self.x_shape = dx0.shape
        self.y_shape = dy.shape

        n_dx = MX * NX
        K = min(MX * NY, n_dx + NP)

        self.J11 = np.zeros((MX, NX))
        self.J21 = np.zeros((MX, NY, NX))
        self.J22 = np.zeros((MX * NY, NP))
        self.D = np.zeros(self.N)
        self.X0 = np.zeros(self.N)
        self.F0 = np.zeros(self.M)
        self.G0 = np.zeros(self.N)

        # tentative evaluation, swapped with the committed one on commit
        self._consider_J11 = np.ones((MX, NX))
        self._consider_J21 = dy_dx.reshape(MX, NY, NX)
        self._consider_J22 = dy_dp.reshape(MX * NY, NP)

        # working memory and result of compute_newton()
        self.newton_R11 = np.zeros((MX, NX))
        self.newton_R21 = self._allocate_R21()
        self.newton_R22 = np.zeros((K, NP))
        self.newton_P = np.arange(NP)
        self.newton_dX = np.zeros(self.N)

        # working memory and result of compute_newton_regularized(λ > 0)
        self.regularized_R11 = np.zeros((MX, NX))
        self.regularized_R21 = self._allocate_R21()
        self.regularized_R22 = np.zeros((max(K, NP + 1), NP))
        self.regularized_P = np.arange(NP)
        self.regularized_dX = np.zeros(self.N)

        # rotated right-hand side, +1 entry as scratch for the regularization
        self._QF = np.zeros(max(n_dx + K, self.N + 1))

        self.loss = 0.0
        self.rank = -1
        self._prepared = None
        self._report_state = ReportState.NA

        self._set_report(p0, dx0, dy)
        self.make_considered_move()

    # ------------------------------------------------------------------
    # variant specific parts
    # ------------------------------------------------------------------

    def _check_residual_shape(self, y_shape):
        """Reject residual shapes the variant does not support."""

    @abstractmethod
    def _allocate_R21(self) -> np.ndarray:
        """Storage for the implicit off-diagonal part of R (one row factor per entry of R11)."""
        pass

    @abstractmethod
    def prepare(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Blocks entering the structured QR.

        Returns
        -------
        J21 : ndarray
            Per-sample blocks of J21 as consumed by the elimination kernel.
        J22 : ndarray, shape (K, NP)
            Dense rows. The first ``MX*L`` rows belong to the sample blocks.
        F : ndarray, shape (K,)
            Residual rows matching ``J22``.
        """
        pass

    @abstractmethod
    def _eliminate_sparse(self, R11, R21, R22, QF, J21, J22):
        """
        Eliminate J21 against the diagonal R11 with Givens rotations.

        Updates ``R11`` (diagonal of R), ``R21`` (row factors of the
        off-diagonal part), the first ``MX*L`` rows of ``R22`` and the
        corresponding entries of ``QF``.
        """
        pass

    @abstractmethod
    def _sparse_solve(self, R11, R21, X, J21, J22):
        """Back substitution of the sparse rows once the dense part of ``X`` is solved."""
        pass

    @abstractmethod
    def _sparse_rt_solve(self, R11, R21, P, X, J21, J22) -> np.ndarray:
        """
        Forward substitution of ``R.T`` for the sparse rows.

        Returns the contribution of the solved sparse part to the dense
        equations, in pivoted column order.
        """
        pass

    # ------------------------------------------------------------------
    # evaluation bookkeeping
    # ------------------------------------------------------------------

    def _prepared_blocks(self):
        if self._prepared is None:
            self._prepared = self.prepare()
        return self._prepared

    def _set_report(self, p, dx, dy):
        """Store an evaluation as the tentative report."""
        MX, NX, NY, M = self.MX, self.NX, self.NY, self.M
        J11 = self._consider_J11
        J21 = self._consider_J21
        J22 = self._consider_J22

        dx2 = dx.reshape(MX, NX)
        dy2 = dy.reshape(MX, NY)

        dloss_ddx = J11 * dx2 + np.einsum('ijk,ij->ik', J21, dy2)

        self.report_p = p
        self.report_dx = dx
        self.report_dy = dy
        self.report_loss = (np.sum(dx * dx) + np.sum(dy * dy)) / M
        self.report_dloss_dp = J22.T @ dy.ravel() * (2 / M)
        self.report_dloss_ddx = (dloss_ddx * (2 / M)).reshape(self.x_shape)
        self._report_state = ReportState.CONSIDERING

    def consider_move(self, dX) -> Tuple[float, float]:
        """
        Evaluate the model at ``X0 + dX`` as a tentative move.

        Parameters
        ----------
        dX : array_like, shape (N,)
            Step ``[ddx.ravel(), dp]``.

        Returns
        -------
        predicted_loss : float
            Loss predicted by the linearization at ``X0``.
        actual_loss : float
            Loss at ``X0 + dX``.
        """
        dX = np.asarray(dX, dtype=np.float64)
        if dX.shape != (self.N,):
            raise ShapeMismatch(f"dX must have shape ({self.N},), got {dX.shape}")

        MX, NX = self.MX, self.NX
        n_dx = MX * NX

        p = (self.X0[n_dx:] + dX[n_dx:]).reshape(self.p_shape)
        dx = (self.X0[:n_dx] + dX[:n_dx]).reshape(self.x_shape)

        dy, dy_dp, dy_dx = _check_fgg_output(
            self.fgg(p.copy(), dx.copy()), MX, NX, self.NP, len(self.x_shape), self.y_shape
        )

        self._consider_J11[...] = 1.0
        self._consider_J21[...] = dy_dx.reshape(self._consider_J21.shape)
        self._consider_J22[...] = dy_dp.reshape(self._consider_J22.shape)
        self._set_report(p, dx, dy)

        # quadratic model of the committed linearization
        ddx = dX[:n_dx].reshape(MX, NX)
        f_dx = self.F0[:n_dx] + (self.J11 * ddx).ravel()
        f_dy = (
            self.F0[n_dx:]
            + np.einsum('ijk,ik->ij', self.J21, ddx).ravel()
            + self.J22 @ dX[n_dx:]
        )
        predicted_loss = (f_dx @ f_dx + f_dy @ f_dy) / self.M

        return predicted_loss, self.report_loss

    def make_considered_move(self):
        """
        Commit the last ``consider_move`` evaluation.

        Recomputes the gradient ``G0`` and grows the scaling ``D``.
        """
        if self._report_state is not ReportState.CONSIDERING:
            raise ReportStateError(
                "make_considered_move() requires a pending consider_move(dX)"
            )
        self._report_state = ReportState.READY

        self.loss = self.report_loss
        self.rank = -1
        self._prepared = None

        self.J11, self._consider_J11 = self._consider_J11, self.J11
        self.J21, self._consider_J21 = self._consider_J21, self.J21
        self.J22, self._consider_J22 = self._consider_J22, self.J22

        MX, NX, NY = self.MX, self.NX, self.NY
        n_dx = MX * NX
        J11, J21, J22 = self.J11, self.J21, self.J22

        dx = self.report_dx.ravel()
        dy = self.report_dy.ravel()
        self.X0[:n_dx] = dx
        self.X0[n_dx:] = self.report_p
        self.F0[:n_dx] = dx
        self.F0[n_dx:] = dy

        # gradient of the half sum of squares
        self.G0[:n_dx] = (J11 * dx.reshape(MX, NX) + np.einsum('ijk,ij->ik', J21, dy.reshape(MX, NY))).ravel()
        self.G0[n_dx:] = J22.T @ dy

        D = self.D
        col_dx = stable_norm(np.concatenate([J11[:, None, :], J21], axis=1), axis=1)
        np.maximum(D[:n_dx], col_dx.ravel(), out=D[:n_dx])
        np.maximum(D[n_dx:], stable_norm(J22, axis=0), out=D[n_dx:])

    def report(self) -> SolverReport:
        """
        Drain the report of the last committed evaluation.

        Valid once after each ``make_considered_move()``.
        """
        if self._report_state is not ReportState.READY:
            raise ReportStateError(
                "report() can only be called once after each make_considered_move(), "
                "not directly after consider_move(dX)"
            )
        self._report_state = ReportState.NA

        result = SolverReport(
            p=self.report_p,
            dx=self.report_dx,
            loss=self.report_loss,
            dloss_dp=self.report_dloss_dp,
            dloss_ddx=self.report_dloss_ddx,
            dy=self.report_dy,
        )

        self.report_p = None
        self.report_dx = None
        self.report_dy = None
        self.report_dloss_dp = None
        self.report_dloss_ddx = None
        self.report_loss = np.nan

        return result

    @property
    def report_state(self) -> ReportState:
        return self._report_state

    def cauchy_travel(self) -> float:
        """
        Step length along ``G0`` minimizing the quadratic model.

        The model along ``X0 + t*G0`` is ``const + 2*a*t + b*t**2`` with
        ``a = |G0|**2`` and ``b = |J @ G0|**2``, minimal at ``t = -a/b``.

        Returns
        -------
        float
            ``-a/b`` (non-positive), 0 if ``G0`` is zero, ``-inf`` if the
            model is linear along ``G0``.
        """
        MX, NX = self.MX, self.NX
        n_dx = MX * NX
        G = self.G0
        g_dx = G[:n_dx].reshape(MX, NX)

        a = G @ G
        Jg_dx = self.J11 * g_dx
        Jg_dy = np.einsum('ijk,ik->ij', self.J21, g_dx).ravel() + self.J22 @ G[n_dx:]
        b = np.sum(Jg_dx * Jg_dx) + Jg_dy @ Jg_dy

        if a == 0:
            return 0.0
        if b == 0:
            return -np.inf
        return -a / b

    def scaled_norm(self, X) -> float:
        """``||D * X||``, the trust-region norm of a step."""
        X = np.asarray(X, dtype=np.float64)
        if X.shape != (self.N,):
            raise ShapeMismatch(f"X must have shape ({self.N},), got {X.shape}")
        return stable_norm(self.D * X)

    def wiggle(self):
        """Called by drivers that are stuck. There is no way to perturb the problem."""
        raise OptimizationNoProgressError("Too many unsuccessful iterations.")

    def dense_jacobian(self) -> np.ndarray:
        """Materialize the committed Jacobian as a dense (M, N) array (debugging/testing)."""
        MX, NX, NY = self.MX, self.NX, self.NY
        n_dx = MX * NX

        J = np.zeros((self.M, self.N))
        J[:n_dx, :n_dx] = np.diag(self.J11.ravel())
        for i in range(MX):
            J[n_dx + NY * i:n_dx + NY * (i + 1), NX * i:NX * (i + 1)] = self.J21[i]
        J[n_dx:, n_dx:] = self.J22
        return J

    # ------------------------------------------------------------------
    # structured QR
    # ------------------------------------------------------------------

    def _load_rhs(self):
        """Copy the residual, in prepared row order, into the QF buffer."""
        _, _, F = self._prepared_blocks()
        n_dx = self.MX * self.NX
        QF = self._QF
        QF[:n_dx] = self.F0[:n_dx]
        QF[n_dx:n_dx + F.shape[0]] = F
        return QF

    def _qr_decomp(self, R11, R21, R22, P, QF) -> int:
        """
        Structured QR of J with the diagonal of R11 preloaded into ``R11``.

        Returns the numerical rank of the dense part.
        """
        J21, J22, F = self._prepared_blocks()
        K = F.shape[0]
        NP = self.NP
        n_dx = self.MX * self.NX
        n_block = self.MX * self.L

        self._eliminate_sparse(R11, R21, R22, QF, J21, J22)

        # rows not attached to a sample block
        R22[n_block:K] = J22[n_block:K]

        rrqr = rrqr_decompose_inplace(R22[:K], QF[n_dx:n_dx + K])
        P[:] = rrqr.pivot
        rnk = rrqr.rank

        # zero out the rank-deficient rows
        R22[rnk:min(K, NP)] = 0.0
        return rnk

    def _eliminate_dependent_columns(self, R22, P, rnk):
        """
        Rotate the numerically dependent columns ``rnk:`` of the scaled R22 away.

        Afterwards ``R22[:rnk, :rnk]`` is the triangular factor of a complete
        orthogonal decomposition and ``R22[:rnk, rnk:]`` holds the sines of
        the rotations (cosines are non-negative).
        """
        NP = self.NP
        n_dx = self.MX * self.NX

        d = self.D[n_dx + P]
        scaled = d != 0
        R22[:rnk, scaled] /= d[scaled]

        for i in reversed(range(rnk)):
            for j in reversed(range(rnk, NP)):
                if R22[i, j] == 0:
                    continue
                c, s, nrm = givens_rotation(R22[i, i], R22[i, j])
                if s != 0:
                    if c < 0:
                        c, s, nrm = -c, -s, -nrm
                    apply_cols(R22[:i], i, j, c, s)
                    R22[i, i] = nrm
                R22[i, j] = s

    def _apply_dependent_rotations(self, x, R22, rnk):
        """Apply the rotations of ``_eliminate_dependent_columns`` to ``x``."""
        for i in reversed(range(rnk)):
            for j in reversed(range(rnk, self.NP)):
                s = R22[i, j]
                if s == 0:
                    continue
                c = math.sqrt(1 - s * s)
                apply_rows(x, i, j, c, s)

    def _undo_dependent_rotations(self, x, R22, rnk):
        """Inverse of ``_apply_dependent_rotations``."""
        for i in range(rnk):
            for j in range(rnk, self.NP):
                s = R22[i, j]
                if s == 0:
                    continue
                c = math.sqrt(1 - s * s)
                apply_rows(x, j, i, c, s)

    def _qr_solve(self, R11, R21, R22, P, rnk, X):
        """Solve ``R @ V @ D @ X = X`` in place (the right side being ``-Q.T @ F``)."""
        J21, J22, _ = self._prepared_blocks()
        NP = self.NP
        n_dx = self.MX * self.NX
        x_p = X[n_dx:n_dx + NP]

        triu_solve(R22, x_p, rnk)

        if rnk != NP:
            self._undo_dependent_rotations(x_p, R22, rnk)

        x_p[P] = x_p.copy()

        if rnk != NP:
            d = self.D[n_dx:]
            scaled = d != 0
            x_p[scaled] /= d[scaled]

        self._sparse_solve(R11, R21, X, J21, J22)

    def _rt_solve(self, R11, R21, R22, P, rnk, X):
        """Solve ``(R @ V @ D).T @ Y = X`` for the leading ``MX*NX + rnk`` entries in place."""
        J21, J22, _ = self._prepared_blocks()
        NP = self.NP
        n_dx = self.MX * self.NX

        tmp = self._sparse_rt_solve(R11, R21, P, X, J21, J22)

        if rnk < NP:
            d = self.D[n_dx + P]
            scaled = d != 0
            tmp[scaled] /= d[scaled]
            self._apply_dependent_rotations(tmp, R22, rnk)

        x_p = X[n_dx:n_dx + NP]
        x_p[:rnk] -= tmp[:rnk]
        triu_transpose_solve(R22, x_p, rnk)

    def _regularize_dense(self, R22, QF, P, rnk, sqrt_lam):
        """Append the rows ``sqrt(λ)*D`` of the parameter columns to the triangular R22."""
        NP, N = self.NP, self.N
        n_dx = self.MX * self.NX

        for i in reversed(range(NP)):
            d = self.D[n_dx + P[i]]
            d_lam = 1.0 if d == 0 else d * sqrt_lam

            if rnk <= i:
                # rank-deficient rows are replaced by the regularization
                R22[i, i] = d_lam
                QF[n_dx + i] = 0.0
            else:
                # eliminate the regularization row using the scratch row NP
                R22[NP, i] = d_lam
                QF[N] = 0.0
                for j in range(i, NP):
                    c, s, nrm = givens_rotation(R22[j, j], R22[NP, j])
                    R22[NP, j] = 0.0
                    if s == 0:
                        continue
                    R22[j, j] = nrm
                    apply_rows(R22[:, j + 1:], j, NP, c, s)
                    apply_rows(QF, n_dx + j, N, c, s)

    # ------------------------------------------------------------------
    # public solves
    # ------------------------------------------------------------------

    def compute_newton(self):
        """
        Gauss-Newton step of the committed linearization.

        The result is the minimum ``D``-norm least squares solution of
        ``J @ dX = -F0`` and is stored in ``newton_dX``; the numerical rank
        of J is stored in ``rank``. Computed once per committed point.
        """
        if self.rank >= 0:
            return

        NP = self.NP
        n_dx = self.MX * self.NX
        R11 = self.newton_R11
        R21 = self.newton_R21
        R22 = self.newton_R22
        P = self.newton_P
        X = self.newton_dX

        R11[...] = self.J11
        QF = self._load_rhs()

        rnk = self._qr_decomp(R11, R21, R22, P, QF)
        self.rank = n_dx + rnk

        X[:n_dx + rnk] = -QF[:n_dx + rnk]

        if rnk != NP:
            X[n_dx + rnk:] = 0.0
            self._eliminate_dependent_columns(R22, P, rnk)

        self._qr_solve(R11, R21, R22, P, rnk, X)

    def compute_newton_regularized(self, lam: float) -> Tuple[float, float]:
        """
        Levenberg-Marquardt step for the damping ``lam``.

        Solves ``[J; sqrt(lam)*diag(D)] @ dX = -[F0; 0]`` in the least
        squares sense (a parameter with zero scaling gets a regularization
        row of weight 1 instead) and stores the step
        in ``regularized_dX``. The cached factorization of
        ``compute_newton()`` is left untouched.

        Parameters
        ----------
        lam : float
            Damping, ``lam >= 0``. ``lam == 0`` yields the Newton step.

        Returns
        -------
        r : float
            ``||D * dX||``.
        dr : float
            Derivative of ``r`` w.r.t. ``lam``.
        """
        lam = float(lam)
        if not lam >= 0:
            raise ValueError(f"lam must be non-negative, got {lam}")

        MX, NX, NP, N = self.MX, self.NX, self.NP, self.N
        n_dx = MX * NX
        D = self.D
        X = self.regularized_dX
        Y = np.empty(N)

        if lam == 0:
            self.compute_newton()

            X[:] = self.newton_dX
            r = self.scaled_norm(X)
            if r == 0:
                return 0.0, 0.0

            R11, R21, R22, P = self.newton_R11, self.newton_R21, self.newton_R22, self.newton_P
            rank = self.rank
            rnk = rank - n_dx

            j = n_dx + P
            if rank < N:
                y_p = X[j] * D[j]
                self._apply_dependent_rotations(y_p, R22, rnk)
                Y[n_dx:] = y_p
            else:
                Y[n_dx:] = X[j] * D[j] * D[j]
            Y[:n_dx] = X[:n_dx] * D[:n_dx] * D[:n_dx]

            self._rt_solve(R11, R21, R22, P, rnk, Y)

            dr = -np.sum(Y[:rank] ** 2) / r
            return r, dr

        R11 = self.regularized_R11
        R21 = self.regularized_R21
        R22 = self.regularized_R22
        P = self.regularized_P

        R11[...] = self.J11
        if np.any(R11 == 0):
            raise SingularSparseBlock("J11 must not contain zeros")

        QF = self._load_rhs()
        K = self._prepared_blocks()[2].shape[0]

        # fold the regularization of the perturbation block into R11
        sqrt_lam = math.sqrt(lam)
        d_lam = D[:n_dx].reshape(MX, NX) * sqrt_lam
        if not np.all(d_lam > 0):
            raise SingularSparseBlock("scaling of the perturbation columns must be positive")
        c, _, nrm = givens_rotations(R11, d_lam)
        R11[...] = nrm
        QF[:n_dx] *= c.ravel()

        rnk = self._qr_decomp(R11, R21, R22, P, QF)

        # clear rows left over from previous calls, including the scratch row
        R22[K:] = 0.0
        self._regularize_dense(R22, QF, P, rnk, sqrt_lam)

        X[:] = -QF[:N]
        self._qr_solve(R11, R21, R22, P, NP, X)

        r = self.scaled_norm(X)
        if r == 0:
            return 0.0, 0.0

        j = n_dx + P
        Y[n_dx:] = X[j] * D[j] * D[j]
        Y[:n_dx] = X[:n_dx] * D[:n_dx] * D[:n_dx]

        self._rt_solve(R11, R21, R22, P, NP, Y)

        dr = -np.sum(Y * Y) / r
        return r, dr
