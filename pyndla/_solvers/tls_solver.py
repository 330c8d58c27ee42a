"""
Trust-region solver for total least squares with vector-valued responses.
"""

import numpy as np
from scipy.linalg import qr

from .base import TrustRegionSolverBase
from .._core.givens import givens_rotations, rotate
from ..errors import SingularSparseBlock


class TrustRegionSolverTLS(TrustRegionSolverBase):
    """
    Structured solver for models with NY responses per sample.

    Each sample owns an (NY, NX) block of J21. When ``NY > NX`` the blocks
    are first compressed by an orthogonal transform of the sample's response
    rows (``prepare``), so that every sample has ``L = min(NX, NY)``
    response rows left to eliminate against J11.

    Eliminating the response rows of sample ``i`` mixes them: the row
    combinations are tracked in a lower triangular ``(L, L)`` matrix per
    sample. The implicit off-diagonal entries of R in row ``(i, k)`` are
    ``R21[i, :, k] @ J21[i, :, l]`` for the perturbation columns ``l > k``
    and ``R21[i, :, k] @ J22[i]`` for the parameter columns.
    """

    def __init__(self, fgg, p0, dx0):
        super().__init__(fgg, p0, dx0)
        self.name = 'tls'

    def _allocate_R21(self):
        return np.zeros((self.MX, self.L, self.NX))

    def prepare(self):
        """
        Compress the response rows of each sample to at most NX rows.

        For ``NY > NX`` each block is factored ``J21[i] = Q_i @ R_i``;
        applying ``Q_i.T`` to the rows of J22 and F of the sample leaves NX
        rows coupled to the perturbations and ``NY - NX`` rows that only
        involve the parameters. The latter are pooled over all samples and,
        if there are more than NP of them, reduced to NP rows by a dense QR.

        Returns
        -------
        J21 : ndarray, shape (MX, L, NX)
        J22 : ndarray, shape (K, NP)
        F : ndarray, shape (K,)
        """
        MX, NX, NY, NP = self.MX, self.NX, self.NY, self.NP
        n_dx = MX * NX

        if NY <= NX:
            return self.J21, self.J22, self.F0[n_dx:]

        Q, R = np.linalg.qr(self.J21, mode='complete')
        Qt = np.swapaxes(Q, 1, 2)

        J22 = Qt @ self.J22.reshape(MX, NY, NP)
        F = np.einsum('ijk,ik->ij', Qt, self.F0[n_dx:].reshape(MX, NY))

        head_J22 = J22[:, :NX].reshape(n_dx, NP)
        head_F = F[:, :NX].ravel()
        tail_J22 = J22[:, NX:].reshape(-1, NP)
        tail_F = F[:, NX:].ravel()

        if tail_J22.shape[0] > NP:
            q, tail_J22 = qr(tail_J22, mode='economic')
            tail_F = q.T @ tail_F

        return (
            np.ascontiguousarray(R[:, :NX]),
            np.concatenate([head_J22, tail_J22]),
            np.concatenate([head_F, tail_F]),
        )

    def _eliminate_sparse(self, R11, R21, R22, QF, J21, J22):
        MX, NX, NP, L = self.MX, self.NX, self.NP, self.L
        n_dx = MX * NX

        # current response rows as combinations of the prepared ones
        comb = np.broadcast_to(np.eye(L), (MX, L, L)).copy()
        qf_y = QF[n_dx:n_dx + MX * L].reshape(MX, L)

        for k in range(NX):
            r1 = R11[:, k].copy()
            mix = np.zeros((MX, L))
            qf_x = QF[k:n_dx:NX]

            for j in range(L):
                r2 = np.einsum('il,il->i', comb[:, j], J21[:, :, k])
                c, s, r1 = givens_rotations(r1, r2)
                rotate(mix, comb[:, j], c[:, None], s[:, None])
                rotate(qf_x, qf_y[:, j], c, s)

            if np.any(r1 == 0):
                raise SingularSparseBlock(
                    f"perturbation column {k} is zero for samples {np.flatnonzero(r1 == 0).tolist()}"
                )
            R11[:, k] = r1
            R21[:, :, k] = mix

        R22[:MX * L] = (comb @ J22[:MX * L].reshape(MX, L, NP)).reshape(MX * L, NP)

    def _sparse_solve(self, R11, R21, X, J21, J22):
        MX, NX, NP, L = self.MX, self.NX, self.NP, self.L
        n_dx = MX * NX
        x_dx = X[:n_dx].reshape(MX, NX)
        x_p = X[n_dx:n_dx + NP]

        jp = (J22[:MX * L] @ x_p).reshape(MX, L)
        x_dx -= np.einsum('il,ilk->ik', jp, R21)

        jx = np.zeros((MX, L))
        for k in reversed(range(NX)):
            x_dx[:, k] -= np.einsum('il,il->i', R21[:, :, k], jx)
            x_dx[:, k] /= R11[:, k]
            jx += J21[:, :, k] * x_dx[:, k, None]

    def _sparse_rt_solve(self, R11, R21, P, X, J21, J22):
        MX, NX, L = self.MX, self.NX, self.L
        x_dx = X[:MX * NX].reshape(MX, NX)

        sx = np.zeros((MX, L))
        for k in range(NX):
            x_dx[:, k] -= np.einsum('il,il->i', J21[:, :, k], sx)
            x_dx[:, k] /= R11[:, k]
            sx += R21[:, :, k] * x_dx[:, k, None]

        return sx.ravel() @ J22[:MX * L][:, P]
