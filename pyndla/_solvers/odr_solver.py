"""
Trust-region solver for orthogonal distance regression with scalar responses.
"""

import numpy as np

from .base import TrustRegionSolverBase
from .._core.givens import givens_rotations, rotate
from ..errors import ShapeMismatch, SingularSparseBlock


class TrustRegionSolverODR(TrustRegionSolverBase):
    """
    Structured solver for models with one response per sample (NY == 1).

    Each sample contributes a single residual row ``dy_i``, so eliminating
    J21 against J11 leaves exactly one dense row per sample. The elimination
    of row ``i`` with the perturbation columns ``k = 0..NX-1`` is a sequence
    of rotations whose cosines accumulate in ``cc``; it is carried out for
    all samples at once.

    The implicit off-diagonal entry of R in row ``(i, k)`` and column
    ``(i, l)``, ``l > k``, is ``R21[i, k] * J21[i, l]``.
    """

    def __init__(self, fgg, p0, dx0):
        super().__init__(fgg, p0, dx0)
        self.name = 'odr'

    def _check_residual_shape(self, y_shape):
        if len(y_shape) == 2 and y_shape[1] != 1:
            raise ShapeMismatch(
                f"ODR solver requires one response per sample, got dy.shape {y_shape}; "
                "use the TLS solver for multiple responses"
            )

    def _allocate_R21(self):
        return np.zeros((self.MX, self.NX))

    def prepare(self):
        n_dx = self.MX * self.NX
        return self.J21[:, 0, :], self.J22, self.F0[n_dx:]

    def _eliminate_sparse(self, R11, R21, R22, QF, J21, J22):
        MX, NX = self.MX, self.NX
        n_dx = MX * NX

        cc = np.ones(MX)
        qf_y = QF[n_dx:n_dx + MX]

        for k in range(NX):
            c, s, nrm = givens_rotations(R11[:, k], J21[:, k] * cc)
            if np.any(nrm == 0):
                raise SingularSparseBlock(
                    f"perturbation column {k} is zero for samples {np.flatnonzero(nrm == 0).tolist()}"
                )
            R21[:, k] = cc * s
            cc *= c
            R11[:, k] = nrm
            rotate(QF[k:n_dx:NX], qf_y, c, s)

        R22[:MX] = cc[:, None] * J22

    def _sparse_solve(self, R11, R21, X, J21, J22):
        MX, NX, NP = self.MX, self.NX, self.NP
        n_dx = MX * NX
        x_dx = X[:n_dx].reshape(MX, NX)
        x_p = X[n_dx:n_dx + NP]

        x_dx -= (J22 @ x_p)[:, None] * R21

        jx = np.zeros(MX)
        for k in reversed(range(NX)):
            x_dx[:, k] -= R21[:, k] * jx
            x_dx[:, k] /= R11[:, k]
            jx += J21[:, k] * x_dx[:, k]

    def _sparse_rt_solve(self, R11, R21, P, X, J21, J22):
        MX, NX = self.MX, self.NX
        x_dx = X[:MX * NX].reshape(MX, NX)

        sx = np.zeros(MX)
        for k in range(NX):
            x_dx[:, k] -= J21[:, k] * sx
            x_dx[:, k] /= R11[:, k]
            sx += R21[:, k] * x_dx[:, k]

        return sx @ J22[:, P]
