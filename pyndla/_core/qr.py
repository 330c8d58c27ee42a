"""
Rank-revealing QR decomposition and triangular solves.

Dense building blocks of the structured trust-region solvers. The factorization
itself is LAPACK's pivoted QR (``scipy.linalg.qr(pivoting=True)``).
"""

import numpy as np
from scipy.linalg import qr, solve_triangular
from typing import Optional
from dataclasses import dataclass


@dataclass
class RRQRDecomposition:
    """Result of a rank-revealing QR decomposition."""
    R: np.ndarray            # Upper triangular factor (the decomposed array itself)
    pivot: np.ndarray        # Column permutation (0-indexed): A[:, pivot] = Q @ R
    rank: int                # Numerical rank
    tol: float               # Absolute threshold on |R_ii| used for the rank


def rrqr_decompose_inplace(
    A: np.ndarray,
    rhs: np.ndarray,
    tol: Optional[float] = None,
) -> RRQRDecomposition:
    """
    QR decomposition with column pivoting, in place.

    Parameters
    ----------
    A : ndarray, shape (m, n)
        Matrix to decompose. Overwritten by the upper triangular factor R.
    rhs : ndarray, shape (m,)
        Right-hand side. Overwritten by ``Q.T @ rhs``.
    tol : float, optional
        Absolute threshold for the rank decision. Defaults to
        ``max(m, n) * eps * ||A||_F``.

    Returns
    -------
    RRQRDecomposition
        ``rank`` is the number of diagonal entries of R whose magnitude
        exceeds ``tol``. Pivoting makes these the leading entries.
    """
    m, n = A.shape
    if rhs.shape != (m,):
        raise ValueError(f"rhs must have shape ({m},), got {rhs.shape}")

    if tol is None:
        eps = np.finfo(np.float64).eps
        tol = max(m, n) * eps * np.linalg.norm(A, 'fro')

    if A.size == 0:
        return RRQRDecomposition(R=A, pivot=np.arange(n), rank=0, tol=tol)

    Q, R, P = qr(A, mode='full', pivoting=True)

    A[...] = R
    rhs[...] = Q.T @ rhs

    R_diag = np.abs(np.diag(R))
    rank = int(np.sum(R_diag > tol))

    return RRQRDecomposition(R=A, pivot=P, rank=rank, tol=tol)


def triu_solve(R: np.ndarray, x: np.ndarray, rank: int):
    """Solve ``R[:rank, :rank] @ y = x[:rank]`` in place (backward substitution)."""
    if rank > 0:
        x[:rank] = solve_triangular(R[:rank, :rank], x[:rank], lower=False)


def triu_transpose_solve(R: np.ndarray, x: np.ndarray, rank: int):
    """Solve ``R[:rank, :rank].T @ y = x[:rank]`` in place (forward substitution)."""
    if rank > 0:
        x[:rank] = solve_triangular(R[:rank, :rank], x[:rank], trans='T', lower=False)
