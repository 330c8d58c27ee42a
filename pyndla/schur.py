"""
Real Schur decomposition and eigen decomposition of general real matrices.

This is the user-facing API of the eigenvalue side. All functions accept a
single square matrix or a batch of them stacked along leading dimensions.
"""

import numpy as np
from scipy.linalg import hessenberg
from typing import Tuple

from ._utils import check_square_batch
from ._core.francis import francis_qr_inplace, SCHUR_SEED, MAX_STUCK_ITERATIONS
from ._core.schur_eigen import schur_eigen, schur_eigenvals


def hessenberg_decomp(A) -> Tuple[np.ndarray, np.ndarray]:
    """
    Orthogonal reduction to upper Hessenberg form.

    Parameters
    ----------
    A : array_like, shape (..., N, N)

    Returns
    -------
    Q : ndarray, shape (..., N, N)
        Orthogonal factors.
    H : ndarray, shape (..., N, N)
        Upper Hessenberg matrices with ``A = Q @ H @ Q.T``.
    """
    A = check_square_batch(A, 'A')
    Q = np.empty_like(A)
    H = np.empty_like(A)
    for idx in np.ndindex(A.shape[:-2]):
        H[idx], Q[idx] = hessenberg(A[idx], calc_q=True)
        # exact zeros below the subdiagonal
        H[idx] = np.triu(H[idx], -1)
    return Q, H


def schur_decomp(A, seed: int = SCHUR_SEED, max_stuck: float = MAX_STUCK_ITERATIONS) -> Tuple[np.ndarray, np.ndarray]:
    """
    Real Schur decomposition ``A = Q @ T @ Q.T``.

    Hessenberg reduction followed by implicit double-shift Francis QR.

    Parameters
    ----------
    A : array_like, shape (..., N, N)
        Real square matrices. Not modified.
    seed : int
        Seed of the random shifts used to escape stagnation.
    max_stuck : float
        Iteration budget per deflation window.

    Returns
    -------
    Q : ndarray, shape (..., N, N)
        Orthogonal matrices.
    T : ndarray, shape (..., N, N)
        Quasi-triangular matrices. Each remaining 2x2 diagonal block encodes
        a complex conjugate eigenvalue pair.

    Raises
    ------
    TooManyIterations
        If Francis QR fails to converge.

    Examples
    --------
    >>> import numpy as np
    >>> from pyndla import schur_decomp
    >>> A = np.array([[0., -1.], [1., 0.]])
    >>> Q, T = schur_decomp(A)
    >>> np.allclose(Q @ T @ Q.T, A)
    True
    """
    Q, H = hessenberg_decomp(A)
    francis_qr_inplace(Q, H, seed=seed, max_stuck=max_stuck)
    return Q, H


def eig(A) -> Tuple[np.ndarray, np.ndarray]:
    """
    Eigenvalues and unit-norm eigenvectors of real square matrices.

    Parameters
    ----------
    A : array_like, shape (..., N, N)

    Returns
    -------
    lam : ndarray, shape (..., N), complex128
    V : ndarray, shape (..., N, N), complex128
        ``A @ V[..., :, k] ≈ lam[..., k] * V[..., :, k]``.
    """
    Q, T = schur_decomp(A)
    return schur_eigen(Q, T)


__all__ = [
    'hessenberg_decomp',
    'schur_decomp',
    'schur_eigenvals',
    'schur_eigen',
    'eig',
]
