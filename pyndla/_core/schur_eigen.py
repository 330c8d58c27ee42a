"""
Eigenvalues and eigenvectors from real Schur form.
"""

import math

import numpy as np
from typing import Tuple

from .._utils import check_square_batch, check_same_shape
from ..errors import InvalidSchurForm
from .norm import stable_norm


def _block_eigenvalues(T, i, j):
    """Complex conjugate eigenvalue pair of the 2x2 block ``T[i:j+1, i:j+1]``."""
    T_ii, T_ij = T[i, i], T[i, j]
    T_ji, T_jj = T[j, i], T[j, j]

    diff = T_ii - T_jj
    # scaled so that the squares cannot overflow
    scale = max(abs(diff), abs(T_ij), abs(T_ji))
    if scale == 0:
        discriminant = 0.0
    else:
        d, a, b = diff / scale, T_ij / scale, T_ji / scale
        discriminant = d * d + 4 * a * b
    if discriminant >= 0:
        raise InvalidSchurForm(
            f"2x2 block at ({i}, {j}) has real eigenvalues "
            f"(discriminant {discriminant * scale * scale:.6g} >= 0)"
        )

    half_trace = T_ii / 2 + T_jj / 2
    half_root = scale * math.sqrt(-discriminant) / 2
    return complex(half_trace, half_root), complex(half_trace, -half_root)


def _eigenvalues(T, lam):
    N = T.shape[0]
    j = N - 1
    while j >= 0:
        i = j - 1
        if j == 0 or T[j, i] == 0:
            lam[j] = T[j, j]
            j -= 1
        else:
            lam[i], lam[j] = _block_eigenvalues(T, i, j)
            j -= 2


def schur_eigenvals(T) -> np.ndarray:
    """
    Eigenvalues of quasi-triangular matrices.

    Parameters
    ----------
    T : array_like, shape (..., N, N)
        Real Schur forms, e.g. the second output of ``schur_decomp``.

    Returns
    -------
    ndarray, shape (..., N), complex128
        For a 2x2 block at ``(i, i+1)`` the eigenvalue with the positive
        imaginary part is stored at ``i``.

    Raises
    ------
    InvalidSchurForm
        If a 2x2 diagonal block has real eigenvalues.
    """
    T = check_square_batch(T, 'T')
    lam = np.empty(T.shape[:-1], dtype=np.complex128)
    for idx in np.ndindex(T.shape[:-2]):
        _eigenvalues(T[idx], lam[idx])
    return lam


def _back_substitute(T, lam, v, J, tol):
    """
    Solve ``(T - lam*I) @ v = 0`` for rows above ``J`` in place.

    ``v`` holds the pivot entries (row ``J``, or rows ``J, J+1`` for a 2x2
    block) on entry. A negligible diagonal pivot (or a numerically singular
    2x2 block) means ``lam`` is repeated: a negligible right-hand side is
    then taken as already solved, otherwise the vector restarts as the
    eigenvector of that row (or block) with zeros below it.
    """
    N = T.shape[0]
    K = min(N, J + 2)

    j = J - 1
    while j >= 0:
        v[j] -= T[j, j + 1:K] @ v[j + 1:K]

        if j == 0 or T[j, j - 1] == 0:
            pivot = T[j, j] - lam
            if abs(pivot) <= tol:
                if abs(v[j]) <= tol:
                    v[j] = 0
                else:
                    v[j] = 1
                    v[j + 1:K] = 0
            else:
                v[j] /= pivot
            j -= 1
        else:
            # 2x2 block, solved by Cramer's rule
            i = j - 1
            v[i] -= T[i, j + 1:K] @ v[j + 1:K]

            T_ii = T[i, i] - lam
            T_jj = T[j, j] - lam
            T_ij = T[i, j]
            T_ji = T[j, i]

            det = T_ii * T_jj - T_ij * T_ji
            scale = math.hypot(abs(T_ii), abs(T_jj), T_ij, T_ji)
            if abs(det) <= tol * scale:
                # lam is also an eigenvalue of this block
                if abs(v[i]) <= tol and abs(v[j]) <= tol:
                    v[i] = v[j] = 0
                else:
                    # null vector of the block, from its larger row
                    if math.hypot(abs(T_ii), T_ij) >= math.hypot(abs(T_jj), T_ji):
                        v[i], v[j] = T_ij, -T_ii
                    else:
                        v[i], v[j] = T_jj, -T_ji
                    v[j + 1:K] = 0
            else:
                v_i = (T_jj * v[i] - T_ij * v[j]) / det
                v_j = (T_ii * v[j] - T_ji * v[i]) / det
                v[i], v[j] = v_i, v_j
            j -= 2


def _eigenvectors(T, lam, V):
    N = T.shape[0]
    tol = math.sqrt(np.finfo(np.float64).eps) * stable_norm(T)
    if not tol >= 0:
        raise ValueError("T contains NaN")

    j = N - 1
    while j >= 0:
        i = j - 1
        if j == 0 or T[j, i] == 0:
            lam[j] = T[j, j]
            v = V[:, j]
            v[:] = 0
            v[j] = 1
            _back_substitute(T, lam[j], v, j, tol)
            j -= 1
        else:
            lam1, lam2 = _block_eigenvalues(T, i, j)
            lam[i], lam[j] = lam1, lam2

            v1 = V[:, i]
            v2 = V[:, j]
            v1[:] = 0
            v2[:] = 0
            T_ii, T_ij = T[i, i], T[i, j]
            T_ji, T_jj = T[j, i], T[j, j]
            # pivot on the larger off-diagonal entry
            if abs(T_ij) >= abs(T_ji):
                v1[i], v1[j] = T_ij, lam1 - T_ii
                v2[i], v2[j] = T_ij, lam2 - T_ii
            else:
                v1[i], v1[j] = lam1 - T_jj, T_ji
                v2[i], v2[j] = lam2 - T_jj, T_ji

            _back_substitute(T, lam1, v1, i, tol)
            _back_substitute(T, lam2, v2, i, tol)
            j -= 2

    V /= stable_norm(V, axis=0)


def schur_eigen(Q, T) -> Tuple[np.ndarray, np.ndarray]:
    """
    Eigenvalues and eigenvectors from a real Schur decomposition.

    Parameters
    ----------
    Q : array_like, shape (..., N, N)
        Orthogonal factors.
    T : array_like, shape (..., N, N)
        Quasi-triangular factors with ``A = Q @ T @ Q.T``.

    Returns
    -------
    lam : ndarray, shape (..., N), complex128
        Eigenvalues, ordered along the diagonal of ``T``.
    V : ndarray, shape (..., N, N), complex128
        Unit-norm eigenvectors of ``A`` as columns, ``A @ V ≈ V * lam``.
        Eigenvectors of real eigenvalues have zero imaginary part. A
        repeated eigenvalue lacking independent eigenvectors gets copies of
        the same eigenvector.

    Raises
    ------
    InvalidSchurForm
        If a 2x2 diagonal block of ``T`` has real eigenvalues.
    """
    Q = check_square_batch(Q, 'Q')
    T = check_square_batch(T, 'T')
    check_same_shape(Q, T, 'Q', 'T')

    lam = np.empty(T.shape[:-1], dtype=np.complex128)
    V = np.zeros(T.shape, dtype=np.complex128)

    for idx in np.ndindex(T.shape[:-2]):
        _eigenvectors(T[idx], lam[idx], V[idx])

    return lam, Q @ V
