"""
Givens rotations.

A rotation ``G = [[c, s], [-s, c]]`` acting on the pair ``(a, b)`` maps it to
``(norm, 0)``. Rotations are applied in place to rows or columns of numpy
arrays (or to views of them, which restricts the range that is touched).
"""

import math

import numpy as np
from typing import Tuple


def givens_rotation(a: float, b: float) -> Tuple[float, float, float]:
    """
    Compute a Givens rotation that zeroes ``b``.

    Parameters
    ----------
    a, b : float
        Entries of the column vector to rotate.

    Returns
    -------
    c, s, norm : float
        ``c*a + s*b == norm`` and ``c*b - s*a == 0``. For ``b == 0`` the
        rotation is the identity and ``norm == a`` keeps the sign of ``a``.
        Otherwise ``norm = hypot(a, b)``, which is overflow/underflow safe.
    """
    if b == 0:
        return 1.0, 0.0, a
    norm = math.hypot(a, b)
    return a / norm, b / norm, norm


def givens_rotations(a, b):
    """
    Elementwise version of :func:`givens_rotation` for arrays.

    Entries where ``b == 0`` yield the identity rotation with ``norm == a``.
    Where both entries are zero, ``norm`` is zero, which callers treat as a
    singular pivot.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    norm = np.hypot(a, b)
    trivial = b == 0
    with np.errstate(invalid='ignore', divide='ignore'):
        c = np.where(trivial, 1.0, a / norm)
        s = np.where(trivial, 0.0, b / norm)
    norm = np.where(trivial, a, norm)
    return c, s, norm


def apply_rows(A, i, j, c, s):
    """
    Rotate rows ``i`` and ``j`` of ``A`` in place.

    ``A[i] <- c*A[i] + s*A[j]`` and ``A[j] <- c*A[j] - s*A[i]``. Works on 1-D
    arrays (rotating two entries) and on 2-D arrays or views of them, e.g.
    ``apply_rows(H[:, k:], i, j, c, s)`` only touches columns ``k:``.
    """
    A[i], A[j] = c * A[i] + s * A[j], c * A[j] - s * A[i]


def apply_cols(A, i, j, c, s):
    """Rotate columns ``i`` and ``j`` of ``A`` in place (same convention as :func:`apply_rows`)."""
    A[:, i], A[:, j] = c * A[:, i] + s * A[:, j], c * A[:, j] - s * A[:, i]


def rotate(x, y, c, s):
    """Rotate two array views against each other in place."""
    x_old = x.copy()
    x *= c
    x += s * y
    y *= c
    y -= s * x_old
