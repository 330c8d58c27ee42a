"""
Implicit double-shift Francis QR.

Turns an upper Hessenberg matrix into real Schur (quasi-triangular) form in
place while accumulating the orthogonal similarity transforms.
"""

import logging
import math
import zlib

import numpy as np

from .._utils import check_square_batch, check_same_shape
from ..errors import TooManyIterations
from .givens import givens_rotation, apply_rows, apply_cols

logger = logging.getLogger(__name__)

# Seed of the PRNG that perturbs stagnating shifts (reproducible across runs)
SCHUR_SEED = zlib.crc32(b'pyndla.schur_qrfrancis_inplace')

# Every STUCK_SHIFT_PERIOD iterations without deflation a random shift is used
STUCK_SHIFT_PERIOD = 16

# Iterations without deflation after which a window is given up
MAX_STUCK_ITERATIONS = 1e9


def francis_qr_inplace(Q, H, seed=SCHUR_SEED, max_stuck=MAX_STUCK_ITERATIONS):
    """
    Reduce Hessenberg matrices to real Schur form in place.

    Parameters
    ----------
    Q : ndarray, shape (..., N, N)
        Orthogonal accumulator, usually the factor of the Hessenberg
        reduction ``A = Q @ H @ Q.T``. Updated in place so that the relation
        still holds with the final ``H``.
    H : ndarray, shape (..., N, N)
        Upper Hessenberg matrices. Overwritten by quasi-triangular matrices
        whose remaining 2x2 diagonal blocks all have complex eigenvalues.
    seed : int
        Seed of the random shifts used to escape stagnation.
    max_stuck : float
        Budget of non-deflating iterations per window.

    Raises
    ------
    TypeError
        If ``Q`` or ``H`` is not a float64 ndarray.
    TooManyIterations
        If a window does not deflate within ``max_stuck`` iterations.

    Notes
    -----
    Subdiagonal entries judged negligible are set to exactly zero (NaN
    included). This rounding is lossy on purpose: it discards cancellation
    noise so that the block structure of the result is exact.
    """
    if not isinstance(Q, np.ndarray) or not isinstance(H, np.ndarray):
        raise TypeError("Q and H must be numpy arrays (they are modified in place)")
    if Q.dtype != np.float64 or H.dtype != np.float64:
        raise TypeError(
            f"Q and H must be float64 arrays (they are modified in place), "
            f"got {Q.dtype} and {H.dtype}"
        )
    check_square_batch(H, 'H')
    check_same_shape(Q, H, 'Q', 'H')

    for idx in np.ndindex(H.shape[:-2]):
        h = H[idx]
        q = Q[idx]
        # rotations act on the rows of Q.T
        qt = np.array(q.T, dtype=np.float64)
        _francis_qr(qt, h, seed, max_stuck)
        _resolve_real_blocks(qt, h)
        q[...] = qt.T


def _francis_qr(Q, H, seed, max_stuck):
    """
    Francis QR on the square (view) ``H`` accumulating row rotations into ``Q``.

    Sub-blocks isolated by deflation are handled by a nested call on a view
    of ``H`` with a fresh accumulator, whose result is then applied to the
    rest of ``H`` and to ``Q``.
    """
    n = H.shape[0]
    eps = np.finfo(np.float64).eps
    rng = np.random.default_rng(seed)

    def is_zero(i):
        # a NaN comparison is False, so NaN entries are zeroed as well
        if abs(H[i, i - 1]) > eps * (abs(H[i - 1, i - 1]) + abs(H[i, i])):
            return False
        H[i, i - 1] = 0.0
        return True

    def giv(i, j, c, s):
        apply_rows(H[:, max(0, i - 1):], i, j, c, s)
        apply_cols(H[:min(n, j + 2)], i, j, c, s)
        apply_rows(Q, i, j, c, s)

    def recurse(s, e):
        q = np.eye(e - s)
        _francis_qr(q, H[s:e, s:e], seed, max_stuck)
        Q[s:e] = q @ Q[s:e]
        H[s:e, e:] = q @ H[s:e, e:]
        H[:s, s:e] = H[:s, s:e] @ q.T

    stuck = 0
    start, end = 0, n

    while True:
        # DEFLATION
        done = False
        while not done:
            if end - start < 3:
                return
            if end - start < n >> 4:
                recurse(start, end)
                return

            if is_zero(start + 1):
                start += 1
            elif is_zero(end - 1):
                end -= 1
            elif is_zero(start + 2):
                start += 2
            elif is_zero(end - 2):
                end -= 2
            else:
                done = True

            # split off the smaller side of an interior deflation point
            mid = (start + end) >> 1
            for i in range(start + 3, end - 2):
                if not done:
                    break
                if is_zero(i):
                    done = False
                    if i > mid:
                        recurse(i, end)
                        end = i
                    else:
                        recurse(start, i)
                        start = i

            if not done:
                stuck = 0

        stuck += 1

        # SHIFT: eigenvalues of the trailing 2x2 block
        i, j = end - 2, end - 1
        tr = H[i, i] + H[j, j]
        det = H[i, i] * H[j, j] - H[i, j] * H[j, i]

        if tr * tr > 4 * det:
            # real eigenvalues: double shift by the one closer to H[j,j]
            sign = 1.0 if tr >= 0 else -1.0
            root = math.sqrt(tr * tr - 4 * det)
            ev1 = (tr + sign * root) / 2
            ev2 = 2 * det / (tr + sign * root)
            if abs(H[j, j] - ev1) > abs(H[j, j] - ev2):
                ev1 = ev2
            tr = 2 * ev1
            det = ev1 * ev1

        if stuck % STUCK_SHIFT_PERIOD == 0:
            if stuck > max_stuck:
                raise TooManyIterations(
                    f"Francis QR did not deflate window [{start}, {end}) "
                    f"after {stuck} iterations"
                )
            tr = abs(H[j, i]) + abs(H[i, end - 3])
            det = tr * tr
            tr *= rng.uniform(1.25, 1.75)
            logger.debug("random shift after %d iterations on window [%d, %d)", stuck, start, end)

        # FIRST COLUMN OF (H - s1*I) @ (H - s2*I)
        i, j, k = start, start + 1, start + 2
        a1 = H[i, i] * H[i, i] + H[i, j] * H[j, i] - tr * H[i, i] + det
        a2 = H[j, i] * (H[i, i] + H[j, j] - tr)
        a3 = H[j, i] * H[k, j]

        for row, a in ((j, a2), (k, a3)):
            if a != 0:
                c, s, a1 = givens_rotation(a1, a)
                giv(i, row, c, s)

        # BULGE CHASE: restore Hessenberg form
        for col in range(start, end - 2):
            i = col + 1
            for j in range(col + 2, min(end, col + 4)):
                if H[j, col] == 0:
                    continue
                c, s, _ = givens_rotation(H[i, col], H[j, col])
                giv(i, j, c, s)
                H[j, col] *= 0.0


def _resolve_real_blocks(Q, H):
    """Split 2x2 diagonal blocks with real eigenvalues into 1x1 blocks."""
    n = H.shape[0]
    for j in range(1, n):
        i = j - 1
        if H[j, i] == 0:
            continue

        H_ii, H_ij = H[i, i], H[i, j]
        H_ji, H_jj = H[j, i], H[j, j]

        # scaled so that the squares cannot overflow, H_ji != 0 here
        scale = max(abs(H_jj - H_ii), abs(H_ij), abs(H_ji))
        A = (H_jj - H_ii) / scale
        B = H_ij / scale
        ABC = A * A + 4 * B * (H_ji / scale)
        if ABC < 0:
            continue  # complex conjugate pair

        # angle solving  H_ji*cos^2 + A*sin*cos - H_ij*sin^2 = 0
        if H_ij == 0:
            c, s = 0.0, 1.0
        else:
            root = math.sqrt(ABC)
            T = A + root if A >= 0 else A - root
            R = 2 * B
            TR = math.hypot(T, R)
            s = (-T if R < 0 else T) / TR
            c = abs(R) / TR

        apply_rows(H[:, i:], i, j, c, s)
        apply_cols(H[:j + 1], i, j, c, s)
        apply_rows(Q, i, j, c, s)
        H[j, i] *= 0.0
