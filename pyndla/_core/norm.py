"""
Overflow-safe Euclidean/Frobenius norms.
"""

import numpy as np


def stable_norm(a, axis=None):
    """
    Frobenius norm computed as a scaled sum of squares.

    Entries are divided by the largest magnitude before squaring, so the
    result neither overflows nor underflows for finite input. NaN entries
    yield NaN and infinite entries yield ``inf``.

    Parameters
    ----------
    a : array_like
        Real or complex values.
    axis : int, optional
        Reduce along this axis only (e.g. ``axis=0`` for column norms).

    Returns
    -------
    float or ndarray
    """
    a = np.abs(np.asarray(a))
    if a.size == 0:
        return np.sum(a, axis=axis)

    scale = np.max(a, axis=axis, keepdims=True)
    with np.errstate(invalid='ignore', divide='ignore', over='ignore'):
        ratio = np.where(scale > 0, a / scale, 0.0)
        result = scale * np.sqrt(np.sum(ratio * ratio, axis=axis, keepdims=True))
    result = np.where(np.isfinite(scale), result, scale)

    if axis is None:
        return float(result.reshape(()))
    return np.squeeze(result, axis=axis)
