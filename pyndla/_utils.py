"""
Utility functions.
"""

import numpy as np

from .errors import ShapeMismatch


def check_square_batch(A, name='A', dtype=np.float64):
    """Validate a (batch of) square matrices of shape (..., N, N)."""
    A = np.asarray(A, dtype=dtype)
    if A.ndim < 2:
        raise ShapeMismatch(f"{name}.ndim must be at least 2, got {A.ndim}")
    if A.shape[-1] != A.shape[-2]:
        raise ShapeMismatch(f"{name} must be square in its last two dimensions, got shape {A.shape}")
    return A


def check_same_shape(A, B, name_a='Q', name_b='T'):
    """Validate that two arrays have identical shapes."""
    if A.shape != B.shape:
        raise ShapeMismatch(f"{name_a}.shape {A.shape} does not match {name_b}.shape {B.shape}")


def check_vector(y, name='y', dtype=np.float64):
    """Validate vector input."""
    y = np.array(y, dtype=dtype)
    if y.ndim != 1:
        raise ShapeMismatch(f"{name} must be 1-dimensional")
    return y


def check_samples(x, name='x', dtype=np.float64):
    """Validate per-sample input of shape (MX,) or (MX, NX)."""
    x = np.array(x, dtype=dtype)
    if x.ndim not in (1, 2):
        raise ShapeMismatch(f"{name}.ndim must be 1 or 2, got {x.ndim}")
    return x
