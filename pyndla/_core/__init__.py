"""Core numerical kernels."""

from .givens import givens_rotation, givens_rotations, apply_rows, apply_cols
from .norm import stable_norm
from .qr import RRQRDecomposition, rrqr_decompose_inplace, triu_solve, triu_transpose_solve
from .francis import francis_qr_inplace
from .schur_eigen import schur_eigenvals, schur_eigen

__all__ = [
    'givens_rotation',
    'givens_rotations',
    'apply_rows',
    'apply_cols',
    'stable_norm',
    'RRQRDecomposition',
    'rrqr_decompose_inplace',
    'triu_solve',
    'triu_transpose_solve',
    'francis_qr_inplace',
    'schur_eigenvals',
    'schur_eigen',
]
