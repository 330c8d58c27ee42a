"""
Exception types.

Every error raised on purpose by pyndla derives from ``PyndlaError`` and from
the builtin/numpy exception a caller would naturally catch for that kind of
failure (``ValueError`` for bad input, ``LinAlgError`` for numerical failure).
"""

from numpy.linalg import LinAlgError


class PyndlaError(Exception):
    """Base class for all pyndla errors."""


class ShapeMismatch(PyndlaError, ValueError):
    """Array shapes of inputs or of callback outputs are inconsistent."""


class InvalidSchurForm(PyndlaError, ValueError):
    """
    A matrix is not in real Schur (quasi-triangular) form.

    Raised when a 2x2 diagonal block has a non-negative discriminant, i.e.
    its real eigenvalues should have been deflated into two 1x1 blocks.
    """


class SingularSparseBlock(PyndlaError, LinAlgError):
    """The block-diagonal (J11, J21) part of a trust-region Jacobian is singular."""


class TooManyIterations(PyndlaError, LinAlgError):
    """Francis QR failed to deflate a window within the iteration budget."""


class ReportStateError(PyndlaError, AssertionError):
    """
    A trust-region solver was driven out of protocol.

    ``report()`` is only valid directly after ``make_considered_move()`` and
    ``make_considered_move()`` only after ``consider_move()``.
    """


class OptimizationNoProgressError(PyndlaError, RuntimeError):
    """An optimizer made no progress for too many iterations."""
