"""
Trust-region solver selection.

Provides a unified interface for the structured ODR (one response per sample)
and TLS (several responses per sample) solvers.
"""

import numpy as np
import scipy

from .base import TrustRegionSolverBase, SolverReport, ReportState
from .odr_solver import TrustRegionSolverODR
from .tls_solver import TrustRegionSolverTLS


def get_trust_region_solver(fgg, p0, dx0, solver: str = 'auto') -> TrustRegionSolverBase:
    """
    Get trust-region solver.

    Parameters
    ----------
    fgg : callable
        ``fgg(p, dx) -> (dy, dy_dp, dy_dx)``.
    p0 : array_like, shape (NP,)
        Initial parameters.
    dx0 : array_like, shape (MX,) or (MX, NX)
        Initial perturbations.
    solver : str
        Solver selection:
        - 'auto': ODR for one response per sample, TLS otherwise
          (costs one extra evaluation of ``fgg``)
        - 'odr': Force ODR (requires one response per sample)
        - 'tls': Force TLS

    Returns
    -------
    TrustRegionSolverBase
        Solver committed to ``(p0, dx0)``.

    Examples
    --------
    >>> solver = get_trust_region_solver(fgg, p0, dx0)
    >>> solver.compute_newton()
    >>> predicted, actual = solver.consider_move(solver.newton_dX)
    """

    if solver == 'auto':
        dy = np.asarray(fgg(np.array(p0, dtype=np.float64), np.array(dx0, dtype=np.float64))[0])
        if dy.ndim == 1 or (dy.ndim == 2 and dy.shape[1] == 1):
            return TrustRegionSolverODR(fgg, p0, dx0)
        return TrustRegionSolverTLS(fgg, p0, dx0)

    elif solver == 'odr':
        return TrustRegionSolverODR(fgg, p0, dx0)

    elif solver == 'tls':
        return TrustRegionSolverTLS(fgg, p0, dx0)

    else:
        raise ValueError(
            f"Unknown solver: '{solver}'\n"
            f"Valid options: 'auto', 'odr', 'tls'"
        )


def list_available_solvers() -> list:
    """List names of available solvers."""
    return ['odr', 'tls']


def print_solver_info():
    """Print solver overview (diagnostic)."""
    print("pyndla Trust-Region Solvers")
    print("=" * 50)
    print(f"\nAvailable Solvers:")
    print(f"  ODR: one response per sample    - rotations vectorized over samples")
    print(f"  TLS: NY responses per sample    - per-sample QR compression if NY > NX")
    print(f"\nShared:")
    print(f"  Dense parameter block: rank-revealing QR (LAPACK, column pivoting)")
    print(f"  Rank-deficient steps:  minimum D-norm solution")

    print(f"\nLibraries:")
    print(f"  numpy {np.__version__}")
    print(f"  scipy {scipy.__version__}")


__all__ = [
    'get_trust_region_solver',
    'list_available_solvers',
    'print_solver_info',
    'TrustRegionSolverBase',
    'TrustRegionSolverODR',
    'TrustRegionSolverTLS',
    'SolverReport',
    'ReportState',
]


if __name__ == "__main__":
    print_solver_info()
