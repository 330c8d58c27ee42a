"""
pyndla: real Schur decomposition and structured trust-region solvers for
orthogonal distance regression.
"""

__version__ = "1.0.0"

# Import main user-facing API
from .schur import hessenberg_decomp, schur_decomp, schur_eigenvals, schur_eigen, eig
from .odr import fit_odr, ODRModel, fit_lm, odr_residuals

# Import solver utilities (for advanced users)
from ._solvers import (
    get_trust_region_solver,
    list_available_solvers,
    TrustRegionSolverODR,
    TrustRegionSolverTLS,
)
from .errors import (
    PyndlaError,
    ShapeMismatch,
    InvalidSchurForm,
    SingularSparseBlock,
    TooManyIterations,
    ReportStateError,
    OptimizationNoProgressError,
)

__all__ = [
    'hessenberg_decomp',
    'schur_decomp',
    'schur_eigenvals',
    'schur_eigen',
    'eig',
    'fit_odr',
    'ODRModel',
    'fit_lm',
    'odr_residuals',
    'get_trust_region_solver',
    'list_available_solvers',
    'TrustRegionSolverODR',
    'TrustRegionSolverTLS',
    'PyndlaError',
    'ShapeMismatch',
    'InvalidSchurForm',
    'SingularSparseBlock',
    'TooManyIterations',
    'ReportStateError',
    'OptimizationNoProgressError',
]
