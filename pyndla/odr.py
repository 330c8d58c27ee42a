"""
Orthogonal distance regression with R-style interface and output.

Fits ``y ≈ f(p, x + dx)`` minimizing ``|dx|² + |f(p, x + dx) - y|²`` over the
parameters ``p`` and the perturbations ``dx`` of the independent variable,
driven by a Levenberg-Marquardt trust-region loop on top of the structured
solvers.
"""

import logging
import math
import warnings
from dataclasses import dataclass
from typing import Optional, List

import numpy as np
import pandas as pd

from ._solvers import get_trust_region_solver
from ._solvers.base import SolverReport
from ._utils import check_samples, check_vector
from .errors import ShapeMismatch

logger = logging.getLogger(__name__)


@dataclass
class LMResult:
    """Outcome of a Levenberg-Marquardt run."""
    report: SolverReport     # Evaluation at the final (committed) point
    status: set              # Subset of {'ftol', 'xtol', 'gtol', 'maxiter'}
    n_iter: int              # Number of accepted steps
    history: pd.DataFrame    # One row per trial step
    rank: int                # Numerical rank of the Jacobian at the final point


def odr_residuals(x, y, fg):
    """
    Build the ``fgg(p, dx)`` callback of the trust-region solvers from a per-sample model.

    Parameters
    ----------
    x : array_like, shape (MX,) or (MX, NX)
        Independent variable, one row per sample.
    y : array_like, shape (MX,) or (MX, NY)
        Observed responses.
    fg : callable
        ``fg(p)`` returns a function of one sample ``xi`` returning
        ``(f, df_dp, df_dx)``: the model value (scalar or (NY,)), its
        derivative w.r.t. ``p`` (trailing dimension NP) and w.r.t. ``xi``
        (trailing dimension NX if ``x`` is 2-D).

    Returns
    -------
    callable
        ``fgg(p, dx) -> (f(p, x + dx) - y, df_dp, df_dx)``.
    """
    x = check_samples(x, 'x')
    y = np.array(y, dtype=np.float64)
    if y.ndim not in (1, 2) or y.shape[0] != x.shape[0]:
        raise ShapeMismatch(f"y must have shape ({x.shape[0]},) or ({x.shape[0]}, NY), got {y.shape}")

    x_tail = x.shape[1:]

    def fgg(p, dx):
        model = fg(p)
        xs = x + dx

        f = np.empty(y.shape)
        df_dp = np.empty(y.shape + p.shape)
        df_dx = np.empty(y.shape + x_tail)

        for i in range(x.shape[0]):
            f[i], df_dp[i], df_dx[i] = model(xs[i])

        return f - y, df_dp, df_dx

    return fgg


def _lambda_search(solver, radius, lam, lambda_iter):
    """
    Damping whose regularized step has scaled length close to ``radius``.

    Newton iteration on ``1/r(λ)`` with a bracket ``[lower, upper]`` that
    shrinks as ``r(λ) - radius`` changes sign. The Gauss-Newton step is
    taken if it already lies (almost) within the trust region.

    Returns
    -------
    lam : float
    step : ndarray
    pnorm : float
        Scaled length of ``step``.
    """
    D = solver.D
    N = solver.N

    r, dr = solver.compute_newton_regularized(0.0)
    diff = r - radius
    if diff <= 0.1 * radius:
        return 0.0, solver.regularized_dX.copy(), r

    # Newton step of a full-rank Jacobian bounds the damping from below
    lower = 0.0
    if solver.rank == N:
        lower = -(diff / radius) * (r / dr)

    scaled = D != 0
    gnorm = np.linalg.norm(solver.G0[scaled] / D[scaled])
    upper = gnorm / radius
    if upper == 0:
        upper = np.finfo(np.float64).tiny / min(radius, 0.1)

    lam = min(max(lam, lower), upper)
    if lam == 0:
        lam = gnorm / r

    for count in range(lambda_iter):
        if lam == 0:
            lam = max(np.finfo(np.float64).tiny, 0.001 * upper)

        r, dr = solver.compute_newton_regularized(lam)
        old_diff = diff
        diff = r - radius
        logger.debug("lambda search: lam=%.6g r=%.6g radius=%.6g", lam, r, radius)

        if abs(diff) < 0.1 * radius:
            break
        if lower == 0 and diff <= old_diff and old_diff < 0:
            break
        if dr == 0:
            break

        if diff > 0:
            lower = max(lower, lam)
        elif diff < 0:
            upper = min(upper, lam)

        lam = max(lower, lam - (diff / radius) * (r / dr))

    return lam, solver.regularized_dX.copy(), r


def fit_lm(
    solver,
    max_iter: int = 256,
    ftol: float = 1e-10,
    xtol: float = 1e-10,
    gtol: float = 1e-10,
    max_rejections: int = 32,
    radius0: Optional[float] = None,
    lambda_iter: int = 10,
) -> LMResult:
    """
    Minimize the loss of a trust-region solver by Levenberg-Marquardt.

    MINPACK-style trust-region loop: the step is the regularized Newton step
    whose scaled length matches the trust radius; it is accepted if the
    actual reduction is at least 1e-4 of the predicted one. The radius is
    halved (or cut to a tenth) when the ratio is below 0.25 and set to twice
    the step length when it is above 0.75.

    Parameters
    ----------
    solver : TrustRegionSolverBase
        Freshly constructed solver (its report has not been drained yet).
    max_iter : int
        Maximum number of accepted steps.
    ftol : float
        Relative reduction of the loss (actual and predicted) that counts
        as converged.
    xtol : float
        Trust radius relative to the scaled norm of the iterate that counts
        as converged.
    gtol : float
        Maximum cosine between the residual and a Jacobian column that
        counts as converged.
    max_rejections : int
        Consecutive rejected steps after which ``solver.wiggle()`` is called.
    radius0 : float, optional
        Initial trust radius. Defaults to the scaled length of the first
        Newton step (1 if that is zero).
    lambda_iter : int
        Iteration limit of the damping search.

    Returns
    -------
    LMResult
    """
    report = solver.report()
    loss = report.loss

    status = set()
    history = []
    n_iter = 0
    n_rejections = 0
    lam = 0.0
    radius = radius0

    while True:
        # cosine between residual and Jacobian columns
        fnorm = math.sqrt(loss * solver.M)
        D = solver.D
        scaled = D != 0
        gnorm = 0.0
        if fnorm != 0 and np.any(scaled):
            gnorm = np.max(np.abs(solver.G0[scaled]) / D[scaled]) / fnorm
        if gnorm <= gtol:
            status.add('gtol')
            break

        if radius is None:
            solver.compute_newton()
            radius = solver.scaled_norm(solver.newton_dX)
            if radius == 0:
                radius = 1.0

        lam, step, pnorm = _lambda_search(solver, radius, lam, lambda_iter)
        predicted, actual = solver.consider_move(step)

        actred = -1.0
        if 0.1 * math.sqrt(actual) < math.sqrt(loss):
            actred = 1 - actual / loss
        prered = 1 - predicted / loss
        dirder = (solver.G0 @ step) / (fnorm * fnorm)

        ratio = 0.0
        if prered != 0:
            ratio = actred / prered

        if ratio <= 0.25:
            if actred >= 0:
                temp = 0.5
            else:
                temp = 0.5 * dirder / (dirder + 0.5 * actred)
            if 0.1 * math.sqrt(actual) >= math.sqrt(loss) or temp < 0.1:
                temp = 0.1
            radius = temp * min(radius, 10 * pnorm)
            lam /= temp
        elif lam == 0 or ratio >= 0.75:
            radius = 2 * pnorm
            lam *= 0.5

        accepted = ratio >= 1e-4
        history.append({
            'loss': loss,
            'trial_loss': actual,
            'predicted_loss': predicted,
            'ratio': ratio,
            'lambda': lam,
            'radius': radius,
            'accepted': accepted,
        })
        logger.debug(
            "LM trial: loss=%.6g trial=%.6g ratio=%.4g lambda=%.4g radius=%.4g",
            loss, actual, ratio, lam, radius
        )

        if accepted:
            solver.make_considered_move()
            report = solver.report()
            loss = report.loss
            n_iter += 1
            n_rejections = 0
        else:
            n_rejections += 1
            if n_rejections >= max_rejections:
                solver.wiggle()

        if abs(actred) <= ftol and prered <= ftol and ratio <= 2:
            status.add('ftol')
        if radius <= xtol * solver.scaled_norm(solver.X0):
            status.add('xtol')
        if n_iter >= max_iter:
            status.add('maxiter')
        if status:
            break

    if status == {'maxiter'}:
        warnings.warn(
            f"Levenberg-Marquardt did not converge within {max_iter} iterations "
            f"(loss {loss:.6g})"
        )

    solver.compute_newton()
    if solver.rank < solver.N:
        warnings.warn(
            f"Jacobian is rank deficient at the solution "
            f"(rank {solver.rank} of {solver.N}); parameters are not identifiable"
        )

    return LMResult(
        report=report,
        status=status,
        n_iter=n_iter,
        history=pd.DataFrame(history, columns=[
            'loss', 'trial_loss', 'predicted_loss', 'ratio', 'lambda', 'radius', 'accepted'
        ]),
        rank=solver.rank,
    )


class ODRModel:
    """
    Fit a nonlinear model by orthogonal distance regression.

    Examples
    --------
    >>> import numpy as np
    >>> from pyndla import fit_odr
    >>>
    >>> # Straight line y = a + b*x
    >>> def fg(p):
    ...     a, b = p
    ...     return lambda xi: (a + b*xi, np.array([1.0, xi]), b)
    >>>
    >>> x = np.linspace(0, 1, 20)
    >>> y = 1.0 + 2.0*x
    >>> model = fit_odr(x, y, fg, p0=[0.0, 1.0], param_names=['a', 'b'])
    >>> model.summary()
    >>> model.params        # Named parameters
    >>> model.dx            # Fitted perturbations of x
    """

    def __init__(
        self,
        x,
        y,
        fg,
        p0,
        dx0=None,
        solver: str = 'auto',
        param_names: Optional[List[str]] = None,
        **kwargs
    ):
        """
        Fit orthogonal distance regression model.

        Parameters
        ----------
        x : array_like, shape (MX,) or (MX, NX)
            Independent variable.
        y : array_like, shape (MX,) or (MX, NY)
            Observed responses.
        fg : callable
            Per-sample model, see ``odr_residuals``.
        p0 : array_like, shape (NP,)
            Initial parameters.
        dx0 : array_like, optional
            Initial perturbations (default: zeros).
        solver : str
            Trust-region solver: 'auto', 'odr', 'tls'
        param_names : list of str, optional
            Names of the parameters (default: p0, p1, ...).
        **kwargs
            Options of ``fit_lm``.
        """
        self.x = check_samples(x, 'x')
        self.y = np.array(y, dtype=np.float64)
        self.fg = fg

        p0 = check_vector(p0, 'p0')
        if dx0 is None:
            dx0 = np.zeros_like(self.x)
        dx0 = check_samples(dx0, 'dx0')
        if dx0.shape != self.x.shape:
            raise ShapeMismatch(f"dx0.shape {dx0.shape} does not match x.shape {self.x.shape}")

        if param_names is None:
            param_names = [f'p{i}' for i in range(p0.shape[0])]
        elif len(param_names) != p0.shape[0]:
            raise ValueError(
                f"param_names has {len(param_names)} entries, expected {p0.shape[0]}"
            )
        self.param_names = list(param_names)

        self.n_obs = self.x.shape[0]
        self.n_params = p0.shape[0]

        fgg = odr_residuals(self.x, self.y, fg)
        self.solver = get_trust_region_solver(fgg, p0, dx0, solver=solver)
        self._lm_result = fit_lm(self.solver, **kwargs)

        report = self._lm_result.report
        self.coefficients = report.p
        self.dx = report.dx
        self.residuals = report.dy
        self.loss = report.loss
        self.gradient = report.dloss_dp
        self.status = self._lm_result.status
        self.n_iter = self._lm_result.n_iter
        self.history = self._lm_result.history
        self.rank = self._lm_result.rank

    @property
    def params(self):
        """Named parameters (pandas Series)."""
        return pd.Series(self.coefficients, index=self.param_names)

    @property
    def converged(self) -> bool:
        return bool(self.status - {'maxiter'})

    def predict(self, x_new) -> np.ndarray:
        """
        Evaluate the fitted model at new samples.

        Parameters
        ----------
        x_new : array_like, shape (K,) or (K, NX)

        Returns
        -------
        ndarray
            Model values, one per sample.
        """
        x_new = check_samples(x_new, 'x_new')
        model = self.fg(self.coefficients)
        return np.array([model(xi)[0] for xi in x_new])

    def summary(self):
        """Print summary of the fit."""
        print()
        print("="*80)
        print("ORTHOGONAL DISTANCE REGRESSION RESULTS")
        print("="*80)
        print()

        print(f"Number of observations: {self.n_obs}")
        print(f"Number of parameters:   {self.n_params}")
        print(f"Solver:                 {self.solver.name}")
        print(f"Iterations:             {self.n_iter}")
        print(f"Status:                 {', '.join(sorted(self.status))}")
        print()

        print("Residuals (response):")
        residual_summary = pd.Series(np.ravel(self.residuals)).describe()
        print(f"  Min:    {residual_summary['min']:>10.4g}")
        print(f"  1Q:     {residual_summary['25%']:>10.4g}")
        print(f"  Median: {residual_summary['50%']:>10.4g}")
        print(f"  3Q:     {residual_summary['75%']:>10.4g}")
        print(f"  Max:    {residual_summary['max']:>10.4g}")
        print()

        print("Parameters:")
        print("-"*80)
        print(f"{'Parameter':<20} {'Estimate':>14} {'dLoss/dp':>14}")
        print("-"*80)
        for name, value, grad in zip(self.param_names, self.coefficients, self.gradient):
            print(f"{name:<20} {value:>14.6g} {grad:>14.4e}")
        print("-"*80)
        print()

        print(f"Loss (mean squared distance): {self.loss:.6g}")
        print(f"Jacobian rank:                {self.rank} of {self.solver.N}")
        print("="*80)
        print()

    def __repr__(self):
        return f"ODRModel(n={self.n_obs}, p={self.n_params}, loss={self.loss:.3g})"


def fit_odr(x, y, fg, p0, dx0=None, **kwargs):
    """
    Fit orthogonal distance regression model (convenience function).

    Parameters
    ----------
    x : array_like
        Independent variable, one row per sample.
    y : array_like
        Observed responses.
    fg : callable
        Per-sample model ``fg(p)(xi) -> (f, df_dp, df_dx)``.
    p0 : array_like
        Initial parameters.
    dx0 : array_like, optional
        Initial perturbations.
    **kwargs
        Additional arguments passed to ODRModel

    Returns
    -------
    ODRModel
        Fitted model object

    Examples
    --------
    >>> model = fit_odr(x, y, fg, p0=[0.0, 1.0], param_names=['a', 'b'])
    >>> model.summary()
    >>>
    >>> # Get parameters
    >>> model.params
    >>>
    >>> # Fitted perturbations
    >>> model.dx
    """
    return ODRModel(x, y, fg, p0, dx0=dx0, **kwargs)


__all__ = [
    'odr_residuals',
    'fit_lm',
    'LMResult',
    'ODRModel',
    'fit_odr',
]
