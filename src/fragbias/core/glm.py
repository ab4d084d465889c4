"""Poisson regression with a log link and fixed offsets.

Fitting uses iteratively reweighted least squares, the same scheme as R's
``glm.fit``: start from ``mu = y + 0.1``, then repeatedly solve the weighted
normal equations until the relative change in deviance drops below ``tol``.

Example:
    >>> fit = fit_poisson(X, counts, offset=np.log(fraglen_density))
    >>> fit.coefficients, fit.std_errors
"""

from __future__ import annotations

import logging

import attrs
import numpy as np

from fragbias.errors import InsufficientDataError, RankDeficientError

logger = logging.getLogger(__name__)

# Linear predictor clamp, keeps exp() finite
ETA_MAX = 700.0


@attrs.define(frozen=True)
class PoissonFit:
    """Result of a Poisson IRLS fit.

    Attributes:
        coefficients: Estimated coefficients, one per design column.
        std_errors: Standard errors from the inverse Fisher information.
        deviance: Residual deviance at convergence.
        iterations: IRLS iterations performed.
        converged: Whether the deviance criterion was met.
    """

    coefficients: np.ndarray
    std_errors: np.ndarray
    deviance: float
    iterations: int
    converged: bool


def poisson_deviance(y: np.ndarray, mu: np.ndarray) -> float:
    """Poisson deviance 2 * sum(y log(y/mu) - (y - mu))."""
    with np.errstate(divide="ignore", invalid="ignore"):
        term = np.where(y > 0, y * np.log(y / mu), 0.0)
    return float(2.0 * np.sum(term - (y - mu)))


def check_rank(X: np.ndarray) -> None:
    """Raise RankDeficientError if X does not have full column rank."""
    n, p = X.shape
    if n < p:
        raise RankDeficientError(
            f"Design matrix has {n} rows for {p} columns", rank=n, n_columns=p
        )
    rank = int(np.linalg.matrix_rank(X))
    if rank < p:
        raise RankDeficientError(
            f"Design matrix is rank deficient (rank {rank} < {p} columns)",
            rank=rank,
            n_columns=p,
        )


def fit_poisson(
    X: np.ndarray,
    y: np.ndarray,
    offset: np.ndarray | None = None,
    max_iter: int = 50,
    tol: float = 1e-8,
) -> PoissonFit:
    """Fit log(E[y]) = X @ beta + offset by IRLS.

    Args:
        X: Design matrix (n, p).
        y: Non-negative counts (n,).
        offset: Fixed offset added to the linear predictor, or None.
        max_iter: Iteration cap.
        tol: Relative deviance change declaring convergence.

    Returns:
        PoissonFit with coefficients and standard errors.

    Raises:
        RankDeficientError: If X is not of full column rank.
        InsufficientDataError: If there are no rows or no positive counts.
    """
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    n, p = X.shape
    if n == 0 or not np.any(y > 0):
        raise InsufficientDataError("Poisson fit needs at least one positive count")
    offset = np.zeros(n) if offset is None else np.asarray(offset, dtype=np.float64)

    check_rank(X)

    mu = y + 0.1
    eta = np.log(mu)
    deviance = poisson_deviance(y, mu)
    beta = np.zeros(p)
    converged = False
    iteration = 0

    for iteration in range(1, max_iter + 1):
        z = eta - offset + (y - mu) / mu
        w = mu
        XtW = X.T * w
        try:
            beta = np.linalg.solve(XtW @ X, XtW @ z)
        except np.linalg.LinAlgError as e:
            raise RankDeficientError(
                f"Weighted normal equations are singular: {e}", rank=-1, n_columns=p
            ) from e

        eta = np.clip(X @ beta + offset, -ETA_MAX, ETA_MAX)
        mu = np.exp(eta)
        new_deviance = poisson_deviance(y, mu)
        if abs(new_deviance - deviance) / (abs(new_deviance) + 0.1) < tol:
            deviance = new_deviance
            converged = True
            break
        deviance = new_deviance

    if not converged:
        logger.warning(f"IRLS did not converge after {max_iter} iterations")

    XtW = X.T * mu
    try:
        covariance = np.linalg.inv(XtW @ X)
        std_errors = np.sqrt(np.clip(np.diag(covariance), 0.0, None))
    except np.linalg.LinAlgError:
        std_errors = np.full(p, np.nan)

    return PoissonFit(
        coefficients=beta,
        std_errors=std_errors,
        deviance=deviance,
        iterations=iteration,
        converged=converged,
    )
