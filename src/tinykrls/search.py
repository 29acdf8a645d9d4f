"""
Selection of the regularization scalar by minimizing the leave-one-out error.
The search is a bounded, derivative-free Brent minimization over
``log10(regularization)``, since useful values can span many orders of
magnitude. When the minimizer doesn't converge, a coarse log-spaced grid is
evaluated and the best point seen anywhere is used instead.

At low approximation rank the leave-one-out surface can be monotone, in which
case the optimum collapses onto one end of the search interval. This is not
hidden: :class:`SearchResult` flags it with ``at_boundary`` and carries the
full trace of every evaluated point.
"""

from __future__ import annotations

__all__ = ["SearchConfig", "SearchResult", "search_regularization"]

import logging
import math
from typing import NamedTuple

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from scipy import optimize

from tinykrls.eigensolvers import Eigendecomposition
from tinykrls.errors import (
    InvalidParameterError,
    NumericOverflowError,
    SingularMatrixError,
)
from tinykrls.helpers import JAXArray
from tinykrls.loo import loo_error, loo_error_grid

logger = logging.getLogger(__name__)


class SearchConfig(eqx.Module):
    """The configuration for :func:`search_regularization`

    Args:
        lower: The smallest regularization considered. Must be positive.
        upper: The largest regularization considered.
        max_iterations: The iteration budget of the bounded minimizer.
        xatol: The absolute convergence tolerance in ``log10`` units.
        grid_size: The number of points in the fallback grid.
    """

    lower: float = 1e-8
    upper: float = 1e4
    max_iterations: int = 500
    xatol: float = 1e-4
    grid_size: int = 40

    def __check_init__(self):
        if not (0 < self.lower < self.upper) or not math.isfinite(self.upper):
            raise InvalidParameterError(
                "The search bounds must satisfy 0 < lower < upper < inf; "
                f"got [{self.lower}, {self.upper}]"
            )
        if self.max_iterations < 1:
            raise InvalidParameterError(
                f"max_iterations must be positive; got {self.max_iterations}"
            )
        if not self.xatol > 0:
            raise InvalidParameterError(f"xatol must be positive; got {self.xatol}")
        if self.grid_size < 2:
            raise InvalidParameterError(
                f"grid_size must be at least 2; got {self.grid_size}"
            )


class SearchResult(NamedTuple):
    """The result of a regularization search

    The trace arrays list every evaluated point in evaluation order, with
    ``inf`` for points where the leave-one-out error overflowed.
    """

    regularization: float
    """The selected regularization scalar"""

    loo_error: float
    """The leave-one-out error at ``regularization``"""

    converged: bool
    """``False`` if the minimizer failed and the grid fallback was used"""

    at_boundary: bool
    """``True`` if the optimum collapsed onto an end of the search interval"""

    trace_regularization: np.ndarray
    """The regularization value of every evaluated point"""

    trace_loo_error: np.ndarray
    """The leave-one-out error of every evaluated point"""


def search_regularization(
    y: JAXArray,
    decomposition: Eigendecomposition,
    config: SearchConfig | None = None,
    *,
    complement: bool = False,
) -> SearchResult:
    """Find the regularization that minimizes the leave-one-out error

    Args:
        y: The observed data with shape ``(n_data,)``.
        decomposition: The eigendecomposition of the kernel matrix.
        config: The search configuration. Defaults to :class:`SearchConfig`.
        complement: Passed to :func:`tinykrls.loo.loo_error`.

    Raises:
        NumericOverflowError: If every evaluated point overflowed.
    """
    if config is None:
        config = SearchConfig()
    log_lower = math.log10(config.lower)
    log_upper = math.log10(config.upper)
    trace: list[tuple[float, float]] = []

    def objective(log_regularization: float) -> float:
        regularization = 10.0 ** float(log_regularization)
        try:
            value = float(
                loo_error(y, decomposition, regularization, complement=complement)
            )
        except (NumericOverflowError, SingularMatrixError) as e:
            logger.debug("LOO error undefined at %.3e: %s", regularization, e)
            value = math.inf
        trace.append((regularization, value))
        return value

    result = optimize.minimize_scalar(
        objective,
        bounds=(log_lower, log_upper),
        method="bounded",
        options={"maxiter": config.max_iterations, "xatol": config.xatol},
    )
    converged = bool(result.success) and math.isfinite(float(result.fun))

    if not converged:
        if result.success:
            logger.warning(
                "Regularization search converged to a point where the "
                "leave-one-out error is not finite after %d evaluations; "
                "falling back to a %d point grid",
                len(trace),
                config.grid_size,
            )
        else:
            logger.warning(
                "Regularization search did not converge after %d evaluations "
                "(%s); falling back to a %d point grid",
                len(trace),
                result.message,
                config.grid_size,
            )
        grid = np.logspace(log_lower, log_upper, config.grid_size)
        values = np.asarray(
            loo_error_grid(y, decomposition, jnp.asarray(grid), complement=complement)
        )
        trace.extend(zip(grid.tolist(), values.tolist()))

    trace_regularization = np.array([point[0] for point in trace])
    trace_loo_error = np.array([point[1] for point in trace])
    finite = np.isfinite(trace_loo_error)
    if not np.any(finite):
        raise NumericOverflowError(
            f"The leave-one-out error overflowed at all {len(trace)} evaluated "
            "regularization values"
        )
    best = int(np.argmin(np.where(finite, trace_loo_error, np.inf)))
    regularization = float(trace_regularization[best])

    log_best = math.log10(regularization)
    margin = max(10 * config.xatol, 1e-3 * (log_upper - log_lower))
    at_boundary = log_best - log_lower <= margin or log_upper - log_best <= margin
    if at_boundary:
        logger.warning(
            "The leave-one-out optimum %.3e collapsed onto the search boundary "
            "[%.1e, %.1e]; inspect the search trace",
            regularization,
            config.lower,
            config.upper,
        )
    logger.debug(
        "Selected regularization %.6e with LOO error %.6e after %d evaluations",
        regularization,
        trace_loo_error[best],
        len(trace),
    )

    return SearchResult(
        regularization=regularization,
        loo_error=float(trace_loo_error[best]),
        converged=converged,
        at_boundary=at_boundary,
        trace_regularization=trace_regularization,
        trace_loo_error=trace_loo_error,
    )
