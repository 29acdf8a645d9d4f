"""
Tools for studying how the approximation rank affects a KRLS fit. A
:class:`Decompositions` object maps integer ranks to eigendecompositions of a
single kernel matrix, computing each one the first time it is requested, and
:func:`rank_sweep` uses it to evaluate the leave-one-out error across ranks.

The leave-one-out error is expected to decrease as the rank grows towards
``n_data``, but at low rank this doesn't always hold, so
:func:`monotonicity_violations` reports the offending ranks rather than
asserting anything.
"""

from __future__ import annotations

__all__ = [
    "Decompositions",
    "SweepPoint",
    "rank_sweep",
    "monotonicity_violations",
]

import logging
import math
import numbers
from collections.abc import Iterable, Iterator, Mapping
from typing import Any, Callable, NamedTuple

from tinykrls.eigensolvers import EigenSolver, Eigendecomposition, ExactEigenSolver
from tinykrls.errors import NumericOverflowError, SingularMatrixError
from tinykrls.helpers import JAXArray
from tinykrls.kernels import Gaussian, default_bandwidth
from tinykrls.krls import (
    KRLSConfig,
    check_data,
    eigensolver,
    is_automatic,
    kernel_matrix,
    resolve_rank,
)
from tinykrls.loo import loo_error
from tinykrls.preprocessing import Standardizer
from tinykrls.search import SearchResult, search_regularization

logger = logging.getLogger(__name__)


class Decompositions(Mapping[int, Eigendecomposition]):
    """A lazily populated mapping from rank to eigendecomposition

    Args:
        matrix: The symmetric matrix to decompose, dense or implicit.
        solver: Either an :class:`tinykrls.eigensolvers.EigenSolver`, or a
            callable that takes a rank and returns the solver to use for it.

    The keys are every valid rank, ``1`` through ``n_data``, but a
    decomposition is only computed the first time its rank is looked up.
    :attr:`computed` lists the ranks that are cached. Exact decompositions
    are nested, so a rank below a cached exact one is served by truncating
    it rather than by solving again.
    """

    def __init__(
        self,
        matrix: Any,
        solver: EigenSolver | Callable[[int], EigenSolver],
    ):
        self._matrix = matrix
        self._solver = solver
        self._size = int(matrix.shape[0])
        self._cache: dict[int, Eigendecomposition] = {}
        self._exact: set[int] = set()

    @property
    def computed(self) -> list[int]:
        return sorted(self._cache)

    def __getitem__(self, rank: int) -> Eigendecomposition:
        if rank not in self:
            raise KeyError(rank)
        rank = int(rank)
        if rank in self._cache:
            return self._cache[rank]

        larger = [r for r in self._exact if r > rank]
        if larger:
            source = min(larger)
            logger.debug("Truncating the exact rank %d decomposition", source)
            self._cache[rank] = self._cache[source].truncate(rank)
            self._exact.add(rank)
            return self._cache[rank]

        solver = self._solver
        if not isinstance(solver, EigenSolver):
            solver = solver(rank)
        logger.debug("Computing rank %d decomposition", rank)
        self._cache[rank] = solver.decompose(self._matrix, rank)
        if isinstance(solver, ExactEigenSolver):
            self._exact.add(rank)
        return self._cache[rank]

    def __contains__(self, rank: object) -> bool:
        if isinstance(rank, bool) or not isinstance(rank, numbers.Integral):
            return False
        return 1 <= rank <= self._size

    def __iter__(self) -> Iterator[int]:
        return iter(range(1, self._size + 1))

    def __len__(self) -> int:
        return self._size


class SweepPoint(NamedTuple):
    """The leave-one-out result at one rank of a sweep"""

    rank: int
    regularization: float
    loo_error: float
    at_boundary: bool
    search: SearchResult | None


def rank_sweep(
    X: JAXArray,
    y: JAXArray,
    ranks: Iterable[int],
    config: KRLSConfig | None = None,
) -> dict[int, SweepPoint]:
    """Evaluate the leave-one-out error of a KRLS fit at several ranks

    The data are standardized and the kernel is built once; each rank then
    gets its own decomposition. If ``config.regularization`` is fixed, the
    leave-one-out error is evaluated there, otherwise it is searched per rank.
    Unlike :func:`tinykrls.krls.fit_krls`, a fixed regularization whose
    leave-one-out error overflows at some rank doesn't abort the sweep: a
    warning is logged and the point is recorded as ``inf``.

    Args:
        X: The covariates with shape ``(n_data, n_dim)``.
        y: The response with shape ``(n_data,)``.
        ranks: The ranks to evaluate.
        config: The fit configuration; ``config.rank`` is ignored.

    Returns:
        A dictionary mapping each rank (in increasing order) to a
        :class:`SweepPoint`.
    """
    if config is None:
        config = KRLSConfig()
    X, y = check_data(X, y)
    num_data = X.shape[0]
    ranks = sorted({resolve_rank(rank, num_data) for rank in ranks})

    Xs = Standardizer.fit(X, enabled=config.standardize).transform(X)
    ys = Standardizer.fit(y, enabled=config.standardize).transform(y)
    if is_automatic(config.bandwidth, "auto"):
        kernel = Gaussian(default_bandwidth(Xs))
    else:
        kernel = Gaussian(float(config.bandwidth))

    decompositions = Decompositions(
        kernel_matrix(kernel, Xs, config),
        lambda rank: eigensolver(config, num_data, rank),
    )

    # Exact decompositions at lower ranks are truncated from the largest one
    if ranks:
        decompositions[ranks[-1]]

    results = {}
    for rank in ranks:
        decomposition = decompositions[rank]
        if is_automatic(config.regularization, "search"):
            search = search_regularization(
                ys, decomposition, config.search, complement=config.complement
            )
            results[rank] = SweepPoint(
                rank,
                search.regularization,
                search.loo_error,
                search.at_boundary,
                search,
            )
        else:
            regularization = float(config.regularization)
            try:
                value = float(
                    loo_error(
                        ys,
                        decomposition,
                        regularization,
                        complement=config.complement,
                    )
                )
            except (NumericOverflowError, SingularMatrixError) as e:
                logger.warning(
                    "The leave-one-out error at rank %d is undefined; recording "
                    "inf: %s",
                    rank,
                    e,
                )
                value = math.inf
            results[rank] = SweepPoint(rank, regularization, value, False, None)
        logger.debug(
            "rank=%d regularization=%.4g loo_error=%.4g",
            rank,
            results[rank].regularization,
            results[rank].loo_error,
        )
    return results


def monotonicity_violations(
    results: Mapping[int, SweepPoint], *, rtol: float = 0.0
) -> list[tuple[int, int]]:
    """Find consecutive ranks where the leave-one-out error increased

    Args:
        results: The output of :func:`rank_sweep`.
        rtol: The relative increase that is tolerated before reporting.

    Returns:
        A list of ``(lower_rank, higher_rank)`` pairs.
    """
    ranks = sorted(results)
    violations = []
    for low, high in zip(ranks[:-1], ranks[1:]):
        if results[high].loo_error > results[low].loo_error * (1 + rtol):
            violations.append((low, high))
    if violations:
        logger.warning("The leave-one-out error increased with rank at %s", violations)
    return violations
