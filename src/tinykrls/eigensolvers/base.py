from __future__ import annotations

__all__ = ["Eigendecomposition", "EigenSolver", "check_spectrum"]

import logging
import numbers
from abc import abstractmethod
from typing import Any

import equinox as eqx
import jax.numpy as jnp

from tinykrls.errors import InvalidParameterError, UnstableDecompositionError
from tinykrls.helpers import JAXArray, default_tolerance

logger = logging.getLogger(__name__)


class Eigendecomposition(eqx.Module):
    """The leading eigenpairs of a symmetric positive semi-definite matrix

    Args:
        vectors: The eigenvectors as the columns of an ``(n_data, rank)``
            array with orthonormal columns.
        values: The eigenvalues, with shape ``(rank,)``, sorted in descending
            order. These are the eigenvalues of the matrix itself, *not* their
            squares or singular values of a factor.
    """

    vectors: JAXArray
    values: JAXArray

    @property
    def rank(self) -> int:
        return self.values.shape[0]

    @property
    def num_data(self) -> int:
        return self.vectors.shape[0]

    def reconstruct(self) -> JAXArray:
        """The dense low-rank approximation ``U diag(values) U^T``"""
        return (self.vectors * self.values) @ self.vectors.T

    def truncate(self, rank: int) -> Eigendecomposition:
        """Keep only the leading ``rank`` eigenpairs"""
        _check_rank(rank, self.rank)
        return Eigendecomposition(self.vectors[:, :rank], self.values[:rank])


class EigenSolver(eqx.Module):
    """The interface shared by all eigensolvers

    Subclasses implement :func:`EigenSolver.solve` and users call
    :func:`EigenSolver.decompose`, which validates the rank and checks the
    returned spectrum.
    """

    rtol: float | None = eqx.field(default=None, static=True)

    def decompose(self, matrix: Any, rank: int) -> Eigendecomposition:
        """Compute the leading ``rank`` eigenpairs of ``matrix``

        Args:
            matrix: A dense symmetric array, or any object with ``shape``,
                ``dtype`` and ``@`` that represents a symmetric matrix (for
                example a :class:`tinykrls.kernels.KernelMatrix`).
            rank: The number of eigenpairs, between 1 and the matrix size.
        """
        shape = tuple(matrix.shape)
        if len(shape) != 2 or shape[0] != shape[1]:
            raise InvalidParameterError(
                f"Expected a square matrix; got shape {shape}"
            )
        _check_rank(rank, shape[0])
        if not hasattr(matrix, "to_dense"):
            matrix = jnp.asarray(matrix)
        decomposition = self.solve(matrix, rank)
        return check_spectrum(matrix, decomposition, rtol=self.rtol)

    @abstractmethod
    def solve(self, matrix: Any, rank: int) -> Eigendecomposition:
        raise NotImplementedError


def check_spectrum(
    matrix: Any, decomposition: Eigendecomposition, *, rtol: float | None = None
) -> Eigendecomposition:
    """Check that a decomposition is a valid PSD spectrum of ``matrix``

    Two conditions are enforced, both relative to the largest eigenvalue
    magnitude:

    1. No eigenvalue may be more negative than ``-rtol``. Negative values
       within that tolerance are rounding noise and are set to zero.
    2. The Rayleigh quotient ``u_i^T A u_i`` of each eigenvector must
       reproduce its eigenvalue. Squared eigenvalues, singular values of a
       factor, or any other transform of the spectrum fail this check.

    Args:
        matrix: The decomposed matrix, dense or implicit.
        decomposition: The candidate eigendecomposition.
        rtol: The relative tolerance. Defaults to the square root of machine
            epsilon for the dtype of the eigenvalues.

    Returns:
        The decomposition, with in-tolerance negative eigenvalues set to zero.

    Raises:
        UnstableDecompositionError: If either condition fails.
    """
    values = decomposition.values
    if not bool(jnp.all(jnp.isfinite(values))):
        raise UnstableDecompositionError("The decomposition has non-finite eigenvalues")
    if rtol is None:
        rtol = float(default_tolerance(values))
    scale = float(jnp.max(jnp.abs(values)))
    tol = rtol * max(scale, 1.0)

    smallest = float(jnp.min(values))
    if smallest < -tol:
        raise UnstableDecompositionError(
            f"Found a negative eigenvalue ({smallest:.3e}) beyond the tolerance "
            f"{tol:.3e}; the matrix is not positive semi-definite"
        )

    rayleigh = jnp.sum(decomposition.vectors * (matrix @ decomposition.vectors), axis=0)
    mismatch = float(jnp.max(jnp.abs(rayleigh - values)))
    if mismatch > tol:
        raise UnstableDecompositionError(
            "The eigenvalues are not on the scale of the decomposed matrix "
            f"(max |u^T A u - value| = {mismatch:.3e}, tolerance {tol:.3e})"
        )

    logger.debug(
        "Accepted rank %d spectrum in [%.3e, %.3e]",
        decomposition.rank,
        smallest,
        scale,
    )
    return Eigendecomposition(decomposition.vectors, jnp.maximum(values, 0))


def _check_rank(rank: int, size: int) -> None:
    if (
        isinstance(rank, bool)
        or not isinstance(rank, numbers.Integral)
        or not 1 <= rank <= size
    ):
        raise InvalidParameterError(
            f"The rank must be an integer in [1, {size}]; got {rank}"
        )
