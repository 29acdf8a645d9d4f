from __future__ import annotations

__all__ = ["ExactEigenSolver"]

import logging
from typing import Any

import jax
import jax.numpy as jnp

from tinykrls.eigensolvers.base import EigenSolver, Eigendecomposition
from tinykrls.helpers import JAXArray

logger = logging.getLogger(__name__)


class ExactEigenSolver(EigenSolver):
    """A dense solver that uses ``jax``'s built in symmetric eigendecomposition

    Implicit matrices are materialized first, so this should only be used when
    the full matrix fits comfortably in memory.
    """

    def solve(self, matrix: Any, rank: int) -> Eigendecomposition:
        if hasattr(matrix, "to_dense"):
            logger.warning(
                "Materializing a %d x %d implicit matrix for an exact "
                "eigendecomposition",
                *matrix.shape,
            )
            matrix = matrix.to_dense()
        values, vectors = _leading_eigh(jnp.asarray(matrix), rank)
        return Eigendecomposition(vectors, values)


@jax.jit
def _sorted_eigh(matrix: JAXArray) -> tuple[JAXArray, JAXArray]:
    # eigh returns ascending eigenvalues; flip them to descending order
    values, vectors = jnp.linalg.eigh(0.5 * (matrix + matrix.T))
    return values[::-1], vectors[:, ::-1]


def _leading_eigh(matrix: JAXArray, rank: int) -> tuple[JAXArray, JAXArray]:
    values, vectors = _sorted_eigh(matrix)
    return values[:rank], vectors[:, :rank]
