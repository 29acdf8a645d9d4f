r"""
A randomized eigensolver for symmetric positive semi-definite matrices,
following the range finder with subspace iteration of Halko, Martinsson &
Tropp (2011). Given a target rank :math:`k` and an oversampling :math:`p`, the
algorithm

1. draws a Gaussian test matrix :math:`\Omega` with :math:`k + p` columns,
2. finds an orthonormal basis :math:`Q` for the range of :math:`A\,\Omega`,
   refined by a few rounds of :math:`Q \leftarrow \mathrm{qr}(A\,Q)`,
3. solves the small symmetric problem :math:`B = Q^T A\,Q = V\,\Lambda\,V^T`,
4. returns :math:`U = Q\,V` with the leading :math:`k` eigenvalues.

Since :math:`\Lambda` comes from an *eigen*decomposition of the projected
matrix (and not from an SVD of a sketch), the eigenvalues are directly on the
scale of :math:`A`.
"""

from __future__ import annotations

__all__ = ["RandomizedEigenSolver"]

import logging
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp

from tinykrls.eigensolvers.base import EigenSolver, Eigendecomposition
from tinykrls.errors import InvalidParameterError
from tinykrls.helpers import JAXArray

logger = logging.getLogger(__name__)


class RandomizedEigenSolver(EigenSolver):
    """A randomized solver that only needs matrix products

    Args:
        oversample: The number of extra random test vectors beyond the target
            rank. The sketch size is capped at the size of the matrix.
        power_iterations: The number of subspace iterations used to sharpen
            the range estimate when the spectrum decays slowly.
        seed: The seed for the ``jax`` random test matrix.
        rtol: Passed to :func:`tinykrls.eigensolvers.check_spectrum`.
    """

    oversample: int = eqx.field(default=10, static=True)
    power_iterations: int = eqx.field(default=2, static=True)
    seed: int = eqx.field(default=0, static=True)

    def __check_init__(self):
        if self.oversample < 0:
            raise InvalidParameterError(
                f"oversample must be non-negative; got {self.oversample}"
            )
        if self.power_iterations < 0:
            raise InvalidParameterError(
                f"power_iterations must be non-negative; got {self.power_iterations}"
            )

    def solve(self, matrix: Any, rank: int) -> Eigendecomposition:
        size = matrix.shape[0]
        sketch = min(rank + self.oversample, size)
        logger.debug(
            "Randomized eigendecomposition: size=%d rank=%d sketch=%d",
            size,
            rank,
            sketch,
        )

        omega = jax.random.normal(
            jax.random.PRNGKey(self.seed), (size, sketch), dtype=matrix.dtype
        )
        Q = _orthonormalize(matrix @ omega)
        for _ in range(self.power_iterations):
            Q = _orthonormalize(matrix @ Q)

        values, vectors = _rayleigh_ritz(Q, matrix @ Q)
        return Eigendecomposition(vectors[:, :rank], values[:rank])


@jax.jit
def _orthonormalize(Y: JAXArray) -> JAXArray:
    Q, _ = jnp.linalg.qr(Y)
    return Q


@jax.jit
def _rayleigh_ritz(Q: JAXArray, AQ: JAXArray) -> tuple[JAXArray, JAXArray]:
    B = Q.T @ AQ
    values, V = jnp.linalg.eigh(0.5 * (B + B.T))
    return values[::-1], Q @ V[:, ::-1]
