r"""
The regularized inverse of a low-rank kernel matrix, evaluated implicitly from
its eigendecomposition :math:`K \approx U\,\Lambda\,U^T`:

.. math::

    G(\lambda)^{-1} = U\,\mathrm{diag}\left(\frac{1}{\Lambda + \lambda}\right)
        U^T

Products and the diagonal are computed from the ``(n_data, rank)`` factor in
:math:`\mathcal{O}(N\,k)` time and memory, so neither :math:`G` nor its inverse
is ever formed, and nothing ever needs to be padded to a conformable shape.

With ``complement=True`` the orthogonal complement term :math:`(I - U\,U^T) /
\lambda` is included too, which makes the operator the exact inverse of
:math:`U\,\Lambda\,U^T + \lambda\,I` at any rank.
"""

from __future__ import annotations

__all__ = [
    "RegularizedInverse",
    "inverse_matmul",
    "inverse_diagonal",
    "singular_threshold",
]

import math
from functools import partial

import equinox as eqx
import jax
import jax.numpy as jnp

from tinykrls.eigensolvers import Eigendecomposition
from tinykrls.errors import InvalidParameterError, SingularMatrixError
from tinykrls.helpers import JAXArray


class RegularizedInverse(eqx.Module):
    """The implicit operator ``(K_approx + regularization * I)^-1``

    Args:
        decomposition: The eigendecomposition of the kernel matrix.
        regularization: The non-negative regularization scalar.
        complement: If ``True``, include the orthogonal complement of the
            eigenbasis so that the operator is the exact inverse of the
            regularized low-rank matrix. Otherwise, this is the regularized
            pseudo-inverse restricted to the span of the eigenvectors.

    Raises:
        InvalidParameterError: If ``regularization`` is negative or not
            finite.
        SingularMatrixError: If ``regularization`` is zero and the matrix has
            a numerically zero eigenvalue (or ``complement`` is requested).
    """

    decomposition: Eigendecomposition
    regularization: JAXArray
    complement: bool = eqx.field(default=False, static=True)

    def __init__(
        self,
        decomposition: Eigendecomposition,
        regularization: JAXArray | float,
        *,
        complement: bool = False,
    ):
        value = float(regularization)
        if not math.isfinite(value) or value < 0:
            raise InvalidParameterError(
                f"The regularization must be finite and non-negative; got {value}"
            )
        if value == 0:
            if complement:
                raise SingularMatrixError(
                    "The complement term is undefined for zero regularization"
                )
            threshold = singular_threshold(decomposition)
            if bool(jnp.any(decomposition.values <= threshold)):
                raise SingularMatrixError(
                    "Zero regularization with a numerically zero eigenvalue"
                )
        self.decomposition = decomposition
        self.regularization = jnp.asarray(value, dtype=decomposition.values.dtype)
        self.complement = complement

    @property
    def shape(self) -> tuple[int, int]:
        n = self.decomposition.num_data
        return (n, n)

    def diagonal(self) -> JAXArray:
        return inverse_diagonal(
            self.decomposition.vectors,
            self.decomposition.values,
            self.regularization,
            complement=self.complement,
        )

    def to_dense(self) -> JAXArray:
        return self @ jnp.eye(
            self.decomposition.num_data, dtype=self.decomposition.values.dtype
        )

    def __matmul__(self, other: JAXArray) -> JAXArray:
        return inverse_matmul(
            self.decomposition.vectors,
            self.decomposition.values,
            self.regularization,
            jnp.asarray(other),
            complement=self.complement,
        )


def singular_threshold(decomposition: Eigendecomposition) -> JAXArray:
    """The eigenvalue magnitude below which the spectrum is treated as zero"""
    values = decomposition.values
    scale = jnp.maximum(jnp.max(jnp.abs(values)), 1.0)
    return jnp.finfo(values.dtype).eps * decomposition.num_data * scale


@partial(jax.jit, static_argnames=("complement",))
def inverse_matmul(
    vectors: JAXArray,
    values: JAXArray,
    regularization: JAXArray,
    y: JAXArray,
    *,
    complement: bool = False,
) -> JAXArray:
    """Compute ``G^-1 @ y`` for ``y`` with shape ``(n_data,)`` or ``(n_data, m)``"""
    projected = vectors.T @ y
    weights = 1.0 / (values + regularization)
    if projected.ndim == 2:
        weights = weights[:, None]
    result = vectors @ (weights * projected)
    if complement:
        result += (y - vectors @ projected) / regularization
    return result


@partial(jax.jit, static_argnames=("complement",))
def inverse_diagonal(
    vectors: JAXArray,
    values: JAXArray,
    regularization: JAXArray,
    *,
    complement: bool = False,
) -> JAXArray:
    """Compute ``diag(G^-1)`` without forming any off-diagonal entries"""
    squared = jnp.square(vectors)
    result = squared @ (1.0 / (values + regularization))
    if complement:
        result += (1.0 - jnp.sum(squared, axis=1)) / regularization
    return result
