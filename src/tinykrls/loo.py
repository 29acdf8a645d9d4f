r"""
The closed form leave-one-out (LOO) error of a regularized kernel fit. With
:math:`G(\lambda) = K + \lambda\,I` and coefficients :math:`c = G^{-1}\,y`, the
LOO residual of observation :math:`i` is :math:`c_i / [G^{-1}]_{ii}`, so the
error

.. math::

    \mathrm{LOOE}(\lambda) = \left\|\frac{G(\lambda)^{-1}\,y}
        {\mathrm{diag}(G(\lambda)^{-1})}\right\|_2

needs one implicit product and the implicit diagonal from
:mod:`tinykrls.inverse`, and nothing else.
"""

from __future__ import annotations

__all__ = ["loo_residuals", "loo_error", "loo_error_grid"]

from functools import partial

import jax
import jax.numpy as jnp

from tinykrls.eigensolvers import Eigendecomposition
from tinykrls.errors import NumericOverflowError
from tinykrls.helpers import JAXArray, as_float_array
from tinykrls.inverse import RegularizedInverse, inverse_diagonal, inverse_matmul


def loo_residuals(
    y: JAXArray,
    decomposition: Eigendecomposition,
    regularization: JAXArray | float,
    *,
    complement: bool = False,
) -> JAXArray:
    """The vector of leave-one-out residuals ``c / diag(G^-1)``

    Args:
        y: The observed data with shape ``(n_data,)``.
        decomposition: The eigendecomposition of the kernel matrix.
        regularization: The regularization scalar.
        complement: Passed to :class:`tinykrls.inverse.RegularizedInverse`.
    """
    inverse = RegularizedInverse(decomposition, regularization, complement=complement)
    return (inverse @ as_float_array(y)) / inverse.diagonal()


def loo_error(
    y: JAXArray,
    decomposition: Eigendecomposition,
    regularization: JAXArray | float,
    *,
    complement: bool = False,
) -> JAXArray:
    """The leave-one-out error for a single regularization value

    Raises:
        NumericOverflowError: If a diagonal entry of ``G^-1`` is numerically
            zero, or the error is otherwise not finite.
        SingularMatrixError: If the regularized matrix can't be inverted.
    """
    inverse = RegularizedInverse(decomposition, regularization, complement=complement)
    value = _loo_error(
        decomposition.vectors,
        decomposition.values,
        inverse.regularization,
        as_float_array(y),
        complement=complement,
    )
    if not bool(jnp.isfinite(value)):
        raise NumericOverflowError(
            "The leave-one-out error is not finite at regularization "
            f"{float(regularization):.3e}; diag(G^-1) has a numerically zero entry"
        )
    return value


def loo_error_grid(
    y: JAXArray,
    decomposition: Eigendecomposition,
    regularizations: JAXArray,
    *,
    complement: bool = False,
) -> JAXArray:
    """Evaluate the leave-one-out error for a whole grid of regularizations

    The grid is evaluated in a single vectorized pass using ``jax.vmap``.
    Unlike :func:`loo_error`, this never raises for a bad grid point: points
    that would overflow (including zero regularization with a singular
    spectrum) are reported as ``inf``, so they compare as worse than any
    finite value.

    Args:
        y: The observed data with shape ``(n_data,)``.
        decomposition: The eigendecomposition of the kernel matrix.
        regularizations: A 1D array of non-negative regularization values.
        complement: Passed to :class:`tinykrls.inverse.RegularizedInverse`.

    Returns:
        An array with the same shape as ``regularizations``.
    """
    regularizations = jnp.asarray(regularizations, dtype=decomposition.values.dtype)
    evaluate = jax.vmap(
        partial(_loo_error, complement=complement), in_axes=(None, None, 0, None)
    )
    return evaluate(
        decomposition.vectors,
        decomposition.values,
        regularizations,
        as_float_array(y),
    )


@partial(jax.jit, static_argnames=("complement",))
def _loo_error(
    vectors: JAXArray,
    values: JAXArray,
    regularization: JAXArray,
    y: JAXArray,
    *,
    complement: bool = False,
) -> JAXArray:
    coefficients = inverse_matmul(
        vectors, values, regularization, y, complement=complement
    )
    diag = inverse_diagonal(vectors, values, regularization, complement=complement)
    zero = jnp.abs(diag) <= jnp.finfo(diag.dtype).eps * jnp.max(jnp.abs(diag))
    value = jnp.linalg.norm(coefficients / jnp.where(zero, 1.0, diag))
    return jnp.where(jnp.any(zero) | ~jnp.isfinite(value), jnp.inf, value)
