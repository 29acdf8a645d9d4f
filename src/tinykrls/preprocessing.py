from __future__ import annotations

__all__ = ["Standardizer"]

import equinox as eqx
import jax.numpy as jnp

from tinykrls.errors import InvalidParameterError
from tinykrls.helpers import JAXArray


class Standardizer(eqx.Module):
    """Center and scale data columnwise

    KRLS works on standardized covariates and responses so that the default
    bandwidth is meaningful and the regularization search bounds don't depend
    on the units of the data. Derivatives are mapped back to the original
    units by the ratio of the response and covariate scales.

    Args:
        mean: The per-column (or scalar) offset.
        scale: The per-column (or scalar) scale.
    """

    mean: JAXArray
    scale: JAXArray

    @classmethod
    def fit(cls, data: JAXArray, *, enabled: bool = True) -> Standardizer:
        """Estimate the mean and sample standard deviation along axis 0

        Args:
            data: An array with shape ``(n_data,)`` or ``(n_data, n_dim)``.
            enabled: If ``False``, return the identity transform.

        Raises:
            InvalidParameterError: If a column has zero variance.
        """
        shape = data.shape[1:]
        if not enabled:
            return cls(jnp.zeros(shape, data.dtype), jnp.ones(shape, data.dtype))
        scale = jnp.std(data, axis=0, ddof=1)
        if not bool(jnp.all(scale > 0)):
            raise InvalidParameterError(
                "Cannot standardize constant columns; found zero variance at "
                f"{jnp.flatnonzero(jnp.atleast_1d(scale <= 0)).tolist()}"
            )
        return cls(jnp.mean(data, axis=0), scale)

    def transform(self, data: JAXArray) -> JAXArray:
        return (data - self.mean) / self.scale

    def inverse_transform(self, data: JAXArray) -> JAXArray:
        return data * self.scale + self.mean
