from __future__ import annotations

__all__ = ["JAXArray", "as_float_array", "default_tolerance"]

from typing import Any

import jax
import jax.numpy as jnp

JAXArray = jax.Array


def as_float_array(value: Any) -> JAXArray:
    """Convert to a ``jax`` array with the default floating point type

    This will be ``float64`` when ``jax_enable_x64`` is set and ``float32``
    otherwise, so integer or boolean covariates are promoted consistently.
    """
    return jnp.asarray(value, dtype=jnp.result_type(float))


def default_tolerance(reference: JAXArray) -> JAXArray:
    """The square root of machine epsilon for the dtype of ``reference``

    Used as the default relative tolerance for spectral checks since it gives
    sensible results in both single and double precision.
    """
    return jnp.sqrt(jnp.finfo(jnp.asarray(reference).dtype).eps)
