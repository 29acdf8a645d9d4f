from typing import Any

import jax
import numpy as np

from tinykrls.helpers import JAXArray

_DEFAULT_TOLERANCES = {
    np.dtype("float32"): 5e-4,
    np.dtype("float64"): 5e-7,
}


def assert_allclose(
    calculated: JAXArray, expected: JAXArray, *args: Any, **kwargs: Any
):
    calculated = np.asarray(calculated)
    expected = np.asarray(expected)
    dtype = np.result_type(calculated.dtype, expected.dtype, np.float32)
    default = _DEFAULT_TOLERANCES.get(dtype, 5e-7)
    kwargs["atol"] = kwargs.get("atol", default)
    kwargs["rtol"] = kwargs.get("rtol", default)
    np.testing.assert_allclose(calculated, expected, *args, **kwargs)


def assert_pytrees_allclose(calculated: Any, expected: Any, *args: Any, **kwargs: Any):
    jax.tree_util.tree_map(
        lambda a, b: assert_allclose(a, b, *args, **kwargs), calculated, expected
    )
