"""
KRLS in ``tinykrls`` always uses the Gaussian (radial basis function) kernel,
but it is built from the same small set of pieces that a custom kernel would
use: a :class:`Kernel` base class that handles all the ``vmap`` broadcasting,
and a :class:`KernelMatrix` operator that represents the Gram matrix
implicitly for data sets that are too large to materialize.
"""

__all__ = [
    "Kernel",
    "KernelMatrix",
    "Gaussian",
    "default_bandwidth",
]

from tinykrls.kernels.base import Kernel, KernelMatrix
from tinykrls.kernels.gaussian import Gaussian, default_bandwidth
