"""
In ``tinykrls``, "eigensolvers" compute the rank-``k`` eigendecomposition of a
kernel matrix that every downstream computation is expressed in. Two solvers
are included:

1. :class:`ExactEigenSolver`: A dense symmetric eigendecomposition truncated to
   the leading ``k`` eigenpairs. Up to numerical precision, this is *exact*,
   but it needs the full kernel matrix in memory and cubic time.

2. :class:`RandomizedEigenSolver`: A randomized range finder followed by a
   Rayleigh-Ritz projection. It only needs matrix products, so it also works
   with a :class:`tinykrls.kernels.KernelMatrix` that never materializes the
   kernel.

Both solvers pass their results through :func:`check_spectrum`, which rejects
decompositions with significantly negative eigenvalues, or with eigenvalues
that aren't on the same scale as the matrix itself.
"""

__all__ = [
    "Eigendecomposition",
    "EigenSolver",
    "ExactEigenSolver",
    "RandomizedEigenSolver",
    "check_spectrum",
]

from tinykrls.eigensolvers.base import EigenSolver, Eigendecomposition, check_spectrum
from tinykrls.eigensolvers.exact import ExactEigenSolver
from tinykrls.eigensolvers.randomized import RandomizedEigenSolver
