"""
``tinykrls`` is a lightweight library for Kernel Regularized Least Squares
(KRLS) regression with low-rank kernel approximations, built on top of `jax
<https://github.com/google/jax>`_. The primary interface is the :class:`KRLS`
estimator, which builds a Gaussian kernel, decomposes it at a chosen rank,
selects the regularization parameter by minimizing the leave-one-out error,
and returns fitted values, coefficients and pointwise marginal effects. The
building blocks (``kernels``, ``eigensolvers``, ``inverse``, ``loo`` and
``search``) can also be used directly.
"""

__version__ = "0.1.0"
__author__ = "tinykrls developers"
__email__ = "tinykrls@users.noreply.github.com"
__uri__ = "https://github.com/tinykrls/tinykrls"
__license__ = "BSD"
__description__ = "Low-rank kernel regularized least squares in JAX"

from tinykrls import (
    eigensolvers as eigensolvers,
    errors as errors,
    kernels as kernels,
    loo as loo,
    search as search,
    sweep as sweep,
)
from tinykrls.krls import (
    KRLS as KRLS,
    FitResult as FitResult,
    FitState as FitState,
    KRLSConfig as KRLSConfig,
)
from tinykrls.search import SearchConfig as SearchConfig
