"""
The :class:`KRLS` estimator ties the building blocks together: it
standardizes the data, builds the Gaussian kernel, decomposes it at the
requested rank, selects the regularization by minimizing the leave-one-out
error, and then computes the coefficients, fitted values and pointwise
derivatives. The heavy lifting is done by :func:`fit_krls`, a pure function of
the data and a :class:`KRLSConfig`; :class:`KRLS` only adds the bookkeeping of
the fit state.
"""

from __future__ import annotations

__all__ = ["FitState", "KRLSConfig", "FitResult", "KRLS", "fit_krls"]

import dataclasses
import enum
import logging
import math
import numbers
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp

from tinykrls.eigensolvers import (
    EigenSolver,
    Eigendecomposition,
    ExactEigenSolver,
    RandomizedEigenSolver,
)
from tinykrls.errors import InvalidParameterError, NotFittedError
from tinykrls.helpers import JAXArray, as_float_array
from tinykrls.inverse import RegularizedInverse
from tinykrls.kernels import Gaussian, Kernel, KernelMatrix, default_bandwidth
from tinykrls.loo import loo_error
from tinykrls.preprocessing import Standardizer
from tinykrls.search import SearchConfig, SearchResult, search_regularization

logger = logging.getLogger(__name__)

METHODS = ("auto", "exact", "randomized")


class FitState(enum.Enum):
    UNFITTED = "unfitted"
    FITTING = "fitting"
    FITTED = "fitted"
    FAILED = "failed"


class KRLSConfig(eqx.Module):
    """The configuration of a KRLS fit

    Args:
        rank: The number of retained eigenpairs. ``None`` uses the full rank
            ``n_data``.
        bandwidth: The Gaussian kernel bandwidth. ``None`` or ``"auto"`` uses
            :func:`tinykrls.kernels.default_bandwidth`.
        regularization: The regularization scalar. ``None`` or ``"search"``
            selects it with :func:`tinykrls.search.search_regularization`.
            A fixed value is checked the same way as a searched one: if its
            leave-one-out error is not finite, the fit fails with
            :class:`tinykrls.errors.NumericOverflowError`.
        standardize: If ``True`` (default), center and scale the covariates
            and the response before fitting.
        method: The eigensolver: ``"exact"``, ``"randomized"``, or ``"auto"``
            to use the exact solver at full rank or when ``n_data <=
            exact_threshold``, and the randomized solver otherwise.
        exact_threshold: See ``method``.
        materialize_limit: The largest ``n_data`` for which the dense kernel
            matrix is formed. Above this, the kernel is only accessed through
            blockwise products.
        block_size: The number of rows per block for blockwise kernel
            products, predictions and derivatives.
        oversample: Passed to :class:`tinykrls.eigensolvers.RandomizedEigenSolver`.
        power_iterations: Passed to
            :class:`tinykrls.eigensolvers.RandomizedEigenSolver`.
        seed: Passed to :class:`tinykrls.eigensolvers.RandomizedEigenSolver`.
        complement: Passed to :class:`tinykrls.inverse.RegularizedInverse`.
        first_differences: If ``True`` (default), the marginal effect of a
            binary covariate (a column holding only 0 and 1, with both present)
            is the first difference ``f(x_d = 1) - f(x_d = 0)`` at each point
            instead of the partial derivative.
        search: The :class:`tinykrls.search.SearchConfig`.
    """

    rank: int | None = None
    bandwidth: float | str | None = None
    regularization: float | str | None = None
    standardize: bool = True
    method: str = "auto"
    exact_threshold: int = 1000
    materialize_limit: int = 4096
    block_size: int = 512
    oversample: int = 10
    power_iterations: int = 2
    seed: int = 0
    complement: bool = False
    first_differences: bool = True
    search: SearchConfig = eqx.field(default_factory=SearchConfig)

    def __check_init__(self):
        if self.rank is not None and (
            isinstance(self.rank, bool)
            or not isinstance(self.rank, numbers.Integral)
            or self.rank < 1
        ):
            raise InvalidParameterError(
                f"The rank must be a positive integer or None; got {self.rank}"
            )
        if not _is_sentinel_or_number(self.bandwidth, "auto"):
            raise InvalidParameterError(
                "The bandwidth must be a positive float or 'auto'; "
                f"got {self.bandwidth}"
            )
        if not _is_sentinel_or_number(self.regularization, "search", allow_zero=True):
            raise InvalidParameterError(
                "The regularization must be a non-negative float or 'search'; "
                f"got {self.regularization}"
            )
        if self.method not in METHODS:
            raise InvalidParameterError(
                f"Unknown method {self.method!r}; expected one of {METHODS}"
            )
        for name in ("exact_threshold", "materialize_limit", "block_size"):
            if getattr(self, name) < 1:
                raise InvalidParameterError(
                    f"{name} must be positive; got {getattr(self, name)}"
                )


class FitResult(eqx.Module):
    """A fitted KRLS model

    All arrays are in the original units of the data, except for ``X``,
    ``coefficients`` and ``decomposition`` which live in the standardized
    space that the kernel is evaluated in.
    """

    X: JAXArray
    """The standardized training covariates, with shape ``(n_data, n_dim)``"""

    y: JAXArray
    """The training response, with shape ``(n_data,)``"""

    kernel: Kernel
    decomposition: Eigendecomposition
    coefficients: JAXArray
    """The dual coefficients ``c = G^-1 y`` with shape ``(n_data,)``"""

    regularization: float
    bandwidth: float
    fitted: JAXArray
    derivatives: JAXArray
    """The pointwise marginal effects, with shape ``(n_data, n_dim)``

    These are partial derivatives, except for the ``binary_columns`` where they
    are first differences.
    """

    binary_columns: tuple[int, ...] = eqx.field(static=True)

    loo_error: float
    """The leave-one-out error (standardized units) at ``regularization``"""

    search: SearchResult | None
    """The regularization search, or ``None`` if it was provided explicitly"""

    x_standardizer: Standardizer
    y_standardizer: Standardizer
    block_size: int = eqx.field(static=True)

    @property
    def rank(self) -> int:
        return self.decomposition.rank

    @property
    def average_derivatives(self) -> JAXArray:
        """The average marginal effect of each covariate"""
        return jnp.mean(self.derivatives, axis=0)

    @property
    def r_squared(self) -> float:
        residual = jnp.sum(jnp.square(self.y - self.fitted))
        total = jnp.sum(jnp.square(self.y - jnp.mean(self.y)))
        return float(1.0 - residual / total)

    def predict(self, X_test: JAXArray) -> JAXArray:
        """Predict the fitted surface at new covariates

        Args:
            X_test: The covariates with shape ``(n_test, n_dim)``.

        Returns:
            The predictions with shape ``(n_test,)``.
        """
        X_test = as_float_array(X_test)
        if X_test.ndim != 2 or X_test.shape[1] != self.X.shape[1]:
            raise InvalidParameterError(
                f"Expected covariates with shape (n_test, {self.X.shape[1]}); "
                f"got {X_test.shape}"
            )
        prediction = self.kernel.matmul(
            self.x_standardizer.transform(X_test),
            self.X,
            self.coefficients,
            block_size=self.block_size,
        )
        return self.y_standardizer.inverse_transform(prediction)


class KRLS:
    """Kernel Regularized Least Squares with a low-rank kernel approximation

    Args:
        config: A :class:`KRLSConfig`. Any keyword arguments override its
            fields; if ``config`` is omitted they construct a new one.

    The estimator moves through the states of :class:`FitState`. Input
    validation happens before any computation, so a rejected call to
    :func:`KRLS.fit` leaves the state unchanged; any failure after that leaves
    the estimator ``FAILED`` and re-raises.
    """

    def __init__(self, config: KRLSConfig | None = None, **kwargs: Any):
        if config is None:
            config = KRLSConfig(**kwargs)
        elif kwargs:
            config = dataclasses.replace(config, **kwargs)
        self.config = config
        self.state = FitState.UNFITTED
        self._result: FitResult | None = None

    @property
    def result(self) -> FitResult:
        if self.state is not FitState.FITTED or self._result is None:
            raise NotFittedError(
                f"This KRLS estimator is {self.state.value}; call fit first"
            )
        return self._result

    def fit(
        self,
        X: JAXArray,
        y: JAXArray,
        rank: int | None = None,
        bandwidth: float | str | None = None,
        regularization: float | str | None = None,
    ) -> FitResult:
        """Fit the model

        Args:
            X: The covariates with shape ``(n_data, n_dim)``.
            y: The response with shape ``(n_data,)``.
            rank: Overrides ``config.rank``.
            bandwidth: Overrides ``config.bandwidth``.
            regularization: Overrides ``config.regularization``.
        """
        overrides = {
            name: value
            for name, value in (
                ("rank", rank),
                ("bandwidth", bandwidth),
                ("regularization", regularization),
            )
            if value is not None
        }
        config = dataclasses.replace(self.config, **overrides)
        X, y = check_data(X, y)
        resolve_rank(config.rank, X.shape[0])

        self.state = FitState.FITTING
        self._result = None
        try:
            result = fit_krls(X, y, config)
        except Exception:
            self.state = FitState.FAILED
            raise
        self._result = result
        self.state = FitState.FITTED
        return result

    def predict(self, X_test: JAXArray) -> JAXArray:
        return self.result.predict(X_test)

    def derivatives(self) -> JAXArray:
        return self.result.derivatives


def fit_krls(X: JAXArray, y: JAXArray, config: KRLSConfig | None = None) -> FitResult:
    """Fit a KRLS model without any estimator state

    See :class:`KRLS` and :class:`KRLSConfig` for the details.
    """
    if config is None:
        config = KRLSConfig()
    X, y = check_data(X, y)
    num_data = X.shape[0]
    rank = resolve_rank(config.rank, num_data)

    x_standardizer = Standardizer.fit(X, enabled=config.standardize)
    y_standardizer = Standardizer.fit(y, enabled=config.standardize)
    Xs = x_standardizer.transform(X)
    ys = y_standardizer.transform(y)

    if is_automatic(config.bandwidth, "auto"):
        bandwidth = default_bandwidth(Xs)
    else:
        bandwidth = float(config.bandwidth)
    kernel = Gaussian(bandwidth)

    decomposition = decompose_kernel(kernel, Xs, rank, config)

    if is_automatic(config.regularization, "search"):
        search = search_regularization(
            ys, decomposition, config.search, complement=config.complement
        )
        regularization = search.regularization
        loo = search.loo_error
    else:
        search = None
        regularization = float(config.regularization)
        loo = float(
            loo_error(
                ys, decomposition, regularization, complement=config.complement
            )
        )

    inverse = RegularizedInverse(
        decomposition, regularization, complement=config.complement
    )
    coefficients = inverse @ ys
    fitted = kernel.matmul(Xs, Xs, coefficients, block_size=config.block_size)
    derivatives = pointwise_derivatives(
        kernel, Xs, coefficients, block_size=config.block_size
    )
    derivatives = derivatives * (y_standardizer.scale / x_standardizer.scale)
    binary = binary_columns(X) if config.first_differences else ()
    if binary:
        differences = first_differences(
            kernel,
            Xs,
            coefficients,
            x_standardizer,
            binary,
            block_size=config.block_size,
        )
        logger.debug("Using first differences for binary columns %s", binary)
        derivatives = derivatives.at[:, list(binary)].set(
            differences * y_standardizer.scale
        )

    logger.info(
        "Fitted KRLS: n_data=%d n_dim=%d rank=%d bandwidth=%.4g "
        "regularization=%.4g loo_error=%.4g",
        num_data,
        X.shape[1],
        rank,
        bandwidth,
        regularization,
        loo,
    )
    return FitResult(
        X=Xs,
        y=y,
        kernel=kernel,
        decomposition=decomposition,
        coefficients=coefficients,
        regularization=regularization,
        bandwidth=bandwidth,
        fitted=y_standardizer.inverse_transform(fitted),
        derivatives=derivatives,
        binary_columns=binary,
        loo_error=loo,
        search=search,
        x_standardizer=x_standardizer,
        y_standardizer=y_standardizer,
        block_size=config.block_size,
    )


def kernel_matrix(
    kernel: Kernel, X: JAXArray, config: KRLSConfig
) -> JAXArray | KernelMatrix:
    """The dense kernel matrix, or an implicit one above ``materialize_limit``"""
    if X.shape[0] <= config.materialize_limit:
        return kernel(X, X)
    logger.debug(
        "Using a blockwise kernel operator for %d points (limit %d)",
        X.shape[0],
        config.materialize_limit,
    )
    return KernelMatrix(kernel, X, block_size=config.block_size)


def eigensolver(config: KRLSConfig, num_data: int, rank: int) -> EigenSolver:
    method = config.method
    if method == "auto":
        exact = rank == num_data or num_data <= config.exact_threshold
        method = "exact" if exact else "randomized"
    if method == "exact":
        return ExactEigenSolver()
    return RandomizedEigenSolver(
        oversample=config.oversample,
        power_iterations=config.power_iterations,
        seed=config.seed,
    )


def decompose_kernel(
    kernel: Kernel, X: JAXArray, rank: int, config: KRLSConfig
) -> Eigendecomposition:
    """Decompose the kernel matrix of ``X`` at the given rank

    The kernel matrix only lives for the duration of this call, so it is
    released as soon as its low-rank surrogate exists.
    """
    matrix = kernel_matrix(kernel, X, config)
    solver = eigensolver(config, X.shape[0], rank)
    logger.debug("Decomposing with %s at rank %d", type(solver).__name__, rank)
    return solver.decompose(matrix, rank)


def pointwise_derivatives(
    kernel: Kernel,
    X: JAXArray,
    coefficients: JAXArray,
    *,
    block_size: int | None = None,
) -> JAXArray:
    """The gradient of ``f(x) = sum_j c_j k(x, X_j)`` at every row of ``X``

    This treats every column as continuous. For a 0/1 coded covariate the
    derivative is evaluated at points where the surface is never observed, and
    it usually understates the effect of switching the covariate on; see
    :func:`first_differences`.
    """
    if block_size is None:
        block_size = X.shape[0]
    return jnp.concatenate(
        [
            _gradient_block(kernel, X, coefficients, X[start : start + block_size])
            for start in range(0, X.shape[0], block_size)
        ],
        axis=0,
    )


@jax.jit
def _gradient_block(
    kernel: Kernel, X: JAXArray, coefficients: JAXArray, block: JAXArray
) -> JAXArray:
    def surface(x: JAXArray) -> JAXArray:
        return jax.vmap(kernel.evaluate, in_axes=(None, 0))(x, X) @ coefficients

    return jax.vmap(jax.grad(surface))(block)


def binary_columns(X: JAXArray) -> tuple[int, ...]:
    """The indices of the columns of ``X`` that only hold 0 and 1, with both"""
    zero = X == 0
    one = X == 1
    binary = jnp.all(zero | one, axis=0) & jnp.any(zero, axis=0) & jnp.any(one, axis=0)
    return tuple(int(i) for i in jnp.flatnonzero(binary))


def first_differences(
    kernel: Kernel,
    X: JAXArray,
    coefficients: JAXArray,
    standardizer: Standardizer,
    columns: tuple[int, ...],
    *,
    block_size: int | None = None,
) -> JAXArray:
    """The pointwise effect of switching binary covariates from 0 to 1

    Args:
        kernel: The fitted kernel.
        X: The standardized training covariates.
        coefficients: The dual coefficients.
        standardizer: The transform that produced ``X``, used to locate the
            standardized values of 0 and 1 in each column.
        columns: The indices of the binary columns.
        block_size: Passed to :func:`tinykrls.kernels.Kernel.matmul`.

    Returns:
        An array with shape ``(n_data, len(columns))`` of ``f(x_d = 1) - f(x_d
        = 0)`` in standardized response units.
    """
    ones = jnp.ones(X.shape[1], dtype=X.dtype)
    levels = standardizer.transform(jnp.stack([jnp.zeros_like(ones), ones]))
    result = []
    for d in columns:
        low = kernel.matmul(
            X.at[:, d].set(levels[0, d]), X, coefficients, block_size=block_size
        )
        high = kernel.matmul(
            X.at[:, d].set(levels[1, d]), X, coefficients, block_size=block_size
        )
        result.append(high - low)
    return jnp.stack(result, axis=1)


def check_data(X: Any, y: Any) -> tuple[JAXArray, JAXArray]:
    X = as_float_array(X)
    y = as_float_array(y)
    if X.ndim != 2:
        raise InvalidParameterError(
            f"Expected covariates with shape (n_data, n_dim); got {X.shape}"
        )
    if y.ndim != 1 or y.shape[0] != X.shape[0]:
        raise InvalidParameterError(
            f"Expected a response with shape ({X.shape[0]},); got {y.shape}"
        )
    if X.shape[0] < 2 or X.shape[1] < 1:
        raise InvalidParameterError(
            f"Need at least 2 observations and 1 covariate; got {X.shape}"
        )
    if not bool(jnp.all(jnp.isfinite(X))) or not bool(jnp.all(jnp.isfinite(y))):
        raise InvalidParameterError("The data contain missing or non-finite values")
    return X, y


def resolve_rank(rank: int | None, num_data: int) -> int:
    if rank is None:
        return num_data
    if (
        isinstance(rank, bool)
        or not isinstance(rank, numbers.Integral)
        or not 1 <= rank <= num_data
    ):
        raise InvalidParameterError(f"The rank must be in [1, {num_data}]; got {rank}")
    return int(rank)


def _is_sentinel_or_number(
    value: Any, sentinel: str, *, allow_zero: bool = False
) -> bool:
    if value is None or isinstance(value, str):
        return value is None or value == sentinel
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return False
    value = float(value)
    return math.isfinite(value) and (value >= 0 if allow_zero else value > 0)


def is_automatic(value: Any, sentinel: str) -> bool:
    return value is None or (isinstance(value, str) and value == sentinel)
