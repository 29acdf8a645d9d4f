# mypy: ignore-errors

import math

import jax.numpy as jnp
import numpy as np
import pytest
from numpy import random as np_random

from tinykrls import search
from tinykrls.eigensolvers import Eigendecomposition, ExactEigenSolver
from tinykrls.errors import InvalidParameterError, NumericOverflowError
from tinykrls.kernels import Gaussian
from tinykrls.loo import loo_error_grid
from tinykrls.search import SearchConfig, search_regularization
from tinykrls.test_utils import assert_allclose


@pytest.fixture
def random():
    return np_random.default_rng(5150)


@pytest.fixture
def data(random):
    x = np.sort(random.uniform(-3, 3, 40))
    y = np.sin(x) + 0.2 * random.normal(size=len(x))
    K = Gaussian(1.0)(x[:, None], x[:, None])
    return y, ExactEigenSolver().decompose(K, len(x))


def test_matches_grid_minimum(data):
    y, decomposition = data
    result = search_regularization(y, decomposition)
    assert result.converged
    assert not result.at_boundary

    grid = jnp.logspace(-8, 4, 481)
    values = loo_error_grid(y, decomposition, grid)
    assert_allclose(result.loo_error, jnp.min(values), rtol=1e-2)

    assert len(result.trace_regularization) == len(result.trace_loo_error)
    assert result.loo_error == np.min(result.trace_loo_error)


def test_falls_back_to_grid(data):
    y, decomposition = data
    config = SearchConfig(max_iterations=1, grid_size=25)
    result = search_regularization(y, decomposition, config)
    assert not result.converged
    assert len(result.trace_regularization) >= config.grid_size
    assert config.lower <= result.regularization <= config.upper
    assert result.loo_error == np.min(result.trace_loo_error)


def test_boundary_collapse_is_flagged(data):
    y, decomposition = data

    # The optimum is far below this interval, so the error increases across it
    config = SearchConfig(lower=1e2, upper=1e4)
    result = search_regularization(y, decomposition, config)
    assert result.at_boundary
    assert_allclose(result.regularization, 1e2, rtol=1e-2)


def test_overflowing_points_are_skipped(data, monkeypatch):
    y, decomposition = data

    def fake_loo_error(y, decomposition, regularization, *, complement=False):
        if regularization < 1e-2:
            raise NumericOverflowError("overflow")
        return 1.0 + math.log10(regularization) ** 2

    monkeypatch.setattr(search, "loo_error", fake_loo_error)
    result = search_regularization(y, decomposition)
    assert result.converged
    assert not result.at_boundary
    assert_allclose(result.regularization, 1.0, rtol=1e-2)
    assert_allclose(result.loo_error, 1.0, rtol=1e-6)
    assert np.any(np.isinf(result.trace_loo_error))


def test_overflow_everywhere(random):
    vectors = jnp.zeros((5, 1)).at[0, 0].set(1.0)
    decomposition = Eigendecomposition(vectors, jnp.ones(1))
    with pytest.raises(NumericOverflowError):
        search_regularization(random.normal(size=5), decomposition)


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(lower=0.0),
        dict(lower=1.0, upper=0.5),
        dict(upper=np.inf),
        dict(max_iterations=0),
        dict(xatol=0.0),
        dict(grid_size=1),
    ],
)
def test_invalid_config(kwargs):
    with pytest.raises(InvalidParameterError):
        SearchConfig(**kwargs)


def test_non_finite_optimum_message(data, monkeypatch, caplog):
    y, decomposition = data

    def fake_loo_error(y, decomposition, regularization, *, complement=False):
        raise NumericOverflowError("overflow")

    monkeypatch.setattr(search, "loo_error", fake_loo_error)
    with caplog.at_level("WARNING", logger="tinykrls.search"):
        result = search_regularization(y, decomposition)
    assert not result.converged
    assert np.isfinite(result.loo_error)
    assert "not finite" in caplog.text
    assert "did not converge" not in caplog.text


def test_non_convergence_message(data, caplog):
    y, decomposition = data
    with caplog.at_level("WARNING", logger="tinykrls.search"):
        search_regularization(y, decomposition, SearchConfig(max_iterations=1))
    assert "did not converge" in caplog.text
