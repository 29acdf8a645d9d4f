# mypy: ignore-errors

import dataclasses

import numpy as np
import pytest
from numpy import random as np_random

from tinykrls import krls
from tinykrls.errors import (
    InvalidParameterError,
    NotFittedError,
    NumericOverflowError,
)
from tinykrls.krls import KRLS, FitState, KRLSConfig
from tinykrls.preprocessing import Standardizer
from tinykrls.test_utils import assert_allclose


@pytest.fixture
def random():
    return np_random.default_rng(8675309)


@pytest.fixture
def data(random):
    X = random.normal(size=(60, 2))
    y = np.sin(X[:, 0]) + 0.5 * X[:, 1] ** 2 + 0.1 * random.normal(size=len(X))
    return X, y


def direct_coefficients(X, y, bandwidth, regularization):
    d2 = np.sum(np.square(X[:, None, :] - X[None, :, :]), axis=-1)
    K = np.exp(-d2 / bandwidth)
    return np.linalg.solve(K + regularization * np.eye(len(y)), y)


def test_not_fitted(data):
    X, _ = data
    model = KRLS()
    assert model.state is FitState.UNFITTED
    with pytest.raises(NotFittedError):
        model.predict(X)
    with pytest.raises(RuntimeError):
        model.derivatives()
    with pytest.raises(NotFittedError):
        model.result


@pytest.mark.parametrize(
    "X, y, rank",
    [
        (np.ones(10), np.ones(10), None),
        (np.ones((10, 2)), np.ones(9), None),
        (np.ones((1, 2)), np.ones(1), None),
        (np.full((10, 2), np.nan), np.ones(10), None),
        (np.arange(20.0).reshape(10, 2), np.ones(10), 11),
        (np.arange(20.0).reshape(10, 2), np.ones(10), 0),
    ],
)
def test_invalid_inputs(X, y, rank):
    model = KRLS()
    with pytest.raises(InvalidParameterError):
        model.fit(X, y, rank=rank)
    assert model.state is FitState.UNFITTED


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(rank=0),
        dict(rank=2.5),
        dict(bandwidth=-1.0),
        dict(bandwidth="median"),
        dict(regularization=-0.1),
        dict(regularization="fixed"),
        dict(method="lanczos"),
        dict(block_size=0),
    ],
)
def test_invalid_config(kwargs):
    with pytest.raises(InvalidParameterError):
        KRLSConfig(**kwargs)


def test_config_overrides():
    config = KRLSConfig(rank=5, regularization=0.1)
    model = KRLS(config, seed=3)
    assert model.config.rank == 5
    assert model.config.seed == 3
    assert model.config.regularization == 0.1
    assert config.seed == 0

    assert KRLS(rank=7).config.rank == 7
    with pytest.raises(InvalidParameterError):
        KRLS(config, method="unknown")


def test_explicit_regularization_matches_direct_solve(data):
    X, y = data
    result = KRLS(regularization=0.1).fit(X, y)
    assert result.search is None
    assert result.rank == len(y)
    assert result.bandwidth == 2.0

    Xs = (X - X.mean(axis=0)) / X.std(axis=0, ddof=1)
    ys = (y - y.mean()) / y.std(ddof=1)
    expect = direct_coefficients(Xs, ys, 2.0, 0.1)
    assert_allclose(result.coefficients, expect, rtol=1e-6, atol=1e-8)
    assert_allclose(result.X, Xs)


def test_without_standardization(data):
    X, y = data
    result = KRLS(standardize=False, regularization=0.1, bandwidth=3.0).fit(X, y)
    assert_allclose(result.x_standardizer.mean, np.zeros(2))
    assert_allclose(result.x_standardizer.scale, np.ones(2))
    expect = direct_coefficients(X, y, 3.0, 0.1)
    assert_allclose(result.coefficients, expect, rtol=1e-6, atol=1e-8)


def test_fitted_matches_predict(data):
    X, y = data
    model = KRLS(rank=20)
    result = model.fit(X, y)
    assert model.state is FitState.FITTED
    assert result.rank == 20
    assert result.search is not None
    assert result.fitted.shape == y.shape
    assert_allclose(model.predict(X), result.fitted, atol=1e-8)
    assert result.r_squared > 0.8


def test_derivatives_match_finite_differences(data):
    X, y = data
    model = KRLS(regularization=0.1)
    model.fit(X, y)
    derivatives = model.derivatives()
    assert derivatives.shape == X.shape

    step = 1e-5
    for k in range(X.shape[1]):
        offset = np.zeros(X.shape[1])
        offset[k] = step
        expect = (model.predict(X + offset) - model.predict(X - offset)) / (2 * step)
        assert_allclose(derivatives[:, k], expect, rtol=1e-5, atol=1e-7)


@pytest.mark.parametrize("rank", [None, 100])
def test_average_derivatives_of_linear_function(random, rank):
    X = random.normal(size=(300, 2))
    y = X[:, 0] + X[:, 1] + 0.05 * random.normal(size=len(X))
    result = KRLS(rank=rank).fit(X, y)
    assert_allclose(result.average_derivatives, np.ones(2), atol=0.1)


def test_blockwise_derivatives(data):
    X, y = data
    full = KRLS(regularization=0.1).fit(X, y)
    blocked = KRLS(regularization=0.1, block_size=7).fit(X, y)
    assert_allclose(blocked.derivatives, full.derivatives)
    assert_allclose(blocked.fitted, full.fitted)


def test_implicit_kernel_matches_dense(random):
    X = random.normal(size=(150, 3))
    y = X[:, 0] - np.cos(X[:, 1]) + 0.1 * random.normal(size=len(X))
    config = KRLSConfig(rank=20, method="randomized", regularization=0.1)
    dense = KRLS(config).fit(X, y)
    implicit = KRLS(config, materialize_limit=100, block_size=32).fit(X, y)
    assert_allclose(implicit.decomposition.values, dense.decomposition.values)
    assert_allclose(implicit.coefficients, dense.coefficients, rtol=1e-6, atol=1e-8)
    assert_allclose(implicit.fitted, dense.fitted, rtol=1e-6, atol=1e-8)


def test_higher_rank_predicts_better(random):
    X = random.normal(size=(600, 10))
    y = X[:, 0] + X[:, 1]
    X_train, X_test = X[:500], X[500:]
    y_train, y_test = y[:500], y[500:]

    def mse(rank):
        model = KRLS(rank=rank)
        model.fit(X_train, y_train)
        return np.mean(np.square(model.predict(X_test) - y_test))

    baseline = np.mean(np.square(y_test - np.mean(y_train)))
    full = mse(500)
    low = mse(50)
    assert full < low < baseline


def test_failure_sets_state(data, monkeypatch):
    X, y = data

    def fail(*args, **kwargs):
        raise NumericOverflowError("overflow")

    monkeypatch.setattr(krls, "search_regularization", fail)
    model = KRLS()
    with pytest.raises(NumericOverflowError):
        model.fit(X, y)
    assert model.state is FitState.FAILED
    with pytest.raises(NotFittedError):
        model.predict(X)

    # A later successful fit recovers
    model.fit(X, y, regularization=0.1)
    assert model.state is FitState.FITTED


def test_constant_column(data):
    X, y = data
    X = np.concatenate((X, np.ones((len(X), 1))), axis=1)
    model = KRLS()
    with pytest.raises(InvalidParameterError):
        model.fit(X, y)
    assert model.state is FitState.FAILED

    result = KRLS(standardize=False, regularization=0.1).fit(X, y)
    assert result.derivatives.shape == X.shape


def test_standardizer(random):
    X = 3.0 + 2.0 * random.normal(size=(50, 3))
    standardizer = Standardizer.fit(X)
    Xs = standardizer.transform(X)
    assert_allclose(np.mean(Xs, axis=0), np.zeros(3), atol=1e-12)
    assert_allclose(np.std(Xs, axis=0, ddof=1), np.ones(3))
    assert_allclose(standardizer.inverse_transform(Xs), X)

    with pytest.raises(InvalidParameterError):
        Standardizer.fit(np.ones(10))


def test_predict_shape_check(data):
    X, y = data
    model = KRLS(regularization=0.1)
    model.fit(X, y)
    assert model.predict(X[:5]).shape == (5,)
    with pytest.raises(InvalidParameterError):
        model.predict(X[:, :1])


def test_replace_keeps_search_config():
    config = KRLSConfig()
    updated = dataclasses.replace(config, rank=3)
    assert updated.search is config.search


def test_explicit_regularization_overflow(random):
    # An isolated point falls outside the span of the leading eigenvectors,
    # so its diagonal entry of the truncated inverse vanishes
    X = np.concatenate((random.normal(size=(40, 2)), [[100.0, 100.0]]))
    y = random.normal(size=len(X))
    model = KRLS(rank=3, standardize=False, bandwidth=2.0, regularization=0.1)
    with pytest.raises(NumericOverflowError):
        model.fit(X, y)
    assert model.state is FitState.FAILED


def test_binary_columns_use_first_differences(random):
    X = np.concatenate(
        (random.normal(size=(300, 2)), random.integers(0, 2, size=(300, 2))), axis=1
    ).astype(float)
    y = X[:, 0] + X[:, 1] + X[:, 2] + X[:, 3]
    model = KRLS()
    result = model.fit(X, y)
    assert result.binary_columns == (2, 3)

    for d in result.binary_columns:
        high = X.copy()
        high[:, d] = 1.0
        low = X.copy()
        low[:, d] = 0.0
        expect = model.predict(high) - model.predict(low)
        assert_allclose(result.derivatives[:, d], expect, atol=1e-8)

    assert_allclose(result.average_derivatives, np.ones(4), atol=0.15)

    partial = KRLS(first_differences=False).fit(X, y)
    assert partial.binary_columns == ()
    assert_allclose(partial.derivatives[:, :2], result.derivatives[:, :2])
