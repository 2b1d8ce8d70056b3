"""
Unit tests for the least-squares regression modules.
"""

import pytest
import numpy as np
from mlosp.exceptions import FitFailure, InvalidConfig, UnderdeterminedFit
from mlosp.model import RegressionConfig
from mlosp.regression import (LinearBasisRegressor, SplineRegressor, check_training_data)


class TestCheckTrainingData:
    """Test cases for training data validation."""

    def test_shapes(self):
        x, y, noise = check_training_data([1.0, 2.0, 3.0], [[1.0], [2.0], [3.0]])
        assert x.shape == (3, 1)
        assert y.shape == (3,)
        assert noise is None

    def test_length_mismatch(self):
        with pytest.raises(InvalidConfig):
            check_training_data(np.ones((3, 1)), np.ones(4))
        with pytest.raises(InvalidConfig):
            check_training_data(np.ones((3, 1)), np.ones(3), np.ones(2))

    def test_non_finite(self):
        with pytest.raises(FitFailure):
            check_training_data(np.ones((3, 1)), np.array([1.0, np.nan, 2.0]))
        with pytest.raises(FitFailure):
            check_training_data(np.ones((3, 1)), np.ones(3), np.array([1.0, -1.0, 1.0]))


class TestSplineRegressor:
    """Test cases for the cubic smoothing spline."""

    def test_smooth_fit(self):
        rng = np.random.default_rng(0)
        x = np.linspace(0.0, 1.0, 200)
        y = np.sin(2 * np.pi * x) + 0.05 * rng.standard_normal(200)

        surrogate = SplineRegressor(knots=10).fit(x[:, None], y)
        grid = np.linspace(0.05, 0.95, 50)[:, None]
        assert np.max(np.abs(surrogate.predict(grid) - np.sin(2 * np.pi * grid[:, 0]))) < 0.1

    def test_no_variance(self):
        x = np.linspace(0.0, 1.0, 30)[:, None]
        mean, var = SplineRegressor(knots=5).fit(x, x[:, 0] ** 2).predict(x, return_var=True)
        assert mean.shape == (30,)
        assert var is None

    def test_constant_extrapolation(self):
        x = np.linspace(0.0, 1.0, 40)[:, None]
        surrogate = SplineRegressor(knots=5).fit(x, 2.0 * x[:, 0])
        assert np.isclose(surrogate.predict(np.array([[5.0]]))[0], surrogate.predict(np.array([[1.0]]))[0])

    def test_linear_reproduced(self):
        """Straight lines carry no roughness penalty, even with more knots than inputs."""
        x = np.repeat(np.linspace(20.0, 40.0, 12), 3)[:, None]
        y = 40.0 - x[:, 0]
        surrogate = SplineRegressor(knots=20).fit(x, y)
        assert np.allclose(surrogate.predict(np.array([[25.0], [35.0]])), [15.0, 5.0], atol=1e-4)

    def test_smooths_noisy_means(self):
        """Noisy replicate means on as many inputs as basis functions are smoothed, not interpolated."""
        rng = np.random.default_rng(3)
        x = np.linspace(17.0, 40.0, 24)[:, None]
        truth = 0.02 * (x[:, 0] - 34.0) ** 2 - 0.5
        y = truth + 0.1 * rng.standard_normal(24)
        surrogate = SplineRegressor(knots=20).fit(x, y, noise_var=np.full(24, 0.01))

        fitted = surrogate.predict(x)
        assert np.max(np.abs(fitted - y)) > 1e-3
        assert surrogate.lam > 0
        assert np.mean((fitted - truth) ** 2) < np.mean((y - truth) ** 2)

    def test_fixed_penalty(self):
        x = np.linspace(0.0, 1.0, 30)[:, None]
        y = np.sin(6.0 * x[:, 0])
        rough = SplineRegressor(knots=10, lam=1e-6).fit(x, y)
        stiff = SplineRegressor(knots=10, lam=1e4).fit(x, y)
        assert rough.lam == 1e-6
        assert np.sum((rough.predict(x) - y) ** 2) < np.sum((stiff.predict(x) - y) ** 2)

    def test_too_few_inputs(self):
        with pytest.raises(UnderdeterminedFit):
            SplineRegressor().fit(np.array([[1.0], [2.0], [3.0], [3.0]]), np.ones(4))

    def test_one_dimensional_only(self):
        with pytest.raises(InvalidConfig):
            SplineRegressor().fit(np.ones((10, 2)), np.ones(10))

    def test_from_config(self):
        assert SplineRegressor.from_config(RegressionConfig(method="spline", knots=7)).knots == 7


class TestLinearBasisRegressor:
    """Test cases for polynomial least squares."""

    def test_exact_polynomial(self):
        x = np.linspace(-2.0, 2.0, 25)[:, None]
        y = 1.0 + 2.0 * x[:, 0] + 3.0 * x[:, 0] ** 2
        surrogate = LinearBasisRegressor(degree=2).fit(x, y)

        test = np.array([[-1.5], [0.3], [1.7]])
        expected = 1.0 + 2.0 * test[:, 0] + 3.0 * test[:, 0] ** 2
        assert np.allclose(surrogate.predict(test), expected, atol=1e-8)
        assert len(surrogate.coefficients) == 3

    def test_two_dimensional(self):
        rng = np.random.default_rng(1)
        x = rng.uniform(20.0, 40.0, size=(50, 2))
        y = x[:, 0] - 0.5 * x[:, 1]
        surrogate = LinearBasisRegressor(degree=1).fit(x, y)
        assert np.allclose(surrogate.predict(x), y, atol=1e-8)

    def test_weights(self):
        """Inputs with tiny noise dominate a weighted fit."""
        x = np.array([[0.0], [1.0], [2.0], [3.0]])
        y = np.array([0.0, 1.0, 2.0, 10.0])
        noise = np.array([1e-6, 1e-6, 1e-6, 1e6])
        surrogate = LinearBasisRegressor(degree=1).fit(x, y, noise)
        assert np.isclose(surrogate.predict(np.array([[1.5]]))[0], 1.5, atol=1e-3)

    def test_underdetermined(self):
        with pytest.raises(UnderdeterminedFit):
            LinearBasisRegressor(degree=3).fit(np.array([[30.0], [32.0], [34.0]]), np.ones(3))

    def test_degenerate_design(self):
        """A constant coordinate leaves the basis rank deficient."""
        x = np.column_stack([np.linspace(20.0, 40.0, 10), np.full(10, 35.0)])
        with pytest.raises(UnderdeterminedFit):
            LinearBasisRegressor(degree=1).fit(x, x[:, 0])

    def test_gradient_not_available(self):
        x = np.linspace(0.0, 1.0, 10)[:, None]
        surrogate = LinearBasisRegressor(degree=1).fit(x, x[:, 0])
        with pytest.raises(NotImplementedError):
            surrogate.gradient(x, 0)
