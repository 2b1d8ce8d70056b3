"""
Unit tests for the Gaussian process surrogates.
"""

import pytest
import numpy as np
from mlosp.exceptions import FitFailure, UnderdeterminedFit
from mlosp.kriging import (KERNEL_DERIVATIVES, FixedGPRegressor, GPRegressor, GPSurrogate,
                           HetGPRegressor, trend_basis)
from mlosp.model import KernelFamily, RegressionConfig, TrendForm


def sine_data(n=30, noise=0.0, seed=0):
    rng = np.random.default_rng(seed)
    x = np.linspace(0.0, 1.0, n)[:, None]
    y = np.sin(2 * np.pi * x[:, 0]) + noise * rng.standard_normal(n)
    return x, y


def finite_difference(surrogate, x, coordinate, h=1e-5):
    shift = np.zeros_like(x)
    shift[:, coordinate] = h
    return (surrogate.predict(x + shift) - surrogate.predict(x - shift)) / (2 * h)


class TestTrend:
    """Test cases for the prior mean basis."""

    def test_basis_shapes(self):
        x = np.ones((4, 2))
        assert trend_basis(x, TrendForm.NONE).shape == (4, 0)
        assert trend_basis(x, TrendForm.CONSTANT).shape == (4, 1)
        assert trend_basis(x, TrendForm.LINEAR).shape == (4, 3)


class TestGPRegressor:
    """Test cases for maximum likelihood kriging."""

    @pytest.mark.parametrize("kernel", [KernelFamily.SE, KernelFamily.MATERN5_2])
    def test_interpolates_smooth_function(self, kernel):
        x, y = sine_data()
        surrogate = GPRegressor(kernel=kernel).fit(x, y)
        test = np.linspace(0.1, 0.9, 17)[:, None]
        assert np.max(np.abs(surrogate.predict(test) - np.sin(2 * np.pi * test[:, 0]))) < 0.05

    def test_variance_grows_away_from_data(self):
        x, y = sine_data()
        surrogate = GPRegressor().fit(x, y)
        _, var_near = surrogate.predict(x[10:11], return_var=True)
        _, var_far = surrogate.predict(np.array([[3.0]]), return_var=True)
        assert var_near[0] >= 0
        assert var_far[0] > var_near[0]
        assert var_far[0] <= surrogate.signal_variance + 1e-12

    def test_estimated_nugget(self):
        x, y = sine_data(noise=0.2, seed=1)
        surrogate = GPRegressor().fit(x, y)
        assert surrogate.nugget > 0
        assert set(surrogate.hyperparameters) == {"kernel", "lengthscale", "variance",
                                                  "nugget", "trend"}

    def test_known_noise(self):
        """Per-input noise variances replace the estimated nugget."""
        x, y = sine_data(noise=0.1, seed=2)
        surrogate = GPRegressor().fit(x, y, noise_var=np.full(len(y), 0.01))
        assert surrogate.nugget == 0.0

    def test_ard_lengthscales(self):
        rng = np.random.default_rng(3)
        x = rng.uniform(0.0, 1.0, size=(40, 2))
        y = np.sin(3 * x[:, 0]) + 0.1 * x[:, 1]
        surrogate = GPRegressor(kernel=KernelFamily.SE).fit(x, y)
        assert surrogate.lengthscales.shape == (2,)
        assert surrogate.dim == 2

    def test_reuse_previous(self):
        x, y = sine_data()
        first = GPRegressor().fit(x, y)
        x2, y2 = sine_data(n=35)
        second = GPRegressor().fit(x2, y2, previous=first)
        assert np.allclose(second.lengthscales, first.lengthscales)
        assert np.isclose(second.signal_variance, first.signal_variance)

    def test_underdetermined(self):
        with pytest.raises(UnderdeterminedFit):
            GPRegressor().fit(np.array([[1.0]]), np.array([2.0]))
        with pytest.raises(UnderdeterminedFit):
            GPRegressor(trend=TrendForm.LINEAR).fit(np.array([[1.0], [2.0]]), np.array([1.0, 2.0]))

    def test_rejects_foreign_kernel(self):
        """A regressor fitted without the scaled stationary kernel cannot be wrapped."""
        from sklearn.gaussian_process import GaussianProcessRegressor
        from sklearn.gaussian_process.kernels import RBF

        x, y = sine_data(10)
        gp = GaussianProcessRegressor(kernel=RBF(0.3), optimizer=None).fit(x, y)
        with pytest.raises(FitFailure):
            GPSurrogate(gp, KernelFamily.SE, TrendForm.NONE, np.zeros(0))

    def test_from_config(self):
        config = RegressionConfig(method="trainkm", kernel="se", trend="linear", n_restarts=2)
        regressor = GPRegressor.from_config(config)
        assert regressor.kernel is KernelFamily.SE
        assert regressor.trend is TrendForm.LINEAR
        assert regressor.n_restarts == 2


class TestFixedGPRegressor:
    """Test cases for kriging with fixed hyperparameters."""

    def test_hyperparameters_kept(self):
        x, y = sine_data()
        surrogate = FixedGPRegressor(lengthscale=(0.2,), variance=1.5, nugget=1e-4).fit(x, y)
        assert np.allclose(surrogate.lengthscales, [0.2])
        assert np.isclose(surrogate.signal_variance, 1.5)
        assert surrogate.nugget == 0.0

    def test_default_hyperparameters(self):
        x, y = sine_data()
        surrogate = FixedGPRegressor().fit(x, y)
        assert np.allclose(surrogate.lengthscales, [0.25])


class TestGradient:
    """Closed-form derivatives agree with finite differences of the mean."""

    @pytest.mark.parametrize("kernel", [KernelFamily.SE, KernelFamily.MATERN5_2])
    @pytest.mark.parametrize("trend", [TrendForm.NONE, TrendForm.CONSTANT, TrendForm.LINEAR])
    def test_matches_finite_difference(self, kernel, trend):
        x, y = sine_data(noise=0.05, seed=4)
        surrogate = GPRegressor(kernel=kernel, trend=trend).fit(x, y)
        test = np.linspace(0.05, 0.95, 11)[:, None]
        mean, stderr = surrogate.gradient(test, 0)
        assert np.allclose(mean, finite_difference(surrogate, test, 0), atol=1e-3)
        assert np.all(stderr >= 0)

    def test_two_dimensional(self):
        rng = np.random.default_rng(5)
        x = rng.uniform(25.0, 45.0, size=(40, 2))
        y = 40.0 - x.mean(axis=1) + 0.1 * rng.standard_normal(40)
        surrogate = GPRegressor(kernel=KernelFamily.MATERN5_2, trend=TrendForm.LINEAR).fit(x, y)
        test = rng.uniform(28.0, 42.0, size=(8, 2))
        for coordinate in (0, 1):
            mean, _ = surrogate.gradient(test, coordinate)
            assert np.allclose(mean, finite_difference(surrogate, test, coordinate), atol=1e-3)

    def test_stderr_larger_far_from_data(self):
        x, y = sine_data()
        surrogate = GPRegressor(kernel=KernelFamily.SE).fit(x, y)
        _, near = surrogate.gradient(np.array([[0.5]]), 0)
        _, far = surrogate.gradient(np.array([[4.0]]), 0)
        assert far[0] > near[0]

    def test_prior_variance(self):
        """Far from the data the derivative variance reverts to the prior."""
        x, y = sine_data()
        surrogate = GPRegressor(kernel=KernelFamily.SE).fit(x, y)
        _, far = surrogate.gradient(np.array([[100.0]]), 0)
        prior = KERNEL_DERIVATIVES[KernelFamily.SE].prior_var(
            surrogate.signal_variance, surrogate.lengthscales[0])
        assert np.isclose(far[0] ** 2, prior, rtol=1e-6)

    def test_coordinate_range(self):
        x, y = sine_data()
        surrogate = GPRegressor().fit(x, y)
        with pytest.raises(IndexError):
            surrogate.gradient(x, 1)


class TestHetGPRegressor:
    """Test cases for heteroskedastic kriging."""

    def test_noise_model(self):
        rng = np.random.default_rng(6)
        x = np.linspace(0.0, 1.0, 30)[:, None]
        true_noise = 0.01 + 0.2 * x[:, 0]
        y = np.sin(2 * np.pi * x[:, 0]) + np.sqrt(true_noise) * rng.standard_normal(30)
        observed = true_noise * np.exp(0.2 * rng.standard_normal(30))

        surrogate = HetGPRegressor().fit(x, y, noise_var=observed)
        assert isinstance(surrogate, GPSurrogate)
        assert surrogate.noise_model is not None
        smoothed = surrogate.predict_noise(np.array([[0.1], [0.9]]))
        assert np.all(smoothed > 0)
        assert smoothed[1] > smoothed[0]

    def test_without_replicates(self):
        x, y = sine_data(noise=0.1)
        with pytest.warns(UserWarning):
            surrogate = HetGPRegressor().fit(x, y)
        assert surrogate.noise_model is None
        with pytest.raises(NotImplementedError):
            surrogate.predict_noise(x)
