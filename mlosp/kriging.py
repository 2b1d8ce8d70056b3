"""
Gaussian Process Surrogates

Kriging regression of the timing value with an explicit prior-mean trend and
a stationary ARD kernel (squared-exponential or Matern-5/2), built on
scikit-learn's GaussianProcessRegressor. Three variants share one surrogate:

- fixed hyperparameters ("km")
- maximum likelihood hyperparameters with a nugget ("trainkm")
- heteroskedastic noise, smoothed from replicate variances ("hetgp")

Fitted surrogates expose the latent posterior mean and variance and the
closed-form posterior of partial derivatives:

d/dx_j m(x) = d/dx_j μ(x) + Σ_i ∂k(x, X_i)/∂x_j α_i,    α = K⁻¹ (y - μ(X))
Var[∂f/∂x_j] = ∂²k(x, x')/∂x_j∂x'_j |_{x=x'} - v^T K⁻¹ v,  v_i = ∂k(x, X_i)/∂x_j
"""

import warnings
from typing import Callable, Dict, NamedTuple, Optional, Tuple

import numpy as np
from scipy.linalg import solve_triangular
from sklearn.gaussian_process import GaussianProcessRegressor
from sklearn.gaussian_process.kernels import (ConstantKernel, Kernel, Matern, Product,
                                              RBF, Sum, WhiteKernel)

from .exceptions import FitFailure, UnderdeterminedFit
from .model import KernelFamily, RegressionConfig, TrendForm
from .regression import Regressor, Surrogate, check_training_data

# Smallest per-input noise passed to the covariance diagonal
JITTER = 1e-10


class KernelDerivative(NamedTuple):
    """Derivative formulas of a stationary kernel k = s2 * g(r)."""
    # dk(x, x')/dx_j given r, (x_j - x'_j), lengthscale l_j and s2
    cross: Callable[[np.ndarray, np.ndarray, float, float], np.ndarray]
    # d2k(x, x')/dx_j dx'_j at x = x'
    prior_var: Callable[[float, float], float]


def _se_cross(r, diff, lengthscale, s2):
    return -s2 * np.exp(-0.5 * r**2) * diff / lengthscale**2


def _matern52_cross(r, diff, lengthscale, s2):
    sqrt5r = np.sqrt(5.0) * r
    return -s2 * (5.0 / 3.0) * (1.0 + sqrt5r) * np.exp(-sqrt5r) * diff / lengthscale**2


KERNEL_DERIVATIVES: Dict[KernelFamily, KernelDerivative] = {
    KernelFamily.SE: KernelDerivative(
        cross=_se_cross,
        prior_var=lambda s2, lengthscale: s2 / lengthscale**2,
    ),
    KernelFamily.MATERN5_2: KernelDerivative(
        cross=_matern52_cross,
        prior_var=lambda s2, lengthscale: 5.0 * s2 / (3.0 * lengthscale**2),
    ),
}


def trend_basis(x: np.ndarray, trend: TrendForm) -> np.ndarray:
    """Regressors of the prior mean: none, intercept, or intercept + linear terms."""
    n = x.shape[0]
    if trend is TrendForm.NONE:
        return np.zeros((n, 0))
    if trend is TrendForm.CONSTANT:
        return np.ones((n, 1))
    return np.hstack([np.ones((n, 1)), x])


def _fit_trend(x, y, trend, weights) -> np.ndarray:
    basis = trend_basis(x, trend)
    if basis.shape[1] == 0:
        return np.zeros(0)
    sw = np.sqrt(weights)
    beta, _, rank, _ = np.linalg.lstsq(basis * sw[:, None], y * sw, rcond=None)
    if rank < basis.shape[1]:
        raise UnderdeterminedFit(
            f"Design does not identify the {trend.value} trend (rank {rank})")
    return beta


def _base_kernel(family: KernelFamily, lengthscale, bounds) -> Kernel:
    if family is KernelFamily.SE:
        return RBF(length_scale=lengthscale, length_scale_bounds=bounds)
    return Matern(length_scale=lengthscale, length_scale_bounds=bounds, nu=2.5)


class GPSurrogate(Surrogate):
    """
    Fitted kriging surrogate.

    Parameters
    ----------
    gp : GaussianProcessRegressor
        Fitted on the de-trended responses
    family : KernelFamily
        Kernel family, selects the derivative formulas
    trend : TrendForm
        Prior mean form
    beta : np.ndarray
        Trend coefficients
    noise_model : Surrogate, optional
        Smoothed log-noise surrogate of heteroskedastic fits
    """

    def __init__(self, gp: GaussianProcessRegressor, family: KernelFamily,
                 trend: TrendForm, beta: np.ndarray,
                 noise_model: Optional["GPSurrogate"] = None):
        self.gp = gp
        self.family = family
        self.trend = trend
        self.beta = beta
        self.noise_model = noise_model
        self.dim = gp.X_train_.shape[1]

        kernel = gp.kernel_
        if isinstance(kernel, Sum):
            self.signal_kernel, white = kernel.k1, kernel.k2
            self.nugget = float(white.noise_level)
        else:
            self.signal_kernel, self.nugget = kernel, 0.0
        if not isinstance(self.signal_kernel, Product):
            raise FitFailure(f"Unexpected fitted kernel {kernel}")
        self.signal_variance = float(self.signal_kernel.k1.constant_value)
        self.lengthscales = np.broadcast_to(
            np.asarray(self.signal_kernel.k2.length_scale, dtype=float), (self.dim,)).copy()

    @property
    def hyperparameters(self) -> Dict[str, object]:
        return {
            "kernel": self.family.value,
            "lengthscale": self.lengthscales.tolist(),
            "variance": self.signal_variance,
            "nugget": self.nugget,
            "trend": self.beta.tolist(),
        }

    def _trend(self, x: np.ndarray) -> np.ndarray:
        basis = trend_basis(x, self.trend)
        if basis.shape[1] == 0:
            return np.zeros(x.shape[0])
        return basis @ self.beta

    def predict(self, x, return_var=False):
        x = self._as_inputs(x)
        k_star = self.signal_kernel(x, self.gp.X_train_)
        mean = self._trend(x) + k_star @ self.gp.alpha_
        if not return_var:
            return mean

        v = solve_triangular(self.gp.L_, k_star.T, lower=True, check_finite=False)
        var = self.signal_variance - np.sum(v**2, axis=0)
        return mean, np.maximum(var, 0.0)

    def predict_noise(self, x) -> np.ndarray:
        """Smoothed noise variance of the responses, heteroskedastic fits only."""
        if self.noise_model is None:
            raise NotImplementedError("Surrogate has no noise model")
        return np.exp(self.noise_model.predict(x))

    def gradient(self, x, coordinate):
        """
        Posterior mean and standard error of the partial derivative of the
        timing value along one coordinate.

        Parameters
        ----------
        x : np.ndarray
            Test inputs of shape (m, dim)
        coordinate : int
            Index j of the differentiation coordinate

        Returns
        -------
        Tuple[np.ndarray, np.ndarray]
            (mean, stderr) of shape (m,)
        """
        x = self._as_inputs(x)
        if not 0 <= coordinate < self.dim:
            raise IndexError(f"coordinate {coordinate} out of range for dim={self.dim}")
        formulas = KERNEL_DERIVATIVES[self.family]

        X = self.gp.X_train_
        diff = x[:, None, :] - X[None, :, :]
        r = np.sqrt(np.sum((diff / self.lengthscales)**2, axis=2))
        lengthscale = self.lengthscales[coordinate]
        dk = formulas.cross(r, diff[:, :, coordinate], lengthscale, self.signal_variance)

        # alpha_ already weights the de-trended responses
        mean = dk @ self.gp.alpha_
        if self.trend is TrendForm.LINEAR:
            mean = mean + self.beta[1 + coordinate]

        v = solve_triangular(self.gp.L_, dk.T, lower=True, check_finite=False)
        var = formulas.prior_var(self.signal_variance, lengthscale) - np.sum(v**2, axis=0)
        return mean, np.sqrt(np.maximum(var, 0.0))


class GPRegressor(Regressor):
    """
    Kriging regressor with maximum likelihood hyperparameters.

    The trend is fitted by weighted least squares and subtracted; the
    residuals are modelled by a zero-mean GP with kernel
    ``ConstantKernel * {RBF | Matern(nu=2.5)}``. With per-input noise
    variances the noise is treated as known, otherwise a WhiteKernel nugget is
    estimated alongside the other hyperparameters.

    Parameters
    ----------
    kernel : KernelFamily
        Covariance family
    trend : TrendForm
        Prior mean form
    lengthscale_bounds, variance_bounds, nugget_bounds : Tuple[float, float]
        Likelihood optimisation boxes
    n_restarts : int
        Extra optimiser restarts from random starting points
    nugget : float
        Floor of the per-input noise variances
    random_state : int
        Seed of the optimiser restarts
    """

    optimize = True

    def __init__(self, kernel: KernelFamily = KernelFamily.MATERN5_2,
                 trend: TrendForm = TrendForm.CONSTANT,
                 lengthscale_bounds: Tuple[float, float] = (1e-2, 1e3),
                 variance_bounds: Tuple[float, float] = (1e-4, 1e4),
                 nugget_bounds: Tuple[float, float] = (1e-8, 1e2),
                 n_restarts: int = 0, nugget: float = 1e-6,
                 lengthscale: Optional[Tuple[float, ...]] = None,
                 variance: Optional[float] = None, random_state: int = 0):
        self.kernel = KernelFamily(kernel)
        self.trend = TrendForm(trend)
        self.lengthscale_bounds = lengthscale_bounds
        self.variance_bounds = variance_bounds
        self.nugget_bounds = nugget_bounds
        self.n_restarts = n_restarts
        self.nugget = nugget
        self.lengthscale = lengthscale
        self.variance = variance
        self.random_state = random_state

    @classmethod
    def from_config(cls, config: RegressionConfig) -> "GPRegressor":
        return cls(kernel=config.kernel, trend=config.trend,
                   lengthscale_bounds=config.lengthscale_bounds,
                   variance_bounds=config.variance_bounds,
                   nugget_bounds=config.nugget_bounds,
                   n_restarts=config.n_restarts, nugget=config.nugget,
                   lengthscale=config.lengthscale, variance=config.variance)

    def _initial_lengthscale(self, x: np.ndarray) -> np.ndarray:
        if self.lengthscale is not None:
            return np.broadcast_to(np.asarray(self.lengthscale), (x.shape[1],)).copy()
        spread = np.ptp(x, axis=0)
        spread[spread <= 0] = 1.0
        return np.clip(0.25 * spread, *self.lengthscale_bounds)

    def _initial_variance(self, resid: np.ndarray) -> float:
        if self.variance is not None:
            return self.variance
        return float(np.clip(np.var(resid) if np.var(resid) > 0 else 1.0,
                             *self.variance_bounds))

    def _kernel(self, x, resid, with_nugget: bool) -> Kernel:
        fixed = not self.optimize
        kernel = (ConstantKernel(self._initial_variance(resid),
                                 "fixed" if fixed else self.variance_bounds)
                  * _base_kernel(self.kernel, self._initial_lengthscale(x),
                                 "fixed" if fixed else self.lengthscale_bounds))
        if with_nugget:
            level = float(np.clip(0.1 * self._initial_variance(resid), *self.nugget_bounds))
            kernel = kernel + WhiteKernel(level, self.nugget_bounds)
        return kernel

    def _noise(self, n: int, noise_var) -> Tuple[np.ndarray, bool]:
        """Per-input noise on the covariance diagonal, and whether to estimate a nugget."""
        if noise_var is None:
            if self.optimize:
                return np.full(n, JITTER), True
            return np.full(n, max(self.nugget, JITTER)), False
        return np.maximum(noise_var, max(self.nugget, JITTER)), False

    def fit(self, inputs, outputs, noise_var=None, previous=None):
        x, y, noise_var = check_training_data(inputs, outputs, noise_var)
        return self._fit(x, y, noise_var, previous)

    def _fit(self, x, y, noise_var, previous, noise_model=None) -> GPSurrogate:
        n_trend = trend_basis(x[:1], self.trend).shape[1]
        if len(y) < max(2, n_trend + 1):
            raise UnderdeterminedFit(
                f"GP with {self.trend.value} trend needs more than {n_trend} inputs, got {len(y)}")

        weights = np.ones_like(y) if noise_var is None else 1.0 / np.maximum(noise_var, JITTER)
        beta = _fit_trend(x, y, self.trend, weights)
        resid = y - trend_basis(x, self.trend) @ beta

        alpha, with_nugget = self._noise(len(y), noise_var)
        if isinstance(previous, GPSurrogate):
            # Reuse tuned hyperparameters, refit only the posterior
            kernel, optimizer = previous.gp.kernel_, None
        else:
            kernel = self._kernel(x, resid, with_nugget)
            optimizer = "fmin_l_bfgs_b" if self.optimize else None

        gp = GaussianProcessRegressor(kernel=kernel, alpha=alpha, optimizer=optimizer,
                                      n_restarts_optimizer=self.n_restarts,
                                      normalize_y=False, random_state=self.random_state)
        try:
            gp.fit(x, resid)
        except (np.linalg.LinAlgError, ValueError) as e:
            raise FitFailure(f"GP fit failed: {e}")
        if not np.all(np.isfinite(gp.alpha_)):
            raise FitFailure("GP fit produced non-finite weights")
        return GPSurrogate(gp, self.kernel, self.trend, beta, noise_model)


class FixedGPRegressor(GPRegressor):
    """
    Kriging with fixed hyperparameters.

    Lengthscales and signal variance come from the configuration; when unset
    they default to a quarter of the input range and the residual variance.
    """

    optimize = False


class HetGPRegressor(GPRegressor):
    """
    Heteroskedastic kriging for replicated designs.

    The log of the per-input noise variances is smoothed by an auxiliary
    maximum likelihood GP; the smoothed variances are the known noise of the
    mean GP. Falls back to a homoskedastic nugget without replicate noise.
    """

    def _fit_noise_model(self, x, noise_var) -> Optional[GPSurrogate]:
        if len(noise_var) < 3:
            return None
        aux = GPRegressor(kernel=self.kernel, trend=TrendForm.CONSTANT,
                          lengthscale_bounds=self.lengthscale_bounds,
                          variance_bounds=self.variance_bounds,
                          nugget_bounds=self.nugget_bounds,
                          random_state=self.random_state)
        return aux.fit(x, np.log(np.maximum(noise_var, JITTER)))

    def fit(self, inputs, outputs, noise_var=None, previous=None):
        x, y, noise_var = check_training_data(inputs, outputs, noise_var)
        if noise_var is None:
            warnings.warn("Heteroskedastic GP needs replicate noise estimates; "
                          "estimating a homoskedastic nugget instead")
            return self._fit(x, y, None, previous)

        if isinstance(previous, GPSurrogate) and previous.noise_model is not None:
            noise_model = previous.noise_model
        else:
            noise_model = self._fit_noise_model(x, noise_var)
        if noise_model is not None:
            noise_var = np.exp(noise_model.predict(x))
        return self._fit(x, y, noise_var, previous, noise_model)
