"""
Regression Modules

Common contract of the timing-value surrogates plus the least-squares
variants (cubic smoothing spline, polynomial linear basis). Gaussian
process variants live in ``kriging.py``.
"""

from abc import ABC, abstractmethod
from typing import Optional, Tuple, Union

import numpy as np
from scipy.interpolate import BSpline
from sklearn.linear_model import LinearRegression
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import PolynomialFeatures, StandardScaler

from .exceptions import FitFailure, InvalidConfig, UnderdeterminedFit
from .model import RegressionConfig

Prediction = Union[np.ndarray, Tuple[np.ndarray, Optional[np.ndarray]]]


def check_training_data(inputs, outputs, noise_var=None):
    """Validate and normalise training arrays to shapes (n, d), (n,), (n,)."""
    x = np.asarray(inputs, dtype=float)
    if x.ndim == 1:
        x = x[:, None]
    y = np.asarray(outputs, dtype=float).ravel()
    if x.shape[0] != y.shape[0]:
        raise InvalidConfig(f"Got {x.shape[0]} inputs but {y.shape[0]} outputs")
    if not np.all(np.isfinite(x)) or not np.all(np.isfinite(y)):
        raise FitFailure("Training data contains non-finite values")
    if noise_var is not None:
        noise_var = np.asarray(noise_var, dtype=float).ravel()
        if noise_var.shape != y.shape:
            raise InvalidConfig(f"Got {noise_var.shape[0]} noise variances for {y.shape[0]} outputs")
        if not np.all(np.isfinite(noise_var)) or np.any(noise_var < 0):
            raise FitFailure("Noise variances must be finite and non-negative")
    return x, y, noise_var


class Surrogate(ABC):
    """
    Fitted timing-value surrogate T(k, .) of one time step.

    Immutable after construction; safe to share between readers.
    """

    dim: int = 1

    @abstractmethod
    def predict(self, x: np.ndarray, return_var: bool = False) -> Prediction:
        """
        Predict the timing value at test inputs.

        Parameters
        ----------
        x : np.ndarray
            Test inputs of shape (m, dim)
        return_var : bool, optional
            Also return the predictive variance (None when the surrogate
            has no uncertainty model)

        Returns
        -------
        np.ndarray or Tuple[np.ndarray, Optional[np.ndarray]]
            Mean of shape (m,), and variance of shape (m,) if requested
        """

    def gradient(self, x: np.ndarray, coordinate: int) -> Tuple[np.ndarray, np.ndarray]:
        raise NotImplementedError(f"{type(self).__name__} does not provide gradients")

    def __call__(self, x: np.ndarray) -> np.ndarray:
        return self.predict(x)

    def _as_inputs(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        if x.ndim == 1:
            x = x.reshape(-1, self.dim)
        return x


class Regressor(ABC):
    """Fits a Surrogate from (inputs, noisy outputs, optional noise variances)."""

    @abstractmethod
    def fit(self, inputs: np.ndarray, outputs: np.ndarray,
            noise_var: Optional[np.ndarray] = None,
            previous: Optional[Surrogate] = None) -> Surrogate:
        """
        Fit a surrogate.

        Parameters
        ----------
        inputs : np.ndarray
            Design inputs of shape (n, dim)
        outputs : np.ndarray
            Responses of shape (n,), replicate averages when replicated
        noise_var : np.ndarray, optional
            Variance of each response, used as weights or known noise
        previous : Surrogate, optional
            Earlier fit of the same step whose tuning may be reused

        Returns
        -------
        Surrogate
            Fitted surrogate
        """


class SplineSurrogate(Surrogate):

    def __init__(self, spline: BSpline, lam: float = 0.0):
        self.spline = spline
        self.lam = lam
        self.dim = 1
        k = spline.k
        self.bounds = (spline.t[k], spline.t[-k - 1])

    def predict(self, x, return_var=False):
        x = self._as_inputs(x)
        # Constant extrapolation beyond the design range
        mean = self.spline(np.clip(x[:, 0], *self.bounds))
        if return_var:
            return mean, None
        return mean


def smoothing_penalty(t: np.ndarray, k: int) -> np.ndarray:
    """
    Roughness penalty ``D^T D`` on B-spline coefficients.

    ``D`` takes second divided differences of the coefficients over the
    Greville abscissae, so coefficient vectors of linear functions are
    not penalised.
    """
    n_coef = len(t) - k - 1
    greville = np.array([t[j + 1:j + k + 1].mean() for j in range(n_coef)])
    slopes = np.diff(np.eye(n_coef), axis=0) / np.diff(greville)[:, None]
    curvature = np.diff(slopes, axis=0)
    return curvature.T @ curvature


class SplineRegressor(Regressor):
    """
    Cubic smoothing spline on one-dimensional inputs.

    The spline lives on a B-spline basis with evenly spaced interior knots
    over the design range. Coefficients minimise the weighted residual sum
    of squares plus a second-difference roughness penalty whose weight is
    chosen by generalised cross-validation.

    Parameters
    ----------
    knots : int, optional
        Number of interior knots (default: 20)
    lam : float, optional
        Fixed penalty weight; chosen by GCV when None (default)
    """

    degree = 3
    lam_grid = np.logspace(-6.0, 4.0, 41)

    def __init__(self, knots: int = 20, lam: Optional[float] = None):
        self.knots = knots
        self.lam = lam

    @classmethod
    def from_config(cls, config: RegressionConfig) -> "SplineRegressor":
        return cls(knots=config.knots)

    def basis(self, lower: float, upper: float) -> np.ndarray:
        """Clamped knot vector with evenly spaced interior knots on [lower, upper]."""
        k = self.degree
        interior = np.linspace(lower, upper, self.knots + 2)[1:-1]
        return np.concatenate([np.full(k + 1, lower), interior, np.full(k + 1, upper)])

    def fit(self, inputs, outputs, noise_var=None, previous=None):
        x, y, noise_var = check_training_data(inputs, outputs, noise_var)
        if x.shape[1] != 1:
            raise InvalidConfig("Spline regression supports one-dimensional inputs only")

        unique = np.unique(x[:, 0])
        if len(unique) < 4:
            raise UnderdeterminedFit(
                f"Cubic spline needs at least 4 unique inputs, got {len(unique)}")

        if noise_var is None:
            w = np.ones_like(y)
        else:
            w = 1.0 / np.maximum(noise_var, 1e-12)
        w = w / w.mean()

        t = self.basis(unique[0], unique[-1])
        B = BSpline.design_matrix(x[:, 0], t, self.degree).toarray()
        BtW = B.T * w
        gram = BtW @ B
        rhs = BtW @ y
        penalty = smoothing_penalty(t, self.degree)
        scale = np.trace(gram) / np.trace(penalty)

        n = len(y)
        lams = self.lam_grid if self.lam is None else [self.lam]
        best = None
        for lam in lams:
            try:
                inverse = np.linalg.inv(gram + lam * scale * penalty)
            except np.linalg.LinAlgError:
                continue
            coef = inverse @ rhs
            edf = np.sum(inverse * gram)
            resid = y - B @ coef
            gcv = n * np.sum(w * resid ** 2) / max(n - edf, 1e-8) ** 2
            if best is None or gcv < best[0]:
                best = (gcv, lam, coef)

        if best is None or not np.all(np.isfinite(best[2])):
            raise FitFailure("Smoothing spline fit produced non-finite coefficients")
        _, lam, coef = best
        return SplineSurrogate(BSpline(t, coef, self.degree), lam=lam)


class LinearBasisSurrogate(Surrogate):

    def __init__(self, pipeline, dim: int):
        self.pipeline = pipeline
        self.dim = dim

    @property
    def coefficients(self) -> np.ndarray:
        linear = self.pipeline.named_steps["linearregression"]
        return np.concatenate([[linear.intercept_], linear.coef_])

    def predict(self, x, return_var=False):
        mean = self.pipeline.predict(self._as_inputs(x))
        if return_var:
            return mean, None
        return mean


class LinearBasisRegressor(Regressor):
    """
    Weighted least squares on a polynomial basis of the standardised inputs.

    Parameters
    ----------
    degree : int, optional
        Maximal total polynomial degree (default: 3)
    """

    def __init__(self, degree: int = 3):
        self.degree = degree

    @classmethod
    def from_config(cls, config: RegressionConfig) -> "LinearBasisRegressor":
        return cls(degree=config.degree)

    def fit(self, inputs, outputs, noise_var=None, previous=None):
        x, y, noise_var = check_training_data(inputs, outputs, noise_var)

        pipeline = make_pipeline(
            StandardScaler(),
            PolynomialFeatures(degree=self.degree, include_bias=False),
            LinearRegression(),
        )
        n_params = pipeline.named_steps["polynomialfeatures"].fit(x).n_output_features_ + 1
        if x.shape[0] < n_params:
            raise UnderdeterminedFit(
                f"Degree-{self.degree} basis has {n_params} coefficients "
                f"but only {x.shape[0]} inputs")

        weights = None if noise_var is None else 1.0 / np.maximum(noise_var, 1e-12)
        try:
            pipeline.fit(x, y, linearregression__sample_weight=weights)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise FitFailure(f"Least squares fit failed: {e}")

        linear = pipeline.named_steps["linearregression"]
        if linear.rank_ < n_params - 1:
            raise UnderdeterminedFit(
                f"Degenerate design: basis rank {linear.rank_} < {n_params - 1}")
        return LinearBasisSurrogate(pipeline, x.shape[1])
