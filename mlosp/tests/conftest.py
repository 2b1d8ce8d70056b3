"""
Shared fixtures for the optimal stopping tests.
"""

import pytest
import numpy as np
from mlosp.engine import fit_policy
from mlosp.model import OSPModel, RunContext
from mlosp.regression import Surrogate


class ConstantSurrogate(Surrogate):
    """Surrogate predicting the same timing value everywhere."""

    def __init__(self, value: float, dim: int = 1):
        self.value = value
        self.dim = dim

    def predict(self, x, return_var=False):
        x = self._as_inputs(x)
        mean = np.full(x.shape[0], self.value)
        if return_var:
            return mean, np.ones(x.shape[0])
        return mean


@pytest.fixture
def constant():
    """Factory of constant surrogates."""
    return ConstantSurrogate


@pytest.fixture
def put_model():
    """Bermudan put benchmark: S0 = 36, 25 exercise dates, fixed 25-point grid on [16, 40]."""
    return OSPModel(
        x0=(36.0,), strike=40.0, payoff="put", r=0.06, sigma=0.2, T=1.0, dt=0.04,
        regression={"method": "trainkm", "kernel": "matern5_2"},
        design={"method": "fixed", "lower": [16.0], "upper": [40.0], "size": 25, "reps": 200},
    )


@pytest.fixture
def short_put_model():
    """Bermudan put with five exercise dates and a cheap linear-basis fit."""
    return OSPModel(
        x0=(40.0,), strike=40.0, payoff="put", r=0.06, sigma=0.2, T=0.5, dt=0.1,
        regression={"method": "lm", "degree": 3},
        design={"method": "fixed", "lower": [25.0], "upper": [40.0], "size": 16, "reps": 50},
    )


@pytest.fixture
def basket_model():
    """Two-asset basket put with five exercise dates."""
    return OSPModel(
        dim=2, x0=(40.0, 40.0), strike=40.0, payoff="basket_put", r=0.06,
        sigma=0.2, corr=0.3, T=1.0, dt=0.2,
        regression={"method": "trainkm", "kernel": "matern5_2"},
        design={"method": "qmc", "lower": [25.0, 25.0], "upper": [45.0, 45.0],
                "size": 40, "reps": 10},
    )


@pytest.fixture
def ctx():
    return RunContext(seed=2024)


@pytest.fixture
def short_policy(short_put_model):
    """Fitted policy of the five-date put."""
    return fit_policy(short_put_model, RunContext(seed=11))


@pytest.fixture
def linear_sampler():
    """
    Toy response sampler: timing value x - 36 plus Gaussian noise of
    standard deviation 0.5, replicated as requested.
    """
    from mlosp.design import ResponseStats

    rng = np.random.default_rng(5)

    def sampler(inputs, reps):
        reps = np.asarray(reps, dtype=int)
        centre = np.repeat(np.asarray(inputs, dtype=float).mean(axis=1), reps)
        samples = centre - 36.0 + 0.5 * rng.standard_normal(len(centre))
        return ResponseStats.from_samples(samples, reps)

    return sampler
