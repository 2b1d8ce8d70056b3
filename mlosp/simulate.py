"""
State Simulator

Exact one-step simulation of a (correlated) multi-dimensional geometric
Brownian motion under the pricing measure:

X_{t+dt} = X_t * exp((r - δ - σ²/2) dt + σ sqrt(dt) Z),  Z ~ N(0, C)

and generation of path batches by repeated stepping.
"""

from typing import List, Optional

import numpy as np

from .exceptions import InvalidConfig
from .model import OSPModel


class PathBatch:
    """
    Ordered per-step state matrices of a batch of simulated trajectories.

    ``states(j)`` is the ``(n_paths, dim)`` matrix at step ``j`` relative to
    the start of the batch, ``j = 0`` being the starting states.
    """

    def __init__(self, start: np.ndarray):
        start = np.array(start, dtype=float)
        start.setflags(write=False)
        self._steps: List[np.ndarray] = [start]

    def append(self, states: np.ndarray) -> None:
        if states.shape != self._steps[0].shape:
            raise InvalidConfig(
                f"Step states have shape {states.shape}, expected {self._steps[0].shape}")
        states = np.array(states, dtype=float)
        states.setflags(write=False)
        self._steps.append(states)

    def states(self, step: int) -> np.ndarray:
        return self._steps[step]

    @property
    def n_steps(self) -> int:
        return len(self._steps) - 1

    @property
    def n_paths(self) -> int:
        return self._steps[0].shape[0]

    @property
    def dim(self) -> int:
        return self._steps[0].shape[1]

    def subset(self, index) -> "PathBatch":
        """Batch of the selected paths only."""
        batch = PathBatch(self._steps[0][index])
        for states in self._steps[1:]:
            batch.append(states[index])
        return batch

    def as_array(self) -> np.ndarray:
        """Paths as an array of shape ``(n_paths, n_steps + 1, dim)``."""
        return np.stack(self._steps, axis=1)

    def __len__(self) -> int:
        return len(self._steps)


def _cholesky(model: OSPModel) -> Optional[np.ndarray]:
    corr = model.corr_matrix
    if np.allclose(corr, np.eye(model.dim)):
        return None
    try:
        return np.linalg.cholesky(corr)
    except np.linalg.LinAlgError:
        raise InvalidConfig("Correlation matrix is not positive definite")


def advance(states: np.ndarray, model: OSPModel, dt: float,
            rng: np.random.Generator) -> np.ndarray:
    """
    Advance GBM states by one time step.

    Parameters
    ----------
    states : np.ndarray
        Current states of shape (n, dim)
    model : OSPModel
        Process parameters
    dt : float
        Time step
    rng : np.random.Generator
        Source of the Gaussian shocks

    Returns
    -------
    np.ndarray
        States after ``dt``, shape (n, dim)
    """
    states = np.asarray(states, dtype=float)
    if states.ndim != 2 or states.shape[1] != model.dim:
        raise InvalidConfig(
            f"States of shape {states.shape} do not match dim={model.dim}")

    sigma = model.sigma_vec
    drift = (model.r - model.div_vec - 0.5 * sigma**2) * dt

    z = rng.standard_normal(states.shape)
    chol = _cholesky(model)
    if chol is not None:
        z = z @ chol.T

    return states * np.exp(drift + sigma * np.sqrt(dt) * z)


def simulate_paths(x_start: np.ndarray, n_steps: int, model: OSPModel,
                   rng: np.random.Generator,
                   n_paths: Optional[int] = None) -> PathBatch:
    """
    Simulate a batch of paths forward from given starting states.

    Parameters
    ----------
    x_start : np.ndarray
        A single state of length dim (broadcast to ``n_paths`` rows) or a
        matrix of starting states of shape (n, dim)
    n_steps : int
        Number of steps of length ``model.dt`` to simulate
    model : OSPModel
        Process parameters
    rng : np.random.Generator
        Source of randomness
    n_paths : int, optional
        Number of paths when ``x_start`` is a single state

    Returns
    -------
    PathBatch
        Batch with ``n_steps + 1`` state matrices
    """
    x_start = np.asarray(x_start, dtype=float)
    if x_start.ndim == 1:
        if x_start.shape[0] != model.dim:
            raise InvalidConfig(f"Starting state has {x_start.shape[0]} entries for dim={model.dim}")
        x_start = np.tile(x_start, (n_paths or 1, 1))

    batch = PathBatch(x_start)
    current = x_start
    for _ in range(n_steps):
        current = advance(current, model, model.dt, rng)
        batch.append(current)
    return batch


def paths_differ(a: PathBatch, b: PathBatch) -> bool:
    """True when two batches of equal shape are not value-identical after step 0."""
    if a.n_steps != b.n_steps or a.n_paths != b.n_paths:
        return True
    return any(not np.array_equal(a.states(j), b.states(j)) for j in range(1, len(a)))
