"""
Forward Policy Evaluator

Applies fitted timing-value surrogates to simulated paths: a path stops at
the first step where it is in the money and the surrogate predicts a
negative timing value, or at maturity. The same walk produces the pathwise
responses of the backward induction (over a truncated look-ahead window)
and the out-of-sample payoffs of the policy (over fresh test paths).
"""

from typing import TYPE_CHECKING, Tuple

import numpy as np
from joblib import Parallel, delayed

from .exceptions import InvalidConfig
from .model import OSPModel, RunContext
from .payoffs import in_the_money, payoff
from .simulate import PathBatch, simulate_paths

if TYPE_CHECKING:
    from .engine import FittedPolicy


def walk_policy(paths: PathBatch, policy: "FittedPolicy", model: OSPModel,
                offset: int = 0, truncate: bool = False) -> Tuple[np.ndarray, np.ndarray]:
    """
    Stopping rule induced by the surrogates along a batch of paths.

    Parameters
    ----------
    paths : PathBatch
        Paths whose step ``j`` is the absolute time step ``offset + j``
    policy : FittedPolicy
        Surrogates of the steps the walk visits
    model : OSPModel
        Payoff and discounting
    offset : int, optional
        Absolute time step of the paths' starting states (default: 0)
    truncate : bool, optional
        When the last path step precedes maturity, value surviving paths
        there by surrogate plus payoff instead of stopping them

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (payoffs discounted to ``offset``, absolute stopping steps)
    """
    horizon = paths.n_steps
    payoffs = np.zeros(paths.n_paths)
    stopped_at = np.full(paths.n_paths, offset + horizon, dtype=int)
    alive = np.ones(paths.n_paths, dtype=bool)

    for j in range(1, horizon + 1):
        step = offset + j
        states = paths.states(j)
        reward = payoff(states, model)
        discount = model.discount(j)

        if step == model.n_steps:
            payoffs[alive] = discount * reward[alive]
            stopped_at[alive] = step
            break

        if j == horizon and truncate:
            if alive.any():
                timing = policy[step].predict(states[alive])
                payoffs[alive] = discount * (timing + reward[alive])
            stopped_at[alive] = step
            break

        candidates = np.flatnonzero(alive & (reward > 0))
        if len(candidates):
            timing = policy[step].predict(states[candidates])
            stop = candidates[timing < 0]
            payoffs[stop] = discount * reward[stop]
            stopped_at[stop] = step
            alive[stop] = False

        if not alive.any():
            break

    return payoffs, stopped_at


def evaluate(test_paths: PathBatch, policy: "FittedPolicy", model: OSPModel,
             n_jobs: int = 1, chunk_size: int = 10000) -> Tuple[np.ndarray, np.ndarray]:
    """
    Out-of-sample payoffs and stopping times of a fitted policy.

    Parameters
    ----------
    test_paths : PathBatch
        Paths from step 0 to maturity, independent of all training data
    policy : FittedPolicy
        Surrogates of steps 1 .. n_steps - 1
    model : OSPModel
        Contract description
    n_jobs : int, optional
        joblib workers evaluating path chunks (default: 1)
    chunk_size : int, optional
        Paths per parallel chunk (default: 10000)

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (payoffs discounted to time 0, stopping steps)
    """
    if test_paths.n_steps != model.n_steps:
        raise InvalidConfig(
            f"Test paths have {test_paths.n_steps} steps, model has {model.n_steps}")
    policy.check_complete()

    if n_jobs == 1 or test_paths.n_paths <= chunk_size:
        return walk_policy(test_paths, policy, model)

    chunks = [np.arange(start, min(start + chunk_size, test_paths.n_paths))
              for start in range(0, test_paths.n_paths, chunk_size)]
    results = Parallel(n_jobs=n_jobs)(
        delayed(walk_policy)(test_paths.subset(chunk), policy, model) for chunk in chunks
    )
    payoffs = np.concatenate([r[0] for r in results])
    stopped_at = np.concatenate([r[1] for r in results])
    return payoffs, stopped_at


def forward_sim_policy(policy: "FittedPolicy", model: OSPModel, n_paths: int,
                       ctx: RunContext, n_jobs: int = 1) -> Tuple[np.ndarray, np.ndarray]:
    """Evaluate a policy on fresh paths drawn from the run's testing stream."""
    test_paths = simulate_paths(model.x0_vec, model.n_steps, model, ctx.testing_rng, n_paths)
    return evaluate(test_paths, policy, model, n_jobs=n_jobs)


def price_summary(payoffs: np.ndarray) -> Tuple[float, float]:
    """Monte Carlo estimate and its standard error."""
    payoffs = np.asarray(payoffs, dtype=float)
    return float(np.mean(payoffs)), float(np.std(payoffs, ddof=1) / np.sqrt(len(payoffs)))


def stopping_region(policy: "FittedPolicy", step: int, grid: np.ndarray,
                    model: OSPModel) -> np.ndarray:
    """Boolean mask of the grid states where the policy stops at ``step``."""
    grid = np.asarray(grid, dtype=float).reshape(-1, model.dim)
    stop = in_the_money(grid, model)
    if step < model.n_steps and stop.any():
        stop[stop] = policy[step].predict(grid[stop]) < 0
    return stop


def exercise_boundary(policy: "FittedPolicy", step: int, grid: np.ndarray,
                      model: OSPModel) -> Tuple[float, float]:
    """
    Extent of the stopping region of a one-dimensional problem on a grid.

    Returns
    -------
    Tuple[float, float]
        (lowest, highest) stopping grid point; NaNs when the policy
        never stops on the grid
    """
    if model.dim != 1:
        raise InvalidConfig("Exercise boundaries are defined for one-dimensional problems")
    grid = np.sort(np.asarray(grid, dtype=float).ravel())
    stop = stopping_region(policy, step, grid, model)
    if not stop.any():
        return float("nan"), float("nan")
    return float(grid[stop].min()), float(grid[stop].max())
