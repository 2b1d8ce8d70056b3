"""
Simulation Design Generators

Produce the training inputs (and their replicated responses) of one time
step of the backward induction. Every generator returns a
``SimulationDesign`` restricted to the in-the-money region.

The engine hands each generator a ``sampler`` callable that simulates
pathwise timing-value responses at given inputs; sequential generators call
it repeatedly while they grow the design.
"""

import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Sequence

import numpy as np
from scipy.stats import norm, qmc

from .exceptions import InvalidConfig, UnderdeterminedFit
from .model import Acquisition, OSPModel, RunContext
from .payoffs import in_the_money
from .regression import Regressor, Surrogate
from .simulate import PathBatch, simulate_paths


class ResponseStats:
    """
    Running replicate statistics (count, mean, sum of squared deviations)
    of the pathwise responses at each unique input.
    """

    def __init__(self, count: np.ndarray, mean: np.ndarray, m2: np.ndarray):
        self.count = np.asarray(count, dtype=int)
        self.mean = np.asarray(mean, dtype=float)
        self.m2 = np.asarray(m2, dtype=float)

    @classmethod
    def from_samples(cls, samples: np.ndarray, reps: np.ndarray) -> "ResponseStats":
        """Statistics of a flat sample vector holding ``reps[i]`` draws per input."""
        reps = np.asarray(reps, dtype=int)
        owner = np.repeat(np.arange(len(reps)), reps)
        mean = np.bincount(owner, weights=samples, minlength=len(reps)) / reps
        m2 = np.bincount(owner, weights=(samples - mean[owner])**2, minlength=len(reps))
        return cls(reps, mean, m2)

    @classmethod
    def empty(cls) -> "ResponseStats":
        return cls(np.zeros(0, dtype=int), np.zeros(0), np.zeros(0))

    def concat(self, other: "ResponseStats") -> "ResponseStats":
        return ResponseStats(np.concatenate([self.count, other.count]),
                             np.concatenate([self.mean, other.mean]),
                             np.concatenate([self.m2, other.m2]))

    def merge(self, index: int, other: "ResponseStats") -> None:
        """Pool a batch of further replicates (``other``, one entry) into input ``index``."""
        n_a, n_b = self.count[index], other.count[0]
        delta = other.mean[0] - self.mean[index]
        total = n_a + n_b
        self.mean[index] += delta * n_b / total
        self.m2[index] += other.m2[0] + delta**2 * n_a * n_b / total
        self.count[index] = total

    @property
    def total(self) -> int:
        return int(self.count.sum())

    @property
    def sample_var(self) -> np.ndarray:
        """Variance of a single replicate (nan where only one replicate)."""
        with np.errstate(invalid="ignore", divide="ignore"):
            return np.where(self.count > 1, self.m2 / np.maximum(self.count - 1, 1), np.nan)

    @property
    def noise_var(self) -> Optional[np.ndarray]:
        """Variance of the replicate means, None unless every input is replicated."""
        if len(self.count) == 0 or np.any(self.count < 2):
            return None
        return self.sample_var / self.count


Sampler = Callable[[np.ndarray, np.ndarray], ResponseStats]


@dataclass
class SimulationDesign:
    """
    Training design of one time step.

    Attributes
    ----------
    inputs : np.ndarray
        Unique input locations, shape (n, dim)
    reps : np.ndarray
        Replication count of each input
    mean_response : np.ndarray
        Replicate-averaged pathwise responses
    noise_var : np.ndarray or None
        Estimated variance of ``mean_response``; None without replication
    budget_exhausted : bool
        Growth stopped on the simulation budget rather than the target size
    """
    inputs: np.ndarray
    reps: np.ndarray
    mean_response: np.ndarray
    noise_var: Optional[np.ndarray] = None
    budget_exhausted: bool = False
    stats: Optional[ResponseStats] = field(default=None, repr=False)

    @classmethod
    def from_stats(cls, inputs: np.ndarray, stats: ResponseStats,
                   budget_exhausted: bool = False) -> "SimulationDesign":
        return cls(inputs=np.asarray(inputs, dtype=float), reps=stats.count.copy(),
                   mean_response=stats.mean.copy(), noise_var=stats.noise_var,
                   budget_exhausted=budget_exhausted, stats=stats)

    @property
    def n_unique(self) -> int:
        return self.inputs.shape[0]

    @property
    def n_sims(self) -> int:
        return int(self.reps.sum())

    def check_in_the_money(self, model: OSPModel) -> None:
        if not np.all(in_the_money(self.inputs, model)):
            raise InvalidConfig("Design contains out-of-the-money inputs")


def box_grid(lower: np.ndarray, upper: np.ndarray, size: int) -> np.ndarray:
    """Regular grid on a box with about ``size`` points in total."""
    dim = len(lower)
    per_axis = max(2, int(round(size ** (1.0 / dim)))) if dim > 1 else size
    axes = [np.linspace(lo, hi, per_axis) for lo, hi in zip(lower, upper)]
    mesh = np.meshgrid(*axes, indexing="ij")
    return np.column_stack([m.ravel() for m in mesh])


def qmc_points(n: int, lower: np.ndarray, upper: np.ndarray,
               rng: np.random.Generator, sequence: str = "sobol") -> np.ndarray:
    """Scrambled low-discrepancy points mapped affinely onto a box."""
    seed = int(rng.integers(2**31 - 1))
    if sequence == "sobol":
        engine = qmc.Sobol(d=len(lower), scramble=True, seed=seed)
        sample = engine.random_base2(m=int(np.ceil(np.log2(max(n, 2)))))[:n]
    else:
        engine = qmc.Halton(d=len(lower), scramble=True, seed=seed)
        sample = engine.random(n)
    return qmc.scale(sample, lower, upper)


def itm_qmc_points(n: int, model: OSPModel, lower: np.ndarray, upper: np.ndarray,
                   rng: np.random.Generator, sequence: str = "sobol",
                   max_rounds: int = 20) -> np.ndarray:
    """
    Low-discrepancy points of a box restricted to the in-the-money region.

    Points outside the region are rejected and further batches drawn until
    ``n`` are collected or ``max_rounds`` batches have been tried.
    """
    kept = []
    n_kept = 0
    for _ in range(max_rounds):
        points = qmc_points(max(n, 16), lower, upper, rng, sequence)
        points = points[in_the_money(points, model)]
        kept.append(points)
        n_kept += len(points)
        if n_kept >= n:
            break

    points = np.vstack(kept)[:n]
    if len(points) == 0:
        raise UnderdeterminedFit("Design box does not intersect the in-the-money region")
    if len(points) < n:
        warnings.warn(f"Only {len(points)} of {n} design points fall in the money")
    return points


class DesignGenerator(ABC):
    """Produces the simulation design of a time step."""

    model: OSPModel

    def prepare(self, model: OSPModel, ctx: RunContext) -> None:
        """Per-run setup, called once before the backward pass."""
        self.model = model

    def max_sims(self) -> Optional[int]:
        """Upper bound on the simulations of one step, None when unbounded."""
        return None

    @abstractmethod
    def build(self, step: int, sampler: Sampler, regressor: Regressor,
              ctx: RunContext) -> SimulationDesign:
        """
        Build the design of one time step.

        Parameters
        ----------
        step : int
            Time step k
        sampler : Sampler
            Simulates pathwise responses: (inputs, reps) -> ResponseStats
        regressor : Regressor
            Regression method of the run (used by sequential designs)
        ctx : RunContext
            Random streams of the run

        Returns
        -------
        SimulationDesign
            In-the-money design with its responses
        """


class FixedDesign(DesignGenerator):
    """
    User-specified grid, replicated ``reps`` times per location.

    Without an explicit grid a regular grid of ``size`` points on the
    model's design box is used. Out-of-the-money locations are dropped.
    """

    def __init__(self, grid: Optional[np.ndarray] = None, reps: int = 100, size: int = 25):
        self.grid = None if grid is None else np.atleast_2d(np.asarray(grid, dtype=float))
        self.reps = reps
        self.size = size

    def prepare(self, model, ctx):
        super().prepare(model, ctx)
        if self.grid is None:
            lower, upper = model.box()
            self._grid = box_grid(lower, upper, self.size)
        else:
            grid = self.grid.T if self.grid.shape[0] == 1 and model.dim == 1 else self.grid
            self._grid = grid

    def max_sims(self):
        if self.grid is None:
            return self.size * self.reps
        # A single row may be a one-dimensional grid laid out flat
        return max(self.grid.shape) * self.reps

    def build(self, step, sampler, regressor, ctx):
        inputs = self._grid[in_the_money(self._grid, self.model)]
        if len(inputs) == 0:
            raise UnderdeterminedFit("No fixed design location is in the money")
        reps = np.full(len(inputs), self.reps)
        return SimulationDesign.from_stats(inputs, sampler(inputs, reps))


class QMCDesign(DesignGenerator):
    """
    Space-filling design: scrambled Sobol/Halton points on the design box,
    restricted to the in-the-money region, ``reps`` replicates each.
    """

    def __init__(self, size: int = 100, reps: int = 1, sequence: str = "sobol",
                 lower: Optional[Sequence[float]] = None,
                 upper: Optional[Sequence[float]] = None):
        self.size = size
        self.reps = reps
        self.sequence = sequence
        self.lower = lower
        self.upper = upper

    def prepare(self, model, ctx):
        super().prepare(model, ctx)
        lower, upper = model.box()
        self._lower = lower if self.lower is None else np.asarray(self.lower, dtype=float)
        self._upper = upper if self.upper is None else np.asarray(self.upper, dtype=float)

    def max_sims(self):
        return self.size * self.reps

    def points(self, n: int, ctx: RunContext) -> np.ndarray:
        return itm_qmc_points(n, self.model, self._lower, self._upper,
                              ctx.training_rng, self.sequence)

    def build(self, step, sampler, regressor, ctx):
        inputs = self.points(self.size, ctx)
        reps = np.full(len(inputs), self.reps)
        return SimulationDesign.from_stats(inputs, sampler(inputs, reps))


class PathDesign(DesignGenerator):
    """
    Forward-path design: the in-the-money states of a batch of training paths
    simulated from ``x0`` are the inputs at each step.

    Parameters
    ----------
    n_paths : int
        Training paths simulated once per run
    reps : int
        Look-ahead replicates per input (default: 1)
    max_size : int, optional
        Keep at most this many in-the-money states per step
    """

    def __init__(self, n_paths: int = 2000, reps: int = 1, max_size: Optional[int] = None):
        self.n_paths = n_paths
        self.reps = reps
        self.max_size = max_size
        self.paths: Optional[PathBatch] = None

    def prepare(self, model, ctx):
        super().prepare(model, ctx)
        self.paths = simulate_paths(model.x0_vec, model.n_steps, model,
                                    ctx.training_rng, self.n_paths)

    def max_sims(self):
        n_sites = self.n_paths if self.max_size is None else min(self.n_paths, self.max_size)
        return n_sites * self.reps

    def build(self, step, sampler, regressor, ctx):
        states = self.paths.states(step)
        inputs = states[in_the_money(states, self.model)]
        if self.max_size is not None:
            inputs = inputs[:self.max_size]
        if len(inputs) == 0:
            raise UnderdeterminedFit("No training path is in the money")
        reps = np.full(len(inputs), self.reps)
        return SimulationDesign.from_stats(inputs, sampler(inputs, reps))


def _straddle(mean, sd, gamma):
    return -np.abs(mean) + gamma * sd


def _targeted_mse(mean, sd, gamma):
    return sd**2 * norm.pdf(mean, loc=0.0, scale=np.sqrt(sd**2 + 1e-12))


def _contour_uncertainty(mean, sd, gamma):
    return -np.abs(mean) / np.maximum(sd, 1e-12)


ACQUISITIONS: Dict[Acquisition, Callable[[np.ndarray, np.ndarray, float], np.ndarray]] = {
    Acquisition.SMCU: _straddle,
    Acquisition.TMSE: _targeted_mse,
    Acquisition.MCU: _contour_uncertainty,
}


def predictive_sd(surrogate: Surrogate, x: np.ndarray):
    mean, var = surrogate.predict(x, return_var=True)
    if var is None:
        raise InvalidConfig(
            f"{type(surrogate).__name__} has no predictive variance; "
            "sequential designs need a GP regression method")
    return mean, np.sqrt(var)


class SequentialDesign(DesignGenerator):
    """
    Active-learning design grown one input at a time.

    Starts from ``initial`` (a small QMC design by default), then repeatedly
    adds the candidate maximising the acquisition function, where candidates
    are fresh in-the-money QMC points. The surrogate is refitted after every
    addition; hyperparameters are re-optimised every ``update_freq``
    additions and reused in between. Ties go to the first candidate.

    Parameters
    ----------
    size : int
        Target number of unique inputs
    initial : DesignGenerator, optional
        Initial design (default: QMCDesign(20, reps))
    candidates : int
        Candidate pool size per addition
    reps : int
        Replicates of every added input
    acquisition : Acquisition
        Acquisition function
    update_freq : int
        Additions between hyperparameter re-optimisations
    gamma : float
        Uncertainty weight of the straddle acquisition
    budget : int, optional
        Hard cap on simulations per step
    """

    def __init__(self, size: int = 100, initial: Optional[DesignGenerator] = None,
                 candidates: int = 200, reps: int = 10,
                 acquisition: Acquisition = Acquisition.SMCU, update_freq: int = 10,
                 gamma: float = 1.0, budget: Optional[int] = None,
                 sequence: str = "sobol"):
        self.size = size
        self.initial = initial or QMCDesign(size=20, reps=reps, sequence=sequence)
        self.candidates = candidates
        self.reps = reps
        self.acquisition = Acquisition(acquisition)
        self.update_freq = update_freq
        self.gamma = gamma
        self.budget = budget
        self.sequence = sequence
        initial_sims = self.initial.max_sims()
        if budget is not None and initial_sims is not None and initial_sims > budget:
            raise InvalidConfig(
                f"Initial design may use {initial_sims} simulations, above the budget of {budget}")

    def max_sims(self):
        return self.budget

    def prepare(self, model, ctx):
        super().prepare(model, ctx)
        self.initial.prepare(model, ctx)
        self._lower, self._upper = model.box()

    def candidate_pool(self, ctx: RunContext) -> np.ndarray:
        return itm_qmc_points(self.candidates, self.model, self._lower, self._upper,
                              ctx.training_rng, self.sequence)

    def score(self, surrogate: Surrogate, candidates: np.ndarray) -> np.ndarray:
        mean, sd = predictive_sd(surrogate, candidates)
        return ACQUISITIONS[self.acquisition](mean, sd, self.gamma)

    def _refit(self, regressor, inputs, stats, surrogate, n_added):
        previous = None if n_added % self.update_freq == 0 else surrogate
        return regressor.fit(inputs, stats.mean, stats.noise_var, previous=previous)

    def build(self, step, sampler, regressor, ctx):
        start = self.initial.build(step, sampler, regressor, ctx)
        inputs = start.inputs
        stats = start.stats
        surrogate = regressor.fit(inputs, stats.mean, stats.noise_var)

        exhausted = False
        n_added = 0
        while len(inputs) < self.size:
            if self.budget is not None and stats.total + self.reps > self.budget:
                exhausted = True
                break
            pool = self.candidate_pool(ctx)
            best = int(np.argmax(self.score(surrogate, pool)))
            new_input = pool[best:best + 1]

            inputs = np.vstack([inputs, new_input])
            stats = stats.concat(sampler(new_input, np.array([self.reps])))
            n_added += 1
            surrogate = self._refit(regressor, inputs, stats, surrogate, n_added)

        return SimulationDesign.from_stats(inputs, stats, budget_exhausted=exhausted)

