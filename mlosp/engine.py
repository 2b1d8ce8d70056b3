"""
Backward Induction Engine

Regression Monte Carlo for Bermudan-style optimal stopping. Starting from the
step before maturity and moving backwards, each step

1. obtains an in-the-money simulation design,
2. simulates look-ahead paths from every design input,
3. stops each path with the surrogates already fitted for later steps,
4. records the pathwise timing value (stopped payoff minus immediate payoff),
5. regresses those responses on the inputs to obtain T(k, .).

The surrogates of steps 1 .. n_steps - 1 form the fitted policy.
"""

import time
from functools import partial
from typing import Dict, Iterator, List, Optional

import numpy as np
import pandas as pd

from .batching import AdaptiveBatchDesign
from .design import (DesignGenerator, FixedDesign, PathDesign, QMCDesign, ResponseStats,
                     SequentialDesign, SimulationDesign)
from .exceptions import FitFailure, InvalidConfig, UnderdeterminedFit
from .forward import walk_policy
from .kriging import FixedGPRegressor, GPRegressor, HetGPRegressor
from .model import DesignMethod, OSPModel, RegressionConfig, RegressionMethod, RunContext
from .payoffs import payoff
from .regression import LinearBasisRegressor, Regressor, SplineRegressor, Surrogate
from .simulate import simulate_paths


REGRESSORS = {
    RegressionMethod.SPLINE: SplineRegressor,
    RegressionMethod.LM: LinearBasisRegressor,
    RegressionMethod.KM: FixedGPRegressor,
    RegressionMethod.TRAINKM: GPRegressor,
    RegressionMethod.HETGP: HetGPRegressor,
}


def make_regressor(config: RegressionConfig) -> Regressor:
    """Regressor of the configured method."""
    return REGRESSORS[config.method].from_config(config)


def make_design(model: OSPModel) -> DesignGenerator:
    """Design generator of the configured method."""
    cfg = model.design
    if cfg.method is DesignMethod.FIXED:
        return FixedDesign(grid=cfg.grid, reps=cfg.reps, size=cfg.size)
    if cfg.method is DesignMethod.QMC:
        return QMCDesign(size=cfg.size, reps=cfg.reps, sequence=cfg.sequence)
    if cfg.method is DesignMethod.PATH:
        return PathDesign(n_paths=cfg.n_paths, reps=cfg.reps)
    if cfg.method is DesignMethod.SEQUENTIAL:
        return SequentialDesign(
            size=cfg.size,
            initial=QMCDesign(size=cfg.init_size, reps=cfg.reps, sequence=cfg.sequence),
            candidates=cfg.candidates, reps=cfg.reps, acquisition=cfg.acquisition,
            update_freq=cfg.update_freq, gamma=cfg.ucb_gamma, budget=cfg.budget,
            sequence=cfg.sequence)
    return AdaptiveBatchDesign(
        size=cfg.size, budget=cfg.budget,
        initial=QMCDesign(size=cfg.init_size, reps=cfg.pilot_reps, sequence=cfg.sequence),
        candidates=cfg.candidates, pilot_reps=cfg.pilot_reps, batch_reps=cfg.batch_reps,
        acquisition=cfg.acquisition, update_freq=cfg.update_freq, gamma=cfg.ucb_gamma,
        sequence=cfg.sequence)


class FittedPolicy:
    """
    Ordered collection of the timing-value surrogates of steps 1 .. n_steps - 1.

    Each step is written once during the backward pass and read-only
    afterwards. Looking up a step without a surrogate raises InvalidConfig.
    """

    def __init__(self, n_steps: int):
        self.n_steps = n_steps
        self._surrogates: Dict[int, Surrogate] = {}
        self.designs: Dict[int, SimulationDesign] = {}
        self.diagnostics = pd.DataFrame()

    def add(self, step: int, surrogate: Surrogate, design: SimulationDesign) -> None:
        if not 1 <= step < self.n_steps:
            raise InvalidConfig(f"Step {step} outside 1..{self.n_steps - 1}")
        if step in self._surrogates:
            raise InvalidConfig(f"Step {step} already has a fitted surrogate")
        self._surrogates[step] = surrogate
        self.designs[step] = design

    def __getitem__(self, step: int) -> Surrogate:
        try:
            return self._surrogates[step]
        except KeyError:
            raise InvalidConfig(f"No fitted surrogate for step {step}")

    def __contains__(self, step: int) -> bool:
        return step in self._surrogates

    def __len__(self) -> int:
        return len(self._surrogates)

    def __iter__(self) -> Iterator[Surrogate]:
        return (self._surrogates[step] for step in self.steps)

    @property
    def steps(self) -> List[int]:
        return sorted(self._surrogates)

    def check_complete(self) -> None:
        missing = [k for k in range(1, self.n_steps) if k not in self._surrogates]
        if missing:
            raise InvalidConfig(f"No fitted surrogate for steps {missing}")

    def timing_value(self, step: int, x: np.ndarray) -> np.ndarray:
        return self[step].predict(x)


class BackwardInduction:
    """
    Regression Monte Carlo backward induction.

    Parameters
    ----------
    model : OSPModel
        Problem and method configuration
    regressor : Regressor, optional
        Regression method (default: resolved from ``model.regression``)
    design : DesignGenerator, optional
        Simulation design (default: resolved from ``model.design``)
    """

    def __init__(self, model: OSPModel, regressor: Optional[Regressor] = None,
                 design: Optional[DesignGenerator] = None):
        self.model = model
        self.regressor = regressor or make_regressor(model.regression)
        self.design = design or make_design(model)

    def window(self, step: int) -> int:
        """Look-ahead length w at a step, never past maturity."""
        remaining = self.model.n_steps - step
        look_ahead = self.model.design.look_ahead
        return remaining if look_ahead is None else min(look_ahead, remaining)

    def sample_responses(self, step: int, policy: FittedPolicy, inputs: np.ndarray,
                         reps: np.ndarray, rng: np.random.Generator) -> ResponseStats:
        """
        Pathwise timing-value samples at design inputs.

        Parameters
        ----------
        step : int
            Time step k of the inputs
        policy : FittedPolicy
            Surrogates of steps k+1 .. k+w
        inputs : np.ndarray
            Unique inputs of shape (n, dim)
        reps : np.ndarray
            Replicates per input
        rng : np.random.Generator
            Training stream

        Returns
        -------
        ResponseStats
            Replicate statistics of the responses per input
        """
        model = self.model
        inputs = np.asarray(inputs, dtype=float).reshape(-1, model.dim)
        reps = np.asarray(reps, dtype=int)
        start = np.repeat(inputs, reps, axis=0)

        paths = simulate_paths(start, self.window(step), model, rng)
        stopped, _ = walk_policy(paths, policy, model, offset=step, truncate=True)
        return ResponseStats.from_samples(stopped - payoff(start, model), reps)

    def fit_step(self, step: int, policy: FittedPolicy, ctx: RunContext) -> Dict:
        started = time.time()
        sampler = partial(self.sample_responses, step, policy, rng=ctx.training_rng)
        try:
            design = self.design.build(step, sampler, self.regressor, ctx)
            design.check_in_the_money(self.model)
            surrogate = self.regressor.fit(design.inputs, design.mean_response,
                                           design.noise_var)
        except (UnderdeterminedFit, FitFailure) as e:
            e.step = step
            raise
        policy.add(step, surrogate, design)

        return {
            "step": step,
            "elapsed": time.time() - started,
            "n_unique": design.n_unique,
            "n_sims": design.n_sims,
            "mean_reps": float(np.mean(design.reps)),
            "max_reps": int(np.max(design.reps)),
            "budget_exhausted": design.budget_exhausted,
        }

    def fit(self, ctx: Optional[RunContext] = None) -> FittedPolicy:
        """
        Run the backward pass from step n_steps - 1 down to step 1.

        Parameters
        ----------
        ctx : RunContext, optional
            Random streams and diagnostics of the run (default: seed 42)

        Returns
        -------
        FittedPolicy
            Surrogates of all steps with per-step diagnostics
        """
        ctx = ctx or RunContext()
        model = self.model
        policy = FittedPolicy(model.n_steps)
        self.design.prepare(model, ctx)

        ctx.log(f"Backward induction: {model.n_steps - 1} steps, "
                f"{model.regression.method.value} regression, "
                f"{model.design.method.value} design")
        rows = []
        for step in range(model.n_steps - 1, 0, -1):
            row = self.fit_step(step, policy, ctx)
            rows.append(row)
            ctx.record(**row)
            ctx.log(f"  step {step:>3}: {row['n_unique']:>5} inputs, "
                    f"{row['n_sims']:>7} simulations, {row['elapsed']:.2f}s")

        policy.diagnostics = pd.DataFrame(rows).sort_values("step").reset_index(drop=True)
        return policy


def fit_policy(model: OSPModel, ctx: Optional[RunContext] = None, **kwargs) -> FittedPolicy:
    """Fit the stopping policy of ``model`` with its configured methods."""
    return BackwardInduction(model, **kwargs).fit(ctx)
