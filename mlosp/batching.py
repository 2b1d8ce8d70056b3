"""
Adaptive Batch Allocator

Sequential design under a hard simulation budget that decides, round by
round, between exploring a new input and replicating an existing one.

Both actions are scored by the contour-weighted reduction of posterior
variance they buy per simulation spent. For an input with posterior
variance s², response noise τ² and r replicates, adding Δ replicates moves
the noise of its mean from τ²/r to τ²/(r+Δ); a new input with r0 pilot
replicates contributes noise τ²/r0 where there was none. The weight
φ(m/s) concentrates effort near the exercise boundary {m = 0}.
"""

from typing import Optional, Tuple

import numpy as np
from scipy.stats import norm

from .design import (DesignGenerator, QMCDesign, ResponseStats, SequentialDesign,
                     SimulationDesign, predictive_sd)
from .exceptions import InvalidConfig
from .model import Acquisition
from .regression import Surrogate

# Floor of posterior precisions and variances
_EPS = 1e-12


def contour_weight(mean: np.ndarray, sd: np.ndarray) -> np.ndarray:
    return norm.pdf(mean / np.maximum(sd, _EPS))


class AdaptiveBatchDesign(SequentialDesign):
    """
    Adaptive batching of a sequential design.

    Parameters
    ----------
    size : int
        Target number of unique inputs
    budget : int
        Hard cap on the simulations of one time step
    initial : DesignGenerator, optional
        Initial design (default: QMCDesign(20, pilot_reps))
    candidates : int
        Candidate pool size for new inputs
    pilot_reps : int
        Replicates of a new input, at least 2 so that its noise is estimable
    batch_reps : int
        Replicates added to an existing input in one round
    acquisition : Acquisition
        Ranks candidate new inputs
    update_freq : int
        Rounds between hyperparameter re-optimisations
    """

    def __init__(self, size: int = 100, budget: int = 2000,
                 initial: Optional[DesignGenerator] = None, candidates: int = 200,
                 pilot_reps: int = 10, batch_reps: int = 10,
                 acquisition: Acquisition = Acquisition.SMCU, update_freq: int = 10,
                 gamma: float = 1.0, sequence: str = "sobol"):
        if pilot_reps < 2:
            raise InvalidConfig(f"pilot_reps must be at least 2, got {pilot_reps}")
        if budget is None:
            raise InvalidConfig("Adaptive batching requires a simulation budget")
        super().__init__(size=size,
                         initial=initial or QMCDesign(size=20, reps=pilot_reps, sequence=sequence),
                         candidates=candidates, reps=pilot_reps, acquisition=acquisition,
                         update_freq=update_freq, gamma=gamma, budget=budget,
                         sequence=sequence)
        self.pilot_reps = pilot_reps
        self.batch_reps = batch_reps

    def noise_level(self, stats: ResponseStats) -> np.ndarray:
        """Single-replicate noise per input, pooled where unavailable."""
        var = stats.sample_var
        pooled = np.nanmean(var) if np.any(np.isfinite(var)) else 1.0
        return np.where(np.isfinite(var), var, pooled)

    def new_input_gain(self, surrogate: Surrogate, pool: np.ndarray,
                       stats: ResponseStats) -> Tuple[float, int]:
        """Weighted variance reduction per simulation of the best candidate."""
        best = int(np.argmax(self.score(surrogate, pool)))
        mean, sd = predictive_sd(surrogate, pool[best:best + 1])
        s2 = sd**2
        noise = np.mean(self.noise_level(stats)) / self.pilot_reps
        reduction = s2**2 / (s2 + noise + _EPS)
        gain = contour_weight(mean, sd) * reduction / self.pilot_reps
        return float(gain[0]), best

    def replicate_gain(self, surrogate: Surrogate, inputs: np.ndarray,
                       stats: ResponseStats) -> Tuple[float, int]:
        """Best weighted variance reduction per simulation among existing inputs."""
        mean, sd = predictive_sd(surrogate, inputs)
        s2 = np.maximum(sd**2, _EPS)
        tau2 = self.noise_level(stats)
        noise_now = tau2 / stats.count
        noise_next = tau2 / (stats.count + self.batch_reps)

        # Precision contributed by everything except the input's own replicates
        other = np.maximum(1.0 / s2 - 1.0 / np.maximum(noise_now, _EPS), _EPS)
        s2_next = 1.0 / (other + 1.0 / np.maximum(noise_next, _EPS))
        gains = contour_weight(mean, sd) * np.maximum(s2 - s2_next, 0.0) / self.batch_reps
        index = int(np.argmax(gains))
        return float(gains[index]), index

    def build(self, step, sampler, regressor, ctx):
        start = self.initial.build(step, sampler, regressor, ctx)
        inputs = start.inputs
        stats = start.stats
        surrogate = regressor.fit(inputs, stats.mean, stats.noise_var)

        exhausted = False
        n_rounds = 0
        while len(inputs) < self.size:
            pool = self.candidate_pool(ctx)
            gain_new, best = self.new_input_gain(surrogate, pool, stats)
            gain_rep, index = self.replicate_gain(surrogate, inputs, stats)

            actions = [("new", self.pilot_reps, gain_new), ("replicate", self.batch_reps, gain_rep)]
            actions.sort(key=lambda action: -action[2])
            affordable = [a for a in actions if stats.total + a[1] <= self.budget]
            if not affordable:
                exhausted = True
                break

            action = affordable[0][0]
            if action == "new":
                new_input = pool[best:best + 1]
                inputs = np.vstack([inputs, new_input])
                stats = stats.concat(sampler(new_input, np.array([self.pilot_reps])))
            else:
                stats.merge(index, sampler(inputs[index:index + 1], np.array([self.batch_reps])))

            n_rounds += 1
            surrogate = self._refit(regressor, inputs, stats, surrogate, n_rounds)

        return SimulationDesign.from_stats(inputs, stats, budget_exhausted=exhausted)
