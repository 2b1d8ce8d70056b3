"""
Machine Learning for Optimal Stopping

Regression Monte Carlo engine for Bermudan-style optimal stopping problems:
backward induction over simulated paths with spline, linear-basis and
Gaussian process surrogates, space-filling, sequential and adaptively
batched simulation designs, and out-of-sample policy evaluation.

Author: mlosp contributors
Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "mlosp contributors"

from .engine import BackwardInduction, FittedPolicy, fit_policy
from .forward import evaluate, forward_sim_policy, price_summary
from .model import OSPModel, RunContext, load_model
from .exceptions import FitFailure, InvalidConfig, UnderdeterminedFit

__all__ = [
    "BackwardInduction",
    "FittedPolicy",
    "fit_policy",
    "evaluate",
    "forward_sim_policy",
    "price_summary",
    "OSPModel",
    "RunContext",
    "load_model",
    "FitFailure",
    "InvalidConfig",
    "UnderdeterminedFit",
]
