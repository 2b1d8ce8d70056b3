"""
Payoff Evaluator

Immediate exercise rewards h(x) of the supported contracts. All payoffs are
pure functions of the states and vanish out of the money.
"""

from typing import Callable, Dict

import numpy as np

from .exceptions import InvalidConfig
from .model import OSPModel, PayoffType


def put_payoff(states: np.ndarray, strike: float) -> np.ndarray:
    return np.maximum(strike - states[:, 0], 0.0)


def call_payoff(states: np.ndarray, strike: float) -> np.ndarray:
    return np.maximum(states[:, 0] - strike, 0.0)


def basket_put_payoff(states: np.ndarray, strike: float) -> np.ndarray:
    return np.maximum(strike - states.mean(axis=1), 0.0)


def basket_call_payoff(states: np.ndarray, strike: float) -> np.ndarray:
    return np.maximum(states.mean(axis=1) - strike, 0.0)


def max_call_payoff(states: np.ndarray, strike: float) -> np.ndarray:
    return np.maximum(states.max(axis=1) - strike, 0.0)


def min_put_payoff(states: np.ndarray, strike: float) -> np.ndarray:
    return np.maximum(strike - states.min(axis=1), 0.0)


def digital_put_payoff(states: np.ndarray, strike: float) -> np.ndarray:
    return (states.mean(axis=1) < strike).astype(float)


PAYOFFS: Dict[PayoffType, Callable[[np.ndarray, float], np.ndarray]] = {
    PayoffType.PUT: put_payoff,
    PayoffType.CALL: call_payoff,
    PayoffType.BASKET_PUT: basket_put_payoff,
    PayoffType.BASKET_CALL: basket_call_payoff,
    PayoffType.MAX_CALL: max_call_payoff,
    PayoffType.MIN_PUT: min_put_payoff,
    PayoffType.DIGITAL_PUT: digital_put_payoff,
}


def payoff(states: np.ndarray, model: OSPModel) -> np.ndarray:
    """
    Immediate exercise reward of a batch of states.

    Parameters
    ----------
    states : np.ndarray
        States of shape (n, dim)
    model : OSPModel
        Contract description (payoff type and strike)

    Returns
    -------
    np.ndarray
        Rewards of shape (n,), zero out of the money
    """
    states = np.asarray(states, dtype=float)
    if states.ndim == 1:
        states = states.reshape(-1, model.dim)
    if states.shape[1] != model.dim:
        raise InvalidConfig(f"States of shape {states.shape} do not match dim={model.dim}")
    return PAYOFFS[model.payoff](states, model.strike)


def in_the_money(states: np.ndarray, model: OSPModel) -> np.ndarray:
    """Boolean mask of states with strictly positive immediate payoff."""
    return payoff(states, model) > 0
