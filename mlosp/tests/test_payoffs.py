"""
Unit tests for payoff evaluation.
"""

import pytest
import numpy as np
from mlosp.exceptions import InvalidConfig
from mlosp.model import OSPModel, PayoffType
from mlosp.payoffs import PAYOFFS, in_the_money, payoff


def make_model(kind, dim=2, strike=40.0):
    return OSPModel(dim=dim, x0=(40.0,), strike=strike, payoff=kind)


class TestPayoffs:
    """Test cases for the payoff registry."""

    def test_registry_complete(self):
        assert set(PAYOFFS) == set(PayoffType)

    def test_put_and_call(self):
        states = np.array([[30.0], [40.0], [50.0]])
        assert np.allclose(payoff(states, make_model("put", dim=1)), [10.0, 0.0, 0.0])
        assert np.allclose(payoff(states, make_model("call", dim=1)), [0.0, 0.0, 10.0])

    def test_basket(self):
        states = np.array([[30.0, 40.0], [44.0, 46.0]])
        assert np.allclose(payoff(states, make_model("basket_put")), [5.0, 0.0])
        assert np.allclose(payoff(states, make_model("basket_call")), [0.0, 5.0])

    def test_max_and_min(self):
        states = np.array([[30.0, 44.0], [36.0, 38.0]])
        assert np.allclose(payoff(states, make_model("max_call")), [4.0, 0.0])
        assert np.allclose(payoff(states, make_model("min_put")), [10.0, 4.0])

    def test_digital_put(self):
        states = np.array([[30.0, 40.0], [40.0, 40.0], [50.0, 20.0]])
        assert np.allclose(payoff(states, make_model("digital_put")), [1.0, 0.0, 1.0])

    def test_vector_input(self):
        """A flat vector is read as one state per row in one dimension."""
        assert np.allclose(payoff(np.array([36.0, 44.0]), make_model("put", dim=1)), [4.0, 0.0])

    def test_wrong_dimension(self):
        with pytest.raises(InvalidConfig):
            payoff(np.ones((3, 3)), make_model("basket_put"))

    def test_in_the_money_is_strict(self):
        model = make_model("put", dim=1)
        mask = in_the_money(np.array([[39.99], [40.0], [41.0]]), model)
        assert list(mask) == [True, False, False]

    def test_non_negative(self):
        rng = np.random.default_rng(0)
        states = rng.uniform(10.0, 70.0, size=(200, 2))
        for kind in PayoffType:
            assert np.all(payoff(states, make_model(kind)) >= 0)
