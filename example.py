#!/usr/bin/env python3
"""
Example script demonstrating the mlosp library usage.

This script shows how to use the library programmatically
without the command-line interface.
"""

import numpy as np
from mlosp import OSPModel, RunContext, fit_policy, forward_sim_policy, price_summary
from mlosp.forward import exercise_boundary


def main():
    """Main example function."""
    print("Machine Learning for Optimal Stopping - Example Usage")
    print("=" * 50)

    # 1. Describe the Bermudan put
    print("1. Setting up the Bermudan put...")
    model = OSPModel(
        x0=(36.0,), strike=40.0, payoff="put", r=0.06, sigma=0.2, T=1.0, dt=0.04,
        regression={"method": "trainkm", "kernel": "matern5_2"},
        design={"method": "fixed", "lower": [16.0], "upper": [40.0], "size": 25, "reps": 200},
    )
    print(f"   Exercise dates: {model.n_steps}")

    # 2. Fit with a GP on a fixed replicated grid
    print("\n2. Fitting GP policy on a fixed grid...")
    ctx = RunContext(seed=42)
    policy = fit_policy(model, ctx)
    payoffs, _ = forward_sim_policy(policy, model, 20000, ctx)
    price, stderr = price_summary(payoffs)
    print(f"   Price: {price:.4f} +/- {stderr:.4f}")
    print(f"   Simulations: {policy.diagnostics['n_sims'].sum()}")

    # 3. Same problem with a regression spline
    print("\n3. Fitting spline policy...")
    spline_model = model.replace(regression={"method": "spline", "knots": 20})
    ctx = RunContext(seed=42)
    spline_policy = fit_policy(spline_model, ctx)
    payoffs, _ = forward_sim_policy(spline_policy, spline_model, 20000, ctx)
    price, stderr = price_summary(payoffs)
    print(f"   Price: {price:.4f} +/- {stderr:.4f}")

    # 4. Exercise boundary of the GP policy
    print("\n4. Exercise boundary (upper edge of the stopping region)...")
    grid = np.linspace(20.0, 40.0, 201)
    for step in (1, 6, 12, 18, 24):
        low, high = exercise_boundary(policy, step, grid, model)
        print(f"   t = {step * model.dt:.2f}: stop below {high:.2f}")

    # 5. Derivative of the timing value at the money
    print("\n5. Timing value slope at S = 36...")
    mean, se = policy[12].gradient(np.array([[36.0]]), coordinate=0)
    print(f"   dT/dS = {mean[0]:.4f} (s.e. {se[0]:.4f})")

    # 6. Two-dimensional basket put with adaptive batching
    print("\n6. Basket put with adaptive batching...")
    basket = OSPModel(
        dim=2, x0=(40.0,), strike=40.0, payoff="basket_put", sigma=0.2, corr=0.3,
        T=1.0, dt=0.2,
        regression={"method": "trainkm"},
        design={"method": "adaptive", "lower": [25.0, 25.0], "upper": [45.0, 45.0],
                "size": 40, "init_size": 15, "budget": 1500, "pilot_reps": 10},
    )
    ctx = RunContext(seed=7)
    basket_policy = fit_policy(basket, ctx)
    payoffs, _ = forward_sim_policy(basket_policy, basket, 20000, ctx)
    price, stderr = price_summary(payoffs)
    print(f"   Price: {price:.4f} +/- {stderr:.4f}")
    print(basket_policy.diagnostics[["step", "n_unique", "n_sims", "budget_exhausted"]])

    print("\nExample completed successfully!")


if __name__ == "__main__":
    main()
