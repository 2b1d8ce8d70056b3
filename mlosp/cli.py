"""
Command Line Interface for the Optimal Stopping Library

Fits a stopping policy by regression Monte Carlo and prices it on fresh
out-of-sample paths.
"""

import argparse
import sys
import os
import json
import time
from pathlib import Path
import pandas as pd
import numpy as np
import yaml

from .engine import fit_policy
from .exceptions import OSPError
from .forward import forward_sim_policy, price_summary
from .model import OSPModel, RunContext

DEFAULT_CONFIG = os.path.join(os.path.dirname(__file__), "config.yaml")


def load_config(config_path: str = DEFAULT_CONFIG) -> dict:
    """Load configuration from YAML file."""
    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
        return config or {}
    except FileNotFoundError:
        print(f"Warning: Config file {config_path} not found, using defaults")
        return {}


def apply_overrides(config: dict, args: argparse.Namespace) -> dict:
    """Merge command line overrides into a configuration dictionary."""
    config = dict(config)
    regression = dict(config.get("regression") or {})
    design = dict(config.get("design") or {})

    if args.method:
        regression["method"] = args.method
    if args.design:
        design["method"] = args.design
    if args.quick:
        design["reps"] = min(design.get("reps", 200), 50)
        design["n_paths"] = min(design.get("n_paths", 2000), 500)

    config["regression"] = regression
    config["design"] = design
    return config


def create_output_directory(output_dir: str) -> None:
    """Create output directory if it doesn't exist."""
    Path(output_dir).mkdir(parents=True, exist_ok=True)


def save_results(results: dict, output_dir: str) -> None:
    """Save the price estimate and run settings to JSON."""
    output_path = os.path.join(output_dir, "results.json")

    # Convert numpy types to native Python types for JSON serialization
    results_serializable = {}
    for key, value in results.items():
        if isinstance(value, np.integer):
            results_serializable[key] = int(value)
        elif isinstance(value, np.floating):
            results_serializable[key] = float(value)
        else:
            results_serializable[key] = value

    with open(output_path, 'w') as f:
        json.dump(results_serializable, f, indent=2)

    print(f"Results saved to {output_path}")


def save_diagnostics(diagnostics: pd.DataFrame, output_dir: str) -> None:
    """Save per-step backward induction diagnostics to CSV."""
    output_path = os.path.join(output_dir, "diagnostics.csv")
    diagnostics.to_csv(output_path, index=False)
    print(f"Diagnostics saved to {output_path}")


def print_results_table(results: dict, diagnostics: pd.DataFrame) -> None:
    """Print results table."""
    print("\n" + "=" * 50)
    print("PRICING RESULTS")
    print("=" * 50)

    print(f"{'Quantity':<18} {'Value':<12}")
    print("-" * 30)
    print(f"{'Price':<18} {results['price']:<12.4f}")
    print(f"{'Std. error':<18} {results['stderr']:<12.4f}")
    print(f"{'Test paths':<18} {results['test_paths']:<12}")
    print(f"{'Fit time (s)':<18} {results['fit_seconds']:<12.2f}")
    print(f"{'Eval time (s)':<18} {results['eval_seconds']:<12.2f}")

    if diagnostics.empty:
        return
    print("\n" + "=" * 50)
    print("DESIGN PER STEP")
    print("=" * 50)

    print(f"{'Step':<6} {'Inputs':<8} {'Sims':<10} {'Max reps':<10} {'Budget hit':<10}")
    print("-" * 46)
    for row in diagnostics.itertuples():
        print(f"{row.step:<6} {row.n_unique:<8} {row.n_sims:<10} "
              f"{row.max_reps:<10} {str(row.budget_exhausted):<10}")


def main():
    """Main CLI function."""
    parser = argparse.ArgumentParser(
        description="Regression Monte Carlo for Bermudan Optimal Stopping",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mlosp --method trainkm --design fixed
  mlosp --config basket.yaml --design adaptive --test-paths 50000 --jobs 4
  mlosp --quick  # Quick run with fewer replicates
        """
    )

    parser.add_argument('--config', type=str, default=DEFAULT_CONFIG,
                        help='Configuration file path')
    parser.add_argument('--method', type=str, default=None,
                        choices=['spline', 'lm', 'km', 'trainkm', 'hetgp'],
                        help='Regression method (overrides the config file)')
    parser.add_argument('--design', type=str, default=None,
                        choices=['fixed', 'qmc', 'path', 'sequential', 'adaptive'],
                        help='Simulation design (overrides the config file)')
    parser.add_argument('--test-paths', type=int, default=20000,
                        help='Number of out-of-sample paths')
    parser.add_argument('--seed', type=int, default=42,
                        help='Random seed')
    parser.add_argument('--output', type=str, default='./results',
                        help='Output directory')
    parser.add_argument('--quick', action='store_true',
                        help='Quick run with fewer replicates and test paths (5000)')
    parser.add_argument('--jobs', type=int, default=1,
                        help='Parallel workers for policy evaluation')

    args = parser.parse_args()

    # Load configuration
    config = apply_overrides(load_config(args.config), args)

    if args.quick:
        args.test_paths = 5000

    # Create output directory
    create_output_directory(args.output)

    try:
        model = OSPModel.from_dict(config)
        ctx = RunContext(seed=args.seed, verbose=True)

        print("Machine Learning for Optimal Stopping")
        print("=" * 40)
        print(f"Payoff: {model.payoff.value} (K={model.strike}, dim={model.dim})")
        print(f"Exercise dates: {model.n_steps} (dt={model.dt})")
        print(f"Regression: {model.regression.method.value}")
        print(f"Design: {model.design.method.value}")
        print(f"Test paths: {args.test_paths}")
        print(f"Output directory: {args.output}")
        print()

        print("Fitting stopping policy...")
        started = time.time()
        policy = fit_policy(model, ctx)
        fit_seconds = time.time() - started

        print("Evaluating policy on fresh paths...")
        started = time.time()
        payoffs, _ = forward_sim_policy(policy, model, args.test_paths, ctx, n_jobs=args.jobs)
        eval_seconds = time.time() - started
        price, stderr = price_summary(payoffs)

        results = {
            'price': price,
            'stderr': stderr,
            'test_paths': args.test_paths,
            'fit_seconds': fit_seconds,
            'eval_seconds': eval_seconds,
            'seed': args.seed,
            'payoff': model.payoff.value,
            'method': model.regression.method.value,
            'design': model.design.method.value,
            'n_steps': model.n_steps,
            'total_sims': int(policy.diagnostics['n_sims'].sum()),
        }

        # Save results
        print("Saving results...")
        save_results(results, args.output)
        save_diagnostics(policy.diagnostics, args.output)

        print_results_table(results, policy.diagnostics)

        print(f"\nAll results saved to: {args.output}")
        print("Files created:")
        print("  - results.json: Price estimate and run settings")
        print("  - diagnostics.csv: Per-step design diagnostics")

    except KeyboardInterrupt:
        print("\nRun interrupted by user")
        sys.exit(1)
    except (OSPError, OSError) as e:
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
