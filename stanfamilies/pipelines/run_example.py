# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Runs one of the worked custom-family examples and saves its outputs."""

from __future__ import annotations

import argparse
import importlib
import os.path

import holoviews as hv

import stanfamilies

from stanfamilies.examples import EXAMPLES


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Fit the models of a custom-family example and compare them."
    )

    # A few required arguments
    required_group = parser.add_argument_group("required arguments")
    required_group.add_argument(
        "--example",
        type=str,
        choices=EXAMPLES,
        required=True,
        help="Example to run.",
    )
    required_group.add_argument(
        "--output_dir",
        type=str,
        required=True,
        help="Path to the folder where the output will be saved.",
    )

    # Now some optionals
    optional_group = parser.add_argument_group("optional arguments")
    optional_group.add_argument(
        "--seed",
        type=int,
        default=1025,
        help="Random seed for data simulation and sampling. Default = 1025.",
    )
    optional_group.add_argument(
        "--n_chains",
        type=int,
        default=4,
        help="Number of chains to run. Default = 4.",
    )
    optional_group.add_argument(
        "--n_warmup",
        type=int,
        default=1000,
        help="Number of warmup iterations. Default = 1000.",
    )
    optional_group.add_argument(
        "--n_samples",
        type=int,
        default=1000,
        help="Number of samples to draw after warmup. Default = 1000.",
    )
    optional_group.add_argument(
        "--force_compile",
        action="store_true",
        help="Force compilation of the models even if they are already compiled.",
    )

    return parser.parse_args()


def check_args(args: argparse.Namespace) -> None:
    """Checks command line arguments for validity."""
    if not os.path.exists(args.output_dir):
        raise ValueError(f"Output directory does not exist: {args.output_dir}.")
    if args.seed <= 0:
        raise ValueError("Seed must be a positive integer.")
    for arg in ("n_chains", "n_warmup", "n_samples"):
        if getattr(args, arg) <= 0:
            raise ValueError(f"{arg} must be a positive integer.")


def run_example(args: argparse.Namespace) -> None:
    """Run the example and write summaries, the LOO table, and plots."""
    stanfamilies.manual_seed(args.seed)
    example = importlib.import_module(f"stanfamilies.examples.{args.example}")
    output_dir = os.path.join(args.output_dir, args.example)
    os.makedirs(output_dir, exist_ok=True)

    # Fit and compare the models
    res = example.run(
        chains=args.n_chains,
        iter_warmup=args.n_warmup,
        iter_sampling=args.n_samples,
        seed=args.seed,
        output_dir=output_dir,
        force_compile=args.force_compile,
    )

    # Report each model
    for name, plot in res["plots"].items():
        fit = res[name]
        print(f"Running diagnostics for {name}...")
        _ = fit.diagnose()
        with open(
            os.path.join(output_dir, f"{name}_summary.txt"), "w", encoding="utf-8"
        ) as f:
            f.write(str(fit))
        hv.save(plot, os.path.join(output_dir, f"{name}_pp_check.html"))
        fit.save_netcdf(os.path.join(output_dir, f"{name}.nc"))

    # Save the comparison
    print(res["loo"])
    res["loo"].to_csv(os.path.join(output_dir, "loo_compare.csv"))


def main():
    """Main function to run an example."""
    args = parse_args()
    check_args(args)
    run_example(args)


if __name__ == "__main__":
    main()
