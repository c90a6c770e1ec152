# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Fits the workshop models and saves them to the artifact store.

Each model is skipped if its fit result is already stored. Otherwise, the compiled
artifact left by the prior predictive pipeline is reused when available, and the
model is compiled from scratch when it is not.
"""

from __future__ import annotations

import argparse
import dataclasses
import os.path

from typing import Optional

import fitcache

from fitcache.config import RuntimeSettings
from fitcache.datasets.workshop import WORKSHOP_MODELS
from fitcache.staged_fit import ArtifactNames, StagedFitPipeline


def define_base_parser() -> argparse.ArgumentParser:
    """Defines the base parser shared by the workshop pipelines."""
    # Build the base parser
    parser = argparse.ArgumentParser(add_help=False)

    # Which models to run
    model_group = parser.add_argument_group("model arguments")
    model_group.add_argument(
        "--models",
        type=str,
        nargs="+",
        choices=sorted(WORKSHOP_MODELS),
        default=sorted(WORKSHOP_MODELS, reverse=True),
        help="Models to run. Default = all.",
    )

    # Now some optionals
    optional_group = parser.add_argument_group("optional arguments")
    optional_group.add_argument(
        "--fits_dir",
        type=str,
        default=None,
        help="Root directory of the artifact store. Default = $FITCACHE_DIR or 'fits'.",
    )
    optional_group.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Random seed for data simulation and sampling. Default = 42.",
    )
    optional_group.add_argument(
        "--on_stale",
        type=str,
        choices=["raise", "refit", "ignore"],
        default="raise",
        help=(
            "What to do when a stored artifact was produced by a different model. "
            "Default = raise."
        ),
    )
    optional_group.add_argument(
        "--silent",
        action="store_true",
        help="Suppress progress messages from the pipeline.",
    )

    return parser


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    # Build the parser specifically for this pipeline
    parser = argparse.ArgumentParser(
        description="Fit the workshop models, reusing compiled prior artifacts.",
        parents=[define_base_parser()],
    )

    # Add arguments specific to this pipeline
    parser.add_argument(
        "--on_bind_error",
        type=str,
        choices=["raise", "recompile"],
        default="raise",
        help="What to do when reusing a compiled artifact fails. Default = raise.",
    )
    parser.add_argument(
        "--netcdf",
        action="store_true",
        help="Also export each fit as a NetCDF file next to the stored artifact.",
    )

    return parser.parse_args(argv)


def check_args(args: argparse.Namespace) -> None:
    """Checks command line arguments for validity."""
    # Seed must be non-negative
    if args.seed < 0:
        raise ValueError("Seed must be a non-negative integer.")

    # The store root must not be a file
    if args.fits_dir is not None and os.path.isfile(args.fits_dir):
        raise ValueError(f"fits_dir is a file: {args.fits_dir}.")


def build_pipeline(args: argparse.Namespace, **kwargs) -> StagedFitPipeline:
    """Builds the pipeline from the environment and command line arguments."""
    settings = RuntimeSettings.from_env()
    if args.fits_dir is not None:
        settings = dataclasses.replace(settings, fits_dir=args.fits_dir)
    return StagedFitPipeline.from_settings(
        settings, on_stale=args.on_stale, silent=args.silent, **kwargs
    )


def run_fits(args: argparse.Namespace, pipeline: StagedFitPipeline) -> None:
    """Fits every requested model."""
    for model_id in args.models:
        spec, _, simulate = WORKSHOP_MODELS[model_id]
        names = ArtifactNames(model_id)
        print(f"\n=== Fitting model '{model_id}' ===")

        # Simulate the data
        data = simulate(seed=args.seed)
        print(f"Data: n = {len(data)} observations")
        print(f"Formula: {spec.formula}")
        print(f"Family: {spec.family}\n")

        # Fit, reusing whatever is stored
        res = pipeline.run(model_id, spec, data)
        print(f"\nFit result stored as '{names.fit}' (origin: {res.origin})")

        # Quick summary
        print("\nModel summary:")
        print(res.quantiles().round(3).to_string())
        _ = res.diagnose()

        # Export for ArviZ users
        if args.netcdf:
            path = os.path.splitext(pipeline.store.path(names.fit))[0] + ".nc"
            res.save_netcdf(path)
            print(f"Saved NetCDF export to: {path}")

    # Summary
    print("\n=== Model Fitting Complete ===")
    print("\nSaved models:")
    for model_id in args.models:
        name = ArtifactNames(model_id).fit
        if pipeline.store.exists(name):
            print(f"  {pipeline.store.path(name)}")


def main(argv: Optional[list[str]] = None) -> None:
    """Main function to fit the workshop models."""
    # Parse and check command line arguments
    args = parse_args(argv)
    check_args(args)

    # Seed the sampler
    fitcache.manual_seed(args.seed)

    # Run the fits
    pipeline = build_pipeline(args, on_bind_error=args.on_bind_error)
    run_fits(args, pipeline)


if __name__ == "__main__":
    main()
