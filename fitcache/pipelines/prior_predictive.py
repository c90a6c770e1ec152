# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Builds the prior-only artifacts of the workshop models and checks their priors.

For each model, the pipeline compiles the model, samples from its prior, and stores
the compiled artifact together with the prior draws under ``prior_pred_<model>``.
The fit pipeline later reuses the compiled artifact, skipping compilation.
"""

from __future__ import annotations

import argparse

from typing import Optional

import numpy as np

import fitcache

from fitcache.datasets.workshop import WORKSHOP_MODELS
from fitcache.pipelines.fit_models import build_pipeline, check_args, define_base_parser
from fitcache.staged_fit import ArtifactNames, StagedFitPipeline

# Parameters reported when present in the prior draws
REPORTED_PARAMS = (
    "b_Intercept",
    "b_conditionB",
    "sigma",
    "sd_subject__Intercept",
    "sd_subject__conditionB",
    "sd_item__Intercept",
)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Build prior-only artifacts of the workshop models.",
        parents=[define_base_parser()],
    )
    return parser.parse_args(argv)


def run_prior_checks(args: argparse.Namespace, pipeline: StagedFitPipeline) -> None:
    """Builds the prior artifacts and reports prior quantiles."""
    for model_id in args.models:
        _, prior_spec, simulate = WORKSHOP_MODELS[model_id]
        names = ArtifactNames(model_id)
        print(f"\n=== Sampling from the prior of model '{model_id}' ===")

        # The data only fixes the design. The likelihood is ignored.
        data = simulate(seed=args.seed)
        artifact = pipeline.build_prior(names.prior, prior_spec, data)
        print(f"Compiled artifact stored as '{names.prior}'")

        # Artifacts built without data carry no draws
        if artifact.prior_fit is None:
            print("No prior draws stored with this artifact.")
            continue

        # Report the prior quantiles
        params = [
            param
            for param in REPORTED_PARAMS
            if param in artifact.prior_fit.param_names
        ]
        quantiles = artifact.prior_fit.quantiles(params=params)
        print("\nPrior quantiles (link scale):")
        print(quantiles.round(3).to_string())

        # Reaction times are modeled on the log scale
        if prior_spec.formula.outcome == "log_rt":
            print("\nIntercept prior (RT scale in ms):")
            print(np.exp(quantiles.loc[["b_Intercept"]]).round(0).to_string())

    print("\n=== Prior checks complete ===")


def main(argv: Optional[list[str]] = None) -> None:
    """Main function to build the prior-only artifacts."""
    # Parse and check command line arguments
    args = parse_args(argv)
    check_args(args)

    # Seed the sampler
    fitcache.manual_seed(args.seed)

    # Run the prior checks
    run_prior_checks(args, build_pipeline(args))


if __name__ == "__main__":
    main()
