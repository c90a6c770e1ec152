# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Simulated psycholinguistics datasets and their models.

Two crossed designs are provided, each with subjects and items as grouping factors
and a two-level ``condition`` factor alternating between trials:

    - **Reaction times (RT)**: ``log_rt`` is normal around 6 (about 400 ms), with
      condition B slower by 0.15 on the log scale. Fit with a gaussian model.
    - **Grammaticality judgements**: ``correct`` is Bernoulli with probability
      ``expit(0.2 + 0.4 * (condition == "B"))``. Fit with a bernoulli model.

Rows are laid out as a full trial x subject x item grid (trials varying fastest)
truncated to the first ``n_subj * n_trials * n_blocks`` rows.

Example:
    >>> rt_data = simulate_rt_data()
    >>> len(rt_data)
    3000
    >>> res = pipeline.run("rt", RT_SPEC, rt_data)
"""

from __future__ import annotations

import dataclasses

from typing import Callable, Optional

import numpy as np
import pandas as pd

from scipy.special import expit

from fitcache.model.spec import ModelSpec, Prior, SamplerConfig

RT_FORMULA = "log_rt ~ condition + (1 + condition | subject) + (1 | item)"
"""Formula of the reaction time model."""

GRAM_FORMULA = "correct ~ condition + (1 + condition | subject) + (1 | item)"
"""Formula of the grammaticality judgement model."""

RT_PRIORS = (
    Prior("normal(6, 1.5)", "Intercept"),  # log(RT) around 400ms
    Prior("normal(0, 0.5)", "b"),  # effects usually < 150ms
    Prior("exponential(1)", "sigma"),
    Prior("exponential(1)", "sd"),
    Prior("lkj(2)", "cor"),
)
"""Priors of the reaction time model."""

GRAM_PRIORS = (
    Prior("normal(0, 1.5)", "Intercept"),
    Prior("normal(0, 1)", "b"),
    Prior("exponential(1)", "sd"),
    Prior("lkj(2)", "cor"),
)
"""Priors of the grammaticality judgement model."""

FIT_SAMPLER = SamplerConfig(chains=2, iter=1000, cores=2, refresh=100)
"""Sampler settings for fitting the models to data."""

PRIOR_SAMPLER = SamplerConfig(
    chains=4, iter=1000, cores=4, refresh=0, sample_prior="only"
)
"""Sampler settings for prior predictive checks."""

RT_SPEC = ModelSpec(RT_FORMULA, "gaussian", priors=RT_PRIORS, sampler=FIT_SAMPLER)
"""Reaction time model fit to data."""

RT_PRIOR_SPEC = dataclasses.replace(RT_SPEC, sampler=PRIOR_SAMPLER)
"""Reaction time model sampled from its prior. Compile-equivalent to RT_SPEC."""

GRAM_SPEC = ModelSpec(
    GRAM_FORMULA, "bernoulli", priors=GRAM_PRIORS, sampler=FIT_SAMPLER
)
"""Grammaticality judgement model fit to data."""

GRAM_PRIOR_SPEC = dataclasses.replace(GRAM_SPEC, sampler=PRIOR_SAMPLER)
"""Grammaticality judgement model sampled from its prior. Compile-equivalent to
GRAM_SPEC."""


def _design_grid(
    n_subj: int, n_trials: int, n_items: int, n_blocks: int
) -> pd.DataFrame:
    """Trial x subject x item grid with alternating conditions."""
    n_rows = n_subj * n_trials * n_blocks
    if n_blocks > n_items:
        raise ValueError("n_blocks cannot exceed n_items.")

    # Trials vary fastest, then subjects, then items
    trial, subject, item = np.meshgrid(
        np.arange(1, n_trials + 1),
        np.arange(1, n_subj + 1),
        np.arange(1, n_items + 1),
        indexing="ij",
    )
    grid = pd.DataFrame(
        {
            "trial": trial.ravel(order="F"),
            "subject": subject.ravel(order="F"),
            "item": item.ravel(order="F"),
        }
    ).iloc[:n_rows].copy()

    grid["condition"] = np.where(np.arange(n_rows) % 2 == 0, "A", "B")
    return grid.reset_index(drop=True)


def simulate_rt_data(
    seed: Optional[int] = 42,
    n_subj: int = 20,
    n_trials: int = 50,
    n_items: int = 30,
    n_blocks: int = 3,
) -> pd.DataFrame:
    """Simulate the reaction time dataset.

    :param seed: Seed for the simulation. Defaults to 42.
    :type seed: Optional[int]
    :param n_subj: Number of subjects. Defaults to 20.
    :type n_subj: int
    :param n_trials: Number of trials per subject and item. Defaults to 50.
    :type n_trials: int
    :param n_items: Number of items in the full grid. Defaults to 30.
    :type n_items: int
    :param n_blocks: Number of items actually kept. Defaults to 3.
    :type n_blocks: int

    :returns: Columns ``trial``, ``subject``, ``item``, ``condition``, ``log_rt``
        and ``rt`` (in ms), with ``n_subj * n_trials * n_blocks`` rows
    :rtype: pd.DataFrame
    """
    rng = np.random.default_rng(seed)
    data = _design_grid(n_subj, n_trials, n_items, n_blocks)
    n = len(data)
    data["log_rt"] = (
        rng.normal(6, 0.3, size=n)
        + (data["condition"] == "B").to_numpy() * 0.15
        + rng.normal(0, 0.1, size=n)
    )
    data["rt"] = np.exp(data["log_rt"])
    return data


def simulate_gram_data(
    seed: Optional[int] = 42,
    n_subj: int = 25,
    n_trials: int = 40,
    n_items: int = 30,
    n_blocks: int = 2,
) -> pd.DataFrame:
    """Simulate the grammaticality judgement dataset.

    :param seed: Seed for the simulation. Defaults to 42.
    :type seed: Optional[int]
    :param n_subj: Number of subjects. Defaults to 25.
    :type n_subj: int
    :param n_trials: Number of trials per subject and item. Defaults to 40.
    :type n_trials: int
    :param n_items: Number of items in the full grid. Defaults to 30.
    :type n_items: int
    :param n_blocks: Number of items actually kept. Defaults to 2.
    :type n_blocks: int

    :returns: Columns ``trial``, ``subject``, ``item``, ``condition``,
        ``p_correct`` and ``correct``, with ``n_subj * n_trials * n_blocks`` rows
    :rtype: pd.DataFrame
    """
    rng = np.random.default_rng(seed)
    data = _design_grid(n_subj, n_trials, n_items, n_blocks)
    data["p_correct"] = expit(0.2 + (data["condition"] == "B").to_numpy() * 0.4)
    data["correct"] = rng.binomial(1, data["p_correct"].to_numpy())
    return data


WORKSHOP_MODELS: dict[
    str, tuple[ModelSpec, ModelSpec, Callable[..., pd.DataFrame]]
] = {
    "rt": (RT_SPEC, RT_PRIOR_SPEC, simulate_rt_data),
    "gram": (GRAM_SPEC, GRAM_PRIOR_SPEC, simulate_gram_data),
}
"""Fit specification, prior specification and simulator of each workshop model,
keyed by model identifier."""
