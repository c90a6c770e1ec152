# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Default configuration values for FitCache components.

This module centralizes default values used across the package, including sampler
settings, artifact naming conventions, Stan compilation options, default priors,
and diagnostic thresholds.

The module is organized into logical groups covering:
    - Sampler defaults (brms conventions: ``iter`` includes warmup)
    - Artifact store layout and naming conventions
    - Stan model compilation options
    - Default priors for parameter classes without an explicit assignment
    - Diagnostic thresholds for fit validation
    - Environment variables read by :py:mod:`fitcache.config`

Default values cannot be programmatically altered. This documentation serves as a
reference for users and developers to understand the standard configuration.
"""

from typing import Any

# Sampler defaults
DEFAULT_CHAINS: int = 4
"""Default number of Markov chains.

:type: int
"""

DEFAULT_ITER: int = 2000
"""Default total number of iterations per chain, warmup included.

:type: int
"""

DEFAULT_CORES: int = 1
"""Default number of cores requested for sampling.

The effective number of parallel chains is also capped by the operator-level
setting in :py:class:`fitcache.config.RuntimeSettings`.

:type: int
"""

DEFAULT_REFRESH: int = 100
"""Default number of iterations between sampler progress updates.

:type: int
"""

DEFAULT_ADAPT_DELTA: float = 0.8
"""Default target acceptance rate for NUTS step size adaptation.

:type: float
"""

DEFAULT_MAX_TREEDEPTH: int = 10
"""Default maximum tree depth for NUTS.

:type: int
"""

# Artifact store layout
DEFAULT_FITS_DIR: str = "fits"
"""Default root directory of the artifact store, relative to the working directory.

:type: str
"""

DEFAULT_ARTIFACT_EXTENSION: str = ".pkl"
"""File extension of persisted artifacts. One file is written per logical name.

:type: str
"""

DEFAULT_PICKLE_PROTOCOL: int = 5
"""Pickle protocol used by the artifact store. Fixed so that identical artifacts
serialize to identical bytes.

:type: int
"""

PRIOR_ARTIFACT_PREFIX: str = "prior_pred_"
"""Prefix of the conventional slot holding a prior-only compiled artifact.

:type: str
"""

FIT_ARTIFACT_PREFIX: str = "fit_"
"""Prefix of the conventional slot holding a final fit result.

:type: str
"""

# Defaults for the Stan model
DEFAULT_STANC_OPTIONS: dict[str, Any] = {"warn-pedantic": False, "O1": True}
"""Default options passed to the Stan compiler (stanc).

:type: dict[str, bool]
"""

DEFAULT_CPP_OPTIONS: dict[str, Any] = {"STAN_THREADS": True}
"""Default C++ compilation options for Stan models.

Enables threading support so that chains can run in parallel within one process.

:type: dict[str, bool]
"""

DEFAULT_MODEL_NAME: str = "model"
"""Default file stem for generated Stan programs and executables.

:type: str
"""

DEFAULT_INDENTATION: int = 4
"""Number of spaces per indentation level in generated Stan code.

:type: int
"""

# Default priors
DEFAULT_PRIORS: dict[str, str | None] = {
    "Intercept": "student_t(3, 0, 2.5)",
    "b": None,
    "sigma": "student_t(3, 0, 2.5)",
    "sd": "student_t(3, 0, 2.5)",
    "cor": "lkj(1)",
}
"""Priors used for parameter classes without an explicit assignment.

``None`` denotes a flat (improper) prior. Unlike brms, these defaults do not depend
on the data so that they can be fixed at compile time.

:type: dict[str, str | None]
"""

# Defaults for Stan diagnostics
DEFAULT_EBFMI_THRESH: float = 0.2
"""Default threshold for Energy Bayesian Fraction of Missing Information (E-BFMI).

:type: float
"""

DEFAULT_ESS_THRESH: int = 100  # Per chain
"""Default threshold for Effective Sample Size (ESS) per chain.

:type: int
"""

DEFAULT_RHAT_THRESH: float = 1.01
"""Default threshold for R-hat convergence diagnostic.

:type: float
"""

DEFAULT_QUANTILES: tuple[float, ...] = (0.025, 0.5, 0.975)
"""Default quantiles reported for parameter summaries.

:type: tuple[float, ...]
"""

# Environment variables
ENV_CORES: str = "FITCACHE_CORES"
"""Environment variable giving the operator's parallelism limit.

:type: str
"""

ENV_R_CORES: str = "MC_CORES"
"""Fallback environment variable for the parallelism limit (R's ``mc.cores``).

:type: str
"""

ENV_FITS_DIR: str = "FITCACHE_DIR"
"""Environment variable overriding the artifact store root.

:type: str
"""

ENV_CMDSTAN: str = "CMDSTAN"
"""Environment variable giving the CmdStan installation (shared with cmdstanpy).

:type: str
"""

CMDSTAN_CANDIDATE_PATHS: tuple[str, ...] = (
    "~/.cmdstanr/cmdstan",
    "~/.local/share/cmdstan",
    "/opt/cmdstan",
)
"""Locations searched for a CmdStan installation when ``CMDSTAN`` is not set.

:type: tuple[str, ...]
"""
