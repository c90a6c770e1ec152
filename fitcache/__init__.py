# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
FitCache: Staged compile-and-fit caching for Bayesian multilevel models in Stan.

Compiling a Stan model is usually an order of magnitude slower than fitting it to a
small or medium dataset. FitCache avoids paying that cost more than once by
splitting the work into stages whose results are persisted to disk:

    1. A prior-only compile, built from a model specification without data and
       stored under a conventional "prior" slot (typically produced while running
       prior predictive checks).
    2. A data-conditioned fit, which reuses the stored compiled artifact when one
       is available and compile-equivalent, and compiles from scratch otherwise.
    3. A final fit result, stored under its own slot so that later runs are pure
       cache hits.

Global Variables:
    RNG: Global random number generator used to draw sampler seeds
    __version__: Package version string

Example:
    >>> import fitcache as fc
    >>> fc.manual_seed(42)
    >>> pipeline = fc.StagedFitPipeline.from_settings(fc.RuntimeSettings.from_env())
    >>> spec = fc.ModelSpec(
    ...     "log_rt ~ condition + (1 + condition | subject) + (1 | item)",
    ...     "gaussian",
    ... )
    >>> res = pipeline.run("rt", spec, rt_data)
"""

from typing import Optional, TYPE_CHECKING

from typeguard import install_import_hook

import numpy as np

# Define the version
__version__ = "0.1.0"

# Set up type checking
install_import_hook("fitcache")

# Define the global random number generator
RNG: np.random.Generator
"""Global random number generator for FitCache.

Sampler seeds that are not given explicitly are drawn from this generator. It can
be seeded using the manual_seed() function to make whole workflows reproducible.

:type: np.random.Generator
"""

# Get custom types if TYPE_CHECKING is True
if TYPE_CHECKING:
    from fitcache import custom_types


def manual_seed(seed: Optional["custom_types.Integer"] = None):
    """Set the seed for the global random number generator.

    :param seed: Seed value for random number generation. If None, uses
                system entropy to generate a random seed.
    :type seed: Union[custom_types.Integer, None]

    Example:
        >>> import fitcache as fc
        >>> fc.manual_seed(42)
        >>> fc.RNG.integers(0, 10)
    """
    global RNG  # pylint: disable=global-statement
    RNG = np.random.default_rng(seed)


manual_seed()  # Set the seed for the global random number generator

# Import objects that should be easily accessible from the package level
# pylint: disable=wrong-import-position
from fitcache.config import RuntimeSettings
from fitcache.model.spec import ModelSpec, Prior, SamplerConfig
from fitcache.results import CompiledArtifact, FitResult
from fitcache.staged_fit import ArtifactNames, ArtifactState, StagedFitPipeline
from fitcache.store.artifact_store import ArtifactStore
