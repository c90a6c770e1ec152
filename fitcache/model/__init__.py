# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Model specification for FitCache.

This submodule describes *what* is to be computed, independent of any dataset:

    - :py:mod:`fitcache.model.formula` parses multilevel formulas such as
      ``log_rt ~ condition + (1 + condition | subject) + (1 | item)``.
    - :py:mod:`fitcache.model.families` defines the supported response families.
    - :py:mod:`fitcache.model.spec` combines a formula, a family, priors and a
      sampler configuration into an immutable
      :py:class:`~fitcache.model.spec.ModelSpec` with a compile key.
    - :py:mod:`fitcache.model.design` binds a dataset to a specification.
    - :py:mod:`fitcache.model.stan` generates the Stan program of a specification.
"""

from fitcache.model.families import Family, get_family
from fitcache.model.formula import Formula, GroupTerm
from fitcache.model.spec import ModelSpec, Prior, SamplerConfig
