# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Stan program generation for FitCache models.

Programs are generated from the compile-relevant fields of a model specification
only, so that one compiled executable can be reused with any dataset the model
accepts and for both prior and posterior sampling.
"""

from fitcache.model.stan.stan_code import generate_stan_code, StanProgram
