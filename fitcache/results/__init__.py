# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Results produced by the stages of a fit.

The submodule is organized around the two kinds of artifacts persisted by the
artifact store:

   1. :py:class:`fitcache.results.compiled.CompiledArtifact`, which holds a compiled
      model (and optionally draws from its prior) and is produced by the prior-only
      stage.
   2. :py:class:`fitcache.results.hmc.FitResult`, which holds the draws, summaries
      and diagnostics of a sampling run and is produced by the fit stage.

Users will not typically instantiate result classes directly. Instead, they are
returned by :py:class:`~fitcache.staged_fit.StagedFitPipeline`:

    >>> artifact = pipeline.build_prior("prior_pred_rt", prior_spec, rt_data)
    >>> res = pipeline.fit("fit_rt", spec, rt_data, prior_name="prior_pred_rt")
    >>> failures = res.diagnose()
"""

from fitcache.results.compiled import CompiledArtifact
from fitcache.results.hmc import FitResult, SamplerDiagnostics
