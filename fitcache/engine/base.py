# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Abstract boundary to the modeling engine.

The staged fit pipeline never compiles or samples on its own. It delegates to an
engine implementing the three operations below, and relies on the engine to report
failures with the exception types of :py:mod:`fitcache.exceptions`:

    - :py:class:`~fitcache.exceptions.CompileError` when a sampler cannot be built
    - :py:class:`~fitcache.exceptions.BindError` when a compiled artifact cannot
      accept a dataset
    - :py:class:`~fitcache.exceptions.FitError` when sampling ran but failed
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    import pandas as pd

    from fitcache.model.spec import ModelSpec, SamplerConfig
    from fitcache.results import CompiledArtifact, FitResult


class ModelingEngine(ABC):
    """Interface of the modeling engines used by the staged fit pipeline.

    Every `config` argument overrides the sampler configuration of the
    specification involved. When None, the specification's own configuration is
    used.
    """

    @abstractmethod
    def compile_only(
        self, spec: "ModelSpec", config: Optional["SamplerConfig"] = None
    ) -> "CompiledArtifact":
        """Build a reusable compiled artifact without binding any data.

        :raises CompileError: If the model cannot be compiled
        """

    @abstractmethod
    def compile_and_fit(
        self,
        spec: "ModelSpec",
        dataset: "pd.DataFrame",
        config: Optional["SamplerConfig"] = None,
    ) -> "FitResult":
        """Compile the model from scratch and fit it to `dataset`.

        :raises CompileError: If the model cannot be compiled for the dataset
        :raises FitError: If sampling fails
        """

    @abstractmethod
    def bind_and_fit(
        self,
        artifact: "CompiledArtifact",
        dataset: "pd.DataFrame",
        config: Optional["SamplerConfig"] = None,
    ) -> "FitResult":
        """Reuse a compiled artifact to fit `dataset`, skipping compilation.

        :raises BindError: If the artifact cannot accept the dataset
        :raises FitError: If sampling fails
        """
