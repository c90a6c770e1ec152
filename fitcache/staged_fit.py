# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Staged compile-and-fit orchestration.

The :py:class:`StagedFitPipeline` decides, for each requested fit, between three
paths, cheapest first:

    1. **Cache hit**: a fit result is already stored under the requested name and
       was produced by a compile-equivalent specification. It is returned without
       any engine call.
    2. **Reuse**: a compiled artifact is stored under the prior slot and is
       compile-equivalent to the requested specification. The engine binds the
       dataset to it and samples, skipping compilation.
    3. **Full compile**: the engine compiles the model from scratch and samples.

Whatever the path, a newly computed result is persisted before it is returned,
and a failed engine call persists nothing.

Each artifact name moves through a small state machine. Compiled artifacts go
``ABSENT -> COMPILING -> COMPILED`` and fit results go
``ABSENT -> FITTING -> FITTED``. In-flight states are only visible while the
pipeline is working on a name; otherwise the state is derived from the store.

Example:
    >>> pipeline = StagedFitPipeline(ArtifactStore("fits"), CmdStanEngine())
    >>> pipeline.build_prior("prior_pred_rt", rt_prior_spec, rt_data)
    >>> res = pipeline.fit("fit_rt", rt_spec, rt_data, prior_name="prior_pred_rt")
    >>> pipeline.state("fit_rt")
    <ArtifactState.FITTED: 'fitted'>
"""

from __future__ import annotations

import warnings

from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Generator, Optional, TYPE_CHECKING

import pandas as pd

from fitcache import utils
from fitcache.config import RuntimeSettings
from fitcache.defaults import FIT_ARTIFACT_PREFIX, PRIOR_ARTIFACT_PREFIX
from fitcache.engine.base import ModelingEngine
from fitcache.exceptions import BindError, CorruptArtifactError, StaleArtifactError
from fitcache.results import CompiledArtifact, FitResult
from fitcache.store.artifact_store import ArtifactStore

if TYPE_CHECKING:
    from fitcache import custom_types
    from fitcache.model.spec import ModelSpec, SamplerConfig


class ArtifactState(Enum):
    """Lifecycle state of an artifact name."""

    ABSENT = "absent"
    COMPILING = "compiling"
    COMPILED = "compiled"
    FITTING = "fitting"
    FITTED = "fitted"


@dataclass(frozen=True)
class ArtifactNames:
    """Conventional artifact names of a model.

    :param model_id: Short identifier of the model (e.g., "rt")
    :type model_id: str

    Example:
        >>> names = ArtifactNames("rt")
        >>> names.prior, names.fit
        ('prior_pred_rt', 'fit_rt')
    """

    model_id: str

    @property
    def prior(self) -> str:
        """Slot of the prior-only compiled artifact."""
        return f"{PRIOR_ARTIFACT_PREFIX}{self.model_id}"

    @property
    def fit(self) -> str:
        """Slot of the final fit result."""
        return f"{FIT_ARTIFACT_PREFIX}{self.model_id}"


class StagedFitPipeline:
    """Orchestrates cache lookups, artifact reuse and engine calls.

    :param store: Store holding compiled artifacts and fit results
    :type store: ArtifactStore
    :param engine: Engine used to compile and sample
    :type engine: ModelingEngine
    :param on_bind_error: What to do when reusing a compiled artifact raises a
        BindError. "raise" (default) propagates it. "recompile" warns and compiles
        from scratch.
    :type on_bind_error: custom_types.BindFailurePolicy
    :param on_stale: What to do when a stored artifact was produced by a
        specification that is not compile-equivalent to the requested one. "raise"
        (default) raises a StaleArtifactError. "refit" warns and recomputes,
        overwriting the artifact. "ignore" warns and returns the stored artifact.
    :type on_stale: custom_types.StalePolicy
    :param silent: Whether to suppress progress messages. Defaults to False.
    :type silent: bool

    :raises ValueError: If a policy is not recognized
    """

    def __init__(
        self,
        store: ArtifactStore,
        engine: ModelingEngine,
        *,
        on_bind_error: "custom_types.BindFailurePolicy" = "raise",
        on_stale: "custom_types.StalePolicy" = "raise",
        silent: bool = False,
    ):
        if on_bind_error not in {"raise", "recompile"}:
            raise ValueError(
                f"on_bind_error must be 'raise' or 'recompile', got '{on_bind_error}'."
            )
        if on_stale not in {"raise", "refit", "ignore"}:
            raise ValueError(
                f"on_stale must be 'raise', 'refit', or 'ignore', got '{on_stale}'."
            )

        self.store = store
        self.engine = engine
        self.on_bind_error = on_bind_error
        self.on_stale = on_stale
        self.silent = silent

        # Names the pipeline is currently working on
        self._in_flight: dict[str, ArtifactState] = {}

    @classmethod
    def from_settings(
        cls, settings: Optional[RuntimeSettings] = None, **kwargs
    ) -> "StagedFitPipeline":
        """Build a pipeline with the default store and the CmdStan engine.

        :param settings: Operator settings. Defaults to None (read from the
            environment).
        :type settings: Optional[RuntimeSettings]
        :param kwargs: Keyword arguments forwarded to the constructor

        :returns: The pipeline
        :rtype: StagedFitPipeline
        """
        # pylint: disable=import-outside-toplevel
        from fitcache.engine.cmdstan_engine import CmdStanEngine

        settings = RuntimeSettings.from_env() if settings is None else settings
        return cls(ArtifactStore(settings.fits_dir), CmdStanEngine(settings), **kwargs)

    def _report(self, message: str) -> None:
        """Print a progress message unless silent."""
        if not self.silent:
            print(message)

    @contextmanager
    def _working_on(
        self, name: str, state: ArtifactState
    ) -> Generator[None, None, None]:
        """Marks `name` as in flight for the duration of the block."""
        self._in_flight[name] = state
        try:
            yield
        finally:
            del self._in_flight[name]

    def state(self, name: str) -> ArtifactState:
        """Get the lifecycle state of an artifact name.

        :param name: Artifact name
        :type name: str

        :returns: The in-flight state if the pipeline is working on `name`, else
            the state implied by the stored artifact
        :rtype: ArtifactState

        :raises CorruptArtifactError: If the stored artifact cannot be read or is of
            an unknown type
        """
        if name in self._in_flight:
            return self._in_flight[name]
        if not self.store.exists(name):
            return ArtifactState.ABSENT

        artifact = self.store.load(name)
        if isinstance(artifact, CompiledArtifact):
            return ArtifactState.COMPILED
        if isinstance(artifact, FitResult):
            return ArtifactState.FITTED
        raise CorruptArtifactError(
            f"Artifact '{name}' holds an unexpected {type(artifact).__name__}."
        )

    def _handle_stale(self, name: str, kind: str) -> bool:
        """Apply the stale policy. Returns whether the stored artifact is kept."""
        message = (
            f"Stored {kind} '{name}' was produced by a model that is not "
            "compile-equivalent to the one requested"
        )
        if self.on_stale == "raise":
            raise StaleArtifactError(
                f"{message}. Delete it or use another name to recompute."
            )
        if self.on_stale == "ignore":
            warnings.warn(f"{message}. Returning it anyway.")
            return True
        warnings.warn(f"{message}. Recomputing.")
        return False

    def _load_reusable(
        self, prior_name: Optional[str], spec: "ModelSpec"
    ) -> Optional[CompiledArtifact]:
        """Load the compiled artifact under `prior_name` if it can serve `spec`."""
        if prior_name is None or not self.store.exists(prior_name):
            return None

        artifact = self.store.load(prior_name, expected_type=CompiledArtifact)
        if artifact.compile_key != spec.compile_key():
            warnings.warn(
                f"Compiled artifact '{prior_name}' is not compile-equivalent to the "
                "requested model and will not be reused."
            )
            return None

        return artifact

    def _run_engine(
        self,
        spec: "ModelSpec",
        dataset: pd.DataFrame,
        artifact: Optional[CompiledArtifact],
        config: Optional["SamplerConfig"] = None,
    ) -> FitResult:
        """Fit through the reuse path when an artifact is available."""
        config = spec.sampler if config is None else config

        # No artifact to reuse
        if artifact is None:
            self._report("Compiling and fitting the model...")
            return self.engine.compile_and_fit(spec, dataset, config)

        # Reuse the artifact, falling back to a full compile only if configured
        self._report("Reusing the compiled model...")
        try:
            return self.engine.bind_and_fit(artifact, dataset, config)
        except BindError as e:
            if self.on_bind_error == "raise":
                raise
            warnings.warn(f"Reusing the compiled model failed ({e}). Recompiling.")
            return self.engine.compile_and_fit(spec, dataset, config)

    def fit(
        self,
        name: str,
        spec: "ModelSpec",
        dataset: Optional[pd.DataFrame] = None,
        *,
        prior_name: Optional[str] = None,
    ) -> FitResult:
        """Get the fit result stored under `name`, computing it if needed.

        :param name: Artifact name of the fit result
        :type name: str
        :param spec: Model to fit
        :type spec: ModelSpec
        :param dataset: Dataset to fit. Only needed if the result is not cached.
        :type dataset: Optional[pd.DataFrame]
        :param prior_name: Artifact name of a compiled artifact to reuse. Defaults
            to None (always compile on a cache miss).
        :type prior_name: Optional[str]

        :returns: The fit result
        :rtype: FitResult

        :raises StaleArtifactError: If the cached result is not compile-equivalent
            and the stale policy is "raise"
        :raises ValueError: If the result must be computed and no dataset is given
        :raises CompileError: If compilation fails
        :raises BindError: If reusing the compiled artifact fails and the bind
            error policy is "raise"
        :raises FitError: If sampling fails
        :raises ArtifactStoreError: If the store cannot be read or written
        """
        # Cache hit
        if self.store.exists(name):
            cached = self.store.load(name, expected_type=FitResult)
            if cached.compile_key == spec.compile_key() or self._handle_stale(
                name, "fit result"
            ):
                self._check_dataset(name, cached, dataset)
                self._report(f"Loaded fit result '{name}' from {self.store.path(name)}")
                return cached

        # Cache miss
        if dataset is None:
            raise ValueError(
                f"Fit result '{name}' is not cached and no data was given."
            )
        artifact = self._load_reusable(prior_name, spec)
        with self._working_on(name, ArtifactState.FITTING):
            res = self._run_engine(spec, dataset, artifact)
            self.store.save(name, res)

        self._report(f"Saved fit result '{name}' to {self.store.path(name)}")
        return res

    def _check_dataset(
        self, name: str, cached: FitResult, dataset: Optional[pd.DataFrame]
    ) -> None:
        """Warns if a cached result was fit to a different dataset."""
        if dataset is None or cached.data_hash is None:
            return
        if utils.hash_dataframe(dataset) != cached.data_hash:
            warnings.warn(
                f"Fit result '{name}' was computed from a different dataset. "
                "Delete it to refit."
            )

    def build_prior(
        self,
        name: str,
        spec: "ModelSpec",
        dataset: Optional[pd.DataFrame] = None,
    ) -> CompiledArtifact:
        """Get the compiled artifact stored under `name`, compiling it if needed.

        When a dataset is given, draws from the prior are taken with the freshly
        compiled model and attached to the artifact for prior predictive checks.

        :param name: Artifact name of the compiled artifact
        :type name: str
        :param spec: Model to compile
        :type spec: ModelSpec
        :param dataset: Dataset used to draw from the prior. Defaults to None (no
            prior draws).
        :type dataset: Optional[pd.DataFrame]

        :returns: The compiled artifact
        :rtype: CompiledArtifact

        :raises StaleArtifactError: If the stored artifact is not compile-equivalent
            and the stale policy is "raise"
        :raises CompileError: If compilation fails
        :raises BindError: If the dataset cannot be bound to the compiled model
        :raises FitError: If sampling from the prior fails
        """
        # Already compiled
        if self.store.exists(name):
            cached = self.store.load(name, expected_type=CompiledArtifact)
            if cached.compile_key == spec.compile_key() or self._handle_stale(
                name, "compiled artifact"
            ):
                self._report(
                    f"Loaded compiled artifact '{name}' from {self.store.path(name)}"
                )
                return cached

        with self._working_on(name, ArtifactState.COMPILING):
            self._report("Compiling the model...")
            artifact = self.engine.compile_only(spec, spec.sampler)

            # Draw from the prior
            if dataset is not None:
                self._report("Sampling from the prior...")
                prior_fit = self.engine.bind_and_fit(
                    artifact, dataset, spec.sampler.replace(sample_prior="only")
                )
                artifact = artifact.with_prior_fit(prior_fit)

            self.store.save(name, artifact)

        self._report(f"Saved compiled artifact '{name}' to {self.store.path(name)}")
        return artifact

    def run(
        self, model_id: str, spec: "ModelSpec", dataset: Optional[pd.DataFrame] = None
    ) -> FitResult:
        """Fit a model using the conventional artifact names.

        The result is stored under ``fit_<model_id>``, and a compiled artifact
        stored under ``prior_pred_<model_id>`` is reused when possible.

        :param model_id: Short identifier of the model (e.g., "rt")
        :type model_id: str
        :param spec: Model to fit
        :type spec: ModelSpec
        :param dataset: Dataset to fit
        :type dataset: Optional[pd.DataFrame]

        :returns: The fit result
        :rtype: FitResult
        """
        names = ArtifactNames(model_id)
        return self.fit(names.fit, spec, dataset, prior_name=names.prior)
