# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Custom exception classes for the FitCache package.

The hierarchy separates failures of the artifact store (I/O, serialization, stale
cache entries) from failures of the modeling engine (compilation, binding data to a
compiled artifact, sampling). The two must never be confused: a caller retrying
after a sampler failure should not expect a cached result to appear, and an
operator fixing a corrupt artifact does not need to touch the model.

None of these errors is retried automatically anywhere in the package.
"""

from __future__ import annotations

from typing import Any, Optional


class FitCacheError(Exception):
    """Base class for all exceptions in the FitCache package.

    Example:
        >>> try:
        ...     pipeline.fit("fit_rt", spec, data)
        ... except FitCacheError as e:
        ...     print(f"FitCache error occurred: {e}")
    """


class ArtifactStoreError(FitCacheError):
    """Raised when an artifact cannot be written to or read from the store."""


class ArtifactNotFoundError(ArtifactStoreError, FileNotFoundError):
    """Raised when loading an artifact name that has no file in the store.

    This is not an error for :py:meth:`ArtifactStore.exists`, but callers of
    :py:meth:`ArtifactStore.load` must handle it.
    """


class CorruptArtifactError(ArtifactStoreError):
    """Raised when a stored artifact cannot be deserialized or has the wrong type.

    Corrupt artifacts are never repaired automatically. The operator must delete
    the file and rerun the stage that produced it.
    """


class StaleArtifactError(ArtifactStoreError):
    """Raised when a cached artifact was produced by a model specification that is
    not compile-equivalent to the one requested.
    """


class EngineError(FitCacheError):
    """Base class for failures reported by a modeling engine.

    :param message: Error message describing the failure
    :type message: str
    :param stage: Stage of the engine call that failed ("compile", "bind", or "fit")
    :type stage: Optional[str]
    """

    stage: str = "engine"

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        return f"[{self.stage}] {super().__str__()}"


class CompileError(EngineError):
    """Raised when the engine cannot build a sampler from a model specification."""

    stage = "compile"


class BindError(EngineError):
    """Raised when a compiled artifact cannot accept the supplied dataset.

    Raised distinctly from data or sampling problems so that operators know the
    reuse path, not the data, is at fault.
    """

    stage = "bind"


class FitError(EngineError):
    """Raised when the sampler ran but failed numerically.

    :param message: Error message describing the failure
    :type message: str
    :param diagnostics: Diagnostics of the failed run, when available
    :type diagnostics: Optional[Any]
    """

    stage = "fit"

    def __init__(self, message: str, *, diagnostics: Optional[Any] = None):
        super().__init__(message)
        self.diagnostics = diagnostics
