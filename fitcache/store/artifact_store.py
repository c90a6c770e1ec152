# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Path-addressed persistence of computation results.

Each logical artifact name maps to exactly one file, ``<root>/<name>.pkl``. There
is no manifest: the presence of the file is the presence of the artifact. Writes
are atomic (temporary file, fsync, rename), so a reader never observes a partially
written artifact, and a failed write leaves the previous content, if any, in
place.

The store assumes a single writer on a single machine. It performs no locking.

Example:
    >>> store = ArtifactStore("fits")
    >>> store.save("fit_rt", res)
    >>> store.exists("fit_rt")
    True
    >>> res == store.load("fit_rt", expected_type=FitResult)
    True
"""

from __future__ import annotations

import os
import pickle
import re

from typing import Any, Optional

from fitcache import utils
from fitcache.defaults import DEFAULT_ARTIFACT_EXTENSION, DEFAULT_PICKLE_PROTOCOL
from fitcache.exceptions import (
    ArtifactNotFoundError,
    ArtifactStoreError,
    CorruptArtifactError,
)

# Logical names must be plain file names
_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


class ArtifactStore:
    """Persistence of artifacts under a root directory.

    :param root: Root directory. Created on the first save if it does not exist.
    :type root: str | os.PathLike
    :param extension: File extension of the artifacts. Defaults to ".pkl".
    :type extension: str
    """

    def __init__(
        self, root: str | os.PathLike, extension: str = DEFAULT_ARTIFACT_EXTENSION
    ):
        self.root = os.fspath(root)
        self.extension = extension

    def __repr__(self) -> str:
        return f"ArtifactStore(root={self.root!r})"

    def path(self, name: str) -> str:
        """Get the file path of a logical name.

        :param name: Logical artifact name (letters, digits, ``_``, ``.``, ``-``)
        :type name: str

        :returns: Path of the artifact file
        :rtype: str

        :raises ValueError: If the name is not a plain file name
        """
        if not _NAME_PATTERN.match(name):
            raise ValueError(
                f"Invalid artifact name '{name}'. Names may only contain letters, "
                "digits, '_', '.', and '-', and may not start with '.' or '-'."
            )
        return os.path.join(self.root, f"{name}{self.extension}")

    def exists(self, name: str) -> bool:
        """Whether an artifact is stored under `name`."""
        return os.path.isfile(self.path(name))

    def load(self, name: str, expected_type: Optional[type] = None) -> Any:
        """Load the artifact stored under `name`.

        :param name: Logical artifact name
        :type name: str
        :param expected_type: Type the artifact must have. Defaults to None (any).
        :type expected_type: Optional[type]

        :returns: The artifact
        :rtype: Any

        :raises ArtifactNotFoundError: If nothing is stored under `name`
        :raises CorruptArtifactError: If the file cannot be deserialized or holds
            an artifact of the wrong type
        """
        path = self.path(name)
        try:
            with open(path, "rb") as f:
                artifact = pickle.load(f)
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(f"No artifact named '{name}' at {path}") from e
        except (
            pickle.UnpicklingError,
            EOFError,
            AttributeError,
            ImportError,
            IndexError,
            TypeError,
            ValueError,
        ) as e:
            raise CorruptArtifactError(
                f"Artifact '{name}' at {path} cannot be deserialized. Delete it and "
                "rerun the stage that produced it."
            ) from e

        # Check the type
        if expected_type is not None and not isinstance(artifact, expected_type):
            raise CorruptArtifactError(
                f"Artifact '{name}' at {path} is a {type(artifact).__name__}, "
                f"expected a {expected_type.__name__}."
            )

        return artifact

    def save(self, name: str, artifact: Any) -> str:
        """Atomically store an artifact under `name`, replacing any previous one.

        :param name: Logical artifact name
        :type name: str
        :param artifact: Object to persist. Must be picklable.
        :type artifact: Any

        :returns: Path of the written file
        :rtype: str

        :raises ArtifactStoreError: If the artifact cannot be serialized or
            written. Nothing is left at the target path in that case.
        """
        path = self.path(name)

        # Serialize in memory first so that a pickling failure never touches disk
        try:
            payload = pickle.dumps(artifact, protocol=DEFAULT_PICKLE_PROTOCOL)
        except (pickle.PicklingError, AttributeError, TypeError) as e:
            raise ArtifactStoreError(f"Cannot serialize artifact '{name}'.") from e

        try:
            utils.atomic_write_bytes(path, payload)
        except OSError as e:
            raise ArtifactStoreError(
                f"Cannot write artifact '{name}' to {path}."
            ) from e

        return path

    def delete(self, name: str) -> None:
        """Remove the artifact stored under `name`.

        :raises ArtifactNotFoundError: If nothing is stored under `name`
        """
        path = self.path(name)
        try:
            os.remove(path)
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(f"No artifact named '{name}' at {path}") from e

    def names(self) -> list[str]:
        """Get the sorted logical names of all stored artifacts.

        Temporary files left by interrupted writes are not listed.
        """
        if not os.path.isdir(self.root):
            return []
        return sorted(
            filename[: -len(self.extension)]
            for filename in os.listdir(self.root)
            if filename.endswith(self.extension)
            and _NAME_PATTERN.match(filename[: -len(self.extension)])
            and os.path.isfile(os.path.join(self.root, filename))
        )
