# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Utility functions for the FitCache package.

This module provides the helpers shared by the store, the model specification and
the engine:

    - Canonical JSON serialization and hashing used to derive cache keys
    - Content fingerprints for pandas DataFrames
    - Atomic file writes (temporary file, fsync, rename)

Users will not typically need to interact with this module directly.
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile

from typing import TYPE_CHECKING

import pandas as pd

if TYPE_CHECKING:
    from fitcache import custom_types


def canonical_json(obj: "custom_types.JSONLike") -> str:
    """Serialize plain data to a canonical JSON string.

    Keys are sorted and separators fixed so that equal data always serializes to
    the same text.

    :param obj: Plain data (dicts, lists, strings, numbers, booleans, None)
    :type obj: custom_types.JSONLike

    :returns: Canonical JSON text
    :rtype: str
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def hash_canonical(obj: "custom_types.JSONLike") -> str:
    """Get the SHA-256 hex digest of the canonical JSON serialization of `obj`.

    :param obj: Plain data to hash
    :type obj: custom_types.JSONLike

    :returns: Hex digest
    :rtype: str
    """
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()


def hash_dataframe(data: pd.DataFrame) -> str:
    """Fingerprint the content of a DataFrame.

    The fingerprint covers column names, dtypes, index, and values. It is used for
    information only: datasets are not part of the cache key.

    :param data: DataFrame to fingerprint
    :type data: pd.DataFrame

    :returns: Hex digest
    :rtype: str
    """
    digest = hashlib.sha256()
    digest.update(
        canonical_json(
            [[str(col), str(dtype)] for col, dtype in data.dtypes.items()]
        ).encode("utf-8")
    )
    digest.update(pd.util.hash_pandas_object(data, index=True).to_numpy().tobytes())
    return digest.hexdigest()


def atomic_write_bytes(path: str, payload: bytes) -> None:
    """Write `payload` to `path` so that readers never observe a partial file.

    The bytes are written to a temporary file in the destination directory, flushed
    to disk, and then renamed onto the target. If anything fails, the temporary
    file is removed and the target is left untouched.

    :param path: Destination path. Parent directories are created if needed.
    :type path: str
    :param payload: Bytes to write
    :type payload: bytes
    """
    # Make sure the directory exists
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)

    # Write to a hidden temporary file next to the target
    fd, tmp_path = tempfile.mkstemp(
        dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
