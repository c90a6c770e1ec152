# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Lists and invalidates artifacts in the artifact store.

Stored artifacts are never invalidated automatically. Use this script to inspect
the store and to delete artifacts that should be recomputed:

    python -m fitcache.pipelines.manage_cache list
    python -m fitcache.pipelines.manage_cache delete fit_rt prior_pred_rt
"""

from __future__ import annotations

import argparse
import os

from typing import Optional

from fitcache.defaults import DEFAULT_FITS_DIR, ENV_FITS_DIR
from fitcache.exceptions import ArtifactNotFoundError, CorruptArtifactError
from fitcache.results import CompiledArtifact, FitResult
from fitcache.store.artifact_store import ArtifactStore


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Manage the artifact store.")
    parser.add_argument(
        "--fits_dir",
        type=str,
        default=None,
        help="Root directory of the artifact store. Default = $FITCACHE_DIR or 'fits'.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("list", help="List stored artifacts.")
    delete_parser = subparsers.add_parser("delete", help="Delete stored artifacts.")
    delete_parser.add_argument("names", nargs="+", help="Names of artifacts to delete.")

    return parser.parse_args(argv)


def describe(store: ArtifactStore, name: str) -> str:
    """Describes a stored artifact in one line."""
    try:
        artifact = store.load(name)
    except CorruptArtifactError:
        return f"{name}: CORRUPT (delete and rerun the stage that produced it)"

    if isinstance(artifact, CompiledArtifact):
        prior = "with" if artifact.prior_fit is not None else "without"
        return (
            f"{name}: compiled model {artifact.compile_key[:12]} "
            f"({artifact.platform}, {prior} prior draws)"
        )
    if isinstance(artifact, FitResult):
        return (
            f"{name}: fit result {artifact.compile_key[:12]} "
            f"(n = {artifact.n_obs}, origin: {artifact.origin})"
        )
    return f"{name}: unknown artifact type {type(artifact).__name__}"


def list_artifacts(store: ArtifactStore) -> None:
    """Prints one line per stored artifact."""
    names = store.names()
    if not names:
        print(f"No artifacts in {store.root}")
        return
    for name in names:
        print(describe(store, name))


def delete_artifacts(store: ArtifactStore, names: list[str]) -> int:
    """Deletes artifacts, reporting names that are not stored.

    :returns: Number of names that could not be deleted
    :rtype: int
    """
    n_missing = 0
    for name in names:
        try:
            store.delete(name)
        except ArtifactNotFoundError:
            print(f"Not found: {name}")
            n_missing += 1
        else:
            print(f"Deleted: {name}")
    return n_missing


def main(argv: Optional[list[str]] = None) -> int:
    """Main function to manage the artifact store."""
    args = parse_args(argv)
    # Only the store root is needed. CmdStan settings are not read.
    fits_dir = args.fits_dir or os.environ.get(ENV_FITS_DIR) or DEFAULT_FITS_DIR
    store = ArtifactStore(fits_dir)

    if args.command == "list":
        list_artifacts(store)
        return 0
    return int(delete_artifacts(store, args.names) > 0)


if __name__ == "__main__":
    raise SystemExit(main())
