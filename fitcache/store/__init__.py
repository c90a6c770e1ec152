# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Persistence of compiled artifacts and fit results."""

from fitcache.store.artifact_store import ArtifactStore
