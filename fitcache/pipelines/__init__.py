# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Command-line pipelines for the workshop models and the artifact store.

Run them as modules, for example ``python -m fitcache.pipelines.fit_models``.
"""
