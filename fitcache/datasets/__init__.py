# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Example datasets and model specifications."""
